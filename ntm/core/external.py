"""Subprocess helper for the external tools the dashboard shells out to.

tmux has its own bridge; everything else (bd, bv, ubs, cass, dcg, git)
goes through `run_command`.
"""

from __future__ import annotations

import asyncio
import json
import shutil
from dataclasses import dataclass
from typing import Optional

from ntm.constants import DEFAULT_FETCH_TIMEOUT_S
from ntm.core.errors import ErrorKind, NtmError


@dataclass
class CommandResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def is_installed(binary: str) -> bool:
    return shutil.which(binary) is not None


async def run_command(
    binary: str,
    *args: str,
    cwd: Optional[str] = None,
    timeout: float = DEFAULT_FETCH_TIMEOUT_S,
) -> CommandResult:
    """Run `binary args...` and collect its output.

    A non-zero exit status is returned, not raised; callers decide what it means.

    Raises:
        NtmError: unavailable when the binary is missing, timeout on deadline
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            binary,
            *args,
            cwd=cwd or None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise NtmError(ErrorKind.UNAVAILABLE, binary, f"{binary} not installed") from e

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError as e:
        _kill(proc)
        raise NtmError(ErrorKind.TIMEOUT, binary, "context deadline exceeded") from e
    except asyncio.CancelledError:
        _kill(proc)
        raise

    return CommandResult(
        returncode=proc.returncode or 0,
        stdout=stdout.decode("utf-8", errors="replace").strip(),
        stderr=stderr.decode("utf-8", errors="replace").strip(),
    )


async def run_json(
    binary: str,
    *args: str,
    cwd: Optional[str] = None,
    timeout: float = DEFAULT_FETCH_TIMEOUT_S,
) -> object:
    """Run a tool that prints JSON; None when it prints nothing.

    Raises:
        NtmError: on non-zero exit (stderr carried through) or invalid JSON
    """
    operation = " ".join((binary, *args))
    result = await run_command(binary, *args, cwd=cwd, timeout=timeout)
    if not result.ok:
        raise NtmError(ErrorKind.UNKNOWN, operation, result.stderr or f"exit status {result.returncode}")
    if not result.stdout:
        return None
    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise NtmError(ErrorKind.VALIDATION, operation, f"invalid JSON: {e}") from e


def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
