"""tmux bridge for NTM - async subprocess wrappers around the tmux binary.

All functions are stateless. Failures raise NtmError with a stable kind
(session_not_found, transport, unavailable, timeout) so callers can decide
between an error banner and a silent retry.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from ntm.constants import TMUX_FIELD_SEPARATOR, TMUX_SUBPROCESS_TIMEOUT_S
from ntm.core.errors import ErrorKind, NtmError
from ntm.core.models import Pane, detect_agent_type, parse_pane_title

logger = logging.getLogger(__name__)

TMUX_BINARY = "tmux"

_PANE_FIELDS = (
    "#{pane_id}",
    "#{pane_index}",
    "#{pane_title}",
    "#{pane_current_command}",
    "#{pane_width}",
    "#{pane_height}",
    "#{pane_active}",
    "#{pane_last_activity}",
    "#{pane_pid}",
    "#{window_index}",
)
PANE_FORMAT = TMUX_FIELD_SEPARATOR.join(_PANE_FIELDS)


def classify_tmux_error(operation: str, stderr: str, returncode: int) -> NtmError:
    """Map tmux stderr text to an NtmError kind."""
    lowered = stderr.lower()
    if "can't find session" in lowered or "session not found" in lowered:
        return NtmError(ErrorKind.SESSION_NOT_FOUND, operation, stderr or "session not found")
    if "no server running" in lowered or "failed to connect to server" in lowered or "error connecting" in lowered:
        return NtmError(ErrorKind.TRANSPORT, operation, stderr or "no server running")
    if "can't find pane" in lowered or "can't find window" in lowered:
        return NtmError(ErrorKind.NOT_FOUND, operation, stderr)
    return NtmError(ErrorKind.UNKNOWN, operation, stderr or f"tmux exited with {returncode}")


async def run_tmux(operation: str, *args: str, timeout: float = TMUX_SUBPROCESS_TIMEOUT_S) -> str:
    """Run a tmux command and return its stdout.

    Args:
        operation: Operation name used in errors and logs
        *args: tmux arguments
        timeout: Deadline for the subprocess in seconds

    Returns:
        Decoded stdout

    Raises:
        NtmError: unavailable when tmux is missing, timeout on deadline,
            otherwise the kind derived from stderr.
        asyncio.CancelledError: when the calling task is cancelled (the
            subprocess is killed first).
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            TMUX_BINARY,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise NtmError(ErrorKind.UNAVAILABLE, operation, "tmux is not installed (executable file not found)") from e

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError as e:
        _kill(proc)
        raise NtmError(ErrorKind.TIMEOUT, operation, "context deadline exceeded") from e
    except asyncio.CancelledError:
        _kill(proc)
        raise

    if proc.returncode != 0:
        err_text = stderr.decode("utf-8", errors="replace").strip()
        logger.debug("tmux %s failed: returncode=%s stderr=%s", operation, proc.returncode, err_text)
        raise classify_tmux_error(operation, err_text, proc.returncode or 1)

    return stdout.decode("utf-8", errors="replace")


def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass


def _parse_activity(raw: str, now: datetime) -> datetime:
    raw = raw.strip()
    if not raw:
        return now
    try:
        ts = int(raw)
    except ValueError:
        # Unparseable timestamps must not produce huge idle durations.
        return now
    if ts <= 0:
        return now
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def parse_pane_line(line: str, now: Optional[datetime] = None) -> Optional[Pane]:
    """Parse one `list-panes` row produced with PANE_FORMAT.

    Returns None for malformed rows.
    """
    parts = line.split(TMUX_FIELD_SEPARATOR)
    if len(parts) < len(_PANE_FIELDS):
        return None
    try:
        index = int(parts[1])
        width = int(parts[4])
        height = int(parts[5])
        pid = int(parts[8])
        window_index = int(parts[9])
    except ValueError:
        return None

    title = parts[2]
    command = parts[3]
    parsed = parse_pane_title(title)
    return Pane(
        id=parts[0],
        index=index,
        title=title,
        agent_type=detect_agent_type(title, command),
        variant=parsed.variant if parsed else "",
        command=command,
        width=width,
        height=height,
        active=parts[6] == "1",
        pid=pid,
        window_index=window_index,
        ntm_index=parsed.ntm_index if parsed else 0,
        tags=parsed.tags if parsed else (),
        last_activity=_parse_activity(parts[7], now or datetime.now(timezone.utc)),
    )


async def list_panes(session_name: str, timeout: float = TMUX_SUBPROCESS_TIMEOUT_S) -> list[Pane]:
    """List all panes of a session with their last-activity timestamps.

    Args:
        session_name: tmux session name
        timeout: Subprocess deadline in seconds

    Returns:
        Panes in tmux order (unsorted)
    """
    output = await run_tmux("list_panes", "list-panes", "-s", "-t", session_name, "-F", PANE_FORMAT, timeout=timeout)
    now = datetime.now(timezone.utc)
    panes: list[Pane] = []
    for line in output.splitlines():
        if not line:
            continue
        pane = parse_pane_line(line, now)
        if pane is None:
            logger.debug("Skipping malformed list-panes row: %r", line)
            continue
        panes.append(pane)
    return panes


async def capture_pane(target: str, lines: int, timeout: float = TMUX_SUBPROCESS_TIMEOUT_S) -> str:
    """Capture the last `lines` lines of a pane.

    Args:
        target: Pane id (e.g. "%3") or tmux target
        lines: Number of scrollback lines
        timeout: Subprocess deadline in seconds

    Returns:
        Captured text
    """
    # -p = print to stdout, -J = join wrapped lines, -S = start line
    return await run_tmux("capture_pane", "capture-pane", "-p", "-J", "-t", target, "-S", f"-{lines}", timeout=timeout)


async def select_pane(target: str) -> None:
    await run_tmux("select_pane", "select-pane", "-t", target)


async def zoom_pane(target: str) -> None:
    """Focus a pane and toggle its zoom."""
    await run_tmux("select_pane", "select-pane", "-t", target)
    await run_tmux("zoom_pane", "resize-pane", "-Z", "-t", target)


async def send_keys(target: str, text: str, enter: bool = True) -> None:
    """Send literal text to a pane, followed by Enter.

    Enter is sent as a separate C-m so TUI agents register the submit.
    """
    await run_tmux("send_keys", "send-keys", "-t", target, "-l", text)
    if enter:
        await asyncio.sleep(0.1)
        await run_tmux("send_keys", "send-keys", "-t", target, "C-m")


async def session_exists(session_name: str) -> bool:
    try:
        await run_tmux("has_session", "has-session", "-t", session_name)
    except NtmError as e:
        if e.kind in (ErrorKind.SESSION_NOT_FOUND, ErrorKind.TRANSPORT):
            return False
        raise
    return True
