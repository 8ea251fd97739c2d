"""Read-only probes behind the secondary dashboard panels.

Each probe returns a panel payload from `ntm.core.panels` or raises
NtmError. A missing optional tool is `unavailable`; the orchestrator turns
that into a placeholder panel.
"""

from __future__ import annotations

import json
import time
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import frontmatter
import yaml
from instrukt_ai_logging import get_logger

from ntm.constants import (
    CASS_FETCH_TIMEOUT_S,
    CHECKPOINT_RECENT_S,
    CHECKPOINT_STALE_S,
    DCG_FETCH_TIMEOUT_S,
    DEFAULT_FETCH_TIMEOUT_S,
    SCAN_FETCH_TIMEOUT_S,
)
from ntm.core.errors import ErrorKind, NtmError
from ntm.core.external import is_installed, run_command, run_json
from ntm.core.panels import (
    CassHit,
    CheckpointState,
    CheckpointStatus,
    DcgStatus,
    FileChange,
    HandoffStatus,
    HistoryEntry,
    ScanState,
    ScanStatus,
)
from ntm.utils import ntm_config_dir

logger = get_logger(__name__)

HISTORY_LIMIT = 20
RECENT_FILE_WINDOW_S = 5 * 60
CASS_RESULT_LIMIT = 5


def _parse_ts(value: object) -> Optional[datetime]:
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, str) and value:
        try:
            ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _mtime(path: Path) -> datetime:
    return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)


# --- History ---


def history_path() -> Path:
    return ntm_config_dir() / "history.jsonl"


def read_history(path: Optional[Path] = None, limit: int = HISTORY_LIMIT) -> list[HistoryEntry]:
    """Last `limit` prompt history entries, oldest first; malformed lines are skipped."""
    path = path or history_path()
    try:
        with path.open(encoding="utf-8") as f:
            tail = deque(f, maxlen=limit)
    except FileNotFoundError:
        return []

    entries: list[HistoryEntry] = []
    for line in tail:
        line = line.strip()
        if not line:
            continue
        try:
            raw = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(raw, dict):
            continue
        targets = raw.get("targets") or []
        entries.append(
            HistoryEntry(
                timestamp=_parse_ts(raw.get("timestamp") or raw.get("ts")),
                session=str(raw.get("session", "")),
                prompt=str(raw.get("prompt", "")),
                targets=[str(t) for t in targets] if isinstance(targets, list) else [],
                source=str(raw.get("source", "")),
            )
        )
    return entries


# --- Files ---


def parse_porcelain(output: str) -> list[tuple[str, str]]:
    """(status, path) pairs from `git status --porcelain`; renames keep the new path."""
    changes: list[tuple[str, str]] = []
    for line in output.splitlines():
        if len(line) < 4:
            continue
        status = line[:2].strip() or "?"
        path = line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        changes.append((status, path.strip('"')))
    return changes


async def recent_file_changes(
    project_dir: str,
    window_s: float = RECENT_FILE_WINDOW_S,
    now: Optional[float] = None,
) -> list[FileChange]:
    """Worktree changes modified within `window_s`, newest first.

    A directory that is not a git worktree yields an empty list.
    """
    result = await run_command("git", "-C", project_dir, "status", "--porcelain", timeout=DEFAULT_FETCH_TIMEOUT_S)
    if not result.ok:
        logger.debug("git status failed in %s: %s", project_dir, result.stderr)
        return []

    now = time.time() if now is None else now
    changes: list[FileChange] = []
    for status, rel in parse_porcelain(result.stdout):
        path = Path(project_dir) / rel
        try:
            mtime = path.stat().st_mtime
        except OSError:
            # Deleted files have no mtime; they still count as a change.
            if status.startswith("D"):
                changes.append(FileChange(path=rel, status=status))
            continue
        if now - mtime <= window_s:
            changes.append(FileChange(path=rel, status=status, modified_at=datetime.fromtimestamp(mtime, tz=timezone.utc)))
    changes.sort(key=lambda c: c.modified_at or datetime.max.replace(tzinfo=timezone.utc), reverse=True)
    return changes


# --- CASS ---


async def cass_search(session: str, limit: int = CASS_RESULT_LIMIT) -> list[CassHit]:
    if not is_installed("cass"):
        raise NtmError(ErrorKind.UNAVAILABLE, "cass_search", "cass not installed")
    data = await run_json("cass", "search", session, "--json", "--limit", str(limit), timeout=CASS_FETCH_TIMEOUT_S)
    if isinstance(data, dict):
        hits = data.get("hits") or data.get("results") or []
    elif isinstance(data, list):
        hits = data
    else:
        hits = []

    results: list[CassHit] = []
    for hit in hits[:limit]:
        if not isinstance(hit, dict):
            continue
        results.append(
            CassHit(
                title=str(hit.get("title") or hit.get("source_path") or ""),
                source_path=str(hit.get("source_path", "")),
                score=float(hit.get("score") or 0.0),
                snippet=str(hit.get("snippet", "")),
            )
        )
    return results


# --- UBS scan ---


def parse_scan_output(stdout: str, duration_s: float = 0.0) -> ScanStatus:
    """Summarise `ubs --format=json` output.

    Accepts a `totals` or `summary` object, or a flat `findings` list with
    per-finding severities.
    """
    try:
        data = json.loads(stdout) if stdout else {}
    except json.JSONDecodeError as e:
        raise NtmError(ErrorKind.VALIDATION, "ubs_scan", f"invalid JSON: {e}") from e
    if not isinstance(data, dict):
        data = {"findings": data if isinstance(data, list) else []}

    totals = data.get("totals") or data.get("summary")
    if isinstance(totals, dict):
        critical = int(totals.get("critical", 0) or 0)
        warning = int(totals.get("warning", 0) or 0)
        info = int(totals.get("info", 0) or 0)
        files = int(totals.get("files", 0) or data.get("files", 0) or 0)
    else:
        critical = warning = info = 0
        findings = data.get("findings") or []
        for finding in findings:
            severity = str(finding.get("severity", "")).lower() if isinstance(finding, dict) else ""
            if severity == "critical":
                critical += 1
            elif severity == "warning":
                warning += 1
            else:
                info += 1
        files = int(data.get("files", 0) or 0)

    if critical:
        state = ScanState.CRITICAL
    elif warning:
        state = ScanState.WARNING
    else:
        state = ScanState.CLEAN
    return ScanStatus(state=state, critical=critical, warning=warning, info=info, files=files, duration_s=duration_s)


async def run_scan(project_dir: str) -> ScanStatus:
    if not is_installed("ubs"):
        raise NtmError(ErrorKind.UNAVAILABLE, "ubs_scan", "ubs not installed")
    started = time.monotonic()
    # ubs exits non-zero when it finds issues; the JSON is still valid.
    result = await run_command("ubs", "--format=json", ".", cwd=project_dir, timeout=SCAN_FETCH_TIMEOUT_S)
    if not result.stdout and not result.ok:
        raise NtmError(ErrorKind.UNKNOWN, "ubs_scan", result.stderr or f"exit status {result.returncode}")
    return parse_scan_output(result.stdout, time.monotonic() - started)


# --- DCG ---


async def dcg_status() -> DcgStatus:
    if not is_installed("dcg"):
        return DcgStatus(available=False)
    result = await run_command("dcg", "--version", timeout=DCG_FETCH_TIMEOUT_S)
    if not result.ok:
        return DcgStatus(available=False)
    version = result.stdout.splitlines()[0].strip() if result.stdout else ""
    return DcgStatus(available=True, version=version)


# --- Checkpoints ---


def checkpoints_dir(session: str) -> Path:
    return ntm_config_dir() / "checkpoints" / session


def checkpoint_state_for(latest: Optional[datetime], now: datetime) -> CheckpointState:
    if latest is None:
        return CheckpointState.NONE
    age = (now - latest).total_seconds()
    if age < CHECKPOINT_RECENT_S:
        return CheckpointState.RECENT
    if age < CHECKPOINT_STALE_S:
        return CheckpointState.STALE
    return CheckpointState.OLD


def _checkpoint_created_at(path: Path) -> datetime:
    meta = path / "metadata.json"
    try:
        data = json.loads(meta.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return _mtime(path)
    created = _parse_ts(data.get("created_at")) if isinstance(data, dict) else None
    return created or _mtime(path)


def checkpoint_status(session: str, base: Optional[Path] = None, now: Optional[datetime] = None) -> CheckpointStatus:
    """Count and freshness of the session's checkpoints (one directory each)."""
    root = base if base is not None else checkpoints_dir(session)
    now = now or datetime.now(timezone.utc)
    try:
        entries = [p for p in root.iterdir() if p.is_dir()]
    except FileNotFoundError:
        return CheckpointStatus(state=CheckpointState.NONE)

    latest: Optional[datetime] = None
    for entry in entries:
        created = _checkpoint_created_at(entry)
        if latest is None or created > latest:
            latest = created
    return CheckpointStatus(state=checkpoint_state_for(latest, now), count=len(entries), latest_at=latest)


# --- Handoffs ---


def handoffs_dir(project_dir: str, session: str) -> Path:
    return Path(project_dir) / ".ntm" / "handoffs" / session


def parse_front_matter(text: str) -> dict[str, object]:
    """YAML front matter between leading `---` fences; empty when absent or invalid."""
    if not text.lstrip().startswith("---"):
        return {}
    try:
        post = frontmatter.loads(text)
    except (yaml.YAMLError, ValueError) as e:
        logger.debug("Unreadable handoff front matter: %s", e)
        return {}
    return dict(post.metadata) if post.metadata else {}


def latest_handoff(project_dir: str, session: str, now: Optional[datetime] = None) -> HandoffStatus:
    now = now or datetime.now(timezone.utc)
    try:
        candidates = list(handoffs_dir(project_dir, session).glob("*.md"))
    except OSError:
        return HandoffStatus()
    if not candidates:
        return HandoffStatus()

    path = max(candidates, key=lambda p: p.stat().st_mtime)
    meta = parse_front_matter(path.read_text(encoding="utf-8", errors="replace"))
    created = _parse_ts(meta.get("created_at")) or _mtime(path)
    return HandoffStatus(
        goal=str(meta.get("goal") or ""),
        now=str(meta.get("now") or ""),
        path=str(path),
        status=str(meta.get("status") or ""),
        age_s=max(0.0, (now - created).total_seconds()),
    )
