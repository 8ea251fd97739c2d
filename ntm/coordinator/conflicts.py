"""File reservation conflicts between agents.

A conflict is a path pattern held by two or more active reservations. The
coordinator notifies holders by default; negotiation asks one holder to
release; force release is only ever triggered by the user.
"""

from __future__ import annotations

import re
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import lru_cache
from typing import Optional

from instrukt_ai_logging import get_logger

from ntm.agentmail import AgentMailClient, FileReservation, ForceReleaseResult, SendResult
from ntm.core.errors import ErrorKind, NtmError

logger = get_logger(__name__)


class ConflictAction(str, Enum):
    NOTIFY = "notify"
    NEGOTIATE = "negotiate"
    FORCE_RELEASE = "force_release"
    WAIT = "wait"


@dataclass
class Holder:
    """One agent holding a reservation. Lower priority number means higher priority."""

    agent_name: str
    reserved_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    reason: str = ""
    priority: int = 0
    reservation_id: int = 0
    pane_id: str = ""


@dataclass
class Conflict:
    id: str
    pattern: str
    holders: list[Holder]
    detected_at: datetime
    file_path: str = ""
    resolved_at: Optional[datetime] = None
    resolution: str = ""

    @property
    def holder_names(self) -> list[str]:
        return [h.agent_name for h in self.holders]


def _holder(r: FileReservation) -> Holder:
    return Holder(
        agent_name=r.agent_name,
        reserved_at=r.created_ts,
        expires_at=r.expires_ts,
        reason=r.reason,
        reservation_id=r.id,
    )


class ConflictDetector:
    """Lists active reservations and groups them by pattern."""

    def __init__(self, client: Optional[AgentMailClient], project_key: str) -> None:
        self.client = client
        self.project_key = project_key
        self.conflicts: dict[str, Conflict] = {}

    async def _active_reservations(self, now: datetime) -> list[FileReservation]:
        assert self.client is not None
        reservations = await self.client.list_reservations(self.project_key, all_agents=True)
        return [r for r in reservations if r.is_active(now)]

    async def detect(self, now: Optional[datetime] = None) -> list[Conflict]:
        """Conflicts among active reservations; empty without a mail client."""
        if self.client is None:
            return []
        now = now or datetime.now(timezone.utc)
        by_pattern: dict[str, list[Holder]] = defaultdict(list)
        for r in await self._active_reservations(now):
            # Shared reservations never conflict.
            if r.exclusive:
                by_pattern[r.path_pattern].append(_holder(r))

        conflicts: list[Conflict] = []
        for pattern, holders in by_pattern.items():
            if len({h.agent_name for h in holders}) < 2:
                continue
            conflict = Conflict(id=generate_conflict_id(pattern), pattern=pattern, holders=holders, detected_at=now)
            conflicts.append(conflict)
            self.conflicts[conflict.id] = conflict
        return conflicts

    async def check_path(self, path: str, exclude_agent: str = "", now: Optional[datetime] = None) -> Optional[Conflict]:
        """Would reserving `path` collide with another agent's active reservation?"""
        if self.client is None:
            return None
        now = now or datetime.now(timezone.utc)
        holders = [
            _holder(r)
            for r in await self._active_reservations(now)
            if r.agent_name != exclude_agent and matches_pattern(path, r.path_pattern)
        ]
        if not holders:
            return None
        return Conflict(id=generate_conflict_id(path), pattern=path, file_path=path, holders=holders, detected_at=now)


# --- Messages ---


def _hms(ts: Optional[datetime]) -> str:
    return ts.strftime("%H:%M:%S") if ts else "-"


def _iso(ts: Optional[datetime]) -> str:
    return ts.isoformat() if ts else "-"


def format_conflict_notification(conflict: Conflict) -> str:
    lines = [
        "# Reservation Conflict Detected",
        "",
        f"**Pattern:** `{conflict.pattern}`",
        "",
        "## Current Holders",
        "",
    ]
    for h in conflict.holders:
        lines.append(f"- **{h.agent_name}** (reserved {_hms(h.reserved_at)}, expires {_hms(h.expires_at)})")
        if h.reason:
            lines.append(f"  - Reason: {h.reason}")
    lines += [
        "",
        "## Recommendation",
        "",
        "Please coordinate to avoid edit conflicts. Options:",
        "1. One agent releases their reservation",
        "2. Agents work on different parts of the file",
        "3. Wait for one agent to complete their work",
    ]
    return "\n".join(lines) + "\n"


def format_negotiation_request(conflict: Conflict, requester: str, target: Holder) -> str:
    lines = [
        "# File Reservation Conflict",
        "",
        f"**Pattern:** `{conflict.pattern}`",
        "",
        f"**Requester:** {requester} needs access to this path.",
        "",
        "## Request",
        "",
        f"Agent **{requester}** is requesting that you release your reservation on `{conflict.pattern}`.",
        "",
        "### Your Reservation",
        f"- **Reserved at:** {_iso(target.reserved_at)}",
        f"- **Expires at:** {_iso(target.expires_at)}",
    ]
    if target.reason:
        lines.append(f"- **Reason:** {target.reason}")
    lines += [
        "",
        "## Options",
        "",
        "1. **Release** the reservation if you're done with the files",
        "2. **Keep** the reservation if you're still actively working",
        "3. **Coordinate** with the requester to share access",
        "",
        "Please acknowledge this message to indicate your decision.",
    ]
    return "\n".join(lines) + "\n"


async def notify_conflict(client: AgentMailClient, sender: str, project_key: str, conflict: Conflict) -> SendResult:
    """One high-importance message addressed to every holder."""
    return await client.send_message(
        sender_name=sender,
        to=conflict.holder_names,
        subject=f"Reservation Conflict Detected: {conflict.pattern}",
        body_md=format_conflict_notification(conflict),
        importance="high",
        project_key=project_key,
    )


def negotiation_target(conflict: Conflict, requester: str) -> Optional[Holder]:
    """Lowest-priority holder (highest priority number) other than the requester."""
    target: Optional[Holder] = None
    for h in conflict.holders:
        if h.agent_name == requester:
            continue
        if target is None or h.priority > target.priority:
            target = h
    return target


async def negotiate_conflict(
    client: AgentMailClient, sender: str, project_key: str, conflict: Conflict, requester: str
) -> Holder:
    """Ask the lowest-priority other holder to release; the message requires an ack.

    Raises:
        NtmError: conflict when no other holder exists
    """
    target = negotiation_target(conflict, requester)
    if target is None:
        raise NtmError(ErrorKind.CONFLICT, "negotiate_conflict", "no other holders to negotiate with")
    await client.send_message(
        sender_name=sender,
        to=[target.agent_name],
        subject=f"File Reservation Conflict: {conflict.pattern}",
        body_md=format_negotiation_request(conflict, requester, target),
        importance="high",
        ack_required=True,
        project_key=project_key,
    )
    return target


async def force_release(
    client: AgentMailClient,
    holder: Holder,
    requested_by: str,
    note: str = "",
    notify_previous: bool = True,
    project_key: str = "",
) -> ForceReleaseResult:
    """Release another agent's reservation. Only call this on explicit user request."""
    if not holder.reservation_id:
        raise NtmError(ErrorKind.VALIDATION, "force_release", f"no reservation id for {holder.agent_name}")
    note = note or f"Released by {requested_by} via ntm"
    result = await client.force_release_reservation(
        holder.reservation_id, requested_by, note=note, notify_previous=notify_previous, project_key=project_key
    )
    logger.info("Force-released reservation %d of %s", holder.reservation_id, holder.agent_name)
    return result


# --- Ids and path matching ---


def sanitize_for_id(value: str) -> str:
    return value.replace("/", "-").replace("*", "x").replace(".", "_")[:20]


def generate_conflict_id(pattern: str, now_ns: Optional[int] = None) -> str:
    now_ns = time.time_ns() if now_ns is None else now_ns
    return f"conflict-{now_ns % 10000}-{sanitize_for_id(pattern)}"


@lru_cache(maxsize=256)
def _pattern_regex(pattern: str) -> re.Pattern[str]:
    out: list[str] = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("/**", i) and i + 3 == len(pattern):
            out.append("(?:/.*)?")
            i += 3
        elif pattern.startswith("**", i):
            out.append(".*")
            i += 2
        elif pattern[i] == "*":
            out.append("[^/]*")
            i += 1
        else:
            out.append(re.escape(pattern[i]))
            i += 1
    return re.compile("".join(out) + r"\Z")


def matches_pattern(path: str, pattern: str) -> bool:
    """Does `path` fall under reservation `pattern`?

    Exact paths match themselves, a plain directory matches its descendants,
    `*` spans one path segment and `**` spans zero or more segments.
    """
    if path == pattern:
        return True
    if "*" not in pattern:
        return path.startswith(pattern.rstrip("/") + "/")
    return _pattern_regex(pattern).match(path) is not None


__all__ = [
    "Conflict",
    "ConflictAction",
    "ConflictDetector",
    "Holder",
    "force_release",
    "format_conflict_notification",
    "format_negotiation_request",
    "generate_conflict_id",
    "matches_pattern",
    "negotiate_conflict",
    "negotiation_target",
    "notify_conflict",
]
