"""Session timeline of agent state transitions and discrete markers.

Events are appended only on a state change per agent. Markers annotate the
timeline: start (first event of an agent), completion (working -> idle),
error (entering error), plus stop/prompt markers added by callers.
Retention is age based; the tracker is in-memory and session scoped.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

from instrukt_ai_logging import get_logger

from ntm.constants import TIMELINE_MAX_AGE_S
from ntm.core.models import AgentStatus, AgentStatusState, AgentType, Pane

logger = get_logger(__name__)


class TimelineState(str, Enum):
    IDLE = "idle"
    WORKING = "working"
    WAITING = "waiting"
    ERROR = "error"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self in (TimelineState.STOPPED, TimelineState.ERROR)


class MarkerKind(str, Enum):
    START = "start"
    STOP = "stop"
    COMPLETION = "completion"
    ERROR = "error"
    PROMPT = "prompt"

    @property
    def symbol(self) -> str:
        return _MARKER_SYMBOLS[self]


_MARKER_SYMBOLS = {
    MarkerKind.PROMPT: "▶",
    MarkerKind.COMPLETION: "✓",
    MarkerKind.ERROR: "✗",
    MarkerKind.START: "◆",
    MarkerKind.STOP: "◆",
}


@dataclass
class AgentEvent:
    agent_id: str
    session: str
    agent_type: str
    state: TimelineState
    timestamp: datetime
    previous_state: Optional[TimelineState] = None
    duration: timedelta = timedelta(0)
    details: dict[str, str] = field(default_factory=dict)


@dataclass
class TimelineMarker:
    id: str
    agent_id: str
    session: str
    kind: MarkerKind
    timestamp: datetime
    message: str = ""


def timeline_state_for(status: AgentStatus) -> TimelineState:
    if status.state == AgentStatusState.WORKING:
        return TimelineState.WORKING
    if status.state == AgentStatusState.IDLE:
        return TimelineState.IDLE
    if status.state == AgentStatusState.ERROR:
        return TimelineState.ERROR
    return TimelineState.WAITING


def timeline_agent_id(pane: Pane) -> str:
    """Stable agent id for the timeline: title suffix after "__", else title, else pane id."""
    title = pane.title.strip()
    if "__" in title:
        suffix = title.split("__", 1)[1].strip()
        if suffix:
            return suffix
    if title:
        return title
    return pane.id


class TimelineTracker:
    """Append-only per-session record of agent transitions."""

    def __init__(self, max_age: timedelta = timedelta(seconds=TIMELINE_MAX_AGE_S)) -> None:
        self.max_age = max_age
        self._events: list[AgentEvent] = []
        self._markers: list[TimelineMarker] = []
        self._current: dict[str, TimelineState] = {}
        self._last_event: dict[str, AgentEvent] = {}
        self._marker_ids = itertools.count(1)
        self._listeners: list[Callable[[AgentEvent], None]] = []

    def on_state_change(self, callback: Callable[[AgentEvent], None]) -> None:
        self._listeners.append(callback)

    def record_event(
        self,
        agent_id: str,
        session: str,
        agent_type: str,
        state: TimelineState,
        timestamp: Optional[datetime] = None,
        details: Optional[dict[str, str]] = None,
        error_message: str = "",
    ) -> Optional[AgentEvent]:
        """Record a transition; returns None when `state` equals the current state."""
        now = datetime.now(timezone.utc)
        ts = timestamp or now
        if ts > now:
            ts = now

        current = self._current.get(agent_id)
        if current == state:
            return None

        previous = self._last_event.get(agent_id)
        event = AgentEvent(
            agent_id=agent_id,
            session=session,
            agent_type=agent_type,
            state=state,
            timestamp=ts,
            previous_state=current,
            duration=ts - previous.timestamp if previous else timedelta(0),
            details=details or {},
        )
        self._events.append(event)
        self._current[agent_id] = state
        self._last_event[agent_id] = event

        if current is None:
            self.add_marker(agent_id, session, MarkerKind.START, ts)
        if current == TimelineState.WORKING and state == TimelineState.IDLE:
            self.add_marker(agent_id, session, MarkerKind.COMPLETION, ts)
        if state == TimelineState.ERROR:
            self.add_marker(agent_id, session, MarkerKind.ERROR, ts, error_message)

        for callback in list(self._listeners):
            callback(event)
        return event

    def record_status(self, session: str, pane: Pane, status: AgentStatus) -> Optional[AgentEvent]:
        """Record the timeline transition implied by a detector result.

        User and unknown panes are not tracked.
        """
        agent_type = pane.agent_type if pane.agent_type != AgentType.USER else status.agent_type
        if not agent_type.is_agent:
            return None
        agent_id = timeline_agent_id(pane)
        if not agent_id:
            return None
        return self.record_event(
            agent_id=agent_id,
            session=session,
            agent_type=agent_type.short,
            state=timeline_state_for(status),
            timestamp=status.updated_at,
            error_message=status.error_kind.value if status.error_kind else "",
        )

    def add_marker(
        self,
        agent_id: str,
        session: str,
        kind: MarkerKind,
        timestamp: Optional[datetime] = None,
        message: str = "",
    ) -> TimelineMarker:
        marker = TimelineMarker(
            id=f"m-{next(self._marker_ids)}",
            agent_id=agent_id,
            session=session,
            kind=kind,
            timestamp=timestamp or datetime.now(timezone.utc),
            message=message,
        )
        self._markers.append(marker)
        return marker

    def events(self, since: Optional[datetime] = None) -> list[AgentEvent]:
        return [e for e in self._events if since is None or e.timestamp >= since]

    def events_for_agent(self, agent_id: str, since: Optional[datetime] = None) -> list[AgentEvent]:
        return [e for e in self.events(since) if e.agent_id == agent_id]

    def markers(self, since: Optional[datetime] = None, until: Optional[datetime] = None) -> list[TimelineMarker]:
        return [
            m
            for m in self._markers
            if (since is None or m.timestamp >= since) and (until is None or m.timestamp <= until)
        ]

    def markers_for_agent(self, agent_id: str) -> list[TimelineMarker]:
        return [m for m in self._markers if m.agent_id == agent_id]

    def current_state(self, agent_id: str) -> Optional[TimelineState]:
        return self._current.get(agent_id)

    def agent_states(self) -> dict[str, TimelineState]:
        return dict(self._current)

    def state_durations(
        self, agent_id: str, since: datetime, until: Optional[datetime] = None
    ) -> dict[TimelineState, timedelta]:
        """Time spent per state within [since, until]."""
        until = until or datetime.now(timezone.utc)
        durations: dict[TimelineState, timedelta] = {}
        events = [e for e in self._events if e.agent_id == agent_id]
        for i, event in enumerate(events):
            start = max(event.timestamp, since)
            end = events[i + 1].timestamp if i + 1 < len(events) else until
            end = min(end, until)
            if end > start:
                durations[event.state] = durations.get(event.state, timedelta(0)) + (end - start)
        return durations

    def prune(self, now: Optional[datetime] = None) -> int:
        """Evict events and markers older than max_age. Returns the number removed.

        The current state of each agent is kept so dedup still works.
        """
        cutoff = (now or datetime.now(timezone.utc)) - self.max_age
        before = len(self._events) + len(self._markers)
        self._events = [e for e in self._events if e.timestamp >= cutoff]
        self._markers = [m for m in self._markers if m.timestamp >= cutoff]
        removed = before - len(self._events) - len(self._markers)
        if removed:
            logger.debug("Pruned %d timeline records older than %s", removed, cutoff)
        return removed

    def remove_agent(self, agent_id: str) -> None:
        self._events = [e for e in self._events if e.agent_id != agent_id]
        self._markers = [m for m in self._markers if m.agent_id != agent_id]
        self._current.pop(agent_id, None)
        self._last_event.pop(agent_id, None)

    def clear(self) -> None:
        self._events.clear()
        self._markers.clear()
        self._current.clear()
        self._last_event.clear()
