"""View-model store for the dashboard.

Single writer: only the refresh orchestrator's completion path mutates the
store. Per-pane state is keyed by the stable tmux pane id; indices are for
display only and are re-derived on every pane-list update.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from instrukt_ai_logging import get_logger

from ntm.core.errors import ErrorKind, NtmError
from ntm.core.models import AgentState, Pane
from ntm.core.panels import Alert, CheckpointStatus, MailStatus, RefreshSource
from ntm.core.timeline import TimelineTracker

logger = get_logger(__name__)


def hint_for_session_error(err: Optional[BaseException]) -> str:
    """Actionable hint shown under a session-fetch error."""
    if err is None:
        return ""
    if isinstance(err, NtmError) and err.kind == ErrorKind.TIMEOUT:
        return "tmux is responding slowly. Press r to retry, p to pause auto-refresh, or check system load"
    text = str(err).lower()
    if "deadline exceeded" in text or "timed out" in text:
        return "tmux is responding slowly. Press r to retry, p to pause auto-refresh, or check system load"
    if "tmux is not installed" in text or "executable file not found" in text:
        return "Install tmux, then run: ntm deps -v"
    if "no server running" in text or "failed to connect to server" in text:
        return "Start tmux or create a session with: ntm spawn <name>"
    if "can't find session" in text or "session not found" in text:
        return "Session may have ended. Create a new one with: ntm spawn <name>"
    return "Press r to retry"


@dataclass
class Counters:
    """Aggregates rendered in the header; recomputed, never accumulated."""

    total_panes: int = 0
    agent_panes: int = 0
    by_type: dict[str, int] = field(default_factory=dict)
    by_state: dict[str, int] = field(default_factory=dict)
    alerts_by_severity: dict[str, int] = field(default_factory=dict)
    checkpoint: str = "none"
    beads: str = "unavailable"
    mail: str = "unavailable"


class ViewStore:
    """Canonical dashboard state."""

    def __init__(self, session: str, timeline: Optional[TimelineTracker] = None) -> None:
        self.session = session
        self.panes: list[Pane] = []
        self.agents: dict[str, AgentState] = {}
        self.output_cache: dict[str, str] = {}
        self.last_captured: dict[str, datetime] = {}
        # Bumped on every capture; lets a slower status fetch detect it is stale.
        self.capture_seq: dict[str, int] = {}
        self.rendered_cache: dict[str, str] = {}
        self.cursor = 0
        self.capture_cursor = 0
        self.panels: dict[RefreshSource, object] = {}
        self.errors: dict[RefreshSource, NtmError] = {}
        self.updated_at: dict[RefreshSource, datetime] = {}
        self.session_error: Optional[NtmError] = None
        self.session_error_hint = ""
        self.mail_names: dict[str, str] = {}
        self.timeline = timeline or TimelineTracker()
        self.counters = Counters()

    # --- Pane identity ---

    @property
    def selected_pane(self) -> Optional[Pane]:
        if 0 <= self.cursor < len(self.panes):
            return self.panes[self.cursor]
        return None

    @property
    def selected_pane_id(self) -> str:
        pane = self.selected_pane
        return pane.id if pane else ""

    def pane_by_id(self, pane_id: str) -> Optional[Pane]:
        for pane in self.panes:
            if pane.id == pane_id:
                return pane
        return None

    def apply_panes(self, panes: list[Pane]) -> set[str]:
        """Replace the pane list, migrating per-pane state by pane id.

        States of panes still present are kept; states and output caches of
        removed panes are dropped; the cursor follows the selected pane id.
        Applying the same list twice is a no-op.

        Returns:
            Pane ids that were removed
        """
        prev_selected = self.selected_pane_id
        old_ids = {p.id for p in self.panes}
        new_panes = sorted(panes, key=lambda p: p.index)
        new_ids = {p.id for p in new_panes}

        self.panes = new_panes
        self.agents = {pane_id: state for pane_id, state in self.agents.items() if pane_id in new_ids}
        for pane in new_panes:
            if pane.is_agent and pane.id not in self.agents:
                self.agents[pane.id] = AgentState(pane_id=pane.id)

        removed = (old_ids - new_ids) | {pid for pid in self._cached_ids() if pid not in new_ids}
        self.purge_caches(new_ids)

        self.cursor = self._reanchor_cursor(prev_selected)
        if removed:
            logger.debug("Panes removed from %s: %s", self.session, sorted(removed))
        return removed

    def _caches(self) -> tuple[dict, ...]:
        return (
            self.output_cache,
            self.last_captured,
            self.capture_seq,
            self.rendered_cache,
            self.mail_names,
        )

    def _cached_ids(self) -> set[str]:
        return set().union(*self._caches())

    def purge_caches(self, valid_ids: set[str]) -> None:
        for cache in self._caches():
            for pane_id in [pid for pid in cache if pid not in valid_ids]:
                del cache[pane_id]

    def _reanchor_cursor(self, prev_selected: str) -> int:
        if prev_selected:
            for i, pane in enumerate(self.panes):
                if pane.id == prev_selected:
                    return i
        if not self.panes:
            return 0
        return max(0, min(self.cursor, len(self.panes) - 1))

    def move_cursor(self, delta: int) -> None:
        if not self.panes:
            self.cursor = 0
            return
        self.cursor = max(0, min(self.cursor + delta, len(self.panes) - 1))

    def state_by_index(self) -> dict[int, AgentState]:
        """Display view: pane index -> agent state."""
        return {p.index: self.agents[p.id] for p in self.panes if p.id in self.agents}

    # --- Session errors ---

    def set_session_error(self, err: NtmError) -> None:
        """Record a session fetch failure.

        A missing session or missing tmux empties the main view; slow or
        unreachable tmux keeps the last-known-good panes on screen.
        """
        self.session_error = err
        self.session_error_hint = hint_for_session_error(err)
        if err.kind in (ErrorKind.SESSION_NOT_FOUND, ErrorKind.UNAVAILABLE):
            self.panes = []
            self.agents = {}
            self.purge_caches(set())
            self.cursor = 0

    def clear_session_error(self) -> None:
        self.session_error = None
        self.session_error_hint = ""

    # --- Panels ---

    def set_panel(self, source: RefreshSource, payload: object, now: Optional[datetime] = None) -> None:
        self.panels[source] = payload
        self.updated_at[source] = now or datetime.now(timezone.utc)

    def panel(self, source: RefreshSource) -> object:
        return self.panels.get(source)

    # --- Counters ---

    def recompute_counters(self) -> Counters:
        by_type = Counter(p.agent_type.value for p in self.panes)
        by_state = Counter(state.display_state.value for state in self.agents.values())

        alerts = self.panels.get(RefreshSource.ALERTS)
        by_severity: Counter[str] = Counter()
        if isinstance(alerts, list):
            by_severity.update(a.severity.value for a in alerts if isinstance(a, Alert))

        checkpoint = self.panels.get(RefreshSource.CHECKPOINT)
        mail = self.panels.get(RefreshSource.MAIL)
        beads = self.panels.get(RefreshSource.BEADS)

        self.counters = Counters(
            total_panes=len(self.panes),
            agent_panes=sum(1 for p in self.panes if p.is_agent),
            by_type=dict(by_type),
            by_state=dict(by_state),
            alerts_by_severity=dict(by_severity),
            checkpoint=checkpoint.state.value if isinstance(checkpoint, CheckpointStatus) else "none",
            beads=_beads_counter(beads),
            mail=_mail_counter(mail),
        )
        return self.counters


def _beads_counter(beads: object) -> str:
    available = getattr(beads, "available", False)
    if not available:
        return "unavailable"
    ready = getattr(beads, "ready", 0)
    in_progress = getattr(beads, "in_progress", 0)
    return f"{ready} ready / {in_progress} in progress"


def _mail_counter(mail: object) -> str:
    if not isinstance(mail, MailStatus) or not mail.available:
        return "unavailable"
    if not mail.connected:
        return "disconnected"
    if mail.conflict_count:
        return f"{mail.reservation_count} locks / {mail.conflict_count} conflicts"
    return f"{mail.reservation_count} locks"
