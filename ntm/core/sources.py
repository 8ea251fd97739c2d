"""Fetchers and appliers of every dashboard refresh source.

A fetch factory runs on the update loop: it snapshots what it needs from the
store and returns a coroutine function doing the I/O off-store. Appliers run
on the update loop too and are the only code writing to the store.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable, Optional

from instrukt_ai_logging import get_logger

from ntm import constants
from ntm.agentmail import AgentMailClient
from ntm.agentmail.session import FallbackMode, load_session_registry
from ntm.beads import BeadsSummary, get_beads_summary
from ntm.config import NtmConfig, RefreshIntervals
from ntm.core import probes, tmux_bridge
from ntm.core.capture_scheduler import CaptureFn, PaneCapture, capture_targets, plan_pane_captures
from ntm.core.context_usage import ContextEstimator
from ntm.core.errors import ErrorKind, NtmError
from ntm.core.external import is_installed
from ntm.core.models import AgentState, AgentStatus, AgentStatusState, AgentType, DisplayState, Pane
from ntm.core.panels import (
    AgentMetric,
    Alert,
    AlertSeverity,
    InboxSummary,
    MailStatus,
    MetricsData,
    RefreshSource,
)
from ntm.core.patterns import strip_ansi
from ntm.core.pane_enumerator import PaneEnumerator
from ntm.core.refresh_orchestrator import FetchThunk, SourceSpec
from ntm.core.routing import context_percent, score_agents
from ntm.core.spawn_state import SpawnState, load_spawn_state
from ntm.core.status_detector import CompactionEvent, CompactionTracker, StatusDetector
from ntm.core.task_registry import TaskRegistry
from ntm.core.view_store import ViewStore

logger = get_logger(__name__)

SendKeysFn = Callable[[str, str], Awaitable[None]]

RECOVERY_SUBJECT = "Context compaction recovery"


@dataclass
class SessionSnapshot:
    """Payload of one session fetch."""

    panes: list[Pane]
    captures: list[PaneCapture]
    next_cursor: int


@dataclass
class StatusSnapshot:
    """Statuses re-derived from the output cache, with the capture seq each was computed from."""

    statuses: list[AgentStatus]
    capture_seq: dict[str, int] = field(default_factory=dict)


@dataclass
class MailSnapshot:
    status: MailStatus
    names: dict[str, str] = field(default_factory=dict)


@dataclass
class DashboardContext:
    """Collaborators shared by the source fetchers."""

    session: str
    project_dir: str
    config: NtmConfig
    intervals: RefreshIntervals
    tasks: TaskRegistry
    enumerator: PaneEnumerator = field(default_factory=PaneEnumerator)
    estimator: ContextEstimator = field(default_factory=ContextEstimator)
    detector: StatusDetector = field(default_factory=StatusDetector)
    compaction: CompactionTracker = field(default_factory=CompactionTracker)
    capture: Optional[CaptureFn] = None
    send_keys: SendKeysFn = tmux_bridge.send_keys
    mail: Optional[AgentMailClient] = None
    session_agent: str = ""
    fallback_mode: FallbackMode = "legacy-compat"
    history_file: Optional[Path] = None
    checkpoint_dir: Optional[Path] = None

    def model_for(self, pane: Pane) -> str:
        """Model of a pane: title variant, else the configured default of its type."""
        if pane.variant:
            return pane.variant
        defaults = self.config.models
        if pane.agent_type == AgentType.CLAUDE:
            return defaults.claude
        if pane.agent_type == AgentType.CODEX:
            return defaults.codex
        if pane.agent_type == AgentType.GEMINI:
            return defaults.gemini
        return ""


class DashboardSources:
    """Builds the SourceSpec list for one dashboard."""

    def __init__(self, ctx: DashboardContext, store: ViewStore) -> None:
        self.ctx = ctx
        self.store = store

    def specs(self) -> list[SourceSpec]:
        iv = self.ctx.intervals
        specs = [
            SourceSpec(
                RefreshSource.SESSION,
                self.fetch_session,
                self.apply_session,
                interval=lambda: iv.pane,
                timeout=constants.SESSION_FETCH_TIMEOUT_S,
                cancellable=True,
                on_error=_session_error,
            ),
            SourceSpec(
                RefreshSource.STATUS,
                self.fetch_status,
                self.apply_status,
                interval=lambda: iv.status,
                timeout=constants.STATUS_FETCH_TIMEOUT_S,
                cancellable=True,
            ),
            SourceSpec(RefreshSource.ALERTS, self.fetch_alerts, _set_panel(RefreshSource.ALERTS), lambda: iv.alerts, constants.DEFAULT_FETCH_TIMEOUT_S),
            SourceSpec(RefreshSource.BEADS, self.fetch_beads, _set_panel(RefreshSource.BEADS), lambda: iv.beads, constants.BEADS_FETCH_TIMEOUT_S),
            SourceSpec(RefreshSource.METRICS, self.fetch_metrics, _set_panel(RefreshSource.METRICS), lambda: iv.metrics, constants.DEFAULT_FETCH_TIMEOUT_S),
            SourceSpec(RefreshSource.ROUTING, self.fetch_routing, _set_panel(RefreshSource.ROUTING), lambda: iv.routing, constants.DEFAULT_FETCH_TIMEOUT_S),
            SourceSpec(
                RefreshSource.HISTORY,
                self.fetch_history,
                _set_panel(RefreshSource.HISTORY),
                lambda: iv.history,
                constants.DEFAULT_FETCH_TIMEOUT_S,
                suspends=False,
            ),
            SourceSpec(
                RefreshSource.FILES,
                self.fetch_files,
                _set_panel(RefreshSource.FILES),
                lambda: iv.files,
                constants.DEFAULT_FETCH_TIMEOUT_S,
                suspends=False,
            ),
            SourceSpec(RefreshSource.CASS, self.fetch_cass, _set_panel(RefreshSource.CASS), lambda: iv.cass, constants.CASS_FETCH_TIMEOUT_S),
            SourceSpec(
                RefreshSource.SCAN,
                self.fetch_scan,
                _set_panel(RefreshSource.SCAN),
                lambda: iv.scan,
                constants.SCAN_FETCH_TIMEOUT_S,
                cancellable=True,
            ),
            SourceSpec(RefreshSource.DCG, self.fetch_dcg, _set_panel(RefreshSource.DCG), lambda: iv.dcg, constants.DCG_FETCH_TIMEOUT_S),
            SourceSpec(
                RefreshSource.CHECKPOINT,
                self.fetch_checkpoint,
                _set_panel(RefreshSource.CHECKPOINT),
                lambda: iv.checkpoint,
                constants.DEFAULT_FETCH_TIMEOUT_S,
            ),
            SourceSpec(RefreshSource.HANDOFF, self.fetch_handoff, _set_panel(RefreshSource.HANDOFF), lambda: iv.handoff, constants.DEFAULT_FETCH_TIMEOUT_S),
            SourceSpec(RefreshSource.MAIL, self.fetch_mail, self.apply_mail, lambda: iv.mail, constants.MAIL_FETCH_TIMEOUT_S),
            SourceSpec(
                RefreshSource.MAIL_INBOX,
                self.fetch_inbox,
                _set_panel(RefreshSource.MAIL_INBOX),
                lambda: iv.mail_inbox,
                constants.DEFAULT_FETCH_TIMEOUT_S,
            ),
            SourceSpec(
                RefreshSource.SPAWN,
                self.fetch_spawn,
                _set_panel(RefreshSource.SPAWN),
                self.spawn_interval,
                constants.DEFAULT_FETCH_TIMEOUT_S,
            ),
        ]
        if not self.ctx.config.dashboard.scan_enabled:
            specs = [s for s in specs if s.source != RefreshSource.SCAN]
        return specs

    def spawn_interval(self) -> float:
        """Fast while a spawn batch is still sending prompts."""
        state = self.store.panel(RefreshSource.SPAWN)
        if isinstance(state, SpawnState) and state.is_active:
            return self.ctx.intervals.spawn_active
        return self.ctx.intervals.spawn_idle

    # --- Session ---

    def fetch_session(self, store: ViewStore) -> FetchThunk:
        ctx = self.ctx
        selected = store.selected_pane_id
        last_captured = dict(store.last_captured)
        cursor = store.capture_cursor

        async def run() -> SessionSnapshot:
            panes = await ctx.enumerator.enumerate(ctx.session)
            plan = plan_pane_captures(panes, selected, last_captured, ctx.intervals.capture_budget, cursor)
            captures = await capture_targets(plan.targets, ctx.intervals.output_lines, capture=ctx.capture)
            return SessionSnapshot(panes=panes, captures=captures, next_cursor=plan.next_cursor)

        return run

    def apply_session(self, store: ViewStore, payload: object, now: datetime) -> None:
        assert isinstance(payload, SessionSnapshot)
        ctx = self.ctx
        store.clear_session_error()
        removed = store.apply_panes(payload.panes)
        if removed:
            valid = {p.id for p in store.panes}
            ctx.detector.forget(valid)
            ctx.compaction.forget(valid)
        store.capture_cursor = payload.next_cursor

        for cap in payload.captures:
            pane = store.pane_by_id(cap.pane_id)
            if pane is None:
                continue
            store.output_cache[pane.id] = cap.text
            store.last_captured[pane.id] = cap.last_activity or now
            store.capture_seq[pane.id] = store.capture_seq.get(pane.id, 0) + 1
            store.rendered_cache.pop(pane.id, None)
            self._analyze(store, pane, cap.text, now)
        store.timeline.prune(now)

    def _analyze(self, store: ViewStore, pane: Pane, text: str, now: datetime) -> None:
        state = store.agents.get(pane.id)
        if state is None:
            return
        ctx = self.ctx
        model = ctx.model_for(pane)
        status = ctx.detector.analyze(
            pane.id, pane.title, pane.agent_type, text, pane.last_activity, model=model, now=now
        )
        event = ctx.compaction.check(pane.id, status.compaction_detected, now)
        if event is not None:
            state.last_compaction = event.detected_at
            state.recovery_sent = False
            self._schedule_recovery(store, pane, event)
        self._apply_agent_status(store, pane, state, status)
        state.context = ctx.estimator.usage(strip_ansi(text), model)

    def _apply_agent_status(self, store: ViewStore, pane: Pane, state: AgentState, status: AgentStatus) -> None:
        state.apply_status(status)
        store.timeline.record_status(store.session, pane, status)

    def _schedule_recovery(self, store: ViewStore, pane: Pane, event: CompactionEvent) -> None:
        mail_name = store.mail_names.get(pane.id, "")
        logger.info("Compaction detected in %s, sending recovery prompt", pane.title or pane.id)
        self.ctx.tasks.spawn(
            self._send_recovery(store, pane.id, mail_name, event.recovery_prompt), name=f"recovery:{pane.id}"
        )

    async def _send_recovery(self, store: ViewStore, pane_id: str, mail_name: str, prompt: str) -> None:
        """Recovery prompt via Agent Mail when the agent has a mail identity, else typed into the pane.

        The pane's recovery_sent flag is set only once delivery succeeded.
        """
        ctx = self.ctx
        try:
            if mail_name and ctx.mail is not None and ctx.session_agent:
                await ctx.mail.send_message(
                    sender_name=ctx.session_agent,
                    to=[mail_name],
                    subject=RECOVERY_SUBJECT,
                    body_md=prompt,
                    importance="high",
                    project_key=ctx.project_dir,
                )
            else:
                await ctx.send_keys(pane_id, prompt)
        except NtmError as e:
            logger.warning("Recovery prompt to %s failed: %s", pane_id, e)
            return
        state = store.agents.get(pane_id)
        if state is not None:
            state.recovery_sent = True

    # --- Status ---

    def fetch_status(self, store: ViewStore) -> FetchThunk:
        ctx = self.ctx
        targets = [
            (pane, store.output_cache[pane.id])
            for pane in store.panes
            if pane.id in store.agents and pane.id in store.output_cache
        ]
        seqs = {pane.id: store.capture_seq.get(pane.id, 0) for pane, _ in targets}

        async def run() -> StatusSnapshot:
            now = datetime.now(timezone.utc)
            # Cached text was already sampled for velocity when it was captured.
            statuses = [
                ctx.detector.analyze(
                    pane.id,
                    pane.title,
                    pane.agent_type,
                    text,
                    pane.last_activity,
                    model=ctx.model_for(pane),
                    now=now,
                    track_velocity=False,
                )
                for pane, text in targets
            ]
            return StatusSnapshot(statuses=statuses, capture_seq=seqs)

        return run

    def apply_status(self, store: ViewStore, payload: object, now: datetime) -> None:
        assert isinstance(payload, StatusSnapshot)
        for status in payload.statuses:
            pane = store.pane_by_id(status.pane_id)
            state = store.agents.get(status.pane_id)
            if pane is None or state is None:
                continue
            if store.capture_seq.get(pane.id, 0) != payload.capture_seq.get(pane.id, 0):
                # A newer capture was analysed while this fetch ran.
                continue
            self._apply_agent_status(store, pane, state, status)

    # --- Alerts ---

    def fetch_alerts(self, store: ViewStore) -> FetchThunk:
        panes = list(store.panes)
        agents = dict(store.agents)
        session_error = store.session_error

        async def run() -> list[Alert]:
            return compute_alerts(panes, agents, session_error, datetime.now(timezone.utc))

        return run

    # --- Beads ---

    def fetch_beads(self, store: ViewStore) -> FetchThunk:
        project_dir = self.ctx.project_dir

        async def run() -> BeadsSummary:
            if not is_installed("bv"):
                return BeadsSummary(available=False, reason="bv not installed")
            return await get_beads_summary(project_dir, limit=5)

        return run

    # --- Metrics ---

    def fetch_metrics(self, store: ViewStore) -> FetchThunk:
        ctx = self.ctx
        targets = [p for p in store.panes if p.is_agent]
        context = {pid: context_percent(state) for pid, state in store.agents.items()}

        async def run() -> MetricsData:
            captures = await capture_targets(targets, constants.METRICS_CAPTURE_LINES, capture=ctx.capture)
            by_id = {p.id: p for p in targets}
            data = MetricsData()
            for cap in captures:
                pane = by_id[cap.pane_id]
                tokens = ctx.estimator.estimate_tokens(strip_ansi(cap.text), ctx.model_for(pane))
                cost = tokens / 1_000_000 * constants.COST_PER_MILLION_TOKENS
                data.agents.append(
                    AgentMetric(
                        name=pane.title or pane.id,
                        agent_type=pane.agent_type.value,
                        tokens=tokens,
                        cost=round(cost, 4),
                        context_percent=context.get(pane.id, 0.0),
                    )
                )
                data.total_tokens += tokens
                data.total_cost += cost
            data.total_cost = round(data.total_cost, 4)
            return data

        return run

    # --- Routing ---

    def fetch_routing(self, store: ViewStore) -> FetchThunk:
        panes = list(store.panes)
        agents = dict(store.agents)

        async def run() -> object:
            return score_agents(panes, agents, datetime.now(timezone.utc))

        return run

    # --- Local files and external tools ---

    def fetch_history(self, store: ViewStore) -> FetchThunk:
        path = self.ctx.history_file

        async def run() -> object:
            return await asyncio.to_thread(probes.read_history, path)

        return run

    def fetch_files(self, store: ViewStore) -> FetchThunk:
        project_dir = self.ctx.project_dir

        async def run() -> object:
            return await probes.recent_file_changes(project_dir)

        return run

    def fetch_cass(self, store: ViewStore) -> FetchThunk:
        session = self.ctx.session

        async def run() -> object:
            return await probes.cass_search(session)

        return run

    def fetch_scan(self, store: ViewStore) -> FetchThunk:
        project_dir = self.ctx.project_dir

        async def run() -> object:
            return await probes.run_scan(project_dir)

        return run

    def fetch_dcg(self, store: ViewStore) -> FetchThunk:
        async def run() -> object:
            return await probes.dcg_status()

        return run

    def fetch_checkpoint(self, store: ViewStore) -> FetchThunk:
        session, base = self.ctx.session, self.ctx.checkpoint_dir

        async def run() -> object:
            return await asyncio.to_thread(probes.checkpoint_status, session, base)

        return run

    def fetch_handoff(self, store: ViewStore) -> FetchThunk:
        project_dir, session = self.ctx.project_dir, self.ctx.session

        async def run() -> object:
            return await asyncio.to_thread(probes.latest_handoff, project_dir, session)

        return run

    def fetch_spawn(self, store: ViewStore) -> FetchThunk:
        project_dir = self.ctx.project_dir

        async def run() -> Optional[SpawnState]:
            try:
                return await asyncio.to_thread(load_spawn_state, project_dir)
            except NtmError as e:
                # An unreadable spawn file means no batch is being tracked.
                logger.debug("Ignoring spawn state: %s", e)
                return None

        return run

    # --- Agent Mail ---

    def fetch_mail(self, store: ViewStore) -> FetchThunk:
        ctx = self.ctx
        panes = [(p.id, p.title) for p in store.panes if p.is_agent]

        async def run() -> MailSnapshot:
            if ctx.mail is None:
                raise NtmError(ErrorKind.UNAVAILABLE, "agent_mail", "agent mail disabled")
            names = await asyncio.to_thread(_mail_names, ctx.session, ctx.project_dir, panes, ctx.fallback_mode)
            if not await ctx.mail.is_available():
                return MailSnapshot(MailStatus(available=True, connected=False), names)
            reservations = await ctx.mail.list_reservations(ctx.project_dir, all_agents=True)
            now = datetime.now(timezone.utc)
            active = [r for r in reservations if r.is_active(now)]
            holders: dict[str, set[str]] = defaultdict(set)
            for r in active:
                if r.exclusive:
                    holders[r.path_pattern].add(r.agent_name)
            status = MailStatus(
                available=True,
                connected=True,
                reservation_count=len(active),
                conflict_count=sum(1 for agents in holders.values() if len(agents) > 1),
                agents=sorted(set(names.values())),
            )
            return MailSnapshot(status, names)

        return run

    def apply_mail(self, store: ViewStore, payload: object, now: datetime) -> None:
        assert isinstance(payload, MailSnapshot)
        store.set_panel(RefreshSource.MAIL, payload.status, now)
        store.mail_names = {pid: name for pid, name in payload.names.items() if store.pane_by_id(pid) is not None}

    def fetch_inbox(self, store: ViewStore) -> FetchThunk:
        ctx = self.ctx
        names = dict(store.mail_names)

        async def run() -> list[InboxSummary]:
            if ctx.mail is None:
                raise NtmError(ErrorKind.UNAVAILABLE, "agent_mail", "agent mail disabled")
            semaphore = asyncio.Semaphore(constants.INBOX_FETCH_WORKERS)

            async def one(pane_id: str, name: str) -> InboxSummary:
                async with semaphore:
                    try:
                        messages = await asyncio.wait_for(
                            ctx.mail.fetch_inbox(  # type: ignore[union-attr]
                                name,
                                limit=constants.INBOX_FETCH_LIMIT,
                                project_key=ctx.project_dir,
                                timeout=constants.INBOX_FETCH_TIMEOUT_S,
                            ),
                            timeout=constants.INBOX_FETCH_TIMEOUT_S,
                        )
                    except asyncio.TimeoutError:
                        return InboxSummary(agent_name=name, pane_id=pane_id, error="timeout")
                    except NtmError as e:
                        return InboxSummary(agent_name=name, pane_id=pane_id, error=e.message)
                unread = [m for m in messages if not m.read]
                return InboxSummary(
                    agent_name=name,
                    pane_id=pane_id,
                    unread=len(unread),
                    urgent=sum(1 for m in unread if m.is_urgent),
                    latest_subject=messages[0].subject if messages else "",
                )

            return list(await asyncio.gather(*(one(pid, name) for pid, name in sorted(names.items()))))

        return run


def _mail_names(
    session: str, project_dir: str, panes: list[tuple[str, str]], fallback_mode: FallbackMode
) -> dict[str, str]:
    registry = load_session_registry(session, project_dir, fallback_mode)
    if registry is None:
        return {}
    names: dict[str, str] = {}
    for pane_id, title in panes:
        name = registry.get_agent(title, pane_id)
        if name:
            names[pane_id] = name
    return names


def _set_panel(source: RefreshSource) -> Callable[[ViewStore, object, datetime], None]:
    def apply(store: ViewStore, payload: object, now: datetime) -> None:
        store.set_panel(source, payload, now)

    return apply


def _session_error(store: ViewStore, err: NtmError) -> None:
    store.set_session_error(err)


def compute_alerts(
    panes: list[Pane],
    agents: dict[str, AgentState],
    session_error: Optional[NtmError],
    now: datetime,
) -> list[Alert]:
    """Alerts derived from the current view: agent errors, rate limits, context pressure, stalls."""
    alerts: list[Alert] = []
    if session_error is not None:
        alerts.append(Alert("session_error", AlertSeverity.CRITICAL, str(session_error)))

    for pane in panes:
        state = agents.get(pane.id)
        if state is None:
            continue
        label = pane.title or pane.id
        if state.display_state == DisplayState.RATE_LIMITED:
            alerts.append(Alert("rate_limited", AlertSeverity.WARNING, f"{label} is rate limited", pane.id))
        elif state.display_state == DisplayState.ERROR:
            kind = state.status.error_kind.value if state.status and state.status.error_kind else "unknown"
            alerts.append(Alert("agent_error", AlertSeverity.CRITICAL, f"{label} error: {kind}", pane.id))

        ctx = context_percent(state)
        if ctx >= constants.CONTEXT_CRITICAL_PERCENT:
            alerts.append(Alert("context_critical", AlertSeverity.CRITICAL, f"{label} context at {ctx:.0f}%", pane.id))
        elif ctx >= constants.CONTEXT_WARNING_PERCENT:
            alerts.append(Alert("context_warning", AlertSeverity.WARNING, f"{label} context at {ctx:.0f}%", pane.id))

        status = state.status
        if status is not None and status.state == AgentStatusState.WORKING and status.last_activity is not None:
            idle = (now - status.last_activity).total_seconds()
            if idle > constants.STALLED_AFTER_S:
                alerts.append(
                    Alert("agent_stalled", AlertSeverity.WARNING, f"{label} has produced no output for {idle / 60:.0f}m", pane.id)
                )
    return alerts


def build_source_specs(ctx: DashboardContext, store: ViewStore) -> list[SourceSpec]:
    """SourceSpecs for every dashboard panel; scan is left out when disabled in config."""
    return DashboardSources(ctx, store).specs()


__all__ = [
    "DashboardContext",
    "DashboardSources",
    "MailSnapshot",
    "SessionSnapshot",
    "StatusSnapshot",
    "build_source_specs",
    "compute_alerts",
]
