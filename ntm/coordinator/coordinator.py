"""Session coordinator: an active loop beside the dashboard.

Polls agent states, detects reservation conflicts every few polls, assigns
triage work to idle agents when enabled and sends a periodic digest to the
human operator. Observers read `events`, a bounded queue that drops events
when full.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Optional

from instrukt_ai_logging import get_logger

from ntm.agentmail import AgentMailClient
from ntm.beads import TriageRecommendation, get_triage
from ntm.constants import COORD_CONFLICT_CHECK_EVERY, COORD_EVENT_BUFFER, DEFAULT_SESSION_AGENT_NAME
from ntm.core.errors import ErrorKind, NtmError
from ntm.core.models import AgentStatusState
from ntm.core.task_registry import TaskRegistry
from ntm.coordinator import conflicts as conflict_ops
from ntm.coordinator.assign import AssignmentResult, WorkAssignment, find_best_match, format_assignment_message
from ntm.coordinator.conflicts import Conflict, ConflictDetector, Holder
from ntm.coordinator.digest import DigestSummary, format_digest_markdown, generate_digest
from ntm.coordinator.models import CoordinatedAgent, CoordinatorConfig, CoordinatorEvent, CoordinatorEventType
from ntm.coordinator.monitor import AgentMonitor

logger = get_logger(__name__)


def transition_event(prev: AgentStatusState, new: AgentStatusState) -> Optional[CoordinatorEventType]:
    """Event for a status change; None when the change is not interesting."""
    if new == AgentStatusState.ERROR:
        return CoordinatorEventType.AGENT_ERROR
    if prev == AgentStatusState.ERROR:
        return CoordinatorEventType.AGENT_RECOVERED
    if new == AgentStatusState.IDLE:
        return CoordinatorEventType.AGENT_IDLE
    if new == AgentStatusState.WORKING:
        return CoordinatorEventType.AGENT_BUSY
    return None


class SessionCoordinator:
    """Coordinates the agents of one tmux session through Agent Mail."""

    def __init__(
        self,
        session: str,
        project_key: str,
        client: Optional[AgentMailClient],
        agent_name: str = "",
        config: Optional[CoordinatorConfig] = None,
        monitor: Optional[AgentMonitor] = None,
        detector: Optional[ConflictDetector] = None,
        registry: Optional[TaskRegistry] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.session = session
        self.project_key = project_key
        self.client = client
        self.agent_name = agent_name or DEFAULT_SESSION_AGENT_NAME
        self.config = (config or CoordinatorConfig()).normalized()
        self.monitor = monitor or AgentMonitor(session, project_key)
        self.conflict_detector = detector or ConflictDetector(client, project_key)
        self.registry = registry or TaskRegistry()
        self.events: asyncio.Queue[CoordinatorEvent] = asyncio.Queue(maxsize=COORD_EVENT_BUFFER)
        self.last_update: Optional[datetime] = None
        self._agents: dict[str, CoordinatedAgent] = {}
        self._open_conflicts: dict[str, Conflict] = {}
        self._polls = 0
        self._running = False
        self._clock = clock

    # --- Lifecycle ---

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self.registry.spawn(self._monitor_loop(), name=f"coordinator:{self.session}:monitor")
        if self.config.send_digests:
            self.registry.spawn(self._digest_loop(), name=f"coordinator:{self.session}:digest")
        logger.info(
            "Coordinator started for %s (poll %.1fs, digests %s)",
            self.session,
            self.config.poll_interval_s,
            "on" if self.config.send_digests else "off",
        )

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self.registry.cancel_matching(f"coordinator:{self.session}:")
        logger.info("Coordinator stopped for %s", self.session)

    @property
    def running(self) -> bool:
        return self._running

    # --- Agent views (copies) ---

    def agents(self) -> dict[str, CoordinatedAgent]:
        return {pane_id: replace(agent) for pane_id, agent in self._agents.items()}

    def get_agent(self, pane_id: str) -> Optional[CoordinatedAgent]:
        agent = self._agents.get(pane_id)
        return replace(agent) if agent else None

    def idle_agents(self, now: Optional[datetime] = None) -> list[CoordinatedAgent]:
        """Healthy idle agents inactive for at least idle_threshold, by pane index."""
        now = now or self._clock()
        idle: list[CoordinatedAgent] = []
        for agent in sorted(self._agents.values(), key=lambda a: a.pane_index):
            if agent.status != AgentStatusState.IDLE or not agent.healthy:
                continue
            if agent.last_activity is not None:
                inactive = (now - agent.last_activity).total_seconds()
                if inactive < self.config.idle_threshold_s:
                    continue
            idle.append(replace(agent))
        return idle

    # --- Events ---

    def emit(self, event: CoordinatorEvent) -> None:
        try:
            self.events.put_nowait(event)
        except asyncio.QueueFull:
            logger.debug("Coordinator event queue full, dropping %s", event.type.value)

    def _emit(self, event_type: CoordinatorEventType, agent_id: str = "", **details: object) -> None:
        self.emit(CoordinatorEvent(type=event_type, timestamp=self._clock(), agent_id=agent_id, details=dict(details)))

    # --- Monitor ---

    async def update_agent_states(self) -> None:
        """Refresh tracked agents from a new snapshot and emit transition events."""
        snapshot = await self.monitor.poll(self._clock())
        names = self.monitor.mail_names([pane for pane, _ in snapshot])

        seen: set[str] = set()
        for pane, result in snapshot:
            seen.add(pane.id)
            agent = self._agents.get(pane.id)
            existed = agent is not None
            if agent is None:
                agent = CoordinatedAgent(pane_id=pane.id, pane_index=pane.index, agent_type=pane.agent_type.short)
                self._agents[pane.id] = agent

            prev = agent.status
            agent.pane_index = pane.index
            agent.mail_name = names.get(pane.id, agent.mail_name)
            agent.status = result.status
            agent.context_usage = result.context_usage
            agent.last_activity = result.last_activity
            agent.healthy = result.healthy

            if existed and prev != agent.status:
                event_type = transition_event(prev, agent.status)
                if event_type is not None:
                    self._emit(
                        event_type,
                        agent.pane_id,
                        agent_type=agent.agent_type,
                        prev_status=prev.value,
                        new_status=agent.status.value,
                        pane_index=agent.pane_index,
                    )

        for pane_id in [pid for pid in self._agents if pid not in seen]:
            del self._agents[pane_id]
        self.last_update = self._clock()

    async def _monitor_loop(self) -> None:
        while self._running:
            await self.poll_once()
            await asyncio.sleep(self.config.poll_interval_s)

    async def poll_once(self) -> None:
        """One monitor cycle. Failures are logged; the loop keeps going."""
        self._polls += 1
        try:
            await self.update_agent_states()
        except NtmError as e:
            logger.debug("Coordinator poll of %s failed: %s", self.session, e)
            return
        try:
            if self._polls % COORD_CONFLICT_CHECK_EVERY == 0:
                await self.check_conflicts()
            if self.config.auto_assign:
                await self.assign_work()
        except NtmError as e:
            logger.warning("Coordinator cycle for %s failed: %s", self.session, e)

    # --- Conflicts ---

    async def check_conflicts(self) -> list[Conflict]:
        """Detect conflicts; new ones are announced once, vanished ones are resolved."""
        if self.client is None:
            return []
        now = self._clock()
        current = {c.pattern: c for c in await self.conflict_detector.detect(now)}

        for pattern, conflict in current.items():
            if pattern in self._open_conflicts:
                continue
            self._open_conflicts[pattern] = conflict
            logger.info("Reservation conflict on %s: %s", pattern, ", ".join(conflict.holder_names))
            self._emit(
                CoordinatorEventType.CONFLICT_DETECTED,
                conflict_id=conflict.id,
                pattern=pattern,
                holders=len(conflict.holders),
            )
            if self.config.conflict_negotiate and conflict.holders:
                await self.negotiate_conflict(conflict, requester=conflict.holders[0].agent_name)
            elif self.config.conflict_notify:
                await self.notify_conflict(conflict)

        for pattern in [p for p in self._open_conflicts if p not in current]:
            resolved = self._open_conflicts.pop(pattern)
            resolved.resolved_at = now
            resolved.resolution = "released"
            self._emit(CoordinatorEventType.CONFLICT_RESOLVED, conflict_id=resolved.id, pattern=pattern)
        return list(current.values())

    async def notify_conflict(self, conflict: Conflict) -> None:
        if self.client is None:
            return
        await conflict_ops.notify_conflict(self.client, self.agent_name, self.project_key, conflict)

    async def negotiate_conflict(self, conflict: Conflict, requester: str) -> Holder:
        """Ask the lowest-priority other holder to release.

        Raises:
            NtmError: unavailable without a mail client, conflict when nobody else holds the pattern
        """
        if self.client is None:
            raise NtmError(ErrorKind.UNAVAILABLE, "negotiate_conflict", "agent mail not available")
        target = await conflict_ops.negotiate_conflict(self.client, self.agent_name, self.project_key, conflict, requester)
        self._emit(
            CoordinatorEventType.CONFLICT_DETECTED,
            conflict_id=conflict.id,
            pattern=conflict.pattern,
            holders=len(conflict.holders),
            requested=target.agent_name,
        )
        return target

    async def force_release(self, holder: Holder, note: str = "", notify_previous: bool = True) -> None:
        """User-initiated release of another agent's reservation."""
        if self.client is None:
            raise NtmError(ErrorKind.UNAVAILABLE, "force_release", "agent mail not available")
        await conflict_ops.force_release(
            self.client,
            holder,
            requested_by=self.agent_name,
            note=note,
            notify_previous=notify_previous,
            project_key=self.project_key,
        )

    # --- Work assignment ---

    async def assign_work(self) -> list[AssignmentResult]:
        """Give each idle agent one unblocked triage recommendation.

        No-op unless auto_assign is on and at least one idle agent with a
        mail identity exists.
        """
        if not self.config.auto_assign:
            return []
        idle = [a for a in self.idle_agents() if a.mail_name]
        if not idle:
            return []

        triage = await get_triage(self.project_key)
        recommendations = list(triage.recommendations)
        results: list[AssignmentResult] = []
        for agent in idle:
            if not recommendations:
                break
            match = find_best_match(agent, recommendations, self._clock())
            if match is None:
                continue
            assignment, rec = match
            result = await self._attempt_assignment(assignment, rec)
            results.append(result)
            if not result.success:
                continue
            recommendations = [r for r in recommendations if r.id != rec.id]
            tracked = self._agents.get(agent.pane_id)
            if tracked is not None:
                tracked.current_task = rec.id
            self._emit(
                CoordinatorEventType.WORK_ASSIGNED,
                agent.pane_id,
                bead_id=assignment.bead_id,
                bead_title=assignment.bead_title,
                agent_type=agent.agent_type,
                score=assignment.score,
            )
        return results

    async def _attempt_assignment(self, assignment: WorkAssignment, rec: TriageRecommendation) -> AssignmentResult:
        result = AssignmentResult(assignment=assignment)
        if self.client is None or not assignment.agent_mail_name:
            result.error = "no messaging route to agent"
            return result
        try:
            await self.client.send_message(
                sender_name=self.agent_name,
                to=[assignment.agent_mail_name],
                subject=f"Work Assignment: {assignment.bead_title}",
                body_md=format_assignment_message(assignment, rec),
                importance="normal",
                ack_required=True,
                project_key=self.project_key,
            )
        except NtmError as e:
            result.error = f"sending message: {e}"
            return result
        result.message_sent = True
        result.success = True
        return result

    # --- Digest ---

    def generate_digest(self) -> DigestSummary:
        return generate_digest(self.session, self._agents.values(), self._clock())

    async def send_digest(self) -> Optional[DigestSummary]:
        if self.client is None:
            return None
        digest = self.generate_digest()
        await self.client.send_message(
            sender_name=self.agent_name,
            to=[self.config.human_agent],
            subject=f"Session Digest: {self.session}",
            body_md=format_digest_markdown(digest, self.agent_name),
            importance=digest.importance,
            project_key=self.project_key,
        )
        self._emit(
            CoordinatorEventType.DIGEST_SENT,
            agent_count=digest.agent_count,
            active_count=digest.active_count,
            alert_count=len(digest.alerts),
        )
        return digest

    async def _digest_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.config.digest_interval_s)
            try:
                await self.send_digest()
            except NtmError as e:
                logger.warning("Digest for %s failed: %s", self.session, e)
