"""Agent status snapshots for the coordinator.

Independent of the dashboard store: the coordinator keeps running without
a TUI, so it enumerates and captures panes itself.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from instrukt_ai_logging import get_logger

from ntm.agentmail import AgentMailClient
from ntm.agentmail.session import FallbackMode, load_session_registry
from ntm.config.schema import ModelDefaults
from ntm.constants import CONTEXT_WARNING_PERCENT, PANE_OUTPUT_LINES, STALLED_AFTER_S
from ntm.core.capture_scheduler import CaptureFn, capture_targets
from ntm.core.context_usage import ContextEstimator
from ntm.core.models import AgentStatusState, AgentType, Pane
from ntm.core.pane_enumerator import PaneEnumerator
from ntm.core.patterns import strip_ansi
from ntm.core.status_detector import StatusDetector

logger = get_logger(__name__)


@dataclass
class AgentStatusResult:
    status: AgentStatusState = AgentStatusState.UNKNOWN
    context_usage: float = 0.0
    last_activity: Optional[datetime] = None
    velocity: float = 0.0
    healthy: bool = True
    error_message: str = ""


@dataclass
class HealthCheck:
    pane_id: str
    agent_type: str
    healthy: bool
    issues: list[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class AgentMonitor:
    """Enumerates agent panes and classifies each one."""

    def __init__(
        self,
        session: str,
        project_key: str,
        enumerator: Optional[PaneEnumerator] = None,
        capture: Optional[CaptureFn] = None,
        detector: Optional[StatusDetector] = None,
        estimator: Optional[ContextEstimator] = None,
        models: Optional[ModelDefaults] = None,
        lines: int = PANE_OUTPUT_LINES,
        fallback_mode: FallbackMode = "legacy-compat",
    ) -> None:
        self.session = session
        self.project_key = project_key
        self.enumerator = enumerator or PaneEnumerator()
        self.capture = capture
        self.estimator = estimator or ContextEstimator()
        self.detector = detector or StatusDetector(self.estimator)
        self.models = models or ModelDefaults()
        self.lines = lines
        self.fallback_mode = fallback_mode

    def model_for(self, pane: Pane) -> str:
        if pane.variant:
            return pane.variant
        return str(getattr(self.models, pane.agent_type.value, ""))

    async def poll(self, now: Optional[datetime] = None) -> list[tuple[Pane, AgentStatusResult]]:
        """Status of every agent pane, in pane order.

        Raises:
            NtmError: when the session cannot be enumerated
        """
        now = now or datetime.now(timezone.utc)
        panes = [p for p in await self.enumerator.enumerate(self.session) if p.is_agent]
        captures = {c.pane_id: c for c in await capture_targets(panes, self.lines, capture=self.capture)}

        results: list[tuple[Pane, AgentStatusResult]] = []
        valid: set[str] = set()
        for pane in panes:
            valid.add(pane.id)
            cap = captures.get(pane.id)
            if cap is None:
                results.append(
                    (pane, AgentStatusResult(last_activity=pane.last_activity, healthy=False, error_message="capture failed"))
                )
                continue
            model = self.model_for(pane)
            status = self.detector.analyze(
                pane.id, pane.title, pane.agent_type, cap.text, pane.last_activity, model=model, now=now
            )
            usage = self.estimator.usage(strip_ansi(cap.text), model)
            results.append(
                (
                    pane,
                    AgentStatusResult(
                        status=status.state,
                        context_usage=usage.usage_percent,
                        last_activity=status.last_activity,
                        velocity=status.token_velocity,
                        healthy=status.state != AgentStatusState.ERROR,
                    ),
                )
            )
        self.detector.forget(valid)
        return results

    def mail_names(self, panes: list[Pane]) -> dict[str, str]:
        """Pane id -> Agent Mail name from the session registry."""
        registry = load_session_registry(self.session, self.project_key, self.fallback_mode)
        if registry is None:
            return {}
        names: dict[str, str] = {}
        for pane in panes:
            name = registry.get_agent(pane.title, pane.id)
            if name:
                names[pane.id] = name
        return names

    async def reservations_for(
        self, client: Optional[AgentMailClient], agent_name: str, now: Optional[datetime] = None
    ) -> list[str]:
        """Patterns of the active reservations held by one agent."""
        if client is None or not agent_name:
            return []
        now = now or datetime.now(timezone.utc)
        reservations = await client.list_reservations(self.project_key, agent_name=agent_name)
        return [r.path_pattern for r in reservations if r.is_active(now)]


def check_health(
    pane_id: str, agent_type: AgentType, result: AgentStatusResult, now: Optional[datetime] = None
) -> HealthCheck:
    now = now or datetime.now(timezone.utc)
    issues: list[str] = []
    if not result.healthy and result.error_message:
        issues.append(result.error_message)
    if result.status == AgentStatusState.ERROR:
        issues.append("agent in error state")
    if (
        result.status == AgentStatusState.WORKING
        and result.last_activity is not None
        and (now - result.last_activity).total_seconds() > STALLED_AFTER_S
    ):
        issues.append("agent appears stalled")
    if result.context_usage > CONTEXT_WARNING_PERCENT:
        issues.append(f"context usage high (>{CONTEXT_WARNING_PERCENT:.0f}%)")
    return HealthCheck(pane_id=pane_id, agent_type=agent_type.value, healthy=result.healthy, issues=issues, timestamp=now)
