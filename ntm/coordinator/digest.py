"""Periodic fleet digest sent to the human operator."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

from ntm.constants import CONTEXT_WARNING_PERCENT, DIGEST_STALLED_AFTER_S
from ntm.core.models import AgentStatusState
from ntm.coordinator.models import CoordinatedAgent


@dataclass
class AgentDigestStatus:
    pane_index: int
    agent_type: str
    status: str
    context_usage: float
    idle_for: str = ""
    task: str = ""


@dataclass
class DigestSummary:
    session: str
    generated_at: datetime
    agent_count: int = 0
    active_count: int = 0
    idle_count: int = 0
    error_count: int = 0
    agent_statuses: list[AgentDigestStatus] = field(default_factory=list)
    alerts: list[str] = field(default_factory=list)

    @property
    def importance(self) -> str:
        if self.error_count:
            return "urgent"
        if self.alerts:
            return "high"
        return "normal"


def format_duration(seconds: float) -> str:
    seconds = max(0, int(seconds))
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m"
    return f"{seconds // 3600}h{(seconds % 3600) // 60}m"


def generate_digest(session: str, agents: Iterable[CoordinatedAgent], now: datetime) -> DigestSummary:
    """Counts by state plus alerts for errors, stalls and context pressure."""
    digest = DigestSummary(session=session, generated_at=now)
    for agent in sorted(agents, key=lambda a: a.pane_index):
        digest.agent_count += 1
        label = f"Agent {agent.pane_index} ({agent.agent_type})"
        entry = AgentDigestStatus(
            pane_index=agent.pane_index,
            agent_type=agent.agent_type,
            status=agent.status.value,
            context_usage=agent.context_usage,
            task=agent.current_task,
        )
        idle_s = (now - agent.last_activity).total_seconds() if agent.last_activity else None

        if agent.status == AgentStatusState.IDLE:
            digest.idle_count += 1
            if idle_s is not None:
                entry.idle_for = format_duration(idle_s)
        elif agent.status == AgentStatusState.WORKING:
            digest.active_count += 1
            if idle_s is not None and idle_s > DIGEST_STALLED_AFTER_S:
                digest.alerts.append(f"{label} appears stalled")
        elif agent.status == AgentStatusState.ERROR:
            digest.error_count += 1
            digest.alerts.append(f"{label} in error state")

        if agent.context_usage > CONTEXT_WARNING_PERCENT:
            digest.alerts.append(f"{label} context at {agent.context_usage:.0f}%")
        digest.agent_statuses.append(entry)
    return digest


def format_digest_markdown(digest: DigestSummary, coordinator_name: str) -> str:
    lines = [
        f"# Session Digest: {digest.session}",
        "",
        f"**Generated:** {digest.generated_at.isoformat()}",
        "",
        "## Summary",
        "",
        f"- **Total Agents:** {digest.agent_count}",
        f"- **Active:** {digest.active_count}",
        f"- **Idle:** {digest.idle_count}",
    ]
    if digest.error_count:
        lines.append(f"- **Errors:** {digest.error_count}")
    lines.append("")

    if digest.alerts:
        lines += ["## Alerts", ""]
        lines += [f"- {alert}" for alert in digest.alerts]
        lines.append("")

    lines += [
        "## Agent Status",
        "",
        "| Pane | Type | Status | Context | Idle For |",
        "|------|------|--------|---------|----------|",
    ]
    for a in digest.agent_statuses:
        lines.append(f"| {a.pane_index} | {a.agent_type} | {a.status} | {a.context_usage:.0f}% | {a.idle_for or '-'} |")
    lines += ["", "---", f"*Coordinator: {coordinator_name}*"]
    return "\n".join(lines) + "\n"
