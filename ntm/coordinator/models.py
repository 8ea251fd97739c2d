"""Coordinator state and events."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from ntm import constants
from ntm.config.schema import CoordinatorSettings
from ntm.core.models import AgentStatusState


@dataclass
class CoordinatedAgent:
    """What the coordinator knows about one agent pane."""

    pane_id: str
    pane_index: int
    agent_type: str
    mail_name: str = ""
    status: AgentStatusState = AgentStatusState.UNKNOWN
    context_usage: float = 0.0
    last_activity: Optional[datetime] = None
    current_task: str = ""
    reservations: list[str] = field(default_factory=list)
    healthy: bool = True


class CoordinatorEventType(str, Enum):
    AGENT_IDLE = "agent_idle"
    AGENT_BUSY = "agent_busy"
    AGENT_ERROR = "agent_error"
    AGENT_RECOVERED = "agent_recovered"
    CONFLICT_DETECTED = "conflict_detected"
    CONFLICT_RESOLVED = "conflict_resolved"
    WORK_ASSIGNED = "work_assigned"
    DIGEST_SENT = "digest_sent"


@dataclass
class CoordinatorEvent:
    type: CoordinatorEventType
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    agent_id: str = ""
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class CoordinatorConfig:
    poll_interval_s: float = constants.COORD_POLL_INTERVAL_S
    digest_interval_s: float = constants.COORD_DIGEST_INTERVAL_S
    auto_assign: bool = False
    idle_threshold_s: float = constants.COORD_IDLE_THRESHOLD_S
    assign_only_idle: bool = True
    conflict_notify: bool = True
    conflict_negotiate: bool = False
    send_digests: bool = False
    human_agent: str = constants.COORD_HUMAN_AGENT

    def normalized(self) -> "CoordinatorConfig":
        """Copy with too-small intervals replaced by the defaults."""
        poll = self.poll_interval_s
        if poll < constants.COORD_MIN_POLL_INTERVAL_S:
            poll = constants.COORD_POLL_INTERVAL_S
        digest = self.digest_interval_s
        if digest < constants.COORD_MIN_DIGEST_INTERVAL_S:
            digest = constants.COORD_DIGEST_INTERVAL_S
        return CoordinatorConfig(
            poll_interval_s=poll,
            digest_interval_s=digest,
            auto_assign=self.auto_assign,
            idle_threshold_s=self.idle_threshold_s,
            assign_only_idle=self.assign_only_idle,
            conflict_notify=self.conflict_notify,
            conflict_negotiate=self.conflict_negotiate,
            send_digests=self.send_digests,
            human_agent=self.human_agent or constants.COORD_HUMAN_AGENT,
        )

    @classmethod
    def from_settings(cls, settings: CoordinatorSettings) -> "CoordinatorConfig":
        return cls(
            poll_interval_s=settings.poll_interval_s,
            digest_interval_s=settings.digest_interval_s,
            auto_assign=settings.auto_assign,
            idle_threshold_s=settings.idle_threshold_s,
            assign_only_idle=settings.assign_only_idle,
            conflict_notify=settings.conflict_notify,
            conflict_negotiate=settings.conflict_negotiate,
            send_digests=settings.send_digests,
            human_agent=settings.human_agent,
        ).normalized()
