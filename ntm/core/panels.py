"""Refresh sources and the panel payloads they produce."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class RefreshSource(str, Enum):
    """Data sources driven by the refresh orchestrator."""

    SESSION = "session"
    STATUS = "status"
    ALERTS = "alerts"
    BEADS = "beads"
    METRICS = "metrics"
    ROUTING = "routing"
    HISTORY = "history"
    FILES = "files"
    CASS = "cass"
    SCAN = "scan"
    DCG = "dcg"
    CHECKPOINT = "checkpoint"
    HANDOFF = "handoff"
    MAIL = "mail"
    MAIL_INBOX = "mail_inbox"
    SPAWN = "spawn"


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass
class Alert:
    kind: str
    severity: AlertSeverity
    message: str
    pane_id: str = ""


@dataclass
class AgentMetric:
    name: str
    agent_type: str
    tokens: int
    cost: float
    context_percent: float


@dataclass
class MetricsData:
    total_tokens: int = 0
    total_cost: float = 0.0
    agents: list[AgentMetric] = field(default_factory=list)


@dataclass
class RoutingScore:
    score: float
    is_recommended: bool
    state: str
    excluded: bool = False


@dataclass
class HistoryEntry:
    timestamp: Optional[datetime]
    session: str
    prompt: str
    targets: list[str] = field(default_factory=list)
    source: str = ""


@dataclass
class FileChange:
    path: str
    status: str
    modified_at: Optional[datetime] = None


@dataclass
class CassHit:
    title: str
    source_path: str = ""
    score: float = 0.0
    snippet: str = ""


class ScanState(str, Enum):
    CLEAN = "clean"
    WARNING = "warning"
    CRITICAL = "critical"
    UNAVAILABLE = "unavailable"


@dataclass
class ScanStatus:
    state: ScanState
    critical: int = 0
    warning: int = 0
    info: int = 0
    files: int = 0
    duration_s: float = 0.0


@dataclass
class DcgStatus:
    available: bool
    version: str = ""


class CheckpointState(str, Enum):
    RECENT = "recent"
    STALE = "stale"
    OLD = "old"
    NONE = "none"


@dataclass
class CheckpointStatus:
    state: CheckpointState
    count: int = 0
    latest_at: Optional[datetime] = None


@dataclass
class HandoffStatus:
    goal: str = ""
    now: str = ""
    path: str = ""
    status: str = ""
    age_s: Optional[float] = None


@dataclass
class MailStatus:
    available: bool
    connected: bool = False
    reservation_count: int = 0
    conflict_count: int = 0
    agents: list[str] = field(default_factory=list)


@dataclass
class InboxSummary:
    agent_name: str
    pane_id: str = ""
    unread: int = 0
    urgent: int = 0
    latest_subject: str = ""
    error: str = ""
