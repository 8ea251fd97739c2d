"""Data models for panes, agent status and per-pane view state."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class AgentType(str, Enum):
    """Agent kind bound to a pane."""

    CLAUDE = "claude"
    CODEX = "codex"
    GEMINI = "gemini"
    USER = "user"
    UNKNOWN = "unknown"

    @property
    def short(self) -> str:
        return _SHORT_NAMES.get(self, self.value)

    @property
    def is_agent(self) -> bool:
        return self in (AgentType.CLAUDE, AgentType.CODEX, AgentType.GEMINI)

    @classmethod
    def from_str(cls, value: str) -> "AgentType":
        """Parse long or short names ("claude"/"cc", "codex"/"cod", "gemini"/"gmi")."""
        normalized = value.strip().lower()
        for agent_type, short in _SHORT_NAMES.items():
            if normalized in (agent_type.value, short):
                return agent_type
        if normalized == AgentType.USER.value:
            return AgentType.USER
        return AgentType.UNKNOWN

    @classmethod
    def from_title(cls, title: str) -> "AgentType":
        """Substring match of a free-form pane title against the agent table."""
        lowered = title.lower()
        for needle, agent_type in _TITLE_TABLE:
            if needle in lowered:
                return agent_type
        return AgentType.USER

    @classmethod
    def from_command(cls, command: str) -> "AgentType":
        """Fallback detection from the pane's foreground command."""
        cmd = command.strip().lower()
        for names, agent_type in _COMMAND_TABLE:
            for name in names:
                if cmd == name or cmd.startswith(name + " ") or f"/{name}" in cmd:
                    return agent_type
        return AgentType.USER


_SHORT_NAMES = {
    AgentType.CLAUDE: "cc",
    AgentType.CODEX: "cod",
    AgentType.GEMINI: "gmi",
}

# Long names first so "codex" is not read as "cod" + "ex" noise.
_TITLE_TABLE = (
    ("claude", AgentType.CLAUDE),
    ("codex", AgentType.CODEX),
    ("gemini", AgentType.GEMINI),
    ("cc", AgentType.CLAUDE),
    ("cod", AgentType.CODEX),
    ("gmi", AgentType.GEMINI),
)

_COMMAND_TABLE = (
    (("claude", "cc"), AgentType.CLAUDE),
    (("codex", "cod"), AgentType.CODEX),
    (("gemini", "gmi"), AgentType.GEMINI),
)

# {session}__{type}_{index}[_variant][tags]
_PANE_TITLE_RE = re.compile(r"^.+__([\w-]+?)_(\d+)(?:_([A-Za-z0-9._/@:+-]+))?(?:\[([^\]]*)\])?$")


@dataclass(frozen=True)
class ParsedTitle:
    agent_type: AgentType
    ntm_index: int
    variant: str
    tags: tuple[str, ...]


def parse_pane_title(title: str) -> Optional[ParsedTitle]:
    """Parse an NTM-formatted pane title.

    Returns None when the title does not follow `{session}__{type}_{index}`.
    """
    match = _PANE_TITLE_RE.match(title)
    if not match:
        return None
    tags = tuple(t.strip() for t in (match.group(4) or "").split(",") if t.strip())
    return ParsedTitle(
        agent_type=AgentType.from_str(match.group(1)),
        ntm_index=int(match.group(2)),
        variant=match.group(3) or "",
        tags=tags,
    )


def detect_agent_type(title: str, command: str = "") -> AgentType:
    """Detect the agent type of a pane from its title, then its command."""
    parsed = parse_pane_title(title)
    if parsed and parsed.agent_type != AgentType.UNKNOWN:
        return parsed.agent_type
    from_title = AgentType.from_title(title)
    if from_title != AgentType.USER:
        return from_title
    if parsed:
        # NTM-formatted title with an agent type we do not know.
        return AgentType.UNKNOWN
    return AgentType.from_command(command)


@dataclass
class Pane:
    """A tmux pane as seen by the dashboard.

    `id` is the stable identity (e.g. "%3"); `index` is display only.
    """

    id: str
    index: int
    title: str = ""
    agent_type: AgentType = AgentType.USER
    variant: str = ""
    command: str = ""
    width: int = 0
    height: int = 0
    active: bool = False
    pid: int = 0
    window_index: int = 0
    ntm_index: int = 0
    tags: tuple[str, ...] = ()
    last_activity: Optional[datetime] = None

    @property
    def is_agent(self) -> bool:
        return self.agent_type != AgentType.USER


class AgentStatusState(str, Enum):
    """Raw classification from captured output."""

    WORKING = "working"
    IDLE = "idle"
    ERROR = "error"
    UNKNOWN = "unknown"


class DisplayState(str, Enum):
    """State rendered by the dashboard."""

    WORKING = "working"
    IDLE = "idle"
    ERROR = "error"
    RATE_LIMITED = "rate_limited"
    COMPACTED = "compacted"
    UNKNOWN = "unknown"


class AgentErrorKind(str, Enum):
    RATE_LIMIT = "rate_limit"
    CRASH = "crash"
    TOOL_ERROR = "tool_error"
    AUTH = "auth"
    NETWORK = "network"
    UNKNOWN = "unknown"


class HealthStatus(str, Enum):
    OK = "ok"
    WARNING = "warning"
    ERROR = "error"


@dataclass
class ContextUsage:
    tokens_used: int = 0
    tokens_limit: int = 0
    usage_percent: float = 0.0
    model_name: str = ""


@dataclass
class AgentHealth:
    status: HealthStatus = HealthStatus.OK
    issues: list[str] = field(default_factory=list)
    restarts_last_hour: int = 0
    uptime_seconds: float = 0.0


@dataclass
class AgentStatus:
    """Output of one status detection pass over a pane."""

    pane_id: str
    pane_title: str
    agent_type: AgentType
    state: AgentStatusState
    error_kind: Optional[AgentErrorKind] = None
    context_percent: float = 0.0
    token_count: int = 0
    token_velocity: float = 0.0
    last_output: str = ""
    last_activity: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    compaction_detected: bool = False

    @property
    def is_rate_limited(self) -> bool:
        return self.state == AgentStatusState.ERROR and self.error_kind == AgentErrorKind.RATE_LIMIT


def display_state_for(status: AgentStatus, compacted: bool) -> DisplayState:
    """Map a raw status onto the rendered state.

    rate_limited > error > compacted > working > idle. Compaction overrides
    working/idle but never an error.
    """
    if status.is_rate_limited:
        return DisplayState.RATE_LIMITED
    if status.state == AgentStatusState.ERROR:
        return DisplayState.ERROR
    if compacted:
        return DisplayState.COMPACTED
    return DisplayState(status.state.value)


@dataclass
class AgentState:
    """Derived per-pane state held by the view-model store."""

    pane_id: str
    display_state: DisplayState = DisplayState.UNKNOWN
    status: Optional[AgentStatus] = None
    context: ContextUsage = field(default_factory=ContextUsage)
    token_velocity: float = 0.0
    last_compaction: Optional[datetime] = None
    recovery_sent: bool = False
    is_rotating: bool = False
    rotated_at: Optional[datetime] = None
    health: AgentHealth = field(default_factory=AgentHealth)

    def apply_status(self, status: AgentStatus) -> None:
        self.status = status
        self.token_velocity = status.token_velocity
        # Stays compacted for the rest of the session; errors still take precedence.
        compacted = self.last_compaction is not None
        self.display_state = display_state_for(status, compacted)
        if status.state == AgentStatusState.ERROR:
            self.health.status = HealthStatus.ERROR
            self.health.issues = [status.error_kind.value if status.error_kind else "error"]
        elif self.health.status == HealthStatus.ERROR:
            self.health.status = HealthStatus.OK
            self.health.issues = []
