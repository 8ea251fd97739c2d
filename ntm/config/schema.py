"""Pydantic schema for ntm.yml."""

from typing import Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ntm import constants


class DashboardSettings(BaseModel):
    model_config = ConfigDict(extra="allow")
    tick_ms: int = constants.TICK_INTERVAL_MS
    pane_refresh_ms: int = constants.PANE_REFRESH_MS
    status_refresh_ms: int = constants.STATUS_REFRESH_MS
    alerts_refresh_ms: int = constants.ALERTS_REFRESH_MS
    beads_refresh_ms: int = constants.BEADS_REFRESH_MS
    metrics_refresh_ms: int = constants.METRICS_REFRESH_MS
    routing_refresh_ms: int = constants.ROUTING_REFRESH_MS
    history_refresh_ms: int = constants.HISTORY_REFRESH_MS
    files_refresh_ms: int = constants.FILES_REFRESH_MS
    cass_refresh_ms: int = constants.CASS_REFRESH_MS
    scan_refresh_ms: int = constants.SCAN_REFRESH_MS
    dcg_refresh_ms: int = constants.DCG_REFRESH_MS
    checkpoint_refresh_ms: int = constants.CHECKPOINT_REFRESH_MS
    handoff_refresh_ms: int = constants.HANDOFF_REFRESH_MS
    mail_refresh_ms: int = constants.MAIL_REFRESH_MS
    mail_inbox_refresh_ms: int = constants.MAIL_INBOX_REFRESH_MS
    spawn_active_ms: int = constants.SPAWN_ACTIVE_REFRESH_MS
    spawn_idle_ms: int = constants.SPAWN_IDLE_REFRESH_MS
    capture_budget: int = constants.PANE_CAPTURE_BUDGET
    output_lines: int = constants.PANE_OUTPUT_LINES
    scan_enabled: bool = True

    @field_validator("tick_ms")
    @classmethod
    def enforce_min_tick(cls, v: int) -> int:
        # Below the floor the ticker would spin; fall back to the default.
        if v < constants.MIN_TICK_INTERVAL_MS:
            return constants.TICK_INTERVAL_MS
        return v


class CoordinatorSettings(BaseModel):
    model_config = ConfigDict(extra="allow")
    poll_interval_s: float = constants.COORD_POLL_INTERVAL_S
    digest_interval_s: float = constants.COORD_DIGEST_INTERVAL_S
    auto_assign: bool = False
    idle_threshold_s: float = constants.COORD_IDLE_THRESHOLD_S
    assign_only_idle: bool = True
    conflict_notify: bool = True
    conflict_negotiate: bool = False
    send_digests: bool = False
    human_agent: str = constants.COORD_HUMAN_AGENT

    @model_validator(mode="after")
    def enforce_minima(self) -> "CoordinatorSettings":
        if self.poll_interval_s < constants.COORD_MIN_POLL_INTERVAL_S:
            self.poll_interval_s = constants.COORD_POLL_INTERVAL_S
        if self.digest_interval_s < constants.COORD_MIN_DIGEST_INTERVAL_S:
            self.digest_interval_s = constants.COORD_DIGEST_INTERVAL_S
        return self


class AgentMailSettings(BaseModel):
    model_config = ConfigDict(extra="allow")
    enabled: bool = True
    url: str = constants.AGENT_MAIL_DEFAULT_URL
    token: Optional[str] = None
    timeout_s: float = constants.AGENT_MAIL_TIMEOUT_S


class ModelDefaults(BaseModel):
    """Model assumed for each agent type when the pane title carries no variant."""

    model_config = ConfigDict(extra="allow")
    claude: str = "claude-sonnet-4-20250514"
    codex: str = "gpt-4"
    gemini: str = "gemini-2.0-flash"


def _default_context_windows() -> Dict[str, int]:
    return {
        "claude-opus-4": 200_000,
        "claude-sonnet-4": 200_000,
        "claude-3-7-sonnet": 200_000,
        "claude-3-5-sonnet": 200_000,
        "claude-3-5-haiku": 200_000,
        "claude-haiku-4": 200_000,
        "opus": 200_000,
        "sonnet": 200_000,
        "haiku": 200_000,
        "gpt-4o": 128_000,
        "gpt-4.1": 1_047_576,
        "gpt-4-turbo": 128_000,
        "gpt-4": 128_000,
        "gpt-5-codex": 272_000,
        "gpt-5": 272_000,
        "o3": 200_000,
        "o4-mini": 200_000,
        "codex": 272_000,
        "gemini-2.5-pro": 1_048_576,
        "gemini-2.5-flash": 1_048_576,
        "gemini-2.0-flash": 1_048_576,
        "gemini-1.5-pro": 2_097_152,
        "gemini": 1_048_576,
    }


def _default_token_ratios() -> Dict[str, float]:
    # Characters per token by model family.
    return {
        "claude": 3.5,
        "gpt": 4.0,
        "codex": 4.0,
        "o3": 4.0,
        "o4": 4.0,
        "gemini": 4.0,
    }


class ContextTables(BaseModel):
    """Model-dependent tables used for context estimation.

    Kept as configuration because the numbers drift with every model release.
    """

    model_config = ConfigDict(extra="allow")
    context_windows: Dict[str, int] = Field(default_factory=_default_context_windows)
    token_ratios: Dict[str, float] = Field(default_factory=_default_token_ratios)
    default_token_ratio: float = 4.0

    @field_validator("token_ratios")
    @classmethod
    def positive_ratios(cls, v: Dict[str, float]) -> Dict[str, float]:
        for family, ratio in v.items():
            if ratio <= 0:
                raise ValueError(f"Token ratio for {family} must be positive, got {ratio}")
        return v


class RegistrySettings(BaseModel):
    model_config = ConfigDict(extra="allow")
    # "legacy-compat" also reads the un-namespaced session agent file.
    fallback_mode: Literal["strict", "legacy-compat"] = "legacy-compat"


class NtmConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    project_dir: Optional[str] = None
    dashboard: DashboardSettings = Field(default_factory=DashboardSettings)
    coordinator: CoordinatorSettings = Field(default_factory=CoordinatorSettings)
    agent_mail: AgentMailSettings = Field(default_factory=AgentMailSettings)
    models: ModelDefaults = Field(default_factory=ModelDefaults)
    context: ContextTables = Field(default_factory=ContextTables)
    session_registry: RegistrySettings = Field(default_factory=RegistrySettings)
