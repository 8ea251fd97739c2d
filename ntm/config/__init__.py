"""Configuration management.

Config is read from `ntm.yml` (path from NTM_CONFIG_PATH, default
`~/.config/ntm/ntm.yml`) and overlaid with environment overrides:
    from ntm.config import get_config, refresh_intervals_from_env
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv
from instrukt_ai_logging import get_logger

from ntm import constants
from ntm.config.loader import load_ntm_config
from ntm.config.schema import CoordinatorSettings, DashboardSettings, NtmConfig
from ntm.utils import ntm_config_dir

logger = get_logger(__name__)

_env_path = os.getenv("NTM_ENV_PATH")
if _env_path:
    load_dotenv(Path(_env_path).expanduser())
else:
    load_dotenv()

_config: Optional[NtmConfig] = None


def default_config_path() -> Path:
    env_path = os.getenv("NTM_CONFIG_PATH")
    if env_path:
        return Path(env_path).expanduser()
    return ntm_config_dir() / "ntm.yml"


def get_config(path: Optional[Path] = None, reload: bool = False) -> NtmConfig:
    """Return the process-wide config, loading it on first use."""
    global _config
    if _config is None or reload or path is not None:
        cfg = load_ntm_config(path or default_config_path())
        _apply_agent_mail_env(cfg, os.environ)
        _config = cfg
    return _config


def _apply_agent_mail_env(cfg: NtmConfig, env: Mapping[str, str]) -> None:
    url = env.get("AGENT_MAIL_URL")
    if url:
        cfg.agent_mail.url = url
    token = env.get("AGENT_MAIL_TOKEN")
    if token:
        cfg.agent_mail.token = token
    enabled = env.get("AGENT_MAIL_ENABLED")
    if enabled:
        cfg.agent_mail.enabled = enabled.strip().lower() in ("1", "true", "yes", "on")


def _env_positive_int(env: Mapping[str, str], name: str) -> Optional[int]:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        value = int(raw.strip())
    except ValueError:
        logger.warning("Ignoring invalid %s=%r (expected positive integer)", name, raw)
        return None
    if value <= 0:
        logger.warning("Ignoring non-positive %s=%r", name, raw)
        return None
    return value


def _env_non_negative_float(env: Mapping[str, str], name: str) -> Optional[float]:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        value = float(raw.strip())
    except ValueError:
        logger.warning("Ignoring invalid %s=%r (expected number)", name, raw)
        return None
    if value < 0:
        logger.warning("Ignoring negative %s=%r", name, raw)
        return None
    return value


@dataclass
class RefreshIntervals:
    """Per-source cadences in seconds plus capture sizing."""

    tick: float
    pane: float
    status: float
    alerts: float
    beads: float
    metrics: float
    routing: float
    history: float
    files: float
    cass: float
    scan: float
    dcg: float
    checkpoint: float
    handoff: float
    mail: float
    mail_inbox: float
    spawn_active: float
    spawn_idle: float
    capture_budget: int
    output_lines: int


# (RefreshIntervals field, DashboardSettings field, env var)
_INTERVAL_OVERRIDES = (
    ("tick", "tick_ms", "NTM_DASH_TICK_MS"),
    ("pane", "pane_refresh_ms", "NTM_DASH_PANE_REFRESH_MS"),
    ("status", "status_refresh_ms", "NTM_DASH_STATUS_REFRESH_MS"),
    ("alerts", "alerts_refresh_ms", "NTM_DASH_ALERTS_REFRESH_MS"),
    ("beads", "beads_refresh_ms", "NTM_DASH_BEADS_REFRESH_MS"),
    ("metrics", "metrics_refresh_ms", "NTM_DASH_METRICS_REFRESH_MS"),
    ("routing", "routing_refresh_ms", "NTM_DASH_ROUTING_REFRESH_MS"),
    ("history", "history_refresh_ms", "NTM_DASH_HISTORY_REFRESH_MS"),
    ("files", "files_refresh_ms", "NTM_DASH_FILES_REFRESH_MS"),
    ("cass", "cass_refresh_ms", "NTM_DASH_CASS_REFRESH_MS"),
    ("scan", "scan_refresh_ms", "NTM_DASH_SCAN_REFRESH_MS"),
    ("dcg", "dcg_refresh_ms", "NTM_DASH_DCG_REFRESH_MS"),
    ("checkpoint", "checkpoint_refresh_ms", "NTM_DASH_CHECKPOINT_REFRESH_MS"),
    ("handoff", "handoff_refresh_ms", "NTM_DASH_HANDOFF_REFRESH_MS"),
    ("mail", "mail_refresh_ms", "NTM_DASH_MAIL_REFRESH_MS"),
    ("mail_inbox", "mail_inbox_refresh_ms", "NTM_DASH_INBOX_REFRESH_MS"),
    ("spawn_active", "spawn_active_ms", "NTM_DASH_SPAWN_ACTIVE_MS"),
    ("spawn_idle", "spawn_idle_ms", "NTM_DASH_SPAWN_IDLE_MS"),
)


def refresh_intervals_from_env(
    settings: Optional[DashboardSettings] = None,
    env: Optional[Mapping[str, str]] = None,
) -> RefreshIntervals:
    """Build refresh intervals from dashboard settings overlaid with env overrides.

    Invalid or non-positive overrides are ignored. The tick never drops below
    the 100 ms floor.
    """
    settings = settings or DashboardSettings()
    env = os.environ if env is None else env

    values: dict[str, float] = {}
    for field_name, settings_field, env_name in _INTERVAL_OVERRIDES:
        ms = _env_positive_int(env, env_name) or getattr(settings, settings_field)
        values[field_name] = ms / 1000.0

    if values["tick"] * 1000 < constants.MIN_TICK_INTERVAL_MS:
        values["tick"] = constants.TICK_INTERVAL_MS / 1000.0

    budget = _env_positive_int(env, "NTM_DASH_CAPTURE_BUDGET") or settings.capture_budget
    lines = _env_positive_int(env, "NTM_DASH_OUTPUT_LINES") or settings.output_lines
    return RefreshIntervals(capture_budget=budget, output_lines=lines, **values)


def coordinator_settings_from_env(
    settings: Optional[CoordinatorSettings] = None,
    env: Optional[Mapping[str, str]] = None,
) -> CoordinatorSettings:
    """Overlay coordinator env overrides; minima are enforced by the model."""
    settings = settings or CoordinatorSettings()
    env = os.environ if env is None else env
    data = settings.model_dump()
    poll = _env_non_negative_float(env, "NTM_COORD_POLL_SECONDS")
    if poll is not None:
        data["poll_interval_s"] = poll
    digest = _env_non_negative_float(env, "NTM_COORD_DIGEST_SECONDS")
    if digest is not None:
        data["digest_interval_s"] = digest
    idle = _env_non_negative_float(env, "NTM_COORD_IDLE_THRESHOLD")
    if idle is not None:
        data["idle_threshold_s"] = idle
    return CoordinatorSettings.model_validate(data)


__all__ = [
    "NtmConfig",
    "RefreshIntervals",
    "coordinator_settings_from_env",
    "default_config_path",
    "get_config",
    "refresh_intervals_from_env",
]
