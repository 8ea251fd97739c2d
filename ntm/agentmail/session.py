"""Per-session Agent Mail identity and pane -> agent name registry.

Files live under `<config>/ntm/sessions/<session>/<project slug>/` so the
same tmux session name reused across projects never collides. Both files
are written atomically with mode 0600 inside 0700 directories.
"""

from __future__ import annotations

import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal, Optional

from instrukt_ai_logging import get_logger
from pydantic import BaseModel, Field, ValidationError

from ntm.agentmail.client import AgentMailClient
from ntm.constants import AGENT_MAIL_MODEL, AGENT_MAIL_PROGRAM, DEFAULT_SESSION_AGENT_NAME
from ntm.core.errors import ErrorKind, NtmError
from ntm.utils import atomic_write_file, ntm_config_dir, project_slug, sanitize_session_name

logger = get_logger(__name__)

FallbackMode = Literal["strict", "legacy-compat"]

AGENT_FILE = "agent.json"
REGISTRY_FILE = "agent_registry.json"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def sessions_base_dir() -> Path:
    return ntm_config_dir() / "sessions"


def session_dir(session: str, project_key: str) -> Path:
    """Namespaced directory; the un-namespaced legacy directory when project_key is empty."""
    base = sessions_base_dir() / session
    if project_key:
        slug = project_slug(project_key) or sanitize_session_name(project_key)
        base = base / slug
    return base


def _same_project(stored: str, requested: str) -> bool:
    return os.path.normpath(stored) == os.path.normpath(requested)


def _write_json(path: Path, model: BaseModel) -> None:
    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    atomic_write_file(path, model.model_dump_json(indent=2).encode("utf-8"), mode=0o600)


class SessionAgentInfo(BaseModel):
    """Registered coordinator identity of a session."""

    agent_name: str
    project_key: str
    registered_at: datetime = Field(default_factory=_utcnow)
    last_active_at: datetime = Field(default_factory=_utcnow)


class SessionAgentRegistry(BaseModel):
    """Pane title / pane id -> Agent Mail agent name for one session."""

    session_name: str
    project_key: str
    agents: dict[str, str] = {}
    pane_id_map: dict[str, str] = {}
    registered_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def add_agent(self, pane_title: str, pane_id: str, agent_name: str) -> None:
        self.agents[pane_title] = agent_name
        if pane_id:
            self.pane_id_map[pane_id] = agent_name

    def agent_by_title(self, pane_title: str) -> Optional[str]:
        return self.agents.get(pane_title)

    def agent_by_id(self, pane_id: str) -> Optional[str]:
        return self.pane_id_map.get(pane_id)

    def get_agent(self, pane_title: str, pane_id: str) -> Optional[str]:
        """Lookup by title first, then by pane id."""
        name = self.agent_by_title(pane_title)
        if name is not None:
            return name
        return self.agent_by_id(pane_id)

    def count(self) -> int:
        return len(self.agents)


# --- Session agent file ---


def session_agent_path(session: str, project_key: str) -> Path:
    return session_dir(session, project_key) / AGENT_FILE


def load_session_agent(
    session: str, project_key: str, fallback_mode: FallbackMode = "legacy-compat"
) -> Optional[SessionAgentInfo]:
    """Load the session agent; None when absent or stored for another project.

    Raises:
        NtmError: validation when the file exists but cannot be parsed
    """
    path = session_agent_path(session, project_key)
    raw = _read_optional(path)
    if raw is None and project_key and fallback_mode == "legacy-compat":
        raw = _read_optional(session_agent_path(session, ""))
    if raw is None:
        return None
    try:
        info = SessionAgentInfo.model_validate_json(raw)
    except ValidationError as e:
        raise NtmError(ErrorKind.VALIDATION, "load_session_agent", f"{path}: {e}") from e
    if project_key and not _same_project(info.project_key, project_key):
        return None
    return info


def save_session_agent(session: str, project_key: str, info: SessionAgentInfo) -> None:
    _write_json(session_agent_path(session, project_key), info)


def delete_session_agent(session: str, project_key: str) -> None:
    session_agent_path(session, project_key).unlink(missing_ok=True)


# --- Registry file ---


def registry_path(session: str, project_key: str) -> Path:
    return session_dir(session, project_key) / REGISTRY_FILE


def load_session_registry(
    session: str, project_key: str, fallback_mode: FallbackMode = "legacy-compat"
) -> Optional[SessionAgentRegistry]:
    """Load the pane registry; None when absent or stored for another project."""
    path = registry_path(session, project_key)
    raw = _read_optional(path)
    if raw is None and project_key and fallback_mode == "legacy-compat":
        raw = _read_optional(registry_path(session, ""))
    if raw is None:
        return None
    try:
        registry = SessionAgentRegistry.model_validate_json(raw)
    except ValidationError as e:
        raise NtmError(ErrorKind.VALIDATION, "load_session_registry", f"{path}: {e}") from e
    if project_key and not _same_project(registry.project_key, project_key):
        return None
    return registry


def save_session_registry(registry: SessionAgentRegistry) -> None:
    registry.updated_at = _utcnow()
    _write_json(registry_path(registry.session_name, registry.project_key), registry)


def delete_session_registry(session: str, project_key: str) -> None:
    registry_path(session, project_key).unlink(missing_ok=True)


def _read_optional(path: Path) -> Optional[str]:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None


# --- Server registration ---


def _task_description(session: str) -> str:
    return f"NTM session coordinator for {session}"


async def register_session_agent(
    client: AgentMailClient,
    session: str,
    project_key: str,
    fallback_mode: FallbackMode = "legacy-compat",
) -> Optional[SessionAgentInfo]:
    """Register the session coordinator identity with Agent Mail.

    Returns None when the server is unavailable. An identity already stored
    for the same project is reused and its activity refreshed; otherwise the
    server picks a fresh name which is persisted locally.
    """
    if not await client.is_available():
        return None

    existing = load_session_agent(session, project_key, fallback_mode)
    if existing is not None and existing.agent_name and _same_project(existing.project_key, project_key):
        existing.last_active_at = _utcnow()
        save_session_agent(session, project_key, existing)
        await client.register_agent(
            program=AGENT_MAIL_PROGRAM,
            model=AGENT_MAIL_MODEL,
            name=existing.agent_name,
            task_description=_task_description(session),
            project_key=project_key,
        )
        return existing

    await client.ensure_project(project_key)
    agent = await client.register_agent(
        program=AGENT_MAIL_PROGRAM,
        model=AGENT_MAIL_MODEL,
        task_description=_task_description(session),
        project_key=project_key,
    )
    info = SessionAgentInfo(agent_name=agent.name, project_key=project_key)
    save_session_agent(session, project_key, info)
    logger.info("Registered session agent %s for %s", agent.name, session)
    return info


async def resolve_session_agent(
    client: AgentMailClient,
    session: str,
    project_key: str,
    fallback_mode: FallbackMode = "legacy-compat",
    current: str = DEFAULT_SESSION_AGENT_NAME,
) -> str:
    """Name the session sends mail as: the registered identity, else `current`."""
    try:
        info = await register_session_agent(client, session, project_key, fallback_mode)
    except NtmError as e:
        logger.warning("Session agent registration for %s failed: %s", session, e)
        return current
    if info is None:
        logger.debug("Agent Mail unavailable, %s keeps sender name %s", session, current)
        return current
    return info.agent_name


async def update_session_activity(
    client: AgentMailClient,
    session: str,
    project_key: str,
    fallback_mode: FallbackMode = "legacy-compat",
) -> None:
    """Touch the local timestamp and re-register to refresh server activity."""
    info = load_session_agent(session, project_key, fallback_mode)
    if info is None:
        return
    info.last_active_at = _utcnow()
    save_session_agent(session, info.project_key, info)
    if not await client.is_available():
        return
    await client.register_agent(
        program=AGENT_MAIL_PROGRAM,
        model=AGENT_MAIL_MODEL,
        name=info.agent_name,
        task_description=_task_description(session),
        project_key=info.project_key,
    )


def is_name_taken_error(err: Optional[BaseException]) -> bool:
    if err is None:
        return False
    text = str(err)
    return "already in use" in text or "name taken" in text or "already registered" in text


__all__ = [
    "SessionAgentInfo",
    "SessionAgentRegistry",
    "load_session_agent",
    "save_session_agent",
    "delete_session_agent",
    "load_session_registry",
    "save_session_registry",
    "delete_session_registry",
    "register_session_agent",
    "resolve_session_agent",
    "update_session_activity",
    "is_name_taken_error",
]
