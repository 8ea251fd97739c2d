"""Unit tests for dashboard wiring and session identity at startup."""

from unittest.mock import AsyncMock

import pytest

from ntm.agentmail.session import SessionAgentInfo, save_session_agent
from ntm.cli import dashboard
from ntm.config import NtmConfig
from ntm.constants import DEFAULT_SESSION_AGENT_NAME
from ntm.coordinator.coordinator import SessionCoordinator


@pytest.mark.asyncio
async def test_coordinator_without_agent_file_uses_default_sender(tmp_path):
    app = dashboard.build_app("proj", str(tmp_path), NtmConfig(), coordinate=True)

    assert app.coordinator is not None
    assert app.coordinator.agent_name == DEFAULT_SESSION_AGENT_NAME
    assert len(app.startup) == 1


@pytest.mark.asyncio
async def test_coordinator_uses_stored_agent_name(tmp_path):
    project = str(tmp_path)
    save_session_agent("proj", project, SessionAgentInfo(agent_name="GreenCastle", project_key=project))

    app = dashboard.build_app("proj", project, NtmConfig(), coordinate=True)

    assert app.coordinator is not None
    assert app.coordinator.agent_name == "GreenCastle"


@pytest.mark.asyncio
async def test_startup_registration_adopts_server_name(tmp_path, monkeypatch):
    resolve = AsyncMock(return_value="AmberRiver")
    monkeypatch.setattr(dashboard, "resolve_session_agent", resolve)
    app = dashboard.build_app("proj", str(tmp_path), NtmConfig(), coordinate=True)

    await app.startup[0]()

    assert app.coordinator is not None
    assert app.coordinator.agent_name == "AmberRiver"
    assert resolve.await_args.kwargs["current"] == DEFAULT_SESSION_AGENT_NAME


@pytest.mark.asyncio
async def test_no_registration_when_mail_disabled(tmp_path):
    cfg = NtmConfig(agent_mail={"enabled": False})

    app = dashboard.build_app("proj", str(tmp_path), cfg, coordinate=True)

    assert app.startup == []
    assert app.coordinator is not None
    assert app.coordinator.agent_name == DEFAULT_SESSION_AGENT_NAME


def test_coordinator_defaults_empty_agent_name():
    coordinator = SessionCoordinator("proj", "/work/proj", None, agent_name="")

    assert coordinator.agent_name == DEFAULT_SESSION_AGENT_NAME
