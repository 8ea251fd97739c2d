"""Pytest configuration for NTM tests."""

import logging
import os
from pathlib import Path

import instrukt_ai_logging
import pytest


def _noop_configure_logging(*_args, **_kwargs):  # type: ignore[no-untyped-def]
    return None


instrukt_ai_logging.configure_logging = _noop_configure_logging  # type: ignore[assignment]
logging.getLogger("ntm").handlers.clear()
logging.getLogger().handlers.clear()


def pytest_collection_modifyitems(config, items):
    """Mark tests by directory and set per-marker timeouts: unit=1s, integration=5s."""
    for item in items:
        parts = Path(str(item.fspath)).parts
        if "unit" in parts:
            item.add_marker(pytest.mark.unit)
        if "unit" in item.keywords:
            item.add_marker(pytest.mark.timeout(1))
        elif "integration" in item.keywords:
            item.add_marker(pytest.mark.timeout(5))


@pytest.fixture(autouse=True)
def isolated_config_home(tmp_path, monkeypatch):
    """Point every NTM state directory at a per-test temp dir."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    for name in list(os.environ):
        if name.startswith(("NTM_DASH_", "NTM_COORD_", "AGENT_MAIL_")):
            monkeypatch.delenv(name, raising=False)
    return tmp_path
