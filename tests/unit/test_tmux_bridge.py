"""Unit tests for the tmux bridge and pane enumeration."""

import asyncio
from datetime import datetime, timezone

import pytest

from ntm.constants import TMUX_FIELD_SEPARATOR
from ntm.core import tmux_bridge
from ntm.core.errors import ErrorKind, NtmError
from ntm.core.models import AgentType, Pane
from ntm.core.pane_enumerator import PaneEnumerator, agent_panes

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def _row(*fields: str) -> str:
    return TMUX_FIELD_SEPARATOR.join(fields)


def test_parse_ntm_titled_pane():
    line = _row("%4", "2", "proj__cod_2_o3[backend,api]", "node", "120", "40", "1", "1767268800", "4242", "0")

    pane = tmux_bridge.parse_pane_line(line, NOW)

    assert pane is not None
    assert (pane.id, pane.index, pane.agent_type) == ("%4", 2, AgentType.CODEX)
    assert pane.variant == "o3"
    assert pane.tags == ("backend", "api")
    assert pane.active
    assert pane.last_activity == datetime.fromtimestamp(1767268800, tz=timezone.utc)


def test_parse_plain_shell_pane_and_bad_activity():
    line = _row("%0", "0", "zsh", "zsh", "80", "24", "0", "garbage", "1", "0")

    pane = tmux_bridge.parse_pane_line(line, NOW)

    assert pane is not None
    assert pane.agent_type == AgentType.USER
    assert pane.last_activity == NOW


def test_parse_agent_from_command_fallback():
    line = _row("%1", "1", "my shell", "claude", "80", "24", "0", "0", "1", "0")
    assert tmux_bridge.parse_pane_line(line, NOW).agent_type == AgentType.CLAUDE


@pytest.mark.parametrize(
    "line",
    [
        "too_NTM_SEP_short",
        _row("%1", "x", "t", "c", "80", "24", "0", "0", "1", "0"),
    ],
)
def test_parse_rejects_malformed_rows(line):
    assert tmux_bridge.parse_pane_line(line, NOW) is None


@pytest.mark.parametrize(
    "stderr,kind",
    [
        ("can't find session: proj", ErrorKind.SESSION_NOT_FOUND),
        ("no server running on /tmp/tmux-0/default", ErrorKind.TRANSPORT),
        ("can't find pane: %9", ErrorKind.NOT_FOUND),
        ("something odd", ErrorKind.UNKNOWN),
    ],
)
def test_classify_tmux_error(stderr, kind):
    assert tmux_bridge.classify_tmux_error("list_panes", stderr, 1).kind == kind


@pytest.mark.asyncio
async def test_missing_tmux_is_unavailable(monkeypatch):
    async def no_binary(*args, **kwargs):  # type: ignore[no-untyped-def]
        raise FileNotFoundError("tmux")

    monkeypatch.setattr(tmux_bridge.asyncio, "create_subprocess_exec", no_binary)

    with pytest.raises(NtmError) as exc_info:
        await tmux_bridge.list_panes("proj")

    assert exc_info.value.kind == ErrorKind.UNAVAILABLE


@pytest.mark.asyncio
async def test_enumerator_sorts_by_index():
    async def list_panes(session: str) -> list[Pane]:
        return [Pane(id="%7", index=3), Pane(id="%2", index=1, agent_type=AgentType.CLAUDE), Pane(id="%5", index=2)]

    panes = await PaneEnumerator(list_panes=list_panes).enumerate("proj")

    assert [p.index for p in panes] == [1, 2, 3]
    assert [p.id for p in agent_panes(panes)] == ["%2"]


@pytest.mark.asyncio
async def test_enumerator_timeout():
    async def hang(session: str) -> list[Pane]:
        await asyncio.Event().wait()
        return []

    with pytest.raises(NtmError) as exc_info:
        await PaneEnumerator(list_panes=hang, timeout=0.01).enumerate("proj")

    assert exc_info.value.kind == ErrorKind.TIMEOUT


@pytest.mark.asyncio
async def test_enumerator_wraps_unexpected_errors():
    async def broken(session: str) -> list[Pane]:
        raise RuntimeError("weird")

    with pytest.raises(NtmError) as exc_info:
        await PaneEnumerator(list_panes=broken).enumerate("proj")

    assert exc_info.value.kind == ErrorKind.UNKNOWN
    assert exc_info.value.operation == "enumerate_panes"
