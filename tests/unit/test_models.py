"""Unit tests for pane and agent state models."""

from datetime import datetime, timezone

import pytest

from ntm.core.models import (
    AgentErrorKind,
    AgentState,
    AgentStatus,
    AgentStatusState,
    AgentType,
    DisplayState,
    HealthStatus,
    detect_agent_type,
    display_state_for,
    parse_pane_title,
)


def _status(state: AgentStatusState, error_kind=None, compaction: bool = False) -> AgentStatus:  # type: ignore[no-untyped-def]
    return AgentStatus(
        pane_id="%1",
        pane_title="proj__cc_1",
        agent_type=AgentType.CLAUDE,
        state=state,
        error_kind=error_kind,
        compaction_detected=compaction,
    )


def test_parse_pane_title():
    parsed = parse_pane_title("my-proj__gmi_3_2.5-pro[ui]")

    assert parsed is not None
    assert (parsed.agent_type, parsed.ntm_index, parsed.variant, parsed.tags) == (
        AgentType.GEMINI,
        3,
        "2.5-pro",
        ("ui",),
    )
    assert parse_pane_title("zsh") is None


@pytest.mark.parametrize(
    "title,command,expected",
    [
        ("proj__cc_1", "", AgentType.CLAUDE),
        ("proj__weird_2", "", AgentType.UNKNOWN),
        ("codex run", "", AgentType.CODEX),
        ("shell", "/usr/local/bin/gemini", AgentType.GEMINI),
        ("shell", "bash", AgentType.USER),
    ],
)
def test_detect_agent_type(title, command, expected):
    assert detect_agent_type(title, command) == expected


def test_short_names():
    assert AgentType.from_str("cod") == AgentType.CODEX
    assert AgentType.CLAUDE.short == "cc"
    assert AgentType.USER.short == "user"


@pytest.mark.parametrize(
    "status,compacted,expected",
    [
        (_status(AgentStatusState.ERROR, AgentErrorKind.RATE_LIMIT), True, DisplayState.RATE_LIMITED),
        (_status(AgentStatusState.ERROR, AgentErrorKind.CRASH), True, DisplayState.ERROR),
        (_status(AgentStatusState.WORKING), True, DisplayState.COMPACTED),
        (_status(AgentStatusState.WORKING), False, DisplayState.WORKING),
        (_status(AgentStatusState.IDLE), False, DisplayState.IDLE),
    ],
)
def test_display_precedence(status, compacted, expected):
    assert display_state_for(status, compacted) == expected


def test_apply_status_tracks_health():
    state = AgentState(pane_id="%1")

    state.apply_status(_status(AgentStatusState.ERROR, AgentErrorKind.AUTH))
    assert state.health.status == HealthStatus.ERROR
    assert state.health.issues == ["auth"]

    state.apply_status(_status(AgentStatusState.IDLE))
    assert state.health.status == HealthStatus.OK
    assert state.display_state == DisplayState.IDLE


def test_compacted_persists_after_marker_scrolls_away():
    state = AgentState(pane_id="%1")
    state.apply_status(_status(AgentStatusState.WORKING))
    assert state.display_state == DisplayState.WORKING

    state.last_compaction = datetime(2026, 1, 1, tzinfo=timezone.utc)
    state.apply_status(_status(AgentStatusState.WORKING, compaction=True))
    assert state.display_state == DisplayState.COMPACTED

    state.apply_status(_status(AgentStatusState.IDLE))
    assert state.display_state == DisplayState.COMPACTED


def test_error_overrides_compacted():
    state = AgentState(pane_id="%1", last_compaction=datetime(2026, 1, 1, tzinfo=timezone.utc))

    state.apply_status(_status(AgentStatusState.ERROR, AgentErrorKind.CRASH))
    assert state.display_state == DisplayState.ERROR

    state.apply_status(_status(AgentStatusState.ERROR, AgentErrorKind.RATE_LIMIT))
    assert state.display_state == DisplayState.RATE_LIMITED
