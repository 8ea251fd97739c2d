"""Unit tests for the dashboard view-model store."""

from ntm.core.errors import ErrorKind, NtmError
from ntm.core.models import AgentState, AgentType, DisplayState, Pane
from ntm.core.panels import Alert, AlertSeverity, MailStatus, RefreshSource
from ntm.core.view_store import ViewStore, hint_for_session_error


def _pane(pane_id: str, index: int, agent_type: AgentType = AgentType.CLAUDE) -> Pane:
    return Pane(id=pane_id, index=index, title=f"proj__cc_{index}", agent_type=agent_type)


def test_state_migrates_by_pane_id():
    store = ViewStore("proj")
    store.apply_panes([_pane("%1", 0), _pane("%2", 1)])
    store.agents["%1"].display_state = DisplayState.WORKING
    store.agents["%2"].display_state = DisplayState.IDLE
    store.output_cache["%1"] = "old output"
    store.output_cache["%2"] = "kept output"

    removed = store.apply_panes([_pane("%2", 0), _pane("%3", 1)])

    assert removed == {"%1"}
    assert set(store.agents) == {"%2", "%3"}
    assert store.agents["%2"].display_state == DisplayState.IDLE
    assert store.state_by_index()[0] is store.agents["%2"]
    assert store.output_cache == {"%2": "kept output"}


def test_apply_same_pane_list_twice_is_noop():
    store = ViewStore("proj")
    panes = [_pane("%1", 0), _pane("%2", 1)]
    store.apply_panes(panes)
    state = store.agents["%1"]
    store.cursor = 1

    removed = store.apply_panes(list(panes))

    assert removed == set()
    assert store.agents["%1"] is state
    assert store.cursor == 1


def test_cursor_follows_selected_pane():
    store = ViewStore("proj")
    store.apply_panes([_pane("%1", 0), _pane("%2", 1), _pane("%3", 2)])
    store.cursor = 2

    store.apply_panes([_pane("%3", 0), _pane("%4", 1)])

    assert store.selected_pane_id == "%3"
    assert store.cursor == 0


def test_cursor_clamped_when_selected_pane_disappears():
    store = ViewStore("proj")
    store.apply_panes([_pane("%1", 0), _pane("%2", 1), _pane("%3", 2)])
    store.cursor = 2

    store.apply_panes([_pane("%1", 0)])

    assert store.cursor == 0
    store.move_cursor(5)
    assert store.cursor == 0


def test_user_panes_get_no_agent_state():
    store = ViewStore("proj")
    store.apply_panes([_pane("%0", 0, AgentType.USER), _pane("%1", 1)])

    assert set(store.agents) == {"%1"}


def test_missing_session_clears_panes():
    store = ViewStore("proj")
    store.apply_panes([_pane("%1", 0)])

    store.set_session_error(NtmError(ErrorKind.SESSION_NOT_FOUND, "list_panes", "can't find session: proj"))

    assert store.panes == []
    assert store.agents == {}
    assert "ntm spawn" in store.session_error_hint


def test_slow_tmux_keeps_last_known_panes():
    store = ViewStore("proj")
    store.apply_panes([_pane("%1", 0)])

    store.set_session_error(NtmError(ErrorKind.TIMEOUT, "list_panes", "deadline exceeded"))

    assert [p.id for p in store.panes] == ["%1"]
    assert "responding slowly" in store.session_error_hint
    store.clear_session_error()
    assert store.session_error is None
    assert store.session_error_hint == ""


def test_hint_for_unknown_error():
    assert hint_for_session_error(None) == ""
    assert hint_for_session_error(RuntimeError("boom")) == "Press r to retry"
    assert "Install tmux" in hint_for_session_error(RuntimeError("tmux is not installed"))


def test_counters_are_recomputed():
    store = ViewStore("proj")
    store.apply_panes([_pane("%0", 0, AgentType.USER), _pane("%1", 1), _pane("%2", 2, AgentType.CODEX)])
    store.agents["%1"] = AgentState(pane_id="%1", display_state=DisplayState.WORKING)
    store.set_panel(
        RefreshSource.ALERTS,
        [Alert("agent_error", AlertSeverity.CRITICAL, "boom"), Alert("x", AlertSeverity.WARNING, "meh")],
    )
    store.set_panel(RefreshSource.MAIL, MailStatus(available=True, connected=True, reservation_count=3, conflict_count=1))

    counters = store.recompute_counters()
    again = store.recompute_counters()

    assert counters == again
    assert counters.total_panes == 3
    assert counters.agent_panes == 2
    assert counters.by_type == {"user": 1, "claude": 1, "codex": 1}
    assert counters.by_state == {"working": 1, "unknown": 1}
    assert counters.alerts_by_severity == {"critical": 1, "warning": 1}
    assert counters.mail == "3 locks / 1 conflicts"
    assert counters.beads == "unavailable"
    assert counters.checkpoint == "none"
