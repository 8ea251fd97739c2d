"""Unit tests for routing scores."""

from datetime import datetime, timedelta, timezone

from ntm.core.models import AgentState, AgentType, ContextUsage, DisplayState, Pane
from ntm.core.routing import recency_score, score_agent, score_agents

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def _pane(pane_id: str, index: int, agent_type: AgentType = AgentType.CLAUDE, idle_s: float = 600) -> Pane:
    return Pane(id=pane_id, index=index, agent_type=agent_type, last_activity=NOW - timedelta(seconds=idle_s))


def _state(pane_id: str, display: DisplayState, ctx: float = 0.0) -> AgentState:
    return AgentState(pane_id=pane_id, display_state=display, context=ContextUsage(usage_percent=ctx))


def test_recency_buckets():
    assert recency_score(None, NOW) == 50.0
    assert recency_score(NOW - timedelta(seconds=30), NOW) == 20.0
    assert recency_score(NOW - timedelta(minutes=3), NOW) == 50.0
    assert recency_score(NOW - timedelta(minutes=10), NOW) == 80.0
    assert recency_score(NOW - timedelta(hours=2), NOW) == 70.0


def test_idle_agent_score():
    result = score_agent(_pane("%1", 1), _state("%1", DisplayState.IDLE, ctx=20.0), NOW)

    # 0.4 * 80 + 0.4 * 100 + 0.2 * 80
    assert result.score == 88.0
    assert not result.excluded


def test_busy_and_full_agents_are_excluded():
    assert score_agent(_pane("%1", 1), _state("%1", DisplayState.WORKING), NOW).excluded
    assert score_agent(_pane("%1", 1), _state("%1", DisplayState.RATE_LIMITED), NOW).excluded
    assert score_agent(_pane("%1", 1), _state("%1", DisplayState.IDLE, ctx=90.0), NOW).excluded


def test_best_agent_recommended_ties_to_lowest_index():
    panes = [_pane("%2", 2), _pane("%1", 1), _pane("%3", 3), _pane("%0", 0, AgentType.USER)]
    agents = {
        "%1": _state("%1", DisplayState.IDLE, ctx=10.0),
        "%2": _state("%2", DisplayState.IDLE, ctx=10.0),
        "%3": _state("%3", DisplayState.WORKING),
    }

    scores = score_agents(panes, agents, NOW)

    assert set(scores) == {"%1", "%2", "%3"}
    assert scores["%1"].is_recommended
    assert not scores["%2"].is_recommended
    assert not scores["%3"].is_recommended


def test_no_recommendation_when_all_excluded():
    scores = score_agents([_pane("%1", 1)], {"%1": _state("%1", DisplayState.ERROR)}, NOW)
    assert not scores["%1"].is_recommended
