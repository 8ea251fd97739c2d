"""Routing scores: which agent pane should take the next prompt.

The score blends free context, current state and recency of activity.
Busy, erroring, rate-limited and nearly-full agents are excluded outright.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from ntm.core.models import AgentState, DisplayState, Pane
from ntm.core.panels import RoutingScore

CONTEXT_WEIGHT = 0.4
STATE_WEIGHT = 0.4
RECENCY_WEIGHT = 0.2
EXCLUDE_CONTEXT_ABOVE = 85.0

# Raw state scores in [-100, 100], normalised to [0, 100].
_STATE_SCORES = {
    DisplayState.IDLE: 100.0,
    DisplayState.COMPACTED: 50.0,
    DisplayState.UNKNOWN: 25.0,
    DisplayState.WORKING: 0.0,
    DisplayState.RATE_LIMITED: -100.0,
    DisplayState.ERROR: -100.0,
}

_EXCLUDED_STATES = (DisplayState.WORKING, DisplayState.ERROR, DisplayState.RATE_LIMITED)


def recency_score(last_activity: Optional[datetime], now: datetime) -> float:
    """Agents that just finished are likely mid-thought; long-idle ones are cold."""
    if last_activity is None:
        return 50.0
    idle = (now - last_activity).total_seconds()
    if idle < 60:
        return 20.0
    if idle < 5 * 60:
        return 50.0
    if idle < 30 * 60:
        return 80.0
    return 70.0


def context_percent(state: AgentState) -> float:
    if state.context.usage_percent:
        return state.context.usage_percent
    if state.status is not None:
        return state.status.context_percent
    return 0.0


def score_agent(pane: Pane, state: AgentState, now: datetime) -> RoutingScore:
    display = state.display_state
    ctx = context_percent(state)
    if display in _EXCLUDED_STATES or ctx > EXCLUDE_CONTEXT_ABOVE:
        return RoutingScore(score=0.0, is_recommended=False, state=display.value, excluded=True)

    context_score = max(0.0, 100.0 - ctx)
    state_score = (_STATE_SCORES.get(display, 25.0) + 100.0) / 2.0
    last_activity = state.status.last_activity if state.status else pane.last_activity
    score = (
        CONTEXT_WEIGHT * context_score
        + STATE_WEIGHT * state_score
        + RECENCY_WEIGHT * recency_score(last_activity, now)
    )
    return RoutingScore(score=round(score, 2), is_recommended=False, state=display.value)


def score_agents(panes: list[Pane], agents: dict[str, AgentState], now: datetime) -> dict[str, RoutingScore]:
    """Score every agent pane and flag the best non-excluded one as recommended.

    Ties go to the lowest pane index.
    """
    scores: dict[str, RoutingScore] = {}
    best: Optional[str] = None
    for pane in sorted(panes, key=lambda p: p.index):
        state = agents.get(pane.id)
        if state is None or not pane.is_agent:
            continue
        result = score_agent(pane, state, now)
        scores[pane.id] = result
        if not result.excluded and (best is None or result.score > scores[best].score):
            best = pane.id
    if best is not None:
        scores[best].is_recommended = True
    return scores
