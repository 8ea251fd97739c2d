"""Agent status detection from captured pane text.

analyze() classifies a pane as working / idle / error / unknown, estimates
context usage and token velocity, and flags context compaction. Apart from
the per-pane velocity memory it is a pure function of its inputs.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from instrukt_ai_logging import get_logger

from ntm.constants import (
    CLASSIFY_TAIL_CHARS,
    COMPACTION_RECOVERY_COOLDOWN_S,
    COMPACTION_RECOVERY_PROMPT,
    RECENT_ACTIVITY_S,
    VELOCITY_EMA_ALPHA,
    VELOCITY_RESET_AFTER_S,
)
from ntm.core.context_usage import ContextEstimator, explicit_token_total
from ntm.core.models import AgentErrorKind, AgentStatus, AgentStatusState, AgentType
from ntm.core.patterns import (
    IDLE_LINE_SUFFIXES,
    IDLE_LINE_WORDS,
    IDLE_SHORT_LINE_CHARS,
    has_compaction_marker,
    patterns_for,
    strip_ansi,
)

logger = get_logger(__name__)

ERROR_WINDOW_LINES = 8
WORKING_WINDOW_LINES = 5
LAST_OUTPUT_LINES = 20


def _non_empty_lines(text: str) -> list[str]:
    return [line for line in text.splitlines() if line.strip()]


def looks_like_idle(line: str) -> bool:
    """Heuristic for a last output line that no agent pattern recognised."""
    stripped = line.strip()
    if not stripped:
        return False
    if len(stripped) < IDLE_SHORT_LINE_CHARS:
        return True
    if stripped.endswith(IDLE_LINE_SUFFIXES):
        return True
    lowered = stripped.lower()
    return any(word in lowered for word in IDLE_LINE_WORDS)


def determine_state(
    agent_type: AgentType,
    text: str,
    last_activity: Optional[datetime],
    now: datetime,
) -> tuple[AgentStatusState, Optional[AgentErrorKind]]:
    """Classify cleaned pane text.

    Precedence: error (rate limit first) > working > idle > unknown.
    """
    patterns = patterns_for(agent_type)
    lines = _non_empty_lines(text[-CLASSIFY_TAIL_CHARS:])

    error_window = "\n".join(lines[-ERROR_WINDOW_LINES:])
    if any(p.search(error_window) for p in patterns.rate_limit):
        return AgentStatusState.ERROR, AgentErrorKind.RATE_LIMIT
    for pattern, kind in patterns.errors:
        if pattern.search(error_window):
            return AgentStatusState.ERROR, kind

    working_window = lines[-WORKING_WINDOW_LINES:]
    if any(p.search(line) for line in working_window for p in patterns.working):
        return AgentStatusState.WORKING, None

    last_line = lines[-1] if lines else ""
    if last_line and any(p.search(last_line) for p in patterns.idle):
        return AgentStatusState.IDLE, None

    if last_activity is not None and (now - last_activity).total_seconds() <= RECENT_ACTIVITY_S:
        return AgentStatusState.WORKING, None

    if agent_type == AgentType.USER and not lines:
        return AgentStatusState.IDLE, None
    if looks_like_idle(last_line):
        return AgentStatusState.IDLE, None
    if agent_type.is_agent:
        return AgentStatusState.IDLE, None
    return AgentStatusState.UNKNOWN, None


@dataclass
class _VelocityMemory:
    tokens: int
    sampled_at: float
    last_increase_at: Optional[float]
    ema: float


class StatusDetector:
    """Per-pane status analysis with token-velocity memory.

    Callers serialise calls per pane id; different panes are independent.
    """

    def __init__(self, estimator: Optional[ContextEstimator] = None) -> None:
        self.estimator = estimator or ContextEstimator()
        self._velocity: dict[str, _VelocityMemory] = {}

    def analyze(
        self,
        pane_id: str,
        title: str,
        agent_type: AgentType,
        text: str,
        last_activity: Optional[datetime],
        model: str = "",
        now: Optional[datetime] = None,
        track_velocity: bool = True,
    ) -> AgentStatus:
        """Status of one pane.

        Pass track_velocity=False when re-analysing text that was already
        analysed: the velocity of the last capture is reported unchanged.
        """
        now = now or datetime.now(timezone.utc)
        clean = strip_ansi(text)
        state, error_kind = determine_state(agent_type, clean, last_activity, now)

        usage = self.estimator.usage(clean, model) if model else None
        explicit = explicit_token_total(clean)
        if explicit is not None:
            token_count = explicit
        elif usage is not None:
            token_count = usage.tokens_used
        else:
            token_count = self.estimator.estimate_tokens(clean, model)

        if track_velocity:
            velocity = self._update_velocity(pane_id, token_count, now.timestamp())
        else:
            velocity = self.velocity(pane_id)

        return AgentStatus(
            pane_id=pane_id,
            pane_title=title,
            agent_type=agent_type,
            state=state,
            error_kind=error_kind,
            context_percent=usage.usage_percent if usage else 0.0,
            token_count=token_count,
            token_velocity=velocity,
            last_output="\n".join(clean.rstrip().splitlines()[-LAST_OUTPUT_LINES:]),
            last_activity=last_activity,
            updated_at=now,
            compaction_detected=has_compaction_marker(clean[-CLASSIFY_TAIL_CHARS * 4 :]),
        )

    def velocity(self, pane_id: str) -> float:
        memory = self._velocity.get(pane_id)
        return memory.ema if memory else 0.0

    def _update_velocity(self, pane_id: str, tokens: int, ts: float) -> float:
        prev = self._velocity.get(pane_id)
        if prev is None:
            self._velocity[pane_id] = _VelocityMemory(tokens, ts, None, 0.0)
            return 0.0

        dt = ts - prev.sampled_at
        if dt <= 0:
            return prev.ema

        if tokens < prev.tokens or dt > VELOCITY_RESET_AFTER_S:
            # Truncated scrollback or a long gap: start over.
            self._velocity[pane_id] = _VelocityMemory(tokens, ts, None, 0.0)
            return 0.0

        last_increase = prev.last_increase_at
        if tokens > prev.tokens:
            rate = (tokens - prev.tokens) / dt
            ema = rate if prev.ema == 0 else VELOCITY_EMA_ALPHA * rate + (1 - VELOCITY_EMA_ALPHA) * prev.ema
            last_increase = ts
        else:
            ema = (1 - VELOCITY_EMA_ALPHA) * prev.ema

        if last_increase is None or ts - last_increase > VELOCITY_RESET_AFTER_S:
            ema = 0.0
        self._velocity[pane_id] = _VelocityMemory(tokens, ts, last_increase, ema)
        return ema

    def forget(self, pane_ids: set[str]) -> None:
        """Drop velocity memory of panes that disappeared."""
        for pane_id in list(self._velocity):
            if pane_id not in pane_ids:
                del self._velocity[pane_id]

    def reset(self, pane_id: Optional[str] = None) -> None:
        if pane_id is None:
            self._velocity.clear()
        else:
            self._velocity.pop(pane_id, None)


@dataclass
class CompactionEvent:
    pane_id: str
    detected_at: datetime
    recovery_prompt: str = COMPACTION_RECOVERY_PROMPT


@dataclass
class _CompactionMemory:
    detected_at: datetime
    marker_present: bool


class CompactionTracker:
    """Fires one CompactionEvent per compaction of a pane.

    A marker that stays visible in subsequent captures, or reappears within
    the cooldown, does not fire again.
    """

    def __init__(self, cooldown_s: float = COMPACTION_RECOVERY_COOLDOWN_S) -> None:
        self.cooldown_s = cooldown_s
        self._panes: dict[str, _CompactionMemory] = {}

    def check(self, pane_id: str, compaction_seen: bool, now: Optional[datetime] = None) -> Optional[CompactionEvent]:
        now = now or datetime.now(timezone.utc)
        memory = self._panes.get(pane_id)
        if not compaction_seen:
            if memory:
                memory.marker_present = False
            return None

        if memory and (memory.marker_present or (now - memory.detected_at).total_seconds() < self.cooldown_s):
            memory.marker_present = True
            return None

        self._panes[pane_id] = _CompactionMemory(detected_at=now, marker_present=True)
        logger.info("Context compaction detected on pane %s", pane_id)
        return CompactionEvent(pane_id=pane_id, detected_at=now)

    def forget(self, pane_ids: set[str]) -> None:
        for pane_id in list(self._panes):
            if pane_id not in pane_ids:
                del self._panes[pane_id]
