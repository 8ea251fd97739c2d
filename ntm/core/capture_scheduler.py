"""Pane capture scheduling.

Capturing pane text is the most expensive dashboard operation, so each
refresh cycle captures a bounded subset of agent panes:

1. the selected pane,
2. panes whose tmux activity is newer than their last capture (newest first),
3. a round-robin sweep from a persistent cursor to fill the budget.

Only the round-robin step moves the cursor.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Mapping, Optional

from instrukt_ai_logging import get_logger

from ntm.constants import PANE_CAPTURE_TIMEOUT_S
from ntm.core import tmux_bridge
from ntm.core.models import Pane

logger = get_logger(__name__)

CaptureFn = Callable[[str, int], Awaitable[str]]


@dataclass
class CapturePlan:
    targets: list[Pane]
    next_cursor: int


@dataclass
class PaneCapture:
    """Captured text of one pane."""

    pane_id: str
    pane_index: int
    agent_type: str
    text: str
    last_activity: Optional[datetime]


def plan_pane_captures(
    panes: list[Pane],
    selected_id: str,
    last_captured: Mapping[str, datetime],
    budget: int,
    cursor: int,
) -> CapturePlan:
    """Pick the panes to capture this cycle.

    Args:
        panes: Current pane list (any order, user panes included)
        selected_id: Pane id highlighted in the UI ("" when none)
        last_captured: pane id -> last_activity value seen at its last capture
        budget: Maximum number of targets
        cursor: Round-robin start position

    Returns:
        Targets in capture priority order and the advanced cursor
    """
    candidates = sorted((p for p in panes if p.is_agent), key=lambda p: p.index)
    n = len(candidates)
    if n == 0:
        return CapturePlan(targets=[], next_cursor=0)
    start = cursor % n if cursor >= 0 else 0
    if budget <= 0:
        return CapturePlan(targets=[], next_cursor=start)

    targets: list[Pane] = []
    picked: set[str] = set()

    def add(pane: Pane) -> None:
        if pane.id in picked or len(targets) >= budget:
            return
        picked.add(pane.id)
        targets.append(pane)

    if selected_id:
        for pane in candidates:
            if pane.id == selected_id:
                add(pane)
                break

    changed = [p for p in candidates if p.id not in picked and _has_new_activity(p, last_captured)]
    changed.sort(key=lambda p: (-_activity_ts(p), p.index))
    for pane in changed:
        add(pane)

    rr_steps = 0
    while len(targets) < budget and rr_steps < n:
        add(candidates[(start + rr_steps) % n])
        rr_steps += 1

    return CapturePlan(targets=targets, next_cursor=(start + rr_steps) % n)


def _has_new_activity(pane: Pane, last_captured: Mapping[str, datetime]) -> bool:
    previous = last_captured.get(pane.id)
    if previous is None:
        return True
    if pane.last_activity is None:
        return False
    return pane.last_activity > previous


def _activity_ts(pane: Pane) -> float:
    return pane.last_activity.timestamp() if pane.last_activity else 0.0


async def capture_targets(
    targets: list[Pane],
    lines: int,
    capture: Optional[CaptureFn] = None,
    timeout: float = PANE_CAPTURE_TIMEOUT_S,
) -> list[PaneCapture]:
    """Capture all targets concurrently.

    A pane whose capture fails or times out is dropped from the result;
    cancellation of the calling task propagates.
    """
    capture_fn = capture or tmux_bridge.capture_pane

    async def one(pane: Pane) -> Optional[PaneCapture]:
        try:
            text = await asyncio.wait_for(capture_fn(pane.id, lines), timeout=timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:  # one failed pane must not sink the cycle
            logger.debug("Capture of pane %s failed: %s", pane.id, e)
            return None
        return PaneCapture(
            pane_id=pane.id,
            pane_index=pane.index,
            agent_type=pane.agent_type.value,
            text=text,
            last_activity=pane.last_activity,
        )

    results = await asyncio.gather(*(one(p) for p in targets))
    return [r for r in results if r is not None]
