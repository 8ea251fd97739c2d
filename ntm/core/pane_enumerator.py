"""Pane enumeration for a tmux session.

Wraps tmux_bridge.list_panes with timeout handling, deterministic ordering
and error normalisation for the refresh orchestrator and the coordinator.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

from instrukt_ai_logging import get_logger

from ntm.constants import SESSION_FETCH_TIMEOUT_S
from ntm.core import tmux_bridge
from ntm.core.errors import ErrorKind, NtmError, wrap_error
from ntm.core.models import Pane

logger = get_logger(__name__)

ListPanesFn = Callable[[str], Awaitable[list[Pane]]]


class PaneEnumerator:
    """Produces the sorted pane list of a session.

    Errors are raised as NtmError: session_not_found, transport (tmux server
    unreachable or slow), unavailable (tmux missing). Cancellation of the
    calling task propagates as asyncio.CancelledError.
    """

    def __init__(self, list_panes: Optional[ListPanesFn] = None, timeout: float = SESSION_FETCH_TIMEOUT_S) -> None:
        self._list_panes = list_panes or tmux_bridge.list_panes
        self._timeout = timeout

    async def enumerate(self, session: str) -> list[Pane]:
        """List panes of `session`, sorted by pane index ascending."""
        try:
            panes = await asyncio.wait_for(self._list_panes(session), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise NtmError(ErrorKind.TIMEOUT, "enumerate_panes", "context deadline exceeded") from e
        except asyncio.CancelledError:
            raise
        except NtmError:
            raise
        except Exception as e:  # unexpected tmux failures
            raise wrap_error("enumerate_panes", e) from e

        panes.sort(key=lambda p: p.index)
        logger.debug("Enumerated %d panes in session %s", len(panes), session)
        return panes


def agent_panes(panes: list[Pane]) -> list[Pane]:
    """Non-user panes sorted by index."""
    return sorted((p for p in panes if p.is_agent), key=lambda p: p.index)
