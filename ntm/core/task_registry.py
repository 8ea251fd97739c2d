"""Registry of background asyncio tasks owned by the dashboard.

Every fetch the refresh orchestrator dispatches and every fire-and-forget
send (compaction recovery, coordinator messages) is spawned here, so a
shutdown can cancel them all and nothing is left running unreferenced.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Coroutine, TypeVar

from ntm.core.errors import is_canceled

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TaskRegistry:
    """Tracks spawned tasks and drops them when they finish.

    Example:
        registry = TaskRegistry()
        task = registry.spawn(fetch_session(), name="fetch:session:12")
        await registry.shutdown(timeout=2.0)
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[object]] = set()

    def _on_task_done(self, task: asyncio.Task[object]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc and not is_canceled(exc):
            logger.error("Background task %s failed: %s", task.get_name(), exc, exc_info=exc)

    def spawn(self, coro: Coroutine[object, object, T], name: str | None = None) -> asyncio.Task[T]:
        """Create a tracked task.

        Args:
            coro: Coroutine to run
            name: Task name, shown in logs ("fetch:<source>:<gen>", "recovery:<pane>")

        Returns:
            The created task; callers keep it as a cancel handle
        """
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)  # type: ignore[arg-type]
        task.add_done_callback(self._on_task_done)  # type: ignore[arg-type]
        logger.debug("Spawned %s (tracked: %d)", name or f"<unnamed-{id(task)}>", len(self._tasks))
        return task

    def cancel_matching(self, prefix: str) -> int:
        """Cancel running tasks whose name starts with `prefix`. Returns how many."""
        cancelled = 0
        for task in list(self._tasks):
            if not task.done() and task.get_name().startswith(prefix):
                task.cancel()
                cancelled += 1
        return cancelled

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Cancel every tracked task and wait up to `timeout` seconds."""
        if not self._tasks:
            return

        task_count = len(self._tasks)
        logger.info("Shutting down %d background tasks (timeout=%.1fs)", task_count, timeout)
        for task in self._tasks:
            if not task.done():
                task.cancel()

        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        if pending:
            logger.warning(
                "Shutdown timeout: %d/%d tasks still pending after %.1fs: %s",
                len(pending),
                task_count,
                timeout,
                ", ".join(sorted(t.get_name() for t in pending)),
            )

    def task_count(self) -> int:
        return len(self._tasks)
