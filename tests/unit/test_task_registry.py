"""Unit tests for TaskRegistry."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from ntm.core.errors import ErrorKind, NtmError
from ntm.core.task_registry import TaskRegistry


@pytest.mark.asyncio
async def test_spawn_tracks_and_drops_finished_tasks():
    registry = TaskRegistry()
    ready = asyncio.Event()

    async def fetch():
        await ready.wait()
        return "done"

    task = registry.spawn(fetch(), name="fetch:scan:1")
    assert registry.task_count() == 1

    ready.set()
    assert await task == "done"
    await asyncio.sleep(0)

    assert registry.task_count() == 0


@pytest.mark.asyncio
async def test_cancel_matching_only_hits_prefix():
    registry = TaskRegistry()
    blocker = asyncio.Event()

    async def wait_forever():
        await blocker.wait()

    loops = [registry.spawn(wait_forever(), name=f"coordinator:proj:{n}") for n in ("monitor", "digest")]
    fetch = registry.spawn(wait_forever(), name="fetch:session:3")

    assert registry.cancel_matching("coordinator:proj:") == 2
    await asyncio.sleep(0)

    assert all(t.cancelled() for t in loops)
    assert not fetch.done()

    await registry.shutdown(timeout=1.0)
    assert fetch.cancelled()


@pytest.mark.asyncio
async def test_shutdown_logs_pending_tasks_on_timeout():
    registry = TaskRegistry()
    blocker = asyncio.Event()

    async def slow():
        await blocker.wait()

    task = registry.spawn(slow(), name="slow-task")

    with (
        patch("ntm.core.task_registry.logger") as mock_logger,
        patch("ntm.core.task_registry.asyncio.wait", new_callable=AsyncMock, return_value=(set(), {task})),
    ):
        await registry.shutdown(timeout=0.0)

        assert any("Shutdown timeout" in str(call.args[0]) for call in mock_logger.warning.call_args_list)

    blocker.set()
    await asyncio.gather(task, return_exceptions=True)


@pytest.mark.asyncio
async def test_empty_shutdown():
    registry = TaskRegistry()
    await registry.shutdown(timeout=1.0)
    assert registry.task_count() == 0


@pytest.mark.asyncio
async def test_failures_logged_cancellations_silent():
    registry = TaskRegistry()

    async def failing():
        raise ValueError("boom")

    async def canceled():
        raise NtmError(ErrorKind.CANCELED, "fetch", "canceled")

    with patch("ntm.core.task_registry.logger") as mock_logger:
        results = await asyncio.gather(
            registry.spawn(failing(), name="recovery:%1"),
            registry.spawn(canceled(), name="fetch:scan:2"),
            return_exceptions=True,
        )
        await asyncio.sleep(0)

    assert isinstance(results[0], ValueError)
    assert mock_logger.error.call_count == 1
    call = mock_logger.error.call_args
    assert call.args[1] == "recovery:%1"
    assert call.kwargs["exc_info"] is results[0]
