"""Refresh orchestrator: per-source cadences over a single serial update loop.

Each source is a small state machine (idle -> in flight -> completed or
cancelled -> idle) with a pending flag and a generation counter. Fetches run
as tracked background tasks and post exactly one Completion each; only
`apply` mutates the view store, and it runs on the caller's loop.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from instrukt_ai_logging import get_logger

from ntm.core.errors import ErrorKind, NtmError, wrap_error
from ntm.core.panels import RefreshSource
from ntm.core.task_registry import TaskRegistry
from ntm.core.view_store import ViewStore

logger = get_logger(__name__)

# A fetch factory snapshots whatever it needs from the store synchronously
# and returns the coroutine function that performs the I/O.
FetchThunk = Callable[[], Awaitable[object]]
FetchFactory = Callable[[ViewStore], FetchThunk]
Applier = Callable[[ViewStore, object, datetime], None]
CompletionSink = Callable[["Completion"], None]


@dataclass
class SourceState:
    """Bookkeeping of one source."""

    seq: int = 0
    in_flight: bool = False
    pending: bool = False
    task: Optional[asyncio.Task[None]] = None
    last_fetched_at: Optional[float] = None
    last_updated_at: Optional[datetime] = None
    error: Optional[NtmError] = None
    suspended: bool = False
    unavailable: bool = False
    disabled: bool = False

    def next_gen(self) -> int:
        self.seq += 1
        return self.seq

    def is_stale(self, gen: int) -> bool:
        return gen > 0 and gen < self.seq

    def accept(self, gen: int) -> bool:
        return not self.is_stale(gen)


@dataclass
class Completion:
    source: RefreshSource
    gen: int
    payload: object = None
    error: Optional[NtmError] = None
    duration: float = 0.0


@dataclass
class SourceSpec:
    """How to fetch and apply one source.

    Attributes:
        interval: Current cadence in seconds (called every tick, may adapt)
        timeout: Deadline of one fetch in seconds
        cancellable: A user refresh may cancel an in-flight fetch
        suspends: Paused together with the dashboard
    """

    source: RefreshSource
    fetch: FetchFactory
    apply: Applier
    interval: Callable[[], float]
    timeout: float
    cancellable: bool = False
    suspends: bool = True
    on_error: Optional[Callable[[ViewStore, NtmError], None]] = None


def refresh_due(last_fetched_at: Optional[float], interval: float, now: float) -> bool:
    if last_fetched_at is None:
        return True
    return now - last_fetched_at >= interval


@dataclass
class Clock:
    """Time sources; tests substitute deterministic ones."""

    monotonic: Callable[[], float] = time.monotonic
    wall: Callable[[], datetime] = field(default=lambda: datetime.now(timezone.utc))


class RefreshOrchestrator:
    """Drives every refresh source of one dashboard."""

    def __init__(
        self,
        store: ViewStore,
        specs: list[SourceSpec],
        tick_interval: float = 0.1,
        registry: Optional[TaskRegistry] = None,
        sink: Optional[CompletionSink] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.specs = {spec.source: spec for spec in specs}
        self.states = {spec.source: SourceState() for spec in specs}
        self.tick_interval = tick_interval
        self.registry = registry or TaskRegistry()
        self.paused = False
        self._clock = clock or Clock()
        self._queue: asyncio.Queue[Completion] = asyncio.Queue()
        self._sink = sink or self._queue.put_nowait
        self._running = False

    # --- Dispatch ---

    def tick(self, now: Optional[float] = None) -> list[RefreshSource]:
        """Dispatch due sources; at most one fetch per source per tick.

        Returns:
            Sources dispatched by this tick
        """
        now = self._clock.monotonic() if now is None else now
        dispatched: list[RefreshSource] = []
        for source, spec in self.specs.items():
            state = self.states[source]
            if state.in_flight or state.suspended or state.disabled:
                continue
            if self.paused and spec.suspends:
                continue
            if refresh_due(state.last_fetched_at, spec.interval(), now):
                self._dispatch(spec, state)
                dispatched.append(source)
        return dispatched

    def request(self, source: RefreshSource, cancel_in_flight: bool = False) -> bool:
        """Ask for an immediate fetch of `source`.

        Not in flight: dispatch now. In flight: coalesce into the pending
        flag, unless the source is cancellable and `cancel_in_flight` is set,
        in which case the running fetch is cancelled and a new generation is
        dispatched right away; the old fetch's completion is then stale.

        Returns:
            True when a fetch was dispatched
        """
        spec = self.specs.get(source)
        if spec is None:
            return False
        state = self.states[source]
        if state.suspended or state.disabled:
            return False
        if not state.in_flight:
            self._dispatch(spec, state)
            return True
        if cancel_in_flight and spec.cancellable:
            self._cancel(source, state)
            self._dispatch(spec, state)
            return True
        state.pending = True
        return False

    def refresh_all(self, cancel_in_flight: bool = True) -> None:
        """User refresh: clears suspensions and requests every source."""
        for source, state in self.states.items():
            state.suspended = False
            self.request(source, cancel_in_flight=cancel_in_flight)

    def toggle_pause(self) -> bool:
        self.paused = not self.paused
        logger.info("Auto-refresh %s", "paused" if self.paused else "resumed")
        return self.paused

    def resume(self, source: RefreshSource) -> None:
        """Lift the suspension put on a source after an unauthorized error."""
        state = self.states.get(source)
        if state is None or not state.suspended:
            return
        state.suspended = False
        self.request(source)

    def set_enabled(self, source: RefreshSource, enabled: bool) -> None:
        state = self.states.get(source)
        if state is None:
            return
        state.disabled = not enabled
        if not enabled and state.in_flight:
            self._cancel(source, state)

    def _dispatch(self, spec: SourceSpec, state: SourceState) -> None:
        gen = state.next_gen()
        state.in_flight = True
        state.pending = False
        thunk = spec.fetch(self.store)
        state.task = self.registry.spawn(self._run(spec, gen, thunk), name=f"fetch:{spec.source.value}:{gen}")

    def _cancel(self, source: RefreshSource, state: SourceState) -> None:
        """Cancel the running fetch and acknowledge it without waiting."""
        if state.task is not None and not state.task.done():
            state.task.cancel()
        state.task = None
        state.in_flight = False
        # Supersede the cancelled generation so its late completion is dropped.
        state.next_gen()
        logger.debug("Cancelled in-flight %s fetch", source.value)

    async def _run(self, spec: SourceSpec, gen: int, thunk: FetchThunk) -> None:
        operation = f"fetch_{spec.source.value}"
        started = self._clock.monotonic()
        try:
            payload = await asyncio.wait_for(thunk(), timeout=spec.timeout)
        except asyncio.CancelledError:
            err = NtmError(ErrorKind.CANCELED, operation, "canceled")
            self._sink(Completion(spec.source, gen, None, err, self._clock.monotonic() - started))
            raise
        except asyncio.TimeoutError:
            err = NtmError(ErrorKind.TIMEOUT, operation, "context deadline exceeded")
            self._sink(Completion(spec.source, gen, None, err, self._clock.monotonic() - started))
            return
        except Exception as e:  # every failure becomes the fetch's single error
            self._sink(Completion(spec.source, gen, None, wrap_error(operation, e), self._clock.monotonic() - started))
            return
        self._sink(Completion(spec.source, gen, payload, None, self._clock.monotonic() - started))

    # --- Completion handling ---

    def apply(self, completion: Completion) -> bool:
        """Apply one completion to the store.

        Returns:
            True when the store was touched (stale and cancelled completions return False)
        """
        source = completion.source
        spec = self.specs.get(source)
        state = self.states.get(source)
        if spec is None or state is None:
            return False
        if state.is_stale(completion.gen):
            logger.debug("Dropping stale %s completion (gen %d < %d)", source.value, completion.gen, state.seq)
            return False

        state.in_flight = False
        state.task = None
        err = completion.error
        if err is not None and err.is_canceled:
            self._dispatch_pending(spec, state)
            return False

        state.last_fetched_at = self._clock.monotonic()
        now = self._clock.wall()
        if err is not None:
            self._handle_error(spec, state, err)
        else:
            spec.apply(self.store, completion.payload, now)
            state.error = None
            state.unavailable = False
            state.last_updated_at = now
            self.store.errors.pop(source, None)
            self.store.updated_at[source] = now

        self.store.recompute_counters()
        self._dispatch_pending(spec, state)
        return True

    def _dispatch_pending(self, spec: SourceSpec, state: SourceState) -> None:
        if state.pending and not state.suspended and not state.disabled:
            self._dispatch(spec, state)

    def _handle_error(self, spec: SourceSpec, state: SourceState, err: NtmError) -> None:
        """Recovery policy by error kind.

        unavailable: panel collapses to a placeholder. unauthorized: source
        suspended until resume(). Anything else keeps last-known-good data.
        """
        source = spec.source
        state.error = err
        self.store.errors[source] = err
        if err.kind == ErrorKind.UNAVAILABLE:
            state.unavailable = True
            self.store.panels.pop(source, None)
        elif err.kind == ErrorKind.UNAUTHORIZED:
            state.suspended = True
            state.pending = False
            logger.warning("Suspending %s refresh: %s", source.value, err)
        if spec.on_error is not None:
            spec.on_error(self.store, err)
        logger.debug("%s refresh failed (%s): %s", source.value, err.kind.value, err)

    # --- Loop ---

    def drain(self) -> int:
        """Apply every queued completion. Returns how many were queued."""
        count = 0
        while True:
            try:
                completion = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return count
            self.apply(completion)
            count += 1

    async def next_completion(self, timeout: Optional[float] = None) -> Optional[Completion]:
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    async def run(self) -> None:
        """Serial update loop: ticks every tick_interval, applies completions as they arrive."""
        self._running = True
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        while self._running:
            if loop.time() >= next_tick:
                self.tick()
                next_tick = loop.time() + self.tick_interval
            completion = await self.next_completion(timeout=max(0.0, next_tick - loop.time()))
            if completion is not None:
                self.apply(completion)
                self.drain()

    async def shutdown(self, timeout: float = 2.0) -> None:
        self._running = False
        for source, state in self.states.items():
            if state.in_flight:
                self._cancel(source, state)
        await self.registry.shutdown(timeout=timeout)


__all__ = [
    "Clock",
    "Completion",
    "RefreshOrchestrator",
    "SourceSpec",
    "SourceState",
    "refresh_due",
]
