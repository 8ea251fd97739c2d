"""Unit tests for the refresh orchestrator."""

import asyncio
from datetime import datetime, timezone

import pytest

from ntm.core.errors import ErrorKind, NtmError
from ntm.core.models import AgentType, Pane
from ntm.core.panels import RefreshSource, ScanState, ScanStatus
from ntm.core.refresh_orchestrator import Clock, Completion, RefreshOrchestrator, SourceSpec, refresh_due
from ntm.core.view_store import ViewStore

WALL = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def clock(self) -> Clock:
        return Clock(monotonic=lambda: self.now, wall=lambda: WALL)


class ScriptedFetch:
    """Fetch factory whose n-th call runs the n-th scripted coroutine function."""

    def __init__(self, *steps) -> None:  # type: ignore[no-untyped-def]
        self.steps = list(steps)
        self.calls = 0

    def __call__(self, store: ViewStore):  # type: ignore[no-untyped-def]
        step = self.steps[min(self.calls, len(self.steps) - 1)]
        self.calls += 1
        return step


def returns(value):  # type: ignore[no-untyped-def]
    async def run():  # type: ignore[no-untyped-def]
        return value

    return run


def waits(gate: asyncio.Event, value=None):  # type: ignore[no-untyped-def]
    async def run():  # type: ignore[no-untyped-def]
        await gate.wait()
        return value

    return run


def raises(err: Exception):  # type: ignore[no-untyped-def]
    async def run():  # type: ignore[no-untyped-def]
        raise err

    return run


def set_panel(store: ViewStore, payload: object, now: datetime) -> None:
    store.set_panel(RefreshSource.SCAN, payload, now)


def _spec(source, fetch, apply=set_panel, interval=1.0, **kwargs) -> SourceSpec:  # type: ignore[no-untyped-def]
    kwargs.setdefault("timeout", 1.0)
    return SourceSpec(source, fetch, apply, interval=lambda: interval, **kwargs)


async def _apply_next(orch: RefreshOrchestrator) -> Completion:
    completion = await orch.next_completion(timeout=0.5)
    assert completion is not None
    orch.apply(completion)
    return completion


def _pane(pane_id: str, index: int) -> Pane:
    return Pane(id=pane_id, index=index, agent_type=AgentType.CLAUDE)


def test_refresh_due():
    assert refresh_due(None, 5.0, 0.0)
    assert not refresh_due(10.0, 5.0, 14.9)
    assert refresh_due(10.0, 5.0, 15.0)


@pytest.mark.asyncio
async def test_stale_session_completion_is_dropped():
    store = ViewStore("proj")
    gate = asyncio.Event()
    a, b, c = _pane("%a", 0), _pane("%b", 1), _pane("%c", 2)
    fetch = ScriptedFetch(waits(gate, [a, b]), returns([a, b, c]))
    spec = _spec(
        RefreshSource.SESSION,
        fetch,
        apply=lambda s, payload, now: s.apply_panes(payload),
        cancellable=True,
    )
    orch = RefreshOrchestrator(store, [spec], clock=FakeClock().clock())

    orch.tick()
    await asyncio.sleep(0)
    first_gen = orch.states[RefreshSource.SESSION].seq
    assert orch.request(RefreshSource.SESSION, cancel_in_flight=True)

    # The slow first enumeration reports after the second one was dispatched.
    late = Completion(RefreshSource.SESSION, first_gen, [a, b])
    assert orch.apply(late) is False

    while True:
        completion = await _apply_next(orch)
        if completion.error is None:
            break

    assert [p.id for p in store.panes] == ["%a", "%b", "%c"]
    assert fetch.calls == 2


@pytest.mark.asyncio
async def test_cancelled_scan_keeps_badge_and_redispatches():
    store = ViewStore("proj")
    store.set_panel(RefreshSource.SCAN, ScanStatus(ScanState.CLEAN), WALL)
    fetch = ScriptedFetch(waits(asyncio.Event()), returns(ScanStatus(ScanState.WARNING, warning=2)))
    orch = RefreshOrchestrator(store, [_spec(RefreshSource.SCAN, fetch, cancellable=True)], clock=FakeClock().clock())

    orch.tick()
    await asyncio.sleep(0)
    assert orch.request(RefreshSource.SCAN, cancel_in_flight=True)
    assert fetch.calls == 2

    results = [await _apply_next(orch), await _apply_next(orch)]

    cancelled = [c for c in results if c.error is not None]
    assert len(cancelled) == 1 and cancelled[0].error.kind == ErrorKind.CANCELED
    assert store.panel(RefreshSource.SCAN) == ScanStatus(ScanState.WARNING, warning=2)
    assert RefreshSource.SCAN not in store.errors


@pytest.mark.asyncio
async def test_requests_coalesce_while_in_flight():
    store = ViewStore("proj")
    gate = asyncio.Event()
    fetch = ScriptedFetch(waits(gate, ScanStatus(ScanState.CLEAN)), returns(ScanStatus(ScanState.CRITICAL)))
    orch = RefreshOrchestrator(store, [_spec(RefreshSource.SCAN, fetch)], clock=FakeClock().clock())

    assert orch.request(RefreshSource.SCAN)
    assert not orch.request(RefreshSource.SCAN)
    assert not orch.request(RefreshSource.SCAN, cancel_in_flight=True)
    assert orch.states[RefreshSource.SCAN].pending

    gate.set()
    await _apply_next(orch)
    assert fetch.calls == 2
    await _apply_next(orch)

    assert fetch.calls == 2
    assert store.panel(RefreshSource.SCAN) == ScanStatus(ScanState.CRITICAL)


@pytest.mark.asyncio
async def test_tick_dispatches_once_per_interval():
    store = ViewStore("proj")
    fake = FakeClock()
    fetch = ScriptedFetch(returns(ScanStatus(ScanState.CLEAN)))
    orch = RefreshOrchestrator(store, [_spec(RefreshSource.SCAN, fetch, interval=1.0)], clock=fake.clock())

    assert orch.tick() == [RefreshSource.SCAN]
    assert orch.tick() == []  # in flight
    await _apply_next(orch)

    fake.now = 0.5
    assert orch.tick() == []
    fake.now = 1.0
    assert orch.tick() == [RefreshSource.SCAN]
    assert fetch.calls == 2
    await _apply_next(orch)


@pytest.mark.asyncio
async def test_unauthorized_suspends_until_resumed():
    store = ViewStore("proj")
    fake = FakeClock()
    fetch = ScriptedFetch(raises(NtmError(ErrorKind.UNAUTHORIZED, "fetch_inbox", "bad token")), returns([]))
    spec = _spec(RefreshSource.MAIL_INBOX, fetch, apply=lambda s, p, n: s.set_panel(RefreshSource.MAIL_INBOX, p, n))
    orch = RefreshOrchestrator(store, [spec], clock=fake.clock())

    orch.tick()
    await _apply_next(orch)

    assert orch.states[RefreshSource.MAIL_INBOX].suspended
    fake.now = 100.0
    assert orch.tick() == []
    assert not orch.request(RefreshSource.MAIL_INBOX)

    orch.resume(RefreshSource.MAIL_INBOX)
    await _apply_next(orch)
    assert fetch.calls == 2
    assert store.panel(RefreshSource.MAIL_INBOX) == []


@pytest.mark.asyncio
async def test_unavailable_collapses_panel_other_errors_keep_data():
    store = ViewStore("proj")
    store.set_panel(RefreshSource.SCAN, ScanStatus(ScanState.CLEAN), WALL)
    fake = FakeClock()
    fetch = ScriptedFetch(
        raises(NtmError(ErrorKind.TRANSPORT, "run_scan", "exit 2")),
        raises(NtmError(ErrorKind.UNAVAILABLE, "run_scan", "ubs not installed")),
    )
    orch = RefreshOrchestrator(store, [_spec(RefreshSource.SCAN, fetch)], clock=fake.clock())

    orch.tick()
    await _apply_next(orch)
    assert store.panel(RefreshSource.SCAN) == ScanStatus(ScanState.CLEAN)
    assert store.errors[RefreshSource.SCAN].kind == ErrorKind.TRANSPORT

    fake.now = 5.0
    orch.tick()
    await _apply_next(orch)
    assert store.panel(RefreshSource.SCAN) is None
    assert orch.states[RefreshSource.SCAN].unavailable


@pytest.mark.asyncio
async def test_fetch_timeout_becomes_timeout_error():
    store = ViewStore("proj")
    fetch = ScriptedFetch(waits(asyncio.Event()))
    orch = RefreshOrchestrator(store, [_spec(RefreshSource.SCAN, fetch, timeout=0.01)], clock=FakeClock().clock())

    orch.tick()
    completion = await _apply_next(orch)

    assert completion.error is not None
    assert completion.error.kind == ErrorKind.TIMEOUT
    assert not orch.states[RefreshSource.SCAN].in_flight


@pytest.mark.asyncio
async def test_session_error_hook_runs():
    store = ViewStore("proj")
    store.apply_panes([_pane("%a", 0)])
    fetch = ScriptedFetch(raises(NtmError(ErrorKind.SESSION_NOT_FOUND, "list_panes", "can't find session: proj")))
    spec = _spec(RefreshSource.SESSION, fetch, on_error=lambda s, err: s.set_session_error(err))
    orch = RefreshOrchestrator(store, [spec], clock=FakeClock().clock())

    orch.tick()
    await _apply_next(orch)

    assert store.session_error is not None
    assert store.panes == []


@pytest.mark.asyncio
async def test_pause_skips_only_suspending_sources():
    store = ViewStore("proj")
    scan = ScriptedFetch(returns(None))
    history = ScriptedFetch(returns([]))
    orch = RefreshOrchestrator(
        store,
        [
            _spec(RefreshSource.SCAN, scan),
            _spec(RefreshSource.HISTORY, history, apply=lambda s, p, n: None, suspends=False),
        ],
        clock=FakeClock().clock(),
    )

    assert orch.toggle_pause() is True
    assert orch.tick() == [RefreshSource.HISTORY]
    await _apply_next(orch)
    assert scan.calls == 0


@pytest.mark.asyncio
async def test_shutdown_cancels_in_flight_fetches():
    store = ViewStore("proj")
    orch = RefreshOrchestrator(
        store, [_spec(RefreshSource.SCAN, ScriptedFetch(waits(asyncio.Event())))], clock=FakeClock().clock()
    )
    orch.tick()

    await orch.shutdown(timeout=0.5)

    assert not orch.states[RefreshSource.SCAN].in_flight
    assert orch.registry.task_count() == 0
