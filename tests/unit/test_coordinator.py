"""Unit tests for the session coordinator loop."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from ntm.beads import TriageRecommendation
from ntm.beads.client import TriageResponse
from ntm.constants import COORD_EVENT_BUFFER
from ntm.coordinator import coordinator as coordinator_module
from ntm.coordinator import CoordinatedAgent, CoordinatorConfig, CoordinatorEvent, CoordinatorEventType
from ntm.coordinator.coordinator import SessionCoordinator, transition_event
from ntm.coordinator.digest import format_digest_markdown, generate_digest
from ntm.coordinator.monitor import AgentStatusResult
from ntm.core.errors import ErrorKind, NtmError
from ntm.core.models import AgentStatusState, AgentType, Pane

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def _pane(pane_id: str, index: int) -> Pane:
    return Pane(id=pane_id, index=index, title=f"proj__cc_{index}", agent_type=AgentType.CLAUDE)


def _monitor(*snapshots, names=None) -> MagicMock:  # type: ignore[no-untyped-def]
    monitor = MagicMock()
    monitor.poll = AsyncMock(side_effect=list(snapshots))
    monitor.mail_names = MagicMock(return_value=names or {})
    return monitor


def _drain(coordinator: SessionCoordinator) -> list[CoordinatorEvent]:
    return [coordinator.events.get_nowait() for _ in range(coordinator.events.qsize())]


@pytest.mark.parametrize(
    "prev,new,expected",
    [
        (AgentStatusState.WORKING, AgentStatusState.ERROR, CoordinatorEventType.AGENT_ERROR),
        (AgentStatusState.ERROR, AgentStatusState.IDLE, CoordinatorEventType.AGENT_RECOVERED),
        (AgentStatusState.ERROR, AgentStatusState.WORKING, CoordinatorEventType.AGENT_RECOVERED),
        (AgentStatusState.WORKING, AgentStatusState.IDLE, CoordinatorEventType.AGENT_IDLE),
        (AgentStatusState.IDLE, AgentStatusState.WORKING, CoordinatorEventType.AGENT_BUSY),
        (AgentStatusState.IDLE, AgentStatusState.UNKNOWN, None),
    ],
)
def test_transition_event(prev, new, expected):
    assert transition_event(prev, new) == expected


@pytest.mark.asyncio
async def test_update_emits_transitions_after_first_sighting():
    pane = _pane("%1", 1)
    monitor = _monitor(
        [(pane, AgentStatusResult(status=AgentStatusState.WORKING))],
        [(pane, AgentStatusResult(status=AgentStatusState.IDLE, context_usage=40.0))],
        [(pane, AgentStatusResult(status=AgentStatusState.IDLE))],
        [],
    )
    coordinator = SessionCoordinator("proj", "/work/proj", None, monitor=monitor, clock=lambda: NOW)

    for _ in range(3):
        await coordinator.update_agent_states()

    events = _drain(coordinator)
    assert [e.type for e in events] == [CoordinatorEventType.AGENT_IDLE]
    assert events[0].agent_id == "%1"
    assert events[0].details["prev_status"] == "working"
    assert coordinator.get_agent("%1").context_usage == 0.0

    await coordinator.update_agent_states()
    assert coordinator.agents() == {}


@pytest.mark.asyncio
async def test_agent_views_are_copies():
    monitor = _monitor([(_pane("%1", 1), AgentStatusResult(status=AgentStatusState.IDLE))], names={"%1": "BlueLake"})
    coordinator = SessionCoordinator("proj", "/work/proj", None, monitor=monitor, clock=lambda: NOW)
    await coordinator.update_agent_states()

    view = coordinator.get_agent("%1")
    view.mail_name = "changed"

    assert coordinator.get_agent("%1").mail_name == "BlueLake"


@pytest.mark.asyncio
async def test_full_event_queue_drops_instead_of_blocking():
    coordinator = SessionCoordinator("proj", "/work/proj", None, monitor=_monitor(), clock=lambda: NOW)

    for i in range(COORD_EVENT_BUFFER + 5):
        coordinator.emit(CoordinatorEvent(type=CoordinatorEventType.AGENT_IDLE, agent_id=str(i)))

    assert coordinator.events.qsize() == COORD_EVENT_BUFFER
    assert coordinator.events.get_nowait().agent_id == "0"


@pytest.mark.asyncio
async def test_poll_once_survives_enumeration_failure():
    monitor = MagicMock()
    monitor.poll = AsyncMock(side_effect=NtmError(ErrorKind.SESSION_NOT_FOUND, "list_panes", "gone"))
    coordinator = SessionCoordinator("proj", "/work/proj", None, monitor=monitor, clock=lambda: NOW)

    await coordinator.poll_once()

    assert coordinator.last_update is None


def test_idle_agents_respect_threshold_and_order():
    coordinator = SessionCoordinator(
        "proj", "/work/proj", None, config=CoordinatorConfig(idle_threshold_s=60), clock=lambda: NOW
    )
    coordinator._agents = {
        "%3": CoordinatedAgent("%3", 3, "cc", status=AgentStatusState.IDLE, last_activity=NOW - timedelta(minutes=5)),
        "%1": CoordinatedAgent("%1", 1, "cc", status=AgentStatusState.IDLE),
        "%2": CoordinatedAgent("%2", 2, "cc", status=AgentStatusState.IDLE, last_activity=NOW - timedelta(seconds=10)),
        "%4": CoordinatedAgent("%4", 4, "cc", status=AgentStatusState.IDLE, healthy=False),
        "%5": CoordinatedAgent("%5", 5, "cc", status=AgentStatusState.WORKING),
    }

    assert [a.pane_id for a in coordinator.idle_agents()] == ["%1", "%3"]


@pytest.mark.asyncio
async def test_assign_work_skips_triage_without_idle_agents(monkeypatch):
    triage = AsyncMock()
    monkeypatch.setattr(coordinator_module, "get_triage", triage)
    client = MagicMock()
    client.send_message = AsyncMock()
    coordinator = SessionCoordinator(
        "proj", "/work/proj", client, config=CoordinatorConfig(auto_assign=True), clock=lambda: NOW
    )
    coordinator._agents = {"%1": CoordinatedAgent("%1", 1, "cc", status=AgentStatusState.WORKING, mail_name="BlueLake")}

    assert await coordinator.assign_work() == []
    triage.assert_not_awaited()
    client.send_message.assert_not_awaited()


@pytest.mark.asyncio
async def test_assign_work_gives_each_idle_agent_distinct_bead(monkeypatch):
    recommendations = [
        TriageRecommendation(id="bd-1", title="Blocked", status="blocked"),
        TriageRecommendation(id="bd-2", title="Parser", priority=1, score=0.9, reasons=["unblocks 2"]),
        TriageRecommendation(id="bd-3", title="Docs", priority=2, score=0.5),
    ]
    monkeypatch.setattr(
        coordinator_module, "get_triage", AsyncMock(return_value=TriageResponse(recommendations=recommendations))
    )
    client = MagicMock()
    client.send_message = AsyncMock()
    coordinator = SessionCoordinator(
        "proj",
        "/work/proj",
        client,
        agent_name="Coordinator",
        config=CoordinatorConfig(auto_assign=True),
        clock=lambda: NOW,
    )
    coordinator._agents = {
        "%1": CoordinatedAgent("%1", 1, "cc", status=AgentStatusState.IDLE, mail_name="BlueLake"),
        "%2": CoordinatedAgent("%2", 2, "cod", status=AgentStatusState.IDLE, mail_name="RedStone"),
        "%3": CoordinatedAgent("%3", 3, "gmi", status=AgentStatusState.IDLE),
    }

    results = await coordinator.assign_work()

    assert [(r.assignment.agent_mail_name, r.assignment.bead_id) for r in results] == [
        ("BlueLake", "bd-2"),
        ("RedStone", "bd-3"),
    ]
    assert all(r.success for r in results)
    first = client.send_message.await_args_list[0].kwargs
    assert first["subject"] == "Work Assignment: Parser"
    assert first["ack_required"] is True
    assert "bd show bd-2" in first["body_md"]
    assert coordinator.get_agent("%1").current_task == "bd-2"
    assert [e.type for e in _drain(coordinator)] == [CoordinatorEventType.WORK_ASSIGNED] * 2


@pytest.mark.asyncio
async def test_failed_assignment_keeps_bead_available(monkeypatch):
    monkeypatch.setattr(
        coordinator_module,
        "get_triage",
        AsyncMock(return_value=TriageResponse(recommendations=[TriageRecommendation(id="bd-2", title="Parser")])),
    )
    client = MagicMock()
    client.send_message = AsyncMock(side_effect=[NtmError(ErrorKind.TRANSPORT, "send_message", "down"), None])
    coordinator = SessionCoordinator(
        "proj", "/work/proj", client, config=CoordinatorConfig(auto_assign=True), clock=lambda: NOW
    )
    coordinator._agents = {
        "%1": CoordinatedAgent("%1", 1, "cc", status=AgentStatusState.IDLE, mail_name="BlueLake"),
        "%2": CoordinatedAgent("%2", 2, "cc", status=AgentStatusState.IDLE, mail_name="RedStone"),
    }

    results = await coordinator.assign_work()

    assert [r.success for r in results] == [False, True]
    assert results[0].error.startswith("sending message")
    assert results[1].assignment.agent_mail_name == "RedStone"


def test_digest_counts_and_importance():
    agents = [
        CoordinatedAgent("%1", 1, "cc", status=AgentStatusState.IDLE, last_activity=NOW - timedelta(minutes=2)),
        CoordinatedAgent("%2", 2, "cod", status=AgentStatusState.WORKING, last_activity=NOW - timedelta(minutes=20)),
        CoordinatedAgent("%3", 3, "gmi", status=AgentStatusState.WORKING, context_usage=90.0, last_activity=NOW),
    ]

    digest = generate_digest("proj", agents, NOW)

    assert (digest.agent_count, digest.active_count, digest.idle_count, digest.error_count) == (3, 2, 1, 0)
    assert digest.alerts == ["Agent 2 (cod) appears stalled", "Agent 3 (gmi) context at 90%"]
    assert digest.importance == "high"
    assert digest.agent_statuses[0].idle_for == "2m"

    agents.append(CoordinatedAgent("%4", 4, "cc", status=AgentStatusState.ERROR))
    assert generate_digest("proj", agents, NOW).importance == "urgent"
    assert generate_digest("proj", agents[:1], NOW).importance == "normal"


def test_digest_markdown():
    digest = generate_digest("proj", [CoordinatedAgent("%1", 1, "cc", status=AgentStatusState.IDLE)], NOW)

    text = format_digest_markdown(digest, "Coordinator")

    assert text.startswith("# Session Digest: proj\n")
    assert "| 1 | cc | idle | 0% | - |" in text
    assert "## Alerts" not in text
    assert text.endswith("*Coordinator: Coordinator*\n")


@pytest.mark.asyncio
async def test_send_digest_goes_to_human_agent():
    client = MagicMock()
    client.send_message = AsyncMock()
    coordinator = SessionCoordinator("proj", "/work/proj", client, agent_name="Coordinator", clock=lambda: NOW)

    digest = await coordinator.send_digest()

    assert digest is not None
    kwargs = client.send_message.await_args.kwargs
    assert kwargs["to"] == ["Human"]
    assert kwargs["importance"] == "normal"
    assert [e.type for e in _drain(coordinator)] == [CoordinatorEventType.DIGEST_SENT]


def test_config_minimum_intervals():
    config = CoordinatorConfig(poll_interval_s=0.01, digest_interval_s=1.0, human_agent="").normalized()

    assert config.poll_interval_s == 5.0
    assert config.digest_interval_s == 300.0
    assert config.human_agent == "Human"


@pytest.mark.asyncio
async def test_start_and_stop_manage_tasks():
    coordinator = SessionCoordinator(
        "proj", "/work/proj", None, monitor=_monitor(*([[]] * 10)), config=CoordinatorConfig(send_digests=True)
    )

    coordinator.start()
    assert coordinator.running
    assert coordinator.registry.task_count() == 2

    await coordinator.stop()
    assert not coordinator.running
    await coordinator.registry.shutdown(timeout=0.5)
    assert coordinator.registry.task_count() == 0
