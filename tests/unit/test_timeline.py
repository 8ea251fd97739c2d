"""Unit tests for the session timeline."""

from datetime import datetime, timedelta, timezone

from ntm.core.models import AgentStatus, AgentStatusState, AgentType, Pane
from ntm.core.timeline import MarkerKind, TimelineState, TimelineTracker, timeline_agent_id

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def test_only_state_changes_are_recorded():
    tracker = TimelineTracker()

    first = tracker.record_event("cc_1", "proj", "cc", TimelineState.WORKING, T0)
    duplicate = tracker.record_event("cc_1", "proj", "cc", TimelineState.WORKING, T0 + timedelta(seconds=5))
    second = tracker.record_event("cc_1", "proj", "cc", TimelineState.IDLE, T0 + timedelta(seconds=30))

    assert first is not None
    assert duplicate is None
    assert second is not None
    assert second.previous_state == TimelineState.WORKING
    assert second.duration == timedelta(seconds=30)
    assert len(tracker.events()) == 2


def test_markers_for_start_completion_and_error():
    tracker = TimelineTracker()

    tracker.record_event("cc_1", "proj", "cc", TimelineState.WORKING, T0)
    tracker.record_event("cc_1", "proj", "cc", TimelineState.IDLE, T0 + timedelta(seconds=1))
    tracker.record_event("cc_1", "proj", "cc", TimelineState.ERROR, T0 + timedelta(seconds=2), error_message="crash")

    kinds = [m.kind for m in tracker.markers_for_agent("cc_1")]
    assert kinds == [MarkerKind.START, MarkerKind.COMPLETION, MarkerKind.ERROR]
    assert tracker.markers_for_agent("cc_1")[-1].message == "crash"


def test_future_timestamps_are_clamped_to_now():
    tracker = TimelineTracker()
    future = datetime.now(timezone.utc) + timedelta(hours=1)

    event = tracker.record_event("cc_1", "proj", "cc", TimelineState.WORKING, future)

    assert event is not None
    assert event.timestamp <= datetime.now(timezone.utc)


def test_prune_keeps_current_state_for_dedup():
    tracker = TimelineTracker(max_age=timedelta(hours=1))
    tracker.record_event("cc_1", "proj", "cc", TimelineState.WORKING, T0)

    removed = tracker.prune(now=T0 + timedelta(hours=2))

    assert removed == 2  # event + start marker
    assert tracker.events() == []
    assert tracker.current_state("cc_1") == TimelineState.WORKING
    assert tracker.record_event("cc_1", "proj", "cc", TimelineState.WORKING, T0) is None


def test_state_durations_within_window():
    tracker = TimelineTracker()
    tracker.record_event("cc_1", "proj", "cc", TimelineState.WORKING, T0)
    tracker.record_event("cc_1", "proj", "cc", TimelineState.IDLE, T0 + timedelta(minutes=10))

    durations = tracker.state_durations("cc_1", since=T0, until=T0 + timedelta(minutes=15))

    assert durations[TimelineState.WORKING] == timedelta(minutes=10)
    assert durations[TimelineState.IDLE] == timedelta(minutes=5)


def test_record_status_ignores_user_panes():
    tracker = TimelineTracker()
    user = Pane(id="%0", index=0, title="shell", agent_type=AgentType.USER)
    status = AgentStatus(
        pane_id="%0", pane_title="shell", agent_type=AgentType.USER, state=AgentStatusState.IDLE, updated_at=T0
    )

    assert tracker.record_status("proj", user, status) is None


def test_record_status_uses_title_suffix_as_agent_id():
    tracker = TimelineTracker()
    pane = Pane(id="%3", index=3, title="proj__cc_2", agent_type=AgentType.CLAUDE)
    status = AgentStatus(
        pane_id="%3", pane_title=pane.title, agent_type=AgentType.CLAUDE, state=AgentStatusState.WORKING, updated_at=T0
    )

    event = tracker.record_status("proj", pane, status)

    assert event is not None
    assert event.agent_id == "cc_2"
    assert timeline_agent_id(Pane(id="%9", index=9)) == "%9"
