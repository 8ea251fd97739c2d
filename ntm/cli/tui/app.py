"""Textual dashboard for one NTM session.

The app owns the refresh orchestrator: a timer ticks it, fetch tasks post
RefreshCompleted messages, and the message handler is the single place where
completions are applied to the view store.
"""

from __future__ import annotations

from typing import Callable, Coroutine, Optional, Sequence

from instrukt_ai_logging import get_logger
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.widgets import Header, Label

from ntm.cli.tui.messages import CoordinatorEventReceived, RefreshCompleted, ViewModelUpdated
from ntm.cli.tui.widgets import PaneTable, StatusBar
from ntm.coordinator import CoordinatorEventType, SessionCoordinator
from ntm.core import tmux_bridge
from ntm.core.errors import NtmError
from ntm.core.refresh_orchestrator import Completion, RefreshOrchestrator, SourceSpec
from ntm.core.task_registry import TaskRegistry
from ntm.core.view_store import ViewStore

logger = get_logger(__name__)

_NOTIFY_EVENTS = {
    CoordinatorEventType.AGENT_ERROR: "error",
    CoordinatorEventType.CONFLICT_DETECTED: "warning",
    CoordinatorEventType.WORK_ASSIGNED: "information",
}


class DashboardApp(App[None]):
    """Live view of the panes and agents of a tmux session."""

    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("r", "refresh", "Refresh"),
        Binding("p", "toggle_pause", "Pause"),
        Binding("j,down", "cursor_down", "Down", show=False),
        Binding("k,up", "cursor_up", "Up", show=False),
        Binding("z,enter", "zoom", "Zoom"),
    ]

    CSS = """
    #session-hint {
        height: auto;
        color: $warning;
        padding: 0 1;
    }
    """

    def __init__(
        self,
        store: ViewStore,
        specs: list[SourceSpec],
        tick_interval: float,
        registry: Optional[TaskRegistry] = None,
        coordinator: Optional[SessionCoordinator] = None,
        startup: Sequence[Callable[[], Coroutine[object, object, None]]] = (),
        **kwargs: object,
    ) -> None:
        super().__init__(**kwargs)  # type: ignore[arg-type]
        self.store = store
        self.coordinator = coordinator
        self.startup = list(startup)
        self.orchestrator = RefreshOrchestrator(
            store,
            specs,
            tick_interval=tick_interval,
            registry=registry,
            sink=self._post_completion,
        )
        self.title = f"ntm: {store.session}"

    def compose(self) -> ComposeResult:
        yield Header()
        yield Label("", id="session-hint")
        yield PaneTable(id="panes")
        yield StatusBar(id="status-bar")

    def on_mount(self) -> None:
        for i, factory in enumerate(self.startup):
            self.orchestrator.registry.spawn(factory(), name=f"startup:{i}")
        self.set_interval(self.orchestrator.tick_interval, self._tick)
        self._tick()
        if self.coordinator is not None:
            self.coordinator.start()
            self.run_worker(self._pump_coordinator_events(), name="coordinator-events", exclusive=True)
        self.query_one(PaneTable).focus()

    async def on_unmount(self) -> None:
        if self.coordinator is not None:
            await self.coordinator.stop()
        await self.orchestrator.shutdown()

    # --- Refresh plumbing ---

    def _tick(self) -> None:
        self.orchestrator.tick()

    def _post_completion(self, completion: Completion) -> None:
        self.post_message(RefreshCompleted(completion))

    def on_refresh_completed(self, message: RefreshCompleted) -> None:
        if self.orchestrator.apply(message.completion):
            self.post_message(ViewModelUpdated(self.store))

    def on_view_model_updated(self, message: ViewModelUpdated) -> None:
        store = message.store
        self.query_one(PaneTable).render_store(store)
        self.query_one(StatusBar).update_from(store, self.orchestrator.paused)
        self.query_one("#session-hint", Label).update(store.session_error_hint)

    async def _pump_coordinator_events(self) -> None:
        assert self.coordinator is not None
        while True:
            event = await self.coordinator.events.get()
            self.post_message(CoordinatorEventReceived(event))

    def on_coordinator_event_received(self, message: CoordinatorEventReceived) -> None:
        event = message.event
        logger.info("Coordinator event %s agent=%s %s", event.type.value, event.agent_id or "-", event.details)
        severity = _NOTIFY_EVENTS.get(event.type)
        if severity is None:
            return
        target = event.agent_id or event.details.get("pattern", "")
        self.notify(f"{event.type.value.replace('_', ' ')}: {target}", severity=severity)  # type: ignore[arg-type]

    # --- Actions ---

    def action_refresh(self) -> None:
        self.orchestrator.refresh_all(cancel_in_flight=True)

    def action_toggle_pause(self) -> None:
        self.orchestrator.toggle_pause()
        self.query_one(StatusBar).update_from(self.store, self.orchestrator.paused)

    def action_cursor_down(self) -> None:
        self._move(1)

    def action_cursor_up(self) -> None:
        self._move(-1)

    def _move(self, delta: int) -> None:
        self.store.move_cursor(delta)
        if self.store.panes:
            self.query_one(PaneTable).move_cursor(row=self.store.cursor)

    async def action_zoom(self) -> None:
        pane_id = self.store.selected_pane_id
        if not pane_id:
            return
        try:
            await tmux_bridge.zoom_pane(pane_id)
        except NtmError as e:
            logger.warning("Zoom of %s failed: %s", pane_id, e)
            self.notify(str(e), severity="error")
