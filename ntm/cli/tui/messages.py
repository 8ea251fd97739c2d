"""Custom Textual messages carrying background results onto the app's message loop."""

from __future__ import annotations

from textual.message import Message

from ntm.coordinator.models import CoordinatorEvent
from ntm.core.refresh_orchestrator import Completion
from ntm.core.view_store import ViewStore


class RefreshCompleted(Message):
    """A source fetch finished; applied to the store by the app, never by the fetch task."""

    def __init__(self, completion: Completion) -> None:
        super().__init__()
        self.completion = completion


class ViewModelUpdated(Message):
    """The store changed; widgets re-render from it."""

    def __init__(self, store: ViewStore) -> None:
        super().__init__()
        self.store = store


class CoordinatorEventReceived(Message):
    def __init__(self, event: CoordinatorEvent) -> None:
        super().__init__()
        self.event = event
