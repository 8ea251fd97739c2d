"""Active session coordination: agent monitoring, reservation conflicts, work assignment, digests."""

from ntm.coordinator.conflicts import Conflict, ConflictAction, ConflictDetector, Holder, matches_pattern
from ntm.coordinator.coordinator import SessionCoordinator
from ntm.coordinator.models import CoordinatedAgent, CoordinatorConfig, CoordinatorEvent, CoordinatorEventType

__all__ = [
    "Conflict",
    "ConflictAction",
    "ConflictDetector",
    "CoordinatedAgent",
    "CoordinatorConfig",
    "CoordinatorEvent",
    "CoordinatorEventType",
    "Holder",
    "SessionCoordinator",
    "matches_pattern",
]
