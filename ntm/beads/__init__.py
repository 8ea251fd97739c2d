"""Ticket tracker integration (beads)."""

from ntm.beads.client import (
    BeadsSummary,
    DriftResult,
    DriftStatus,
    TriageRecommendation,
    TriageResponse,
    check_drift,
    get_beads_summary,
    get_triage,
)

__all__ = [
    "BeadsSummary",
    "DriftResult",
    "DriftStatus",
    "TriageRecommendation",
    "TriageResponse",
    "check_drift",
    "get_beads_summary",
    "get_triage",
]
