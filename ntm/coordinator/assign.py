"""Matching idle agents to triage recommendations."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from ntm.beads import TriageRecommendation
from ntm.constants import ASSIGN_IMPACT_MAX_CHARS
from ntm.coordinator.models import CoordinatedAgent


@dataclass
class WorkAssignment:
    bead_id: str
    bead_title: str
    agent_pane_id: str
    agent_type: str
    assigned_at: datetime
    priority: int = 0
    score: float = 0.0
    agent_mail_name: str = ""


@dataclass
class AssignmentResult:
    assignment: WorkAssignment
    success: bool = False
    error: str = ""
    message_sent: bool = False


def assignable(recommendations: list[TriageRecommendation]) -> list[TriageRecommendation]:
    return [r for r in recommendations if r.status != "blocked"]


def find_best_match(
    agent: CoordinatedAgent, recommendations: list[TriageRecommendation], now: datetime
) -> Optional[tuple[WorkAssignment, TriageRecommendation]]:
    """First unblocked recommendation; triage output is already ranked."""
    for rec in recommendations:
        if rec.status == "blocked":
            continue
        assignment = WorkAssignment(
            bead_id=rec.id,
            bead_title=rec.title,
            agent_pane_id=agent.pane_id,
            agent_type=agent.agent_type,
            assigned_at=now,
            priority=rec.priority,
            score=rec.score,
            agent_mail_name=agent.mail_name,
        )
        return assignment, rec
    return None


def format_assignment_message(assignment: WorkAssignment, rec: TriageRecommendation) -> str:
    bead = assignment.bead_id
    parts = [
        "# Work Assignment\n\n",
        f"**Bead:** {bead}\n",
        f"**Title:** {assignment.bead_title}\n",
        f"**Priority:** P{assignment.priority}\n",
        f"**Score:** {assignment.score:.2f}\n\n",
    ]
    if rec.reasons:
        parts.append("## Why This Task\n\n")
        parts += [f"- {reason}\n" for reason in rec.reasons]
        parts.append("\n")

    if rec.unblocks_ids:
        parts.append("## Impact\n\n")
        parts.append(f"Completing this will unblock {len(rec.unblocks_ids)} other tasks:\n")
        for unblocked in rec.unblocks_ids:
            if sum(len(p) for p in parts) > ASSIGN_IMPACT_MAX_CHARS:
                parts.append("- ...\n")
                break
            parts.append(f"- {unblocked}\n")
        parts.append("\n")

    parts += [
        "## Instructions\n\n",
        f"1. Review the bead with `bd show {bead}`\n",
        f"2. Claim the work with `bd update {bead} --status in_progress`\n",
        "3. Reserve any files you'll modify\n",
        "4. Implement and test\n",
        f"5. Close with `bd close {bead}`\n",
        "6. Commit with `.beads/` changes\n\n",
        "Please acknowledge this message when you begin work.\n",
    ]
    return "".join(parts)
