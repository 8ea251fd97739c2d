"""Agent Mail messaging client and session identity persistence."""

from ntm.agentmail.client import AgentMailClient, extract_mcp_content
from ntm.agentmail.models import (
    Agent,
    FileReservation,
    ForceReleaseResult,
    InboxMessage,
    Project,
    ReservationConflict,
    SendResult,
)

__all__ = [
    "AgentMailClient",
    "extract_mcp_content",
    "Agent",
    "FileReservation",
    "ForceReleaseResult",
    "InboxMessage",
    "Project",
    "ReservationConflict",
    "SendResult",
]
