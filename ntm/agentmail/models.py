"""Agent Mail payload models.

Timestamps from the server are ISO-8601 strings, sometimes without a zone
or empty; pydantic parses the former and the validators map "" to None.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


def _blank_to_none(value: object) -> object:
    if value == "" or value == "0001-01-01T00:00:00Z":
        return None
    return value


class Agent(BaseModel):
    model_config = ConfigDict(extra="allow")
    id: int = 0
    name: str
    program: str = ""
    model: str = ""
    task_description: str = ""
    inception_ts: Optional[datetime] = None
    last_active_ts: Optional[datetime] = None
    project_id: int = 0

    @field_validator("inception_ts", "last_active_ts", mode="before")
    @classmethod
    def normalize_ts(cls, value: object) -> object:
        return _blank_to_none(value)


class Project(BaseModel):
    model_config = ConfigDict(extra="allow")
    id: int = 0
    slug: str = ""
    human_key: str = ""
    created_at: Optional[datetime] = None

    @field_validator("created_at", mode="before")
    @classmethod
    def normalize_ts(cls, value: object) -> object:
        return _blank_to_none(value)


class FileReservation(BaseModel):
    """Advisory lock on a path or glob pattern."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)
    id: int = 0
    path_pattern: str
    # The resource view names the holder "agent", the tools "agent_name".
    agent_name: str = Field(default="", validation_alias=AliasChoices("agent_name", "agent"))
    project_id: int = 0
    exclusive: bool = True
    reason: str = ""
    created_ts: Optional[datetime] = None
    expires_ts: Optional[datetime] = None
    released_ts: Optional[datetime] = None

    @field_validator("created_ts", "expires_ts", "released_ts", mode="before")
    @classmethod
    def normalize_ts(cls, value: object) -> object:
        return _blank_to_none(value)

    def is_active(self, now: datetime) -> bool:
        """Not released and not expired at `now`."""
        if self.released_ts is not None:
            return False
        if self.expires_ts is None:
            return True
        expires = self.expires_ts
        if expires.tzinfo is None and now.tzinfo is not None:
            expires = expires.replace(tzinfo=now.tzinfo)
        return expires > now


class InboxMessage(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)
    id: int
    subject: str = ""
    sender: str = Field(default="", validation_alias=AliasChoices("from", "sender"))
    created_ts: Optional[datetime] = None
    thread_id: Optional[str] = None
    importance: str = "normal"
    ack_required: bool = False
    kind: str = ""
    body_md: str = ""
    read: bool = Field(default=False, validation_alias=AliasChoices("read", "is_read"))

    @field_validator("created_ts", mode="before")
    @classmethod
    def normalize_ts(cls, value: object) -> object:
        return _blank_to_none(value)

    @property
    def is_urgent(self) -> bool:
        return self.importance == "urgent"


class MessageDelivery(BaseModel):
    model_config = ConfigDict(extra="allow")
    project: str = ""
    payload: Optional[dict[str, object]] = None


class SendResult(BaseModel):
    model_config = ConfigDict(extra="allow")
    deliveries: list[MessageDelivery] = []
    count: int = 0


class ForceReleaseResult(BaseModel):
    model_config = ConfigDict(extra="allow")
    success: bool = False
    released_at: Optional[datetime] = None
    previous_holder: str = ""
    path_pattern: str = ""
    notified: bool = False

    @field_validator("released_at", mode="before")
    @classmethod
    def normalize_ts(cls, value: object) -> object:
        return _blank_to_none(value)


class ReservationConflict(BaseModel):
    model_config = ConfigDict(extra="allow")
    path: str
    holders: list[str] = []


class HealthStatus(BaseModel):
    model_config = ConfigDict(extra="allow")
    status: str = ""
    timestamp: str = ""


__all__ = [
    "Agent",
    "Project",
    "FileReservation",
    "InboxMessage",
    "MessageDelivery",
    "SendResult",
    "ForceReleaseResult",
    "ReservationConflict",
    "HealthStatus",
]
