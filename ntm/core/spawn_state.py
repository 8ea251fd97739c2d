"""Reader for staggered-spawn progress (`<project>/.ntm/spawn-state.json`)."""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ntm.core.errors import ErrorKind, NtmError

SPAWN_STATE_RELPATH = Path(".ntm") / "spawn-state.json"


class SpawnPrompt(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)
    pane: str = ""
    pane_id: str = ""
    order: int = 0
    scheduled_at: Optional[datetime] = Field(default=None, alias="scheduled")
    sent: bool = False
    sent_at: Optional[datetime] = None


class SpawnState(BaseModel):
    model_config = ConfigDict(extra="allow")
    batch_id: str = ""
    started_at: Optional[datetime] = None
    stagger_seconds: int = 0
    total_agents: int = 0
    prompts: list[SpawnPrompt] = []
    completed_at: Optional[datetime] = None

    @property
    def sent_count(self) -> int:
        return sum(1 for p in self.prompts if p.sent)

    @property
    def is_active(self) -> bool:
        """A spawn is active until it completes or every prompt was sent."""
        if self.completed_at is not None and self.completed_at.year > 1:
            return False
        return not self.prompts or self.sent_count < len(self.prompts)

    def progress(self) -> float:
        if not self.prompts:
            return 0.0
        return self.sent_count / len(self.prompts)

    def next_pending(self) -> Optional[SpawnPrompt]:
        pending = [p for p in self.prompts if not p.sent]
        return min(pending, key=lambda p: p.order) if pending else None


def spawn_state_path(project_dir: str | Path) -> Path:
    return Path(project_dir) / SPAWN_STATE_RELPATH


def load_spawn_state(project_dir: str | Path) -> Optional[SpawnState]:
    """Load the spawn state; None when the file does not exist.

    Raises:
        NtmError: validation when the file is not valid spawn state
    """
    path = spawn_state_path(project_dir)
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    try:
        return SpawnState.model_validate(json.loads(raw))
    except (json.JSONDecodeError, ValidationError) as e:
        raise NtmError(ErrorKind.VALIDATION, "load_spawn_state", f"{path}: {e}") from e
