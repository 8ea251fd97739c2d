"""Async wrappers around the beads tooling (`bd` tracker and `bv` viewer).

Absence of the tools is not an error: summaries come back with
available=False, triage comes back empty, drift comes back "unavailable".
"""

from __future__ import annotations

import asyncio
from enum import Enum
from pathlib import Path

from instrukt_ai_logging import get_logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ntm.constants import BEADS_FETCH_TIMEOUT_S
from ntm.core.errors import ErrorKind, NtmError
from ntm.core.external import is_installed, run_command, run_json

logger = get_logger(__name__)

BD_BINARY = "bd"
BV_BINARY = "bv"


class BeadPreview(BaseModel):
    model_config = ConfigDict(extra="allow")
    id: str
    title: str = ""
    priority: int = 0

    @property
    def priority_label(self) -> str:
        return f"P{self.priority}"


class BeadInProgress(BaseModel):
    model_config = ConfigDict(extra="allow")
    id: str
    title: str = ""
    assignee: str = ""


class BeadsSummary(BaseModel):
    available: bool = False
    reason: str = ""
    project: str = ""
    total: int = 0
    open: int = 0
    in_progress: int = 0
    blocked: int = 0
    ready: int = 0
    closed: int = 0
    ready_preview: list[BeadPreview] = []
    in_progress_list: list[BeadInProgress] = []


class TriageRecommendation(BaseModel):
    model_config = ConfigDict(extra="allow")
    id: str
    title: str = ""
    type: str = ""
    status: str = ""
    priority: int = 0
    score: float = 0.0
    reasons: list[str] = []
    unblocks_ids: list[str] = Field(default_factory=list)
    action: str = ""


class TriageResponse(BaseModel):
    model_config = ConfigDict(extra="allow")
    recommendations: list[TriageRecommendation] = []


class DriftStatus(str, Enum):
    OK = "ok"
    WARNING = "warning"
    CRITICAL = "critical"
    NO_BASELINE = "no_baseline"
    UNAVAILABLE = "unavailable"


class DriftResult(BaseModel):
    status: DriftStatus
    message: str = ""


async def get_beads_summary(project_dir: str, limit: int = 5, timeout: float = BEADS_FETCH_TIMEOUT_S) -> BeadsSummary:
    """Bead counts plus top-N ready and in-progress previews."""
    if not (Path(project_dir) / ".beads").is_dir():
        return BeadsSummary(available=False, reason="no .beads/ directory")
    if not is_installed(BD_BINARY):
        return BeadsSummary(available=False, reason="bd not installed")

    try:
        stats = await run_json(BD_BINARY, "stats", "--json", cwd=project_dir, timeout=timeout)
    except NtmError as e:
        return BeadsSummary(available=False, reason=f"bd stats failed: {e.message}")
    if not isinstance(stats, dict):
        return BeadsSummary(available=False, reason="bd stats returned no data")

    summary = BeadsSummary(
        available=True,
        project=project_dir,
        total=int(stats.get("total_issues", 0)),
        open=int(stats.get("open_issues", 0)),
        in_progress=int(stats.get("in_progress_issues", 0)),
        blocked=int(stats.get("blocked_issues", 0)),
        ready=int(stats.get("ready_issues", 0)),
        closed=int(stats.get("closed_issues", 0)),
    )

    ready, in_progress = await asyncio.gather(
        _list_models(["ready", "--json"], BeadPreview, project_dir, timeout),
        _list_models(["list", "--status=in_progress", "--json"], BeadInProgress, project_dir, timeout),
    )
    summary.ready_preview = ready[:limit]  # type: ignore[assignment]
    summary.in_progress_list = in_progress[:limit]  # type: ignore[assignment]
    return summary


async def _list_models(args: list[str], model: type[BaseModel], project_dir: str, timeout: float) -> list[BaseModel]:
    try:
        data = await run_json(BD_BINARY, *args, cwd=project_dir, timeout=timeout)
    except NtmError as e:
        logger.debug("bd %s failed: %s", " ".join(args), e)
        return []
    if not isinstance(data, list):
        return []
    items: list[BaseModel] = []
    for raw in data:
        try:
            items.append(model.model_validate(raw))
        except ValidationError:
            continue
    return items


async def get_triage(project_dir: str, timeout: float = BEADS_FETCH_TIMEOUT_S * 3) -> TriageResponse:
    """Priority-ranked recommendations from `bv -robot-triage`; empty when bv is absent."""
    if not is_installed(BV_BINARY):
        return TriageResponse()
    data = await run_json(BV_BINARY, "-robot-triage", cwd=project_dir, timeout=timeout)
    if not isinstance(data, dict):
        return TriageResponse()
    # Recommendations are nested under "triage" in current bv releases.
    payload = data.get("triage", data)
    if not isinstance(payload, dict):
        return TriageResponse()
    try:
        return TriageResponse.model_validate({"recommendations": payload.get("recommendations") or []})
    except ValidationError as e:
        raise NtmError(ErrorKind.VALIDATION, "bv -robot-triage", str(e)) from e


async def check_drift(project_dir: str, timeout: float = BEADS_FETCH_TIMEOUT_S) -> DriftResult:
    """Map `bv -check-drift` exit codes: 0 ok, 1 critical (or no baseline), 2 warning."""
    if not is_installed(BV_BINARY):
        return DriftResult(status=DriftStatus.UNAVAILABLE, message="bv not installed")
    try:
        result = await run_command(BV_BINARY, "-check-drift", cwd=project_dir, timeout=timeout)
    except NtmError as e:
        if e.kind != ErrorKind.UNAVAILABLE:
            raise
        return DriftResult(status=DriftStatus.UNAVAILABLE, message="bv not installed")
    code = result.returncode
    message = result.stdout or result.stderr
    if code == 0:
        return DriftResult(status=DriftStatus.OK, message=message)
    if code == 1:
        if "no baseline" in message.lower():
            return DriftResult(status=DriftStatus.NO_BASELINE, message=message)
        return DriftResult(status=DriftStatus.CRITICAL, message=message)
    if code == 2:
        return DriftResult(status=DriftStatus.WARNING, message=message)
    return DriftResult(status=DriftStatus.NO_BASELINE, message=message or f"exit status {code}")

