"""Unit tests for the beads wrappers."""

import json

import pytest

from ntm.beads import client as beads
from ntm.beads import DriftStatus, get_beads_summary, get_triage
from ntm.core.external import CommandResult


@pytest.mark.asyncio
async def test_summary_without_beads_directory(tmp_path):
    summary = await get_beads_summary(str(tmp_path))

    assert not summary.available
    assert summary.reason == "no .beads/ directory"


@pytest.mark.asyncio
async def test_summary_without_bd(tmp_path, monkeypatch):
    (tmp_path / ".beads").mkdir()
    monkeypatch.setattr(beads, "is_installed", lambda binary: False)

    summary = await get_beads_summary(str(tmp_path))

    assert summary.reason == "bd not installed"


@pytest.mark.asyncio
async def test_summary_with_previews(tmp_path, monkeypatch):
    (tmp_path / ".beads").mkdir()
    monkeypatch.setattr(beads, "is_installed", lambda binary: True)
    outputs = {
        "stats": {"total_issues": 9, "open_issues": 4, "ready_issues": 2, "in_progress_issues": 1},
        "ready": [{"id": "bd-1", "title": "First", "priority": 1}, {"id": "bd-2"}, {"title": "no id"}],
        "list": [{"id": "bd-3", "title": "Doing", "assignee": "BlueLake"}],
    }

    async def fake_json(binary, *args, **kwargs):  # type: ignore[no-untyped-def]
        return outputs[args[0]]

    monkeypatch.setattr(beads, "run_json", fake_json)

    summary = await get_beads_summary(str(tmp_path), limit=1)

    assert summary.available
    assert (summary.total, summary.ready, summary.in_progress) == (9, 2, 1)
    assert [b.id for b in summary.ready_preview] == ["bd-1"]
    assert summary.ready_preview[0].priority_label == "P1"
    assert summary.in_progress_list[0].assignee == "BlueLake"


@pytest.mark.asyncio
async def test_triage_reads_nested_recommendations(monkeypatch):
    monkeypatch.setattr(beads, "is_installed", lambda binary: True)

    async def fake_json(binary, *args, **kwargs):  # type: ignore[no-untyped-def]
        return {"triage": {"recommendations": [{"id": "bd-7", "score": 0.9, "unblocks_ids": ["bd-8"]}]}}

    monkeypatch.setattr(beads, "run_json", fake_json)

    triage = await get_triage("/tmp")

    assert [r.id for r in triage.recommendations] == ["bd-7"]
    assert triage.recommendations[0].unblocks_ids == ["bd-8"]


@pytest.mark.asyncio
async def test_triage_empty_without_bv(monkeypatch):
    monkeypatch.setattr(beads, "is_installed", lambda binary: False)
    assert (await get_triage("/tmp")).recommendations == []


@pytest.mark.parametrize(
    "code,output,expected",
    [
        (0, "no drift", DriftStatus.OK),
        (1, "drift detected", DriftStatus.CRITICAL),
        (1, "No baseline found", DriftStatus.NO_BASELINE),
        (2, "minor drift", DriftStatus.WARNING),
        (7, "", DriftStatus.NO_BASELINE),
    ],
)
@pytest.mark.asyncio
async def test_drift_exit_codes(monkeypatch, code, output, expected):
    monkeypatch.setattr(beads, "is_installed", lambda binary: True)

    async def fake_run(*args, **kwargs):  # type: ignore[no-untyped-def]
        return CommandResult(code, output, "")

    monkeypatch.setattr(beads, "run_command", fake_run)

    assert (await beads.check_drift("/tmp")).status == expected


@pytest.mark.asyncio
async def test_drift_unavailable_without_bv(monkeypatch):
    monkeypatch.setattr(beads, "is_installed", lambda binary: False)
    assert (await beads.check_drift("/tmp")).status == DriftStatus.UNAVAILABLE


def test_summary_serializes():
    summary = beads.BeadsSummary(available=True, ready=3)
    assert json.loads(summary.model_dump_json())["ready"] == 3
