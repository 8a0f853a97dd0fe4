"""End-to-end tests for the waste analysis run."""

from unittest.mock import patch

import pytest

from conftest import ScriptedModel, call, say
from gitpulse.activity import ActivityBus
from gitpulse.config import load_config
from gitpulse.errors import AnalysisError, ErrorKind
from gitpulse.models import ActivityType, AnalysisRun, DispatchStatus, RunStatus
from gitpulse.pipeline import run_waste_analysis
from gitpulse.transcript import message_text

REPORT = """{
  "summary": "Cart logic was rewritten twice in a week.",
  "events": [
    {"patternId": "W3", "severity": "high", "authorEmail": "bob@example.com",
     "filePaths": ["src/cart.py"], "commitHashes": ["cccccccc"], "linesWasted": 40,
     "description": "Reverted cart totals"},
    {"patternId": "W1", "severity": "low", "authorEmail": "alice@example.com",
     "filePaths": ["src/cart.py"], "linesWasted": 12}
  ],
  "ranking": [
    {"authorEmail": "bob@example.com", "authorName": "bob", "totalLinesWasted": 40, "wasteRate": 0.04},
    {"authorEmail": "alice@example.com", "authorName": "alice", "totalLinesWasted": 12, "wasteRate": 0.01}
  ],
  "teamRecommendations": ["Agree on cart ownership before rewriting it."]
}"""


def _happy_script():
    return [
        call("task", subAgentName="git-forensics", instruction="Who rewrote src/cart.py, and why?"),
        say("bob reverted alice's cart totals within a day.", tokens=7),
        say(f"Done.\n```json\n{REPORT}\n```", tokens=5),
    ]


def _run():
    return AnalysisRun(id="waste-42", repo_ref="/repos/shop", started_at=1_700_000_300_000)


@pytest.mark.asyncio
async def test_full_run_persists_report(tmp_project, seeded_store, repo_dir):
    """Pre-scan → controller dispatches one worker → fenced report is persisted."""
    config = load_config(tmp_project)
    model = ScriptedModel(_happy_script())
    progress = []
    run = _run()

    report = await run_waste_analysis(
        config, seeded_store, repo_dir, model=model, on_progress=progress.append, run=run,
    )

    assert report.analysis_id == "waste-42"
    assert report.repo_name == "shop"
    assert [e.pattern_id for e in report.events] == ["W3", "W1"]
    assert [s.author_email for s in report.ranking][0] == "bob@example.com"
    assert report.analysis_stats.tokens_used == 12

    saved = await seeded_store.get_latest_report()
    assert saved.analysis_id == "waste-42"
    assert len(saved.events) == 2
    runs = await seeded_store.list_runs()
    assert runs[0]["status"] == "completed"
    assert runs[0]["repo_ref"] == "/repos/shop"

    assert run.status == RunStatus.COMPLETED
    assert run.report is report
    assert [a.author_email for a in run.scan.suspect_authors] == ["alice@example.com"]
    assert [(d.sub_agent_name, d.status) for d in run.dispatches] == [
        ("git-forensics", DispatchStatus.SUCCESS),
    ]
    assert len(run.dispatches) <= config.budgets.controller.tool_call_limit

    percents = [p.percent for p in progress]
    assert percents == sorted(percents)
    assert percents[-1] == 100


@pytest.mark.asyncio
async def test_controller_sees_scan_and_worker_answer(tmp_project, seeded_store, repo_dir):
    model = ScriptedModel(_happy_script())
    await run_waste_analysis(load_config(tmp_project), seeded_store, repo_dir, model=model)

    controller_first, worker, controller_last = model.calls
    instruction = message_text(controller_first["messages"][0])
    assert "## Pre-scan results" in instruction
    assert "alice@example.com" in instruction
    assert "task" in controller_first["tools"]

    assert "task" not in worker["tools"]
    assert worker["system"] != controller_first["system"]
    assert message_text(worker["messages"][0]) == "Who rewrote src/cart.py, and why?"

    assert any(
        "bob reverted alice's cart totals" in message_text(m)
        for m in controller_last["messages"]
    )


@pytest.mark.asyncio
async def test_activity_is_ordered(tmp_project, seeded_store, repo_dir):
    bus = ActivityBus()
    run = _run()
    await run_waste_analysis(
        load_config(tmp_project), seeded_store, repo_dir,
        model=ScriptedModel(_happy_script()), bus=bus, run=run,
    )

    ids = [item.id for item in run.activity]
    assert ids == sorted(ids)
    assert len(set(ids)) == len(ids)
    types = [item.type for item in run.activity]
    assert types[0] == ActivityType.PHASE
    assert types.count(ActivityType.TASK_START) == 1
    assert types.count(ActivityType.TASK_COMPLETE) == 1
    assert run.activity[-1].message == "Report ready: 2 waste events"


@pytest.mark.asyncio
async def test_controller_failure_marks_run_failed(tmp_project, seeded_store, repo_dir):
    """A model that never answers fails the run at the deep-analysis stage."""
    model = ScriptedModel([RuntimeError("connection reset")] * 3)
    run = _run()

    with pytest.raises(AnalysisError) as excinfo:
        await run_waste_analysis(load_config(tmp_project), seeded_store, repo_dir, model=model, run=run)

    assert excinfo.value.stage == "deep-analysis"
    assert excinfo.value.kind == ErrorKind.TRANSPORT
    assert run.status == RunStatus.FAILED
    assert run.activity[-1].type == ActivityType.TASK_ERROR
    runs = await seeded_store.list_runs()
    assert runs[0]["status"] == "failed"
    assert "[deep-analysis]" in runs[0]["error_message"]
    assert await seeded_store.get_latest_report() is None


@pytest.mark.asyncio
async def test_persist_failure_names_stage(tmp_project, seeded_store, repo_dir):
    run = _run()
    with patch.object(seeded_store, "save_report", side_effect=RuntimeError("disk full")):
        with pytest.raises(AnalysisError, match=r"\[persist\] disk full") as excinfo:
            await run_waste_analysis(
                load_config(tmp_project), seeded_store, repo_dir,
                model=ScriptedModel(_happy_script()), run=run,
            )
    assert excinfo.value.stage == "persist"
    assert run.status == RunStatus.FAILED
    assert (await seeded_store.list_runs())[0]["error_message"] == "[persist] disk full"


@pytest.mark.asyncio
async def test_missing_api_key_is_configuration_error(tmp_project, seeded_store, repo_dir, monkeypatch):
    """Without an injected model the provider needs credentials."""
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    with pytest.raises(ValueError):
        await run_waste_analysis(load_config(tmp_project), seeded_store, repo_dir)
    assert await seeded_store.list_runs() == []


@pytest.mark.asyncio
async def test_exhausted_controller_without_evidence_fails_extraction(tmp_project, seeded_store, repo_dir):
    """Hitting the tool limit with only statistics lookups leaves nothing to report."""
    script = [
        call("query_author_stats", call_id=f"c{i}", text="Checking author statistics.")
        for i in range(5)
    ]
    model = ScriptedModel(script)
    run = _run()

    with pytest.raises(AnalysisError) as excinfo:
        await run_waste_analysis(load_config(tmp_project), seeded_store, repo_dir, model=model, run=run)

    assert "```json" in message_text(model.calls[0]["messages"][0])
    assert excinfo.value.stage == "extraction"
    assert excinfo.value.kind == ErrorKind.UNRECOVERABLE
    assert run.status == RunStatus.FAILED
    assert (await seeded_store.list_runs())[0]["status"] == "failed"


@pytest.mark.asyncio
async def test_exhausted_controller_keeps_worker_evidence(tmp_project, seeded_store, repo_dir):
    """Worker answers survive a controller that never wrote its report."""
    evidence = (
        'Verdict: {"events": [{"patternId": "W3", "severity": "high", '
        '"authorEmail": "bob@example.com", "filePaths": ["src/cart.py"], "linesWasted": 40}]}'
    )
    script = [
        call("task", call_id="c1", subAgentName="pattern-detective", instruction="Judge src/cart.py"),
        say(evidence),
    ] + [
        call("query_file_hotspots", call_id=f"c{i}", text="Cross-checking hotspots.")
        for i in range(2, 6)
    ]
    run = _run()

    report = await run_waste_analysis(
        load_config(tmp_project), seeded_store, repo_dir, model=ScriptedModel(script), run=run,
    )

    assert run.status == RunStatus.COMPLETED
    assert [(e.pattern_id, e.author_email) for e in report.events] == [("W3", "bob@example.com")]
