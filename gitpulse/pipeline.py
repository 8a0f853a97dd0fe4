"""Run orchestration: pre-scan, controller, extraction, normalization, persist."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable

from .activity import ActivityBus
from .agent_loop import BudgetedAgent, ChatModel
from .bridge import RepoBridge
from .config import Config, budget_from_config
from .controller import ControllerLoop
from .db import StatsStore
from .dispatcher import RunContext, TaskDispatcher
from .errors import AnalysisError, GitPulseError
from .models import ActivityType, AnalysisProgress, AnalysisRun, RunStatus, WasteReport
from .normalizer import normalize_report
from .prescan import format_scan_summary, pre_scan
from .prompts import ORCHESTRATOR_PROMPT, build_initial_instruction, with_skill
from .providers.chat import create_chat_model
from .registry import SubAgentRegistry
from .tools import build_fs_tools, build_stats_tools

logger = logging.getLogger(__name__)

ProgressFn = Callable[[AnalysisProgress], None]


def _new_run_id() -> str:
    return f"waste-{int(time.time() * 1000)}"


async def run_waste_analysis(
    config: Config,
    store: StatsStore,
    repo_path: str | Path,
    model: ChatModel | None = None,
    bus: ActivityBus | None = None,
    on_progress: ProgressFn | None = None,
    run: AnalysisRun | None = None,
) -> WasteReport:
    """Run one end-to-end waste analysis and persist its report.

    Pass ``run`` to observe the run record (scan, dispatches, activity, status)
    while it progresses. Any stage failure marks the run failed and raises
    ``AnalysisError`` naming the stage.
    """
    repo_path = Path(repo_path)
    bus = bus or ActivityBus()
    if model is None:
        model = create_chat_model(config)
    model_name = config.model.model

    t0 = time.monotonic()
    if run is None:
        run = AnalysisRun(id=_new_run_id(), repo_ref=str(repo_path), started_at=int(time.time() * 1000))
    bus.reset()
    unsubscribe = bus.subscribe(run.activity.append)
    context = RunContext(run_id=run.id, bus=bus, dispatches=run.dispatches)

    def progress(stage: str, percent: int, message: str, events_found: int = 0) -> None:
        if on_progress:
            on_progress(AnalysisProgress(stage, percent, message, events_found))

    stage = "pre-scan"
    try:
        await store.start_run(run, model=model_name)
        logger.info("run %s: analysing %s", run.id, repo_path)

        bus.emit(ActivityType.PHASE, "Pre-scan")
        progress(stage, 5, "Scanning statistics for suspects...")
        run.scan = await pre_scan(store)
        summary = format_scan_summary(run.scan)
        bus.emit(
            ActivityType.INFO,
            f"Pre-scan found {len(run.scan.hot_files)} hot files and "
            f"{len(run.scan.suspect_authors)} suspect authors",
        )
        progress(stage, 10, "Pre-scan complete")

        stage = "deep-analysis"
        bus.emit(ActivityType.PHASE, "Deep analysis")
        progress(stage, 15, "Starting deep analysis...")
        stats_tools = build_stats_tools(store)
        dispatcher = TaskDispatcher(
            SubAgentRegistry(),
            model,
            build_fs_tools(RepoBridge(repo_path), bus),
            budget_from_config(config.budgets.worker),
            context,
            extra_tools=stats_tools,
        )
        agent = BudgetedAgent(
            model,
            stats_tools + [dispatcher.as_tool()],
            with_skill(ORCHESTRATOR_PROMPT),
            budget_from_config(config.budgets.controller),
            name=f"controller {run.id}",
        )
        outcome = await ControllerLoop(agent, on_progress).run(build_initial_instruction(summary))
        logger.info(
            "run %s: controller done, %d dispatches, completed=%s",
            run.id, context.dispatch_count, outcome.completed,
        )

        stage = "report"
        bus.emit(ActivityType.PHASE, "Report")
        progress(stage, 90, "Building report...", outcome.state.events_found)
        report = normalize_report(
            outcome.extraction.text,
            analysis_id=run.id,
            repo_name=repo_path.resolve().name,
            duration_ms=(time.monotonic() - t0) * 1000,
            tokens_used=agent.tokens_used + context.tokens_used,
        )

        stage = "persist"
        await store.save_report(report, model=model_name, repo_ref=run.repo_ref)
    except Exception as exc:
        error = exc if isinstance(exc, AnalysisError) else AnalysisError(
            stage, str(exc), exc.kind if isinstance(exc, GitPulseError) else None,
        )
        run.status = RunStatus.FAILED
        run.error = str(error)
        logger.error("run %s failed: %s", run.id, error)
        bus.emit(ActivityType.TASK_ERROR, "Analysis failed", str(error))
        unsubscribe()
        await store.fail_run(run.id, str(error))
        if error is exc:
            raise
        raise error from exc

    run.report = report
    run.status = RunStatus.COMPLETED
    bus.emit(ActivityType.INFO, f"Report ready: {len(report.events)} waste events")
    progress("report", 100, "Analysis complete", len(report.events))
    unsubscribe()
    logger.info("run %s: %d events, %d ranked authors", run.id, len(report.events), len(report.ranking))
    return report
