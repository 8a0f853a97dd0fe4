"""gitpulse command-line interface."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import typer

app = typer.Typer(
    name="gitpulse",
    help="gitpulse — multi-agent wasted-work analysis for git repositories",
    no_args_is_help=True,
)

# -------------------------------------------------------------------
# Templates
# -------------------------------------------------------------------

DEFAULT_CONFIG_TEMPLATE = """\
# .gitpulse/config.yaml: team-shared configuration
model:
  provider: anthropic
  model: claude-sonnet-4-5
  max_tokens: 4096
  timeout_sec: 120

budgets:
  controller:
    model_call_limit: 15
    tool_call_limit: 30
    min_step_ceiling: 300
  worker:
    model_call_limit: 12
    tool_call_limit: 25
    min_step_ceiling: 120
    deadline_sec: 90

database:
  path: .gitpulse/stats.db

logging:
  level: INFO
"""

DEFAULT_LOCAL_CONFIG_TEMPLATE = """\
# .gitpulse/local.config.yaml: personal overrides (DO NOT commit)
# providers:
#   anthropic:
#     api_key: sk-ant-xxx
#   deepseek:
#     api_key: sk-xxx
"""

GITIGNORE_ENTRIES = [
    ".gitpulse/local.config.yaml",
    ".gitpulse/stats.db",
    ".gitpulse/stats.db-wal",
    ".gitpulse/stats.db-shm",
]

STAGE_LABELS = {"pre-scan": "scan", "deep-analysis": "agent", "report": "report"}


# -------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------

def _get_project_root() -> Path:
    return Path.cwd()


def _run_async(coro):
    """Run an async coroutine from sync context."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None
    if loop and loop.is_running():
        import concurrent.futures
        with concurrent.futures.ThreadPoolExecutor() as pool:
            return pool.submit(asyncio.run, coro).result()
    return asyncio.run(coro)


def _load(root: Path):
    from .config import load_config
    from .log import setup_logging

    config = load_config(root)
    setup_logging(config.logging.level, config.logging.file)
    return config


async def _get_db(config):
    from .db import StatsStore
    db_path = config.db_path()
    if str(db_path) != ":memory:":
        db_path.parent.mkdir(parents=True, exist_ok=True)
    db = StatsStore(str(db_path))
    await db.init()
    return db


def _print_report(report) -> None:
    from .models import pattern_name

    typer.echo(f"\n  {report.repo_name} — waste report ({report.analysis_id})")
    typer.echo("  " + "─" * 50)
    typer.echo(f"  {report.summary}\n")

    if report.ranking:
        typer.echo(f"  {'#':<3} {'Author':<32} {'Wasted':>8} {'Rate':>7} {'Top':>5}")
        for i, s in enumerate(report.ranking, 1):
            typer.echo(
                f"  {i:<3} {s.author_email:<32} {s.total_lines_wasted:>8} "
                f"{s.waste_rate * 100:>6.1f}% {s.top_pattern or '—':>5}"
            )
        typer.echo("")

    if report.top_incidents:
        typer.echo("  Top incidents:")
        for e in report.top_incidents:
            label = f"{e.pattern_id} {pattern_name(e.pattern_id)}".strip()
            typer.echo(f"  - [{label}] {e.author_email}: {e.description}")
        typer.echo("")

    if report.team_recommendations:
        typer.echo("  Recommendations:")
        for r in report.team_recommendations:
            typer.echo(f"  - {r}")
        typer.echo("")

    stats = report.analysis_stats
    typer.echo(
        f"  {len(report.events)} events · {stats.files_analyzed} files · "
        f"{stats.tokens_used} tokens · {stats.duration_ms / 1000:.1f}s"
    )


# -------------------------------------------------------------------
# Commands
# -------------------------------------------------------------------

@app.command()
def init():
    """Initialize gitpulse in the current project."""
    root = _get_project_root()

    gitpulse_dir = root / ".gitpulse"
    gitpulse_dir.mkdir(exist_ok=True)

    config_path = gitpulse_dir / "config.yaml"
    if not config_path.exists():
        config_path.write_text(DEFAULT_CONFIG_TEMPLATE)
        typer.echo(f"  Created {config_path.relative_to(root)}")
    else:
        typer.echo(f"  Exists  {config_path.relative_to(root)}")

    local_path = gitpulse_dir / "local.config.yaml"
    if not local_path.exists():
        local_path.write_text(DEFAULT_LOCAL_CONFIG_TEMPLATE)
        typer.echo(f"  Created {local_path.relative_to(root)}")

    gitignore_path = root / ".gitignore"
    existing = ""
    if gitignore_path.exists():
        existing = gitignore_path.read_text()
    additions = [e for e in GITIGNORE_ENTRIES if e not in existing]
    if additions:
        with open(gitignore_path, "a") as f:
            if existing and not existing.endswith("\n"):
                f.write("\n")
            f.write("# gitpulse\n")
            for entry in additions:
                f.write(f"{entry}\n")
        typer.echo("  Updated .gitignore")

    typer.echo("\n  gitpulse initialized. Run `gitpulse collect` to ingest history.")


@app.command()
def collect(repo: Path = typer.Argument(Path("."), help="Repository to ingest")):
    """Ingest git history into the statistics store."""
    root = _get_project_root()
    config = _load(root)

    async def _collect():
        from .ingest import IngestError, collect as run_collect
        db = await _get_db(config)
        try:
            count = await run_collect(repo.resolve(), db)
        except IngestError as e:
            typer.echo(f"  Ingest failed: {e}", err=True)
            raise typer.Exit(1)
        finally:
            await db.close()
        typer.echo(f"  Ingested {count} commits from {repo.resolve().name}")

    _run_async(_collect())


@app.command()
def scan():
    """Run the pre-scan over the collected statistics."""
    root = _get_project_root()
    config = _load(root)

    async def _scan():
        from .prescan import format_scan_summary, pre_scan
        db = await _get_db(config)
        try:
            if not await db.count_commits():
                typer.echo("  No statistics yet. Run `gitpulse collect` first.")
                return
            result = await pre_scan(db)
        finally:
            await db.close()
        typer.echo(format_scan_summary(result))

    _run_async(_scan())


@app.command()
def analyze(
    repo: Path = typer.Argument(Path("."), help="Repository to analyse"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Hide live agent activity"),
):
    """Run the multi-agent waste analysis."""
    root = _get_project_root()
    config = _load(root)

    async def _analyze():
        from .activity import ActivityBus
        from .errors import AnalysisError
        from .pipeline import run_waste_analysis

        bus = ActivityBus()
        if not quiet:
            bus.subscribe(
                lambda item: typer.echo(f"  · [{item.type.value}] {item.message}")
            )

        def on_progress(p):
            label = STAGE_LABELS.get(p.stage, p.stage)
            typer.echo(f"  {p.percent:>3}% {label:<6} {p.message}")

        db = await _get_db(config)
        try:
            if not await db.count_commits():
                typer.echo("  No statistics yet. Run `gitpulse collect` first.")
                raise typer.Exit(1)
            report = await run_waste_analysis(
                config, db, repo.resolve(), bus=bus, on_progress=on_progress,
            )
        except AnalysisError as e:
            typer.echo(f"  Analysis failed: {e}", err=True)
            raise typer.Exit(1)
        except ValueError as e:
            typer.echo(f"  Configuration error: {e}", err=True)
            raise typer.Exit(1)
        finally:
            await db.close()
        _print_report(report)

    _run_async(_analyze())


@app.command()
def report(
    as_json: bool = typer.Option(False, "--json", help="Print the raw report payload"),
):
    """Show the latest completed waste report."""
    root = _get_project_root()
    config = _load(root)

    async def _report():
        from .normalizer import report_to_payload
        db = await _get_db(config)
        try:
            latest = await db.get_latest_report()
        finally:
            await db.close()
        if latest is None:
            typer.echo("  No completed analysis yet.")
            return
        if as_json:
            typer.echo(json.dumps(report_to_payload(latest), indent=2, ensure_ascii=False))
        else:
            _print_report(latest)

    _run_async(_report())


@app.command()
def runs(limit: int = typer.Option(20, help="Number of runs to show")):
    """List analysis runs."""
    root = _get_project_root()
    config = _load(root)

    async def _runs():
        db = await _get_db(config)
        try:
            rows = await db.list_runs(limit)
        finally:
            await db.close()
        if not rows:
            typer.echo("  No analysis runs yet.")
            return

        status_icons = {"completed": "✅", "running": "🔄", "failed": "❌"}
        for r in rows:
            icon = status_icons.get(r["status"], "  ")
            line = f"  {icon} {r['id']:<22} {r['status']:<10} {r['events_found'] or 0:>4} events"
            if r["error_message"]:
                line += f"  {r['error_message']}"
            typer.echo(line)

    _run_async(_runs())


@app.command("config")
def config_show():
    """Show merged configuration with API keys masked."""
    root = _get_project_root()

    from dataclasses import asdict

    import yaml

    from .config import load_config

    config = load_config(root)
    data = asdict(config)
    for p in data.get("providers", {}).values():
        if isinstance(p, dict) and p.get("api_key"):
            p["api_key"] = p["api_key"][:8] + "..."

    typer.echo("\n  gitpulse — Merged Configuration")
    typer.echo("  " + "─" * 40)
    typer.echo(yaml.dump(data, default_flow_style=False, allow_unicode=True))


if __name__ == "__main__":
    app()
