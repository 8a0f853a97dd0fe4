"""SQLite statistics and analysis-result store with WAL mode."""

from __future__ import annotations

import json
import logging
import time

import aiosqlite

from .models import (
    AnalysisRun,
    AuthorStats,
    CommitRecord,
    HotFile,
    HotHandoff,
    RevertCommit,
    RunStatus,
    WasteEvent,
    WasteReport,
)
from .normalizer import report_from_payload, report_to_payload

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS raw_commits (
    hash TEXT PRIMARY KEY,
    author_name TEXT NOT NULL,
    author_email TEXT NOT NULL,
    timestamp INTEGER NOT NULL,
    message TEXT,
    insertions INTEGER DEFAULT 0,
    deletions INTEGER DEFAULT 0,
    files_changed INTEGER DEFAULT 0,
    commit_type TEXT,
    file_paths TEXT DEFAULT '[]'
);

CREATE TABLE IF NOT EXISTS stats_by_author (
    author_email TEXT PRIMARY KEY,
    author_name TEXT,
    total_commits INTEGER DEFAULT 0,
    total_insertions INTEGER DEFAULT 0,
    total_deletions INTEGER DEFAULT 0,
    first_commit_at INTEGER,
    last_commit_at INTEGER
);

CREATE TABLE IF NOT EXISTS stats_file_hotspots (
    file_path TEXT PRIMARY KEY,
    total_changes INTEGER DEFAULT 0,
    author_count INTEGER DEFAULT 0,
    last_change_at INTEGER,
    primary_owner TEXT
);

CREATE TABLE IF NOT EXISTS code_handoffs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    from_author TEXT NOT NULL,
    to_author TEXT NOT NULL,
    file_path TEXT,
    handoff_count INTEGER DEFAULT 0,
    last_handoff INTEGER
);

CREATE TABLE IF NOT EXISTS waste_analysis_runs (
    id TEXT PRIMARY KEY,
    repo_ref TEXT DEFAULT '',
    status TEXT NOT NULL,
    started_at INTEGER NOT NULL,
    completed_at INTEGER,
    files_analyzed INTEGER DEFAULT 0,
    events_found INTEGER DEFAULT 0,
    agent_model TEXT DEFAULT '',
    total_tokens INTEGER DEFAULT 0,
    error_message TEXT DEFAULT '',
    report_json TEXT
);

CREATE TABLE IF NOT EXISTS waste_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    pattern_id TEXT NOT NULL,
    severity TEXT NOT NULL,
    author_email TEXT NOT NULL,
    related_authors TEXT DEFAULT '[]',
    file_paths TEXT DEFAULT '[]',
    commit_hashes TEXT DEFAULT '[]',
    lines_wasted INTEGER DEFAULT 0,
    was_passive INTEGER DEFAULT 0,
    description TEXT,
    evidence TEXT,
    root_cause TEXT,
    recommendation TEXT,
    detected_at INTEGER NOT NULL,
    analysis_id TEXT
);

CREATE TABLE IF NOT EXISTS waste_scores (
    author_email TEXT PRIMARY KEY,
    author_name TEXT,
    total_lines_added INTEGER DEFAULT 0,
    total_lines_wasted INTEGER DEFAULT 0,
    waste_rate REAL DEFAULT 0,
    net_effective_lines INTEGER DEFAULT 0,
    waste_score REAL DEFAULT 0,
    pattern_counts TEXT DEFAULT '{}',
    top_pattern TEXT,
    passive_waste_lines INTEGER DEFAULT 0,
    last_updated INTEGER
);

CREATE INDEX IF NOT EXISTS idx_commits_author ON raw_commits(author_email);
CREATE INDEX IF NOT EXISTS idx_commits_time ON raw_commits(timestamp);
CREATE INDEX IF NOT EXISTS idx_commits_type ON raw_commits(commit_type);
CREATE INDEX IF NOT EXISTS idx_waste_analysis ON waste_events(analysis_id);
CREATE INDEX IF NOT EXISTS idx_waste_author ON waste_events(author_email);
"""


def _now() -> int:
    return int(time.time() * 1000)


class StatsStore:
    def __init__(self, db_path: str):
        self.db_path = db_path
        self._conn: aiosqlite.Connection | None = None

    async def init(self) -> None:
        self._conn = await aiosqlite.connect(self.db_path)
        self._conn.row_factory = aiosqlite.Row
        if self.db_path != ":memory:":
            await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.executescript(_SCHEMA)
        await self._conn.commit()

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    # ---------------------------------------------------------------
    # Statistics (ingest)
    # ---------------------------------------------------------------

    async def replace_statistics(
        self,
        commits: list[CommitRecord],
        authors: list[AuthorStats],
        hotspots: list[HotFile],
        handoffs: list[HotHandoff],
        last_change: dict[str, int] | None = None,
    ) -> None:
        """Swap in a freshly computed statistics set, all or nothing."""
        last_change = last_change or {}
        try:
            for table in ("raw_commits", "stats_by_author", "stats_file_hotspots", "code_handoffs"):
                await self._conn.execute(f"DELETE FROM {table}")
            await self._conn.executemany(
                """INSERT OR REPLACE INTO raw_commits
                   (hash, author_name, author_email, timestamp, message,
                    insertions, deletions, files_changed, commit_type, file_paths)
                   VALUES (?,?,?,?,?,?,?,?,?,?)""",
                [
                    (
                        c.hash, c.author_name, c.author_email, c.timestamp, c.message,
                        c.insertions, c.deletions, c.files_changed, c.commit_type,
                        json.dumps(c.file_paths),
                    )
                    for c in commits
                ],
            )
            await self._conn.executemany(
                """INSERT INTO stats_by_author
                   (author_email, author_name, total_commits, total_insertions,
                    total_deletions, first_commit_at, last_commit_at)
                   VALUES (?,?,?,?,?,?,?)""",
                [
                    (
                        a.author_email, a.author_name, a.total_commits, a.total_insertions,
                        a.total_deletions, a.first_commit_at, a.last_commit_at,
                    )
                    for a in authors
                ],
            )
            await self._conn.executemany(
                """INSERT INTO stats_file_hotspots
                   (file_path, total_changes, author_count, last_change_at, primary_owner)
                   VALUES (?,?,?,?,?)""",
                [
                    (
                        h.file_path, h.total_changes, h.author_count,
                        last_change.get(h.file_path), h.primary_owner,
                    )
                    for h in hotspots
                ],
            )
            await self._conn.executemany(
                """INSERT INTO code_handoffs
                   (from_author, to_author, file_path, handoff_count, last_handoff)
                   VALUES (?,?,?,?,?)""",
                [
                    (h.from_author, h.to_author, h.file_path, h.handoff_count, None)
                    for h in handoffs
                ],
            )
            await self._conn.commit()
        except Exception:
            await self._conn.rollback()
            raise

    async def count_commits(self) -> int:
        cursor = await self._conn.execute("SELECT COUNT(*) FROM raw_commits")
        row = await cursor.fetchone()
        return row[0]

    async def list_file_hotspots(self) -> list[HotFile]:
        cursor = await self._conn.execute(
            "SELECT * FROM stats_file_hotspots ORDER BY total_changes DESC"
        )
        rows = await cursor.fetchall()
        return [
            HotFile(
                file_path=r["file_path"],
                total_changes=r["total_changes"] or 0,
                author_count=r["author_count"] or 0,
                primary_owner=r["primary_owner"] or "",
            )
            for r in rows
        ]

    async def list_author_stats(self) -> list[AuthorStats]:
        cursor = await self._conn.execute(
            "SELECT * FROM stats_by_author ORDER BY total_commits DESC, author_email"
        )
        rows = await cursor.fetchall()
        return [
            AuthorStats(
                author_email=r["author_email"],
                author_name=r["author_name"] or "",
                total_commits=r["total_commits"] or 0,
                total_insertions=r["total_insertions"] or 0,
                total_deletions=r["total_deletions"] or 0,
                first_commit_at=r["first_commit_at"] or 0,
                last_commit_at=r["last_commit_at"] or 0,
            )
            for r in rows
        ]

    async def list_hot_handoffs(self, threshold: int = 3, limit: int = 20) -> list[HotHandoff]:
        """Handoff pairs with a count strictly above ``threshold``."""
        cursor = await self._conn.execute(
            """SELECT * FROM code_handoffs WHERE handoff_count > ?
               ORDER BY handoff_count DESC LIMIT ?""",
            (threshold, limit),
        )
        rows = await cursor.fetchall()
        return [
            HotHandoff(
                from_author=r["from_author"],
                to_author=r["to_author"],
                file_path=r["file_path"] or "",
                handoff_count=r["handoff_count"] or 0,
            )
            for r in rows
        ]

    async def list_revert_commits(self, limit: int = 20) -> list[RevertCommit]:
        cursor = await self._conn.execute(
            """SELECT hash, author_email, author_name, timestamp, message
               FROM raw_commits
               WHERE commit_type = 'revert'
                  OR LOWER(message) LIKE '%revert%'
                  OR LOWER(message) LIKE '%rollback%'
                  OR message LIKE '%撤销%'
                  OR message LIKE '%回滚%'
               ORDER BY timestamp DESC
               LIMIT ?""",
            (limit,),
        )
        rows = await cursor.fetchall()
        return [
            RevertCommit(
                hash=r["hash"],
                author_email=r["author_email"],
                author_name=r["author_name"],
                timestamp=r["timestamp"],
                message=r["message"] or "",
            )
            for r in rows
        ]

    # ---------------------------------------------------------------
    # Analysis runs
    # ---------------------------------------------------------------

    async def start_run(self, run: AnalysisRun, model: str = "") -> None:
        await self._conn.execute(
            """INSERT INTO waste_analysis_runs
               (id, repo_ref, status, started_at, agent_model)
               VALUES (?,?,?,?,?)
               ON CONFLICT(id) DO UPDATE SET
                 status=excluded.status,
                 started_at=excluded.started_at
            """,
            (run.id, run.repo_ref, RunStatus.RUNNING.value, run.started_at, model),
        )
        await self._conn.commit()

    async def fail_run(self, run_id: str, message: str) -> None:
        await self._conn.execute(
            """UPDATE waste_analysis_runs
               SET status = ?, completed_at = ?, error_message = ?
               WHERE id = ?""",
            (RunStatus.FAILED.value, _now(), message, run_id),
        )
        await self._conn.commit()

    async def save_report(self, report: WasteReport, model: str = "", repo_ref: str = "") -> None:
        """Run summary, events and author scores in one transaction."""
        stats = report.analysis_stats
        try:
            await self._conn.execute(
                """INSERT INTO waste_analysis_runs
                   (id, repo_ref, status, started_at, completed_at, files_analyzed,
                    events_found, agent_model, total_tokens, report_json)
                   VALUES (?,?,?,?,?,?,?,?,?,?)
                   ON CONFLICT(id) DO UPDATE SET
                     status=excluded.status,
                     completed_at=excluded.completed_at,
                     files_analyzed=excluded.files_analyzed,
                     events_found=excluded.events_found,
                     agent_model=excluded.agent_model,
                     total_tokens=excluded.total_tokens,
                     report_json=excluded.report_json
                """,
                (
                    report.analysis_id, repo_ref, RunStatus.COMPLETED.value,
                    int(report.generated_at - stats.duration_ms), report.generated_at,
                    stats.files_analyzed, len(report.events), model, stats.tokens_used,
                    json.dumps(report_to_payload(report), ensure_ascii=False),
                ),
            )
            await self._conn.execute(
                "DELETE FROM waste_events WHERE analysis_id = ?", (report.analysis_id,)
            )
            await self._conn.executemany(
                """INSERT INTO waste_events
                   (pattern_id, severity, author_email, related_authors, file_paths,
                    commit_hashes, lines_wasted, was_passive, description, evidence,
                    root_cause, recommendation, detected_at, analysis_id)
                   VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?)""",
                [
                    (
                        e.pattern_id, e.severity, e.author_email,
                        json.dumps(e.related_authors), json.dumps(e.file_paths),
                        json.dumps(e.commit_hashes), e.lines_wasted, int(e.was_passive),
                        e.description, e.evidence, e.root_cause, e.recommendation,
                        e.detected_at, report.analysis_id,
                    )
                    for e in report.events
                ],
            )
            now = _now()
            await self._conn.executemany(
                """INSERT OR REPLACE INTO waste_scores
                   (author_email, author_name, total_lines_added, total_lines_wasted,
                    waste_rate, net_effective_lines, waste_score, pattern_counts,
                    top_pattern, passive_waste_lines, last_updated)
                   VALUES (?,?,?,?,?,?,?,?,?,?,?)""",
                [
                    (
                        s.author_email, s.author_name, s.total_lines_added,
                        s.total_lines_wasted, s.waste_rate, s.net_effective_lines,
                        s.waste_score, json.dumps(s.pattern_counts), s.top_pattern,
                        s.passive_waste_lines, now,
                    )
                    for s in report.ranking
                    if s.author_email
                ],
            )
            await self._conn.commit()
        except Exception:
            await self._conn.rollback()
            raise
        logger.info(
            "saved report %s: %d events, %d scores",
            report.analysis_id, len(report.events), len(report.ranking),
        )

    async def get_latest_report(self) -> WasteReport | None:
        cursor = await self._conn.execute(
            """SELECT report_json FROM waste_analysis_runs
               WHERE status = ? AND report_json IS NOT NULL
               ORDER BY completed_at DESC LIMIT 1""",
            (RunStatus.COMPLETED.value,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return report_from_payload(json.loads(row["report_json"]))

    async def list_runs(self, limit: int = 20) -> list[dict]:
        cursor = await self._conn.execute(
            """SELECT id, repo_ref, status, started_at, completed_at, events_found,
                      agent_model, total_tokens, error_message
               FROM waste_analysis_runs ORDER BY started_at DESC LIMIT ?""",
            (limit,),
        )
        rows = await cursor.fetchall()
        return [dict(r) for r in rows]

    async def get_events(self, analysis_id: str) -> list[WasteEvent]:
        cursor = await self._conn.execute(
            "SELECT * FROM waste_events WHERE analysis_id = ? ORDER BY id",
            (analysis_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_event(r) for r in rows]

    # ---------------------------------------------------------------
    # Helpers
    # ---------------------------------------------------------------

    @staticmethod
    def _row_to_event(row) -> WasteEvent:
        return WasteEvent(
            pattern_id=row["pattern_id"],
            severity=row["severity"],
            author_email=row["author_email"],
            related_authors=json.loads(row["related_authors"]) if row["related_authors"] else [],
            file_paths=json.loads(row["file_paths"]) if row["file_paths"] else [],
            commit_hashes=json.loads(row["commit_hashes"]) if row["commit_hashes"] else [],
            lines_wasted=row["lines_wasted"] or 0,
            was_passive=bool(row["was_passive"]),
            description=row["description"] or "",
            evidence=row["evidence"] or "",
            root_cause=row["root_cause"] or "",
            recommendation=row["recommendation"] or "",
            detected_at=row["detected_at"],
            analysis_id=row["analysis_id"] or "",
        )
