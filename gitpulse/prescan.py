"""Pre-scan: rank suspicious files, authors, handoffs and reverts from stats.

No model calls. The output bounds what the expensive agent phase looks at.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

import aiosqlite

from .db import StatsStore
from .models import ScanResult, SuspectAuthor
from .prompts import NO_SUSPECTS_SENTENCE

logger = logging.getLogger(__name__)

MAX_HOT_FILES = 20
MIN_HOT_CHANGES = 5
HOT_FACTOR = 1.5
MIN_AUTHOR_CHURN = 100
DELETE_RATIO_THRESHOLD = 0.35
HANDOFF_THRESHOLD = 3
MAX_HANDOFFS = 20
MAX_REVERTS = 20


async def pre_scan(store: StatsStore) -> ScanResult:
    scan = ScanResult()

    hotspots = await store.list_file_hotspots()
    mean = sum(f.total_changes for f in hotspots) / len(hotspots) if hotspots else 0.0
    threshold = max(mean * HOT_FACTOR, MIN_HOT_CHANGES)
    logger.debug("hot-file threshold %.1f over %d files", threshold, len(hotspots))
    hot = [f for f in hotspots if f.total_changes > threshold and f.author_count >= 2]
    hot.sort(key=lambda f: f.total_changes, reverse=True)
    scan.hot_files = hot[:MAX_HOT_FILES]

    for a in await store.list_author_stats():
        if a.total_insertions + a.total_deletions < MIN_AUTHOR_CHURN:
            continue
        ratio = a.total_deletions / max(a.total_insertions, 1)
        if ratio > DELETE_RATIO_THRESHOLD:
            scan.suspect_authors.append(SuspectAuthor(
                author_email=a.author_email,
                author_name=a.author_name,
                total_insertions=a.total_insertions,
                total_deletions=a.total_deletions,
                delete_ratio=ratio,
            ))
    scan.suspect_authors.sort(key=lambda a: a.delete_ratio, reverse=True)

    try:
        scan.hot_handoffs = await store.list_hot_handoffs(HANDOFF_THRESHOLD, MAX_HANDOFFS)
    except aiosqlite.Error as exc:
        logger.warning("handoff statistics unavailable: %s", exc)

    try:
        scan.reverts = await store.list_revert_commits(MAX_REVERTS)
    except aiosqlite.Error as exc:
        logger.warning("revert query failed: %s", exc)

    logger.info(
        "pre-scan: %d hot files, %d suspect authors, %d handoffs, %d reverts",
        len(scan.hot_files), len(scan.suspect_authors),
        len(scan.hot_handoffs), len(scan.reverts),
    )
    return scan


def format_scan_summary(scan: ScanResult) -> str:
    """Markdown summary of a scan, one section per non-empty category."""
    parts = ["## Pre-scan results", ""]

    if scan.hot_files:
        parts += [
            "### Frequently changed files (suspect files)",
            "| File | Changes | Authors | Primary owner |",
            "|------|---------|---------|---------------|",
        ]
        for f in scan.hot_files:
            parts.append(f"| {f.file_path} | {f.total_changes} | {f.author_count} | {f.primary_owner} |")
        parts.append("")

    if scan.suspect_authors:
        parts += [
            "### High delete-ratio members (suspect authors)",
            "| Member | Insertions | Deletions | Delete ratio |",
            "|--------|------------|-----------|--------------|",
        ]
        for a in scan.suspect_authors:
            parts.append(
                f"| {a.author_name} ({a.author_email}) | {a.total_insertions} "
                f"| {a.total_deletions} | {a.delete_ratio * 100:.1f}% |"
            )
        parts.append("")

    if scan.hot_handoffs:
        parts.append("### Frequent handoffs (same file changing hands)")
        for h in scan.hot_handoffs[:10]:
            parts.append(
                f"- {h.from_author} -> {h.to_author}: {h.file_path or 'several files'} "
                f"({h.handoff_count} times)"
            )
        parts.append("")

    if scan.reverts:
        parts.append("### Revert commits")
        for r in scan.reverts:
            date = datetime.fromtimestamp(r.timestamp / 1000, tz=timezone.utc).strftime("%Y-%m-%d")
            parts.append(f"- {date} {r.author_name}: {r.message} ({r.hash[:7]})")
        parts.append("")

    if scan.is_empty():
        parts.append(NO_SUSPECTS_SENTENCE)

    return "\n".join(parts)
