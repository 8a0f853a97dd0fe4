"""Git history ingest: parse ``git log --numstat`` output into the stats store."""

from __future__ import annotations

import logging
import re
import subprocess
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from pathlib import Path

import anyio

from .db import StatsStore
from .errors import GitPulseError
from .models import AuthorStats, CommitRecord, HotFile, HotHandoff

logger = logging.getLogger(__name__)

# Field separators unlikely to appear in a commit subject
LOG_SEP = "‡‡‡"
LOG_END = "†††"
LOG_FORMAT = f"--pretty=format:%H{LOG_SEP}%an{LOG_SEP}%ae{LOG_SEP}%at{LOG_SEP}%s{LOG_END}"

_NUMSTAT = re.compile(r"^(\d+|-)\t(\d+|-)\t(.+)$")
_CONVENTIONAL = (
    "feat", "fix", "docs", "style", "refactor", "perf",
    "test", "build", "ci", "chore", "revert",
)
_KEYWORDS = (
    (("修复", "bug"), "fix"),
    (("新增", "功能", "需求"), "feat"),
    (("文档",), "docs"),
    (("重构",), "refactor"),
    (("测试",), "test"),
)


class IngestError(GitPulseError):
    pass


def infer_commit_type(message: str) -> str:
    lower = message.lower()
    for prefix in _CONVENTIONAL:
        if re.match(rf"^{prefix}[(:!]", lower):
            return prefix
    # git's own subjects: 'Revert "..."' and "Merge branch ..."
    if re.match(r"^revert\b", lower):
        return "revert"
    if re.match(r"^merge\b", lower):
        return "merge"
    for words, kind in _KEYWORDS:
        if any(w in lower for w in words):
            return kind
    return "other"


def _finalize(meta: str, numstat: list[str]) -> CommitRecord | None:
    parts = meta.replace(LOG_END, "").split(LOG_SEP)
    if len(parts) < 5:
        return None
    commit_hash, name, email, ts, message = parts[:5]
    if len(commit_hash.strip()) < 7:
        return None
    try:
        timestamp = int(ts) * 1000
    except ValueError:
        return None

    insertions = deletions = 0
    paths = []
    for line in numstat:
        m = _NUMSTAT.match(line)
        if not m:
            continue
        insertions += 0 if m.group(1) == "-" else int(m.group(1))
        deletions += 0 if m.group(2) == "-" else int(m.group(2))
        paths.append(m.group(3))

    message = message.strip()
    return CommitRecord(
        hash=commit_hash.strip(),
        author_name=name.strip(),
        author_email=email.strip().lower(),
        timestamp=timestamp,
        message=message,
        insertions=insertions,
        deletions=deletions,
        files_changed=len(paths),
        commit_type=infer_commit_type(message),
        file_paths=paths,
    )


def parse_git_log(raw: str) -> list[CommitRecord]:
    """Parse the output of ``git log LOG_FORMAT --numstat``.

    A line carrying both markers starts a commit; numstat lines that follow
    belong to it until the next metadata line.
    """
    commits: list[CommitRecord] = []
    meta: str | None = None
    numstat: list[str] = []

    for line in raw.splitlines():
        if LOG_SEP in line and LOG_END in line:
            if meta is not None:
                record = _finalize(meta, numstat)
                if record:
                    commits.append(record)
            meta, numstat = line, []
        elif meta is not None and line.strip():
            numstat.append(line.strip())

    if meta is not None:
        record = _finalize(meta, numstat)
        if record:
            commits.append(record)
    return commits


@dataclass
class Statistics:
    authors: list[AuthorStats] = field(default_factory=list)
    hotspots: list[HotFile] = field(default_factory=list)
    handoffs: list[HotHandoff] = field(default_factory=list)
    last_change: dict[str, int] = field(default_factory=dict)


def build_statistics(commits: list[CommitRecord]) -> Statistics:
    """Aggregate per-author totals, per-file hotspots and file handoffs.

    A handoff is two consecutive commits (by time) to the same file made by
    different authors, counted per (from, to, file).
    """
    authors: dict[str, AuthorStats] = {}
    file_changes: Counter[str] = Counter()
    file_authors: dict[str, Counter[str]] = defaultdict(Counter)
    last_change: dict[str, int] = {}
    handoffs: Counter[tuple[str, str, str]] = Counter()
    last_author: dict[str, str] = {}

    for c in sorted(commits, key=lambda c: c.timestamp):
        a = authors.get(c.author_email)
        if a is None:
            a = AuthorStats(
                author_email=c.author_email,
                author_name=c.author_name,
                first_commit_at=c.timestamp,
                last_commit_at=c.timestamp,
            )
            authors[c.author_email] = a
        a.total_commits += 1
        a.total_insertions += c.insertions
        a.total_deletions += c.deletions
        a.first_commit_at = min(a.first_commit_at, c.timestamp)
        a.last_commit_at = max(a.last_commit_at, c.timestamp)

        for path in c.file_paths:
            file_changes[path] += 1
            file_authors[path][c.author_email] += 1
            last_change[path] = max(last_change.get(path, 0), c.timestamp)
            previous = last_author.get(path)
            if previous and previous != c.author_email:
                handoffs[(previous, c.author_email, path)] += 1
            last_author[path] = c.author_email

    hotspots = [
        HotFile(
            file_path=path,
            total_changes=changes,
            author_count=len(file_authors[path]),
            primary_owner=file_authors[path].most_common(1)[0][0],
        )
        for path, changes in file_changes.items()
    ]
    return Statistics(
        authors=list(authors.values()),
        hotspots=hotspots,
        handoffs=[
            HotHandoff(from_author=f, to_author=t, file_path=p, handoff_count=n)
            for (f, t, p), n in handoffs.items()
        ],
        last_change=last_change,
    )


async def read_git_log(repo_path: Path) -> str:
    try:
        result = await anyio.to_thread.run_sync(
            lambda: subprocess.run(
                ["git", "log", LOG_FORMAT, "--numstat", "--no-merges"],
                cwd=str(repo_path),
                capture_output=True,
                text=True,
                errors="replace",
                check=True,
            )
        )
    except FileNotFoundError as exc:
        raise IngestError(f"git is not available: {exc}") from exc
    except subprocess.CalledProcessError as exc:
        raise IngestError(f"git log failed in {repo_path}: {exc.stderr.strip()}") from exc
    return result.stdout


async def collect(repo_path: Path, store: StatsStore) -> int:
    """Read the repository history and replace the stored statistics.

    Returns the number of commits ingested.
    """
    raw = await read_git_log(repo_path)
    commits = parse_git_log(raw)
    if not commits:
        raise IngestError(f"no commits found in {repo_path}")

    stats = build_statistics(commits)
    await store.replace_statistics(
        commits, stats.authors, stats.hotspots, stats.handoffs, stats.last_change,
    )
    logger.info(
        "ingested %d commits, %d authors, %d files, %d handoff pairs",
        len(commits), len(stats.authors), len(stats.hotspots), len(stats.handoffs),
    )
    return len(commits)
