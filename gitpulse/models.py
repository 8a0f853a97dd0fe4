"""Core data models for gitpulse."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ActivityType(str, Enum):
    PHASE = "phase"
    TASK_START = "task-start"
    TASK_COMPLETE = "task-complete"
    TASK_ERROR = "task-error"
    TOOL_CALL = "tool-call"
    INFO = "info"


class DispatchStatus(str, Enum):
    SUCCESS = "success"
    DEGRADED_RECOVERED = "degraded-recovered"
    DEGRADED_EMPTY = "degraded-empty"
    FAILED = "failed"
    UNKNOWN_ROLE = "unknown-role"


SEVERITIES = ("high", "medium", "low")

# Descriptive only: labels in the CLI report, never enforced.
WASTE_PATTERNS: dict[str, str] = {
    "W1": "Code evaporation: someone's code is deleted wholesale and nothing reuses it",
    "W2": "Repeated rewrite: same file rewritten 3+ times in a week, each in a new direction",
    "W3": "Lightning revert: a commit reverted within 30 minutes",
    "W4": "Pile then split: a large single-file dump split into modules days later",
    "W5": "Destructive simplification: a 'cleanup' removes live features that others restore",
    "W6": "Fragmented fixing: a feature needs 4+ consecutive fix commits to stabilise",
    "W7": "Duplicated labour: two people build similar work, one of them is discarded",
}


def pattern_name(pattern_id: str) -> str:
    """Short title of a known pattern, ``""`` otherwise."""
    return WASTE_PATTERNS.get(pattern_id, "").split(":")[0]


@dataclass(frozen=True)
class Budget:
    """Resource limits for one execution context (controller or worker).

    Each reasoning cycle costs two steps (decide + act) and every model retry
    may add a cycle, so the step ceiling is derived from the model-call limit.
    ``min_step_ceiling`` only ever raises it.
    """

    model_call_limit: int
    tool_call_limit: int
    max_retries: int = 2
    step_margin: int = 30
    min_step_ceiling: int = 0
    deadline_sec: float = 0.0  # 0 → no deadline

    @property
    def step_ceiling(self) -> int:
        derived = 2 * self.model_call_limit * (1 + self.max_retries) + self.step_margin
        return max(derived, self.min_step_ceiling)


@dataclass(frozen=True)
class SubAgentDefinition:
    name: str
    description: str
    role_prompt: str
    extra_capabilities: tuple[str, ...] = ()


@dataclass
class ActivityItem:
    id: int
    timestamp: float  # epoch milliseconds
    type: ActivityType
    message: str
    detail: str | None = None


@dataclass
class TaskDispatchResult:
    sub_agent_name: str
    status: DispatchStatus
    result_text: str


# ---------------------------------------------------------------------------
# Repository statistics
# ---------------------------------------------------------------------------

@dataclass
class CommitRecord:
    hash: str
    author_name: str
    author_email: str
    timestamp: int  # epoch milliseconds
    message: str
    insertions: int = 0
    deletions: int = 0
    files_changed: int = 0
    commit_type: str = "other"
    file_paths: list[str] = field(default_factory=list)


@dataclass
class AuthorStats:
    author_email: str
    author_name: str
    total_commits: int = 0
    total_insertions: int = 0
    total_deletions: int = 0
    first_commit_at: int = 0
    last_commit_at: int = 0


# ---------------------------------------------------------------------------
# Pre-scan
# ---------------------------------------------------------------------------

@dataclass
class HotFile:
    file_path: str
    total_changes: int
    author_count: int
    primary_owner: str = ""


@dataclass
class SuspectAuthor:
    author_email: str
    author_name: str
    total_insertions: int
    total_deletions: int
    delete_ratio: float


@dataclass
class HotHandoff:
    from_author: str
    to_author: str
    file_path: str
    handoff_count: int


@dataclass
class RevertCommit:
    hash: str
    author_email: str
    author_name: str
    timestamp: int  # epoch milliseconds
    message: str


@dataclass
class ScanResult:
    hot_files: list[HotFile] = field(default_factory=list)
    suspect_authors: list[SuspectAuthor] = field(default_factory=list)
    hot_handoffs: list[HotHandoff] = field(default_factory=list)
    reverts: list[RevertCommit] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (
            self.hot_files or self.suspect_authors
            or self.hot_handoffs or self.reverts
        )


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

@dataclass
class WasteEvent:
    pattern_id: str = "W1"
    severity: str = "medium"
    author_email: str = ""
    related_authors: list[str] = field(default_factory=list)
    file_paths: list[str] = field(default_factory=list)
    commit_hashes: list[str] = field(default_factory=list)
    lines_wasted: int = 0
    was_passive: bool = False
    description: str = ""
    evidence: str = ""
    root_cause: str = ""
    recommendation: str = ""
    detected_at: int = 0
    analysis_id: str = ""


@dataclass
class WasteScore:
    author_email: str = ""
    author_name: str = ""
    total_lines_added: int = 0
    total_lines_wasted: int = 0
    waste_rate: float = 0.0
    net_effective_lines: int = 0
    waste_score: float = 0.0
    pattern_counts: dict[str, int] = field(default_factory=dict)
    top_pattern: str = ""
    passive_waste_lines: int = 0


@dataclass
class AnalysisStats:
    files_analyzed: int = 0
    commits_scanned: int = 0
    tokens_used: int = 0
    duration_ms: float = 0.0


@dataclass
class WasteReport:
    analysis_id: str
    generated_at: int
    repo_name: str
    summary: str = ""
    ranking: list[WasteScore] = field(default_factory=list)
    events: list[WasteEvent] = field(default_factory=list)
    top_incidents: list[WasteEvent] = field(default_factory=list)
    team_recommendations: list[str] = field(default_factory=list)
    analysis_stats: AnalysisStats = field(default_factory=AnalysisStats)


@dataclass
class AnalysisProgress:
    stage: str  # "pre-scan" | "deep-analysis" | "report"
    percent: int
    message: str
    events_found: int = 0


@dataclass
class AnalysisRun:
    """One end-to-end invocation of the waste analysis."""

    id: str
    repo_ref: str
    started_at: int
    status: RunStatus = RunStatus.RUNNING
    scan: ScanResult | None = None
    dispatches: list[TaskDispatchResult] = field(default_factory=list)
    activity: list[ActivityItem] = field(default_factory=list)
    report: WasteReport | None = None
    error: str = ""
