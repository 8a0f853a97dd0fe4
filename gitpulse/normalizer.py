"""Turn recovered report text into a fully defaulted WasteReport."""

from __future__ import annotations

import json
import logging
import math
import time
from collections import Counter
from typing import Any

from .extraction import find_events_object, find_fenced_json
from .models import SEVERITIES, AnalysisStats, WasteEvent, WasteReport, WasteScore

logger = logging.getLogger(__name__)

DEFAULT_PATTERN = "W1"
DEFAULT_SEVERITY = "medium"
DEFAULT_SUMMARY = "Analysis complete."
MAX_TOP_INCIDENTS = 5


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def _loads_object(text: str | None) -> dict | None:
    if not text:
        return None
    try:
        value = json.loads(text)
    except (json.JSONDecodeError, RecursionError):
        return None
    return value if isinstance(value, dict) else None


def parse_report_json(text: str) -> dict:
    """Whole text, then a fenced block, then an events object; ``{}`` otherwise."""
    for candidate in (text, find_fenced_json(text or ""), find_events_object(text or "")):
        parsed = _loads_object(candidate)
        if parsed is not None:
            return parsed
    logger.warning("report text is not valid JSON (%d chars), using defaults", len(text or ""))
    return {}


# ---------------------------------------------------------------------------
# Field coercion
# ---------------------------------------------------------------------------

def _first(data: dict, *keys: str) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


def _str(value: Any, default: str = "") -> str:
    return value if isinstance(value, str) else default


def _int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    try:
        if isinstance(value, (int, float)):
            return int(value)
        if isinstance(value, str):
            return int(float(value.strip()))
    except (ValueError, OverflowError):
        return 0
    return 0


def _float(value: Any) -> float:
    result = 0.0
    if isinstance(value, bool):
        return result
    if isinstance(value, (int, float)):
        result = float(value)
    elif isinstance(value, str):
        try:
            result = float(value.strip().rstrip("%"))
        except (ValueError, OverflowError):
            return 0.0
    return result if math.isfinite(result) else 0.0


def _rate(value: Any) -> float:
    """Numbers are fractions already; strings are percentages, ``"45"`` or ``"45%"``."""
    if isinstance(value, str):
        return _float(value) / 100
    return _float(value)


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, str)]


def _records(value: Any) -> list[dict]:
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, dict)]


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

def _event(raw: dict, analysis_id: str, detected_at: int) -> WasteEvent:
    severity = _str(raw.get("severity")).lower()
    return WasteEvent(
        pattern_id=_str(raw.get("patternId")).strip() or DEFAULT_PATTERN,
        severity=severity if severity in SEVERITIES else DEFAULT_SEVERITY,
        author_email=_str(_first(raw, "authorEmail", "email")).strip().lower(),
        related_authors=_str_list(raw.get("relatedAuthors")),
        file_paths=_str_list(raw.get("filePaths")),
        commit_hashes=_str_list(raw.get("commitHashes")),
        lines_wasted=_int(raw.get("linesWasted")),
        was_passive=raw.get("wasPassive") is True,
        description=_str(raw.get("description")),
        evidence=_str(raw.get("evidence")),
        root_cause=_str(raw.get("rootCause")),
        recommendation=_str(raw.get("recommendation")),
        detected_at=detected_at,
        analysis_id=analysis_id,
    )


def _score(raw: dict) -> WasteScore:
    return WasteScore(
        author_email=_str(_first(raw, "email", "authorEmail")).strip().lower(),
        author_name=_str(_first(raw, "name", "authorName")),
        total_lines_added=_int(raw.get("totalLinesAdded")),
        total_lines_wasted=_int(_first(raw, "linesWasted", "totalLinesWasted")),
        waste_rate=_rate(raw.get("wasteRate")),
        net_effective_lines=_int(raw.get("netEffectiveLines")),
        waste_score=_float(raw.get("wasteScore")),
        top_pattern=_str(raw.get("topPattern")),
        passive_waste_lines=_int(raw.get("passiveWasteLines")),
    )


def _most_frequent(counts: dict[str, int]) -> str:
    if not counts:
        return ""
    return min(counts, key=lambda p: (-counts[p], p))


def _rank(raw_ranking: list[dict], events: list[WasteEvent]) -> list[WasteScore]:
    by_author: dict[str, list[WasteEvent]] = {}
    for e in events:
        if e.author_email:
            by_author.setdefault(e.author_email, []).append(e)

    ranking: list[WasteScore] = []
    seen: set[str] = set()
    for raw in raw_ranking:
        score = _score(raw)
        if score.author_email and score.author_email in seen:
            continue
        seen.add(score.author_email)
        ranking.append(score)

    for email, author_events in by_author.items():
        if email in seen:
            continue
        ranking.append(WasteScore(
            author_email=email,
            total_lines_wasted=sum(e.lines_wasted for e in author_events),
            passive_waste_lines=sum(e.lines_wasted for e in author_events if e.was_passive),
        ))

    # pattern counts always come from the events, never from the model
    for score in ranking:
        counts = Counter(e.pattern_id for e in by_author.get(score.author_email, []))
        score.pattern_counts = dict(sorted(counts.items()))
        if not score.top_pattern:
            score.top_pattern = _most_frequent(score.pattern_counts)
    return ranking


def normalize_report(
    text: str,
    analysis_id: str,
    repo_name: str,
    generated_at: int | None = None,
    duration_ms: float = 0.0,
    tokens_used: int = 0,
) -> WasteReport:
    """Never raises: every field is defaulted independently."""
    if generated_at is None:
        generated_at = int(time.time() * 1000)
    data = parse_report_json(text)

    events = [_event(raw, analysis_id, generated_at) for raw in _records(data.get("events"))]
    ranking = _rank(_records(data.get("ranking")), events)

    return WasteReport(
        analysis_id=analysis_id,
        generated_at=generated_at,
        repo_name=repo_name,
        summary=_str(data.get("summary")).strip() or DEFAULT_SUMMARY,
        ranking=ranking,
        events=events,
        top_incidents=[e for e in events if e.severity == "high"][:MAX_TOP_INCIDENTS],
        team_recommendations=_str_list(data.get("teamRecommendations")),
        analysis_stats=AnalysisStats(
            files_analyzed=len({p for e in events for p in e.file_paths}),
            commits_scanned=len({h for e in events for h in e.commit_hashes}),
            tokens_used=tokens_used,
            duration_ms=duration_ms,
        ),
    )


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------

def event_to_payload(e: WasteEvent) -> dict:
    return {
        "patternId": e.pattern_id,
        "severity": e.severity,
        "authorEmail": e.author_email,
        "relatedAuthors": list(e.related_authors),
        "filePaths": list(e.file_paths),
        "commitHashes": list(e.commit_hashes),
        "linesWasted": e.lines_wasted,
        "wasPassive": e.was_passive,
        "description": e.description,
        "evidence": e.evidence,
        "rootCause": e.root_cause,
        "recommendation": e.recommendation,
        "detectedAt": e.detected_at,
        "analysisId": e.analysis_id,
    }


def score_to_payload(s: WasteScore) -> dict:
    return {
        "authorEmail": s.author_email,
        "authorName": s.author_name,
        "totalLinesAdded": s.total_lines_added,
        "totalLinesWasted": s.total_lines_wasted,
        "wasteRate": s.waste_rate,
        "netEffectiveLines": s.net_effective_lines,
        "wasteScore": s.waste_score,
        "patternCounts": dict(s.pattern_counts),
        "topPattern": s.top_pattern,
        "passiveWasteLines": s.passive_waste_lines,
    }


def report_to_payload(report: WasteReport) -> dict:
    """JSON-ready camelCase form, readable back by ``normalize_report``."""
    return {
        "analysisId": report.analysis_id,
        "generatedAt": report.generated_at,
        "repoName": report.repo_name,
        "summary": report.summary,
        "ranking": [score_to_payload(s) for s in report.ranking],
        "events": [event_to_payload(e) for e in report.events],
        "topIncidents": [event_to_payload(e) for e in report.top_incidents],
        "teamRecommendations": list(report.team_recommendations),
        "analysisStats": {
            "filesAnalyzed": report.analysis_stats.files_analyzed,
            "commitsScanned": report.analysis_stats.commits_scanned,
            "tokensUsed": report.analysis_stats.tokens_used,
            "durationMs": report.analysis_stats.duration_ms,
        },
    }


def report_from_payload(data: dict) -> WasteReport:
    """Rebuild a persisted report; derived fields are recomputed."""
    stats = data.get("analysisStats") if isinstance(data.get("analysisStats"), dict) else {}
    return normalize_report(
        json.dumps(data),
        analysis_id=_str(data.get("analysisId")),
        repo_name=_str(data.get("repoName")),
        generated_at=_int(data.get("generatedAt")),
        duration_ms=_float(stats.get("durationMs")),
        tokens_used=_int(stats.get("tokensUsed")),
    )
