"""Controller loop: drives the top-level agent and folds its snapshot stream."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from .agent_loop import BudgetedAgent
from .errors import AnalysisError, UnrecoverableExtraction, classify_failure, is_limit_like
from .extraction import Extraction, extract_report_text
from .models import AnalysisProgress
from .transcript import (
    MessageRole,
    Snapshot,
    classify_message,
    is_budget_sentinel,
    message_text,
    tool_call_count,
)

logger = logging.getLogger(__name__)

EVENT_MARKER = '"patternId"'

ProgressFn = Callable[[AnalysisProgress], None]


def telemetry_percent(events_found: int) -> int:
    return min(15 + events_found * 8, 85)


@dataclass
class RunState:
    """Reduced view of the controller transcript.

    Snapshots carry the whole transcript; the newest one replaces
    ``messages`` and every message past ``seen`` is folded in order.
    """

    messages: list[Any] = field(default_factory=list)
    captured: list[str] = field(default_factory=list)
    events_found: int = 0
    model_calls: int = 0
    tool_calls: int = 0
    percent: int = 15
    seen: int = 0

    def fold(self, snapshot: Snapshot) -> bool:
        """Apply one snapshot. Returns True when new text was captured."""
        self.messages = snapshot.messages
        fresh = self.messages[self.seen:]
        self.seen = max(self.seen, len(self.messages))

        captured = False
        for msg in fresh:
            role = classify_message(msg)
            if role == MessageRole.AI:
                self.model_calls += 1
                calls = tool_call_count(msg)
                self.tool_calls += calls
                logger.debug(
                    "controller model call %d requested %d tool calls (%d total)",
                    self.model_calls, calls, self.tool_calls,
                )
            if role in (MessageRole.HUMAN, MessageRole.SYSTEM):
                continue
            text = message_text(msg)
            if not text.strip() or is_budget_sentinel(text):
                continue
            self.captured.append(text)
            captured = True

        if captured:
            self.events_found = sum(t.count(EVENT_MARKER) for t in self.captured)
            self.percent = telemetry_percent(self.events_found)
        return captured

    @property
    def latest_text(self) -> str:
        return self.captured[-1] if self.captured else ""

    @property
    def ended_on_sentinel(self) -> bool:
        if not self.messages:
            return False
        return is_budget_sentinel(message_text(self.messages[-1]))


@dataclass
class ControllerOutcome:
    extraction: Extraction
    state: RunState
    completed: bool
    error: str = ""


class ControllerLoop:
    def __init__(self, agent: BudgetedAgent, on_progress: ProgressFn | None = None):
        self.agent = agent
        self.on_progress = on_progress

    def _progress(self, percent: int, message: str, events_found: int) -> None:
        if self.on_progress:
            self.on_progress(AnalysisProgress("deep-analysis", percent, message, events_found))

    async def run(self, instruction: str) -> ControllerOutcome:
        state = RunState()
        error = ""
        try:
            async for snapshot in self.agent.stream(instruction):
                if state.fold(snapshot):
                    self._progress(
                        state.percent,
                        f"Analysing... {state.events_found} waste events found so far",
                        state.events_found,
                    )
        except Exception as exc:
            kind = classify_failure(exc)
            logger.error(
                "controller stopped after %d model calls (%s): %s",
                state.model_calls, kind.value, exc,
            )
            if not is_limit_like(kind):
                raise AnalysisError("deep-analysis", f"analysis failed: {exc}", kind) from exc
            if not state.captured and not state.messages:
                raise AnalysisError(
                    "deep-analysis", f"limit reached with no usable content: {exc}", kind,
                ) from exc
            error = str(exc)

        completed = not error and not state.ended_on_sentinel
        if not completed:
            logger.warning("controller budget exhausted, extracting partial results")
            self._progress(80, "Limit reached, extracting partial results...", state.events_found)
        elif not state.captured:
            logger.warning("controller finished without any text output")

        try:
            extraction = extract_report_text(
                state.latest_text, state.messages, allow_raw=completed,
            )
        except UnrecoverableExtraction as exc:
            raise AnalysisError("extraction", str(exc), exc.kind) from exc

        logger.info(
            "extracted report from %s (%d chars)", extraction.source.value, len(extraction.text),
        )
        return ControllerOutcome(extraction, state, completed, error)
