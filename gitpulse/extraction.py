"""Best-effort recovery of a report from raw text and transcript history.

The cascade, in order:

1. a ```json fenced block in the raw text
2. the first balanced ``{...}`` span in the raw text containing ``"events"``
3. the most recent AI or tool message with a report-shaped key
4. every ``task`` tool output in the transcript, concatenated
5. the raw text itself, only when the loop finished normally

Nothing left raises ``UnrecoverableExtraction``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .errors import UnrecoverableExtraction
from .transcript import (
    MessageRole,
    classify_message,
    is_budget_sentinel,
    message_name,
    message_text,
)

logger = logging.getLogger(__name__)

_FENCED_JSON = re.compile(r"```json\s*([\s\S]*?)```")
_REPORT_KEYS = ('"events"', '"patternId"', "```json")

TASK_TOOL_NAME = "task"
MIN_TASK_OUTPUT_CHARS = 100
TASK_OUTPUT_SEPARATOR = "\n\n---\n\n"

MIN_FRAGMENT_CHARS = 30
MAX_TOOL_FRAGMENT_CHARS = 3000
MAX_AI_FRAGMENT_CHARS = 500
MAX_RECOVERED_CHARS = 15000
FRAGMENT_PREFIX = "[analysis fragment] "
FRAGMENT_SEPARATOR = "\n---\n"


class ExtractionSource(str, Enum):
    FENCED_BLOCK = "fenced-block"
    EVENTS_OBJECT = "events-object"
    HISTORY_SCAN = "history-scan"
    TASK_OUTPUTS = "task-outputs"
    RAW_TEXT = "raw-text"


@dataclass
class Extraction:
    text: str
    source: ExtractionSource


def find_fenced_json(text: str) -> str | None:
    match = _FENCED_JSON.search(text or "")
    if match and match.group(1).strip():
        return match.group(1).strip()
    return None


def _balanced_end(text: str, start: int) -> int:
    """Index just past the ``}`` closing the ``{`` at ``start``, or -1."""
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i + 1
    return -1


def find_events_object(text: str) -> str | None:
    """First balanced object span containing the ``"events"`` key."""
    text = text or ""
    pos = text.find("{")
    while pos != -1:
        end = _balanced_end(text, pos)
        if end == -1:
            # truncated; an inner object may still close
            pos = text.find("{", pos + 1)
            continue
        span = text[pos:end]
        if '"events"' in span:
            return span
        pos = text.find("{", end)
    return None


def is_report_shaped(text: str) -> bool:
    return any(key in text for key in _REPORT_KEYS)


def scan_history(history: list[Any]) -> str | None:
    """Most recent non-sentinel model or tool message that looks like a report.

    The instruction itself asks for a ```json block, so human and system
    messages never count.
    """
    for msg in reversed(history):
        if classify_message(msg) in (MessageRole.HUMAN, MessageRole.SYSTEM):
            continue
        text = message_text(msg)
        if not text.strip() or is_budget_sentinel(text):
            continue
        if is_report_shaped(text):
            return text
    return None


def collect_task_outputs(history: list[Any]) -> str | None:
    outputs = [
        message_text(msg)
        for msg in history
        if classify_message(msg) == MessageRole.TOOL
        and message_name(msg) == TASK_TOOL_NAME
        and len(message_text(msg)) > MIN_TASK_OUTPUT_CHARS
    ]
    return TASK_OUTPUT_SEPARATOR.join(outputs) if outputs else None


def extract_report_text(
    raw_text: str, history: list[Any], allow_raw: bool = True,
) -> Extraction:
    raw_text = raw_text or ""

    found = find_fenced_json(raw_text)
    if found:
        return Extraction(found, ExtractionSource.FENCED_BLOCK)

    found = find_events_object(raw_text)
    if found:
        return Extraction(found, ExtractionSource.EVENTS_OBJECT)

    found = scan_history(history)
    if found:
        return Extraction(found, ExtractionSource.HISTORY_SCAN)

    found = collect_task_outputs(history)
    if found:
        logger.info("no report in transcript, falling back to sub-agent outputs")
        return Extraction(found, ExtractionSource.TASK_OUTPUTS)

    if allow_raw and raw_text.strip():
        return Extraction(raw_text, ExtractionSource.RAW_TEXT)

    raise UnrecoverableExtraction(
        "no usable result could be recovered from the analysis transcript"
    )


# ---------------------------------------------------------------------------
# Worker-level recovery after budget exhaustion
# ---------------------------------------------------------------------------

def recover_fragments(history: list[Any]) -> list[str]:
    """Tool results and model analysis text, in transcript order, each capped."""
    fragments = []
    for msg in history:
        role = classify_message(msg)
        text = message_text(msg)
        if len(text) <= MIN_FRAGMENT_CHARS or is_budget_sentinel(text):
            continue
        if role == MessageRole.TOOL:
            fragments.append(text[:MAX_TOOL_FRAGMENT_CHARS])
        elif role == MessageRole.AI:
            fragments.append(FRAGMENT_PREFIX + text[:MAX_AI_FRAGMENT_CHARS])
    return fragments


def fragment_payload(fragments: list[str]) -> str:
    return FRAGMENT_SEPARATOR.join(fragments)[:MAX_RECOVERED_CHARS]
