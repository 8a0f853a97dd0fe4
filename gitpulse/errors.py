"""Error kinds, exceptions and the tool-facing result type."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    UNKNOWN_ROLE = "unknown-role"
    BUDGET_EXCEEDED = "budget-exceeded"
    STEP_LIMIT = "step-limit"
    TIMEOUT = "timeout"
    TRANSPORT = "transport"
    UNRECOVERABLE = "unrecoverable"


_LIMIT_KINDS = {ErrorKind.BUDGET_EXCEEDED, ErrorKind.STEP_LIMIT, ErrorKind.TIMEOUT}


def is_limit_like(kind: ErrorKind) -> bool:
    return kind in _LIMIT_KINDS


class GitPulseError(Exception):
    """Base error carrying an ErrorKind."""

    kind = ErrorKind.TRANSPORT

    def __init__(self, message: str, kind: ErrorKind | None = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class StepLimitExceeded(GitPulseError):
    kind = ErrorKind.STEP_LIMIT


class DeadlineExceeded(GitPulseError):
    kind = ErrorKind.TIMEOUT


class TransportFailure(GitPulseError):
    kind = ErrorKind.TRANSPORT


class UnrecoverableExtraction(GitPulseError):
    kind = ErrorKind.UNRECOVERABLE


class AnalysisError(GitPulseError):
    """A run failed; ``stage`` names where recovery was exhausted."""

    def __init__(self, stage: str, message: str, kind: ErrorKind | None = None):
        super().__init__(f"[{stage}] {message}", kind)
        self.stage = stage


# ---------------------------------------------------------------------------
# Backend failure translation
# ---------------------------------------------------------------------------

# Free-text signatures a backend (or an SDK wrapping one) uses for limit and
# timeout failures. Only classify_failure() may look at them.
_SIGNATURES: tuple[tuple[str, ErrorKind], ...] = (
    ("model call limits", ErrorKind.BUDGET_EXCEEDED),
    ("tool call limits", ErrorKind.BUDGET_EXCEEDED),
    ("recursion limit", ErrorKind.STEP_LIMIT),
    ("timed out", ErrorKind.TIMEOUT),
    ("timeout", ErrorKind.TIMEOUT),
)


def classify_failure(exc: BaseException | str) -> ErrorKind:
    """Map a failure to an ErrorKind.

    Our own exceptions carry their kind; anything else is matched against the
    closed signature set and falls back to TRANSPORT.
    """
    if isinstance(exc, GitPulseError):
        return exc.kind
    if isinstance(exc, TimeoutError):
        return ErrorKind.TIMEOUT
    text = str(exc).lower()
    for signature, kind in _SIGNATURES:
        if signature in text:
            return kind
    return ErrorKind.TRANSPORT


# ---------------------------------------------------------------------------
# Outcome
# ---------------------------------------------------------------------------

@dataclass
class Outcome:
    """``{ok, value}`` or ``{error, kind, message}``."""

    ok: bool
    value: Any = None
    kind: ErrorKind | None = None
    message: str = ""

    @classmethod
    def success(cls, value: Any) -> "Outcome":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str) -> "Outcome":
        return cls(ok=False, kind=kind, message=message)

    @classmethod
    def from_exception(cls, exc: BaseException) -> "Outcome":
        return cls.failure(classify_failure(exc), str(exc) or type(exc).__name__)

    def render(self) -> str:
        """Always a printable string."""
        if self.ok:
            return self.value if isinstance(self.value, str) else str(self.value)
        return f"Error: {self.message}"
