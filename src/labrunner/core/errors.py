"""Error taxonomy surfaced to callers as classification strings."""
from __future__ import annotations

from enum import Enum


class Classification(str, Enum):
    COMPILE_ERROR = "CompileError"
    RUNTIME_ERROR = "RuntimeError"
    TIMEOUT_ERROR = "TimeoutError"
    SANDBOX_VIOLATION = "SandboxViolation"
    THROTTLED = "Throttled"
    INTERNAL_ERROR = "InternalError"
    CANCELLED = "Cancelled"
    INVALID_REQUEST = "InvalidRequest"


# Messages shown to learners. Limits and host paths never appear here.
PUBLIC_MESSAGES = {
    Classification.TIMEOUT_ERROR: "Execution timed out. Check for infinite loops or very slow code.",
    Classification.SANDBOX_VIOLATION: "Execution exceeded the allowed resources.",
    Classification.THROTTLED: "The server is busy. Please try again shortly.",
    Classification.INTERNAL_ERROR: "An internal error occurred while running your code.",
    Classification.CANCELLED: "Execution was cancelled.",
}


def format_error(kind: Classification, message: str | None = None) -> str:
    text = message or PUBLIC_MESSAGES.get(kind, "")
    return f"{kind.value}: {text}" if text else kind.value


class LabRunnerError(Exception):
    """Base exception for labrunner."""

    classification = Classification.INTERNAL_ERROR

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def public(self) -> str:
        return format_error(self.classification, self.message or None)


class InvalidRequest(LabRunnerError):
    """Request rejected before any process is spawned."""

    classification = Classification.INVALID_REQUEST


class UnsupportedLanguage(InvalidRequest):
    """Language id outside the configured set."""


class Throttled(LabRunnerError):
    """Scheduler capacity (workers + queue) exhausted."""

    classification = Classification.THROTTLED


class InternalError(LabRunnerError):
    """Engine bug or host misconfiguration."""

    classification = Classification.INTERNAL_ERROR

    def public(self) -> str:
        # internals stay in the logs
        return format_error(self.classification)


class HarnessParseError(InternalError):
    """Harness output could not be interpreted."""


class JobNotFound(LabRunnerError):
    pass
