"""
errors.py — Typed failures raised by the training engine
=========================================================
Callers can tell three things apart: a no-op ("already complete"), a
successful transition, and a genuine error.  Only the last one is an
exception, and it is always one of the classes below.

  NotFoundError              agent / specialty / session / test is absent
  ValidationFailure          input rejected before any state write
  UpstreamGenerationFailure  provider or grading delegate misbehaved
                             (recovered inside the adapters, never fatal)
  ConcurrencyConflict        a versioned session write lost the race
"""

from __future__ import annotations

from typing import Any


class TrainingError(Exception):
    """Base class for every error the training engine raises on purpose."""

    error_code: str = "TRAINING_ERROR"

    def __init__(self, message: str, extra: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.extra = extra or {}


class NotFoundError(TrainingError, LookupError):
    """A referenced entity does not exist."""

    error_code = "NOT_FOUND"

    def __init__(self, kind: str, identifier: str) -> None:
        super().__init__(
            f"{kind.capitalize()} '{identifier}' not found",
            extra={"kind": kind, "identifier": identifier},
        )
        self.kind = kind
        self.identifier = identifier


class ValidationFailure(TrainingError, ValueError):
    """Input failed one or more BLOCK-level guardrails."""

    error_code = "VALIDATION_FAILED"

    def __init__(self, message: str, violations: list | None = None) -> None:
        super().__init__(message, extra={"violations": violations or []})
        self.violations = violations or []

    @classmethod
    def from_result(cls, result) -> "ValidationFailure":
        """Build from a blocked GuardrailResult."""
        blocking = [v for v in result.violations if v.level == "BLOCK"]
        message = "; ".join(f"[{v.code}] {v.message}" for v in blocking) or "Validation failed"
        return cls(message, violations=blocking)


class UpstreamGenerationFailure(TrainingError):
    """The text-generation provider or grading delegate failed or returned junk."""

    error_code = "UPSTREAM_GENERATION_FAILED"


class ConcurrencyConflict(TrainingError):
    """A session row changed between read and write."""

    error_code = "CONCURRENCY_CONFLICT"

    def __init__(self, session_id: str, expected_version: int, actual_version: int | None) -> None:
        super().__init__(
            f"Session '{session_id}' was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})",
            extra={
                "session_id":       session_id,
                "expected_version": expected_version,
                "actual_version":   actual_version,
            },
        )
        self.session_id = session_id
        self.expected_version = expected_version
        self.actual_version = actual_version
