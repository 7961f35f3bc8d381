"""
domain/errors.py — Error taxonomy for the lifecycle core.

    ValidationError      malformed request, never retried
    InvariantViolation   state machine rejected the transition
    NotFound             referenced aggregate / process / stage is absent
    ConcurrencyConflict  another writer appended first; retried, then surfaced

ProjectionLag is not an error: it reports a read model that is behind the
event log so callers can decide to project synchronously.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


class LifecycleError(Exception):
    """Base class for every rejection the command layer can report."""

    error_type = "LifecycleError"
    status_code = 400

    def __init__(self, message: str, step: Optional[str] = None):
        super().__init__(message)
        self.message = message
        # Compound commands record which step could not be built
        self.step = step


class ValidationError(LifecycleError):
    error_type = "ValidationError"
    status_code = 400


class InvariantViolation(LifecycleError):
    error_type = "InvariantViolation"
    status_code = 422


class NotFound(LifecycleError):
    error_type = "NotFound"
    status_code = 404


class ConcurrencyConflict(LifecycleError):
    error_type = "ConcurrencyConflict"
    status_code = 409


@dataclass(frozen=True)
class ProjectionLag:
    company_product_id: str
    last_applied_sequence_no: int
    head_sequence_no: int

    @property
    def events_behind(self) -> int:
        return self.head_sequence_no - self.last_applied_sequence_no
