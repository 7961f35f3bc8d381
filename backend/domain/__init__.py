"""
domain/ — Core domain logic for the Lifecycle Engine.

Pure Python: no database, no web framework, no clock. The services layer
loads state and persists events; everything here is deterministic.

Modules:
    enums        — All domain enumerations
    errors       — Rejection taxonomy and the projection-lag report
    events       — Event envelopes (new and stored) and actors
    commands     — Command types for the company product aggregate
    process      — Read-only process / stage definitions and catalog lookup
    projection   — The fold from events to current state, stage facts
    lifecycle    — Phase / stage state machine (decide)
"""

from domain.enums import (
    LifecyclePhase,
    ProcessType,
    TerminalOutcome,
    EventType,
    ActorType,
)
from domain.errors import (
    LifecycleError,
    ValidationError,
    InvariantViolation,
    NotFound,
    ConcurrencyConflict,
    ProjectionLag,
)
from domain.lifecycle import LifecyclePolicy, decide
from domain.projection import LifecycleState, apply_event, replay

__all__ = [
    "LifecyclePhase",
    "ProcessType",
    "TerminalOutcome",
    "EventType",
    "ActorType",
    "LifecycleError",
    "ValidationError",
    "InvariantViolation",
    "NotFound",
    "ConcurrencyConflict",
    "ProjectionLag",
    "LifecyclePolicy",
    "decide",
    "LifecycleState",
    "apply_event",
    "replay",
]
