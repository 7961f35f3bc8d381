"""
domain/projection.py — The deterministic fold from events to current state.

``apply_event(state, event)`` is a pure function: no I/O, no clock, no
randomness. The same event log therefore always produces the same state,
which is what lets the read model be thrown away and rebuilt at any time.
The command layer replays the same fold to load aggregate state.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, fields, replace
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

from domain.enums import (
    EventType,
    LifecyclePhase,
    ProcessRunStatus,
    StageExitReason,
)
from domain.events import StoredEvent, ensure_utc, parse_datetime

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LifecycleState:
    """Current state of one company product, as folded from its events."""
    company_product_id: str
    company_id: Optional[str] = None
    product_id: Optional[str] = None

    phase: Optional[str] = None
    status: Optional[str] = None
    terminal_outcome: Optional[str] = None
    churn_reason: Optional[str] = None

    current_process_id: Optional[str] = None
    current_process_type: Optional[str] = None
    current_stage_id: Optional[str] = None
    current_stage_name: Optional[str] = None
    current_stage_order: Optional[int] = None
    stage_entered_at: Optional[datetime] = None
    last_stage_moved_at: Optional[datetime] = None
    stage_sla_deadline: Optional[datetime] = None
    stage_sla_warning_at: Optional[datetime] = None
    is_sla_warning: bool = False
    is_sla_breached: bool = False
    process_started_at: Optional[datetime] = None
    process_completed_at: Optional[datetime] = None
    stage_transition_count: int = 0

    owner_id: Optional[str] = None
    owner_name: Optional[str] = None
    tier: Optional[int] = None
    mrr: Optional[float] = None
    mrr_currency: Optional[str] = None
    seats: Optional[int] = None
    next_step: Optional[str] = None
    next_step_due_at: Optional[datetime] = None
    close_confidence: Optional[int] = None
    close_ready: bool = False
    health_score: Optional[int] = None
    risk_level: Optional[str] = None

    last_event_type: Optional[str] = None
    last_event_at: Optional[datetime] = None
    last_applied_sequence_no: int = 0

    @property
    def exists(self) -> bool:
        return self.last_applied_sequence_no > 0

    @property
    def has_open_process(self) -> bool:
        return self.current_process_id is not None and self.status == ProcessRunStatus.OPEN

    @property
    def is_churned(self) -> bool:
        return self.phase == LifecyclePhase.CHURNED


STATE_FIELDS: tuple[str, ...] = tuple(f.name for f in fields(LifecycleState))

_DATETIME_FIELDS = frozenset(
    f.name for f in fields(LifecycleState)
    if "datetime" in str(f.type)
)


def state_from_mapping(values: dict[str, Any]) -> LifecycleState:
    """Build a state from a row-like mapping, normalising datetimes to UTC."""
    data = {}
    for name in STATE_FIELDS:
        if name not in values:
            continue
        value = values[name]
        if name in _DATETIME_FIELDS:
            value = ensure_utc(value)
        data[name] = value
    for flag in ("close_ready", "is_sla_warning", "is_sla_breached"):
        if data.get(flag) is None:
            data[flag] = False
    if data.get("stage_transition_count") is None:
        data["stage_transition_count"] = 0
    if data.get("last_applied_sequence_no") is None:
        data["last_applied_sequence_no"] = 0
    return LifecycleState(**data)


def state_to_mapping(state: LifecycleState) -> dict[str, Any]:
    return {name: getattr(state, name) for name in STATE_FIELDS}


def _sla_deadline(occurred_at: datetime, sla_days: Optional[int]) -> Optional[datetime]:
    if not sla_days:
        return None
    return occurred_at + timedelta(days=sla_days)


def _stage_entry_update(event: StoredEvent, stage_id: str, name, order, sla_days, sla_warning_days) -> dict[str, Any]:
    """Fields reset whenever a company product enters a stage."""
    return {
        "current_stage_id": stage_id,
        "current_stage_name": name,
        "current_stage_order": order,
        "stage_entered_at": event.occurred_at,
        "last_stage_moved_at": event.occurred_at,
        "stage_sla_deadline": _sla_deadline(event.occurred_at, sla_days),
        "stage_sla_warning_at": _sla_deadline(event.occurred_at, sla_warning_days),
        "is_sla_warning": False,
        "is_sla_breached": False,
    }


def _process_start_update(event: StoredEvent, data: dict) -> dict[str, Any]:
    update: dict[str, Any] = {
        "current_process_id": data["process_id"],
        "current_process_type": data["process_type"],
        "status": ProcessRunStatus.OPEN,
        "terminal_outcome": None,
        "process_started_at": event.occurred_at,
        "process_completed_at": None,
        "stage_transition_count": 0,
        "current_stage_id": None,
        "current_stage_name": None,
        "current_stage_order": None,
        "stage_sla_deadline": None,
        "stage_sla_warning_at": None,
        "is_sla_warning": False,
        "is_sla_breached": False,
    }
    stage = data.get("initial_stage")
    if stage:
        # Initial stage entry counts as the first transition
        update.update(_stage_entry_update(
            event, stage["id"], stage.get("name"), stage.get("order"),
            stage.get("sla_days"), stage.get("sla_warning_days"),
        ))
        update["stage_transition_count"] = 1
    return update


# ---------------------------------------------------------------------------
# Per-event-type folds
# ---------------------------------------------------------------------------

def _fold_sale_started(state: LifecycleState, event: StoredEvent, data: dict) -> dict:
    update = _process_start_update(event, data)
    update["phase"] = data.get("to_phase", LifecyclePhase.IN_SALES)
    update["churn_reason"] = None
    return update


def _fold_process_started(state: LifecycleState, event: StoredEvent, data: dict) -> dict:
    return _process_start_update(event, data)


def _fold_stage_advanced(state: LifecycleState, event: StoredEvent, data: dict) -> dict:
    update = _stage_entry_update(
        event, data["to_stage_id"], data.get("to_stage_name"), data.get("to_stage_order"),
        data.get("sla_days"), data.get("sla_warning_days"),
    )
    update["stage_transition_count"] = state.stage_transition_count + 1
    return update


def _fold_phase_changed(state: LifecycleState, event: StoredEvent, data: dict) -> dict:
    to_phase = data["to_phase"]
    return {
        "phase": to_phase,
        "churn_reason": data.get("churn_reason") if to_phase == LifecyclePhase.CHURNED else None,
    }


def _fold_process_completed(state: LifecycleState, event: StoredEvent, data: dict) -> dict:
    update: dict[str, Any] = {
        "status": ProcessRunStatus.COMPLETED,
        "terminal_outcome": data["outcome"],
        "process_completed_at": event.occurred_at,
        "stage_sla_deadline": None,
        "stage_sla_warning_at": None,
        "is_sla_warning": False,
        "is_sla_breached": False,
    }
    terminal_stage_id = data.get("terminal_stage_id")
    if terminal_stage_id and terminal_stage_id != state.current_stage_id:
        update.update(
            current_stage_id=terminal_stage_id,
            current_stage_name=data.get("terminal_stage_name"),
            current_stage_order=data.get("terminal_stage_order"),
            stage_entered_at=event.occurred_at,
            last_stage_moved_at=event.occurred_at,
        )
    return update


def _fold_owner_changed(state: LifecycleState, event: StoredEvent, data: dict) -> dict:
    return {"owner_id": data["to_owner_id"], "owner_name": data.get("to_owner_name")}


def _fold_tier_changed(state: LifecycleState, event: StoredEvent, data: dict) -> dict:
    return {"tier": data["to_tier"]}


def _fold_mrr_changed(state: LifecycleState, event: StoredEvent, data: dict) -> dict:
    return {"mrr": data["to_mrr"], "mrr_currency": data.get("currency")}


def _fold_seats_changed(state: LifecycleState, event: StoredEvent, data: dict) -> dict:
    return {"seats": data["to_seats"]}


def _fold_next_step_scheduled(state: LifecycleState, event: StoredEvent, data: dict) -> dict:
    return {
        "next_step": data["to_next_step"],
        "next_step_due_at": parse_datetime(data.get("to_due_at")),
    }


def _fold_health_updated(state: LifecycleState, event: StoredEvent, data: dict) -> dict:
    return {"health_score": data["to_score"], "risk_level": data.get("risk_level")}


def _fold_close_confidence_set(state: LifecycleState, event: StoredEvent, data: dict) -> dict:
    return {
        "close_confidence": data["to_confidence"],
        "close_ready": bool(data.get("close_ready")),
    }


def _fold_sla_warning(state: LifecycleState, event: StoredEvent, data: dict) -> dict:
    return {"is_sla_warning": True}


def _fold_sla_breached(state: LifecycleState, event: StoredEvent, data: dict) -> dict:
    return {"is_sla_warning": True, "is_sla_breached": True}


def _fold_metadata_only(state: LifecycleState, event: StoredEvent, data: dict) -> dict:
    return {}


_FOLDS = {
    EventType.SALE_STARTED: _fold_sale_started,
    EventType.PROCESS_STARTED: _fold_process_started,
    EventType.STAGE_ADVANCED: _fold_stage_advanced,
    EventType.PHASE_CHANGED: _fold_phase_changed,
    EventType.PROCESS_COMPLETED: _fold_process_completed,
    EventType.OWNER_CHANGED: _fold_owner_changed,
    EventType.TIER_CHANGED: _fold_tier_changed,
    EventType.MRR_CHANGED: _fold_mrr_changed,
    EventType.SEATS_CHANGED: _fold_seats_changed,
    EventType.NEXT_STEP_SCHEDULED: _fold_next_step_scheduled,
    EventType.HEALTH_UPDATED: _fold_health_updated,
    EventType.CLOSE_CONFIDENCE_SET: _fold_close_confidence_set,
    EventType.ACTIVITY_RECORDED: _fold_metadata_only,
    EventType.SLA_WARNING: _fold_sla_warning,
    EventType.SLA_BREACHED: _fold_sla_breached,
}


def apply_event(state: LifecycleState, event: StoredEvent) -> LifecycleState:
    """Fold one event into the state.

    Events at or below the watermark are ignored, so re-delivering a batch
    never changes the result.
    """
    if event.sequence_no <= state.last_applied_sequence_no:
        return state

    fold = _FOLDS.get(event.event_type)
    if fold is None:
        # Unknown event type: advance the watermark, keep replay going
        logger.warning(f"Unknown event type {event.event_type} at "
                       f"{event.aggregate_id}#{event.sequence_no}")
        fold = _fold_metadata_only

    update = fold(state, event, event.payload or {})
    return replace(
        state,
        **update,
        last_event_type=event.event_type,
        last_event_at=event.occurred_at,
        last_applied_sequence_no=event.sequence_no,
    )


def replay(state: LifecycleState, events: Iterable[StoredEvent]) -> LifecycleState:
    """Fold events in sequence order. Out-of-order input is a caller bug."""
    previous = None
    for event in events:
        if previous is not None and event.sequence_no <= previous:
            raise ValueError(
                f"Events out of order: sequence {event.sequence_no} after {previous}"
            )
        previous = event.sequence_no
        state = apply_event(state, event)
    return state


# ---------------------------------------------------------------------------
# Stage facts
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StageFactChange:
    """How one event closes and/or opens a stage history fact."""
    close: Optional[dict[str, Any]] = None
    open: Optional[dict[str, Any]] = None


def stage_fact_changes(prior: LifecycleState, event: StoredEvent) -> StageFactChange:
    """Derive stage-history changes from (prior state, event); pure like the fold."""
    data = event.payload or {}
    close = None
    open_ = None

    def _close(reason: str) -> Optional[dict[str, Any]]:
        if not prior.current_stage_id or not prior.has_open_process:
            return None
        duration = None
        if prior.stage_entered_at is not None:
            duration = int((event.occurred_at - prior.stage_entered_at).total_seconds())
        return {
            "exited_at": event.occurred_at,
            "exit_reason": reason,
            "exit_sequence_no": event.sequence_no,
            "duration_seconds": duration,
        }

    if event.event_type in (EventType.SALE_STARTED, EventType.PROCESS_STARTED):
        stage = data.get("initial_stage")
        if stage:
            open_ = {
                "process_id": data["process_id"],
                "process_type": data["process_type"],
                "stage_id": stage["id"],
                "stage_name": stage.get("name"),
                "stage_order": stage.get("order"),
                "entered_at": event.occurred_at,
                "entry_sequence_no": event.sequence_no,
            }
    elif event.event_type == EventType.STAGE_ADVANCED:
        reason = StageExitReason.PROGRESSED if data.get("is_progression", True) else StageExitReason.REGRESSED
        close = _close(reason)
        open_ = {
            "process_id": prior.current_process_id,
            "process_type": prior.current_process_type,
            "stage_id": data["to_stage_id"],
            "stage_name": data.get("to_stage_name"),
            "stage_order": data.get("to_stage_order"),
            "entered_at": event.occurred_at,
            "entry_sequence_no": event.sequence_no,
        }
    elif event.event_type == EventType.PROCESS_COMPLETED:
        close = _close(StageExitReason.COMPLETED)

    return StageFactChange(close=close, open=open_)
