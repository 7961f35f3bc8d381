"""
domain/lifecycle.py — Company product lifecycle state machine.

Pure decision logic: given the current aggregate state and a command, decide
whether the transition is legal and which events it produces. No database,
no clock (``now`` is passed in), no side effects.

State Diagram:
    (new) --> PROSPECT | IN_SALES      (set-phase / start-sale)
    PROSPECT --> IN_SALES               (start-sale)
    IN_SALES --> ONBOARDING | ACTIVE    (sale won, per next-phase policy)
    IN_SALES --> PROSPECT               (sale lost / cancelled)
    ONBOARDING --> ACTIVE               (onboarding completed)
    ANY --> CHURNED                     (forced churn, churned outcome)
    CHURNED --> PROSPECT                (reactivation, set-phase only)

Inside IN_SALES / ONBOARDING / ACTIVE the aggregate walks the ordered stages
of its current sales / onboarding / engagement process. Moving to a lower
stage order is allowed (deals regress) and recorded as ``is_progression``.

A command that targets the phase, stage or value the aggregate already has
is accepted as a no-op: ``decide`` returns an empty list and nothing is
appended, so callers can retry freely.

SLA warnings and breaches are recorded at most once per stage entry; the
flags reset whenever the company product enters a new stage.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from domain.commands import (
    COMMAND_TYPES,
    AdvanceStage,
    Command,
    CompleteOnboardingAndStartEngagement,
    CompleteProcess,
    CompleteSaleAndStartOnboarding,
    RecordActivity,
    RecordSLABreach,
    RecordSLAWarning,
    SetCloseConfidence,
    SetMRR,
    SetNextStepDue,
    SetOwner,
    SetPhase,
    SetSeats,
    SetTier,
    StartProcess,
    StartSale,
    UpdateHealth,
)
from domain.enums import (
    PHASE_FOR_PROCESS,
    ActivityType,
    EventType,
    LifecyclePhase,
    ProcessType,
    RiskLevel,
    TerminalMutationPolicy,
    TerminalOutcome,
)
from domain.errors import InvariantViolation, NotFound, ValidationError
from domain.events import NewEvent, ensure_utc
from domain.process import ProcessCatalog, ProcessDefinition, StageDefinition
from domain.projection import LifecycleState


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LifecyclePolicy:
    """Business policy knobs the state machine consults."""
    won_sale_next_phase: str = LifecyclePhase.ONBOARDING
    terminal_mutation_policy: str = TerminalMutationPolicy.REJECT
    close_ready_confidence: int = 75

    def __post_init__(self):
        if self.won_sale_next_phase not in (LifecyclePhase.ONBOARDING, LifecyclePhase.ACTIVE):
            raise ValueError(
                f"won_sale_next_phase must be onboarding or active, got {self.won_sale_next_phase!r}"
            )
        if self.terminal_mutation_policy not in set(TerminalMutationPolicy):
            raise ValueError(
                f"Unknown terminal mutation policy {self.terminal_mutation_policy!r}"
            )

    @classmethod
    def from_settings(cls, settings) -> "LifecyclePolicy":
        return cls(
            won_sale_next_phase=LifecyclePhase(settings.WON_SALE_NEXT_PHASE),
            terminal_mutation_policy=TerminalMutationPolicy(settings.TERMINAL_MUTATION_POLICY),
            close_ready_confidence=settings.CLOSE_READY_CONFIDENCE,
        )


# Direct phase overrides accepted by set-phase. None is a brand new aggregate.
VALID_PHASE_TRANSITIONS: dict[Optional[str], set[str]] = {
    None: {LifecyclePhase.PROSPECT, LifecyclePhase.IN_SALES},
    LifecyclePhase.PROSPECT: {LifecyclePhase.IN_SALES, LifecyclePhase.CHURNED},
    LifecyclePhase.IN_SALES: {
        LifecyclePhase.PROSPECT, LifecyclePhase.ONBOARDING, LifecyclePhase.CHURNED,
    },
    LifecyclePhase.ONBOARDING: {LifecyclePhase.ACTIVE, LifecyclePhase.CHURNED},
    LifecyclePhase.ACTIVE: {LifecyclePhase.CHURNED},
    LifecyclePhase.CHURNED: {LifecyclePhase.PROSPECT},
}

STAGE_PHASES = frozenset({
    LifecyclePhase.IN_SALES, LifecyclePhase.ONBOARDING, LifecyclePhase.ACTIVE,
})

# Steps of the two compound transitions, in emitted order
COMPOUND_STEPS: tuple[str, ...] = (
    EventType.PROCESS_COMPLETED,
    EventType.PHASE_CHANGED,
    EventType.PROCESS_STARTED,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _event(event_type: str, payload: dict[str, Any], command: Command, now: datetime) -> NewEvent:
    return NewEvent(event_type=event_type, payload=payload, actor=command.actor, occurred_at=now)


def _stage_ref(stage: Optional[StageDefinition]) -> Optional[dict[str, Any]]:
    if stage is None:
        return None
    return {
        "id": stage.id,
        "name": stage.name,
        "order": stage.stage_order,
        "sla_days": stage.sla_days,
        "sla_warning_days": stage.sla_warning_days,
    }


def _duration_days(state: LifecycleState, now: datetime) -> int:
    if state.process_started_at is None:
        return 0
    return max(0, (now - state.process_started_at).days)


def _require_text(value: Optional[str], field_name: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{field_name} is required")
    return str(value).strip()


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _resolve_process(
    catalog: ProcessCatalog,
    process_id: str,
    command: Command,
    expected_type: Optional[str] = None,
    step: Optional[str] = None,
) -> ProcessDefinition:
    process = catalog.get_process(process_id)
    if process is None:
        raise NotFound(f"Process {process_id} not found", step=step)
    if process.product_id != command.product_id:
        raise InvariantViolation(
            f"Process {process_id} does not belong to product {command.product_id}", step=step
        )
    if expected_type and process.process_type != expected_type:
        raise InvariantViolation(
            f"Process {process_id} is a {process.process_type} process, expected {expected_type}",
            step=step,
        )
    return process


def _resolve_entry_stage(catalog: ProcessCatalog, process: ProcessDefinition, stage_id: str) -> StageDefinition:
    stage = catalog.get_stage(stage_id)
    if stage is None:
        raise NotFound(f"Stage {stage_id} not found")
    if stage.process_id != process.id:
        raise InvariantViolation(
            f"Stage {stage_id} does not belong to process {process.id}"
        )
    if stage.is_terminal:
        raise InvariantViolation(f"Cannot start a process at terminal stage {stage.name}")
    return stage


def _next_phase_after(process_type: Optional[str], outcome: str, policy: LifecyclePolicy) -> Optional[str]:
    """Phase a completed process leads to, or None to stay put."""
    if outcome == TerminalOutcome.CHURNED:
        return LifecyclePhase.CHURNED
    if process_type == ProcessType.SALES:
        if outcome == TerminalOutcome.WON:
            return policy.won_sale_next_phase
        if outcome in (TerminalOutcome.LOST, TerminalOutcome.CANCELLED):
            return LifecyclePhase.PROSPECT
    if process_type == ProcessType.ONBOARDING and outcome == TerminalOutcome.COMPLETED:
        return LifecyclePhase.ACTIVE
    return None


def _check_mutable(state: LifecycleState, command: Command, policy: LifecyclePolicy) -> None:
    """Terminal-phase guard for attribute commands."""
    if not state.is_churned:
        return
    if policy.terminal_mutation_policy == TerminalMutationPolicy.ALLOW:
        return
    if policy.terminal_mutation_policy == TerminalMutationPolicy.OWNER_ONLY and isinstance(command, SetOwner):
        return
    raise InvariantViolation(
        f"Company product {state.company_product_id} is churned; {command.action} is not allowed"
    )


# ---------------------------------------------------------------------------
# Process and stage commands
# ---------------------------------------------------------------------------

def _decide_start_sale(state, command: StartSale, catalog, policy, now) -> list[NewEvent]:
    process = _resolve_process(catalog, command.process_id, command, expected_type=ProcessType.SALES)
    stage = _resolve_entry_stage(catalog, process, command.initial_stage_id)

    if state.phase == LifecyclePhase.IN_SALES and state.has_open_process \
            and state.current_process_id == process.id:
        return []

    if state.phase not in (None, LifecyclePhase.PROSPECT):
        raise InvariantViolation(
            f"Cannot start sale from phase {state.phase}; must be prospect or new"
        )
    if state.has_open_process:
        raise InvariantViolation(
            f"Cannot start sale while {state.current_process_type} process is active"
        )

    return [_event(EventType.SALE_STARTED, {
        "from_phase": state.phase,
        "to_phase": LifecyclePhase.IN_SALES,
        "from_process_id": state.current_process_id,
        "from_process_type": state.current_process_type,
        "process_id": process.id,
        "process_type": process.process_type,
        "process_version": process.version,
        "initial_stage": _stage_ref(stage),
    }, command, now)]


def _decide_start_process(state, command: StartProcess, catalog, policy, now) -> list[NewEvent]:
    process = _resolve_process(catalog, command.process_id, command)

    if state.has_open_process:
        if state.current_process_id == process.id:
            return []
        raise InvariantViolation(
            f"Cannot start new process while {state.current_process_type} process is active"
        )

    expected_phase = PHASE_FOR_PROCESS[process.process_type]
    if state.phase != expected_phase:
        raise InvariantViolation(
            f"A {process.process_type} process requires phase {expected_phase}, "
            f"company product is {state.phase}"
        )

    if command.initial_stage_id:
        stage = _resolve_entry_stage(catalog, process, command.initial_stage_id)
    else:
        stage = catalog.first_stage(process.id)

    return [_event(EventType.PROCESS_STARTED, {
        "from_process_id": state.current_process_id,
        "from_process_type": state.current_process_type,
        "process_id": process.id,
        "process_type": process.process_type,
        "process_version": process.version,
        "initial_stage": _stage_ref(stage),
    }, command, now)]


def _decide_advance_stage(state, command: AdvanceStage, catalog, policy, now) -> list[NewEvent]:
    if state.phase not in STAGE_PHASES:
        raise InvariantViolation(f"Cannot advance stage in phase {state.phase}")
    if not state.has_open_process:
        raise InvariantViolation("No active process to transition stage")

    stage = catalog.get_stage(command.to_stage_id)
    if stage is None:
        raise NotFound(f"Stage {command.to_stage_id} not found")
    if stage.process_id != state.current_process_id:
        raise InvariantViolation(
            f"Stage {stage.name} does not belong to this product's current "
            f"{state.current_process_type} process"
        )
    if stage.id == state.current_stage_id:
        return []

    current = catalog.get_stage(state.current_stage_id)
    if current is not None and current.is_terminal:
        raise InvariantViolation(
            f"Cannot advance past terminal stage {current.name}; complete the process instead"
        )

    is_progression = state.current_stage_order is None or stage.stage_order > state.current_stage_order
    return [_event(EventType.STAGE_ADVANCED, {
        "process_id": state.current_process_id,
        "from_stage_id": state.current_stage_id,
        "from_stage_name": state.current_stage_name,
        "from_stage_order": state.current_stage_order,
        "to_stage_id": stage.id,
        "to_stage_name": stage.name,
        "to_stage_order": stage.stage_order,
        "sla_days": stage.sla_days,
        "sla_warning_days": stage.sla_warning_days,
        "is_progression": is_progression,
        "reason": command.reason,
    }, command, now)]


def _process_completed_event(
    state: LifecycleState,
    command: Command,
    stage: Optional[StageDefinition],
    outcome: str,
    notes: Optional[str],
    now: datetime,
) -> NewEvent:
    return _event(EventType.PROCESS_COMPLETED, {
        "process_id": state.current_process_id,
        "process_type": state.current_process_type,
        "terminal_stage_id": stage.id if stage else state.current_stage_id,
        "terminal_stage_name": stage.name if stage else state.current_stage_name,
        "terminal_stage_order": stage.stage_order if stage else state.current_stage_order,
        "outcome": outcome,
        "duration_days": _duration_days(state, now),
        "stage_transition_count": state.stage_transition_count,
        "notes": notes,
    }, command, now)


def _phase_changed_event(state, command, to_phase, reason, now, churn_reason=None) -> NewEvent:
    return _event(EventType.PHASE_CHANGED, {
        "from_phase": state.phase,
        "to_phase": to_phase,
        "reason": reason,
        "churn_reason": churn_reason,
    }, command, now)


def _decide_complete_process(state, command: CompleteProcess, catalog, policy, now) -> list[NewEvent]:
    try:
        outcome = TerminalOutcome(command.outcome)
    except ValueError:
        raise ValidationError(f"Unknown outcome {command.outcome!r}")
    churn_reason = None
    if outcome == TerminalOutcome.CHURNED:
        churn_reason = _require_text(command.churn_reason, "churn_reason")

    target_process_id = command.process_id or state.current_process_id
    if target_process_id is None or target_process_id != state.current_process_id:
        raise InvariantViolation(
            f"Company product is not in process {command.process_id}"
        )
    if not state.has_open_process:
        if state.terminal_outcome == outcome and state.current_stage_id == command.terminal_stage_id:
            return []
        raise InvariantViolation(f"Process {target_process_id} is already completed")

    stage = catalog.get_stage(command.terminal_stage_id)
    if stage is None:
        raise NotFound(f"Stage {command.terminal_stage_id} not found")
    if stage.process_id != state.current_process_id:
        raise InvariantViolation(
            f"Stage {stage.name} does not belong to this product's current process"
        )
    if not stage.is_terminal:
        raise InvariantViolation(f"Stage {stage.name} is not a terminal stage")
    if stage.terminal_type and stage.terminal_type != outcome:
        raise InvariantViolation(
            f"Stage {stage.name} ends a process as {stage.terminal_type}, not {outcome}"
        )

    events = [_process_completed_event(state, command, stage, outcome, command.notes, now)]
    next_phase = _next_phase_after(state.current_process_type, outcome, policy)
    if next_phase and next_phase != state.phase:
        events.append(_phase_changed_event(
            state, command, next_phase,
            f"{state.current_process_type} process {outcome}", now,
            churn_reason=churn_reason,
        ))
    return events


def _decide_compound(
    state: LifecycleState,
    command: Command,
    catalog: ProcessCatalog,
    now: datetime,
    *,
    from_type: str,
    from_phase: str,
    to_type: str,
    to_phase: str,
    outcome: str,
    next_process_id: Optional[str],
    next_process_required: bool,
) -> list[NewEvent]:
    """Complete the current process, change phase, start the next process."""
    completed_step, phase_step, started_step = COMPOUND_STEPS

    if state.phase == to_phase and state.has_open_process and state.current_process_type == to_type \
            and next_process_id in (None, state.current_process_id):
        return []
    if state.phase == to_phase and not state.has_open_process and state.terminal_outcome == outcome \
            and next_process_id is None and not next_process_required:
        return []

    if state.current_process_type != from_type or not state.has_open_process:
        raise InvariantViolation(
            f"Cannot complete {from_type}: current process is "
            f"{state.current_process_type or 'none'}"
            f"{'' if state.has_open_process else ' (not open)'}",
            step=completed_step,
        )
    if state.phase != from_phase:
        raise InvariantViolation(
            f"Cannot complete {from_type} from phase {state.phase}", step=phase_step,
        )

    if next_process_id:
        next_process = _resolve_process(catalog, next_process_id, command,
                                        expected_type=to_type, step=started_step)
    else:
        next_process = catalog.default_process(command.product_id, to_type)
        if next_process is None and next_process_required:
            raise NotFound(
                f"No published {to_type} process for product {command.product_id}",
                step=started_step,
            )

    terminal = catalog.terminal_stage(state.current_process_id, outcome)
    notes = getattr(command, "notes", None)
    events = [
        _process_completed_event(state, command, terminal, outcome, notes, now),
        _phase_changed_event(state, command, to_phase,
                             f"{from_type} {outcome} - starting {to_type}", now),
    ]
    if next_process is not None:
        events.append(_event(EventType.PROCESS_STARTED, {
            "from_process_id": state.current_process_id,
            "from_process_type": from_type,
            "process_id": next_process.id,
            "process_type": next_process.process_type,
            "process_version": next_process.version,
            "initial_stage": _stage_ref(catalog.first_stage(next_process.id)),
        }, command, now))
    return events


def _decide_complete_sale_start_onboarding(state, command: CompleteSaleAndStartOnboarding,
                                           catalog, policy, now) -> list[NewEvent]:
    return _decide_compound(
        state, command, catalog, now,
        from_type=ProcessType.SALES, from_phase=LifecyclePhase.IN_SALES,
        to_type=ProcessType.ONBOARDING, to_phase=LifecyclePhase.ONBOARDING,
        outcome=TerminalOutcome.WON,
        next_process_id=command.onboarding_process_id,
        next_process_required=True,
    )


def _decide_complete_onboarding_start_engagement(state, command: CompleteOnboardingAndStartEngagement,
                                                 catalog, policy, now) -> list[NewEvent]:
    return _decide_compound(
        state, command, catalog, now,
        from_type=ProcessType.ONBOARDING, from_phase=LifecyclePhase.ONBOARDING,
        to_type=ProcessType.ENGAGEMENT, to_phase=LifecyclePhase.ACTIVE,
        outcome=TerminalOutcome.COMPLETED,
        next_process_id=command.engagement_process_id,
        next_process_required=False,
    )


# ---------------------------------------------------------------------------
# Phase override
# ---------------------------------------------------------------------------

def _decide_set_phase(state, command: SetPhase, catalog, policy, now) -> list[NewEvent]:
    try:
        to_phase = LifecyclePhase(command.to_phase)
    except ValueError:
        raise ValidationError(f"Unknown phase {command.to_phase!r}")
    reason = _require_text(command.reason, "reason")
    churn_reason = None
    if to_phase == LifecyclePhase.CHURNED:
        churn_reason = _require_text(command.churn_reason, "churn_reason")

    if to_phase == state.phase:
        return []

    allowed = VALID_PHASE_TRANSITIONS.get(state.phase, set())
    if to_phase not in allowed:
        raise InvariantViolation(
            f"Invalid phase transition: {state.phase or 'new'} -> {to_phase}"
        )

    return [_phase_changed_event(state, command, to_phase, reason, now, churn_reason=churn_reason)]


# ---------------------------------------------------------------------------
# Attribute commands
# ---------------------------------------------------------------------------

def _decide_set_owner(state, command: SetOwner, catalog, policy, now) -> list[NewEvent]:
    owner_id = _require_text(command.owner_id, "owner_id")
    owner_name = _require_text(command.owner_name, "owner_name")
    _check_mutable(state, command, policy)
    if (owner_id, owner_name) == (state.owner_id, state.owner_name):
        return []
    return [_event(EventType.OWNER_CHANGED, {
        "from_owner_id": state.owner_id,
        "from_owner_name": state.owner_name,
        "to_owner_id": owner_id,
        "to_owner_name": owner_name,
        "reason": command.reason,
    }, command, now)]


def _decide_set_tier(state, command: SetTier, catalog, policy, now) -> list[NewEvent]:
    if not _is_int(command.tier) or not 1 <= command.tier <= 5:
        raise ValidationError("Tier must be an integer between 1 and 5")
    _check_mutable(state, command, policy)
    if command.tier == state.tier:
        return []
    return [_event(EventType.TIER_CHANGED, {
        "from_tier": state.tier,
        "to_tier": command.tier,
        "reason": command.reason,
    }, command, now)]


def _decide_set_mrr(state, command: SetMRR, catalog, policy, now) -> list[NewEvent]:
    if isinstance(command.mrr, bool) or not isinstance(command.mrr, (int, float)) \
            or not math.isfinite(command.mrr):
        raise ValidationError("MRR must be a number")
    if command.mrr < 0:
        raise ValidationError("MRR cannot be negative")
    currency = (command.currency or "USD").upper()
    if len(currency) != 3 or not currency.isalpha():
        raise ValidationError(f"Invalid currency code {command.currency!r}")
    _check_mutable(state, command, policy)
    mrr = float(command.mrr)
    if mrr == state.mrr and currency == state.mrr_currency:
        return []
    return [_event(EventType.MRR_CHANGED, {
        "from_mrr": state.mrr,
        "to_mrr": mrr,
        "currency": currency,
        "reason": command.reason,
    }, command, now)]


def _decide_set_seats(state, command: SetSeats, catalog, policy, now) -> list[NewEvent]:
    if not _is_int(command.seats) or command.seats < 0:
        raise ValidationError("Seats must be a non-negative integer")
    _check_mutable(state, command, policy)
    if command.seats == state.seats:
        return []
    return [_event(EventType.SEATS_CHANGED, {
        "from_seats": state.seats,
        "to_seats": command.seats,
        "reason": command.reason,
    }, command, now)]


def _decide_set_next_step_due(state, command: SetNextStepDue, catalog, policy, now) -> list[NewEvent]:
    next_step = _require_text(command.next_step, "next_step")
    if not isinstance(command.due_at, datetime):
        raise ValidationError("due_at must be a datetime")
    due_at = ensure_utc(command.due_at)
    _check_mutable(state, command, policy)
    if next_step == state.next_step and due_at == state.next_step_due_at:
        return []
    # A past due date is a valid "overdue" signal, not an error
    return [_event(EventType.NEXT_STEP_SCHEDULED, {
        "from_next_step": state.next_step,
        "from_due_at": state.next_step_due_at.isoformat() if state.next_step_due_at else None,
        "to_next_step": next_step,
        "to_due_at": due_at.isoformat(),
        "is_overdue": due_at < now,
    }, command, now)]


def _decide_update_health(state, command: UpdateHealth, catalog, policy, now) -> list[NewEvent]:
    if not _is_int(command.score) or not 0 <= command.score <= 100:
        raise ValidationError("Health score must be an integer between 0 and 100")
    try:
        risk_level = RiskLevel(command.risk_level)
    except ValueError:
        raise ValidationError(f"Unknown risk level {command.risk_level!r}")
    _check_mutable(state, command, policy)
    if command.score == state.health_score and risk_level == state.risk_level:
        return []
    return [_event(EventType.HEALTH_UPDATED, {
        "from_score": state.health_score,
        "to_score": command.score,
        "risk_level": risk_level,
        "factors": list(command.factors or []),
    }, command, now)]


def _decide_set_close_confidence(state, command: SetCloseConfidence, catalog, policy, now) -> list[NewEvent]:
    if not _is_int(command.confidence) or not 0 <= command.confidence <= 100:
        raise ValidationError("Close confidence must be an integer between 0 and 100")
    _check_mutable(state, command, policy)
    close_ready = command.close_ready
    if close_ready is None:
        close_ready = command.confidence >= policy.close_ready_confidence
    if command.confidence == state.close_confidence and close_ready == state.close_ready:
        return []
    return [_event(EventType.CLOSE_CONFIDENCE_SET, {
        "from_confidence": state.close_confidence,
        "to_confidence": command.confidence,
        "close_ready": close_ready,
    }, command, now)]


def _decide_record_activity(state, command: RecordActivity, catalog, policy, now) -> list[NewEvent]:
    try:
        activity_type = ActivityType(command.activity_type)
    except ValueError:
        raise ValidationError(f"Unknown activity type {command.activity_type!r}")
    return [_event(EventType.ACTIVITY_RECORDED, {
        "activity_type": activity_type,
        "summary": command.summary,
        "outcome": command.outcome,
    }, command, now)]


# ---------------------------------------------------------------------------
# SLA monitoring
# ---------------------------------------------------------------------------

def _sla_stage(state: LifecycleState, command: Command, catalog: ProcessCatalog) -> Optional[StageDefinition]:
    """Stage an SLA command refers to, or None once the company product has left it."""
    if state.is_churned or not state.has_open_process:
        raise InvariantViolation(
            f"Company product {state.company_product_id} has no open process to monitor"
        )
    if command.stage_id != state.current_stage_id:
        return None
    stage = catalog.get_stage(command.stage_id)
    if stage is None:
        raise NotFound(f"Stage {command.stage_id} not found")
    return stage


def _days_in_stage(state: LifecycleState, now: datetime) -> int:
    if state.stage_entered_at is None:
        return 0
    return max(0, (now - state.stage_entered_at).days)


def _stage_deadline(state: LifecycleState, stage: StageDefinition) -> Optional[datetime]:
    if state.stage_sla_deadline is not None:
        return state.stage_sla_deadline
    if state.stage_entered_at is None or not stage.sla_days:
        return None
    return state.stage_entered_at + timedelta(days=stage.sla_days)


def _decide_record_sla_warning(state, command: RecordSLAWarning, catalog, policy, now) -> list[NewEvent]:
    stage = _sla_stage(state, command, catalog)
    # One warning per stage entry; a breach supersedes it
    if stage is None or state.is_sla_warning or state.is_sla_breached:
        return []
    if not stage.sla_days or not stage.sla_warning_days:
        raise InvariantViolation(f"Stage {stage.name} has no SLA warning threshold")

    days = _days_in_stage(state, now)
    if days < stage.sla_warning_days:
        raise InvariantViolation(
            f"{days} day(s) in {stage.name}; warning starts at {stage.sla_warning_days}"
        )
    deadline = _stage_deadline(state, stage)
    if deadline is not None and now > deadline:
        raise InvariantViolation(f"SLA for {stage.name} is already breached")

    return [_event(EventType.SLA_WARNING, {
        "stage_id": stage.id,
        "stage_name": stage.name,
        "sla_days": stage.sla_days,
        "warning_days": stage.sla_warning_days,
        "actual_days": days,
    }, command, now)]


def _decide_record_sla_breach(state, command: RecordSLABreach, catalog, policy, now) -> list[NewEvent]:
    stage = _sla_stage(state, command, catalog)
    if stage is None or state.is_sla_breached:
        return []
    if not stage.sla_days:
        raise InvariantViolation(f"Stage {stage.name} has no SLA")

    deadline = _stage_deadline(state, stage)
    if deadline is None or now <= deadline:
        raise InvariantViolation(f"SLA for {stage.name} has not been breached")

    days = _days_in_stage(state, now)
    return [_event(EventType.SLA_BREACHED, {
        "stage_id": stage.id,
        "stage_name": stage.name,
        "sla_days": stage.sla_days,
        "actual_days": days,
        "days_over": max(0, days - stage.sla_days),
    }, command, now)]


# Handler dispatch table
_DECIDERS: dict[type, Callable[..., list[NewEvent]]] = {
    StartSale: _decide_start_sale,
    StartProcess: _decide_start_process,
    AdvanceStage: _decide_advance_stage,
    CompleteProcess: _decide_complete_process,
    CompleteSaleAndStartOnboarding: _decide_complete_sale_start_onboarding,
    CompleteOnboardingAndStartEngagement: _decide_complete_onboarding_start_engagement,
    SetPhase: _decide_set_phase,
    SetOwner: _decide_set_owner,
    SetTier: _decide_set_tier,
    SetMRR: _decide_set_mrr,
    SetSeats: _decide_set_seats,
    SetNextStepDue: _decide_set_next_step_due,
    UpdateHealth: _decide_update_health,
    SetCloseConfidence: _decide_set_close_confidence,
    RecordActivity: _decide_record_activity,
    RecordSLAWarning: _decide_record_sla_warning,
    RecordSLABreach: _decide_record_sla_breach,
}

_unhandled = [c.__name__ for c in COMMAND_TYPES if c not in _DECIDERS]
if _unhandled:
    raise RuntimeError(f"Commands without a decider: {', '.join(_unhandled)}")


# ---------------------------------------------------------------------------
# Main FSM Function
# ---------------------------------------------------------------------------

def decide(
    state: LifecycleState,
    command: Command,
    catalog: ProcessCatalog,
    policy: Optional[LifecyclePolicy] = None,
    now: Optional[datetime] = None,
) -> list[NewEvent]:
    """Decide which events a command produces against the current state.

    Returns an empty list for a no-op (the aggregate is already where the
    command wants it). Raises ``ValidationError``, ``InvariantViolation`` or
    ``NotFound`` when the command must be rejected.
    """
    if now is None:
        raise ValueError("decide() needs an explicit 'now'")
    policy = policy or LifecyclePolicy()

    decider = _DECIDERS.get(type(command))
    if decider is None:
        raise ValidationError(f"Unsupported command {type(command).__name__}")

    if not state.exists and not command.creates_aggregate:
        raise NotFound(
            f"Company product {command.company_product_id} has no lifecycle history"
        )

    return decider(state, command, catalog, policy, ensure_utc(now))
