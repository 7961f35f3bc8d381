"""
Command service for the CompanyProduct aggregate.

Each command runs as: load state by replaying the aggregate's events, ask the
state machine for events, append them with the loaded sequence as the
expected head. A concurrent writer surfaces as ConcurrencyConflict and the
whole cycle is retried a bounded number of times. The command layer never
touches read models.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from sqlalchemy.orm import sessionmaker

from config import settings
from domain.commands import (
    COMPOUND_COMMANDS,
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
from domain.errors import ConcurrencyConflict, LifecycleError, ValidationError
from domain.lifecycle import COMPOUND_STEPS, LifecyclePolicy, decide
from services.event_store import EventStore, load_aggregate
from services.process_catalog import load_catalog

logger = logging.getLogger(__name__)


@dataclass
class StepResult:
    step: str
    success: bool
    event_id: Optional[int] = None
    sequence_no: Optional[int] = None
    error: Optional[str] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "step": self.step,
            "success": self.success,
            "eventId": self.event_id,
            "sequenceNo": self.sequence_no,
            "error": self.error,
        }


@dataclass
class CommandResult:
    action: str
    company_product_id: str
    success: bool
    event_ids: list[int] = field(default_factory=list)
    sequence_nos: list[int] = field(default_factory=list)
    steps: list[StepResult] = field(default_factory=list)
    error: Optional[str] = None
    error_type: Optional[str] = None
    noop: bool = False
    status_code: int = 200

    def as_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "companyProductId": self.company_product_id,
            "success": self.success,
            "eventIds": self.event_ids,
            "sequenceNos": self.sequence_nos,
            "steps": [step.as_dict() for step in self.steps],
            "error": self.error,
            "errorType": self.error_type,
            "noop": self.noop,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CommandService:
    """Executes lifecycle commands against the event store."""

    def __init__(
        self,
        session_factory: sessionmaker,
        policy: Optional[LifecyclePolicy] = None,
        max_retries: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.session_factory = session_factory
        self.policy = policy or LifecyclePolicy.from_settings(settings)
        self.max_retries = max(1, max_retries or settings.COMMAND_MAX_RETRIES)
        self.clock = clock or _utcnow

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    def execute(self, command: Command) -> CommandResult:
        """Run a command, retrying on concurrency conflicts."""
        attempt = 0
        while True:
            attempt += 1
            try:
                return self._attempt(command)
            except ConcurrencyConflict as exc:
                if attempt >= self.max_retries:
                    logger.warning(
                        f"{command.action} on {command.company_product_id} gave up after "
                        f"{attempt} attempt(s): {exc.message}"
                    )
                    return self._failure(command, exc)
                logger.warning(
                    f"{command.action} on {command.company_product_id} conflicted "
                    f"(attempt {attempt}/{self.max_retries}), retrying"
                )
            except LifecycleError as exc:
                logger.info(
                    f"{command.action} on {command.company_product_id} rejected: "
                    f"{exc.error_type}: {exc.message}"
                )
                return self._failure(command, exc)

    def _attempt(self, command: Command) -> CommandResult:
        self._validate_identity(command)
        now = self.clock()

        with self.session_factory() as session, session.begin():
            store = EventStore(session)
            registration = self._check_registration(store, command)
            loaded = load_aggregate(
                store, command.company_product_id, command.company_id, command.product_id
            )
            # Full catalog: a process from another product must be reported as such
            catalog = load_catalog(session)

            events = decide(loaded.state, command, catalog, self.policy, now)
            if not events:
                logger.info(f"{command.action} on {command.company_product_id} is a no-op")
                return CommandResult(
                    action=command.action,
                    company_product_id=command.company_product_id,
                    success=True,
                    noop=True,
                )

            if registration is None:
                store.register_aggregate(
                    command.company_product_id, command.company_id, command.product_id
                )
            stored = store.append(command.company_product_id, events, loaded.version)

        logger.info(
            f"{command.action} on {command.company_product_id}: appended "
            f"{', '.join(f'{e.event_type}#{e.sequence_no}' for e in stored)}"
        )
        return CommandResult(
            action=command.action,
            company_product_id=command.company_product_id,
            success=True,
            event_ids=[e.id for e in stored],
            sequence_nos=[e.sequence_no for e in stored],
            steps=[
                StepResult(step=e.event_type, success=True, event_id=e.id, sequence_no=e.sequence_no)
                for e in stored
            ],
        )

    # ------------------------------------------------------------------
    # Identity checks
    # ------------------------------------------------------------------
    @staticmethod
    def _validate_identity(command: Command) -> None:
        for name in ("company_product_id", "company_id", "product_id"):
            if not getattr(command, name, None):
                raise ValidationError(f"{name} is required")

    @staticmethod
    def _check_registration(store: EventStore, command: Command):
        registration = store.get_registration(command.company_product_id)
        if registration is not None:
            if (registration.company_id, registration.product_id) != (command.company_id, command.product_id):
                raise ValidationError(
                    f"Company product {command.company_product_id} belongs to company "
                    f"{registration.company_id} / product {registration.product_id}"
                )
            return registration

        existing = store.find_by_pair(command.company_id, command.product_id)
        if existing is not None:
            raise ValidationError(
                f"Company {command.company_id} already has product {command.product_id} "
                f"as company product {existing.id}"
            )
        return None

    # ------------------------------------------------------------------
    # Failures
    # ------------------------------------------------------------------
    @staticmethod
    def _failure(command: Command, exc: LifecycleError) -> CommandResult:
        steps = []
        if isinstance(command, COMPOUND_COMMANDS):
            # Nothing of a compound batch is ever appended on failure
            for step in COMPOUND_STEPS:
                steps.append(StepResult(
                    step=step,
                    success=False,
                    error=exc.message if step == exc.step else "not appended",
                ))
        return CommandResult(
            action=command.action,
            company_product_id=command.company_product_id,
            success=False,
            steps=steps,
            error=exc.message,
            error_type=exc.error_type,
            status_code=exc.status_code,
        )

    # ------------------------------------------------------------------
    # One entry point per command type
    # ------------------------------------------------------------------
    def start_sale(self, **fields) -> CommandResult:
        return self.execute(StartSale(**fields))

    def start_process(self, **fields) -> CommandResult:
        return self.execute(StartProcess(**fields))

    def advance_stage(self, **fields) -> CommandResult:
        return self.execute(AdvanceStage(**fields))

    def complete_process(self, **fields) -> CommandResult:
        return self.execute(CompleteProcess(**fields))

    def complete_sale_and_start_onboarding(self, **fields) -> CommandResult:
        return self.execute(CompleteSaleAndStartOnboarding(**fields))

    def complete_onboarding_and_start_engagement(self, **fields) -> CommandResult:
        return self.execute(CompleteOnboardingAndStartEngagement(**fields))

    def set_phase(self, **fields) -> CommandResult:
        return self.execute(SetPhase(**fields))

    def set_owner(self, **fields) -> CommandResult:
        return self.execute(SetOwner(**fields))

    def set_tier(self, **fields) -> CommandResult:
        return self.execute(SetTier(**fields))

    def set_mrr(self, **fields) -> CommandResult:
        return self.execute(SetMRR(**fields))

    def set_seats(self, **fields) -> CommandResult:
        return self.execute(SetSeats(**fields))

    def set_next_step_due(self, **fields) -> CommandResult:
        return self.execute(SetNextStepDue(**fields))

    def update_health(self, **fields) -> CommandResult:
        return self.execute(UpdateHealth(**fields))

    def set_close_confidence(self, **fields) -> CommandResult:
        return self.execute(SetCloseConfidence(**fields))

    def record_activity(self, **fields) -> CommandResult:
        return self.execute(RecordActivity(**fields))

    def record_sla_warning(self, **fields) -> CommandResult:
        return self.execute(RecordSLAWarning(**fields))

    def record_sla_breach(self, **fields) -> CommandResult:
        return self.execute(RecordSLABreach(**fields))
