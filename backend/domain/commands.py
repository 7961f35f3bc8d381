"""
domain/commands.py — Command types for the CompanyProduct aggregate.

Every command names its aggregate (company product id plus the company and
product it belongs to), the actor, and its own fields. ``action`` is the tag
used at the request boundary.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Optional

from domain.events import Actor


@dataclass(frozen=True, kw_only=True)
class Command:
    action: ClassVar[str] = ""
    # Commands that may bring a brand new aggregate into existence
    creates_aggregate: ClassVar[bool] = False

    company_product_id: str
    company_id: str
    product_id: str
    actor: Actor = field(default_factory=Actor)


# ---------------------------------------------------------------------------
# Process and stage
# ---------------------------------------------------------------------------
@dataclass(frozen=True, kw_only=True)
class StartSale(Command):
    action: ClassVar[str] = "start-sale"
    creates_aggregate: ClassVar[bool] = True

    process_id: str
    initial_stage_id: str


@dataclass(frozen=True, kw_only=True)
class StartProcess(Command):
    action: ClassVar[str] = "start-process"

    process_id: str
    initial_stage_id: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class AdvanceStage(Command):
    action: ClassVar[str] = "advance-stage"

    to_stage_id: str
    reason: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class CompleteProcess(Command):
    action: ClassVar[str] = "complete-process"

    terminal_stage_id: str
    outcome: str
    process_id: Optional[str] = None
    notes: Optional[str] = None
    churn_reason: Optional[str] = None  # required when the outcome is churned


@dataclass(frozen=True, kw_only=True)
class CompleteSaleAndStartOnboarding(Command):
    action: ClassVar[str] = "complete-sale-start-onboarding"

    onboarding_process_id: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class CompleteOnboardingAndStartEngagement(Command):
    action: ClassVar[str] = "complete-onboarding-start-engagement"

    engagement_process_id: Optional[str] = None
    notes: Optional[str] = None


# ---------------------------------------------------------------------------
# Phase
# ---------------------------------------------------------------------------
@dataclass(frozen=True, kw_only=True)
class SetPhase(Command):
    action: ClassVar[str] = "set-phase"
    creates_aggregate: ClassVar[bool] = True

    to_phase: str
    reason: Optional[str] = None
    churn_reason: Optional[str] = None


# ---------------------------------------------------------------------------
# Attributes
# ---------------------------------------------------------------------------
@dataclass(frozen=True, kw_only=True)
class SetOwner(Command):
    action: ClassVar[str] = "set-owner"

    owner_id: str
    owner_name: str
    reason: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class SetTier(Command):
    action: ClassVar[str] = "set-tier"

    tier: int
    reason: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class SetMRR(Command):
    action: ClassVar[str] = "set-mrr"

    mrr: float
    currency: str = "USD"
    reason: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class SetSeats(Command):
    action: ClassVar[str] = "set-seats"

    seats: int
    reason: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class SetNextStepDue(Command):
    action: ClassVar[str] = "set-next-step-due"

    next_step: str
    due_at: datetime


@dataclass(frozen=True, kw_only=True)
class UpdateHealth(Command):
    action: ClassVar[str] = "update-health"

    score: int
    risk_level: str
    factors: list[dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True, kw_only=True)
class SetCloseConfidence(Command):
    action: ClassVar[str] = "set-close-confidence"

    confidence: int
    close_ready: Optional[bool] = None


@dataclass(frozen=True, kw_only=True)
class RecordActivity(Command):
    action: ClassVar[str] = "record-activity"

    activity_type: str
    summary: Optional[str] = None
    outcome: Optional[str] = None


# ---------------------------------------------------------------------------
# SLA monitoring (issued by the SLA scanner as a system actor)
# ---------------------------------------------------------------------------
@dataclass(frozen=True, kw_only=True)
class RecordSLAWarning(Command):
    action: ClassVar[str] = "record-sla-warning"

    stage_id: str


@dataclass(frozen=True, kw_only=True)
class RecordSLABreach(Command):
    action: ClassVar[str] = "record-sla-breach"

    stage_id: str


COMMAND_TYPES: tuple[type[Command], ...] = (
    StartSale,
    StartProcess,
    AdvanceStage,
    CompleteProcess,
    CompleteSaleAndStartOnboarding,
    CompleteOnboardingAndStartEngagement,
    SetPhase,
    SetOwner,
    SetTier,
    SetMRR,
    SetSeats,
    SetNextStepDue,
    UpdateHealth,
    SetCloseConfidence,
    RecordActivity,
    RecordSLAWarning,
    RecordSLABreach,
)

COMPOUND_COMMANDS: tuple[type[Command], ...] = (
    CompleteSaleAndStartOnboarding,
    CompleteOnboardingAndStartEngagement,
)
