"""
domain/enums.py — All domain enumerations for the Lifecycle Engine.

Uses StrEnum so values serialize cleanly to JSON and can be stored
directly in TEXT columns.
"""
from __future__ import annotations

from enum import StrEnum


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------
class LifecyclePhase(StrEnum):
    """The top-level bucket every company product sits in.

    Progression: PROSPECT -> IN_SALES -> ONBOARDING -> ACTIVE
    Terminal:    CHURNED (reactivation back to PROSPECT only)
    """
    PROSPECT = "prospect"
    IN_SALES = "in_sales"
    ONBOARDING = "onboarding"
    ACTIVE = "active"
    CHURNED = "churned"


class ProcessType(StrEnum):
    SALES = "sales"
    ONBOARDING = "onboarding"
    ENGAGEMENT = "engagement"


class ProcessStatus(StrEnum):
    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class TerminalOutcome(StrEnum):
    WON = "won"
    LOST = "lost"
    COMPLETED = "completed"
    CHURNED = "churned"
    CANCELLED = "cancelled"


class ProcessRunStatus(StrEnum):
    """Status of the current process on the read model."""
    OPEN = "open"
    COMPLETED = "completed"


class ActorType(StrEnum):
    USER = "user"
    SYSTEM = "system"
    AI = "ai"


class RiskLevel(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ActivityType(StrEnum):
    CALL = "call"
    EMAIL = "email"
    MEETING = "meeting"
    DEMO = "demo"
    NOTE = "note"
    OTHER = "other"


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------
class EventType(StrEnum):
    SALE_STARTED = "SaleStarted"
    PROCESS_STARTED = "ProcessStarted"
    STAGE_ADVANCED = "StageAdvanced"
    PHASE_CHANGED = "PhaseChanged"
    PROCESS_COMPLETED = "ProcessCompleted"
    OWNER_CHANGED = "OwnerChanged"
    TIER_CHANGED = "TierChanged"
    MRR_CHANGED = "MRRChanged"
    SEATS_CHANGED = "SeatsChanged"
    NEXT_STEP_SCHEDULED = "NextStepScheduled"
    HEALTH_UPDATED = "HealthUpdated"
    CLOSE_CONFIDENCE_SET = "CloseConfidenceSet"
    ACTIVITY_RECORDED = "ActivityRecorded"
    SLA_WARNING = "SLAWarning"
    SLA_BREACHED = "SLABreached"


class StageExitReason(StrEnum):
    PROGRESSED = "progressed"
    REGRESSED = "regressed"
    COMPLETED = "completed"


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------
class TerminalMutationPolicy(StrEnum):
    """Whether attribute commands are accepted once a company product churned."""
    REJECT = "reject"
    OWNER_ONLY = "owner_only"
    ALLOW = "allow"


# Process type that drives each phase
PHASE_FOR_PROCESS: dict[str, str] = {
    ProcessType.SALES: LifecyclePhase.IN_SALES,
    ProcessType.ONBOARDING: LifecyclePhase.ONBOARDING,
    ProcessType.ENGAGEMENT: LifecyclePhase.ACTIVE,
}
