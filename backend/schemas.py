"""
Pydantic schemas for request/response validation.

Command requests are a tagged union on ``action`` and use camelCase on the
wire (``companyProductId``, ``actorType``...). Read-model responses mirror
the table columns.
"""

from datetime import datetime
from typing import Annotated, Any, ClassVar, List, Literal, Optional, Union

from pydantic import BaseModel, Field, RootModel
from pydantic.alias_generators import to_camel

from domain import commands as cmd
from domain.enums import ActorType
from domain.events import Actor


# ============================= Command Requests =============================

class CommandRequestBase(BaseModel):
    model_config = {"alias_generator": to_camel, "populate_by_name": True}

    command_type: ClassVar[type[cmd.Command]]

    company_product_id: str = Field(..., min_length=1)
    company_id: str = Field(..., min_length=1)
    product_id: str = Field(..., min_length=1)
    actor_id: Optional[str] = None
    actor_type: ActorType = ActorType.USER

    def to_command(self) -> cmd.Command:
        fields = self.model_dump(exclude={"action", "actor_id", "actor_type"})
        return self.command_type(**fields, actor=Actor(type=self.actor_type, id=self.actor_id))


class StartSaleRequest(CommandRequestBase):
    command_type: ClassVar = cmd.StartSale
    action: Literal["start-sale"]
    process_id: str
    initial_stage_id: str


class StartProcessRequest(CommandRequestBase):
    command_type: ClassVar = cmd.StartProcess
    action: Literal["start-process"]
    process_id: str
    initial_stage_id: Optional[str] = None


class AdvanceStageRequest(CommandRequestBase):
    command_type: ClassVar = cmd.AdvanceStage
    action: Literal["advance-stage"]
    to_stage_id: str
    reason: Optional[str] = None


class CompleteProcessRequest(CommandRequestBase):
    command_type: ClassVar = cmd.CompleteProcess
    action: Literal["complete-process"]
    terminal_stage_id: str
    outcome: str
    process_id: Optional[str] = None
    notes: Optional[str] = None
    churn_reason: Optional[str] = None


class CompleteSaleStartOnboardingRequest(CommandRequestBase):
    command_type: ClassVar = cmd.CompleteSaleAndStartOnboarding
    action: Literal["complete-sale-start-onboarding"]
    onboarding_process_id: Optional[str] = None
    notes: Optional[str] = None


class CompleteOnboardingStartEngagementRequest(CommandRequestBase):
    command_type: ClassVar = cmd.CompleteOnboardingAndStartEngagement
    action: Literal["complete-onboarding-start-engagement"]
    engagement_process_id: Optional[str] = None
    notes: Optional[str] = None


class SetPhaseRequest(CommandRequestBase):
    command_type: ClassVar = cmd.SetPhase
    action: Literal["set-phase"]
    to_phase: str
    reason: Optional[str] = None
    churn_reason: Optional[str] = None


class SetOwnerRequest(CommandRequestBase):
    command_type: ClassVar = cmd.SetOwner
    action: Literal["set-owner"]
    owner_id: str
    owner_name: str
    reason: Optional[str] = None


class SetTierRequest(CommandRequestBase):
    command_type: ClassVar = cmd.SetTier
    action: Literal["set-tier"]
    tier: int
    reason: Optional[str] = None


class SetMRRRequest(CommandRequestBase):
    command_type: ClassVar = cmd.SetMRR
    action: Literal["set-mrr"]
    mrr: float
    currency: str = "USD"
    reason: Optional[str] = None


class SetSeatsRequest(CommandRequestBase):
    command_type: ClassVar = cmd.SetSeats
    action: Literal["set-seats"]
    seats: int
    reason: Optional[str] = None


class SetNextStepDueRequest(CommandRequestBase):
    command_type: ClassVar = cmd.SetNextStepDue
    action: Literal["set-next-step-due"]
    next_step: str
    due_at: datetime


class UpdateHealthRequest(CommandRequestBase):
    command_type: ClassVar = cmd.UpdateHealth
    action: Literal["update-health"]
    score: int
    risk_level: str
    factors: List[dict[str, Any]] = Field(default_factory=list)


class SetCloseConfidenceRequest(CommandRequestBase):
    command_type: ClassVar = cmd.SetCloseConfidence
    action: Literal["set-close-confidence"]
    confidence: int
    close_ready: Optional[bool] = None


class RecordActivityRequest(CommandRequestBase):
    command_type: ClassVar = cmd.RecordActivity
    action: Literal["record-activity"]
    activity_type: str
    summary: Optional[str] = None
    outcome: Optional[str] = None


class RecordSLAWarningRequest(CommandRequestBase):
    command_type: ClassVar = cmd.RecordSLAWarning
    action: Literal["record-sla-warning"]
    stage_id: str
    actor_type: ActorType = ActorType.SYSTEM


class RecordSLABreachRequest(CommandRequestBase):
    command_type: ClassVar = cmd.RecordSLABreach
    action: Literal["record-sla-breach"]
    stage_id: str
    actor_type: ActorType = ActorType.SYSTEM


LifecycleCommand = Annotated[
    Union[
        StartSaleRequest,
        StartProcessRequest,
        AdvanceStageRequest,
        CompleteProcessRequest,
        CompleteSaleStartOnboardingRequest,
        CompleteOnboardingStartEngagementRequest,
        SetPhaseRequest,
        SetOwnerRequest,
        SetTierRequest,
        SetMRRRequest,
        SetSeatsRequest,
        SetNextStepDueRequest,
        UpdateHealthRequest,
        SetCloseConfidenceRequest,
        RecordActivityRequest,
        RecordSLAWarningRequest,
        RecordSLABreachRequest,
    ],
    Field(discriminator="action"),
]


class LifecycleCommandRequest(RootModel[LifecycleCommand]):
    pass


# ============================= Command Responses =============================

class ProjectionSummary(BaseModel):
    model_config = {"alias_generator": to_camel, "populate_by_name": True}

    events_processed: int = 0
    duration: float = 0.0
    error: Optional[str] = None


class CommandResponse(BaseModel):
    success: bool
    result: List[dict[str, Any]] = []
    projection: Optional[ProjectionSummary] = None


class ProjectionRunResponse(BaseModel):
    aggregates_processed: int
    events_processed: int
    duration: float
    errors: List[str] = []
    stopped_early: bool = False


class RebuildRequest(BaseModel):
    company_product_ids: Optional[List[str]] = None


# ============================= Read Models =============================

class CompanyProductResponse(BaseModel):
    company_product_id: str
    company_id: str
    product_id: str

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
    projected_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class StageFactResponse(BaseModel):
    process_id: str
    process_type: str
    stage_id: str
    stage_name: Optional[str] = None
    stage_order: Optional[int] = None
    entered_at: datetime
    exited_at: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    exit_reason: Optional[str] = None
    entry_sequence_no: int
    exit_sequence_no: Optional[int] = None

    model_config = {"from_attributes": True}


class StageCountResponse(BaseModel):
    product_id: str
    process_id: str
    process_type: str
    stage_id: str
    stage_name: Optional[str] = None
    stage_order: Optional[int] = None
    total_count: int
    sla_warning_count: int = 0
    sla_breached_count: int
    total_mrr: float
    avg_days_in_stage: Optional[float] = None
    projected_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class ProjectionLagResponse(BaseModel):
    company_product_id: str
    last_applied_sequence_no: int
    head_sequence_no: int
    events_behind: int

    model_config = {"from_attributes": True}


class EventResponse(BaseModel):
    id: int
    sequence_no: int
    event_type: str
    payload: dict[str, Any]
    actor_type: str
    actor_id: Optional[str] = None
    occurred_at: datetime
    recorded_at: Optional[datetime] = None


# ============================= Process Catalog =============================

class StageResponse(BaseModel):
    id: str
    name: str
    stage_order: int
    is_terminal: bool
    terminal_type: Optional[str] = None
    sla_days: Optional[int] = None
    sla_warning_days: Optional[int] = None

    model_config = {"from_attributes": True}


class ProcessResponse(BaseModel):
    id: str
    product_id: str
    process_type: str
    name: str
    version: int
    status: str
    stages: List[StageResponse] = []

    model_config = {"from_attributes": True}


class ProductResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None

    model_config = {"from_attributes": True}
