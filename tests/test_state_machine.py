"""Tests for domain.lifecycle.decide: the phase / stage state machine."""

from datetime import datetime, timedelta, timezone

import pytest

from conftest import seed_catalog
from domain.commands import (
    AdvanceStage,
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
from domain.enums import EventType, LifecyclePhase, TerminalMutationPolicy
from domain.errors import InvariantViolation, NotFound, ValidationError
from domain.events import StoredEvent
from domain.lifecycle import LifecyclePolicy, decide
from domain.process import ProcessCatalog
from domain.projection import LifecycleState, replay
from seed_data import (
    ANALYTICS_PRODUCT_ID,
    ANALYTICS_SALES_PROCESS_ID,
    CRM_ENGAGEMENT_PROCESS_ID,
    CRM_ONBOARDING_PROCESS_ID,
    CRM_PRODUCT_ID,
    CRM_SALES_PROCESS_ID,
    stage_id,
)

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
CATALOG = seed_catalog()

DISCOVERY, DEMO, PROPOSAL, NEGOTIATION, CLOSED_WON, CLOSED_LOST = (
    stage_id(CRM_SALES_PROCESS_ID, n) for n in range(1, 7)
)
KICKOFF, CONFIGURATION, TRAINING, GO_LIVE = (
    stage_id(CRM_ONBOARDING_PROCESS_ID, n) for n in range(1, 5)
)
ADOPTION = stage_id(CRM_ENGAGEMENT_PROCESS_ID, 1)
CHURNED_STAGE = stage_id(CRM_ENGAGEMENT_PROCESS_ID, 4)

IDENTITY = {"company_product_id": "cp-1", "company_id": "co-1", "product_id": CRM_PRODUCT_ID}
NEW = LifecycleState(company_product_id="cp-1", company_id="co-1", product_id=CRM_PRODUCT_ID)


def run(state, command, policy=None, catalog=CATALOG, now=NOW):
    """Decide and fold, returning (new state, decided events)."""
    events = decide(state, command, catalog, policy or LifecyclePolicy(), now)
    base = state.last_applied_sequence_no
    stored = [
        StoredEvent(
            id=base + i,
            aggregate_id=state.company_product_id,
            sequence_no=base + i,
            event_type=e.event_type,
            payload=e.payload,
            actor=e.actor,
            occurred_at=e.occurred_at,
        )
        for i, e in enumerate(events, start=1)
    ]
    return replay(state, stored), events


def in_sales(stage=DISCOVERY):
    state, _ = run(NEW, StartSale(**IDENTITY, process_id=CRM_SALES_PROCESS_ID, initial_stage_id=stage))
    return state


def in_onboarding():
    state, _ = run(in_sales(NEGOTIATION), CompleteSaleAndStartOnboarding(**IDENTITY))
    return state


def in_engagement():
    state, _ = run(in_onboarding(), CompleteOnboardingAndStartEngagement(**IDENTITY))
    return state


def churned():
    state, _ = run(in_sales(), SetPhase(**IDENTITY, to_phase="churned", reason="lost budget",
                                        churn_reason="budget cut"))
    return state


class TestStartSale:
    def test_new_aggregate_enters_sales(self):
        state, events = run(NEW, StartSale(**IDENTITY, process_id=CRM_SALES_PROCESS_ID,
                                           initial_stage_id=DISCOVERY))
        assert [e.event_type for e in events] == [EventType.SALE_STARTED]
        assert events[0].payload["initial_stage"]["name"] == "Discovery"
        assert state.phase == LifecyclePhase.IN_SALES
        assert state.current_stage_id == DISCOVERY
        assert state.stage_transition_count == 1
        assert state.stage_sla_deadline == NOW + timedelta(days=14)

    def test_unknown_process_is_not_found(self):
        with pytest.raises(NotFound):
            decide(NEW, StartSale(**IDENTITY, process_id="nope", initial_stage_id=DISCOVERY),
                   CATALOG, LifecyclePolicy(), NOW)

    def test_process_of_other_product_is_rejected(self):
        with pytest.raises(InvariantViolation):
            decide(NEW, StartSale(**IDENTITY, process_id=ANALYTICS_SALES_PROCESS_ID,
                                  initial_stage_id=stage_id(ANALYTICS_SALES_PROCESS_ID, 1)),
                   CATALOG, LifecyclePolicy(), NOW)

    def test_non_sales_process_is_rejected(self):
        with pytest.raises(InvariantViolation):
            decide(NEW, StartSale(**IDENTITY, process_id=CRM_ONBOARDING_PROCESS_ID,
                                  initial_stage_id=KICKOFF),
                   CATALOG, LifecyclePolicy(), NOW)

    def test_unknown_stage_is_not_found(self):
        with pytest.raises(NotFound):
            decide(NEW, StartSale(**IDENTITY, process_id=CRM_SALES_PROCESS_ID, initial_stage_id="nope"),
                   CATALOG, LifecyclePolicy(), NOW)

    def test_stage_of_other_process_is_rejected(self):
        with pytest.raises(InvariantViolation):
            decide(NEW, StartSale(**IDENTITY, process_id=CRM_SALES_PROCESS_ID, initial_stage_id=KICKOFF),
                   CATALOG, LifecyclePolicy(), NOW)

    def test_retry_while_already_in_that_sale_is_noop(self):
        state = in_sales(DEMO)
        events = decide(state, StartSale(**IDENTITY, process_id=CRM_SALES_PROCESS_ID,
                                         initial_stage_id=DISCOVERY),
                        CATALOG, LifecyclePolicy(), NOW)
        assert events == []

    def test_rejected_from_onboarding(self):
        with pytest.raises(InvariantViolation):
            decide(in_onboarding(), StartSale(**IDENTITY, process_id=CRM_SALES_PROCESS_ID,
                                              initial_stage_id=DISCOVERY),
                   CATALOG, LifecyclePolicy(), NOW)

    def test_allowed_from_prospect(self):
        prospect, _ = run(NEW, SetPhase(**IDENTITY, to_phase="prospect", reason="inbound lead"))
        state, _ = run(prospect, StartSale(**IDENTITY, process_id=CRM_SALES_PROCESS_ID,
                                           initial_stage_id=DISCOVERY))
        assert state.phase == LifecyclePhase.IN_SALES


class TestExistence:
    def test_non_creating_command_on_new_aggregate_is_not_found(self):
        with pytest.raises(NotFound):
            decide(NEW, SetTier(**IDENTITY, tier=2), CATALOG, LifecyclePolicy(), NOW)

    def test_now_is_required(self):
        with pytest.raises(ValueError):
            decide(NEW, SetPhase(**IDENTITY, to_phase="prospect", reason="x"), CATALOG)


class TestAdvanceStage:
    def test_progression(self):
        state, events = run(in_sales(), AdvanceStage(**IDENTITY, to_stage_id=PROPOSAL, reason="demo done"))
        assert events[0].payload["is_progression"] is True
        assert events[0].payload["from_stage_id"] == DISCOVERY
        assert state.current_stage_name == "Proposal"
        assert state.stage_transition_count == 2

    def test_regression_is_allowed_and_flagged(self):
        state, events = run(in_sales(NEGOTIATION), AdvanceStage(**IDENTITY, to_stage_id=DEMO))
        assert events[0].payload["is_progression"] is False
        assert state.current_stage_order == 2

    def test_same_stage_is_noop(self):
        assert decide(in_sales(DEMO), AdvanceStage(**IDENTITY, to_stage_id=DEMO),
                      CATALOG, LifecyclePolicy(), NOW) == []

    def test_stage_of_other_process_is_always_rejected(self):
        with pytest.raises(InvariantViolation):
            decide(in_sales(), AdvanceStage(**IDENTITY, to_stage_id=KICKOFF),
                   CATALOG, LifecyclePolicy(), NOW)
        with pytest.raises(InvariantViolation):
            decide(in_onboarding(), AdvanceStage(**IDENTITY, to_stage_id=DEMO),
                   CATALOG, LifecyclePolicy(), NOW)

    def test_unknown_stage_is_not_found(self):
        with pytest.raises(NotFound):
            decide(in_sales(), AdvanceStage(**IDENTITY, to_stage_id="nope"),
                   CATALOG, LifecyclePolicy(), NOW)

    def test_cannot_leave_terminal_stage(self):
        state, _ = run(in_sales(), AdvanceStage(**IDENTITY, to_stage_id=CLOSED_WON))
        with pytest.raises(InvariantViolation):
            decide(state, AdvanceStage(**IDENTITY, to_stage_id=NEGOTIATION),
                   CATALOG, LifecyclePolicy(), NOW)

    def test_rejected_without_open_process(self):
        prospect, _ = run(NEW, SetPhase(**IDENTITY, to_phase="prospect", reason="lead"))
        with pytest.raises(InvariantViolation):
            decide(prospect, AdvanceStage(**IDENTITY, to_stage_id=DEMO), CATALOG, LifecyclePolicy(), NOW)


class TestSetPhase:
    def test_reason_is_required(self):
        with pytest.raises(ValidationError):
            decide(NEW, SetPhase(**IDENTITY, to_phase="prospect"), CATALOG, LifecyclePolicy(), NOW)

    def test_churn_requires_churn_reason(self):
        with pytest.raises(ValidationError):
            decide(in_sales(), SetPhase(**IDENTITY, to_phase="churned", reason="gone"),
                   CATALOG, LifecyclePolicy(), NOW)

    def test_unknown_phase(self):
        with pytest.raises(ValidationError):
            decide(NEW, SetPhase(**IDENTITY, to_phase="dormant", reason="x"), CATALOG, LifecyclePolicy(), NOW)

    def test_illegal_transition(self):
        active, _ = run(in_onboarding(), SetPhase(**IDENTITY, to_phase="active", reason="live"))
        with pytest.raises(InvariantViolation):
            decide(active, SetPhase(**IDENTITY, to_phase="prospect", reason="x"),
                   CATALOG, LifecyclePolicy(), NOW)

    def test_same_phase_is_noop(self):
        assert decide(in_sales(), SetPhase(**IDENTITY, to_phase="in_sales", reason="again"),
                      CATALOG, LifecyclePolicy(), NOW) == []

    def test_churn_then_reactivate(self):
        state = churned()
        assert state.phase == LifecyclePhase.CHURNED
        assert state.churn_reason == "budget cut"
        state, _ = run(state, SetPhase(**IDENTITY, to_phase="prospect", reason="new budget"))
        assert state.phase == LifecyclePhase.PROSPECT
        assert state.churn_reason is None


class TestAttributes:
    @pytest.mark.parametrize("tier", [0, 6, 2.5])
    def test_tier_range(self, tier):
        with pytest.raises(ValidationError):
            decide(in_sales(), SetTier(**IDENTITY, tier=tier), CATALOG, LifecyclePolicy(), NOW)

    def test_negative_mrr(self):
        with pytest.raises(ValidationError):
            decide(in_sales(), SetMRR(**IDENTITY, mrr=-1), CATALOG, LifecyclePolicy(), NOW)

    def test_fractional_seats(self):
        with pytest.raises(ValidationError):
            decide(in_sales(), SetSeats(**IDENTITY, seats=1.5), CATALOG, LifecyclePolicy(), NOW)

    def test_same_value_is_noop(self):
        state, _ = run(in_sales(), SetMRR(**IDENTITY, mrr=500))
        assert state.mrr == 500
        assert state.mrr_currency == "USD"
        assert decide(state, SetMRR(**IDENTITY, mrr=500.0), CATALOG, LifecyclePolicy(), NOW) == []

    def test_owner_requires_name(self):
        with pytest.raises(ValidationError):
            decide(in_sales(), SetOwner(**IDENTITY, owner_id="u-1", owner_name=" "),
                   CATALOG, LifecyclePolicy(), NOW)

    def test_past_due_date_is_overdue_not_error(self):
        due = NOW - timedelta(days=2)
        state, events = run(in_sales(), SetNextStepDue(**IDENTITY, next_step="Send proposal", due_at=due))
        assert events[0].payload["is_overdue"] is True
        assert state.next_step_due_at == due

    def test_empty_next_step(self):
        with pytest.raises(ValidationError):
            decide(in_sales(), SetNextStepDue(**IDENTITY, next_step="", due_at=NOW),
                   CATALOG, LifecyclePolicy(), NOW)

    def test_health_risk_level(self):
        with pytest.raises(ValidationError):
            decide(in_sales(), UpdateHealth(**IDENTITY, score=50, risk_level="extreme"),
                   CATALOG, LifecyclePolicy(), NOW)
        state, _ = run(in_sales(), UpdateHealth(**IDENTITY, score=42, risk_level="high"))
        assert (state.health_score, state.risk_level) == (42, "high")

    def test_close_ready_follows_policy_threshold(self):
        state, _ = run(in_sales(), SetCloseConfidence(**IDENTITY, confidence=80))
        assert state.close_ready is True
        state, _ = run(in_sales(), SetCloseConfidence(**IDENTITY, confidence=60))
        assert state.close_ready is False
        state, _ = run(in_sales(), SetCloseConfidence(**IDENTITY, confidence=60),
                       policy=LifecyclePolicy(close_ready_confidence=50))
        assert state.close_ready is True

    def test_activity_only_moves_last_event(self):
        before = in_sales()
        state, events = run(before, RecordActivity(**IDENTITY, activity_type="call", summary="Intro"),
                            now=NOW + timedelta(hours=1))
        assert state.last_event_type == EventType.ACTIVITY_RECORDED
        assert state.last_event_at == NOW + timedelta(hours=1)
        assert state.current_stage_id == before.current_stage_id

    def test_unknown_activity_type(self):
        with pytest.raises(ValidationError):
            decide(in_sales(), RecordActivity(**IDENTITY, activity_type="fax"), CATALOG, LifecyclePolicy(), NOW)


class TestTerminalMutationPolicy:
    def test_reject_by_default(self):
        with pytest.raises(InvariantViolation):
            decide(churned(), SetTier(**IDENTITY, tier=2), CATALOG, LifecyclePolicy(), NOW)

    def test_owner_only(self):
        policy = LifecyclePolicy(terminal_mutation_policy=TerminalMutationPolicy.OWNER_ONLY)
        events = decide(churned(), SetOwner(**IDENTITY, owner_id="u-2", owner_name="Ana"),
                        CATALOG, policy, NOW)
        assert events[0].event_type == EventType.OWNER_CHANGED
        with pytest.raises(InvariantViolation):
            decide(churned(), SetSeats(**IDENTITY, seats=3), CATALOG, policy, NOW)

    def test_allow(self):
        policy = LifecyclePolicy(terminal_mutation_policy=TerminalMutationPolicy.ALLOW)
        assert decide(churned(), SetSeats(**IDENTITY, seats=3), CATALOG, policy, NOW)

    def test_unknown_policy_value(self):
        with pytest.raises(ValueError):
            LifecyclePolicy(terminal_mutation_policy="sometimes")


class TestCompleteProcess:
    def test_won_moves_to_onboarding_by_default(self):
        state, events = run(in_sales(NEGOTIATION),
                            CompleteProcess(**IDENTITY, terminal_stage_id=CLOSED_WON, outcome="won"))
        assert [e.event_type for e in events] == [EventType.PROCESS_COMPLETED, EventType.PHASE_CHANGED]
        assert state.phase == LifecyclePhase.ONBOARDING
        assert state.status == "completed"
        assert state.terminal_outcome == "won"
        assert state.current_stage_name == "Closed Won"

    def test_won_moves_to_active_by_policy(self):
        policy = LifecyclePolicy(won_sale_next_phase=LifecyclePhase.ACTIVE)
        state, _ = run(in_sales(), CompleteProcess(**IDENTITY, terminal_stage_id=CLOSED_WON, outcome="won"),
                       policy=policy)
        assert state.phase == LifecyclePhase.ACTIVE

    def test_lost_returns_to_prospect(self):
        state, _ = run(in_sales(), CompleteProcess(**IDENTITY, terminal_stage_id=CLOSED_LOST, outcome="lost"))
        assert state.phase == LifecyclePhase.PROSPECT
        assert not state.has_open_process

    def test_non_terminal_stage(self):
        with pytest.raises(InvariantViolation):
            decide(in_sales(), CompleteProcess(**IDENTITY, terminal_stage_id=PROPOSAL, outcome="won"),
                   CATALOG, LifecyclePolicy(), NOW)

    def test_outcome_must_match_terminal_type(self):
        with pytest.raises(InvariantViolation):
            decide(in_sales(), CompleteProcess(**IDENTITY, terminal_stage_id=CLOSED_LOST, outcome="won"),
                   CATALOG, LifecyclePolicy(), NOW)

    def test_named_process_must_be_current(self):
        with pytest.raises(InvariantViolation):
            decide(in_sales(), CompleteProcess(**IDENTITY, process_id=CRM_ONBOARDING_PROCESS_ID,
                                               terminal_stage_id=GO_LIVE, outcome="completed"),
                   CATALOG, LifecyclePolicy(), NOW)

    def test_unknown_outcome(self):
        with pytest.raises(ValidationError):
            decide(in_sales(), CompleteProcess(**IDENTITY, terminal_stage_id=CLOSED_WON, outcome="great"),
                   CATALOG, LifecyclePolicy(), NOW)

    def test_repeat_after_completion_is_noop(self):
        state, _ = run(in_sales(), CompleteProcess(**IDENTITY, terminal_stage_id=CLOSED_LOST, outcome="lost"))
        assert decide(state, CompleteProcess(**IDENTITY, terminal_stage_id=CLOSED_LOST, outcome="lost"),
                      CATALOG, LifecyclePolicy(), NOW) == []

    def test_churned_outcome_requires_churn_reason(self):
        with pytest.raises(ValidationError):
            decide(in_engagement(), CompleteProcess(**IDENTITY, terminal_stage_id=CHURNED_STAGE, outcome="churned"),
                   CATALOG, LifecyclePolicy(), NOW)

    def test_churned_outcome_records_churn_reason(self):
        state, events = run(in_engagement(), CompleteProcess(
            **IDENTITY, terminal_stage_id=CHURNED_STAGE, outcome="churned",
            notes="call went badly", churn_reason="moved to competitor",
        ))
        assert [e.event_type for e in events] == [EventType.PROCESS_COMPLETED, EventType.PHASE_CHANGED]
        assert events[1].payload["churn_reason"] == "moved to competitor"
        assert state.phase == LifecyclePhase.CHURNED
        assert state.churn_reason == "moved to competitor"

    def test_other_outcomes_carry_no_churn_reason(self):
        _, events = run(in_sales(), CompleteProcess(**IDENTITY, terminal_stage_id=CLOSED_LOST, outcome="lost",
                                                    churn_reason="ignored"))
        assert events[1].payload["churn_reason"] is None


class TestCompoundTransitions:
    def test_complete_sale_start_onboarding(self):
        state, events = run(in_sales(NEGOTIATION), CompleteSaleAndStartOnboarding(**IDENTITY, notes="signed"))
        assert [e.event_type for e in events] == [
            EventType.PROCESS_COMPLETED, EventType.PHASE_CHANGED, EventType.PROCESS_STARTED,
        ]
        assert events[0].payload["terminal_stage_id"] == CLOSED_WON
        assert state.phase == LifecyclePhase.ONBOARDING
        assert state.current_process_id == CRM_ONBOARDING_PROCESS_ID
        assert state.current_stage_id == KICKOFF
        assert state.has_open_process

    def test_missing_onboarding_process_is_not_found(self):
        identity = dict(IDENTITY, product_id=ANALYTICS_PRODUCT_ID)
        start = LifecycleState(company_product_id="cp-1", company_id="co-1", product_id=ANALYTICS_PRODUCT_ID)
        state, _ = run(start, StartSale(**identity, process_id=ANALYTICS_SALES_PROCESS_ID,
                                        initial_stage_id=stage_id(ANALYTICS_SALES_PROCESS_ID, 1)))
        with pytest.raises(NotFound) as exc_info:
            decide(state, CompleteSaleAndStartOnboarding(**identity), CATALOG, LifecyclePolicy(), NOW)
        assert exc_info.value.step == EventType.PROCESS_STARTED

    def test_requires_open_sales_process(self):
        lost, _ = run(in_sales(), CompleteProcess(**IDENTITY, terminal_stage_id=CLOSED_LOST, outcome="lost"))
        with pytest.raises(InvariantViolation) as exc_info:
            decide(lost, CompleteSaleAndStartOnboarding(**IDENTITY), CATALOG, LifecyclePolicy(), NOW)
        assert exc_info.value.step == EventType.PROCESS_COMPLETED

    def test_retry_after_success_is_noop(self):
        assert decide(in_onboarding(), CompleteSaleAndStartOnboarding(**IDENTITY),
                      CATALOG, LifecyclePolicy(), NOW) == []

    def test_complete_onboarding_start_engagement(self):
        state, events = run(in_onboarding(), CompleteOnboardingAndStartEngagement(**IDENTITY))
        assert len(events) == 3
        assert state.phase == LifecyclePhase.ACTIVE
        assert state.current_process_id == CRM_ENGAGEMENT_PROCESS_ID
        assert state.current_stage_id == ADOPTION

    def test_engagement_without_default_completes_onboarding_only(self):
        catalog = ProcessCatalog(
            [p for p in CATALOG._processes.values() if p.id != CRM_ENGAGEMENT_PROCESS_ID],
            CATALOG._stages.values(),
        )
        state, events = run(in_onboarding(), CompleteOnboardingAndStartEngagement(**IDENTITY), catalog=catalog)
        assert [e.event_type for e in events] == [EventType.PROCESS_COMPLETED, EventType.PHASE_CHANGED]
        assert state.phase == LifecyclePhase.ACTIVE
        assert not state.has_open_process

    def test_unknown_explicit_engagement_process_is_not_found(self):
        with pytest.raises(NotFound):
            decide(in_onboarding(), CompleteOnboardingAndStartEngagement(**IDENTITY, engagement_process_id="nope"),
                   CATALOG, LifecyclePolicy(), NOW)


class TestStartProcess:
    def test_type_must_match_phase(self):
        with pytest.raises(InvariantViolation):
            decide(in_sales(), StartProcess(**IDENTITY, process_id=CRM_ENGAGEMENT_PROCESS_ID),
                   CATALOG, LifecyclePolicy(), NOW)

    def test_defaults_to_first_stage(self):
        active, _ = run(in_onboarding(), SetPhase(**IDENTITY, to_phase="active", reason="skip onboarding"))
        state, _ = run(active, CompleteProcess(**IDENTITY, terminal_stage_id=GO_LIVE, outcome="completed"))
        state, events = run(state, StartProcess(**IDENTITY, process_id=CRM_ENGAGEMENT_PROCESS_ID))
        assert events[0].payload["initial_stage"]["id"] == ADOPTION
        assert state.current_process_type == "engagement"


class TestSLAMonitoring:
    """Discovery has a 14 day SLA with a warning from day 10."""

    def warn(self, state, days, stage=DISCOVERY):
        return run(state, RecordSLAWarning(**IDENTITY, stage_id=stage), now=NOW + timedelta(days=days))

    def breach(self, state, days, stage=DISCOVERY):
        return run(state, RecordSLABreach(**IDENTITY, stage_id=stage), now=NOW + timedelta(days=days))

    def test_warning_after_warning_days(self):
        state, events = self.warn(in_sales(), 10)
        assert [e.event_type for e in events] == [EventType.SLA_WARNING]
        assert events[0].payload["actual_days"] == 10
        assert events[0].payload["warning_days"] == 10
        assert state.is_sla_warning and not state.is_sla_breached

    def test_warning_before_threshold_is_rejected(self):
        with pytest.raises(InvariantViolation):
            self.warn(in_sales(), 9)

    def test_warning_past_deadline_is_rejected(self):
        with pytest.raises(InvariantViolation):
            self.warn(in_sales(), 15)

    def test_warning_recorded_once_per_stage_entry(self):
        state, _ = self.warn(in_sales(), 10)
        _, events = self.warn(state, 12)
        assert events == []

    def test_breach_after_deadline(self):
        state, events = self.breach(in_sales(), 16)
        assert [e.event_type for e in events] == [EventType.SLA_BREACHED]
        assert events[0].payload["days_over"] == 2
        assert events[0].payload["actual_days"] == 16
        assert state.is_sla_breached and state.is_sla_warning

    def test_breach_on_the_deadline_is_rejected(self):
        with pytest.raises(InvariantViolation):
            self.breach(in_sales(), 14)

    def test_breach_recorded_once_and_supersedes_warning(self):
        state, _ = self.breach(in_sales(), 16)
        assert self.breach(state, 20)[1] == []
        assert self.warn(state, 20)[1] == []

    def test_stale_stage_is_noop(self):
        state, _ = run(in_sales(), AdvanceStage(**IDENTITY, to_stage_id=DEMO))
        assert self.breach(state, 30, stage=DISCOVERY)[1] == []

    def test_new_stage_entry_resets_flags(self):
        state, _ = self.breach(in_sales(), 16)
        state, _ = run(state, AdvanceStage(**IDENTITY, to_stage_id=DEMO), now=NOW + timedelta(days=16))
        assert not state.is_sla_warning and not state.is_sla_breached
        assert state.stage_sla_deadline == NOW + timedelta(days=26)
        _, events = self.breach(state, 27, stage=DEMO)
        assert [e.event_type for e in events] == [EventType.SLA_BREACHED]

    def test_churned_is_rejected(self):
        with pytest.raises(InvariantViolation):
            self.breach(churned(), 30)

    def test_completed_process_is_rejected(self):
        lost, _ = run(in_sales(), CompleteProcess(**IDENTITY, terminal_stage_id=CLOSED_LOST, outcome="lost"))
        with pytest.raises(InvariantViolation):
            self.warn(lost, 10, stage=CLOSED_LOST)
