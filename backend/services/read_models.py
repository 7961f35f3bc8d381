"""
Read model store: the query side of the lifecycle engine.

Everything outside the command layer reads company product state from here.
Rows are written only by the projector.
"""

from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from domain.enums import LifecyclePhase
from domain.errors import ProjectionLag
from domain.projection import LifecycleState
from models import CompanyProductReadModel, CompanyProductStageFact, PipelineStageCount
from services.event_store import EventStore
from services.projector import row_to_state


class ReadModelStore:

    def __init__(self, session: Session):
        self.session = session

    def get(self, company_product_id: str) -> Optional[CompanyProductReadModel]:
        return self.session.get(CompanyProductReadModel, company_product_id)

    def get_state(self, company_product_id: str) -> Optional[LifecycleState]:
        row = self.get(company_product_id)
        return row_to_state(row) if row is not None else None

    def find(
        self,
        phase: Optional[str] = None,
        process_type: Optional[str] = None,
        stage_id: Optional[str] = None,
        product_id: Optional[str] = None,
        company_id: Optional[str] = None,
        owner_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[CompanyProductReadModel]:
        """List rows with optional filters, most recently changed first.

        Pipeline filters (process type or stage) leave churned rows out.
        """
        query = self.session.query(CompanyProductReadModel)
        if phase:
            query = query.filter(CompanyProductReadModel.phase == phase)
        if process_type:
            query = query.filter(CompanyProductReadModel.current_process_type == process_type)
        if stage_id:
            query = query.filter(CompanyProductReadModel.current_stage_id == stage_id)
        if product_id:
            query = query.filter(CompanyProductReadModel.product_id == product_id)
        if company_id:
            query = query.filter(CompanyProductReadModel.company_id == company_id)
        if owner_id:
            query = query.filter(CompanyProductReadModel.owner_id == owner_id)
        if (process_type or stage_id) and phase != LifecyclePhase.CHURNED:
            query = query.filter(or_(
                CompanyProductReadModel.phase.is_(None),
                CompanyProductReadModel.phase != LifecyclePhase.CHURNED,
            ))
        return (
            query.order_by(
                CompanyProductReadModel.last_event_at.desc(),
                CompanyProductReadModel.company_product_id,
            )
            .offset(offset)
            .limit(limit)
            .all()
        )

    def ready_to_close(
        self, threshold: int = 75, product_id: Optional[str] = None,
    ) -> list[CompanyProductReadModel]:
        """Deals in sales flagged close-ready or at/above the confidence threshold."""
        query = self.session.query(CompanyProductReadModel).filter(
            CompanyProductReadModel.phase == LifecyclePhase.IN_SALES,
            or_(
                CompanyProductReadModel.close_ready.is_(True),
                CompanyProductReadModel.close_confidence >= threshold,
            ),
        )
        if product_id:
            query = query.filter(CompanyProductReadModel.product_id == product_id)
        return query.order_by(CompanyProductReadModel.close_confidence.desc()).all()

    def overdue_next_steps(
        self, now: datetime, product_id: Optional[str] = None,
    ) -> list[CompanyProductReadModel]:
        query = self.session.query(CompanyProductReadModel).filter(
            CompanyProductReadModel.next_step_due_at.isnot(None),
            CompanyProductReadModel.next_step_due_at < now,
            or_(
                CompanyProductReadModel.phase.is_(None),
                CompanyProductReadModel.phase != LifecyclePhase.CHURNED,
            ),
        )
        if product_id:
            query = query.filter(CompanyProductReadModel.product_id == product_id)
        return query.order_by(CompanyProductReadModel.next_step_due_at).all()

    def stage_counts(
        self, product_id: Optional[str] = None, process_type: Optional[str] = None,
    ) -> list[PipelineStageCount]:
        query = self.session.query(PipelineStageCount)
        if product_id:
            query = query.filter(PipelineStageCount.product_id == product_id)
        if process_type:
            query = query.filter(PipelineStageCount.process_type == process_type)
        return query.order_by(
            PipelineStageCount.product_id,
            PipelineStageCount.process_type,
            PipelineStageCount.stage_order,
        ).all()

    def stage_history(self, company_product_id: str) -> list[CompanyProductStageFact]:
        return (
            self.session.query(CompanyProductStageFact)
            .filter(CompanyProductStageFact.company_product_id == company_product_id)
            .order_by(CompanyProductStageFact.entry_sequence_no)
            .all()
        )

    def projection_lag(self, aggregate_ids: Optional[Iterable[str]] = None) -> list[ProjectionLag]:
        """Aggregates whose read model is behind the event log."""
        ids = list(aggregate_ids) if aggregate_ids is not None else None
        heads = EventStore(self.session).head_sequences(ids)
        query = self.session.query(
            CompanyProductReadModel.company_product_id,
            CompanyProductReadModel.last_applied_sequence_no,
        )
        if ids is not None:
            query = query.filter(CompanyProductReadModel.company_product_id.in_(ids))
        watermarks = dict(query.all())

        lagging = []
        for aggregate_id in sorted(heads):
            watermark = watermarks.get(aggregate_id) or 0
            if heads[aggregate_id] > watermark:
                lagging.append(ProjectionLag(
                    company_product_id=aggregate_id,
                    last_applied_sequence_no=watermark,
                    head_sequence_no=heads[aggregate_id],
                ))
        return lagging
