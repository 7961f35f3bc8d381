"""
Projector engine: folds committed events into the read model tables.

Each event is folded in its own short transaction that writes the read-model
row, the stage-history facts and the advanced watermark together. The
watermark (``last_applied_sequence_no``) is the only idempotency mechanism:
an event at or below it is skipped, so overlapping runs and re-delivered
batches leave the read model unchanged.

Passes:
  catch_up()        fold the suffix after each aggregate's watermark
  project_events()  fold a delivered batch (at-least-once delivery)
  rebuild(ids)      drop rows of the given aggregates and fold from scratch
  rebuild_all()     drop every projected row and refold the whole log
"""

import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from config import settings
from domain.enums import LifecyclePhase, ProcessRunStatus
from domain.events import StoredEvent, ensure_utc
from domain.projection import (
    STATE_FIELDS,
    LifecycleState,
    apply_event,
    replay,
    stage_fact_changes,
    state_from_mapping,
    state_to_mapping,
)
from models import (
    CompanyProduct,
    CompanyProductReadModel,
    CompanyProductStageFact,
    PipelineStageCount,
)
from services.event_store import EventStore

logger = logging.getLogger(__name__)


@dataclass
class ProjectionResult:
    aggregates_processed: int = 0
    events_processed: int = 0
    duration: float = 0.0
    errors: list[str] = field(default_factory=list)
    stopped_early: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "aggregatesProcessed": self.aggregates_processed,
            "eventsProcessed": self.events_processed,
            "duration": round(self.duration, 4),
            "errors": self.errors,
            "stoppedEarly": self.stopped_early,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def row_to_state(row: CompanyProductReadModel) -> LifecycleState:
    return state_from_mapping({name: getattr(row, name) for name in STATE_FIELDS})


class Projector:
    """Builds and maintains the read model from the event store."""

    def __init__(
        self,
        session_factory: sessionmaker,
        batch_size: Optional[int] = None,
        time_budget_seconds: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.session_factory = session_factory
        self.batch_size = batch_size or settings.PROJECTION_BATCH_SIZE
        if time_budget_seconds is None:
            time_budget_seconds = settings.PROJECTION_TIME_BUDGET_SECONDS
        self.time_budget_seconds = time_budget_seconds
        self.clock = clock or _utcnow

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------
    def catch_up(self, aggregate_ids: Optional[Iterable[str]] = None) -> ProjectionResult:
        """Fold every event past each aggregate's watermark."""
        started = time.monotonic()
        result = ProjectionResult()

        for aggregate_id in self._pending_aggregates(aggregate_ids):
            if self._out_of_time(started):
                result.stopped_early = True
                logger.info("Projection time budget spent; stopping early")
                break
            self._project_aggregate(aggregate_id, result, started)

        return self._finish(result, started)

    def project_events(self, events: Iterable[StoredEvent]) -> ProjectionResult:
        """Fold a delivered batch.

        Duplicates and already-folded events are skipped by the watermark. A
        batch that skips ahead of the watermark is completed from the store
        first, so delivery order never matters.
        """
        started = time.monotonic()
        result = ProjectionResult()

        targets: dict[str, int] = {}
        for event in events:
            targets[event.aggregate_id] = max(targets.get(event.aggregate_id, 0), event.sequence_no)

        for aggregate_id in sorted(targets):
            if self._out_of_time(started):
                result.stopped_early = True
                break
            self._project_aggregate(aggregate_id, result, started, up_to_sequence=targets[aggregate_id])

        return self._finish(result, started)

    def rebuild(self, aggregate_ids: Iterable[str]) -> ProjectionResult:
        """Drop the projected rows of some aggregates and fold them again."""
        aggregate_ids = list(aggregate_ids)
        with self.session_factory() as session, session.begin():
            session.query(CompanyProductStageFact).filter(
                CompanyProductStageFact.company_product_id.in_(aggregate_ids)
            ).delete(synchronize_session=False)
            session.query(CompanyProductReadModel).filter(
                CompanyProductReadModel.company_product_id.in_(aggregate_ids)
            ).delete(synchronize_session=False)
        logger.info(f"Cleared read model for {len(aggregate_ids)} company product(s); rebuilding")
        return self.catch_up(aggregate_ids)

    def rebuild_all(self) -> ProjectionResult:
        """Drop every projected row and refold the whole log in global order."""
        started = time.monotonic()
        result = ProjectionResult()

        with self.session_factory() as session, session.begin():
            session.query(CompanyProductStageFact).delete(synchronize_session=False)
            session.query(CompanyProductReadModel).delete(synchronize_session=False)
            session.query(PipelineStageCount).delete(synchronize_session=False)
        logger.info("Cleared all read models; full rebuild starting")

        touched: set[str] = set()
        cursor = 0
        while True:
            with self.session_factory() as session:
                batch = EventStore(session).read_all_since(cursor, self.batch_size)
            if not batch:
                break
            for event in batch:
                if self._out_of_time(started):
                    result.stopped_early = True
                    break
                try:
                    if self._apply_one(event):
                        result.events_processed += 1
                        touched.add(event.aggregate_id)
                except Exception as exc:
                    self._record_error(result, event.aggregate_id, exc)
                cursor = event.id
            if result.stopped_early:
                break

        result.aggregates_processed = len(touched)
        return self._finish(result, started)

    # ------------------------------------------------------------------
    # Per-aggregate folding
    # ------------------------------------------------------------------
    def _pending_aggregates(self, aggregate_ids: Optional[Iterable[str]]) -> list[str]:
        ids = list(aggregate_ids) if aggregate_ids is not None else None
        with self.session_factory() as session:
            heads = EventStore(session).head_sequences(ids)
            query = session.query(
                CompanyProductReadModel.company_product_id,
                CompanyProductReadModel.last_applied_sequence_no,
            )
            if ids is not None:
                query = query.filter(CompanyProductReadModel.company_product_id.in_(ids))
            watermarks = dict(query.all())
        return sorted(agg_id for agg_id, head in heads.items() if head > (watermarks.get(agg_id) or 0))

    def _watermark(self, aggregate_id: str) -> int:
        with self.session_factory() as session:
            value = (
                session.query(CompanyProductReadModel.last_applied_sequence_no)
                .filter(CompanyProductReadModel.company_product_id == aggregate_id)
                .scalar()
            )
        return value or 0

    def _project_aggregate(
        self,
        aggregate_id: str,
        result: ProjectionResult,
        started: float,
        up_to_sequence: Optional[int] = None,
    ) -> None:
        applied = 0
        try:
            next_sequence = self._watermark(aggregate_id) + 1
            while up_to_sequence is None or next_sequence <= up_to_sequence:
                batch_end = next_sequence + self.batch_size - 1
                if up_to_sequence is not None:
                    batch_end = min(batch_end, up_to_sequence)
                with self.session_factory() as session:
                    events = EventStore(session).read_events(aggregate_id, next_sequence, batch_end)
                if not events:
                    break
                for event in events:
                    if self._out_of_time(started):
                        result.stopped_early = True
                        break
                    if self._apply_one(event):
                        applied += 1
                    next_sequence = event.sequence_no + 1
                if result.stopped_early:
                    break
        except Exception as exc:
            # The watermark marks where the next run resumes
            self._record_error(result, aggregate_id, exc)
        finally:
            result.events_processed += applied
            if applied:
                result.aggregates_processed += 1

    def _apply_one(self, event: StoredEvent) -> bool:
        """Fold one event in its own transaction. Returns False when skipped."""
        try:
            with self.session_factory() as session, session.begin():
                row = (
                    session.query(CompanyProductReadModel)
                    .filter(CompanyProductReadModel.company_product_id == event.aggregate_id)
                    .with_for_update()
                    .one_or_none()
                )
                if row is None:
                    prior = self._initial_state(session, event.aggregate_id)
                else:
                    prior = row_to_state(row)

                if event.sequence_no <= prior.last_applied_sequence_no:
                    return False
                if event.sequence_no != prior.last_applied_sequence_no + 1:
                    raise RuntimeError(
                        f"Gap in projection of {event.aggregate_id}: watermark "
                        f"{prior.last_applied_sequence_no}, next event {event.sequence_no}"
                    )

                state = apply_event(prior, event)
                if row is None:
                    row = CompanyProductReadModel(company_product_id=event.aggregate_id)
                    session.add(row)
                for name, value in state_to_mapping(state).items():
                    setattr(row, name, value)
                row.projected_at = self.clock()

                self._write_stage_facts(session, prior, event)
        except IntegrityError:
            # Another projector inserted the same row or fact first
            logger.info(
                f"{event.aggregate_id}#{event.sequence_no} already projected by a concurrent run"
            )
            return False
        return True

    @staticmethod
    def _initial_state(session: Session, aggregate_id: str) -> LifecycleState:
        registration = session.get(CompanyProduct, aggregate_id)
        if registration is None:
            return LifecycleState(company_product_id=aggregate_id)
        return LifecycleState(
            company_product_id=aggregate_id,
            company_id=registration.company_id,
            product_id=registration.product_id,
        )

    @staticmethod
    def _write_stage_facts(session: Session, prior: LifecycleState, event: StoredEvent) -> None:
        change = stage_fact_changes(prior, event)
        if change.close:
            open_fact = (
                session.query(CompanyProductStageFact)
                .filter(
                    CompanyProductStageFact.company_product_id == event.aggregate_id,
                    CompanyProductStageFact.exited_at.is_(None),
                )
                .order_by(CompanyProductStageFact.entry_sequence_no.desc())
                .first()
            )
            if open_fact is not None:
                for name, value in change.close.items():
                    setattr(open_fact, name, value)
        if change.open:
            session.add(CompanyProductStageFact(company_product_id=event.aggregate_id, **change.open))
            session.flush()

    # ------------------------------------------------------------------
    # Cross-aggregate summary
    # ------------------------------------------------------------------
    def refresh_stage_counts(self) -> int:
        """Recompute the pipeline stage counts from the read model rows.

        Only open processes count. Churned company products are left out even
        when their process is still open.
        """
        now = self.clock()
        buckets: dict[tuple, dict[str, Any]] = defaultdict(lambda: {
            "total_count": 0, "sla_warning_count": 0, "sla_breached_count": 0, "total_mrr": 0.0, "days": [],
        })

        with self.session_factory() as session, session.begin():
            rows = (
                session.query(CompanyProductReadModel)
                .filter(
                    CompanyProductReadModel.status == ProcessRunStatus.OPEN,
                    CompanyProductReadModel.current_stage_id.isnot(None),
                    or_(
                        CompanyProductReadModel.phase.is_(None),
                        CompanyProductReadModel.phase != LifecyclePhase.CHURNED,
                    ),
                )
                .all()
            )
            labels = {}
            for row in rows:
                key = (row.product_id, row.current_process_id, row.current_stage_id)
                labels[key] = (row.current_process_type, row.current_stage_name, row.current_stage_order)
                bucket = buckets[key]
                bucket["total_count"] += 1
                bucket["total_mrr"] += row.mrr or 0.0
                deadline = ensure_utc(row.stage_sla_deadline)
                warning_at = ensure_utc(row.stage_sla_warning_at)
                if row.is_sla_breached or (deadline is not None and deadline < now):
                    bucket["sla_breached_count"] += 1
                elif row.is_sla_warning or (warning_at is not None and warning_at <= now):
                    bucket["sla_warning_count"] += 1
                entered = ensure_utc(row.stage_entered_at)
                if entered is not None:
                    bucket["days"].append((now - entered).total_seconds() / 86400)

            session.query(PipelineStageCount).delete(synchronize_session=False)
            for key, bucket in buckets.items():
                product_id, process_id, stage_id = key
                process_type, stage_name, stage_order = labels[key]
                days = bucket["days"]
                session.add(PipelineStageCount(
                    product_id=product_id,
                    process_id=process_id,
                    process_type=process_type,
                    stage_id=stage_id,
                    stage_name=stage_name,
                    stage_order=stage_order,
                    total_count=bucket["total_count"],
                    sla_warning_count=bucket["sla_warning_count"],
                    sla_breached_count=bucket["sla_breached_count"],
                    total_mrr=bucket["total_mrr"],
                    avg_days_in_stage=round(sum(days) / len(days), 2) if days else None,
                    projected_at=now,
                ))
        return len(buckets)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------
    def verify(self, aggregate_ids: Optional[Iterable[str]] = None) -> list[dict[str, Any]]:
        """Compare stored rows with a fresh fold of the log.

        Returns one entry per aggregate whose row is missing or differs.
        """
        ids = list(aggregate_ids) if aggregate_ids is not None else None
        mismatches = []
        with self.session_factory() as session:
            store = EventStore(session)
            heads = store.head_sequences(ids)
            for aggregate_id in sorted(heads):
                expected = replay(self._initial_state(session, aggregate_id), store.read_events(aggregate_id))
                row = session.get(CompanyProductReadModel, aggregate_id)
                if row is None:
                    mismatches.append({"company_product_id": aggregate_id, "missing": True, "differences": {}})
                    continue
                stored = state_to_mapping(row_to_state(row))
                differences = {
                    name: {"stored": stored[name], "expected": value}
                    for name, value in state_to_mapping(expected).items()
                    if stored[name] != value
                }
                if differences:
                    mismatches.append({
                        "company_product_id": aggregate_id,
                        "missing": False,
                        "differences": differences,
                    })
        if mismatches:
            logger.warning(f"Read model verification found {len(mismatches)} mismatched row(s)")
        return mismatches

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _out_of_time(self, started: float) -> bool:
        return bool(self.time_budget_seconds) and time.monotonic() - started >= self.time_budget_seconds

    @staticmethod
    def _record_error(result: ProjectionResult, aggregate_id: str, exc: Exception) -> None:
        logger.error(f"Projection of {aggregate_id} failed: {exc}", exc_info=True)
        result.errors.append(f"{aggregate_id}: {exc}")

    def _finish(self, result: ProjectionResult, started: float) -> ProjectionResult:
        if result.events_processed:
            try:
                self.refresh_stage_counts()
            except Exception as exc:
                logger.error(f"Stage count refresh failed: {exc}", exc_info=True)
                result.errors.append(f"stage counts: {exc}")
        result.duration = time.monotonic() - started
        logger.info(
            f"Projection pass: {result.aggregates_processed} aggregate(s), "
            f"{result.events_processed} event(s) in {result.duration:.3f}s"
            + (" (stopped early)" if result.stopped_early else "")
        )
        return result
