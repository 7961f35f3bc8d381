"""
Event store for the CompanyProduct aggregate.

Append-only. Events are partitioned by aggregate and numbered 1, 2, 3, ...
within each partition; the unique (aggregate_id, sequence_no) constraint is
the optimistic-concurrency guard. The store never commits on its own: the
caller opens the transaction, so a multi-event batch lands all or nothing.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from domain.errors import ConcurrencyConflict
from domain.events import Actor, NewEvent, StoredEvent, ensure_utc
from domain.enums import ActorType
from domain.projection import LifecycleState, replay
from models import CompanyProduct, LifecycleEvent

logger = logging.getLogger(__name__)


def to_stored_event(row: LifecycleEvent) -> StoredEvent:
    return StoredEvent(
        id=row.id,
        aggregate_id=row.aggregate_id,
        sequence_no=row.sequence_no,
        event_type=row.event_type,
        payload=dict(row.payload or {}),
        actor=Actor(type=ActorType(row.actor_type), id=row.actor_id),
        occurred_at=ensure_utc(row.occurred_at),
        recorded_at=ensure_utc(row.recorded_at),
    )


class EventStore:
    """Reads and appends events through one SQLAlchemy session."""

    def __init__(self, session: Session):
        self.session = session

    # ------------------------------------------------------------------
    # Aggregate registry
    # ------------------------------------------------------------------
    def get_registration(self, aggregate_id: str) -> Optional[CompanyProduct]:
        return self.session.get(CompanyProduct, aggregate_id)

    def find_by_pair(self, company_id: str, product_id: str) -> Optional[CompanyProduct]:
        return (
            self.session.query(CompanyProduct)
            .filter(
                CompanyProduct.company_id == company_id,
                CompanyProduct.product_id == product_id,
            )
            .first()
        )

    def register_aggregate(self, aggregate_id: str, company_id: str, product_id: str) -> CompanyProduct:
        """Insert the registry row for a brand new aggregate."""
        registration = CompanyProduct(id=aggregate_id, company_id=company_id, product_id=product_id)
        self.session.add(registration)
        try:
            self.session.flush()
        except IntegrityError as exc:
            raise ConcurrencyConflict(
                f"Company product {aggregate_id} was registered concurrently"
            ) from exc
        logger.info(f"Registered company product {aggregate_id} ({company_id} / {product_id})")
        return registration

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def last_sequence(self, aggregate_id: str) -> int:
        """Highest sequence number in the partition (0 when empty)."""
        value = (
            self.session.query(func.max(LifecycleEvent.sequence_no))
            .filter(LifecycleEvent.aggregate_id == aggregate_id)
            .scalar()
        )
        return value or 0

    def head_sequences(self, aggregate_ids: Optional[Iterable[str]] = None) -> dict[str, int]:
        """Highest sequence number per aggregate."""
        query = self.session.query(
            LifecycleEvent.aggregate_id, func.max(LifecycleEvent.sequence_no)
        )
        if aggregate_ids is not None:
            query = query.filter(LifecycleEvent.aggregate_id.in_(list(aggregate_ids)))
        return {agg_id: head for agg_id, head in query.group_by(LifecycleEvent.aggregate_id).all()}

    def read_events(
        self,
        aggregate_id: str,
        from_sequence: int = 1,
        up_to_sequence: Optional[int] = None,
    ) -> list[StoredEvent]:
        """Events of one aggregate in sequence order, from ``from_sequence`` inclusive."""
        query = self.session.query(LifecycleEvent).filter(
            LifecycleEvent.aggregate_id == aggregate_id,
            LifecycleEvent.sequence_no >= from_sequence,
        )
        if up_to_sequence is not None:
            query = query.filter(LifecycleEvent.sequence_no <= up_to_sequence)
        rows = query.order_by(LifecycleEvent.sequence_no).all()
        return [to_stored_event(row) for row in rows]

    def read_all_since(self, global_cursor: int, limit: int = 500) -> list[StoredEvent]:
        """Events across all aggregates with id > ``global_cursor``, in id order."""
        rows = (
            self.session.query(LifecycleEvent)
            .filter(LifecycleEvent.id > global_cursor)
            .order_by(LifecycleEvent.id)
            .limit(limit)
            .all()
        )
        return [to_stored_event(row) for row in rows]

    # ------------------------------------------------------------------
    # Append
    # ------------------------------------------------------------------
    def _build_row(self, aggregate_id: str, sequence_no: int, event: NewEvent) -> LifecycleEvent:
        return LifecycleEvent(
            aggregate_id=aggregate_id,
            sequence_no=sequence_no,
            event_type=str(event.event_type),
            payload=event.payload,
            actor_type=str(event.actor.type),
            actor_id=event.actor.id,
            occurred_at=event.occurred_at,
        )

    def append(
        self,
        aggregate_id: str,
        events: list[NewEvent],
        expected_last_sequence: int,
    ) -> list[StoredEvent]:
        """Append a batch after ``expected_last_sequence``.

        Raises ConcurrencyConflict when another writer got there first. The
        caller's transaction must be rolled back in that case, which discards
        any rows of the batch already flushed.
        """
        if not events:
            return []

        current = self.last_sequence(aggregate_id)
        if current != expected_last_sequence:
            raise ConcurrencyConflict(
                f"Company product {aggregate_id} is at sequence {current}, "
                f"expected {expected_last_sequence}"
            )

        stored = []
        try:
            for offset, event in enumerate(events, start=1):
                row = self._build_row(aggregate_id, expected_last_sequence + offset, event)
                self.session.add(row)
                self.session.flush()
                stored.append(to_stored_event(row))
        except IntegrityError as exc:
            raise ConcurrencyConflict(
                f"Concurrent append to company product {aggregate_id} "
                f"after sequence {expected_last_sequence}"
            ) from exc

        logger.debug(
            f"Appended {len(stored)} event(s) to {aggregate_id}: "
            f"seq {stored[0].sequence_no}..{stored[-1].sequence_no}"
        )
        return stored


# ---------------------------------------------------------------------------
# Aggregate loading
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LoadedAggregate:
    state: LifecycleState
    version: int  # last sequence folded, the expected_last_sequence for append
    registration: Optional[CompanyProduct] = None


def load_aggregate(
    store: EventStore,
    aggregate_id: str,
    company_id: Optional[str] = None,
    product_id: Optional[str] = None,
    up_to_sequence: Optional[int] = None,
    as_of: Optional[datetime] = None,
) -> LoadedAggregate:
    """Rebuild aggregate state by replaying its events.

    ``up_to_sequence`` gives the state as of that point in the log. ``as_of``
    stops the replay at the first event that occurred after that instant;
    sequence order stays authoritative, so a later event carrying an earlier
    timestamp is never pulled in ahead of its predecessors.
    """
    registration = store.get_registration(aggregate_id)
    if registration is not None:
        company_id, product_id = registration.company_id, registration.product_id

    initial = LifecycleState(
        company_product_id=aggregate_id,
        company_id=company_id,
        product_id=product_id,
    )
    events = store.read_events(aggregate_id, up_to_sequence=up_to_sequence)
    if as_of is not None:
        cutoff = ensure_utc(as_of)
        prefix = []
        for event in events:
            if ensure_utc(event.occurred_at) > cutoff:
                break
            prefix.append(event)
        events = prefix
    state = replay(initial, events)
    return LoadedAggregate(
        state=state,
        version=state.last_applied_sequence_no,
        registration=registration,
    )
