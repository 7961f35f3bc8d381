"""
Lifecycle command routes.

The single write endpoint: every state change of a company product goes
through POST /lifecycle/commands. A successful command is followed by a
projector catch-up pass so the caller reads its own write.
"""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session, sessionmaker

from database import get_db, get_session_factory
from domain.projection import state_to_mapping
from schemas import CommandResponse, EventResponse, LifecycleCommandRequest, ProjectionSummary
from services.command_service import CommandService
from services.event_store import EventStore, load_aggregate
from services.projector import Projector

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/lifecycle", tags=["Lifecycle"])


def _catch_up(session_factory: sessionmaker) -> ProjectionSummary:
    # Projection problems never fail the command; the next pass resumes
    try:
        run = Projector(session_factory).catch_up()
    except Exception as e:
        logger.error(f"Post-command projection failed: {e}", exc_info=True)
        return ProjectionSummary(events_processed=0, duration=0.0, error=str(e))
    return ProjectionSummary(
        events_processed=run.events_processed,
        duration=round(run.duration, 4),
        error="; ".join(run.errors) or None,
    )


@router.post("/commands", response_model=CommandResponse, response_model_exclude_none=True)
def execute_command(
    payload: LifecycleCommandRequest,
    session_factory: sessionmaker = Depends(get_session_factory),
):
    """Execute one lifecycle command."""
    request = payload.root
    result = CommandService(session_factory).execute(request.to_command())

    if not result.success:
        return JSONResponse(
            status_code=result.status_code,
            content={
                "error": result.error,
                "errorType": result.error_type,
                "results": [step.as_dict() for step in result.steps],
            },
        )

    return CommandResponse(
        success=True,
        result=[step.as_dict() for step in result.steps] or [result.as_dict()],
        projection=_catch_up(session_factory),
    )


@router.get("/company-products/{company_product_id}/events", response_model=List[EventResponse])
def list_events(
    company_product_id: str,
    from_sequence: int = Query(1, alias="fromSequence", ge=1),
    up_to_sequence: Optional[int] = Query(None, alias="upToSequence", ge=1),
    db: Session = Depends(get_db),
):
    """Event history of one company product, in sequence order."""
    events = EventStore(db).read_events(company_product_id, from_sequence, up_to_sequence)
    return [
        EventResponse(
            id=e.id,
            sequence_no=e.sequence_no,
            event_type=e.event_type,
            payload=e.payload,
            actor_type=e.actor.type,
            actor_id=e.actor.id,
            occurred_at=e.occurred_at,
            recorded_at=e.recorded_at,
        )
        for e in events
    ]


@router.get("/company-products/{company_product_id}/state")
def get_state_at(
    company_product_id: str,
    up_to_sequence: Optional[int] = Query(None, alias="upToSequence", ge=1),
    as_of: Optional[datetime] = Query(None, alias="asOf"),
    db: Session = Depends(get_db),
):
    """State replayed from the event log, optionally as of a sequence number or instant."""
    store = EventStore(db)
    if store.get_registration(company_product_id) is None:
        raise HTTPException(status_code=404, detail="Company product not found")
    loaded = load_aggregate(
        store, company_product_id, up_to_sequence=up_to_sequence, as_of=as_of,
    )
    return state_to_mapping(loaded.state)
