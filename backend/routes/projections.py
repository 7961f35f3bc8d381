"""
Projection admin routes: run catch-up, rebuild, verification and the SLA
scan on demand.
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import sessionmaker

from database import get_session_factory
from schemas import ProjectionRunResponse, RebuildRequest
from services.projector import Projector
from services.sla_scanner import SLAScanner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/projections", tags=["Projections"])


def _as_response(run) -> ProjectionRunResponse:
    return ProjectionRunResponse(
        aggregates_processed=run.aggregates_processed,
        events_processed=run.events_processed,
        duration=round(run.duration, 4),
        errors=run.errors,
        stopped_early=run.stopped_early,
    )


@router.post("/catch-up", response_model=ProjectionRunResponse)
def catch_up(session_factory: sessionmaker = Depends(get_session_factory)):
    return _as_response(Projector(session_factory).catch_up())


@router.post("/rebuild", response_model=ProjectionRunResponse)
def rebuild(data: RebuildRequest, session_factory: sessionmaker = Depends(get_session_factory)):
    """Rebuild the given company products, or everything when none are named."""
    projector = Projector(session_factory)
    if data.company_product_ids:
        logger.info(f"Rebuild requested for {len(data.company_product_ids)} company product(s)")
        return _as_response(projector.rebuild(data.company_product_ids))
    logger.warning("Full read model rebuild requested")
    return _as_response(projector.rebuild_all())


@router.post("/verify")
def verify(repair: bool = False, session_factory: sessionmaker = Depends(get_session_factory)):
    """Compare read model rows with a fresh fold of the log; optionally repair."""
    projector = Projector(session_factory)
    mismatches = projector.verify()
    repaired = None
    if repair and mismatches:
        repaired = _as_response(projector.rebuild([m["company_product_id"] for m in mismatches]))
    return {
        "mismatched": len(mismatches),
        "mismatches": [
            {
                "company_product_id": m["company_product_id"],
                "missing": m["missing"],
                "fields": sorted(m["differences"]),
            }
            for m in mismatches
        ],
        "repaired": repaired,
    }


@router.post("/sla-scan")
def sla_scan(session_factory: sessionmaker = Depends(get_session_factory)):
    """Record SLA warnings and breaches, then project the new events."""
    projector = Projector(session_factory)
    # Candidates come from the read model, so bring it up to date first
    projector.catch_up()
    results = SLAScanner(session_factory).run_full_scan()
    projection = _as_response(projector.catch_up())
    return {
        "warnings": results["warnings"].as_dict(),
        "breaches": results["breaches"].as_dict(),
        "projection": projection,
    }
