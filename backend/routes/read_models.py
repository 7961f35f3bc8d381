"""
Read model routes: current state of company products and pipeline summaries.
All reads come from projected tables; nothing here touches the event log
except the projection lag report.
"""

from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from config import settings
from database import get_db
from schemas import (
    CompanyProductResponse,
    ProjectionLagResponse,
    StageCountResponse,
    StageFactResponse,
)
from services.read_models import ReadModelStore

router = APIRouter(prefix="/company-products", tags=["Company Products"])


@router.get("/", response_model=List[CompanyProductResponse])
def list_company_products(
    phase: Optional[str] = None,
    process_type: Optional[str] = None,
    stage_id: Optional[str] = None,
    product_id: Optional[str] = None,
    company_id: Optional[str] = None,
    owner_id: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    """List company products, filtered by phase, process type, stage and owner."""
    return ReadModelStore(db).find(
        phase=phase,
        process_type=process_type,
        stage_id=stage_id,
        product_id=product_id,
        company_id=company_id,
        owner_id=owner_id,
        limit=limit,
        offset=offset,
    )


@router.get("/ready-to-close", response_model=List[CompanyProductResponse])
def ready_to_close(
    product_id: Optional[str] = None,
    threshold: Optional[int] = Query(None, ge=0, le=100),
    db: Session = Depends(get_db),
):
    """Deals flagged close-ready or with high close confidence."""
    if threshold is None:
        threshold = settings.CLOSE_READY_CONFIDENCE
    return ReadModelStore(db).ready_to_close(threshold=threshold, product_id=product_id)


@router.get("/overdue-next-steps", response_model=List[CompanyProductResponse])
def overdue_next_steps(product_id: Optional[str] = None, db: Session = Depends(get_db)):
    return ReadModelStore(db).overdue_next_steps(datetime.now(timezone.utc), product_id=product_id)


@router.get("/stage-counts", response_model=List[StageCountResponse])
def stage_counts(
    product_id: Optional[str] = None,
    process_type: Optional[str] = None,
    db: Session = Depends(get_db),
):
    """Pipeline summary: open company products per process stage."""
    return ReadModelStore(db).stage_counts(product_id=product_id, process_type=process_type)


@router.get("/projection-lag", response_model=List[ProjectionLagResponse])
def projection_lag(db: Session = Depends(get_db)):
    """Company products whose read model is behind the event log."""
    return ReadModelStore(db).projection_lag()


@router.get("/{company_product_id}", response_model=CompanyProductResponse)
def get_company_product(company_product_id: str, db: Session = Depends(get_db)):
    row = ReadModelStore(db).get(company_product_id)
    if not row:
        raise HTTPException(status_code=404, detail="Company product not found")
    return row


@router.get("/{company_product_id}/stage-history", response_model=List[StageFactResponse])
def stage_history(company_product_id: str, db: Session = Depends(get_db)):
    """Stage entries and exits with time spent in each stage."""
    return ReadModelStore(db).stage_history(company_product_id)
