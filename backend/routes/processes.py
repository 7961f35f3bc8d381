"""
Process catalog routes (read-only).
Products, their sales / onboarding / engagement processes and ordered stages.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session, selectinload

from database import get_db
from models import Product, ProductProcess
from schemas import ProcessResponse, ProductResponse

router = APIRouter(tags=["Process Catalog"])


@router.get("/products", response_model=List[ProductResponse])
def list_products(db: Session = Depends(get_db)):
    return db.query(Product).order_by(Product.name).all()


@router.get("/products/{product_id}/processes", response_model=List[ProcessResponse])
def list_product_processes(
    product_id: str,
    process_type: Optional[str] = None,
    status: Optional[str] = None,
    db: Session = Depends(get_db),
):
    """Processes of a product with their stages in order."""
    if not db.get(Product, product_id):
        raise HTTPException(status_code=404, detail="Product not found")
    query = (
        db.query(ProductProcess)
        .options(selectinload(ProductProcess.stages))
        .filter(ProductProcess.product_id == product_id)
    )
    if process_type:
        query = query.filter(ProductProcess.process_type == process_type)
    if status:
        query = query.filter(ProductProcess.status == status)
    return query.order_by(ProductProcess.process_type, ProductProcess.version).all()


@router.get("/processes/{process_id}", response_model=ProcessResponse)
def get_process(process_id: str, db: Session = Depends(get_db)):
    process = (
        db.query(ProductProcess)
        .options(selectinload(ProductProcess.stages))
        .filter(ProductProcess.id == process_id)
        .first()
    )
    if not process:
        raise HTTPException(status_code=404, detail="Process not found")
    return process
