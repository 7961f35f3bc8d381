"""
Loads process and stage definitions into a ProcessCatalog snapshot.
"""

from typing import Optional

from sqlalchemy.orm import Session, selectinload

from domain.process import ProcessCatalog, ProcessDefinition, StageDefinition
from models import ProductProcess


def load_catalog(db: Session, product_id: Optional[str] = None) -> ProcessCatalog:
    """Snapshot the catalog, optionally restricted to one product's processes."""
    query = db.query(ProductProcess).options(selectinload(ProductProcess.stages))
    if product_id:
        query = query.filter(ProductProcess.product_id == product_id)

    processes = []
    stages = []
    for process in query.all():
        processes.append(ProcessDefinition(
            id=process.id,
            product_id=process.product_id,
            process_type=process.process_type,
            name=process.name,
            version=process.version,
            status=process.status,
        ))
        for stage in process.stages:
            stages.append(StageDefinition(
                id=stage.id,
                process_id=stage.process_id,
                name=stage.name,
                stage_order=stage.stage_order,
                is_terminal=bool(stage.is_terminal),
                terminal_type=stage.terminal_type,
                sla_days=stage.sla_days,
                sla_warning_days=stage.sla_warning_days,
            ))
    return ProcessCatalog(processes, stages)
