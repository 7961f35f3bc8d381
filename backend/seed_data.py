"""
Seed reference data for the Lifecycle Engine.

Two demo products with published sales / onboarding / engagement processes.
Identifiers are fixed so local environments and tests can refer to them.
"""

import logging

from sqlalchemy.orm import Session

from models import Product, ProductProcess, ProductProcessStage

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Fixed identifiers
# ---------------------------------------------------------------------------
CRM_PRODUCT_ID = "7a1c0d2e-0001-4000-8000-000000000001"
ANALYTICS_PRODUCT_ID = "7a1c0d2e-0002-4000-8000-000000000002"

CRM_SALES_PROCESS_ID = "5b2e0f3a-0101-4000-8000-000000000101"
CRM_ONBOARDING_PROCESS_ID = "5b2e0f3a-0102-4000-8000-000000000102"
CRM_ENGAGEMENT_PROCESS_ID = "5b2e0f3a-0103-4000-8000-000000000103"
ANALYTICS_SALES_PROCESS_ID = "5b2e0f3a-0201-4000-8000-000000000201"


PRODUCTS = [
    {
        "id": CRM_PRODUCT_ID,
        "name": "Pipeline CRM",
        "description": "Deal tracking and pipeline management.",
    },
    {
        "id": ANALYTICS_PRODUCT_ID,
        "name": "Revenue Analytics",
        "description": "Forecasting and revenue reporting add-on.",
    },
]


# (stage name, is_terminal, terminal_type, sla_days, sla_warning_days)
PROCESSES = [
    {
        "id": CRM_SALES_PROCESS_ID,
        "product_id": CRM_PRODUCT_ID,
        "process_type": "sales",
        "name": "Pipeline CRM Sales",
        "stages": [
            ("Discovery", False, None, 14, 10),
            ("Demo", False, None, 10, 7),
            ("Proposal", False, None, 14, 10),
            ("Negotiation", False, None, 21, 14),
            ("Closed Won", True, "won", None, None),
            ("Closed Lost", True, "lost", None, None),
        ],
    },
    {
        "id": CRM_ONBOARDING_PROCESS_ID,
        "product_id": CRM_PRODUCT_ID,
        "process_type": "onboarding",
        "name": "Pipeline CRM Onboarding",
        "stages": [
            ("Kickoff", False, None, 3, 2),
            ("Configuration", False, None, 14, 10),
            ("Training", False, None, 7, 5),
            ("Go Live", True, "completed", None, None),
        ],
    },
    {
        "id": CRM_ENGAGEMENT_PROCESS_ID,
        "product_id": CRM_PRODUCT_ID,
        "process_type": "engagement",
        "name": "Pipeline CRM Customer Success",
        "stages": [
            ("Adoption", False, None, 30, 21),
            ("Expansion", False, None, 60, 45),
            ("Renewal", False, None, 30, 21),
            ("Churned", True, "churned", None, None),
        ],
    },
    {
        "id": ANALYTICS_SALES_PROCESS_ID,
        "product_id": ANALYTICS_PRODUCT_ID,
        "process_type": "sales",
        "name": "Revenue Analytics Sales",
        "stages": [
            ("Qualification", False, None, 7, 5),
            ("Trial", False, None, 14, 10),
            ("Closed Won", True, "won", None, None),
            ("Closed Lost", True, "lost", None, None),
        ],
    },
]


def stage_id(process_id: str, stage_order: int) -> str:
    """Deterministic stage id: the process id with the order in the last block."""
    return f"{process_id[:-4]}{stage_order:04d}"


def seed_reference_data(db: Session) -> None:
    """Insert products, processes and stages. The caller commits."""
    for p_data in PRODUCTS:
        db.add(Product(**p_data))
    db.flush()

    stage_count = 0
    for proc in PROCESSES:
        db.add(ProductProcess(
            id=proc["id"],
            product_id=proc["product_id"],
            process_type=proc["process_type"],
            name=proc["name"],
            version=1,
            status="published",
        ))
        for order, (name, is_terminal, terminal_type, sla_days, sla_warning_days) in enumerate(proc["stages"], start=1):
            db.add(ProductProcessStage(
                id=stage_id(proc["id"], order),
                process_id=proc["id"],
                name=name,
                stage_order=order,
                is_terminal=is_terminal,
                terminal_type=terminal_type,
                sla_days=sla_days,
                sla_warning_days=sla_warning_days,
            ))
            stage_count += 1
    db.flush()

    logger.info(f"Seeded {len(PRODUCTS)} products, {len(PROCESSES)} processes, {stage_count} stages")
