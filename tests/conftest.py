"""
Pytest configuration and fixtures.

Each test gets its own SQLite file under tmp_path, so separate sessions are
separate connections and can interleave the way concurrent writers do.
"""

import sys
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add backend directory to path
BACKEND_DIR = Path(__file__).parent.parent / "backend"
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from database import init_db, init_engine, make_session_factory  # noqa: E402
from domain.lifecycle import LifecyclePolicy  # noqa: E402
from domain.process import ProcessCatalog, ProcessDefinition, StageDefinition  # noqa: E402
from seed_data import CRM_PRODUCT_ID, PROCESSES, seed_reference_data, stage_id  # noqa: E402
from services.command_service import CommandService  # noqa: E402
from services.projector import Projector  # noqa: E402


def new_id() -> str:
    return str(uuid.uuid4())


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def seed_catalog() -> ProcessCatalog:
    """The seeded process catalog, without a database."""
    processes = []
    stages = []
    for proc in PROCESSES:
        processes.append(ProcessDefinition(
            id=proc["id"],
            product_id=proc["product_id"],
            process_type=proc["process_type"],
            name=proc["name"],
        ))
        for order, (name, is_terminal, terminal_type, sla_days, sla_warning_days) in enumerate(proc["stages"], start=1):
            stages.append(StageDefinition(
                id=stage_id(proc["id"], order),
                process_id=proc["id"],
                name=name,
                stage_order=order,
                is_terminal=is_terminal,
                terminal_type=terminal_type,
                sla_days=sla_days,
                sla_warning_days=sla_warning_days,
            ))
    return ProcessCatalog(processes, stages)


# =============================================================================
# DATABASE FIXTURES
# =============================================================================

@pytest.fixture(scope="function")
def engine(tmp_path):
    """File-backed SQLite engine with the schema created and stamped."""
    engine = init_engine(f"sqlite:///{tmp_path / 'lifecycle.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    """Session factory over a database seeded with the demo catalog."""
    factory = make_session_factory(engine)
    with factory() as db, db.begin():
        seed_reference_data(db)
    return factory


# =============================================================================
# SERVICE FIXTURES
# =============================================================================

@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def policy():
    return LifecyclePolicy()


@pytest.fixture
def commands(session_factory, policy, clock):
    return CommandService(session_factory, policy=policy, max_retries=3, clock=clock)


@pytest.fixture
def projector(session_factory, clock):
    return Projector(session_factory, batch_size=50, time_budget_seconds=0, clock=clock)


@pytest.fixture
def aggregate():
    """Identity of a brand new company product for the CRM demo product."""
    return {
        "company_product_id": new_id(),
        "company_id": new_id(),
        "product_id": CRM_PRODUCT_ID,
    }


@pytest.fixture
def client(session_factory):
    """FastAPI test client wired to the test database."""
    from fastapi.testclient import TestClient
    from main import create_app

    app = create_app(session_factory=session_factory)
    with TestClient(app) as c:
        yield c
