"""
Database setup using SQLAlchemy.

The engine and session factory are created once per process by
``init_engine`` / ``make_session_factory`` and handed to the services that
need them. Nothing in the lifecycle core reaches for a module-level client.

Schema evolution is handled by migrations outside the application. At
startup ``check_schema_version`` compares the ``schema_meta`` row with
``SCHEMA_VERSION`` and refuses to serve a database it does not understand.
"""

import logging
from datetime import datetime, timezone

from fastapi import Request
from sqlalchemy import create_engine, inspect, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 4

Base = declarative_base()


class SchemaVersionMismatch(RuntimeError):
    """Raised at startup when the database schema is not the one this build expects."""


def init_engine(url: str, echo: bool = False) -> Engine:
    """Build an engine for the given URL."""
    if url.startswith("sqlite"):
        logger.info("Using SQLite backend (local development)")
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            echo=echo,
        )

    logger.info("Using PostgreSQL backend")
    return create_engine(
        url,
        pool_pre_ping=True,       # Auto-reconnect stale connections
        pool_size=5,
        max_overflow=10,
        pool_timeout=10,
        pool_recycle=300,
        echo=echo,
    )


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create all tables if they don't exist and stamp the schema version."""
    import models  # noqa: F401  (registers tables on Base.metadata)
    from models import SchemaMeta

    Base.metadata.create_all(bind=engine)
    with Session(engine) as session, session.begin():
        meta = session.get(SchemaMeta, 1)
        if meta is None:
            session.add(SchemaMeta(id=1, version=SCHEMA_VERSION,
                                   applied_at=datetime.now(timezone.utc)))
            logger.info(f"Stamped schema version {SCHEMA_VERSION}")
    logger.info("Database tables created / verified.")


def check_schema_version(engine: Engine) -> int:
    """Verify the database carries the schema version this build expects."""
    from models import SchemaMeta

    if not inspect(engine).has_table(SchemaMeta.__tablename__):
        raise SchemaVersionMismatch("schema_meta table missing; run migrations first")

    with Session(engine) as session:
        version = session.scalar(select(SchemaMeta.version).where(SchemaMeta.id == 1))

    if version != SCHEMA_VERSION:
        raise SchemaVersionMismatch(
            f"Database schema version {version} does not match expected {SCHEMA_VERSION}"
        )
    return version


def get_session_factory(request: Request) -> sessionmaker:
    """Dependency that provides the application's session factory."""
    return request.app.state.session_factory


def get_db(request: Request):
    """Dependency that provides a database session."""
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()
