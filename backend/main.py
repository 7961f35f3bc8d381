"""
Lifecycle Engine - FastAPI Application Entry Point

Company x product lifecycle tracking for sales operations: commands append
events, the projector folds them into read models, and every other caller
queries the read models.

Startup:
  - Engine and session factory built once and kept on app.state
  - Schema version checked before serving
  - Reference data (demo product and processes) seeded when enabled
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import sessionmaker

from config import Settings, settings as default_settings
from database import check_schema_version, init_db, init_engine, make_session_factory

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger("lifecycle_engine")

API_PREFIX = "/api/v1"


def _run_seed_if_empty(session_factory: sessionmaker):
    """Seed the demo product catalog if no products exist yet."""
    from models import Product
    from seed_data import seed_reference_data

    with session_factory() as db:
        count = db.query(Product).count()
    if count:
        logger.info(f"Database has {count} products. Skipping seed.")
        return

    logger.info("No products found. Seeding reference data...")
    with session_factory() as db, db.begin():
        seed_reference_data(db)
        logger.info("Reference data seeded successfully.")


def create_app(
    settings: Optional[Settings] = None,
    session_factory: Optional[sessionmaker] = None,
) -> FastAPI:
    """Build the application. Tests pass their own session factory."""
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application startup and shutdown lifecycle."""
        logger.info("=" * 60)
        logger.info(f"  {settings.APP_NAME} v{settings.APP_VERSION}")
        logger.info(f"  Database: {'PostgreSQL' if settings.is_postgres else 'SQLite'}")
        logger.info("=" * 60)

        engine = None
        if getattr(app.state, "session_factory", None) is None:
            engine = init_engine(settings.DATABASE_URL, echo=settings.DEBUG)
            if not settings.is_postgres:
                # Local SQLite files are created in place; PostgreSQL is migrated externally
                init_db(engine)
            app.state.engine = engine
            app.state.session_factory = make_session_factory(engine)

        check_schema_version(app.state.session_factory.kw["bind"])
        if settings.SEED_REFERENCE_DATA:
            _run_seed_if_empty(app.state.session_factory)
        logger.info("DB init complete.")

        yield

        logger.info("Shutting down...")
        if engine is not None:
            engine.dispose()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description=(
            "REST API for the Lifecycle Engine - company product phases, "
            "process stages and pipeline read models."
        ),
        lifespan=lifespan,
    )
    app.state.session_factory = session_factory

    # -----------------------------------------------------------------------
    # CORS Middleware
    # -----------------------------------------------------------------------
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -----------------------------------------------------------------------
    # Malformed requests answer 400 with a plain error message
    # -----------------------------------------------------------------------
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        messages = []
        for err in exc.errors():
            location = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
            messages.append(f"{location}: {err.get('msg')}" if location else err.get("msg"))
        return JSONResponse(
            status_code=400,
            content={"error": "; ".join(messages) or "Invalid request", "errorType": "ValidationError"},
        )

    # -----------------------------------------------------------------------
    # Include all route routers under /api/v1
    # -----------------------------------------------------------------------
    from routes import (
        lifecycle_router,
        read_models_router,
        projections_router,
        processes_router,
    )

    for r in [lifecycle_router, read_models_router, projections_router, processes_router]:
        app.include_router(r, prefix=API_PREFIX)

    # -----------------------------------------------------------------------
    # Health check
    # -----------------------------------------------------------------------
    @app.get("/", tags=["Health"])
    def root():
        return {
            "app": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "status": "running",
            "docs": "/docs",
        }

    @app.get("/health", tags=["Health"])
    def health_check():
        result = {
            "status": "healthy",
            "database_backend": "postgresql" if settings.is_postgres else "sqlite",
            "version": settings.APP_VERSION,
        }
        factory = getattr(app.state, "session_factory", None)
        if factory is None:
            result["database"] = "initializing"
            return result

        try:
            from services.read_models import ReadModelStore
            with factory() as db:
                result["projection_lag"] = len(ReadModelStore(db).projection_lag())
            result["database"] = "ready"
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            result["database"] = f"error: {str(e)}"
            result["status"] = "degraded"
        return result

    return app


app = create_app()
