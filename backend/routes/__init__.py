"""
Routes package for the Lifecycle Engine API.
Import all routers here for use in main.py.
"""

from routes.lifecycle import router as lifecycle_router
from routes.read_models import router as read_models_router
from routes.projections import router as projections_router
from routes.processes import router as processes_router

__all__ = [
    "lifecycle_router",
    "read_models_router",
    "projections_router",
    "processes_router",
]
