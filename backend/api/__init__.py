"""
API Routers
"""
from .alerts import router as alerts_router
from .polling import router as polling_router
from .jobs import router as jobs_router
from .export import router as export_router

__all__ = ["alerts_router", "polling_router", "jobs_router", "export_router"]
