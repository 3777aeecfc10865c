"""
API package for the RuleFlow backend.

This package aggregates all API routers to be included in the FastAPI
application. The API is versioned under ``/api/v1``.
"""

from fastapi import APIRouter, Depends
from .v1.rules import router as rules_router
from .v1.logs import router as logs_router
from .v1.plans import router as plans_router
from .v1.notifications import router as notifications_router
from .v1.events import router as events_router
from .v1.health import router as health_router
from ..core.auth import get_current_user
from ..core.rate_limit import rate_limit_dependency

api_router = APIRouter()
protected = [Depends(get_current_user), Depends(rate_limit_dependency)]
api_router.include_router(rules_router, dependencies=protected)
api_router.include_router(logs_router, dependencies=protected)
api_router.include_router(plans_router, dependencies=protected)
api_router.include_router(notifications_router, dependencies=protected)
api_router.include_router(events_router, dependencies=protected)
api_router.include_router(health_router)
