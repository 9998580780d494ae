from fastapi import APIRouter

from sitecheck.api.v1.endpoints import checks, health
from sitecheck.core.config import settings

api_router = APIRouter(prefix=settings.API_V1_PREFIX)
api_router.include_router(checks.router, tags=["checks"])
api_router.include_router(health.router, tags=["health"])
