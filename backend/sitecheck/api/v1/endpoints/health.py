"""
Health Check Endpoint

Liveness probe for the check service itself, plus a view of how many
checks are currently streaming.
"""
from typing import Dict

from fastapi import APIRouter, Depends

from sitecheck.core.check_registry_provider import get_check_registry
from sitecheck.services.check_registry import CheckRegistry

router = APIRouter()


@router.get("/health")
async def health_check(
    registry: CheckRegistry = Depends(get_check_registry),
) -> Dict:
    """
    Report service liveness.

    Args:
        registry: Registry of checks that are still streaming

    Returns:
        Health status and the number of active checks
    """
    return {
        "status": "ok",
        "active_checks": len(registry),
    }
