"""Liveness endpoint for load balancers and local tooling."""

from typing import Any

from fastapi import APIRouter, Depends

from ...api.dependencies import get_settings
from ...config import Settings

router = APIRouter(tags=["health"])


@router.get("/health")
def healthcheck(settings: Settings = Depends(get_settings)) -> dict[str, Any]:
    """Return process liveness; does not touch the ledger."""

    return {
        "status": "ok",
        "environment": settings.environment,
    }
