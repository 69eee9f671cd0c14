"""
Health check endpoints.
"""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import text

from tenantbase import __version__
from tenantbase.dependencies import Services, get_services

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    version: str
    timestamp: str
    database: str
    pools: Dict[str, Any]


@router.get("/health", response_model=HealthResponse)
async def health_check(services: Services = Depends(get_services)):
    """
    Health check endpoint.
    Returns server status, registry connectivity and tenant pool stats.
    """
    db_status = "connected"
    if services.database is None:
        db_status = "not configured"
    else:
        try:
            async with services.database.session() as session:
                await session.execute(text("SELECT 1"))
        except Exception as e:
            db_status = f"error: {type(e).__name__}"

    return HealthResponse(
        status="ok",
        version=__version__,
        timestamp=datetime.now(timezone.utc).isoformat(),
        database=db_status,
        pools=services.pools.get_stats(),
    )


@router.get("/api/health")
async def api_health_check(services: Services = Depends(get_services)):
    """
    API prefixed health check (for consistency with /api/* routes).
    """
    return await health_check(services)
