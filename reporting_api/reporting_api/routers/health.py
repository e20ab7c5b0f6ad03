"""Liveness, readiness and API-info endpoints (no authentication)."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from reporting_api import __version__
from reporting_api.dependencies import SessionFactoryDep, SettingsDep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

_ENDPOINTS: tuple[str, ...] = (
    "GET  /api/v1/usage/summary",
    "GET  /api/v1/usage/records",
    "GET  /api/v1/bundles",
    "GET  /api/v1/bundles/{bundle_id}",
    "GET  /api/v1/bundle-instances",
    "GET  /api/v1/endpoints",
    "GET  /api/v1/endpoints/{endpoint_id}/usage",
    "GET  /api/v1/filters/tenants",
    "GET  /api/v1/filters/customers",
    "POST /api/v1/export",
    "POST /api/v1/auth/login",
    "GET  /api/v1/auth/me",
    "POST /api/v1/auth/logout",
    "GET  /api/v1/revenue/monthly",
)


@router.get("/")
@router.get("/health")
@router.get("/api/v1/health")
async def health() -> dict[str, Any]:
    """Liveness check.  Never touches the database."""
    return {"status": "healthy", "version": __version__}


@router.get("/api/v1")
async def api_info(settings: SettingsDep) -> dict[str, Any]:
    return {
        "name": "Tenant Reporting API",
        "version": __version__,
        "api_version": settings.api_version,
        "endpoints": list(_ENDPOINTS),
    }


@router.get("/ready")
async def readiness(session_factory: SessionFactoryDep) -> JSONResponse:
    """Readiness check: 200 when the database answers, 503 otherwise."""
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("Readiness check failed: %s", type(exc).__name__)
        return JSONResponse(status_code=503, content={"status": "not_ready"})
    return JSONResponse(status_code=200, content={"status": "ready"})
