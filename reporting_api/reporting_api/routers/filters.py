"""Filter dropdown data: visible tenants and customers."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query

from reporting_api.dependencies import ScopedSessionDep
from reporting_api.services.directory_service import DirectoryService

router = APIRouter(prefix="/filters", tags=["filters"])


@router.get("/tenants")
async def filter_tenants(scoped: ScopedSessionDep) -> dict[str, Any]:
    """Platform administrators see every tenant; others their own and direct children."""
    return {"tenants": await DirectoryService(scoped).tenants()}


@router.get("/customers")
async def filter_customers(
    scoped: ScopedSessionDep,
    tenant_id: str | None = Query(None, description="Platform administrators only"),
) -> dict[str, Any]:
    return {"customers": await DirectoryService(scoped).customers(tenant_id=tenant_id)}
