"""Device endpoint listings and per-endpoint usage."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Query

from reporting_api.dependencies import ScopedSessionDep
from reporting_api.pagination import PaginationDep
from reporting_api.params import parse_date
from reporting_api.services.inventory_service import GROUPINGS, EndpointService

router = APIRouter(prefix="/endpoints", tags=["endpoints"])


@router.get("")
async def list_endpoints(
    scoped: ScopedSessionDep,
    pagination: PaginationDep,
    status: str | None = Query(None),
    customer: str | None = Query(None),
    tenant_id: str | None = Query(None, description="Platform administrators only"),
) -> dict[str, Any]:
    return await EndpointService(scoped).list_endpoints(
        pagination, status=status, customer=customer, tenant_id=tenant_id
    )


@router.get("/{endpoint_id}/usage")
async def endpoint_usage(
    endpoint_id: str,
    scoped: ScopedSessionDep,
    group_by: str = Query("daily"),
    date_from: str | None = Query(None, alias="from"),
    date_to: str | None = Query(None, alias="to"),
    customer: str | None = Query(None),
    tenant_id: str | None = Query(None, description="Platform administrators only"),
) -> dict[str, Any]:
    if group_by not in GROUPINGS:
        raise HTTPException(status_code=400, detail="group_by must be: daily, monthly, or annual")
    result = await EndpointService(scoped).endpoint_usage(
        endpoint_id,
        group_by=group_by,
        date_from=parse_date(date_from, "from"),
        date_to=parse_date(date_to, "to"),
        customer=customer,
        tenant_id=tenant_id,
    )
    if result is None:
        raise HTTPException(status_code=404, detail="Endpoint not found")
    return result
