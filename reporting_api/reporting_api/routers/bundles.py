"""Bundle and bundle-instance endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Query

from reporting_api.dependencies import ScopedSessionDep
from reporting_api.pagination import PaginationDep
from reporting_api.params import parse_flag, parse_timestamp
from reporting_api.services.inventory_service import BundleService

router = APIRouter(tags=["bundles"])


@router.get("/bundles")
async def list_bundles(
    scoped: ScopedSessionDep,
    pagination: PaginationDep,
    status: str | None = Query(None),
) -> dict[str, Any]:
    return await BundleService(scoped).list_bundles(pagination, status=status)


@router.get("/bundles/{bundle_id}")
async def get_bundle(bundle_id: str, scoped: ScopedSessionDep) -> dict[str, Any]:
    """A bundle by numeric id or source id, with up to 50 recent instances."""
    detail = await BundleService(scoped).bundle_detail(bundle_id)
    if detail is None:
        raise HTTPException(status_code=404, detail="Bundle not found")
    return detail


@router.get("/bundle-instances")
async def list_bundle_instances(
    scoped: ScopedSessionDep,
    pagination: PaginationDep,
    iccid: str | None = Query(None, description="Substring match"),
    bundle_id: str | None = Query(None, description="Bundle moniker or instance id"),
    status: str | None = Query(None, description="Effective status, or live / active / stalled"),
    expiring_before: str | None = Query(None),
    final_only: str | None = Query(None),
    customer: str | None = Query(None),
    tenant_id: str | None = Query(None, description="Platform administrators only"),
) -> dict[str, Any]:
    return await BundleService(scoped).list_instances(
        pagination,
        iccid=iccid,
        bundle_id=bundle_id,
        status=status,
        expiring_before=parse_timestamp(expiring_before, "expiring_before"),
        final_only=parse_flag(final_only),
        customer=customer,
        tenant_id=tenant_id,
    )
