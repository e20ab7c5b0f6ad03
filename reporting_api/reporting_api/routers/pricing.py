"""Bundle pricing (administrators) and the monthly revenue report (any caller)."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from reporting_api.dependencies import AdminIdentityDep, ScopedSessionDep, SessionStoreDep
from reporting_api.services.pricing_service import (
    DEFAULT_REVENUE_MONTHS,
    REVENUE_VIEWS,
    PricingService,
    RevenueService,
)

router = APIRouter(tags=["pricing"])


class PriceEntry(BaseModel):
    tenant_id: str = Field(min_length=1)
    bundle_moniker: str = Field(min_length=1)
    monthly_price: float = Field(ge=0, allow_inf_nan=False)


class PricingUpdate(BaseModel):
    prices: list[PriceEntry]


@router.get("/admin/pricing")
async def get_pricing(admin: AdminIdentityDep, scoped: ScopedSessionDep, store: SessionStoreDep) -> dict[str, Any]:
    return {"prices": await PricingService(store).enriched(scoped)}


@router.put("/admin/pricing")
async def save_pricing(body: PricingUpdate, admin: AdminIdentityDep, store: SessionStoreDep) -> dict[str, Any]:
    saved = await PricingService(store).save([entry.model_dump() for entry in body.prices])
    return {"status": "ok", "saved": saved}


@router.get("/revenue/monthly")
async def monthly_revenue(
    scoped: ScopedSessionDep,
    store: SessionStoreDep,
    months: int = Query(DEFAULT_REVENUE_MONTHS, description="Clamped to 1..24"),
    view: str = Query("tenant", description="tenant or customer"),
    tenant_id: str | None = Query(None, description="Platform administrators only"),
    customer: str | None = Query(None),
) -> dict[str, Any]:
    if view not in REVENUE_VIEWS:
        raise HTTPException(status_code=400, detail='view must be "tenant" or "customer"')
    return await RevenueService(scoped, PricingService(store)).monthly(
        months=months, view=view, tenant_id=tenant_id, customer=customer
    )
