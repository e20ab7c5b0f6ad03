"""Usage report endpoints.

GET /usage/summary  - aggregated usage grouped daily, monthly or annually
GET /usage/records  - paginated raw usage records
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Query

from reporting_api.dependencies import ScopedSessionDep
from reporting_api.pagination import PaginationDep
from reporting_api.params import parse_date, parse_timestamp
from reporting_api.services.usage_service import SUMMARY_VIEWS, UsageService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/usage", tags=["usage"])


@router.get("/summary")
async def usage_summary(
    scoped: ScopedSessionDep,
    group_by: str = Query("daily", description="daily, monthly or annual"),
    date_from: str | None = Query(None, alias="from"),
    date_to: str | None = Query(None, alias="to"),
    customer: str | None = Query(None),
    tenant_id: str | None = Query(None, description="Platform administrators only"),
) -> dict[str, Any]:
    if group_by not in SUMMARY_VIEWS:
        raise HTTPException(status_code=400, detail="group_by must be: daily, monthly, or annual")
    service = UsageService(scoped)
    return await service.summary(
        group_by,
        date_from=parse_date(date_from, "from"),
        date_to=parse_date(date_to, "to"),
        customer=customer,
        tenant_id=tenant_id,
    )


@router.get("/records")
async def usage_records(
    scoped: ScopedSessionDep,
    pagination: PaginationDep,
    iccid: str | None = Query(None),
    date_from: str | None = Query(None, alias="from"),
    date_to: str | None = Query(None, alias="to"),
    customer: str | None = Query(None),
    tenant_id: str | None = Query(None, description="Platform administrators only"),
) -> dict[str, Any]:
    service = UsageService(scoped)
    return await service.records(
        pagination,
        iccid=iccid,
        since=parse_timestamp(date_from, "from"),
        until=parse_timestamp(date_to, "to"),
        customer=customer,
        tenant_id=tenant_id,
    )
