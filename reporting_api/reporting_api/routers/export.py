"""Report export.

Exports run the same scoped queries as the listing endpoints, without
pagination, and return the rows with an attachment disposition.  Only
JSON is produced.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from fastapi import APIRouter, HTTPException
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from reporting_api.dependencies import ScopedSessionDep
from reporting_api.params import parse_timestamp
from reporting_api.services.inventory_service import BundleService, EndpointService
from reporting_api.services.usage_service import UsageService
from reporting_core.tenancy.guard import ScopedSession

logger = logging.getLogger(__name__)

router = APIRouter(tags=["export"])


class ReportType(str, Enum):
    USAGE = "usage"
    BUNDLES = "bundles"
    INSTANCES = "instances"
    ENDPOINTS = "endpoints"


class ExportFilters(BaseModel):
    iccid: str | None = None


class ExportRequest(BaseModel):
    """Request body for ``POST /export``."""

    model_config = ConfigDict(populate_by_name=True)

    report_type: ReportType = ReportType.USAGE
    format: str = Field("json", description="Only 'json' is supported.")
    date_from: str | None = Field(None, alias="from")
    date_to: str | None = Field(None, alias="to")
    filters: ExportFilters = Field(default_factory=ExportFilters)


async def _collect(scoped: ScopedSession, body: ExportRequest) -> list[dict[str, Any]]:
    iccid = body.filters.iccid
    if body.report_type is ReportType.USAGE:
        return await UsageService(scoped).export_rows(
            iccid=iccid,
            since=parse_timestamp(body.date_from, "from"),
            until=parse_timestamp(body.date_to, "to"),
        )
    if body.report_type is ReportType.BUNDLES:
        return await BundleService(scoped).export_bundles()
    if body.report_type is ReportType.INSTANCES:
        return await BundleService(scoped).export_instances(iccid=iccid)
    return await EndpointService(scoped).export_endpoints()


@router.post("/export")
async def export_report(body: ExportRequest, scoped: ScopedSessionDep) -> JSONResponse:
    if body.format.lower() != "json":
        raise HTTPException(status_code=400, detail="Only JSON export is supported")

    rows = await _collect(scoped, body)
    exported_at = datetime.now(UTC)
    logger.info(
        "Export report_type=%s tenant=%s rows=%d",
        body.report_type.value,
        scoped.identity.tenant_id,
        len(rows),
    )
    filename = f"{body.report_type.value}_export_{exported_at:%Y%m%d}.json"
    payload = {
        "export": {
            "report_type": body.report_type.value,
            "tenant": scoped.identity.tenant_name,
            "exported_at": exported_at.isoformat(),
            "record_count": len(rows),
            "filters": {
                "from": body.date_from,
                "to": body.date_to,
                "iccid": body.filters.iccid,
            },
        },
        "data": rows,
    }
    return JSONResponse(
        content=jsonable_encoder(payload),
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
