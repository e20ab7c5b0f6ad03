"""Usage reports: aggregate summaries and raw usage records.

Every query starts from the scoped session's tenant predicate; customer
narrowing and the admin tenant override are appended through
:class:`~reporting_core.tenancy.filters.QueryFilters`.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any

from reporting_api.pagination import Pagination, paginated
from reporting_core.tenancy.filters import QueryFilters
from reporting_core.tenancy.guard import ScopedSession

logger = logging.getLogger(__name__)

# group_by value -> (aggregate relation, period column)
SUMMARY_VIEWS: dict[str, tuple[str, str]] = {
    "daily": ("mv_usage_daily", "day"),
    "monthly": ("mv_usage_monthly", "month"),
    "annual": ("mv_usage_annual", "year"),
}

USAGE_RECORD_COLUMNS = (
    "id, iccid, endpoint_name, endpoint_description, customer_name, "
    "timestamp, usage_date, service_type, charge_type, "
    "consumption, charged_consumption, uplink_bytes, downlink_bytes, "
    "bundle_name, bundle_moniker, status_moniker, "
    "serving_operator_name, serving_country_name, "
    "buy_charge, buy_currency, sell_charge, sell_currency"
)


def _number(value: Any) -> float:
    return float(value or 0)


class UsageService:
    """Usage reporting over one tenant-scoped transaction."""

    def __init__(self, scoped: ScopedSession) -> None:
        self._scoped = scoped
        self._identity = scoped.identity

    async def summary(
        self,
        group_by: str = "daily",
        *,
        date_from: date | None = None,
        date_to: date | None = None,
        customer: str | None = None,
        tenant_id: str | None = None,
    ) -> dict[str, Any]:
        """Totals plus one row per period from the matching aggregate view.

        Raises
        ------
        ValueError
            If *group_by* is not ``daily``, ``monthly`` or ``annual``.
        """
        if group_by not in SUMMARY_VIEWS:
            raise ValueError(f"Invalid group_by: {group_by}")
        view, period = SUMMARY_VIEWS[group_by]

        filters = self._scoped.filters()
        filters.override_tenant(self._identity, tenant_id)
        filters.scope_customer(self._identity, customer)
        if date_from is not None:
            filters.add(f"{period} >= {{}}", date_from)
        if date_to is not None:
            filters.add(f"{period} <= {{}}", date_to)
        where = filters.where()
        params = filters.params()

        totals = await self._scoped.fetch_one(
            f"""
            SELECT
              COALESCE(SUM(total_consumption), 0) AS total_consumption,
              COALESCE(SUM(total_bytes), 0) AS total_bytes,
              COALESCE(SUM(total_buy), 0) AS total_buy,
              COALESCE(SUM(total_sell), 0) AS total_sell,
              COALESCE(SUM(record_count), 0) AS total_records
            FROM {view}
            WHERE {where}
            """,
            params,
        )
        rows = await self._scoped.fetch_all(
            f"""
            SELECT
              CAST({period} AS TEXT) AS date,
              COALESCE(SUM(total_consumption), 0) AS consumption,
              COALESCE(SUM(total_bytes), 0) AS total_bytes,
              COALESCE(SUM(total_buy), 0) AS buy_total,
              COALESCE(SUM(total_sell), 0) AS sell_total,
              COALESCE(SUM(record_count), 0) AS records
            FROM {view}
            WHERE {where}
            GROUP BY {period}
            ORDER BY {period} ASC
            """,
            params,
        )

        totals = totals or {}
        return {
            "tenant": self._identity.tenant_name,
            "period": {
                "from": date_from.isoformat() if date_from else "all",
                "to": date_to.isoformat() if date_to else "now",
                "group_by": group_by,
            },
            "summary": {
                "total_consumption": _number(totals.get("total_consumption")),
                "total_bytes": int(totals.get("total_bytes") or 0),
                "total_buy": _number(totals.get("total_buy")),
                "total_sell": _number(totals.get("total_sell")),
                "total_records": int(totals.get("total_records") or 0),
            },
            "data": [
                {
                    "date": row["date"],
                    "consumption": _number(row["consumption"]),
                    "total_bytes": int(row["total_bytes"] or 0),
                    "buy_total": _number(row["buy_total"]),
                    "sell_total": _number(row["sell_total"]),
                    "records": int(row["records"] or 0),
                }
                for row in rows
            ],
        }

    def _record_filters(
        self,
        *,
        iccid: str | None,
        since: datetime | None,
        until: datetime | None,
        customer: str | None,
        tenant_id: str | None,
    ) -> QueryFilters:
        filters = self._scoped.filters()
        filters.override_tenant(self._identity, tenant_id)
        filters.scope_customer(self._identity, customer)
        if iccid:
            filters.add("iccid = {}", iccid)
        if since is not None:
            filters.add("timestamp >= {}", since)
        if until is not None:
            filters.add("timestamp <= {}", until)
        return filters

    async def records(
        self,
        pagination: Pagination,
        *,
        iccid: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        customer: str | None = None,
        tenant_id: str | None = None,
    ) -> dict[str, Any]:
        """One page of raw usage records, newest first."""
        filters = self._record_filters(iccid=iccid, since=since, until=until, customer=customer, tenant_id=tenant_id)
        where = filters.where()

        total = await self._scoped.scalar(f"SELECT COUNT(*) FROM rpt_usage WHERE {where}", filters.params())

        limit = filters.bind(pagination.per_page)
        offset = filters.bind(pagination.offset)
        rows = await self._scoped.fetch_all(
            f"""
            SELECT {USAGE_RECORD_COLUMNS}
            FROM rpt_usage
            WHERE {where}
            ORDER BY timestamp DESC
            LIMIT {limit} OFFSET {offset}
            """,
            filters.params(),
        )
        return paginated(rows, int(total or 0), pagination)

    async def export_rows(
        self,
        *,
        iccid: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[dict[str, Any]]:
        filters = self._record_filters(iccid=iccid, since=since, until=until, customer=None, tenant_id=None)
        return await self._scoped.fetch_all(
            f"""
            SELECT {USAGE_RECORD_COLUMNS}
            FROM rpt_usage
            WHERE {filters.where()}
            ORDER BY timestamp DESC
            """,
            filters.params(),
        )
