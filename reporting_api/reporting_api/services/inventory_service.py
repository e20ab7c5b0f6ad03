"""Bundle, bundle-instance and endpoint reports.

Bundle instances are synchronised from a host system that occasionally
re-delivers the same logical instance under a new id and leaves stale
statuses behind.  The instance queries therefore

* keep only the most recently synced row per
  ``(iccid, bundle_moniker, sequence, start_time)``, and
* derive an ``effective_status`` from the host status, the data
  counters and the validity window.

The current time is bound as a parameter rather than read with ``NOW()``
so the classification is reproducible for a given request.
"""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime, timedelta
from typing import Any

from reporting_api.pagination import Pagination, paginated
from reporting_core.state.database import dialect_name
from reporting_core.tenancy.filters import QueryFilters
from reporting_core.tenancy.guard import ScopedSession

logger = logging.getLogger(__name__)

BUNDLE_COLUMNS = (
    "id, source_id AS bundle_id, bundle_name, bundle_moniker, "
    "price, currency, formatted_price, "
    "allowance, allowance_moniker, "
    "bundle_type_name, offer_type_name, status_name, "
    "effective_from, effective_to"
)

INSTANCE_COLUMNS = (
    "id, iccid, customer_name, endpoint_name, "
    "bundle_name, bundle_moniker, bundle_instance_id, "
    "start_time, end_time, status_name, status_moniker, "
    "sequence, sequence_max, data_used_mb, data_allowance_mb"
)

ENDPOINT_COLUMNS = (
    "id, source_id AS endpoint_identifier, endpoint_name, endpoint_type, endpoint_type_name, "
    "status, endpoint_status_name, network_status_name, "
    "usage_rolling_24h, usage_rolling_7d, usage_rolling_28d, usage_rolling_1y, "
    "charge_rolling_24h, charge_rolling_7d, charge_rolling_28d, charge_rolling_1y, "
    "first_activity, latest_activity"
)

BUNDLE_DETAIL_INSTANCE_LIMIT = 50

# A stalled sequence's next instance counts as active if it started this recently.
STALL_GRACE = timedelta(days=3)

GROUPINGS = ("daily", "monthly", "annual")

# Endpoints are linked to customers only through their bundle instances.
_ENDPOINT_CUSTOMER_CLAUSE = (
    "endpoint_name IN (SELECT DISTINCT bi.endpoint_name FROM rpt_bundle_instances bi "
    "WHERE bi.customer_name = {} AND bi.endpoint_name IS NOT NULL)"
)


def _effective_status_case(now: str) -> str:
    depleted_with_headroom = (
        "LOWER(status_name) = 'depleted' AND data_allowance_mb > 0 AND data_used_mb < data_allowance_mb"
    )
    return f"""
        CASE
          WHEN {depleted_with_headroom} AND end_time < {now} THEN 'Terminated'
          WHEN {depleted_with_headroom} AND start_time <= {now} AND end_time >= {now} THEN 'Live'
          WHEN {depleted_with_headroom} THEN 'Active'
          WHEN LOWER(status_name) = 'active' AND data_allowance_mb > 0 AND data_used_mb >= data_allowance_mb
            THEN 'Depleted'
          WHEN LOWER(status_name) = 'active' AND end_time < {now} THEN 'Terminated'
          WHEN LOWER(status_name) = 'active' AND start_time <= {now} AND end_time >= {now} THEN 'Live'
          ELSE status_name
        END"""


def _period_expression(dialect: str, group_by: str) -> str:
    if group_by == "daily":
        return "usage_date"
    unit = "month" if group_by == "monthly" else "year"
    if "sqlite" in dialect:
        return "strftime('%Y-%m-01', usage_date)" if unit == "month" else "strftime('%Y-01-01', usage_date)"
    return f"CAST(date_trunc('{unit}', usage_date) AS DATE)"


class BundleService:
    """Bundle catalogue and bundle-instance reports."""

    def __init__(self, scoped: ScopedSession, *, now: datetime | None = None) -> None:
        self._scoped = scoped
        self._identity = scoped.identity
        self._now = now or datetime.now(UTC)

    async def list_bundles(self, pagination: Pagination, *, status: str | None = None) -> dict[str, Any]:
        filters = self._scoped.filters()
        if status:
            filters.add("LOWER(status_name) = LOWER({})", status)
        where = filters.where()

        total = await self._scoped.scalar(f"SELECT COUNT(*) FROM rpt_bundles WHERE {where}", filters.params())
        limit = filters.bind(pagination.per_page)
        offset = filters.bind(pagination.offset)
        rows = await self._scoped.fetch_all(
            f"""
            SELECT {BUNDLE_COLUMNS}
            FROM rpt_bundles
            WHERE {where}
            ORDER BY bundle_name ASC
            LIMIT {limit} OFFSET {offset}
            """,
            filters.params(),
        )
        return paginated(rows, int(total or 0), pagination)

    async def bundle_detail(self, bundle_id: str) -> dict[str, Any] | None:
        """A bundle (by numeric id or source id) plus its most recent instances.

        Returns ``None`` when no visible bundle matches.
        """
        filters = self._scoped.filters()
        filters.add("(CAST(id AS TEXT) = {} OR source_id = {})", bundle_id, bundle_id)
        bundle = await self._scoped.fetch_one(
            f"SELECT {BUNDLE_COLUMNS} FROM rpt_bundles WHERE {filters.where()} LIMIT 1",
            filters.params(),
        )
        if bundle is None:
            return None

        instance_filters = self._scoped.filters()
        instance_filters.add("bundle_moniker = {}", bundle["bundle_moniker"])
        instance_filters.scope_customer(self._identity)
        limit = instance_filters.bind(BUNDLE_DETAIL_INSTANCE_LIMIT)
        instances = await self._scoped.fetch_all(
            f"""
            SELECT id, iccid, customer_name, endpoint_name,
                   bundle_instance_id, start_time, end_time,
                   status_name, status_moniker,
                   sequence, sequence_max,
                   data_used_mb, data_allowance_mb
            FROM rpt_bundle_instances
            WHERE {instance_filters.where()}
            ORDER BY start_time DESC
            LIMIT {limit}
            """,
            instance_filters.params(),
        )
        return {"bundle": bundle, "instances": instances, "instance_count": len(instances)}

    def _instance_filters(
        self,
        *,
        iccid: str | None,
        bundle_id: str | None,
        expiring_before: datetime | None,
        final_only: bool,
        customer: str | None,
        tenant_id: str | None,
    ) -> QueryFilters:
        filters = self._scoped.filters()
        filters.override_tenant(self._identity, tenant_id)
        filters.scope_customer(self._identity, customer)
        if iccid:
            filters.add("LOWER(iccid) LIKE LOWER({})", f"%{iccid}%")
        if bundle_id:
            marker = filters.bind(bundle_id)
            filters.add_raw(f"(bundle_moniker = {marker} OR bundle_instance_id = {marker})")
        if expiring_before is not None:
            filters.add("end_time <= {}", expiring_before)
        if final_only:
            filters.add_raw("sequence IS NOT NULL AND sequence_max IS NOT NULL AND sequence = sequence_max")
        return filters

    def _instances_cte(self, filters: QueryFilters) -> str:
        where = filters.where()
        now = filters.bind(self._now)
        return f"""
            WITH ranked AS (
              SELECT {INSTANCE_COLUMNS},
                     ROW_NUMBER() OVER (
                       PARTITION BY iccid, bundle_moniker, sequence, start_time
                       ORDER BY synced_at DESC
                     ) AS sync_rank
              FROM rpt_bundle_instances
              WHERE {where}
            ),
            instances AS (
              SELECT {INSTANCE_COLUMNS},
                     {_effective_status_case(now)} AS effective_status
              FROM ranked
              WHERE sync_rank = 1
            )"""

    def _status_clause(self, filters: QueryFilters, status: str | None) -> str:
        if not status:
            return ""
        wanted = status.lower()
        if wanted == "live":
            return " AND LOWER(effective_status) = 'live'"
        if wanted == "active":
            return " AND LOWER(effective_status) IN ('active', 'live')"
        if wanted == "stalled":
            now = filters.bind(self._now)
            grace = filters.bind(self._now - STALL_GRACE)
            return f"""
              AND sequence IS NOT NULL AND sequence_max IS NOT NULL
              AND sequence < sequence_max
              AND end_time < {now}
              AND LOWER(effective_status) <> 'terminated'
              AND NOT EXISTS (
                SELECT 1 FROM instances nxt
                WHERE nxt.iccid = instances.iccid
                  AND nxt.bundle_moniker = instances.bundle_moniker
                  AND nxt.bundle_instance_id = instances.bundle_instance_id
                  AND nxt.sequence > instances.sequence
                  AND nxt.start_time <= {now}
                  AND (nxt.data_used_mb > 0 OR nxt.start_time > {grace})
              )"""
        return f" AND LOWER(effective_status) = LOWER({filters.bind(status)})"

    async def list_instances(
        self,
        pagination: Pagination,
        *,
        iccid: str | None = None,
        bundle_id: str | None = None,
        status: str | None = None,
        expiring_before: datetime | None = None,
        final_only: bool = False,
        customer: str | None = None,
        tenant_id: str | None = None,
    ) -> dict[str, Any]:
        """Deduplicated bundle instances with their effective status."""
        filters = self._instance_filters(
            iccid=iccid,
            bundle_id=bundle_id,
            expiring_before=expiring_before,
            final_only=final_only,
            customer=customer,
            tenant_id=tenant_id,
        )
        cte = self._instances_cte(filters)
        status_clause = self._status_clause(filters, status)

        total = await self._scoped.scalar(
            f"{cte} SELECT COUNT(*) FROM instances WHERE 1=1{status_clause}",
            filters.params(),
        )
        limit = filters.bind(pagination.per_page)
        offset = filters.bind(pagination.offset)
        rows = await self._scoped.fetch_all(
            f"""{cte}
            SELECT id, iccid, customer_name, endpoint_name,
                   bundle_name, bundle_moniker, bundle_instance_id,
                   start_time, end_time,
                   effective_status AS status_name, status_moniker,
                   sequence, sequence_max,
                   data_used_mb, data_allowance_mb
            FROM instances
            WHERE 1=1{status_clause}
            ORDER BY start_time DESC
            LIMIT {limit} OFFSET {offset}
            """,
            filters.params(),
        )
        return paginated(rows, int(total or 0), pagination)

    async def export_bundles(self) -> list[dict[str, Any]]:
        filters = self._scoped.filters()
        return await self._scoped.fetch_all(
            f"""
            SELECT source_id AS bundle_id, bundle_name, bundle_moniker,
                   price, currency, allowance, allowance_moniker,
                   status_name, effective_from, effective_to
            FROM rpt_bundles
            WHERE {filters.where()}
            ORDER BY bundle_name ASC
            """,
            filters.params(),
        )

    async def export_instances(self, *, iccid: str | None = None) -> list[dict[str, Any]]:
        filters = self._scoped.filters()
        filters.scope_customer(self._identity)
        if iccid:
            filters.add("iccid = {}", iccid)
        return await self._scoped.fetch_all(
            f"""
            SELECT {INSTANCE_COLUMNS}
            FROM rpt_bundle_instances
            WHERE {filters.where()}
            ORDER BY start_time DESC
            """,
            filters.params(),
        )


class EndpointService:
    """Device endpoint listings and per-endpoint usage."""

    def __init__(self, scoped: ScopedSession) -> None:
        self._scoped = scoped
        self._identity = scoped.identity

    def _customer_filter(self, filters: QueryFilters, requested: str | None) -> None:
        customer = self._identity.customer_scope or requested
        if customer:
            filters.add(_ENDPOINT_CUSTOMER_CLAUSE, customer)

    async def list_endpoints(
        self,
        pagination: Pagination,
        *,
        status: str | None = None,
        customer: str | None = None,
        tenant_id: str | None = None,
    ) -> dict[str, Any]:
        filters = self._scoped.filters()
        filters.override_tenant(self._identity, tenant_id)
        self._customer_filter(filters, customer)
        if status:
            marker = filters.bind(status)
            filters.add_raw(f"(LOWER(status) = LOWER({marker}) OR LOWER(endpoint_status_name) = LOWER({marker}))")
        where = filters.where()

        total = await self._scoped.scalar(f"SELECT COUNT(*) FROM rpt_endpoints WHERE {where}", filters.params())
        limit = filters.bind(pagination.per_page)
        offset = filters.bind(pagination.offset)
        idle = "COALESCE(usage_rolling_28d, 0) = 0 AND COALESCE(usage_rolling_1y, 0) = 0"
        rows = await self._scoped.fetch_all(
            f"""
            SELECT {ENDPOINT_COLUMNS}
            FROM rpt_endpoints
            WHERE {where}
            ORDER BY
              CASE WHEN {idle} THEN 1 ELSE 0 END,
              CASE WHEN {idle} THEN LENGTH(COALESCE(endpoint_name, '')) END DESC,
              endpoint_name ASC NULLS LAST
            LIMIT {limit} OFFSET {offset}
            """,
            filters.params(),
        )
        return paginated(rows, int(total or 0), pagination)

    async def endpoint_usage(
        self,
        endpoint_id: str,
        *,
        group_by: str = "daily",
        date_from: date | None = None,
        date_to: date | None = None,
        customer: str | None = None,
        tenant_id: str | None = None,
    ) -> dict[str, Any] | None:
        """Usage of one endpoint grouped by period; ``None`` if not visible.

        Raises
        ------
        ValueError
            If *group_by* is not one of :data:`GROUPINGS`.
        """
        if group_by not in GROUPINGS:
            raise ValueError(f"Invalid group_by: {group_by}")

        lookup = self._scoped.filters()
        lookup.add("(CAST(id AS TEXT) = {} OR source_id = {})", endpoint_id, endpoint_id)
        endpoint = await self._scoped.fetch_one(
            f"SELECT endpoint_name FROM rpt_endpoints WHERE {lookup.where()} LIMIT 1",
            lookup.params(),
        )
        if endpoint is None:
            return None
        endpoint_name = endpoint["endpoint_name"]

        period = _period_expression(dialect_name(self._scoped.session), group_by)
        filters = self._scoped.filters()
        filters.add("endpoint_name = {}", endpoint_name)
        filters.override_tenant(self._identity, tenant_id)
        filters.scope_customer(self._identity, customer)
        if date_from is not None:
            filters.add("usage_date >= {}", date_from)
        if date_to is not None:
            filters.add("usage_date <= {}", date_to)

        rows = await self._scoped.fetch_all(
            f"""
            SELECT
              {period} AS date,
              SUM(consumption) AS consumption,
              SUM(uplink_bytes + downlink_bytes) AS total_bytes,
              SUM(buy_charge) AS buy_total,
              SUM(sell_charge) AS sell_total,
              COUNT(*) AS records
            FROM rpt_usage
            WHERE {filters.where()}
            GROUP BY {period}
            ORDER BY {period} ASC
            """,
            filters.params(),
        )
        return {
            "endpoint": endpoint_name,
            "endpoint_id": endpoint_id,
            "period": {
                "from": date_from.isoformat() if date_from else "all",
                "to": date_to.isoformat() if date_to else "now",
                "group_by": group_by,
            },
            "data": [
                {
                    "date": str(row["date"]) if row["date"] is not None else None,
                    "consumption": float(row["consumption"] or 0),
                    "total_bytes": int(row["total_bytes"] or 0),
                    "buy_total": float(row["buy_total"] or 0),
                    "sell_total": float(row["sell_total"] or 0),
                    "records": int(row["records"] or 0),
                }
                for row in rows
            ],
        }

    async def export_endpoints(self) -> list[dict[str, Any]]:
        filters = self._scoped.filters()
        self._customer_filter(filters, None)
        return await self._scoped.fetch_all(
            f"""
            SELECT source_id AS endpoint_identifier, endpoint_name, endpoint_type,
                   status, endpoint_status_name,
                   usage_rolling_24h, usage_rolling_7d, usage_rolling_28d, usage_rolling_1y,
                   charge_rolling_24h, charge_rolling_7d, charge_rolling_28d, charge_rolling_1y,
                   first_activity, latest_activity
            FROM rpt_endpoints
            WHERE {filters.where()}
            ORDER BY endpoint_name ASC
            """,
            filters.params(),
        )
