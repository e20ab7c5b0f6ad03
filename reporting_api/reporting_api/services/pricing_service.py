"""Bundle pricing and the monthly revenue report.

Prices live in the session store under ``pricing:all`` as
``{"prices": [{"tenant_id", "bundle_moniker", "monthly_price"}]}``.
``monthly_price`` is the fixed charge per endpoint per month; older
records may still carry it as ``price_per_gb``.

Revenue for a month is ``monthly_price * endpoint_count``, where the
endpoint count is the number of distinct ICCIDs with an active or
depleted bundle instance overlapping that month.
"""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime
from typing import Any

from reporting_api.services.directory_service import DirectoryService
from reporting_core.state.session_store import SessionStore, pricing_key
from reporting_core.tenancy.guard import ScopedSession

logger = logging.getLogger(__name__)

REVENUE_VIEWS: tuple[str, ...] = ("tenant", "customer")
MAX_REVENUE_MONTHS = 24
DEFAULT_REVENUE_MONTHS = 6

_UNKNOWN_CUSTOMER = "Unknown"


def month_windows(now: datetime, months: int) -> list[tuple[date, date]]:
    """``(start, next_start)`` for the *months* calendar months ending with *now*'s, oldest first."""
    year, month = now.year, now.month
    starts: list[date] = []
    for _ in range(months):
        starts.append(date(year, month, 1))
        year, month = (year - 1, 12) if month == 1 else (year, month - 1)
    starts.reverse()
    return [(start, _next_month(start)) for start in starts]


def _next_month(start: date) -> date:
    return date(start.year + 1, 1, 1) if start.month == 12 else date(start.year, start.month + 1, 1)


def _midnight(day: date) -> datetime:
    return datetime(day.year, day.month, day.day, tzinfo=UTC)


class PricingService:
    """Read and replace the stored price list."""

    def __init__(self, store: SessionStore) -> None:
        self._store = store

    async def load(self) -> list[dict[str, Any]]:
        stored = await self._store.get(pricing_key()) or {}
        return [
            {
                "tenant_id": entry.get("tenant_id"),
                "bundle_moniker": entry.get("bundle_moniker"),
                "monthly_price": float(entry.get("monthly_price", entry.get("price_per_gb")) or 0.0),
            }
            for entry in stored.get("prices", [])
        ]

    async def save(self, entries: list[dict[str, Any]]) -> int:
        """Replace the price list with the non-zero *entries*; return how many were kept."""
        kept = [entry for entry in entries if entry["monthly_price"] > 0]
        await self._store.put(pricing_key(), {"prices": kept})
        logger.info("Saved %d bundle prices (%d zero entries dropped)", len(kept), len(entries) - len(kept))
        return len(kept)

    async def price_map(self) -> dict[tuple[str, str], float]:
        return {(entry["tenant_id"], entry["bundle_moniker"]): entry["monthly_price"] for entry in await self.load()}

    async def enriched(self, scoped: ScopedSession) -> list[dict[str, Any]]:
        """The price list with tenant and bundle display names."""
        tenant_names = {row["tenant_id"]: row["tenant_name"] for row in await DirectoryService(scoped).tenants()}
        filters = scoped.filters()
        filters.add_raw("LOWER(status_name) = 'active'")
        bundles = await scoped.fetch_all(
            f"SELECT DISTINCT bundle_moniker, bundle_name FROM rpt_bundles WHERE {filters.where()}",
            filters.params(),
        )
        bundle_names = {row["bundle_moniker"]: row["bundle_name"] for row in bundles}
        return [
            {
                **entry,
                "tenant_name": tenant_names.get(entry["tenant_id"], entry["tenant_id"]),
                "bundle_name": bundle_names.get(entry["bundle_moniker"], entry["bundle_moniker"]),
            }
            for entry in await self.load()
        ]


class RevenueService:
    """Monthly revenue by tenant or by customer, within the caller's scope."""

    def __init__(self, scoped: ScopedSession, pricing: PricingService, *, now: datetime | None = None) -> None:
        self._scoped = scoped
        self._identity = scoped.identity
        self._pricing = pricing
        self._now = now or datetime.now(UTC)

    async def _billable_instances(
        self,
        windows: list[tuple[date, date]],
        *,
        tenant_id: str | None,
        customer: str | None,
    ) -> list[dict[str, Any]]:
        filters = self._scoped.filters()
        filters.override_tenant(self._identity, tenant_id)
        filters.scope_customer(self._identity, customer)
        filters.add_raw("LOWER(status_name) IN ('active', 'depleted')")
        where = filters.where()

        overlaps = []
        for index, (start, next_start) in enumerate(windows):
            lower = filters.bind(_midnight(start))
            upper = filters.bind(_midnight(next_start))
            overlaps.append(f"CASE WHEN start_time < {upper} AND end_time >= {lower} THEN 1 ELSE 0 END AS m{index}")
        range_start = filters.bind(_midnight(windows[0][0]))
        range_end = filters.bind(_midnight(windows[-1][1]))

        return await self._scoped.fetch_all(
            f"""
            WITH ranked AS (
              SELECT iccid, customer_name, tenant_id, bundle_name, bundle_moniker,
                     start_time, end_time, data_allowance_mb,
                     ROW_NUMBER() OVER (
                       PARTITION BY iccid, bundle_moniker, sequence, start_time
                       ORDER BY synced_at DESC
                     ) AS sync_rank
              FROM rpt_bundle_instances
              WHERE {where}
            )
            SELECT iccid, customer_name, tenant_id, bundle_name, bundle_moniker, data_allowance_mb,
                   {", ".join(overlaps)}
            FROM ranked
            WHERE sync_rank = 1 AND start_time < {range_end} AND end_time >= {range_start}
            """,
            filters.params(),
        )

    async def monthly(
        self,
        *,
        months: int = DEFAULT_REVENUE_MONTHS,
        view: str = "tenant",
        tenant_id: str | None = None,
        customer: str | None = None,
    ) -> dict[str, Any]:
        if view not in REVENUE_VIEWS:
            raise ValueError(f"unknown revenue view {view!r}")
        months = min(max(months, 1), MAX_REVENUE_MONTHS)
        windows = month_windows(self._now, months)
        rows = await self._billable_instances(windows, tenant_id=tenant_id, customer=customer)

        groups: dict[tuple[int, str, str, str | None], dict[str, Any]] = {}
        for row in rows:
            for index in range(len(windows)):
                if not row[f"m{index}"]:
                    continue
                key = (index, row["bundle_moniker"], row["tenant_id"], row["customer_name"])
                group = groups.setdefault(key, {"iccids": set(), "bundle_name": None, "allowance_mb": 0.0})
                if row["iccid"] is not None:
                    group["iccids"].add(row["iccid"])
                if row["bundle_name"] and (group["bundle_name"] is None or row["bundle_name"] > group["bundle_name"]):
                    group["bundle_name"] = row["bundle_name"]
                group["allowance_mb"] = max(group["allowance_mb"], float(row["data_allowance_mb"] or 0.0))

        prices = await self._pricing.price_map()
        tenant_names = {row["tenant_id"]: row["tenant_name"] for row in await DirectoryService(self._scoped).tenants()}

        data = []
        for key in sorted(groups, key=lambda k: (k[0], k[1] or "", k[2] or "", k[3] or "")):
            index, moniker, tenant, customer_name = key
            group = groups[key]
            tenant_name = tenant_names.get(tenant, tenant)
            customer_label = customer_name or _UNKNOWN_CUSTOMER
            monthly_price = prices.get((tenant, moniker), 0.0)
            endpoint_count = len(group["iccids"])
            data.append(
                {
                    "month": windows[index][0].isoformat(),
                    "bundle_moniker": moniker,
                    "bundle_name": group["bundle_name"],
                    "tenant_id": tenant,
                    "tenant_name": tenant_name,
                    "customer_name": customer_label,
                    "group_key": tenant if view == "tenant" else customer_label,
                    "group_name": tenant_name if view == "tenant" else customer_label,
                    "endpoint_count": endpoint_count,
                    "allowance_gb": group["allowance_mb"] / 1024,
                    "monthly_price": monthly_price,
                    "revenue": monthly_price * endpoint_count,
                }
            )
        return {"view": view, "months": months, "data": data}
