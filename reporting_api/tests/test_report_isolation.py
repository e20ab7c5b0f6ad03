"""Tenant isolation across the report endpoints.

Fixture data (see conftest): T1 is the parent of T2, T3 is unrelated.
T1 carries customers Acme and Beta, T2 carries Delta, T3 carries Other.
"""

from __future__ import annotations

from datetime import UTC, date, datetime

import pytest
from reporting_api.services.pricing_service import PricingService, RevenueService, month_windows
from reporting_core.tenancy.guard import tenant_scope

TENANT_ONE = {"CF-Access-Client-Id": "svc-tenant-one"}
TENANT_THREE = {"CF-Access-Client-Id": "svc-tenant-three"}
ACME = {"CF-Access-Client-Id": "svc-acme"}
PLATFORM = {"CF-Access-Client-Id": "svc-platform"}


def _iccids(body: dict) -> set[str]:
    return {row["iccid"] for row in body["data"]}


# ---------------------------------------------------------------------------
# Authentication gate
# ---------------------------------------------------------------------------


class TestAuthenticationGate:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", ["/", "/health", "/api/v1", "/api/v1/health"])
    async def test_public_paths(self, client, path):
        response = await client.get(path)
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_api_info_lists_endpoints(self, client):
        body = (await client.get("/api/v1")).json()
        assert body["api_version"] == "v1"
        assert "POST /api/v1/export" in body["endpoints"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "path",
        ["/api/v1/usage/records", "/api/v1/bundles", "/api/v1/bundle-instances", "/api/v1/endpoints"],
    )
    async def test_missing_credentials(self, client, path):
        response = await client.get(path)
        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized", "status": 401, "detail": "Valid credentials required"}

    @pytest.mark.asyncio
    async def test_unknown_service_token(self, client):
        response = await client.get("/api/v1/bundles", headers={"CF-Access-Client-Id": "svc-nobody"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_dev_header_disabled(self, client):
        response = await client.get("/api/v1/bundles", headers={"X-Tenant-Id": "T1"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_dev_header_enabled(self, make_app, test_settings):
        from httpx import ASGITransport, AsyncClient

        settings = test_settings.model_copy(update={"dev_tenant_header_enabled": True})
        app = make_app(settings)
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            response = await ac.get("/api/v1/bundles", headers={"X-Tenant-Id": "T3"})
        assert response.status_code == 200
        assert [row["bundle_id"] for row in response.json()["data"]] == ["src-3"]


# ---------------------------------------------------------------------------
# Usage
# ---------------------------------------------------------------------------


class TestUsageIsolation:
    @pytest.mark.asyncio
    async def test_tenant_sees_self_and_children(self, client):
        body = (await client.get("/api/v1/usage/records", headers=TENANT_ONE)).json()
        assert _iccids(body) == {"8944000000000000001", "8944000000000000002", "8944000000000000003"}
        assert body["pagination"]["total"] == 3

    @pytest.mark.asyncio
    async def test_tenant_cannot_redirect_with_tenant_id(self, client):
        body = (await client.get("/api/v1/usage/records?tenant_id=T3", headers=TENANT_ONE)).json()
        assert "8944000000000000009" not in _iccids(body)
        assert body["pagination"]["total"] == 3

    @pytest.mark.asyncio
    async def test_unrelated_tenant_isolated(self, client):
        body = (await client.get("/api/v1/usage/records", headers=TENANT_THREE)).json()
        assert _iccids(body) == {"8944000000000000009"}

    @pytest.mark.asyncio
    async def test_customer_pinned_to_own_scope(self, client):
        body = (await client.get("/api/v1/usage/records?customer=Beta", headers=ACME)).json()
        assert _iccids(body) == {"8944000000000000001"}

    @pytest.mark.asyncio
    async def test_admin_sees_everything(self, client):
        body = (await client.get("/api/v1/usage/records", headers=PLATFORM)).json()
        assert body["pagination"]["total"] == 4

    @pytest.mark.asyncio
    async def test_admin_may_focus_on_tenant(self, client):
        body = (await client.get("/api/v1/usage/records?tenant_id=T3", headers=PLATFORM)).json()
        assert _iccids(body) == {"8944000000000000009"}

    @pytest.mark.asyncio
    async def test_iccid_filter(self, client):
        body = (await client.get("/api/v1/usage/records?iccid=8944000000000000002", headers=TENANT_ONE)).json()
        assert _iccids(body) == {"8944000000000000002"}

    @pytest.mark.asyncio
    async def test_pagination_envelope(self, client):
        body = (await client.get("/api/v1/usage/records?page=2&per_page=2", headers=TENANT_ONE)).json()
        assert body["pagination"] == {"page": 2, "per_page": 2, "total": 3, "total_pages": 2}
        assert len(body["data"]) == 1

    @pytest.mark.asyncio
    async def test_summary_scoped(self, client):
        body = (await client.get("/api/v1/usage/summary?group_by=daily", headers=TENANT_ONE)).json()
        assert body["summary"]["total_consumption"] == pytest.approx(17.0)
        assert body["summary"]["total_records"] == 3
        assert [row["date"] for row in body["data"]] == ["2026-01-01", "2026-01-02"]
        assert body["tenant"] == "Tenant One"

    @pytest.mark.asyncio
    async def test_summary_date_range(self, client):
        response = await client.get("/api/v1/usage/summary?from=2026-01-02&to=2026-01-31", headers=TENANT_ONE)
        body = response.json()
        assert body["summary"]["total_consumption"] == pytest.approx(2.0)
        assert body["period"] == {"from": "2026-01-02", "to": "2026-01-31", "group_by": "daily"}

    @pytest.mark.asyncio
    async def test_summary_customer(self, client):
        body = (await client.get("/api/v1/usage/summary", headers=ACME)).json()
        assert body["summary"]["total_consumption"] == pytest.approx(10.0)

    @pytest.mark.asyncio
    async def test_summary_monthly(self, client):
        body = (await client.get("/api/v1/usage/summary?group_by=monthly", headers=TENANT_ONE)).json()
        assert body["data"][0]["date"] == "2026-01-01"
        assert body["period"]["group_by"] == "monthly"

    @pytest.mark.asyncio
    async def test_summary_bad_group_by(self, client):
        response = await client.get("/api/v1/usage/summary?group_by=weekly", headers=TENANT_ONE)
        assert response.status_code == 400
        assert response.json()["error"] == "Bad Request"

    @pytest.mark.asyncio
    async def test_summary_bad_date(self, client):
        response = await client.get("/api/v1/usage/summary?from=yesterday", headers=TENANT_ONE)
        assert response.status_code == 400
        assert "yesterday" not in response.text


# ---------------------------------------------------------------------------
# Bundles and instances
# ---------------------------------------------------------------------------


class TestBundleIsolation:
    @pytest.mark.asyncio
    async def test_list_scoped(self, client):
        body = (await client.get("/api/v1/bundles", headers=TENANT_ONE)).json()
        assert [row["bundle_id"] for row in body["data"]] == ["src-1"]

    @pytest.mark.asyncio
    async def test_detail_visible(self, client):
        response = await client.get("/api/v1/bundles/src-1", headers=TENANT_ONE)
        assert response.status_code == 200
        body = response.json()
        assert body["bundle"]["bundle_name"] == "Starter 1GB"
        assert body["instance_count"] == 3

    @pytest.mark.asyncio
    async def test_detail_of_other_tenant_is_404(self, client):
        response = await client.get("/api/v1/bundles/src-3", headers=TENANT_ONE)
        assert response.status_code == 404
        assert response.json()["detail"] == "Bundle not found"

    @pytest.mark.asyncio
    async def test_detail_customer_sees_own_instances(self, client):
        body = (await client.get("/api/v1/bundles/src-1", headers=ACME)).json()
        assert {row["customer_name"] for row in body["instances"]} == {"Acme"}

    @pytest.mark.asyncio
    async def test_instances_deduplicated(self, client):
        body = (await client.get("/api/v1/bundle-instances", headers=TENANT_ONE)).json()
        assert body["pagination"]["total"] == 2
        newest = next(row for row in body["data"] if row["bundle_instance_id"] == "BI-1")
        assert newest["data_used_mb"] == pytest.approx(10.0)

    @pytest.mark.asyncio
    async def test_effective_status(self, client):
        body = (await client.get("/api/v1/bundle-instances", headers=TENANT_ONE)).json()
        statuses = {row["bundle_instance_id"]: row["status_name"] for row in body["data"]}
        assert statuses == {"BI-1": "Live", "BI-2": "Terminated"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(("status", "expected"), [("live", {"BI-1"}), ("active", {"BI-1"}), ("terminated", {"BI-2"})])
    async def test_status_filter(self, client, status, expected):
        body = (await client.get(f"/api/v1/bundle-instances?status={status}", headers=TENANT_ONE)).json()
        assert {row["bundle_instance_id"] for row in body["data"]} == expected

    @pytest.mark.asyncio
    async def test_instances_customer_scope(self, client):
        body = (await client.get("/api/v1/bundle-instances", headers=ACME)).json()
        assert {row["customer_name"] for row in body["data"]} == {"Acme"}

    @pytest.mark.asyncio
    async def test_instances_iccid_substring(self, client):
        body = (await client.get("/api/v1/bundle-instances?iccid=0002", headers=TENANT_ONE)).json()
        assert [row["bundle_instance_id"] for row in body["data"]] == ["BI-2"]

    @pytest.mark.asyncio
    async def test_instances_hidden_from_unrelated_tenant(self, client):
        body = (await client.get("/api/v1/bundle-instances", headers=TENANT_THREE)).json()
        assert {row["bundle_instance_id"] for row in body["data"]} == {"BI-3"}


# ---------------------------------------------------------------------------
# Endpoints and filters
# ---------------------------------------------------------------------------


class TestEndpointIsolation:
    @pytest.mark.asyncio
    async def test_list_scoped(self, client):
        body = (await client.get("/api/v1/endpoints", headers=TENANT_ONE)).json()
        assert {row["endpoint_name"] for row in body["data"]} == {"EP-A", "EP-B"}

    @pytest.mark.asyncio
    async def test_customer_sees_linked_endpoints_only(self, client):
        body = (await client.get("/api/v1/endpoints", headers=ACME)).json()
        assert {row["endpoint_name"] for row in body["data"]} == {"EP-A"}

    @pytest.mark.asyncio
    async def test_endpoint_usage(self, client):
        response = await client.get("/api/v1/endpoints/ep-src-a/usage", headers=TENANT_ONE)
        assert response.status_code == 200
        body = response.json()
        assert body["endpoint"] == "EP-A"
        assert body["data"][0]["consumption"] == pytest.approx(10.0)
        assert body["data"][0]["total_bytes"] == 300

    @pytest.mark.asyncio
    async def test_endpoint_usage_other_tenant_is_404(self, client):
        response = await client.get("/api/v1/endpoints/ep-src-c/usage", headers=TENANT_ONE)
        assert response.status_code == 404


class TestFilters:
    @pytest.mark.asyncio
    async def test_tenants_for_parent(self, client):
        body = (await client.get("/api/v1/filters/tenants", headers=TENANT_ONE)).json()
        assert [row["tenant_id"] for row in body["tenants"]] == ["T1", "T2"]

    @pytest.mark.asyncio
    async def test_tenants_for_admin(self, client):
        body = (await client.get("/api/v1/filters/tenants", headers=PLATFORM)).json()
        assert {row["tenant_id"] for row in body["tenants"]} == {"T1", "T2", "T3"}

    @pytest.mark.asyncio
    async def test_customers_for_tenant(self, client):
        body = (await client.get("/api/v1/filters/customers", headers=TENANT_ONE)).json()
        assert body["customers"] == ["Acme", "Beta"]

    @pytest.mark.asyncio
    async def test_customers_for_customer(self, client):
        body = (await client.get("/api/v1/filters/customers", headers=ACME)).json()
        assert body["customers"] == ["Acme"]


# ---------------------------------------------------------------------------
# Pricing and revenue
# ---------------------------------------------------------------------------


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _revenue_scope(body: dict) -> tuple[set[str], set[str]]:
    return {row["tenant_id"] for row in body["data"]}, {row["customer_name"] for row in body["data"]}


class TestPricing:
    @pytest.mark.asyncio
    async def test_save_and_read_prices(self, client, open_session, admin_user):
        token = await open_session(admin_user)
        saved = await client.put(
            "/api/v1/admin/pricing",
            headers=_bearer(token),
            json={
                "prices": [
                    {"tenant_id": "T1", "bundle_moniker": "B1", "monthly_price": 10.0},
                    {"tenant_id": "T3", "bundle_moniker": "B3", "monthly_price": 0},
                ]
            },
        )
        assert saved.json() == {"status": "ok", "saved": 1}

        prices = (await client.get("/api/v1/admin/pricing", headers=_bearer(token))).json()["prices"]
        assert prices == [
            {
                "tenant_id": "T1",
                "bundle_moniker": "B1",
                "monthly_price": 10.0,
                "tenant_name": "Tenant One",
                "bundle_name": "Starter 1GB",
            }
        ]

    @pytest.mark.asyncio
    async def test_negative_price_rejected(self, client, open_session, admin_user):
        token = await open_session(admin_user)
        response = await client.put(
            "/api/v1/admin/pricing",
            headers=_bearer(token),
            json={"prices": [{"tenant_id": "T1", "bundle_moniker": "B1", "monthly_price": -1}]},
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_pricing_requires_admin_session(self, client, open_session, tenant_user):
        token = await open_session(tenant_user)
        assert (await client.get("/api/v1/admin/pricing", headers=_bearer(token))).status_code == 403
        response = await client.put("/api/v1/admin/pricing", headers=PLATFORM, json={"prices": []})
        assert response.status_code == 403


class TestRevenueIsolation:
    @pytest.mark.asyncio
    async def test_tenant_scope(self, client):
        body = (await client.get("/api/v1/revenue/monthly?months=24", headers=TENANT_ONE)).json()
        assert _revenue_scope(body) == ({"T1"}, {"Acme", "Beta"})

    @pytest.mark.asyncio
    async def test_unrelated_tenant_isolated(self, client):
        body = (await client.get("/api/v1/revenue/monthly?months=24", headers=TENANT_THREE)).json()
        assert _revenue_scope(body) == ({"T3"}, {"Other"})

    @pytest.mark.asyncio
    async def test_tenant_cannot_redirect_with_tenant_id(self, client):
        body = (await client.get("/api/v1/revenue/monthly?months=24&tenant_id=T3", headers=TENANT_ONE)).json()
        assert _revenue_scope(body)[0] == {"T1"}

    @pytest.mark.asyncio
    async def test_customer_pinned_to_own_scope(self, client):
        body = (await client.get("/api/v1/revenue/monthly?months=24&customer=Beta", headers=ACME)).json()
        assert _revenue_scope(body) == ({"T1"}, {"Acme"})

    @pytest.mark.asyncio
    async def test_admin_sees_everything_and_may_focus(self, client):
        everything = (await client.get("/api/v1/revenue/monthly?months=24", headers=PLATFORM)).json()
        assert _revenue_scope(everything)[0] == {"T1", "T3"}
        focused = (await client.get("/api/v1/revenue/monthly?months=24&tenant_id=T3", headers=PLATFORM)).json()
        assert _revenue_scope(focused)[0] == {"T3"}

    @pytest.mark.asyncio
    async def test_bad_view(self, client):
        response = await client.get("/api/v1/revenue/monthly?view=region", headers=TENANT_ONE)
        assert response.status_code == 400
        assert response.json()["detail"] == 'view must be "tenant" or "customer"'

    @pytest.mark.asyncio
    async def test_months_clamped(self, client):
        body = (await client.get("/api/v1/revenue/monthly?months=99", headers=TENANT_ONE)).json()
        assert body["months"] == 24

    @pytest.mark.asyncio
    async def test_revenue_uses_stored_price(self, client, session_store):
        await PricingService(session_store).save([{"tenant_id": "T1", "bundle_moniker": "B1", "monthly_price": 7.5}])
        body = (await client.get("/api/v1/revenue/monthly?view=customer", headers=ACME)).json()
        assert body["data"]
        assert all(row["monthly_price"] == 7.5 for row in body["data"])
        assert all(row["revenue"] == 7.5 * row["endpoint_count"] for row in body["data"])
        assert {row["group_key"] for row in body["data"]} == {"Acme"}


def test_month_windows():
    assert month_windows(datetime(2026, 1, 20, tzinfo=UTC), 3) == [
        (date(2025, 11, 1), date(2025, 12, 1)),
        (date(2025, 12, 1), date(2026, 1, 1)),
        (date(2026, 1, 1), date(2026, 2, 1)),
    ]


@pytest.mark.asyncio
async def test_monthly_revenue_counts_billable_endpoints(session_factory, session_store, tenant_user):
    pricing = PricingService(session_store)
    await pricing.save([{"tenant_id": "T1", "bundle_moniker": "B1", "monthly_price": 4.0}])

    async with tenant_scope(session_factory, tenant_user) as scoped:
        january = await RevenueService(scoped, pricing, now=datetime(2026, 1, 20, tzinfo=UTC)).monthly(
            months=1, view="customer"
        )
        february = await RevenueService(scoped, pricing, now=datetime(2026, 2, 15, tzinfo=UTC)).monthly(
            months=1, view="customer"
        )

    # BI-1 is synced twice but counted once; BI-2 ended on 5 January.
    assert [(row["group_key"], row["endpoint_count"], row["revenue"]) for row in january["data"]] == [
        ("Acme", 1, 4.0),
        ("Beta", 1, 4.0),
    ]
    assert january["data"][0]["month"] == "2026-01-01"
    assert january["data"][0]["allowance_gb"] == 1.0
    assert [row["group_key"] for row in february["data"]] == ["Acme"]
