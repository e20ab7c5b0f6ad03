"""Shared fixtures for reporting API tests.

Builds the real application against an in-memory SQLite database and an
in-memory session store.  Credentials are issued through the same
token manager and store the credential resolver reads, so every request
goes through the full authentication path.
"""

from __future__ import annotations

import os
from collections.abc import Awaitable, Callable
from datetime import UTC, date, datetime

import bcrypt
import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr

# Keep the module-level app in reporting_api.main away from Redis/Postgres.
os.environ.setdefault("REPORTING_SESSION_STORE_BACKEND", "memory")
os.environ.setdefault("REPORTING_DATABASE_URL", "sqlite+aiosqlite://")

from reporting_api.auth.resolver import CredentialResolver
from reporting_api.config import APISettings, SessionStoreBackend
from reporting_api.dependencies import get_session_factory, get_settings
from reporting_api.main import create_app
from reporting_api.security import SessionTokenManager
from reporting_api.services.directory_service import SessionService
from reporting_core.state.session_store import InMemorySessionStore, service_token_key
from reporting_core.state.tables import (
    Base,
    BundleInstanceTable,
    BundleTable,
    EndpointTable,
    TenantTable,
    UsageTable,
    UserTable,
    aggregate_metadata,
    usage_daily,
    usage_monthly,
)
from reporting_core.tenancy.guard import tenant_scope
from reporting_core.tenancy.identity import AuthMethod, Role, TenantIdentity
from sqlalchemy import insert
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

_TEST_JWT_SECRET = "test-secret-key-for-reporting-tests"

# Low bcrypt cost keeps fixture setup fast; verification is cost-agnostic.
_USER_PASSWORD = "correct-horse-battery-staple"
_PASSWORD_HASH = bcrypt.hashpw(_USER_PASSWORD.encode("utf-8"), bcrypt.gensalt(rounds=4)).decode("utf-8")

SERVICE_TOKENS: dict[str, dict[str, str]] = {
    "svc-tenant-one": {"role": "tenant", "tenant_id": "T1", "tenant_name": "Tenant One"},
    "svc-tenant-three": {"role": "tenant", "tenant_id": "T3", "tenant_name": "Tenant Three"},
    "svc-acme": {"role": "customer", "tenant_id": "T1", "tenant_name": "Tenant One", "customer_name": "Acme"},
    "svc-platform": {"role": "platform_admin", "tenant_name": "Platform"},
}


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings() -> APISettings:
    """Return a settings object suitable for testing."""
    return APISettings(
        database_url="sqlite+aiosqlite://",
        session_store_backend=SessionStoreBackend.MEMORY,
        jwt_secret=SecretStr(_TEST_JWT_SECRET),
        platform_env="dev",
        rate_limit_enabled=False,
        default_page_size=50,
        max_page_size=200,
    )


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


async def _seed(factory) -> None:
    ts = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)
    async with factory() as session:
        session.add_all(
            [
                TenantTable(tenant_id="T1", tenant_name="Tenant One"),
                TenantTable(tenant_id="T2", tenant_name="Tenant Two", parent_tenant_id="T1"),
                TenantTable(tenant_id="T3", tenant_name="Tenant Three"),
            ]
        )
        session.add_all(
            [
                UserTable(id="u-admin", email="Admin@example.com", email_lower="admin@example.com",
                          display_name="Admin", role="admin", tenant_id="T1", password_hash=_PASSWORD_HASH),
                UserTable(id="u-admin2", email="second@example.com", email_lower="second@example.com",
                          display_name="Second Admin", role="admin", tenant_id="T1", password_hash=_PASSWORD_HASH),
                UserTable(id="u-t1", email="ops@one.example", email_lower="ops@one.example",
                          display_name="Ops One", role="tenant", tenant_id="T1", password_hash=_PASSWORD_HASH),
                UserTable(id="u-acme", email="viewer@acme.example", email_lower="viewer@acme.example",
                          display_name="Acme Viewer", role="customer", tenant_id="T1", customer_name="Acme",
                          password_hash=_PASSWORD_HASH),
                UserTable(id="u-off", email="gone@three.example", email_lower="gone@three.example",
                          display_name="Disabled", role="tenant", tenant_id="T3", is_active=False,
                          password_hash=_PASSWORD_HASH),
            ]
        )
        session.add_all(
            [
                UsageTable(tenant_id="T1", iccid="8944000000000000001", endpoint_name="EP-A", customer_name="Acme",
                           timestamp=ts, usage_date=date(2026, 1, 1), consumption=10.0,
                           uplink_bytes=100, downlink_bytes=200, buy_charge=1.0, sell_charge=2.0),
                UsageTable(tenant_id="T1", iccid="8944000000000000002", endpoint_name="EP-B", customer_name="Beta",
                           timestamp=ts, usage_date=date(2026, 1, 1), consumption=5.0),
                UsageTable(tenant_id="T2", iccid="8944000000000000003", endpoint_name="EP-D", customer_name="Delta",
                           timestamp=ts, usage_date=date(2026, 1, 2), consumption=2.0),
                UsageTable(tenant_id="T3", iccid="8944000000000000009", endpoint_name="EP-C", customer_name="Other",
                           timestamp=ts, usage_date=date(2026, 1, 1), consumption=99.0),
            ]
        )
        session.add_all(
            [
                BundleTable(tenant_id="T1", source_id="src-1", bundle_name="Starter 1GB", bundle_moniker="B1",
                            status_name="Active", price=5.0, currency="GBP"),
                BundleTable(tenant_id="T3", source_id="src-3", bundle_name="Other 5GB", bundle_moniker="B3",
                            status_name="Active"),
            ]
        )
        live_start = datetime(2026, 1, 1, tzinfo=UTC)
        far_future = datetime(2099, 1, 1, tzinfo=UTC)
        session.add_all(
            [
                # Two syncs of the same instance; only the newest is reported.
                BundleInstanceTable(tenant_id="T1", iccid="8944000000000000001", customer_name="Acme",
                                    endpoint_name="EP-A", bundle_name="Starter 1GB", bundle_moniker="B1",
                                    bundle_instance_id="BI-1", start_time=live_start, end_time=far_future,
                                    status_name="Active", sequence=1, sequence_max=1,
                                    data_used_mb=10, data_allowance_mb=1024,
                                    synced_at=datetime(2026, 1, 2, tzinfo=UTC)),
                BundleInstanceTable(tenant_id="T1", iccid="8944000000000000001", customer_name="Acme",
                                    endpoint_name="EP-A", bundle_name="Starter 1GB", bundle_moniker="B1",
                                    bundle_instance_id="BI-1", start_time=live_start, end_time=far_future,
                                    status_name="Active", sequence=1, sequence_max=1,
                                    data_used_mb=5, data_allowance_mb=1024,
                                    synced_at=datetime(2026, 1, 1, tzinfo=UTC)),
                BundleInstanceTable(tenant_id="T1", iccid="8944000000000000002", customer_name="Beta",
                                    endpoint_name="EP-B", bundle_name="Starter 1GB", bundle_moniker="B1",
                                    bundle_instance_id="BI-2", start_time=live_start,
                                    end_time=datetime(2026, 1, 5, tzinfo=UTC),
                                    status_name="Active", sequence=1, sequence_max=1,
                                    data_used_mb=10, data_allowance_mb=1024),
                BundleInstanceTable(tenant_id="T3", iccid="8944000000000000009", customer_name="Other",
                                    endpoint_name="EP-C", bundle_name="Other 5GB", bundle_moniker="B3",
                                    bundle_instance_id="BI-3", start_time=live_start, end_time=far_future,
                                    status_name="Active", sequence=1, sequence_max=1),
            ]
        )
        session.add_all(
            [
                EndpointTable(tenant_id="T1", source_id="ep-src-a", endpoint_name="EP-A", status="Active",
                              usage_rolling_28d=10.0),
                EndpointTable(tenant_id="T1", source_id="ep-src-b", endpoint_name="EP-B", status="Active",
                              usage_rolling_28d=5.0),
                EndpointTable(tenant_id="T3", source_id="ep-src-c", endpoint_name="EP-C", status="Active",
                              usage_rolling_28d=99.0),
            ]
        )
        await session.execute(
            insert(usage_daily),
            [
                {"tenant_id": "T1", "customer_name": "Acme", "day": date(2026, 1, 1), "total_consumption": 10.0,
                 "total_bytes": 300, "total_buy": 1.0, "total_sell": 2.0, "record_count": 1},
                {"tenant_id": "T1", "customer_name": "Beta", "day": date(2026, 1, 1), "total_consumption": 5.0,
                 "total_bytes": 0, "total_buy": 0.0, "total_sell": 0.0, "record_count": 1},
                {"tenant_id": "T2", "customer_name": "Delta", "day": date(2026, 1, 2), "total_consumption": 2.0,
                 "total_bytes": 0, "total_buy": 0.0, "total_sell": 0.0, "record_count": 1},
                {"tenant_id": "T3", "customer_name": "Other", "day": date(2026, 1, 1), "total_consumption": 99.0,
                 "total_bytes": 0, "total_buy": 0.0, "total_sell": 0.0, "record_count": 1},
            ],
        )
        await session.execute(
            insert(usage_monthly),
            [
                {"tenant_id": "T1", "customer_name": "Acme", "month": date(2026, 1, 1), "total_consumption": 10.0,
                 "total_bytes": 300, "total_buy": 1.0, "total_sell": 2.0, "record_count": 1},
            ],
        )
        await session.commit()


@pytest_asyncio.fixture
async def session_factory():
    """Seeded in-memory SQLite database shared through a static pool."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await conn.run_sync(aggregate_metadata.create_all)
    factory = async_sessionmaker(engine, expire_on_commit=False)
    await _seed(factory)
    yield factory
    await engine.dispose()


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def session_store() -> InMemorySessionStore:
    store = InMemorySessionStore()
    for client_id, record in SERVICE_TOKENS.items():
        await store.put(service_token_key(client_id), record)
    return store


@pytest.fixture()
def token_manager() -> SessionTokenManager:
    return SessionTokenManager(_TEST_JWT_SECRET)


@pytest.fixture()
def user_password() -> str:
    """Plaintext password of every seeded user."""
    return _USER_PASSWORD


@pytest.fixture()
def admin_user() -> TenantIdentity:
    return TenantIdentity.platform_admin(
        auth_method=AuthMethod.SESSION, principal_id="u-admin", principal_email="admin@example.com"
    )


@pytest.fixture()
def second_admin() -> TenantIdentity:
    return TenantIdentity.platform_admin(
        auth_method=AuthMethod.SESSION, principal_id="u-admin2", principal_email="second@example.com"
    )


@pytest.fixture()
def tenant_user() -> TenantIdentity:
    return TenantIdentity(
        tenant_id="T1",
        role=Role.TENANT,
        auth_method=AuthMethod.SESSION,
        tenant_name="Tenant One",
        principal_id="u-t1",
        principal_email="ops@one.example",
    )


@pytest.fixture()
def customer_user() -> TenantIdentity:
    return TenantIdentity(
        tenant_id="T1",
        role=Role.CUSTOMER,
        auth_method=AuthMethod.SESSION,
        tenant_name="Tenant One",
        customer_scope="Acme",
        principal_id="u-acme",
        principal_email="viewer@acme.example",
    )


@pytest.fixture()
def open_session(session_factory, session_store, token_manager) -> Callable[[TenantIdentity], Awaitable[str]]:
    """Issue a session token (marker + ``auth_sessions`` row) for an identity."""

    async def _open(identity: TenantIdentity) -> str:
        async with tenant_scope(session_factory, identity) as scoped:
            issued = await SessionService(scoped, session_store).open_session(
                token_manager, identity, ip_address="127.0.0.1", user_agent="pytest"
            )
        return issued.token

    return _open


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


@pytest.fixture()
def make_app(session_factory, session_store, token_manager) -> Callable[[APISettings], FastAPI]:
    """Build the application for *settings* with the test database and store."""

    def _make(settings: APISettings) -> FastAPI:
        app = create_app(settings)
        app.state.session_store = session_store
        app.state.token_manager = token_manager
        app.state.credential_resolver = CredentialResolver(
            session_store, token_manager, dev_tenant_header_enabled=settings.dev_tenant_header_enabled
        )
        app.dependency_overrides[get_settings] = lambda: settings
        app.dependency_overrides[get_session_factory] = lambda: session_factory
        return app

    return _make


@pytest.fixture()
def app(test_settings, make_app) -> FastAPI:
    return make_app(test_settings)


@pytest_asyncio.fixture
async def client(app):
    """Async HTTP client wired to the application through ASGI."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
