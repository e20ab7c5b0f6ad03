"""Shared fixtures for reporting_core tests.

Database tests run against an in-memory SQLite database via aiosqlite.
SQLite has no row-level security, so these fixtures exercise the
query-level predicate and the transaction guard only; the PostgreSQL
integration suite covers the storage-level half.
"""

from __future__ import annotations

import pytest
import pytest_asyncio
from reporting_core.state.tables import Base, TenantTable, aggregate_metadata
from reporting_core.tenancy.identity import AuthMethod, Role, TenantIdentity
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# ---------------------------------------------------------------------------
# Identities
# ---------------------------------------------------------------------------


@pytest.fixture()
def admin_identity() -> TenantIdentity:
    return TenantIdentity.platform_admin(auth_method=AuthMethod.SESSION, principal_id="u-admin")


@pytest.fixture()
def tenant_identity() -> TenantIdentity:
    return TenantIdentity(tenant_id="T1", role=Role.TENANT, auth_method=AuthMethod.SERVICE_TOKEN, tenant_name="Tenant One")


@pytest.fixture()
def customer_identity() -> TenantIdentity:
    return TenantIdentity(
        tenant_id="T1",
        role=Role.CUSTOMER,
        auth_method=AuthMethod.SESSION,
        customer_scope="Acme",
        principal_id="u-acme",
    )


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine():
    """In-memory SQLite engine shared across sessions through a static pool."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await conn.run_sync(aggregate_metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def hierarchy(session_factory):
    """T1 is the parent of T2; T3 is unrelated; T4 is a grandchild under T2."""
    async with session_factory() as session:
        session.add_all(
            [
                TenantTable(tenant_id="T1", tenant_name="Tenant One"),
                TenantTable(tenant_id="T2", tenant_name="Tenant Two", parent_tenant_id="T1"),
                TenantTable(tenant_id="T3", tenant_name="Tenant Three"),
                TenantTable(tenant_id="T4", tenant_name="Tenant Four", parent_tenant_id="T2"),
            ]
        )
        await session.commit()
    return session_factory
