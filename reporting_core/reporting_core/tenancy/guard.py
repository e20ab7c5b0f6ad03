"""Transactional scope guard.

Wraps one request's queries in a single transaction whose first
statements pin the transaction-local tenant (and customer) settings that
the RLS policies read.  The sequence is always

    open session → BEGIN → set_config(..., true) → body → COMMIT | ROLLBACK → close

and is never split: settings assigned with ``is_local = true`` vanish at
the end of the transaction, so a pooled connection handed to the next
request carries none of this request's context.

The guard yields a :class:`ScopedSession`, the explicit handle every
data-access call receives.  It carries the identity alongside the
session so that handlers build their predicates from the same identity
the storage-level settings were derived from.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Awaitable, Callable, Mapping
from contextlib import asynccontextmanager
from typing import Any, TypeVar

from sqlalchemy import text
from sqlalchemy.engine import Result
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reporting_core.state.database import CUSTOMER_SETTING, TENANT_SETTING, set_local_setting
from reporting_core.tenancy.filters import QueryFilters
from reporting_core.tenancy.identity import TenantIdentity
from reporting_core.tenancy.scoping import ScopedPredicate, build_tenant_predicate

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ScopedSession:
    """A transaction-bound session paired with the identity it was opened for."""

    def __init__(self, session: AsyncSession, identity: TenantIdentity) -> None:
        self._session = session
        self._identity = identity

    @property
    def identity(self) -> TenantIdentity:
        return self._identity

    @property
    def session(self) -> AsyncSession:
        return self._session

    def predicate(self, start_index: int = 1, *, column: str = "tenant_id") -> ScopedPredicate:
        """Tenant-visibility predicate for this scope's identity."""
        return build_tenant_predicate(self._identity, start_index, column=column)

    def filters(self, *, column: str = "tenant_id") -> QueryFilters:
        """A :class:`QueryFilters` seeded with the tenant predicate."""
        return QueryFilters(self.predicate(column=column))

    async def execute(self, sql: str, params: Mapping[str, Any] | None = None) -> Result[Any]:
        return await self._session.execute(text(sql), dict(params or {}))

    async def fetch_all(self, sql: str, params: Mapping[str, Any] | None = None) -> list[dict[str, Any]]:
        result = await self.execute(sql, params)
        return [dict(row) for row in result.mappings().all()]

    async def fetch_one(self, sql: str, params: Mapping[str, Any] | None = None) -> dict[str, Any] | None:
        result = await self.execute(sql, params)
        row = result.mappings().first()
        return dict(row) if row is not None else None

    async def scalar(self, sql: str, params: Mapping[str, Any] | None = None) -> Any:
        result = await self.execute(sql, params)
        return result.scalar()


async def apply_tenant_settings(session: AsyncSession, identity: TenantIdentity) -> None:
    """Write the identity's tenant/customer markers into the open transaction.

    Platform administrators get the wildcard tenant value, never their
    ``tenant_id`` field.  The customer marker is only written for
    customer identities.
    """
    await set_local_setting(session, TENANT_SETTING, identity.session_tenant_value)
    customer = identity.session_customer_value
    if customer is not None:
        await set_local_setting(session, CUSTOMER_SETTING, customer)


@asynccontextmanager
async def tenant_scope(
    session_factory: async_sessionmaker[AsyncSession],
    identity: TenantIdentity,
) -> AsyncGenerator[ScopedSession, None]:
    """Yield a :class:`ScopedSession` inside one tenant-scoped transaction.

    Commits when the block exits normally.  Any exception, including
    ``asyncio.CancelledError`` when the client goes away mid-request,
    rolls the transaction back before propagating.  The session is closed
    on every path.
    """
    async with session_factory() as session:
        async with session.begin():
            await apply_tenant_settings(session, identity)
            try:
                yield ScopedSession(session, identity)
            except Exception as exc:
                logger.warning(
                    "Rolling back tenant transaction (role=%s, error=%s)",
                    identity.role.value,
                    type(exc).__name__,
                )
                raise


async def with_tenant_context(
    session_factory: async_sessionmaker[AsyncSession],
    identity: TenantIdentity,
    body: Callable[[ScopedSession], Awaitable[T]],
) -> T:
    """Run *body* inside :func:`tenant_scope` and return its result."""
    async with tenant_scope(session_factory, identity) as scoped:
        return await body(scoped)
