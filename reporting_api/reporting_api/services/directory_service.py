"""Tenant and customer directories, user lookup and session administration."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import delete, func, select

from reporting_api.pagination import Pagination, paginated
from reporting_api.security import IssuedSession, SessionTokenManager
from reporting_core.state.session_store import SessionStore, session_marker_key
from reporting_core.state.tables import SessionTable, TenantTable, UserTable
from reporting_core.tenancy.guard import ScopedSession
from reporting_core.tenancy.identity import TenantIdentity

logger = logging.getLogger(__name__)


class DirectoryService:
    """Visible tenants and customers for filter dropdowns."""

    def __init__(self, scoped: ScopedSession) -> None:
        self._scoped = scoped
        self._identity = scoped.identity

    async def tenants(self) -> list[dict[str, Any]]:
        filters = self._scoped.filters()
        return await self._scoped.fetch_all(
            f"""
            SELECT tenant_id, tenant_name, parent_tenant_id
            FROM rpt_tenants
            WHERE {filters.where()}
            ORDER BY parent_tenant_id NULLS FIRST, tenant_name ASC
            """,
            filters.params(),
        )

    async def customers(self, *, tenant_id: str | None = None) -> list[str]:
        filters = self._scoped.filters()
        filters.override_tenant(self._identity, tenant_id)
        filters.scope_customer(self._identity)
        filters.add_raw("customer_name IS NOT NULL AND customer_name <> ''")
        rows = await self._scoped.fetch_all(
            f"""
            SELECT DISTINCT customer_name
            FROM rpt_bundle_instances
            WHERE {filters.where()}
            ORDER BY customer_name ASC
            """,
            filters.params(),
        )
        return [row["customer_name"] for row in rows]

    async def all_tenants(self) -> list[dict[str, Any]]:
        """Every tenant row; reachable only from the admin surface."""
        result = await self._scoped.session.execute(
            select(
                TenantTable.tenant_id,
                TenantTable.tenant_name,
                TenantTable.parent_tenant_id,
                TenantTable.role,
                TenantTable.is_active,
            ).order_by(TenantTable.tenant_name)
        )
        return [dict(row) for row in result.mappings().all()]


class SessionService:
    """User sessions: issuance, lookup, logout and revocation.

    The ``auth_sessions`` row is the durable, listable record; the
    session-store marker is what the credential resolver checks.  Both
    are removed together on logout and revocation.
    """

    def __init__(self, scoped: ScopedSession, store: SessionStore) -> None:
        self._scoped = scoped
        self._store = store

    async def open_session(
        self,
        tokens: SessionTokenManager,
        identity: TenantIdentity,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> IssuedSession:
        """Issue a token for *identity* and record it in ``auth_sessions``."""
        issued = await tokens.issue(self._store, identity)
        now = datetime.now(UTC)
        self._scoped.session.add(
            SessionTable(
                user_id=identity.principal_id,
                token_hash=issued.token_hash,
                issued_at=now,
                expires_at=issued.expires_at,
                last_activity_at=now,
                ip_address=ip_address,
                user_agent=(user_agent or "")[:512] or None,
            )
        )
        await self._scoped.session.flush()
        return issued

    async def current_user(self, user_id: str) -> dict[str, Any] | None:
        result = await self._scoped.session.execute(
            select(UserTable, TenantTable.tenant_name)
            .outerjoin(TenantTable, TenantTable.tenant_id == UserTable.tenant_id)
            .where(UserTable.id == user_id)
        )
        row = result.first()
        if row is None:
            return None
        user, tenant_name = row
        return {
            "id": user.id,
            "email": user.email,
            "display_name": user.display_name,
            "role": user.role,
            "tenant_id": user.tenant_id,
            "tenant_name": tenant_name,
            "customer_name": user.customer_name or None,
            "last_login_at": user.last_login_at,
            "created_at": user.created_at,
        }

    async def logout(self, token_hash: str) -> None:
        await self._store.delete(session_marker_key(token_hash))
        await self._scoped.session.execute(delete(SessionTable).where(SessionTable.token_hash == token_hash))
        logger.info("Session logged out")

    async def list_active(self, pagination: Pagination, *, now: datetime | None = None) -> dict[str, Any]:
        cutoff = now or datetime.now(UTC)
        session = self._scoped.session
        total = await session.scalar(
            select(func.count()).select_from(SessionTable).where(SessionTable.expires_at > cutoff)
        )
        result = await session.execute(
            select(SessionTable, UserTable.email, UserTable.display_name, UserTable.role)
            .join(UserTable, UserTable.id == SessionTable.user_id)
            .where(SessionTable.expires_at > cutoff)
            .order_by(SessionTable.issued_at.desc())
            .limit(pagination.per_page)
            .offset(pagination.offset)
        )
        rows = [
            {
                "id": record.id,
                "user_id": record.user_id,
                "user_email": email,
                "user_display_name": display_name,
                "user_role": role,
                "issued_at": record.issued_at,
                "expires_at": record.expires_at,
                "last_activity_at": record.last_activity_at,
                "ip_address": record.ip_address,
                "user_agent": record.user_agent,
            }
            for record, email, display_name, role in result.all()
        ]
        return paginated(rows, int(total or 0), pagination)

    async def revoke(self, session_id: int) -> bool:
        """Delete a session's marker and row.  ``False`` if it does not exist."""
        record = await self._scoped.session.get(SessionTable, session_id)
        if record is None:
            return False
        await self._store.delete(session_marker_key(record.token_hash))
        await self._scoped.session.delete(record)
        await self._scoped.session.flush()
        logger.info("Revoked session id=%d user=%s", session_id, record.user_id)
        return True
