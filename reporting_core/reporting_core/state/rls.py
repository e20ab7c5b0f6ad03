"""Row-level security policies for the reporting tables.

Each tenant-scoped table gets one policy that mirrors the query-level
tenant predicate: a row is visible when the transaction-local tenant
setting is the platform wildcard, or names the row's tenant or that
tenant's parent.  Tables carrying ``customer_name`` additionally restrict
rows to the customer setting when one is present.

An unset tenant setting reads as NULL or empty through
``current_setting(..., true)``: NULL on a connection that never set it,
empty once a transaction-local value has lapsed.  Neither equals the
wildcard or any tenant id, so a connection used outside the scope guard
sees no rows at all.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from reporting_core.state.database import CUSTOMER_SETTING, TENANT_SETTING
from reporting_core.state.tables import CUSTOMER_SCOPED_TABLES, TENANT_SCOPED_TABLES
from reporting_core.tenancy.identity import PLATFORM_TENANT_ID
from reporting_core.tenancy.scoping import HIERARCHY_TABLE

logger = logging.getLogger(__name__)

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _validate_identifier(name: str) -> str:
    if not _IDENTIFIER_RE.match(name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def tenant_policy_clause(table: str, *, customer_scoped: bool) -> str:
    """Return the USING expression for *table*'s isolation policy."""
    current_tenant = f"current_setting('{TENANT_SETTING}', true)"
    clause = (
        f"({current_tenant} = '{PLATFORM_TENANT_ID}'"
        f" OR {table}.tenant_id IN ("
        f"SELECT t.tenant_id FROM {HIERARCHY_TABLE} t"
        f" WHERE t.tenant_id = {current_tenant} OR t.parent_tenant_id = {current_tenant}))"
    )
    if customer_scoped:
        current_customer = f"current_setting('{CUSTOMER_SETTING}', true)"
        clause += (
            f" AND (COALESCE({current_customer}, '') = ''"
            f" OR {table}.customer_name = {current_customer})"
        )
    return clause


def policy_statements(table: str, *, customer_scoped: bool) -> list[str]:
    """DDL that (re)installs the isolation policy on *table*."""
    table = _validate_identifier(table)
    policy = f"{table}_tenant_isolation"
    clause = tenant_policy_clause(table, customer_scoped=customer_scoped)
    return [
        f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY",
        f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY",
        f"DROP POLICY IF EXISTS {policy} ON {table}",
        f"CREATE POLICY {policy} ON {table} FOR SELECT USING ({clause})",
    ]


class RlsPolicyManager:
    """Apply tenant isolation policies on PostgreSQL tables."""

    def __init__(
        self,
        engine: AsyncEngine,
        *,
        tables: Iterable[str] | None = None,
        customer_tables: Iterable[str] | None = None,
    ) -> None:
        target_tables = list(TENANT_SCOPED_TABLES if tables is None else tables)
        if not target_tables:
            raise ValueError("tables must not be empty")
        self._engine = engine
        self._tables = [_validate_identifier(name) for name in target_tables]
        self._customer_tables = frozenset(CUSTOMER_SCOPED_TABLES if customer_tables is None else customer_tables)

    @property
    def tables(self) -> list[str]:
        return list(self._tables)

    def statements(self) -> list[str]:
        out: list[str] = []
        for table in self._tables:
            out.extend(policy_statements(table, customer_scoped=table in self._customer_tables))
        return out

    async def apply(self) -> list[str]:
        """Install the policies and return the tables they were installed on.

        SQLite has no row-level security; the call is skipped there.
        """
        if self._engine.dialect.name != "postgresql":
            logger.info("Skipping RLS policies on %s", self._engine.dialect.name)
            return []
        async with self._engine.begin() as conn:
            for statement in self.statements():
                await conn.execute(text(statement))
        logger.info("Installed tenant isolation policies on %d tables", len(self._tables))
        return list(self._tables)
