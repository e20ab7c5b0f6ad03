"""Tenant-visibility predicate shared by every reporting query.

Every data-access path ANDs the output of :func:`build_tenant_predicate`
into its WHERE clause.  The predicate is the application-level half of
tenant isolation; the RLS policies driven by the transaction-local
settings (see :mod:`reporting_core.tenancy.guard`) are the storage-level
half.  Both are always applied.

Placeholders are SQLAlchemy named binds numbered by position
(``:p1``, ``:p2`` ...).  A predicate built from ``start_index=N`` only ever
uses ``:pN``; callers continue numbering from ``next_index`` so their own
binds never collide with the builder's.

INVARIANT: no caller-supplied value is ever rendered into ``clause``.
All data flows through ``parameters``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from reporting_core.tenancy.identity import Role, TenantIdentity

# Tautology returned for platform administrators.  Keeps the predicate
# shape uniform so callers never special-case admin.
UNSCOPED_CLAUSE = "1=1"

# Hierarchy table consulted for parent/child visibility.
HIERARCHY_TABLE = "rpt_tenants"

_COLUMN_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")


class ScopingError(RuntimeError):
    """Raised when an identity cannot be mapped to a visibility predicate.

    This is a programming error, never a user error: it aborts the request
    with an opaque 500 instead of falling back to an unscoped query.
    """


def placeholder(index: int) -> str:
    """Return the bind marker for positional parameter *index*."""
    return f":p{index}"


def param_name(index: int) -> str:
    """Return the bind name (without colon) for positional parameter *index*."""
    return f"p{index}"


@dataclass(frozen=True)
class ScopedPredicate:
    """A boolean SQL fragment plus its positional bind values."""

    clause: str
    parameters: tuple[Any, ...]
    next_index: int
    start_index: int = 1

    def bind_params(self) -> dict[str, Any]:
        """Return ``{"pN": value}`` for each parameter, in order."""
        return {param_name(self.start_index + offset): value for offset, value in enumerate(self.parameters)}


def build_tenant_predicate(
    identity: TenantIdentity,
    start_index: int = 1,
    *,
    column: str = "tenant_id",
) -> ScopedPredicate:
    """Build the row-visibility predicate for *identity*.

    Parameters
    ----------
    identity:
        The resolved caller identity.
    start_index:
        Position of the first placeholder the predicate may use.
    column:
        Column holding the row's tenant.  Qualify it (``"u.tenant_id"``)
        when the query joins several tenant-bearing tables.

    Returns
    -------
    ScopedPredicate
        ``1=1`` with no parameters for platform administrators.  For
        tenants and customers: rows of the tenant itself or of any tenant
        whose direct parent is that tenant, bound to exactly one parameter.

    Raises
    ------
    ScopingError
        If the identity's role is not a known :class:`Role`.
    ValueError
        If ``start_index`` is below 1 or ``column`` is not an identifier.
    """
    if start_index < 1:
        raise ValueError(f"start_index must be >= 1, got {start_index}")
    if not _COLUMN_RE.match(column):
        raise ValueError(f"invalid column reference: {column!r}")

    role = identity.role
    if role is Role.PLATFORM_ADMIN:
        return ScopedPredicate(
            clause=UNSCOPED_CLAUSE,
            parameters=(),
            next_index=start_index,
            start_index=start_index,
        )
    if role is Role.TENANT or role is Role.CUSTOMER:
        marker = placeholder(start_index)
        # Single level on purpose: own tenant plus direct children only.
        clause = (
            f"{column} IN (SELECT t.tenant_id FROM {HIERARCHY_TABLE} t "
            f"WHERE t.tenant_id = {marker} OR t.parent_tenant_id = {marker})"
        )
        return ScopedPredicate(
            clause=clause,
            parameters=(identity.tenant_id,),
            next_index=start_index + 1,
            start_index=start_index,
        )
    raise ScopingError(f"no visibility rule for role {role!r}")
