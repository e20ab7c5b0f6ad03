"""Accumulator for the extra WHERE clauses report handlers append.

The tenant predicate owns only tenant visibility.  Handlers need further
narrowing (customer scope, admin-selected tenant, date ranges, free-form
filters); :class:`QueryFilters` lets them add those clauses while
continuing the placeholder numbering from the predicate's
``next_index``.

Usage::

    filters = QueryFilters(build_tenant_predicate(identity))
    filters.scope_customer(identity, requested_customer)
    filters.add("usage_date >= {}", date_from)
    rows = await scoped.fetch_all(f"SELECT ... WHERE {filters.where()}", filters.params())
"""

from __future__ import annotations

from typing import Any

from reporting_core.tenancy.identity import Role, TenantIdentity
from reporting_core.tenancy.scoping import ScopedPredicate, param_name, placeholder


class QueryFilters:
    """Ordered list of AND-ed clauses with positional bind values."""

    def __init__(self, predicate: ScopedPredicate) -> None:
        self._clauses: list[str] = [predicate.clause]
        self._params: dict[str, Any] = predicate.bind_params()
        self._next_index = predicate.next_index

    @property
    def next_index(self) -> int:
        return self._next_index

    def bind(self, value: Any) -> str:
        """Allocate a placeholder for *value* and return its marker."""
        marker = placeholder(self._next_index)
        self._params[param_name(self._next_index)] = value
        self._next_index += 1
        return marker

    def add(self, template: str, *values: Any) -> QueryFilters:
        """Append a clause whose ``{}`` markers are bound to *values*.

        The template is trusted SQL text written by the handler; only the
        values are data.
        """
        if template.count("{}") != len(values):
            raise ValueError(f"template expects {template.count('{}')} values, got {len(values)}")
        markers = [self.bind(value) for value in values]
        self._clauses.append(template.format(*markers))
        return self

    def add_raw(self, clause: str) -> QueryFilters:
        """Append a static clause that carries no data."""
        self._clauses.append(clause)
        return self

    def scope_customer(
        self,
        identity: TenantIdentity,
        requested: str | None = None,
        *,
        column: str = "customer_name",
    ) -> QueryFilters:
        """Restrict rows to a customer.

        Customer identities are always pinned to their own scope and the
        requested value is ignored.  Other identities may narrow to a
        customer of their choosing.
        """
        if identity.role is Role.CUSTOMER:
            return self.add(f"{column} = {{}}", identity.customer_scope)
        if requested:
            return self.add(f"{column} = {{}}", requested)
        return self

    def override_tenant(
        self,
        identity: TenantIdentity,
        requested: str | None,
        *,
        column: str = "tenant_id",
    ) -> QueryFilters:
        """Let platform administrators focus on a single tenant.

        Ignored for every other role; their visibility is already fixed by
        the tenant predicate and cannot be redirected by a query parameter.
        """
        if identity.role is Role.PLATFORM_ADMIN and requested:
            return self.add(f"{column} = {{}}", requested)
        return self

    def where(self) -> str:
        # Clauses containing OR must arrive parenthesised.
        return " AND ".join(self._clauses)

    def params(self) -> dict[str, Any]:
        return dict(self._params)
