"""Tenant identity, visibility predicates and the transactional scope guard."""

from reporting_core.tenancy.filters import QueryFilters
from reporting_core.tenancy.guard import ScopedSession, apply_tenant_settings, tenant_scope, with_tenant_context
from reporting_core.tenancy.identity import PLATFORM_TENANT_ID, AuthMethod, Role, TenantIdentity
from reporting_core.tenancy.scoping import ScopedPredicate, ScopingError, build_tenant_predicate

__all__ = [
    "PLATFORM_TENANT_ID",
    "AuthMethod",
    "QueryFilters",
    "Role",
    "ScopedPredicate",
    "ScopedSession",
    "ScopingError",
    "TenantIdentity",
    "apply_tenant_settings",
    "build_tenant_predicate",
    "tenant_scope",
    "with_tenant_context",
]
