"""Resolved caller identity for one request.

A :class:`TenantIdentity` is built once per request by the credential
resolver and is read-only afterwards.  It is threaded explicitly through
the scope guard and the query builder; nothing stores it globally.

INVARIANT: the constructor rejects every combination of fields that the
scoping layer cannot handle safely, so a downstream consumer never has to
re-validate.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

# Tenant value carried by platform administrators.  It is also the value
# written to ``app.current_tenant`` so that RLS policies treat the session
# as unrestricted.  It is never bound into an application-level filter.
PLATFORM_TENANT_ID = "*"


class Role(str, Enum):
    """Closed set of caller roles, from widest to narrowest visibility."""

    PLATFORM_ADMIN = "platform_admin"
    TENANT = "tenant"
    CUSTOMER = "customer"

    @classmethod
    def parse(cls, raw: Any) -> Role:
        """Convert a stored role string into a :class:`Role`.

        Accepts the enum values plus the legacy ``admin`` spelling still
        present in older session claims and user rows.

        Raises :class:`ValueError` for anything else.
        """
        if isinstance(raw, Role):
            return raw
        key = str(raw or "").strip().lower()
        try:
            return _ROLE_LOOKUP[key]
        except KeyError:
            raise ValueError(f"Unknown role '{raw}'. Valid roles: {sorted(_ROLE_LOOKUP)}") from None


_ROLE_LOOKUP: dict[str, Role] = {r.value: r for r in Role}
_ROLE_LOOKUP["admin"] = Role.PLATFORM_ADMIN


class AuthMethod(str, Enum):
    """How the identity was authenticated."""

    SESSION = "session"
    SERVICE_TOKEN = "service_token"
    # Raw X-Tenant-Id header; only reachable when explicitly enabled in dev.
    DEV_HEADER = "dev_header"


@dataclass(frozen=True)
class TenantIdentity:
    """Immutable tenant identity and role for a single request.

    Attributes
    ----------
    tenant_id:
        Primary scoping key.  :data:`PLATFORM_TENANT_ID` for platform
        administrators.
    role:
        One of :class:`Role`.
    auth_method:
        One of :class:`AuthMethod`.  Admin mutations require ``SESSION``.
    tenant_name:
        Display name; defaults to ``tenant_id``.
    customer_scope:
        Customer name the identity is narrowed to.  Present only for
        ``Role.CUSTOMER``.
    principal_id, principal_email:
        User identity behind a session token.  Absent for service tokens.
    """

    tenant_id: str
    role: Role
    auth_method: AuthMethod
    tenant_name: str = ""
    customer_scope: str | None = None
    principal_id: str | None = None
    principal_email: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.role, Role):
            raise ValueError(f"role must be a Role member, got {self.role!r}")
        if not isinstance(self.auth_method, AuthMethod):
            raise ValueError(f"auth_method must be an AuthMethod member, got {self.auth_method!r}")

        if self.role is Role.PLATFORM_ADMIN:
            if self.tenant_id != PLATFORM_TENANT_ID:
                raise ValueError("platform_admin identities must carry the platform tenant sentinel")
        elif not self.tenant_id or not self.tenant_id.strip() or self.tenant_id == PLATFORM_TENANT_ID:
            raise ValueError(f"{self.role.value} identities require a concrete tenant_id")

        if self.role is Role.CUSTOMER:
            if not self.customer_scope or not self.customer_scope.strip():
                raise ValueError("customer identities require a non-empty customer_scope")
        elif self.customer_scope is not None:
            raise ValueError("customer_scope is only valid for customer identities")

        if self.auth_method is not AuthMethod.SESSION and (self.principal_id or self.principal_email):
            raise ValueError("principal fields are only valid for session identities")

        if not self.tenant_name:
            object.__setattr__(self, "tenant_name", self.tenant_id)

    # -- Constructors ---------------------------------------------------------

    @classmethod
    def platform_admin(
        cls,
        *,
        auth_method: AuthMethod,
        tenant_name: str = "platform",
        principal_id: str | None = None,
        principal_email: str | None = None,
    ) -> TenantIdentity:
        """Build an unscoped platform-administrator identity."""
        return cls(
            tenant_id=PLATFORM_TENANT_ID,
            role=Role.PLATFORM_ADMIN,
            auth_method=auth_method,
            tenant_name=tenant_name,
            principal_id=principal_id,
            principal_email=principal_email,
        )

    @classmethod
    def from_record(cls, record: dict[str, Any], auth_method: AuthMethod) -> TenantIdentity:
        """Build an identity from a stored JSON record or validated claims.

        Recognised keys: ``role``, ``tenant_id``, ``tenant_name``,
        ``customer_name`` (or ``customer_scope``), and for sessions
        ``sub``/``user_id`` and ``email``/``user_email``.

        Raises :class:`ValueError` when the record cannot produce a valid
        identity.
        """
        role = Role.parse(record.get("role"))
        tenant_name = str(record.get("tenant_name") or "")

        principal_id: str | None = None
        principal_email: str | None = None
        if auth_method is AuthMethod.SESSION:
            principal_id = _optional_str(record.get("sub") or record.get("user_id"))
            principal_email = _optional_str(record.get("email") or record.get("user_email"))

        if role is Role.PLATFORM_ADMIN:
            return cls.platform_admin(
                auth_method=auth_method,
                tenant_name=tenant_name or "platform",
                principal_id=principal_id,
                principal_email=principal_email,
            )

        customer_scope = None
        if role is Role.CUSTOMER:
            customer_scope = _optional_str(record.get("customer_scope") or record.get("customer_name"))

        return cls(
            tenant_id=str(record.get("tenant_id") or "").strip(),
            role=role,
            auth_method=auth_method,
            tenant_name=tenant_name,
            customer_scope=customer_scope,
            principal_id=principal_id,
            principal_email=principal_email,
        )

    # -- Derived values -------------------------------------------------------

    @property
    def is_platform_admin(self) -> bool:
        return self.role is Role.PLATFORM_ADMIN

    @property
    def session_tenant_value(self) -> str:
        """Value for the transaction-local ``app.current_tenant`` setting."""
        if self.role is Role.PLATFORM_ADMIN:
            return PLATFORM_TENANT_ID
        return self.tenant_id

    @property
    def session_customer_value(self) -> str | None:
        """Value for ``app.current_customer``, or ``None`` when not narrowed."""
        if self.role is Role.CUSTOMER:
            return self.customer_scope
        return None

    def to_public_dict(self) -> dict[str, Any]:
        """Identity fields safe to return to the caller."""
        return {
            "tenant_id": None if self.is_platform_admin else self.tenant_id,
            "tenant_name": self.tenant_name,
            "role": self.role.value,
            "customer_name": self.customer_scope,
            "auth_method": self.auth_method.value,
        }


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
