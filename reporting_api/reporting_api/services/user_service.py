"""Interactive accounts: password sign-in and administrator-managed users.

Passwords are stored as bcrypt hashes.  Five consecutive failed sign-ins
lock an account for fifteen minutes; a successful sign-in clears the
counter.  Changing a field that session tokens carry as a claim revokes
the user's sessions.
"""

from __future__ import annotations

import logging
import math
import re
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

import bcrypt
from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from reporting_api.pagination import Pagination, paginated
from reporting_core.state.session_store import SessionStore, session_marker_key
from reporting_core.state.tables import SessionTable, TenantTable, UserTable
from reporting_core.tenancy.identity import AuthMethod, Role, TenantIdentity

logger = logging.getLogger(__name__)

MAX_FAILED_LOGINS = 5
LOCKOUT_DURATION = timedelta(minutes=15)
MIN_PASSWORD_LENGTH = 12
USER_ROLES: tuple[str, ...] = ("admin", "tenant", "customer")

_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_CLAIM_FIELDS = frozenset({"role", "tenant_id", "customer_name", "is_active"})
_UPDATABLE_FIELDS = _CLAIM_FIELDS | {"display_name"}


class AccountError(Exception):
    """A sign-in or user-management request that is refused."""

    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail


def hash_password(plaintext: str) -> str:
    """Hash a plaintext password with bcrypt."""
    return bcrypt.hashpw(plaintext.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plaintext: str, hashed: str) -> bool:
    """Verify a plaintext password against a bcrypt hash."""
    return bcrypt.checkpw(plaintext.encode("utf-8"), hashed.encode("utf-8"))


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands timestamps back without tzinfo.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _stored_role(raw: str) -> str:
    try:
        role = Role.parse(raw)
    except ValueError:
        raise AccountError(400, "Invalid role. Must be admin, tenant, or customer.") from None
    return "admin" if role is Role.PLATFORM_ADMIN else role.value


def _check_password(password: str) -> None:
    if len(password) < MIN_PASSWORD_LENGTH:
        raise AccountError(400, f"Password must be at least {MIN_PASSWORD_LENGTH} characters")


def _user_dict(user: UserTable, tenant_name: str | None) -> dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "display_name": user.display_name,
        "role": user.role,
        "tenant_id": user.tenant_id,
        "tenant_name": tenant_name,
        "customer_name": user.customer_name or None,
        "is_active": bool(user.is_active),
        "has_password": user.password_hash is not None,
        "failed_logins": user.failed_logins or 0,
        "locked_until": user.locked_until,
        "last_login_at": user.last_login_at,
        "created_at": user.created_at,
        "updated_at": user.updated_at,
    }


class LoginService:
    """Email and password verification for ``POST /auth/login``.

    Works on a plain session: the caller is not yet identified, and the
    ``auth_users`` table carries no row-level policy.  Failed-attempt
    bookkeeping is flushed before :class:`AccountError` is raised, so the
    caller must commit on both paths.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def authenticate(self, email: str, password: str, *, now: datetime | None = None) -> TenantIdentity:
        """Return the session identity for valid credentials.

        Raises
        ------
        AccountError
            401 for an unknown email or a wrong password, 423 while the
            account is locked, 403 when it is disabled.
        """
        now = now or datetime.now(UTC)
        result = await self._session.execute(
            select(UserTable, TenantTable.tenant_name)
            .outerjoin(TenantTable, TenantTable.tenant_id == UserTable.tenant_id)
            .where(UserTable.email_lower == email.strip().lower())
        )
        row = result.first()
        if row is None:
            # Same bcrypt cost as a real comparison, so unknown emails are not faster.
            hash_password("dummy-password-for-timing")
            raise AccountError(401, "Invalid email or password")
        user, tenant_name = row

        locked_until = _as_utc(user.locked_until)
        if locked_until is not None and locked_until > now:
            minutes = max(math.ceil((locked_until - now).total_seconds() / 60), 1)
            plural = "" if minutes == 1 else "s"
            raise AccountError(423, f"Account temporarily locked. Try again in {minutes} minute{plural}.")

        if not user.is_active:
            raise AccountError(403, "Account disabled")

        if user.password_hash is None or not verify_password(password, user.password_hash):
            user.failed_logins = (user.failed_logins or 0) + 1
            if user.failed_logins >= MAX_FAILED_LOGINS:
                user.locked_until = now + LOCKOUT_DURATION
                logger.warning("Account %s locked after %d failed sign-ins", user.id, user.failed_logins)
            await self._session.flush()
            raise AccountError(401, "Invalid email or password")

        user.failed_logins = 0
        user.locked_until = None
        user.last_login_at = now
        await self._session.flush()
        logger.info("Sign-in succeeded for user=%s role=%s", user.id, user.role)

        return TenantIdentity.from_record(
            {
                "role": user.role,
                "tenant_id": user.tenant_id,
                "tenant_name": tenant_name or "",
                "customer_name": user.customer_name,
                "user_id": user.id,
                "email": user.email,
            },
            AuthMethod.SESSION,
        )


class UserAdminService:
    """CRUD over ``auth_users`` for platform administrators."""

    def __init__(self, session: AsyncSession, store: SessionStore) -> None:
        self._session = session
        self._store = store

    async def _load(self, user_id: str) -> tuple[UserTable, str | None] | None:
        result = await self._session.execute(
            select(UserTable, TenantTable.tenant_name)
            .outerjoin(TenantTable, TenantTable.tenant_id == UserTable.tenant_id)
            .where(UserTable.id == user_id)
        )
        row = result.first()
        if row is None:
            return None
        return row[0], row[1]

    async def _require_tenant(self, tenant_id: str) -> None:
        if await self._session.get(TenantTable, tenant_id) is None:
            raise AccountError(400, "Invalid tenant_id")

    async def list_users(
        self,
        pagination: Pagination,
        *,
        search: str | None = None,
        role: str | None = None,
        active: bool | None = None,
    ) -> dict[str, Any]:
        conditions = []
        if search:
            pattern = f"%{search.lower()}%"
            conditions.append(or_(UserTable.email_lower.like(pattern), func.lower(UserTable.display_name).like(pattern)))
        if role in USER_ROLES:
            conditions.append(UserTable.role == role)
        if active is not None:
            conditions.append(UserTable.is_active == active)

        total = await self._session.scalar(select(func.count()).select_from(UserTable).where(*conditions))
        result = await self._session.execute(
            select(UserTable, TenantTable.tenant_name)
            .outerjoin(TenantTable, TenantTable.tenant_id == UserTable.tenant_id)
            .where(*conditions)
            .order_by(UserTable.created_at.desc(), UserTable.email_lower)
            .limit(pagination.per_page)
            .offset(pagination.offset)
        )
        rows = [_user_dict(user, tenant_name) for user, tenant_name in result.all()]
        return paginated(rows, int(total or 0), pagination)

    async def get_user(self, user_id: str) -> dict[str, Any] | None:
        loaded = await self._load(user_id)
        return None if loaded is None else _user_dict(*loaded)

    async def create_user(
        self,
        *,
        email: str,
        display_name: str,
        role: str,
        tenant_id: str,
        customer_name: str | None = None,
        password: str | None = None,
    ) -> dict[str, Any]:
        """Create an account.  Without a password it stays inactive until one is set."""
        stored_role = _stored_role(role)
        if stored_role == "customer" and not (customer_name or "").strip():
            raise AccountError(400, "customer_name is required for customer role")
        email = email.strip()
        if not _EMAIL_PATTERN.match(email):
            raise AccountError(400, "Invalid email format")
        if password is not None:
            _check_password(password)
        await self._require_tenant(tenant_id)

        existing = await self._session.scalar(select(UserTable.id).where(UserTable.email_lower == email.lower()))
        if existing is not None:
            raise AccountError(409, "An account with this email already exists")

        user = UserTable(
            id=uuid.uuid4().hex,
            email=email,
            email_lower=email.lower(),
            display_name=display_name.strip(),
            role=stored_role,
            tenant_id=tenant_id,
            customer_name=customer_name.strip() if stored_role == "customer" and customer_name else None,
            is_active=password is not None,
            password_hash=hash_password(password) if password is not None else None,
            failed_logins=0,
        )
        self._session.add(user)
        await self._session.flush()
        logger.info("Created user %s role=%s tenant=%s", user.id, stored_role, tenant_id)
        return await self.get_user(user.id) or _user_dict(user, None)

    async def update_user(self, user_id: str, changes: dict[str, Any]) -> dict[str, Any] | None:
        """Apply the allowed *changes*.  ``None`` when the user does not exist."""
        loaded = await self._load(user_id)
        if loaded is None:
            return None
        user, _ = loaded

        allowed = {
            key: value
            for key, value in changes.items()
            if key in _UPDATABLE_FIELDS and (value is not None or key == "customer_name")
        }
        if not allowed:
            raise AccountError(400, "No valid fields to update")
        if "role" in allowed:
            allowed["role"] = _stored_role(allowed["role"])
        if allowed.get("tenant_id"):
            await self._require_tenant(allowed["tenant_id"])

        for key, value in allowed.items():
            setattr(user, key, value)
        if user.role == "customer" and not (user.customer_name or "").strip():
            raise AccountError(400, "customer_name is required for customer role")
        if user.role != "customer":
            user.customer_name = None
        await self._session.flush()

        if _CLAIM_FIELDS & allowed.keys():
            revoked = await self.revoke_sessions(user_id)
            if revoked:
                logger.info("Revoked %d sessions of user %s after account change", revoked, user_id)
        return await self.get_user(user_id)

    async def delete_user(self, user_id: str) -> bool:
        """Remove the account and all its sessions.  ``False`` if it does not exist."""
        user = await self._session.get(UserTable, user_id)
        if user is None:
            return False
        await self.revoke_sessions(user_id)
        await self._session.delete(user)
        await self._session.flush()
        logger.info("Deleted user %s", user_id)
        return True

    async def set_password(self, user_id: str, new_password: str) -> bool:
        """Replace the password, clear any lockout and sign the user out everywhere.

        An account created without a password is activated by its first one.
        """
        _check_password(new_password)
        user = await self._session.get(UserTable, user_id)
        if user is None:
            return False
        if user.password_hash is None:
            user.is_active = True
        user.password_hash = hash_password(new_password)
        user.failed_logins = 0
        user.locked_until = None
        await self._session.flush()
        await self.revoke_sessions(user_id)
        logger.info("Password reset for user %s", user_id)
        return True

    async def revoke_sessions(self, user_id: str) -> int:
        """Delete every session marker and row of *user_id*; return how many."""
        token_hashes = (
            await self._session.scalars(select(SessionTable.token_hash).where(SessionTable.user_id == user_id))
        ).all()
        for token_hash in token_hashes:
            await self._store.delete(session_marker_key(token_hash))
        await self._session.execute(delete(SessionTable).where(SessionTable.user_id == user_id))
        return len(token_hashes)
