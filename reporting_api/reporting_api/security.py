"""Session token signing, verification and issuance.

Session tokens are HS256 JWTs carrying the caller's identity claims.  A
valid signature alone does not authenticate: every token's ``jti`` must
also have a live marker in the session store, which is what makes logout
and administrative revocation effective before ``exp``.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import jwt

from reporting_core.state.session_store import SessionStore, session_marker_key
from reporting_core.tenancy.identity import Role, TenantIdentity

logger = logging.getLogger(__name__)

REQUIRED_CLAIMS: tuple[str, ...] = ("sub", "jti", "role", "tenant_id", "exp")


class TokenError(PermissionError):
    """The token is malformed, badly signed, expired or missing claims."""


def hash_token_id(jti: str) -> str:
    """SHA-256 of a token id, base64 encoded.  Used as the marker key suffix."""
    digest = hashlib.sha256(jti.encode("utf-8")).digest()
    return base64.b64encode(digest).decode("ascii")


@dataclass(frozen=True)
class IssuedSession:
    token: str
    jti: str
    token_hash: str
    expires_at: datetime


class SessionTokenManager:
    """Sign and verify session tokens with PyJWT."""

    def __init__(self, secret: str, *, algorithm: str = "HS256", ttl: timedelta = timedelta(hours=24)) -> None:
        if not secret:
            raise ValueError("session token secret must not be empty")
        self._secret = secret
        self._algorithm = algorithm
        self._ttl = ttl

    @property
    def ttl_seconds(self) -> int:
        return int(self._ttl.total_seconds())

    def encode(self, identity: TenantIdentity, *, jti: str | None = None, now: datetime | None = None) -> tuple[str, str, datetime]:
        """Return ``(token, jti, expires_at)`` for a session identity."""
        if identity.principal_id is None:
            raise ValueError("session tokens require a principal id")
        issued_at = now or datetime.now(UTC)
        expires_at = issued_at + self._ttl
        token_id = jti or str(uuid.uuid4())
        role = "admin" if identity.role is Role.PLATFORM_ADMIN else identity.role.value
        payload: dict[str, Any] = {
            "sub": identity.principal_id,
            "email": identity.principal_email or "",
            "role": role,
            "tenant_id": identity.tenant_id,
            "tenant_name": identity.tenant_name,
            "jti": token_id,
            "iat": issued_at,
            "exp": expires_at,
        }
        if identity.customer_scope is not None:
            payload["customer_name"] = identity.customer_scope
        token = jwt.encode(payload, self._secret, algorithm=self._algorithm)
        return token, token_id, expires_at

    def decode(self, token: str) -> dict[str, Any]:
        """Verify signature and expiry and return the claims.

        Raises
        ------
        TokenError
            On any verification failure.  The message never contains the
            token itself.
        """
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                options={"require": list(REQUIRED_CLAIMS)},
            )
        except jwt.ExpiredSignatureError as exc:
            raise TokenError("token expired") from exc
        except jwt.InvalidTokenError as exc:
            raise TokenError(f"invalid token: {type(exc).__name__}") from exc
        return claims

    async def issue(self, store: SessionStore, identity: TenantIdentity) -> IssuedSession:
        """Sign a token for *identity* and write its revocation marker."""
        token, jti, expires_at = self.encode(identity)
        token_hash = hash_token_id(jti)
        await store.put(
            session_marker_key(token_hash),
            {"user_id": identity.principal_id, "expires_at": expires_at.isoformat()},
            ttl_seconds=self.ttl_seconds,
        )
        logger.info("Issued session for principal=%s role=%s", identity.principal_id, identity.role.value)
        return IssuedSession(token=token, jti=jti, token_hash=token_hash, expires_at=expires_at)

    async def revoke(self, store: SessionStore, jti: str) -> None:
        await store.delete(session_marker_key(hash_token_id(jti)))
