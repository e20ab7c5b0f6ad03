"""Credential resolution: inbound request headers to a :class:`TenantIdentity`.

Credentials are tried in a fixed order:

1. ``Authorization: Bearer <session token>``.  The signature and expiry
   are verified, then the token's revocation marker must exist in the
   session store.  A valid signature with no marker is a revoked session.
2. ``CF-Access-Client-Id: <service token id>``.  The identity record is
   read from the session store.
3. ``X-Tenant-Id: <tenant>``.  Only when explicitly enabled for local
   development.

:meth:`CredentialResolver.resolve` never raises.  Every failure,
including an unreachable session store, yields ``None`` and the caller
answers 401.  Tokens and client ids are never written to the log.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Protocol

from redis.exceptions import RedisError

from reporting_api.security import SessionTokenManager, TokenError, hash_token_id
from reporting_core.state.session_store import (
    SessionStore,
    SessionStoreError,
    service_token_key,
    session_marker_key,
)
from reporting_core.tenancy.identity import AuthMethod, Role, TenantIdentity

logger = logging.getLogger(__name__)

SERVICE_TOKEN_HEADER = "cf-access-client-id"
DEV_TENANT_HEADER = "x-tenant-id"

_STORE_ERRORS = (SessionStoreError, RedisError, OSError)


class HasHeaders(Protocol):
    @property
    def headers(self) -> Mapping[str, str]: ...


def mask_identifier(value: str) -> str:
    """Keep a short prefix of an identifier for log correlation."""
    if len(value) <= 4:
        return "***"
    return f"{value[:4]}***"


def _bearer_token(headers: Mapping[str, str]) -> str | None:
    raw = headers.get("authorization")
    if not raw:
        return None
    parts = raw.split(None, 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip() or None


class CredentialResolver:
    """Resolve request credentials against an injected :class:`SessionStore`."""

    def __init__(
        self,
        session_store: SessionStore,
        token_manager: SessionTokenManager,
        *,
        dev_tenant_header_enabled: bool = False,
    ) -> None:
        self._store = session_store
        self._tokens = token_manager
        self._dev_header = dev_tenant_header_enabled
        if dev_tenant_header_enabled:
            logger.warning("Raw %s header authentication is ENABLED (development only)", DEV_TENANT_HEADER)

    @property
    def session_store(self) -> SessionStore:
        return self._store

    async def resolve(self, request: HasHeaders) -> TenantIdentity | None:
        headers = request.headers

        token = _bearer_token(headers)
        if token is not None:
            # An explicit bearer credential is authoritative; a bad one does
            # not fall back to the weaker methods below.
            return await self._resolve_session(token)
        if headers.get("authorization"):
            logger.info("Rejected non-bearer Authorization header")
            return None

        client_id = headers.get(SERVICE_TOKEN_HEADER)
        if client_id:
            return await self._resolve_service_token(client_id.strip())

        if self._dev_header:
            tenant_id = (headers.get(DEV_TENANT_HEADER) or "").strip()
            if tenant_id:
                return self._resolve_dev_header(tenant_id)

        return None

    async def _resolve_session(self, token: str) -> TenantIdentity | None:
        try:
            claims = self._tokens.decode(token)
        except TokenError as exc:
            logger.info("Session token rejected: %s", exc)
            return None

        marker_key = session_marker_key(hash_token_id(str(claims["jti"])))
        try:
            marker = await self._store.get(marker_key)
        except _STORE_ERRORS as exc:
            logger.error("Session store unavailable during session lookup: %s", type(exc).__name__)
            return None
        if marker is None:
            logger.info("Session for principal=%s is revoked or unknown", claims.get("sub"))
            return None

        return self._build(claims, AuthMethod.SESSION, source="session token")

    async def _resolve_service_token(self, client_id: str) -> TenantIdentity | None:
        try:
            record = await self._store.get(service_token_key(client_id))
        except _STORE_ERRORS as exc:
            logger.error("Session store unavailable during service token lookup: %s", type(exc).__name__)
            return None
        if record is None:
            logger.warning("Unknown service token client_id=%s", mask_identifier(client_id))
            return None
        if not isinstance(record, dict):
            logger.warning("Malformed service token record for client_id=%s", mask_identifier(client_id))
            return None
        return self._build(record, AuthMethod.SERVICE_TOKEN, source="service token")

    def _resolve_dev_header(self, tenant_id: str) -> TenantIdentity | None:
        logger.warning("Authenticating via development %s header (tenant=%s)", DEV_TENANT_HEADER, tenant_id)
        try:
            return TenantIdentity(tenant_id=tenant_id, role=Role.TENANT, auth_method=AuthMethod.DEV_HEADER)
        except ValueError:
            return None

    @staticmethod
    def _build(record: dict[str, Any], auth_method: AuthMethod, *, source: str) -> TenantIdentity | None:
        try:
            return TenantIdentity.from_record(record, auth_method)
        except ValueError as exc:
            logger.warning("Discarding %s with invalid identity record: %s", source, exc)
            return None
