"""Key-value store for revocable session markers and service-token identities.

The store is an injected collaborator: the credential resolver receives a
:class:`SessionStore` instance and never reaches for a module-level
client.  Production uses :class:`RedisSessionStore`; tests and local
development use :class:`InMemorySessionStore`.

Values are small JSON-serialisable records.  ``get`` returning ``None``
is a normal outcome (unknown key, expired key, or revoked session).

Key layout::

    session:<sha256-b64 of jti>   -> {"user_id": ...}   (presence = session is live)
    token:<client id>             -> identity record for a service token
    pricing:all                   -> {"prices": [...]}  (per-tenant bundle prices)

Results are never cached client-side, so a revocation written by one
replica is visible to the next lookup on every replica.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Protocol, runtime_checkable

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

SESSION_PREFIX = "session:"
SERVICE_TOKEN_PREFIX = "token:"
PRICING_KEY = "pricing:all"


def session_marker_key(token_hash: str) -> str:
    return f"{SESSION_PREFIX}{token_hash}"


def service_token_key(client_id: str) -> str:
    return f"{SERVICE_TOKEN_PREFIX}{client_id}"


def pricing_key() -> str:
    return PRICING_KEY


class SessionStoreError(RuntimeError):
    """The backing store could not be reached or returned garbage."""


@runtime_checkable
class SessionStore(Protocol):
    """Minimal async key-value contract with optional expiry."""

    async def get(self, key: str) -> Any | None: ...

    async def put(self, key: str, value: Any, ttl_seconds: int | None = None) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def close(self) -> None: ...


class RedisSessionStore:
    """:class:`SessionStore` backed by ``redis.asyncio``.

    Every Redis failure surfaces as :class:`SessionStoreError` so callers
    can fail closed without knowing about the driver.
    """

    def __init__(self, client: aioredis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> RedisSessionStore:
        client = aioredis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            health_check_interval=15,
        )
        return cls(client)

    async def get(self, key: str) -> Any | None:
        try:
            raw = await self._client.get(key)
        except RedisError as exc:
            raise SessionStoreError(f"session store read failed: {type(exc).__name__}") from exc
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise SessionStoreError("session store returned a non-JSON value") from exc

    async def put(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        payload = json.dumps(value, separators=(",", ":"), sort_keys=True)
        try:
            await self._client.set(key, payload, ex=ttl_seconds)
        except RedisError as exc:
            raise SessionStoreError(f"session store write failed: {type(exc).__name__}") from exc

    async def delete(self, key: str) -> None:
        try:
            await self._client.delete(key)
        except RedisError as exc:
            raise SessionStoreError(f"session store delete failed: {type(exc).__name__}") from exc

    async def close(self) -> None:
        await self._client.aclose()


class InMemorySessionStore:
    """Process-local :class:`SessionStore` with monotonic-clock expiry.

    Values are stored as JSON text so callers get the same copy semantics
    as with Redis.
    """

    def __init__(self) -> None:
        self._data: dict[str, tuple[str, float | None]] = {}

    async def get(self, key: str) -> Any | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        raw, expires_at = entry
        if expires_at is not None and time.monotonic() >= expires_at:
            del self._data[key]
            return None
        return json.loads(raw)

    async def put(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        expires_at = time.monotonic() + ttl_seconds if ttl_seconds else None
        self._data[key] = (json.dumps(value), expires_at)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def close(self) -> None:
        self._data.clear()
