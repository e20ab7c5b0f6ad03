"""FastAPI dependency injection for settings, the database and the caller identity."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from datetime import timedelta
from typing import Annotated

from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from reporting_api.auth.resolver import CredentialResolver
from reporting_api.config import APISettings, SessionStoreBackend, load_api_settings
from reporting_api.security import SessionTokenManager
from reporting_core.state.database import get_engine
from reporting_core.state.database import get_session_factory as build_session_factory
from reporting_core.state.session_store import InMemorySessionStore, RedisSessionStore, SessionStore
from reporting_core.tenancy.guard import ScopedSession, tenant_scope
from reporting_core.tenancy.identity import AuthMethod, TenantIdentity

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )
    _session_factory = build_session_factory(_engine)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory."""
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


SessionFactoryDep = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]

# ---------------------------------------------------------------------------
# Session store and credential resolver
# ---------------------------------------------------------------------------


def build_session_store(settings: APISettings) -> SessionStore:
    if settings.session_store_backend == SessionStoreBackend.MEMORY:
        logger.warning("Using the in-memory session store; sessions are per-process")
        return InMemorySessionStore()
    return RedisSessionStore.from_url(settings.redis_url)


def build_token_manager(settings: APISettings) -> SessionTokenManager:
    return SessionTokenManager(
        settings.jwt_secret.get_secret_value(),
        algorithm=settings.jwt_algorithm,
        ttl=timedelta(hours=settings.session_ttl_hours),
    )


def build_credential_resolver(
    settings: APISettings,
    store: SessionStore,
    token_manager: SessionTokenManager,
) -> CredentialResolver:
    return CredentialResolver(
        store,
        token_manager,
        dev_tenant_header_enabled=settings.dev_tenant_header_enabled,
    )


def get_session_store(request: Request) -> SessionStore:
    store = getattr(request.app.state, "session_store", None)
    if store is None:
        raise RuntimeError("Session store has not been initialised.")
    return store


def get_token_manager(request: Request) -> SessionTokenManager:
    manager = getattr(request.app.state, "token_manager", None)
    if manager is None:
        raise RuntimeError("Session token manager has not been initialised.")
    return manager


SessionStoreDep = Annotated[SessionStore, Depends(get_session_store)]
TokenManagerDep = Annotated[SessionTokenManager, Depends(get_token_manager)]

# ---------------------------------------------------------------------------
# Identity (populated by AuthenticationMiddleware)
# ---------------------------------------------------------------------------


def get_identity(request: Request) -> TenantIdentity:
    """Return the identity the auth middleware resolved for this request."""
    identity = getattr(request.state, "identity", None)
    if not isinstance(identity, TenantIdentity):
        raise HTTPException(status_code=401, detail="Authentication required")
    return identity


IdentityDep = Annotated[TenantIdentity, Depends(get_identity)]


async def get_scoped_session(
    identity: IdentityDep,
    session_factory: SessionFactoryDep,
) -> AsyncGenerator[ScopedSession, None]:
    """Yield a :class:`ScopedSession` for the request's identity.

    The whole request runs in one transaction: committed when the
    handler returns, rolled back when it raises.
    """
    async with tenant_scope(session_factory, identity) as scoped:
        yield scoped


ScopedSessionDep = Annotated[ScopedSession, Depends(get_scoped_session)]

# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


def require_session(identity: IdentityDep) -> TenantIdentity:
    """Reject identities that did not come from an interactive session."""
    if identity.auth_method is not AuthMethod.SESSION:
        raise HTTPException(status_code=403, detail="This endpoint requires a user session")
    return identity


def require_admin_session(identity: IdentityDep) -> TenantIdentity:
    """Platform administrators authenticated by session only."""
    if not identity.is_platform_admin or identity.auth_method is not AuthMethod.SESSION:
        raise HTTPException(status_code=403, detail="Admin access required")
    return identity


SessionIdentityDep = Annotated[TenantIdentity, Depends(require_session)]
AdminIdentityDep = Annotated[TenantIdentity, Depends(require_admin_session)]
