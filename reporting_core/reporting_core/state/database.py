"""Async SQLAlchemy engine and transaction-local session settings.

Supports both PostgreSQL (production) and SQLite (local dev mode).
Engine type is determined by the database URL scheme:
  - ``postgresql+asyncpg://`` → connection-pooled PostgreSQL engine
  - ``sqlite+aiosqlite://``   → SQLite engine without RLS
"""

from __future__ import annotations

import logging
import re

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

logger = logging.getLogger(__name__)

# Transaction-local settings read by the RLS policies.
TENANT_SETTING = "app.current_tenant"
CUSTOMER_SETTING = "app.current_customer"

# Only the two settings above may be written; the name is still bound as a
# parameter, this allowlist just keeps arbitrary GUCs out.
_ALLOWED_SETTINGS: frozenset[str] = frozenset({TENANT_SETTING, CUSTOMER_SETTING})

# Compiled regex for setting values – printable, no control characters, 1-256 chars.
_SETTING_VALUE_RE = re.compile(r"^[^\x00-\x1f\x7f]{1,256}$")


def get_engine(
    database_url: str,
    pool_size: int = 5,
    max_overflow: int = 10,
) -> AsyncEngine:
    """Create an async SQLAlchemy engine.

    Parameters
    ----------
    database_url:
        Connection string (PostgreSQL or SQLite scheme).
    pool_size:
        Number of persistent connections for PostgreSQL (ignored for SQLite).
    max_overflow:
        Maximum overflow connections for PostgreSQL (ignored for SQLite).

    Returns
    -------
    AsyncEngine
        A configured async engine ready for session creation.
    """
    if database_url.startswith("sqlite"):
        engine = create_async_engine(
            database_url,
            echo=False,
            connect_args={"check_same_thread": False},
        )
        logger.info("Created SQLite engine (no row-level security)")
        return engine

    engine = create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=1800,
        pool_timeout=10,
        echo=False,
        connect_args={
            "timeout": 10,
            "server_settings": {
                "statement_timeout": "25000",  # 25 s
                "idle_in_transaction_session_timeout": "30000",  # 30 s
            },
        },
    )
    logger.info(
        "Created async engine pool_size=%d max_overflow=%d",
        pool_size,
        max_overflow,
    )
    return engine


def get_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Return a session factory bound to *engine*."""
    return async_sessionmaker(engine, expire_on_commit=False)


def dialect_name(session: AsyncSession) -> str:
    """Return the dialect name of the session's bind (``postgresql``, ``sqlite``)."""
    bind = session.get_bind()
    return str(getattr(getattr(bind, "dialect", None), "name", ""))


async def set_local_setting(session: AsyncSession, name: str, value: str) -> None:
    """Assign a transaction-local configuration value.

    Uses ``set_config(name, value, true)`` with bound parameters, which is
    ``SET LOCAL`` without string interpolation.  The value disappears when
    the current transaction commits or rolls back, so it can never follow
    a pooled connection into the next request.

    For SQLite (local dev mode) this is a no-op since there is no RLS.

    Parameters
    ----------
    session:
        An active async session with a transaction in progress.
    name:
        One of :data:`TENANT_SETTING` or :data:`CUSTOMER_SETTING`.
    value:
        The value to bind.
    """
    if name not in _ALLOWED_SETTINGS:
        raise ValueError(f"Refusing to set unknown session setting {name!r}")
    if not _SETTING_VALUE_RE.match(value):
        raise ValueError(f"Invalid value for {name}")

    if "sqlite" in dialect_name(session):
        logger.debug("Skipping %s on SQLite (no RLS)", name)
        return

    await session.execute(
        text("SELECT set_config(:name, :value, true)"),
        {"name": name, "value": value},
    )
