"""SQLAlchemy 2.0 table definitions for the reporting store.

Only the columns the reporting handlers read are declared; the
synchronisation pipeline that fills these tables owns the full schema.
Every reporting table carries ``tenant_id`` so that both the query-level
tenant predicate and the RLS policies can scope it.

The three ``mv_usage_*`` relations are materialised views in production.
They are declared as plain tables on :data:`aggregate_metadata` so that
local databases and tests can create stand-ins with
``aggregate_metadata.create_all``; production migrations never create
them from here.
"""

from __future__ import annotations

from datetime import UTC, date, datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all reporting tables."""


# ---------------------------------------------------------------------------
# Tenant hierarchy
# ---------------------------------------------------------------------------


class TenantTable(Base):
    """Tenants and their (single-level) parent relationship."""

    __tablename__ = "rpt_tenants"

    tenant_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    tenant_name: Mapped[str] = mapped_column(String(256), nullable=False)
    parent_tenant_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    role: Mapped[str] = mapped_column(String(32), nullable=False, default="tenant")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


# ---------------------------------------------------------------------------
# Reporting tables
# ---------------------------------------------------------------------------


class UsageTable(Base):
    """One row per rated usage record."""

    __tablename__ = "rpt_usage"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    iccid: Mapped[str | None] = mapped_column(String(32), nullable=True)
    endpoint_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    endpoint_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    customer_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    usage_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    service_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    charge_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    consumption: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    charged_consumption: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    uplink_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    downlink_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    bundle_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    bundle_moniker: Mapped[str | None] = mapped_column(String(128), nullable=True)
    status_moniker: Mapped[str | None] = mapped_column(String(64), nullable=True)
    serving_operator_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    serving_country_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    buy_charge: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    buy_currency: Mapped[str | None] = mapped_column(String(8), nullable=True)
    sell_charge: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    sell_currency: Mapped[str | None] = mapped_column(String(8), nullable=True)

    __table_args__ = (
        Index("ix_rpt_usage_tenant_ts", "tenant_id", "timestamp"),
        Index("ix_rpt_usage_tenant_endpoint", "tenant_id", "endpoint_name"),
    )


class BundleTable(Base):
    """Bundle catalogue per tenant."""

    __tablename__ = "rpt_bundles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    source_id: Mapped[str] = mapped_column(String(128), nullable=False)
    bundle_name: Mapped[str] = mapped_column(String(256), nullable=False)
    bundle_moniker: Mapped[str] = mapped_column(String(128), nullable=False)
    price: Mapped[float | None] = mapped_column(Float, nullable=True)
    currency: Mapped[str | None] = mapped_column(String(8), nullable=True)
    formatted_price: Mapped[str | None] = mapped_column(String(64), nullable=True)
    allowance: Mapped[float | None] = mapped_column(Float, nullable=True)
    allowance_moniker: Mapped[str | None] = mapped_column(String(64), nullable=True)
    bundle_type_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    offer_type_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    status_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    effective_from: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    effective_to: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class BundleInstanceTable(Base):
    """Bundle instances attached to devices (ICCIDs)."""

    __tablename__ = "rpt_bundle_instances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    iccid: Mapped[str | None] = mapped_column(String(32), nullable=True)
    customer_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    endpoint_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    bundle_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    bundle_moniker: Mapped[str | None] = mapped_column(String(128), nullable=True)
    bundle_instance_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    start_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status_moniker: Mapped[str | None] = mapped_column(String(64), nullable=True)
    sequence: Mapped[int | None] = mapped_column(Integer, nullable=True)
    sequence_max: Mapped[int | None] = mapped_column(Integer, nullable=True)
    data_used_mb: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    data_allowance_mb: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class EndpointTable(Base):
    """Devices (endpoints) with rolling usage counters."""

    __tablename__ = "rpt_endpoints"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    source_id: Mapped[str] = mapped_column(String(128), nullable=False)
    customer_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    endpoint_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    endpoint_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    endpoint_type_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    status: Mapped[str | None] = mapped_column(String(64), nullable=True)
    endpoint_status_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    network_status_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    usage_rolling_24h: Mapped[float | None] = mapped_column(Float, nullable=True)
    usage_rolling_7d: Mapped[float | None] = mapped_column(Float, nullable=True)
    usage_rolling_28d: Mapped[float | None] = mapped_column(Float, nullable=True)
    usage_rolling_1y: Mapped[float | None] = mapped_column(Float, nullable=True)
    charge_rolling_24h: Mapped[float | None] = mapped_column(Float, nullable=True)
    charge_rolling_7d: Mapped[float | None] = mapped_column(Float, nullable=True)
    charge_rolling_28d: Mapped[float | None] = mapped_column(Float, nullable=True)
    charge_rolling_1y: Mapped[float | None] = mapped_column(Float, nullable=True)
    first_activity: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    latest_activity: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class UserTable(Base):
    """Interactive users.  Created and edited on /admin/users, signed in on /auth/login.

    ``password_hash`` is a bcrypt hash and stays ``NULL`` until an
    administrator sets a password; such accounts cannot sign in.
    """

    __tablename__ = "auth_users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    email_lower: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    display_name: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    role: Mapped[str] = mapped_column(String(32), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(128), ForeignKey("rpt_tenants.tenant_id"), nullable=False)
    customer_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    password_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)
    failed_logins: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    locked_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, onupdate=_utcnow)


class SessionTable(Base):
    """Durable record of issued session tokens (the marker lives in the session store)."""

    __tablename__ = "auth_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("auth_users.id"), nullable=False, index=True)
    token_hash: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_activity_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)


# ---------------------------------------------------------------------------
# Usage aggregates (materialised views in production)
# ---------------------------------------------------------------------------

aggregate_metadata = MetaData()


def _usage_aggregate(name: str, period_column: str) -> Table:
    return Table(
        name,
        aggregate_metadata,
        Column("tenant_id", String(128), nullable=False),
        Column("customer_name", String(256), nullable=True),
        Column(period_column, Date, nullable=False),
        Column("total_consumption", Float, nullable=False, default=0.0),
        Column("total_bytes", BigInteger, nullable=False, default=0),
        Column("total_buy", Float, nullable=False, default=0.0),
        Column("total_sell", Float, nullable=False, default=0.0),
        Column("record_count", Integer, nullable=False, default=0),
    )


usage_daily = _usage_aggregate("mv_usage_daily", "day")
usage_monthly = _usage_aggregate("mv_usage_monthly", "month")
usage_annual = _usage_aggregate("mv_usage_annual", "year")

# Tables carrying a tenant_id column that RLS policies are installed on.
TENANT_SCOPED_TABLES: tuple[str, ...] = (
    "rpt_usage",
    "rpt_bundles",
    "rpt_bundle_instances",
    "rpt_endpoints",
)

# Subset of TENANT_SCOPED_TABLES that also carries customer_name.
CUSTOMER_SCOPED_TABLES: frozenset[str] = frozenset({"rpt_usage", "rpt_bundle_instances"})
