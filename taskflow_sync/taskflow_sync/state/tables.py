"""SQLAlchemy 2.0 table definitions for the billing state store.

Tables use the ``Mapped`` / ``mapped_column`` declaration style.  ``Base`` is
exported for ``create_all()`` in local mode and for the repository layer.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from sqlalchemy import Boolean, DateTime, Index, String, TypeDecorator
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


def _new_id() -> str:
    return uuid.uuid4().hex


class UTCDateTime(TypeDecorator[datetime]):
    """``DateTime(timezone=True)`` that always hands back aware UTC values.

    SQLite drops the offset on storage; values read back are tagged UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: Any, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class BillingPlan(str, Enum):
    FREE = "free"
    PRO = "pro"
    BUSINESS = "business"


class BillingStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all state-store tables."""


# ---------------------------------------------------------------------------
# Workspaces
# ---------------------------------------------------------------------------


class WorkspaceTable(Base):
    """Tenant boundary.  ``stripe_customer_id`` backs the customer→workspace lookup."""

    __tablename__ = "workspaces"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    stripe_customer_id: Mapped[str | None] = mapped_column(String(256), nullable=True, unique=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)


# ---------------------------------------------------------------------------
# Billing records
# ---------------------------------------------------------------------------


class BillingRecordTable(Base):
    """Local projection of one Stripe subscription.

    At most one row per ``external_subscription_id``.  A workspace may hold
    several rows over time; only the most recently updated non-canceled row
    is authoritative.  Rows are never deleted, only transitioned to
    ``canceled``.
    """

    __tablename__ = "billing_records"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    external_customer_id: Mapped[str] = mapped_column(String(256), nullable=False)
    external_subscription_id: Mapped[str] = mapped_column(String(256), nullable=False, unique=True)
    plan: Mapped[str] = mapped_column(String(32), nullable=False, default=BillingPlan.FREE.value)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=BillingStatus.ACTIVE.value)
    current_period_start: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_event_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_billing_records_workspace", "workspace_id"),
        Index("ix_billing_records_customer", "external_customer_id"),
    )
