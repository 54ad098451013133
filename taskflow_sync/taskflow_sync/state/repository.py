"""Repository classes providing access to the billing state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for calling
``session.commit()`` (or relying on the ``get_session`` context manager).
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from taskflow_sync.state.tables import (
    BillingRecordTable,
    BillingStatus,
    WorkspaceTable,
    _new_id,
    _utcnow,
)

logger = logging.getLogger(__name__)

# Columns a full upsert may overwrite.  ``workspace_id`` is immutable.
_UPSERT_COLUMNS = [
    "external_customer_id",
    "plan",
    "status",
    "current_period_start",
    "current_period_end",
    "cancel_at_period_end",
    "last_event_id",
    "updated_at",
]


async def _dialect_upsert(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    update_columns: list[str],
) -> Any:
    """Dialect-aware upsert: PostgreSQL ``ON CONFLICT DO UPDATE`` or SQLite equivalent.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to upsert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.
    update_columns:
        Column names to update when a conflict occurs.
    """
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: getattr(stmt.excluded, col) for col in update_columns},
        )
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: values[col] for col in update_columns},
        )
    return await session.execute(stmt)


class BillingRecordRepository:
    """Read and write access to ``billing_records``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_subscription(self, subscription_id: str) -> BillingRecordTable | None:
        stmt = (
            select(BillingRecordTable)
            .where(BillingRecordTable.external_subscription_id == subscription_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_by_identifiers(
        self,
        customer_id: str | None,
        subscription_id: str | None,
    ) -> BillingRecordTable | None:
        """Locate the record addressed by either Stripe identifier.

        A subscription-id match wins.  Otherwise the customer's most recently
        updated record is returned, preferring one that is not canceled.
        """
        if subscription_id:
            record = await self.get_by_subscription(subscription_id)
            if record is not None:
                return record
        if not customer_id:
            return None

        canceled_last = case((BillingRecordTable.status == BillingStatus.CANCELED.value, 1), else_=0)
        stmt = (
            select(BillingRecordTable)
            .where(BillingRecordTable.external_customer_id == customer_id)
            .order_by(canceled_last, BillingRecordTable.updated_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_authoritative(self, workspace_id: str) -> BillingRecordTable | None:
        """Return the workspace's authoritative record.

        The most recently updated non-canceled record, else the most recently
        updated record of any status, else ``None``.
        """
        canceled_last = case((BillingRecordTable.status == BillingStatus.CANCELED.value, 1), else_=0)
        stmt = (
            select(BillingRecordTable)
            .where(BillingRecordTable.workspace_id == workspace_id)
            .order_by(canceled_last, BillingRecordTable.updated_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_workspace(self, workspace_id: str) -> list[BillingRecordTable]:
        stmt = (
            select(BillingRecordTable)
            .where(BillingRecordTable.workspace_id == workspace_id)
            .order_by(BillingRecordTable.created_at)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def upsert_by_subscription(
        self,
        *,
        workspace_id: str,
        customer_id: str,
        subscription_id: str,
        plan: str,
        status: str,
        current_period_start: datetime | None,
        current_period_end: datetime | None,
        cancel_at_period_end: bool,
        event_id: str | None = None,
    ) -> BillingRecordTable:
        """Insert the record or overwrite its mutable fields, in one statement.

        Conflicts on ``external_subscription_id`` keep the stored
        ``workspace_id``, so two concurrent writers for the same subscription
        converge on one row.
        """
        now = _utcnow()
        values: dict[str, Any] = {
            "id": _new_id(),
            "workspace_id": workspace_id,
            "external_customer_id": customer_id,
            "external_subscription_id": subscription_id,
            "plan": plan,
            "status": status,
            "current_period_start": current_period_start,
            "current_period_end": current_period_end,
            "cancel_at_period_end": cancel_at_period_end,
            "last_event_id": event_id,
            "created_at": now,
            "updated_at": now,
        }
        await _dialect_upsert(
            self._session,
            BillingRecordTable,
            values,
            index_elements=["external_subscription_id"],
            update_columns=_UPSERT_COLUMNS,
        )
        await self._session.flush()
        record = await self.get_by_subscription(subscription_id)
        assert record is not None  # noqa: S101
        return record

    async def update(self, record_id: str, **fields: Any) -> int:
        """Overwrite *fields* on one record by primary key.  Returns rows changed."""
        if not fields:
            return 0
        fields.setdefault("updated_at", _utcnow())
        stmt = update(BillingRecordTable).where(BillingRecordTable.id == record_id).values(**fields)
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount  # type: ignore[return-value]

    async def apply_targeted_update(
        self,
        subscription_id: str,
        *,
        status: str,
        cancel_at_period_end: bool | None = None,
        event_id: str | None = None,
    ) -> int:
        """Change only status (and optionally the cancel flag) of one subscription.

        Period dates are left untouched.  Returns rows changed (0 when the
        subscription is unknown).
        """
        values: dict[str, Any] = {"status": status, "updated_at": _utcnow()}
        if cancel_at_period_end is not None:
            values["cancel_at_period_end"] = cancel_at_period_end
        if event_id is not None:
            values["last_event_id"] = event_id
        stmt = (
            update(BillingRecordTable)
            .where(BillingRecordTable.external_subscription_id == subscription_id)
            .values(**values)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount  # type: ignore[return-value]

    async def supersede_active(self, workspace_id: str, keep_subscription_id: str) -> int:
        """Cancel every other non-canceled record of *workspace_id*.

        Called when a new subscription becomes the workspace's authoritative
        record.  Returns rows changed.
        """
        stmt = (
            update(BillingRecordTable)
            .where(
                BillingRecordTable.workspace_id == workspace_id,
                BillingRecordTable.external_subscription_id != keep_subscription_id,
                BillingRecordTable.status != BillingStatus.CANCELED.value,
            )
            .values(status=BillingStatus.CANCELED.value, updated_at=_utcnow())
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        if result.rowcount:
            logger.info(
                "Superseded %d billing record(s) of workspace %s by %s",
                result.rowcount,
                workspace_id,
                keep_subscription_id,
            )
        return result.rowcount  # type: ignore[return-value]


class WorkspaceRepository:
    """Access to ``workspaces`` and the Stripe customer mapping."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, name: str, *, workspace_id: str | None = None) -> WorkspaceTable:
        row = WorkspaceTable(id=workspace_id or _new_id(), name=name)
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, workspace_id: str) -> WorkspaceTable | None:
        return await self._session.get(WorkspaceTable, workspace_id)

    async def get_by_customer(self, customer_id: str) -> WorkspaceTable | None:
        stmt = select(WorkspaceTable).where(WorkspaceTable.stripe_customer_id == customer_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def attach_customer(self, workspace_id: str, customer_id: str) -> bool:
        """Record *customer_id* as the workspace's Stripe customer.

        Returns ``False`` when the workspace does not exist.
        """
        stmt = (
            update(WorkspaceTable)
            .where(WorkspaceTable.id == workspace_id)
            .values(stripe_customer_id=customer_id)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return bool(result.rowcount)
