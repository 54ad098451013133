"""Billing state persistence (PostgreSQL, or SQLite in local mode)."""

from taskflow_sync.state.database import create_tables, get_engine, get_session
from taskflow_sync.state.repository import BillingRecordRepository, WorkspaceRepository
from taskflow_sync.state.tables import (
    Base,
    BillingPlan,
    BillingRecordTable,
    BillingStatus,
    WorkspaceTable,
)

__all__ = [
    "Base",
    "BillingPlan",
    "BillingRecordRepository",
    "BillingRecordTable",
    "BillingStatus",
    "WorkspaceRepository",
    "WorkspaceTable",
    "create_tables",
    "get_engine",
    "get_session",
]
