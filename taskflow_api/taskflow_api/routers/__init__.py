"""API router modules for the Taskflow service."""

from __future__ import annotations

from taskflow_api.routers import billing, health

__all__ = ["billing", "health"]
