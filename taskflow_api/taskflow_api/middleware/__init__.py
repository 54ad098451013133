"""Middleware components for the Taskflow API."""

from __future__ import annotations

from taskflow_api.middleware.json_formatter import JSONFormatter, configure_json_logging
from taskflow_api.middleware.logging import RequestLoggingMiddleware

__all__ = [
    "JSONFormatter",
    "RequestLoggingMiddleware",
    "configure_json_logging",
]
