"""Tests for JSONFormatter and RequestLoggingMiddleware."""

from __future__ import annotations

import json
import logging
import sys

import pytest

from taskflow_api.middleware.json_formatter import JSONFormatter, configure_json_logging


def _record(msg: str = "hello %s", args: tuple = ("world",), **extra: object) -> logging.LogRecord:
    record = logging.LogRecord("taskflow_api.test", logging.INFO, __file__, 1, msg, args, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_basic_fields(self) -> None:
        doc = json.loads(JSONFormatter().format(_record()))

        assert doc["level"] == "INFO"
        assert doc["logger"] == "taskflow_api.test"
        assert doc["message"] == "hello world"
        assert "timestamp" in doc
        assert "request" not in doc

    def test_context_fields(self) -> None:
        record = _record(request={"path": "/api/v1/health"}, webhook={"event_id": "evt_1"})

        doc = json.loads(JSONFormatter().format(record))

        assert doc["request"] == {"path": "/api/v1/health"}
        assert doc["webhook"] == {"event_id": "evt_1"}

    def test_exception_info(self) -> None:
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())

        doc = json.loads(JSONFormatter().format(record))

        assert "RuntimeError: boom" in doc["exc_info"]

    def test_configure_replaces_root_handlers(self) -> None:
        root = logging.getLogger()
        saved_handlers, saved_level = list(root.handlers), root.level
        try:
            configure_json_logging(logging.WARNING)

            assert len(root.handlers) == 1
            assert isinstance(root.handlers[0].formatter, JSONFormatter)
            assert root.level == logging.WARNING
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)


class TestRequestLoggingMiddleware:
    @pytest.mark.asyncio
    async def test_correlation_id_echoed(self, client) -> None:
        resp = await client.get("/api/v1/health", headers={"X-Correlation-ID": "corr-123"})

        assert resp.headers["X-Correlation-ID"] == "corr-123"

    @pytest.mark.asyncio
    async def test_correlation_id_generated(self, client) -> None:
        resp = await client.get("/api/v1/health")

        assert len(resp.headers["X-Correlation-ID"]) == 36

    @pytest.mark.asyncio
    async def test_stripe_signature_is_masked(self, client, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.INFO, logger="taskflow_api.access"):
            await client.post(
                "/api/v1/billing/webhooks",
                content=b"{}",
                headers={"Stripe-Signature": "t=1,v1=deadbeef"},
            )

        records = [r for r in caplog.records if r.name == "taskflow_api.access"]
        assert records
        request_info = records[-1].request
        assert request_info["status_code"] == 400
        assert request_info["headers"]["stripe-signature"] == "***"
        assert records[-1].levelno == logging.WARNING
