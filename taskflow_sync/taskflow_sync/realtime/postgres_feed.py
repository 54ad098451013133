"""PostgreSQL ``LISTEN/NOTIFY`` change-feed transport.

Row triggers installed by :func:`install_change_triggers` publish a compact
JSON document per change on a NOTIFY channel::

    {"table": "tasks", "type": "UPDATE",
     "record": {"id": "...", "project_id": "..."},
     "old_record": {"id": "...", "project_id": "..."}}

Only the identifying columns declared in
:mod:`taskflow_sync.realtime.entities` are included, which keeps payloads far
below the 8000-byte NOTIFY limit.  Each open channel holds one dedicated
asyncpg connection; losing that connection ends the stream with
:class:`ChannelDisconnected`.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Callable
from typing import Any

import asyncpg
from pydantic import ValidationError

from taskflow_sync.realtime.entities import ENTITY_MODELS, entity_columns
from taskflow_sync.realtime.feed import ChannelDisconnected
from taskflow_sync.realtime.models import ChangeEvent, ChangeOperation

logger = logging.getLogger(__name__)

_CHANNEL_RE = re.compile(r"^[a-z_][a-z0-9_]{0,62}$")
_TRIGGER_NAME = "taskflow_change_feed"
_DISCONNECT = object()

CHANGE_FEED_TRIGGER_SQL = """
CREATE OR REPLACE FUNCTION taskflow_notify_change() RETURNS trigger AS $$
DECLARE
    keep text[] := TG_ARGV[1:TG_NARGS - 1];
    new_doc jsonb;
    old_doc jsonb;
BEGIN
    IF TG_OP <> 'DELETE' THEN
        SELECT jsonb_object_agg(key, value) INTO new_doc
        FROM jsonb_each(to_jsonb(NEW)) WHERE key = ANY(keep);
    END IF;
    IF TG_OP <> 'INSERT' THEN
        SELECT jsonb_object_agg(key, value) INTO old_doc
        FROM jsonb_each(to_jsonb(OLD)) WHERE key = ANY(keep);
    END IF;
    PERFORM pg_notify(
        TG_ARGV[0],
        jsonb_build_object(
            'table', TG_TABLE_NAME,
            'type', TG_OP,
            'record', new_doc,
            'old_record', old_doc
        )::text
    );
    RETURN NULL;
END;
$$ LANGUAGE plpgsql;
"""


def asyncpg_dsn(database_url: str) -> str:
    """Strip the SQLAlchemy driver suffix so asyncpg accepts the URL."""
    return re.sub(r"^postgresql\+asyncpg://", "postgresql://", database_url)


def _validate_channel(channel: str) -> str:
    if not _CHANNEL_RE.match(channel):
        raise ValueError(f"Invalid NOTIFY channel name: {channel!r}")
    return channel


async def install_change_triggers(
    conn: asyncpg.Connection,
    channel: str = "taskflow_changes",
    tables: list[str] | None = None,
) -> list[str]:
    """Create the notify function and one row trigger per entity table.

    Idempotent.  Returns the tables that received a trigger.
    """
    channel = _validate_channel(channel)
    targets = tables if tables is not None else sorted(ENTITY_MODELS)
    unknown = [t for t in targets if t not in ENTITY_MODELS]
    if unknown:
        raise ValueError(f"Unknown entity tables: {', '.join(unknown)}")

    await conn.execute(CHANGE_FEED_TRIGGER_SQL)
    for table in targets:
        args = ", ".join(f"'{name}'" for name in (channel, *sorted(entity_columns(table))))
        await conn.execute(f'DROP TRIGGER IF EXISTS {_TRIGGER_NAME} ON "{table}"')
        await conn.execute(
            f'CREATE TRIGGER {_TRIGGER_NAME} AFTER INSERT OR UPDATE OR DELETE ON "{table}" '
            f"FOR EACH ROW EXECUTE FUNCTION taskflow_notify_change({args})"
        )
    logger.info("Installed change-feed triggers on %d table(s) (channel=%s)", len(targets), channel)
    return list(targets)


def parse_notification(payload: str) -> ChangeEvent:
    """Turn a NOTIFY payload into a typed :class:`ChangeEvent`.

    Raises
    ------
    ValueError
        If the payload is not valid JSON or does not describe a known entity.
    """
    doc: dict[str, Any] = json.loads(payload)
    operation = ChangeOperation(str(doc.get("type", "")).lower())
    record = doc.get("record")
    old_record = doc.get("old_record")

    if operation is ChangeOperation.DELETE:
        row, old_row = old_record, None
    elif operation is ChangeOperation.UPDATE:
        row, old_row = record, old_record
    else:
        row, old_row = record, None

    return ChangeEvent.model_validate(
        {
            "entity_type": doc.get("table"),
            "operation": operation,
            "row": row,
            "old_row": old_row,
        }
    )


class _PostgresStream:
    def __init__(
        self,
        conn: asyncpg.Connection,
        channel: str,
        entity_type: str,
        on_close: Callable[[_PostgresStream], None] | None = None,
    ) -> None:
        self._conn = conn
        self._on_close = on_close
        self._channel = channel
        self._entity_type = entity_type
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._closed = False

    async def start(self) -> None:
        await self._conn.add_listener(self._channel, self._on_notify)
        self._conn.add_termination_listener(self._on_terminate)

    def __aiter__(self) -> _PostgresStream:
        return self

    async def __anext__(self) -> ChangeEvent:
        if self._closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _DISCONNECT:
            self._closed = True
            raise ChannelDisconnected(f"PostgreSQL connection for {self._entity_type!r} terminated")
        assert isinstance(item, ChangeEvent)  # noqa: S101
        return item

    def _on_notify(self, _conn: Any, _pid: int, _channel: str, payload: str) -> None:
        try:
            event = parse_notification(payload)
        except (ValueError, ValidationError):
            logger.warning("Discarding malformed change notification: %.200s", payload)
            return
        if event.entity_type == self._entity_type:
            self._queue.put_nowait(event)

    def _on_terminate(self, _conn: Any) -> None:
        if not self._closed:
            self._queue.put_nowait(_DISCONNECT)

    async def close(self) -> None:
        if self._on_close is not None:
            self._on_close(self)
        if self._closed and self._conn.is_closed():
            return
        self._closed = True
        try:
            if not self._conn.is_closed():
                await self._conn.remove_listener(self._channel, self._on_notify)
                self._conn.remove_termination_listener(self._on_terminate)
                await self._conn.close(timeout=5)
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError):
            logger.debug("Error closing change-feed connection", exc_info=True)
            self._conn.terminate()


class PostgresChangeFeed:
    """Change feed backed by a dedicated asyncpg connection per channel.

    Parameters
    ----------
    database_url:
        PostgreSQL URL; a ``postgresql+asyncpg://`` prefix is accepted.
    channel:
        NOTIFY channel the row triggers publish on.
    connect_timeout:
        Seconds to wait for a connection before reporting a disconnect.
    """

    def __init__(
        self,
        database_url: str,
        *,
        channel: str = "taskflow_changes",
        connect_timeout: float = 10.0,
    ) -> None:
        self._dsn = asyncpg_dsn(database_url)
        self._channel = _validate_channel(channel)
        self._connect_timeout = connect_timeout
        self._streams: set[_PostgresStream] = set()

    async def open(self, entity_type: str, filter_expression: str | None) -> _PostgresStream:
        try:
            conn = await asyncpg.connect(self._dsn, timeout=self._connect_timeout)
        except (OSError, TimeoutError, asyncpg.PostgresError) as exc:
            raise ChannelDisconnected(f"Cannot open change feed for {entity_type!r}: {exc}") from exc

        stream = _PostgresStream(conn, self._channel, entity_type, on_close=self._streams.discard)
        try:
            await stream.start()
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
            conn.terminate()
            raise ChannelDisconnected(f"Cannot LISTEN on {self._channel!r}: {exc}") from exc

        self._streams.add(stream)
        logger.info("LISTEN %s for %s (%s)", self._channel, entity_type, filter_expression or "*")
        return stream

    async def aclose(self) -> None:
        streams = list(self._streams)
        self._streams.clear()
        for stream in streams:
            await stream.close()
