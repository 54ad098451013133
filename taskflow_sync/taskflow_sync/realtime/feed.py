"""Change-feed transport interface and the in-process implementation.

A transport opens one push channel per ``(entity_type, filter_expression)``
and yields :class:`ChangeEvent` values until the connection drops, at which
point iteration raises :class:`ChannelDisconnected`.  Transports make no
delivery guarantee across a disconnect; the router compensates with a
catch-up invalidation sweep after reconnecting.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from taskflow_sync.realtime.models import ChangeEvent

logger = logging.getLogger(__name__)


class ChannelDisconnected(ConnectionError):
    """The push channel to the remote store was lost."""


class ChangeStream(Protocol):
    """An open push channel: an async iterator of events plus ``close()``."""

    def __aiter__(self) -> ChangeStream: ...

    async def __anext__(self) -> ChangeEvent: ...

    async def close(self) -> None:
        """Release the underlying connection.  Safe to call more than once."""
        ...


class ChangeFeed(Protocol):
    """Structural interface for change-feed transports."""

    async def open(self, entity_type: str, filter_expression: str | None) -> ChangeStream:
        """Open a push channel for *entity_type*.

        Raises
        ------
        ChannelDisconnected
            If the channel cannot be established.
        """
        ...

    async def aclose(self) -> None:
        """Shut the transport down, closing every open channel."""
        ...


# ---------------------------------------------------------------------------
# In-process transport (local mode and tests)
# ---------------------------------------------------------------------------

_DISCONNECT = object()


class _MemoryStream:
    def __init__(self, feed: InMemoryChangeFeed, entity_type: str, filter_expression: str | None) -> None:
        self._feed = feed
        self.entity_type = entity_type
        self.filter_expression = filter_expression
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._closed = False

    def __aiter__(self) -> _MemoryStream:
        return self

    async def __anext__(self) -> ChangeEvent:
        if self._closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _DISCONNECT:
            self._closed = True
            raise ChannelDisconnected(f"In-memory channel for {self.entity_type!r} dropped")
        assert isinstance(item, ChangeEvent)  # noqa: S101
        return item

    def deliver(self, item: object) -> None:
        if not self._closed:
            self._queue.put_nowait(item)

    async def close(self) -> None:
        self._closed = True
        self._feed._detach(self)


class InMemoryChangeFeed:
    """Process-local change feed.

    Every event published for an entity type is pushed to every open
    channel of that type; filtering is left to the subscriber.  Used when
    the state store is SQLite and by the test suite to script disconnects.
    """

    def __init__(self) -> None:
        self._streams: list[_MemoryStream] = []
        self._fail_opens = 0
        self._opens = 0
        self._changed = asyncio.Condition()

    async def open(self, entity_type: str, filter_expression: str | None) -> _MemoryStream:
        if self._fail_opens > 0:
            self._fail_opens -= 1
            raise ChannelDisconnected(f"Refusing channel for {entity_type!r} (scripted failure)")
        stream = _MemoryStream(self, entity_type, filter_expression)
        self._streams.append(stream)
        self._opens += 1
        logger.debug("In-memory channel opened for %s (%s)", entity_type, filter_expression or "*")
        async with self._changed:
            self._changed.notify_all()
        return stream

    def publish(self, event: ChangeEvent) -> int:
        """Push *event* to every open channel of its entity type.  Returns receivers."""
        receivers = [s for s in self._streams if s.entity_type == event.entity_type]
        for stream in receivers:
            stream.deliver(event)
        return len(receivers)

    def disconnect(self, entity_type: str | None = None) -> int:
        """Drop live channels (all, or those of *entity_type*).  Returns count dropped."""
        dropped = [s for s in self._streams if entity_type is None or s.entity_type == entity_type]
        for stream in dropped:
            stream.deliver(_DISCONNECT)
            self._detach(stream)
        return len(dropped)

    def fail_next_opens(self, count: int) -> None:
        """Make the next *count* ``open()`` calls fail with :class:`ChannelDisconnected`."""
        self._fail_opens = count

    def open_channels(self, entity_type: str | None = None) -> int:
        return sum(1 for s in self._streams if entity_type is None or s.entity_type == entity_type)

    @property
    def total_opens(self) -> int:
        return self._opens

    async def wait_for_opens(self, count: int, timeout: float = 2.0) -> None:
        """Block until ``open()`` has succeeded at least *count* times in total."""
        async with self._changed:
            await asyncio.wait_for(self._changed.wait_for(lambda: self._opens >= count), timeout)

    async def aclose(self) -> None:
        self.disconnect()

    def _detach(self, stream: _MemoryStream) -> None:
        if stream in self._streams:
            self._streams.remove(stream)
