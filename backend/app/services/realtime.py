from __future__ import annotations

import asyncio
import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncIterator, Callable, Optional

from backend.app.models import ConnectedPayload, HeartbeatPayload, RealtimeEvent, utc_now
from backend.app.observability import MetricsRegistry
from backend.app.services.event_bus import (
    SYSTEM_CONNECTED,
    SYSTEM_HEARTBEAT,
    EventBus,
    build_event,
)
from backend.app.store import new_id

logger = logging.getLogger("bid_buddy.realtime")

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def format_sse(event: RealtimeEvent) -> str:
    data = json.dumps(event.data, separators=(",", ":"))
    return f"event: {event.event}\nid: {event.id}\ndata: {data}\n\n"


@dataclass
class StreamConnection:
    id: str
    tenant_id: str
    user_id: Optional[str]
    queue: asyncio.Queue
    loop: asyncio.AbstractEventLoop
    opened_at_utc: datetime
    unsubscribe: Callable[[], None] = field(default=lambda: None)
    closed: bool = False
    dropped_events: int = 0


class RealtimeStreamManager:
    """Owns one bus subscription per open browser stream."""

    def __init__(
        self,
        bus: EventBus,
        *,
        heartbeat_seconds: float = 30.0,
        queue_size: int = 256,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self._bus = bus
        self._heartbeat_seconds = heartbeat_seconds
        self._queue_size = queue_size
        self._metrics = metrics
        self._lock = threading.Lock()
        self._connections: dict[str, StreamConnection] = {}

    def open(self, tenant_id: str, user_id: Optional[str] = None) -> StreamConnection:
        """Register a connection. Must be called from the loop that will serve it."""
        connection = StreamConnection(
            id=new_id("conn"),
            tenant_id=tenant_id,
            user_id=user_id,
            queue=asyncio.Queue(maxsize=self._queue_size),
            loop=asyncio.get_running_loop(),
            opened_at_utc=utc_now(),
        )
        connection.unsubscribe = self._bus.subscribe(
            lambda event: self._deliver(connection, event),
            tenant_id=tenant_id,
        )
        with self._lock:
            self._connections[connection.id] = connection
            active = len(self._connections)
        self._report(active)
        logger.info(
            "stream_opened connection_id=%s tenant_id=%s active=%s",
            connection.id,
            tenant_id,
            active,
        )
        return connection

    def close(self, connection: StreamConnection) -> None:
        if connection.closed:
            return
        connection.closed = True
        connection.unsubscribe()
        with self._lock:
            self._connections.pop(connection.id, None)
            active = len(self._connections)
        self._report(active)
        logger.info(
            "stream_closed connection_id=%s tenant_id=%s dropped=%s active=%s",
            connection.id,
            connection.tenant_id,
            connection.dropped_events,
            active,
        )

    def active_connections(self, tenant_id: Optional[str] = None) -> int:
        with self._lock:
            if tenant_id is None:
                return len(self._connections)
            return sum(1 for conn in self._connections.values() if conn.tenant_id == tenant_id)

    async def stream(self, tenant_id: str, user_id: Optional[str] = None) -> AsyncIterator[str]:
        """
        Yield SSE frames until the consumer stops iterating or the task is cancelled.

        The connection is registered on first iteration, so a response that is never
        started holds no subscription.
        """
        connection: Optional[StreamConnection] = None
        try:
            connection = self.open(tenant_id, user_id)
            yield format_sse(
                build_event(
                    SYSTEM_CONNECTED,
                    ConnectedPayload(connection_id=connection.id),
                    tenant_id=connection.tenant_id,
                )
            )
            while not connection.closed:
                try:
                    event = await asyncio.wait_for(
                        connection.queue.get(), timeout=self._heartbeat_seconds
                    )
                except asyncio.TimeoutError:
                    event = build_event(
                        SYSTEM_HEARTBEAT,
                        HeartbeatPayload(connection_id=connection.id),
                        tenant_id=connection.tenant_id,
                    )
                yield format_sse(event)
        finally:
            if connection is not None:
                self.close(connection)

    def _deliver(self, connection: StreamConnection, event: RealtimeEvent) -> None:
        if connection.closed:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is connection.loop:
            self._enqueue(connection, event)
            return
        try:
            connection.loop.call_soon_threadsafe(self._enqueue, connection, event)
        except RuntimeError:
            # Serving loop is gone; the stream can never be drained again.
            logger.warning("stream_loop_closed connection_id=%s", connection.id)
            self.close(connection)

    def _enqueue(self, connection: StreamConnection, event: RealtimeEvent) -> None:
        if connection.closed:
            return
        try:
            connection.queue.put_nowait(event)
        except asyncio.QueueFull:
            connection.dropped_events += 1
            logger.warning(
                "stream_buffer_full connection_id=%s event=%s dropped=%s",
                connection.id,
                event.event,
                connection.dropped_events,
            )

    def _report(self, active: int) -> None:
        if self._metrics:
            self._metrics.set_realtime_connections(active)
