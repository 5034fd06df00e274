from __future__ import annotations

import asyncio
import json

import pytest

from backend.app.models import RealtimeEvent, utc_now
from backend.app.observability import MetricsRegistry
from backend.app.services.event_bus import EventBus
from backend.app.services.realtime import RealtimeStreamManager, format_sse


def parse_frame(frame: str) -> dict:
    fields = dict(line.split(": ", 1) for line in frame.strip().split("\n"))
    fields["data"] = json.loads(fields["data"])
    return fields


def test_format_sse_frame() -> None:
    event = RealtimeEvent(
        id="evt_1",
        event="job:statusChanged",
        tenant_id="t1",
        data={"job_id": "job_1"},
        timestamp=utc_now(),
    )
    assert format_sse(event) == (
        'event: job:statusChanged\nid: evt_1\ndata: {"job_id":"job_1"}\n\n'
    )


def test_same_tenant_connections_receive_and_other_tenant_does_not() -> None:
    bus = EventBus()
    manager = RealtimeStreamManager(bus, heartbeat_seconds=5)

    async def scenario() -> tuple[list[dict], int]:
        streams = [
            manager.stream("tenant_a"),
            manager.stream("tenant_a"),
            manager.stream("tenant_b"),
        ]
        for stream in streams:
            connected = parse_frame(await stream.__anext__())
            assert connected["event"] == "system:connected"
        open_for_a = manager.active_connections("tenant_a")

        bus.emit(
            "job:statusChanged",
            {"job_id": "job_1", "new_status": "BID_SENT"},
            tenant_id="tenant_a",
        )
        received = [
            parse_frame(await asyncio.wait_for(stream.__anext__(), timeout=1))
            for stream in streams[:2]
        ]
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(streams[2].__anext__(), timeout=0.1)
        for stream in streams:
            await stream.aclose()
        return received, open_for_a

    received, open_for_a = asyncio.run(scenario())

    assert open_for_a == 2
    assert [frame["event"] for frame in received] == ["job:statusChanged", "job:statusChanged"]
    assert received[0]["data"]["job_id"] == "job_1"
    assert manager.active_connections() == 0
    assert bus.subscriber_count() == 0


def test_idle_stream_sends_heartbeat() -> None:
    bus = EventBus()
    manager = RealtimeStreamManager(bus, heartbeat_seconds=0.05)

    async def scenario() -> list[str]:
        stream = manager.stream("t1")
        frames = [await stream.__anext__(), await stream.__anext__()]
        await stream.aclose()
        return frames

    connected, heartbeat = asyncio.run(scenario())
    assert parse_frame(connected)["event"] == "system:connected"
    assert parse_frame(heartbeat)["event"] == "system:heartbeat"


def test_closing_releases_subscription_and_updates_gauge() -> None:
    bus = EventBus()
    metrics = MetricsRegistry()
    manager = RealtimeStreamManager(bus, metrics=metrics)

    async def scenario() -> tuple[int, int]:
        connection = manager.open("t1")
        during = manager.active_connections("t1")
        manager.close(connection)
        manager.close(connection)
        return during, bus.subscriber_count("t1")

    during, remaining = asyncio.run(scenario())
    assert during == 1
    assert remaining == 0
    assert metrics.snapshot().realtime_connections == 0


def test_full_buffer_drops_events() -> None:
    bus = EventBus()
    manager = RealtimeStreamManager(bus, queue_size=1)

    async def scenario() -> int:
        connection = manager.open("t1")
        for index in range(3):
            bus.emit("ai:analysisStarted", {"job_id": f"job_{index}"}, tenant_id="t1")
        dropped = connection.dropped_events
        manager.close(connection)
        return dropped

    assert asyncio.run(scenario()) == 2


def test_stream_that_never_starts_holds_no_subscription() -> None:
    bus = EventBus()
    metrics = MetricsRegistry()
    manager = RealtimeStreamManager(bus, metrics=metrics)

    async def scenario() -> tuple[int, int]:
        stream = manager.stream("t1", "user_1")
        before = bus.subscriber_count()
        await stream.aclose()
        return before, manager.active_connections()

    before, active = asyncio.run(scenario())
    assert before == 0
    assert active == 0
    assert bus.subscriber_count() == 0
    assert metrics.snapshot().realtime_connections == 0
