from __future__ import annotations

import pytest
from pydantic import ValidationError

from backend.app.models import RealtimeEvent
from backend.app.services.event_bus import EventBus


def status_payload(job_id: str = "job_1") -> dict:
    return {"job_id": job_id, "new_status": "ANALYZED"}


def test_tenant_scoped_subscribers_are_isolated() -> None:
    bus = EventBus()
    seen_a: list[RealtimeEvent] = []
    seen_b: list[RealtimeEvent] = []
    bus.subscribe(seen_a.append, tenant_id="tenant_a")
    bus.subscribe(seen_b.append, tenant_id="tenant_b")

    bus.emit("job:statusChanged", status_payload(), tenant_id="tenant_a")

    assert len(seen_a) == 1
    assert seen_a[0].tenant_id == "tenant_a"
    assert seen_b == []


def test_global_subscriber_sees_every_tenant() -> None:
    bus = EventBus()
    seen: list[str] = []
    bus.subscribe(lambda event: seen.append(event.tenant_id))

    bus.emit("job:statusChanged", status_payload(), tenant_id="tenant_a")
    bus.emit("job:statusChanged", status_payload(), tenant_id="tenant_b")

    assert seen == ["tenant_a", "tenant_b"]


def test_failing_subscriber_does_not_block_others() -> None:
    bus = EventBus()
    seen: list[str] = []

    def broken(_: RealtimeEvent) -> None:
        raise RuntimeError("boom")

    bus.subscribe(broken, tenant_id="t1")
    bus.subscribe(lambda event: seen.append(event.event), tenant_id="t1")

    bus.emit("job:statusChanged", status_payload(), tenant_id="t1")

    assert seen == ["job:statusChanged"]


def test_failing_filter_does_not_block_others_or_the_publisher() -> None:
    bus = EventBus()
    seen: list[str] = []

    def broken_filter(_: RealtimeEvent) -> bool:
        raise KeyError("boom")

    bus.subscribe(lambda event: seen.append("filtered"), event=broken_filter)
    bus.subscribe(lambda event: seen.append(event.event), tenant_id="t1")

    event = bus.emit("ai:analysisStarted", {"job_id": "job_1"}, tenant_id="t1")

    assert event.event == "ai:analysisStarted"
    assert seen == ["ai:analysisStarted"]


def test_event_filters_by_name_and_set() -> None:
    bus = EventBus()
    by_name: list[str] = []
    by_set: list[str] = []
    bus.subscribe(lambda event: by_name.append(event.event), event="ai:analysisStarted")
    bus.subscribe(
        lambda event: by_set.append(event.event),
        event=frozenset({"ai:analysisStarted", "ai:analysisFailed"}),
    )

    bus.emit("ai:analysisStarted", {"job_id": "job_1"}, tenant_id="t1")
    bus.emit("ai:analysisFailed", {"job_id": "job_1", "error": "timeout"}, tenant_id="t1")
    bus.emit("job:statusChanged", status_payload(), tenant_id="t1")

    assert by_name == ["ai:analysisStarted"]
    assert by_set == ["ai:analysisStarted", "ai:analysisFailed"]


def test_unsubscribe_stops_delivery() -> None:
    bus = EventBus()
    seen: list[str] = []
    unsubscribe = bus.subscribe(lambda event: seen.append(event.id), tenant_id="t1")
    bus.emit("job:statusChanged", status_payload(), tenant_id="t1")
    unsubscribe()
    bus.emit("job:statusChanged", status_payload(), tenant_id="t1")

    assert len(seen) == 1
    assert bus.subscriber_count() == 0


def test_emit_from_inside_a_handler_is_deferred() -> None:
    bus = EventBus()
    order: list[str] = []

    def chain(event: RealtimeEvent) -> None:
        order.append(f"chain:{event.event}")
        if event.event == "ai:analysisStarted":
            bus.emit("ai:analysisFailed", {"job_id": "job_1", "error": "x"}, tenant_id="t1")
            order.append("chain:emit-returned")

    bus.subscribe(chain, tenant_id="t1")
    bus.subscribe(lambda event: order.append(f"observer:{event.event}"), tenant_id="t1")

    bus.emit("ai:analysisStarted", {"job_id": "job_1"}, tenant_id="t1")

    assert len(order) == 5
    assert order.index("chain:emit-returned") < order.index("chain:ai:analysisFailed")
    # The first fan-out completes before the nested event reaches anyone.
    assert order.index("observer:ai:analysisStarted") < order.index("chain:ai:analysisFailed")
    assert order.index("observer:ai:analysisStarted") < order.index("observer:ai:analysisFailed")


def test_known_events_are_validated() -> None:
    bus = EventBus()
    with pytest.raises(ValidationError):
        bus.emit("job:captured", {"title": "missing id"}, tenant_id="t1")
    with pytest.raises(ValueError):
        bus.emit("job:statusChanged", status_payload(), tenant_id="")


def test_unknown_events_carry_untyped_data() -> None:
    bus = EventBus()
    event = bus.emit("scope:changed", {"anything": [1, 2]}, tenant_id="t1")
    assert event.data == {"anything": [1, 2]}
    assert event.id.startswith("evt_")
