import asyncio

import pytest

from proctor_gateway.realtime import (
    EVENT_ROW_CHANGE,
    ChannelId,
    ChannelMessage,
    EphemeralSessionState,
    NAVIGATION_RESET,
    PubSubHub,
    BroadcastError,
    apply_patch,
    validate_patch,
)


def test_apply_patch_is_a_pure_shallow_merge():
    s0 = EphemeralSessionState()
    s1 = apply_patch(s0, {"current_item_index": 3, "is_timer_running": True})

    assert s0 == EphemeralSessionState()
    assert s1.current_item_index == 3
    assert s1.is_timer_running is True
    assert s1.timer_seconds == 0

    s2 = apply_patch(s1, {"timer_seconds": 12, "pointer_position": {"x": 0.5, "y": 0.25}})
    assert s2.current_item_index == 3
    assert s2.pointer_position == (0.5, 0.25)


def test_apply_patch_drops_unknown_and_malformed_fields():
    s0 = EphemeralSessionState(current_item_index=2)
    s1 = apply_patch(s0, {"current_item_index": "seven", "bogus": 1, "timer_seconds": 4})

    assert s1.current_item_index == 2
    assert s1.timer_seconds == 4


def test_navigation_reset_zeroes_item_and_timer():
    state = EphemeralSessionState(current_item_index=9, is_timer_running=True, timer_seconds=40)
    reset = apply_patch(state, NAVIGATION_RESET)

    assert reset.current_item_index == 0
    assert reset.timer_seconds == 0
    assert reset.is_timer_running is False


def test_validate_patch_rejects_unknown_fields():
    with pytest.raises(ValueError):
        validate_patch({"session_id": "other"})
    with pytest.raises(ValueError):
        validate_patch({"is_timer_running": "yes"})
    assert validate_patch({"pointer_position": None}) == {"pointer_position": None}


def test_channel_id_is_typed_and_validated():
    a = ChannelId.for_session("s1")
    assert a == ChannelId("session", "s1")
    assert a != ChannelId.for_session("s2")
    assert str(a) == "session:s1"
    with pytest.raises(ValueError):
        ChannelId.for_session("")


@pytest.mark.asyncio
async def test_hub_delivers_in_order_and_isolates_sessions():
    hub = PubSubHub()
    s1 = hub.subscribe(ChannelId.for_session("s1"))
    s2 = hub.subscribe(ChannelId.for_session("s2"))

    hub.publish(ChannelId.for_session("s1"), ChannelMessage("a", {"n": 1}))
    hub.publish(ChannelId.for_session("s1"), ChannelMessage("b", {"n": 2}))

    assert (await s1.get(timeout=1)).event == "a"
    assert (await s1.get(timeout=1)).event == "b"
    assert s2.get_nowait() is None


@pytest.mark.asyncio
async def test_hub_rejects_string_channel_keys():
    hub = PubSubHub()
    with pytest.raises(BroadcastError):
        hub.publish("session:s1", ChannelMessage("a", {}))  # type: ignore[arg-type]
    with pytest.raises(TypeError):
        hub.subscribe("session:s1")  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_full_subscriber_queue_drops_instead_of_blocking():
    hub = PubSubHub(queue_size=1)
    channel = ChannelId.for_session("s1")
    sub = hub.subscribe(channel)

    assert hub.publish(channel, ChannelMessage("a", {})) == 1
    assert hub.publish(channel, ChannelMessage("b", {})) == 0
    assert sub.dropped == 1
    assert (await sub.get(timeout=1)).event == "a"


@pytest.mark.asyncio
async def test_closed_subscription_stops_receiving():
    hub = PubSubHub()
    channel = ChannelId.for_session("s1")
    sub = hub.subscribe(channel)
    sub.close()

    assert hub.subscriber_count(channel) == 0
    assert hub.publish(channel, ChannelMessage("a", {})) == 0


@pytest.mark.asyncio
async def test_store_change_routes_by_session():
    hub = PubSubHub()
    sub = hub.subscribe(ChannelId.for_session("s1"))

    hub.on_store_change("responses", "INSERT", {"id": "r1", "session_id": "s1"})
    hub.on_store_change("responses", "INSERT", {"id": "r2", "session_id": "s2"})
    hub.on_store_change("students", "INSERT", {"id": "stu"})

    msg = await sub.get(timeout=1)
    assert msg.event == EVENT_ROW_CHANGE
    assert msg.payload["row"]["id"] == "r1"
    assert sub.get_nowait() is None
    await asyncio.sleep(0)
