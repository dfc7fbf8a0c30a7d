import asyncio

from dispatch_service.ws_manager import ChannelManager, order_channel, user_channel

from conftest import RecordingSink


async def test_publish_reaches_only_channel_members():
    hub = ChannelManager()
    a, b = RecordingSink(), RecordingSink()
    await hub.connect(order_channel("o1"), "alice", a)
    await hub.connect(order_channel("o2"), "bob", b)

    delivered = await hub.publish(order_channel("o1"), "order_status_change", {"current": "in_transit"})

    assert delivered == 1
    assert a.messages == [{"type": "order_status_change", "data": {"current": "in_transit"}}]
    assert b.messages == []


async def test_failed_sink_is_dropped():
    hub = ChannelManager()
    good, broken = RecordingSink(), RecordingSink(fail=True)
    await hub.connect(user_channel("c1"), "c1-phone", good)
    await hub.connect(user_channel("c1"), "c1-tablet", broken)

    assert await hub.publish(user_channel("c1"), "assignment_offered", {}) == 1
    assert hub.subscribers(user_channel("c1")) == ["c1-phone"]


async def test_retain_evicts_unlisted_subscribers():
    hub = ChannelManager()
    for sid in ("sender", "old-courier", "new-courier"):
        await hub.connect("order_x", sid, RecordingSink())

    evicted = await hub.retain("order_x", {"sender", "new-courier"})

    assert evicted == ["old-courier"]
    assert sorted(hub.subscribers("order_x")) == ["new-courier", "sender"]


async def test_concurrent_publishes_keep_order_per_channel():
    hub = ChannelManager()
    sink = RecordingSink()
    await hub.connect("order_y", "sender", sink)

    await asyncio.gather(*(hub.publish("order_y", "tick", {"n": n}) for n in range(20)))

    assert [m["data"]["n"] for m in sink.messages] == list(range(20))


async def test_disconnect_cleans_up_empty_channels():
    hub = ChannelManager()
    await hub.connect("order_z", "sender", RecordingSink())
    await hub.disconnect("order_z", "sender")
    await hub.disconnect("order_z", "sender")

    assert hub.subscribers("order_z") == []
    assert "order_z" not in hub.channels


async def test_channel_locks_do_not_outlive_their_use():
    hub = ChannelManager()
    for n in range(50):
        await hub.publish(order_channel(f"fresh-{n}"), "order_status_change", {})
    await hub.connect("order_w", "sender", RecordingSink())
    await hub.retain("order_w", {"sender"})
    await hub.disconnect("order_w", "sender")

    assert len(hub._channel_locks) == 0
    assert hub.channels == {}
