"""
Unit tests for the subscription update notifier.
"""
import asyncio
import json

from polychat.services.notifier import (
    HEARTBEAT_FRAME,
    EventChannel,
    SubscriptionNotifier,
    build_notification,
    format_sse_event,
    stream_events,
)


def _never_disconnected():
    async def is_disconnected():
        return False
    return is_disconnected


def test_format_sse_event():
    frame = format_sse_event({"type": "subscription_updated"})
    assert frame == 'data: {"type": "subscription_updated"}\n\n'


def test_publish_without_channel_is_noop():
    notifier = SubscriptionNotifier()
    assert asyncio.run(notifier.publish(1, {"type": "x"})) is False


def test_publish_delivers_frame():
    async def scenario():
        notifier = SubscriptionNotifier()
        channel = notifier.register(7)
        delivered = await notifier.publish(7, build_notification("subscription_updated", {"plan_name": "Pro"}))
        frame = await channel.receive()
        return delivered, frame

    delivered, frame = asyncio.run(scenario())

    assert delivered is True
    payload = json.loads(frame[len("data: "):].strip())
    assert payload == {"type": "subscription_updated", "details": {"plan_name": "Pro"}}


def test_last_registration_wins():
    async def scenario():
        notifier = SubscriptionNotifier()
        first = notifier.register(7)
        second = notifier.register(7)
        await notifier.publish(7, {"type": "x"})
        return first, second, await second.receive(), notifier

    first, second, new_frame, notifier = asyncio.run(scenario())

    # Replaced channel stays open but gets nothing
    assert first.closed is False
    assert first._queue.empty()
    assert new_frame.startswith("data: ")
    assert notifier.connection_count() == 1


def test_failed_write_evicts_channel():
    async def scenario():
        notifier = SubscriptionNotifier()
        notifier.register(7, EventChannel(maxsize=1))
        await notifier.publish(7, {"type": "first"})
        second = await notifier.publish(7, {"type": "second"})
        return second, notifier

    delivered, notifier = asyncio.run(scenario())

    assert delivered is False
    assert notifier.is_connected(7) is False


def test_stale_unregister_keeps_replacement():
    notifier = SubscriptionNotifier()
    old = EventChannel()
    notifier.register(7, old)
    replacement = notifier.register(7)

    notifier.unregister(7, old)

    assert notifier.is_connected(7)
    notifier.unregister(7, replacement)
    assert not notifier.is_connected(7)


def test_stream_sends_initial_event_then_heartbeat():
    async def scenario():
        notifier = SubscriptionNotifier()
        channel = notifier.register(3)
        stream = stream_events(
            notifier, 3, channel, _never_disconnected(),
            heartbeat_interval=0.01,
            initial_event={"type": "connected"},
        )
        first = await stream.__anext__()
        second = await stream.__anext__()
        await stream.aclose()
        return first, second, notifier

    first, second, notifier = asyncio.run(scenario())

    assert first == 'data: {"type": "connected"}\n\n'
    assert second == HEARTBEAT_FRAME
    assert notifier.connection_count() == 0


def test_stream_forwards_published_events():
    async def scenario():
        notifier = SubscriptionNotifier()
        channel = notifier.register(3)
        stream = stream_events(notifier, 3, channel, _never_disconnected(), heartbeat_interval=5)
        await notifier.publish(3, {"type": "subscription_canceled"})
        frame = await stream.__anext__()
        await stream.aclose()
        return frame

    assert asyncio.run(scenario()) == 'data: {"type": "subscription_canceled"}\n\n'


def test_stream_stops_on_disconnect():
    async def scenario():
        notifier = SubscriptionNotifier()
        channel = notifier.register(3)

        async def disconnected():
            return True

        frames = [frame async for frame in stream_events(notifier, 3, channel, disconnected, heartbeat_interval=5)]
        return frames, channel, notifier

    frames, channel, notifier = asyncio.run(scenario())

    assert frames == []
    assert channel.closed is True
    assert notifier.connection_count() == 0
