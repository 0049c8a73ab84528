"""
Server-sent event push for subscription changes.

One channel per user: a new connection replaces the previous one. Publishing
is fire-and-forget; a channel that cannot take a frame is evicted. The
registry lives in process memory, so it only reaches clients connected to
this instance.
"""
import asyncio
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

from polychat.core import config

logger = logging.getLogger(__name__)

HEARTBEAT_FRAME = ": heartbeat\n\n"
CHANNEL_BUFFER_SIZE = 100


def format_sse_event(data: Dict[str, Any]) -> str:
    return f"data: {json.dumps(data, default=str)}\n\n"


def build_notification(event_type: str, details: Dict[str, Any]) -> Dict[str, Any]:
    """Payload pushed to clients, e.g. {"type": "subscription_updated", "details": {...}}."""
    return {"type": event_type, "details": details}


class ChannelClosedError(Exception):
    pass


class EventChannel:
    """Bounded queue of pre-formatted SSE frames feeding one open response."""

    def __init__(self, maxsize: int = CHANNEL_BUFFER_SIZE):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def send(self, frame: str) -> None:
        """Queue a frame; raises ChannelClosedError or asyncio.QueueFull."""
        if self.closed:
            raise ChannelClosedError("Channel is closed")
        self._queue.put_nowait(frame)

    async def receive(self) -> Optional[str]:
        """Next frame, or None once the channel is closed."""
        if self.closed and self._queue.empty():
            return None
        return await self._queue.get()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        # Wake a pending receive()
        if not self._queue.full():
            self._queue.put_nowait(None)


class SubscriptionNotifier:
    """Registry of open event channels keyed by user id."""

    def __init__(self):
        self._channels: Dict[int, EventChannel] = {}

    def register(self, user_id: int, channel: Optional[EventChannel] = None) -> EventChannel:
        """
        Attach a channel for the user; the last registration wins.

        A replaced channel is left open and stops receiving events. Its stream
        ends when that client disconnects.
        """
        channel = channel or EventChannel()
        previous = self._channels.get(user_id)
        self._channels[user_id] = channel
        if previous is not None and previous is not channel:
            logger.info(f"Replaced event channel: user_id={user_id}")
        else:
            logger.info(f"Registered event channel: user_id={user_id}")
        return channel

    def unregister(self, user_id: int, channel: Optional[EventChannel] = None) -> None:
        """Drop the user's channel; with `channel` given, only if it is still the registered one."""
        current = self._channels.get(user_id)
        if current is None:
            return
        if channel is not None and current is not channel:
            return
        del self._channels[user_id]
        logger.info(f"Unregistered event channel: user_id={user_id}")

    async def publish(self, user_id: int, event: Dict[str, Any]) -> bool:
        """Push an event to the user's channel. Returns False when nothing was delivered."""
        channel = self._channels.get(user_id)
        if channel is None:
            logger.debug(f"No event channel for user, dropping event: user_id={user_id}, type={event.get('type')}")
            return False
        try:
            channel.send(format_sse_event(event))
        except (ChannelClosedError, asyncio.QueueFull) as e:
            logger.warning(f"Evicting event channel after failed write: user_id={user_id}, error={e!r}")
            self.unregister(user_id, channel)
            channel.close()
            return False
        logger.debug(f"Published event: user_id={user_id}, type={event.get('type')}")
        return True

    def connection_count(self) -> int:
        return len(self._channels)

    def is_connected(self, user_id: int) -> bool:
        return user_id in self._channels


async def stream_events(
    notifier: SubscriptionNotifier,
    user_id: int,
    channel: EventChannel,
    is_disconnected: Callable[[], Awaitable[bool]],
    heartbeat_interval: float = config.SSE_HEARTBEAT_SECONDS,
    initial_event: Optional[Dict[str, Any]] = None,
) -> AsyncIterator[str]:
    """
    Frames for one connection: the initial event, then published events with a
    heartbeat comment whenever the channel stays quiet for `heartbeat_interval`.
    """
    try:
        if initial_event is not None:
            yield format_sse_event(initial_event)
        while True:
            if await is_disconnected():
                logger.info(f"Event stream client disconnected: user_id={user_id}")
                break
            try:
                frame = await asyncio.wait_for(channel.receive(), timeout=heartbeat_interval)
            except asyncio.TimeoutError:
                frame = HEARTBEAT_FRAME
            if frame is None:
                break
            yield frame
    finally:
        notifier.unregister(user_id, channel)
        channel.close()


notifier = SubscriptionNotifier()
