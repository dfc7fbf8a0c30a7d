# dispatch_service/ws_manager.py
import logging
from typing import Any, Dict, Iterable, Protocol

from dispatch_service.locks import KeyedLock
from dispatch_service.metrics import ACTIVE_SUBSCRIPTIONS

logger = logging.getLogger("dispatch-service.ws")
logger.setLevel(logging.INFO)
if not logger.handlers:
    handler = logging.StreamHandler()
    fmt = "[%(asctime)s] [%(levelname)s] %(message)s"
    handler.setFormatter(logging.Formatter(fmt))
    logger.addHandler(handler)

COURIERS_CHANNEL = "couriers"


def order_channel(order_id: str) -> str:
    return f"order_{order_id}"


def user_channel(user_id: str) -> str:
    return f"user_{user_id}"


class Sink(Protocol):
    async def send_json(self, data: Any) -> None: ...


class ChannelManager:
    """
    Channel-scoped publish/subscribe hub.

    A subscriber is anything with an async ``send_json`` (a FastAPI WebSocket
    in production, a recording fake in tests). Delivery is at-most-once: a
    subscriber whose send fails is dropped and nothing is queued for it.
    Sends on one channel are serialized so every subscriber observes that
    channel's events in publish order. A channel's lock lives only while
    someone holds or waits for it.
    """

    def __init__(self):
        self.channels: Dict[str, Dict[str, Sink]] = {}
        self._channel_locks = KeyedLock()

    def _lock(self, channel: str):
        return self._channel_locks.hold(channel)

    async def connect(self, channel: str, subscriber_id: str, sink: Sink):
        async with self._lock(channel):
            members = self.channels.setdefault(channel, {})
            if subscriber_id not in members:
                ACTIVE_SUBSCRIPTIONS.inc()
            members[subscriber_id] = sink
        logger.info(f"[WS CONNECT] {subscriber_id} joined {channel} ({len(members)} members)")

    async def disconnect(self, channel: str, subscriber_id: str):
        async with self._lock(channel):
            self._remove(channel, subscriber_id)
        logger.info(f"[WS DISCONNECT] {subscriber_id} left {channel}")

    def _remove(self, channel: str, subscriber_id: str):
        members = self.channels.get(channel)
        if members is None or subscriber_id not in members:
            return
        del members[subscriber_id]
        ACTIVE_SUBSCRIPTIONS.dec()
        if not members:
            del self.channels[channel]

    async def retain(self, channel: str, allowed: Iterable[str]):
        """Evict every subscriber of ``channel`` not in ``allowed``."""
        allowed = set(allowed)
        async with self._lock(channel):
            evicted = [sid for sid in self.channels.get(channel, {}) if sid not in allowed]
            for sid in evicted:
                self._remove(channel, sid)
        if evicted:
            logger.info(f"[WS] Evicted {len(evicted)} unauthorized subscribers from {channel}")
        return evicted

    def subscribers(self, channel: str):
        return list(self.channels.get(channel, {}))

    async def publish(self, channel: str, event_type: str, data: dict) -> int:
        message = {"type": event_type, "data": data}
        delivered = 0
        async with self._lock(channel):
            dead = []
            for sid, sink in list(self.channels.get(channel, {}).items()):
                try:
                    await sink.send_json(message)
                    delivered += 1
                except Exception as e:
                    logger.warning(f"[WS BROADCAST ERROR] Removing {sid} from {channel}: {e}")
                    dead.append(sid)
            for sid in dead:
                self._remove(channel, sid)
        logger.info(f"[WS BROADCAST] '{event_type}' sent to {delivered} subscribers of {channel}")
        return delivered


manager = ChannelManager()
