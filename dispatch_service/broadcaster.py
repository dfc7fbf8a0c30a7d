# dispatch_service/broadcaster.py
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from databases import Database

from dispatch_service.errors import NotAuthorized, NotFound, ValidationError
from dispatch_service.events import EventBus
from dispatch_service.metrics import LOCATION_PINGS
from dispatch_service.models import couriers, delivery_orders, location_pings
from dispatch_service.ws_manager import ChannelManager, Sink, order_channel

logger = logging.getLogger("dispatch-service.location")
logger.setLevel(logging.INFO)

TELEMETRY_FIELDS = ("accuracy", "speed", "heading", "battery_level")


@dataclass
class Subscription:
    order_id: str
    subscriber_id: str
    channel: str
    created_at: datetime = field(default_factory=datetime.utcnow)


class LocationBroadcaster:
    """
    Courier position pings and per-order channel membership.

    Location fan-out is best effort and at-most-once: a subscriber that is
    not connected when a ping arrives never sees it.
    """

    def __init__(self, database: Database, hub: ChannelManager, bus: EventBus, clock=datetime.utcnow):
        self.database = database
        self.hub = hub
        self.bus = bus
        self.clock = clock

    async def publish_ping(
        self,
        courier_id: str,
        order_id: Optional[str],
        latitude: float,
        longitude: float,
        telemetry: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if not (-90 <= latitude <= 90 and -180 <= longitude <= 180):
            raise ValidationError("latitude/longitude out of range")
        telemetry = {k: v for k, v in (telemetry or {}).items() if k in TELEMETRY_FIELDS}

        courier = await self.database.fetch_one(couriers.select().where(couriers.c.id == courier_id))
        if not courier:
            raise NotFound(f"Courier {courier_id} not found")

        order = None
        if order_id is not None:
            order = await self._order(order_id)
            if order["courier_id"] != courier_id:
                raise NotAuthorized(f"Courier {courier_id} is not assigned to order {order_id}")

        now = self.clock()
        ping = {
            "id": str(uuid.uuid4()),
            "courier_id": courier_id,
            "order_id": order_id,
            "latitude": latitude,
            "longitude": longitude,
            "timestamp": now,
            **{k: telemetry.get(k) for k in TELEMETRY_FIELDS},
        }
        async with self.database.transaction():
            await self.database.execute(location_pings.insert().values(**ping))
            await self.database.execute(
                couriers.update()
                .where(couriers.c.id == courier_id)
                .values(last_latitude=latitude, last_longitude=longitude, last_location_update=now)
            )
        LOCATION_PINGS.inc()

        if order is not None:
            await self._retain_members(order)
            await self.bus.publish(
                order_channel(order_id),
                "location_update",
                {
                    "order_id": order_id,
                    "courier_id": courier_id,
                    "coordinates": {"latitude": latitude, "longitude": longitude},
                    "telemetry": telemetry,
                    "timestamp": now,
                },
            )
        return ping

    async def subscribe(self, order_id: str, subscriber_id: str, sink: Sink) -> Subscription:
        order = await self._order(order_id)
        if subscriber_id not in (order["sender_id"], order["courier_id"]):
            raise NotAuthorized(f"{subscriber_id} may not follow order {order_id}")

        channel = order_channel(order_id)
        await self.hub.connect(channel, subscriber_id, sink)
        return Subscription(order_id=order_id, subscriber_id=subscriber_id, channel=channel)

    async def unsubscribe(self, subscription: Subscription):
        await self.hub.disconnect(subscription.channel, subscription.subscriber_id)

    async def revalidate(self, order_id: str):
        """Drop subscribers who are no longer the order's sender or courier."""
        return await self._retain_members(await self._order(order_id))

    async def _retain_members(self, order: Dict[str, Any]):
        allowed = {order["sender_id"]}
        if order["courier_id"]:
            allowed.add(order["courier_id"])
        return await self.hub.retain(order_channel(order["id"]), allowed)

    async def _order(self, order_id: str) -> Dict[str, Any]:
        row = await self.database.fetch_one(
            delivery_orders.select().where(delivery_orders.c.id == order_id)
        )
        if not row:
            raise NotFound(f"Order {order_id} not found")
        return dict(row)
