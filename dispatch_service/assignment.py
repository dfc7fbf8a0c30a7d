# dispatch_service/assignment.py
import logging
import uuid
from typing import Any, Dict, Optional

from databases import Database
from sqlalchemy import and_, select

from dispatch_service.dispatcher import AssignmentDispatcher, AssignmentType
from dispatch_service.errors import DispatchError
from dispatch_service.events import EventBus
from dispatch_service.geo import distance_km
from dispatch_service.models import couriers, order_assignments
from dispatch_service.state_machine import OrderStatus

logger = logging.getLogger("dispatch-service.assignment")
logger.setLevel(logging.INFO)


async def choose_available_courier(database: Database, order: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Picks the nearest online courier with a free slot who has not already
    been offered this order. Couriers without a known position go last,
    ties break on fewest active orders.
    """
    already_offered = select(order_assignments.c.courier_id).where(
        order_assignments.c.order_id == order["id"]
    )
    query = (
        select(couriers)
        .where(and_(
            couriers.c.is_online.is_(True),
            couriers.c.availability_status == "online",
            couriers.c.current_active_orders < couriers.c.max_concurrent_orders,
            couriers.c.id.notin_(already_offered),
        ))
        .order_by(couriers.c.id.asc())
    )
    available = [dict(r) for r in await database.fetch_all(query)]

    if not available:
        logger.info(f"[Courier Assignment] No available couriers for order {order['id']}")
        return None

    def rank(courier):
        if courier["last_latitude"] is None or courier["last_longitude"] is None:
            return (1, float("inf"), courier["current_active_orders"])
        d = distance_km(
            courier["last_latitude"], courier["last_longitude"],
            order["pickup_latitude"], order["pickup_longitude"],
        )
        return (0, d, courier["current_active_orders"])

    best = min(available, key=rank)
    best_rank = rank(best)
    best["distance_to_pickup_km"] = None if best_rank[0] else best_rank[1]
    logger.info(f"[Courier Assignment] Eligible courier selected → {best['id']}")
    return best


class AutoMatcher:
    """Selects a courier for a pending order and hands it to the dispatcher."""

    def __init__(self, database: Database, dispatcher: AssignmentDispatcher, bus: EventBus):
        self.database = database
        self.dispatcher = dispatcher
        self.bus = bus

    async def dispatch_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        try:
            order = await self.dispatcher.state_machine.get(order_id)
            if order["status"] != OrderStatus.PENDING.value or order["courier_id"]:
                logger.info(f"[Courier Assignment] Order {order_id} is {order['status']}, nothing to dispatch")
                return None

            courier = await choose_available_courier(self.database, order)
            if not courier:
                await self.notify_dispatch_pending(order_id)
                return None

            return await self.dispatcher.offer(
                order_id,
                courier["id"],
                distance_km=courier["distance_to_pickup_km"],
                assignment_type=AssignmentType.AUTO_MATCH,
            )
        except DispatchError as e:
            # another offer won the race or the order moved on
            logger.info(f"[Courier Assignment] Order {order_id} not dispatched: {e.kind} {e.message}")
            return None
        except Exception:
            logger.exception(f"[Courier Assignment] Failed for {order_id}")
            return None

    async def notify_dispatch_pending(self, order_id: str):
        await self.bus.publish(
            None,
            "dispatch.pending",
            {
                "event_id": str(uuid.uuid4()),
                "order_id": order_id,
                "reason": "no couriers available",
            },
        )
