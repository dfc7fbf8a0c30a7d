# dispatch_service/state_machine.py
import logging
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from databases import Database
from sqlalchemy import func, select

from dispatch_service.errors import InvalidTransition, NotFound, ValidationError
from dispatch_service.events import EventBus
from dispatch_service.locks import KeyedLock, order_locks
from dispatch_service.metrics import STATUS_TRANSITIONS
from dispatch_service.models import delivery_orders, order_status_history
from dispatch_service.ws_manager import order_channel

logger = logging.getLogger("dispatch-service.orders")
logger.setLevel(logging.INFO)


class OrderStatus(str, Enum):
    PENDING = "pending"
    COURIER_ASSIGNED = "courier_assigned"
    PICKUP_IN_PROGRESS = "pickup_in_progress"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.FAILED})

HAPPY_PATH = [
    OrderStatus.PENDING,
    OrderStatus.COURIER_ASSIGNED,
    OrderStatus.PICKUP_IN_PROGRESS,
    OrderStatus.IN_TRANSIT,
    OrderStatus.DELIVERED,
]


def is_terminal(status) -> bool:
    return OrderStatus(status) in TERMINAL_STATUSES


class OrderStateMachine:
    """
    Owns the status of a delivery order and its append-only history.

    Any non-terminal status may move to any other status: operators rely on
    being able to skip or rewind steps, so out-of-sequence moves are logged,
    not rejected. Only no-op transitions and moves out of a terminal status
    fail.

    ``transition`` is the self-contained entry point. Callers that must
    update other rows in the same transaction hold the order lock themselves
    and call ``apply`` inside their transaction, then ``announce`` after it
    commits.
    """

    def __init__(
        self,
        database: Database,
        bus: EventBus,
        locks: KeyedLock = order_locks,
        notifier=None,
        clock=datetime.utcnow,
    ):
        self.database = database
        self.bus = bus
        self.locks = locks
        self.notifier = notifier
        self.clock = clock

    # ------------------------- READS -------------------------
    async def get(self, order_id: str) -> Dict[str, Any]:
        row = await self.database.fetch_one(
            delivery_orders.select().where(delivery_orders.c.id == order_id)
        )
        if not row:
            raise NotFound(f"Order {order_id} not found")
        return dict(row)

    async def history(self, order_id: str) -> List[Dict[str, Any]]:
        rows = await self.database.fetch_all(
            order_status_history.select()
            .where(order_status_history.c.order_id == order_id)
            .order_by(order_status_history.c.sequence.asc())
        )
        return [dict(r) for r in rows]

    # ------------------------- WRITES -------------------------
    async def initialize(self, values: Dict[str, Any], actor: str, note: str = "Order created by sender") -> Dict[str, Any]:
        """Insert a new order in ``pending`` together with its first history entry."""
        now = self.clock()
        order_id = values["id"]
        async with self.database.transaction():
            await self.database.execute(
                delivery_orders.insert().values(
                    **values,
                    status=OrderStatus.PENDING.value,
                    created_at=now,
                    updated_at=now,
                )
            )
            await self._append_history(order_id, None, OrderStatus.PENDING, actor, note, now)
        STATUS_TRANSITIONS.labels(status=OrderStatus.PENDING.value).inc()
        return await self.get(order_id)

    async def transition(
        self, order_id: str, new_status, actor: str, note: Optional[str] = None, **changes
    ) -> Dict[str, Any]:
        async with self.locks.hold(order_id):
            async with self.database.transaction():
                order, previous = await self.apply(order_id, new_status, actor, note, **changes)
            await self.announce(order, previous, actor)
        return order

    async def apply(
        self, order_id: str, new_status, actor: str, note: Optional[str] = None, **changes
    ) -> Tuple[Dict[str, Any], OrderStatus]:
        """Validate and write one transition. Must run inside a transaction."""
        target = self._status(new_status)
        order = await self.get(order_id)
        current = OrderStatus(order["status"])

        if current in TERMINAL_STATUSES:
            raise InvalidTransition(f"Order {order_id} is already {current.value}")
        if target == current:
            raise InvalidTransition(f"Order {order_id} is already {current.value}")
        if not self._follows_happy_path(current, target):
            logger.info(f"[Order {order_id}] Out-of-sequence transition {current.value} → {target.value} by {actor}")

        now = self.clock()
        values = {"status": target.value, "updated_at": now, **changes}
        if target in (OrderStatus.PICKUP_IN_PROGRESS, OrderStatus.IN_TRANSIT) and not order.get("actual_pickup_time"):
            values.setdefault("actual_pickup_time", now)
        if target == OrderStatus.DELIVERED:
            values.setdefault("actual_delivery_time", now)

        await self.database.execute(
            delivery_orders.update().where(delivery_orders.c.id == order_id).values(**values)
        )
        await self._append_history(order_id, current, target, actor, note, now)
        return {**order, **values}, current

    async def announce(self, order: Dict[str, Any], previous: OrderStatus, actor: str):
        """Publish a committed transition on the order channel."""
        current = order["status"]
        STATUS_TRANSITIONS.labels(status=current).inc()
        await self.bus.publish(
            order_channel(order["id"]),
            "order_status_change",
            {
                "order_id": order["id"],
                "order_number": order.get("order_number"),
                "previous": OrderStatus(previous).value,
                "current": current,
                "timestamp": order["updated_at"],
                "changed_by": actor,
            },
        )
        if self.notifier is not None:
            await self.notifier.send(
                order["sender_id"], "push", f"Order {order.get('order_number')} is now {current}"
            )

    # ------------------------- HELPERS -------------------------
    async def _append_history(self, order_id, previous, new, actor, note, timestamp):
        last = await self.database.fetch_val(
            select(func.max(order_status_history.c.sequence))
            .where(order_status_history.c.order_id == order_id)
        )
        await self.database.execute(
            order_status_history.insert().values(
                id=str(uuid.uuid4()),
                order_id=order_id,
                sequence=(last or 0) + 1,
                previous_status=OrderStatus(previous).value if previous is not None else None,
                new_status=OrderStatus(new).value,
                changed_by=actor,
                timestamp=timestamp,
                notes=note or f"Status changed to {OrderStatus(new).value}",
            )
        )

    @staticmethod
    def _status(value) -> OrderStatus:
        try:
            return OrderStatus(value)
        except ValueError:
            raise ValidationError(f"Unknown order status '{value}'")

    @staticmethod
    def _follows_happy_path(current: OrderStatus, target: OrderStatus) -> bool:
        if target in TERMINAL_STATUSES and target != OrderStatus.DELIVERED:
            return True
        if current not in HAPPY_PATH or target not in HAPPY_PATH:
            return False
        return HAPPY_PATH.index(target) == HAPPY_PATH.index(current) + 1
