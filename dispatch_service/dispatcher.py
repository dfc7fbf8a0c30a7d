# dispatch_service/dispatcher.py
import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from databases import Database
from sqlalchemy import and_, case, select

from dispatch_service import config
from dispatch_service.database import INTEGRITY_ERRORS
from dispatch_service.errors import (
    ConcurrencyConflict, DeadlinePassed, InvalidTransition, NotFound, ValidationError,
)
from dispatch_service.events import EventBus
from dispatch_service.locks import KeyedLock, order_locks
from dispatch_service.metrics import OFFERS_CREATED, OFFERS_RESOLVED
from dispatch_service.models import couriers, delivery_orders, order_assignments, packages
from dispatch_service.state_machine import OrderStateMachine, OrderStatus, is_terminal
from dispatch_service.ws_manager import order_channel, user_channel

logger = logging.getLogger("dispatch-service.dispatcher")
logger.setLevel(logging.INFO)
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("[%(asctime)s] [%(levelname)s] %(message)s"))
    logger.addHandler(handler)


class OfferStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class AssignmentType(str, Enum):
    AUTO_MATCH = "auto_match"
    MANUAL = "manual_assign"
    COURIER_INITIATED = "courier_accepted"
    REASSIGNED = "reassigned"


class Decision(str, Enum):
    ACCEPT = "accept"
    DECLINE = "decline"


class _StorageConflict(Exception):
    """A uniqueness constraint rejected the write; the transaction was rolled back."""


# ------------------------- COURIER COUNTERS -------------------------
async def claim_courier_slot(database: Database, courier_id: str, now: datetime):
    """Atomically take one active-order slot; the courier goes in_delivery once full."""
    await database.execute(
        couriers.update()
        .where(couriers.c.id == courier_id)
        .values(
            current_active_orders=couriers.c.current_active_orders + 1,
            availability_status=case(
                (couriers.c.current_active_orders + 1 >= couriers.c.max_concurrent_orders, "in_delivery"),
                else_=couriers.c.availability_status,
            ),
            updated_at=now,
        )
    )


async def release_courier_slot(database: Database, courier_id: str, now: datetime):
    """Atomically give back one active-order slot, never going below zero."""
    await database.execute(
        couriers.update()
        .where(couriers.c.id == courier_id)
        .values(
            current_active_orders=case(
                (couriers.c.current_active_orders > 0, couriers.c.current_active_orders - 1),
                else_=0,
            ),
            availability_status=case(
                (couriers.c.availability_status == "in_delivery", "online"),
                else_=couriers.c.availability_status,
            ),
            updated_at=now,
        )
    )


class AssignmentDispatcher:
    """
    Offers pending orders to couriers and resolves each offer exactly once.

    Every write for an order runs under that order's keyed lock, and the
    storage layer independently refuses a second pending or a second accepted
    offer for the same order, so concurrent processes cannot break the
    one-courier-per-order rule either.
    """

    def __init__(
        self,
        database: Database,
        state_machine: OrderStateMachine,
        bus: EventBus,
        notifier=None,
        locks: KeyedLock = order_locks,
        clock=datetime.utcnow,
        response_window: timedelta = timedelta(seconds=config.OFFER_RESPONSE_SECONDS),
    ):
        self.database = database
        self.state_machine = state_machine
        self.bus = bus
        self.notifier = notifier
        self.locks = locks
        self.clock = clock
        self.response_window = response_window

    # ------------------------- OFFER -------------------------
    async def offer(
        self,
        order_id: str,
        courier_id: str,
        distance_km: Optional[float] = None,
        response_window: Optional[timedelta] = None,
        assignment_type=AssignmentType.AUTO_MATCH,
    ) -> Dict[str, Any]:
        kind = self._enum(AssignmentType, assignment_type)
        window = response_window if response_window is not None else self.response_window
        if window <= timedelta(0):
            raise ValidationError("response window must be positive")

        async with self.locks.hold(order_id):
            order = await self.state_machine.get(order_id)
            if order["status"] != OrderStatus.PENDING.value or order["courier_id"]:
                raise InvalidTransition(f"Order {order_id} is not awaiting a courier")
            await self.get_courier(courier_id)

            if await self._pending_for_order(order_id):
                raise ConcurrencyConflict(f"Order {order_id} already has a pending offer")

            now = self.clock()
            offer = {
                "id": str(uuid.uuid4()),
                "order_id": order_id,
                "courier_id": courier_id,
                "assignment_type": kind.value,
                "assignment_status": OfferStatus.PENDING.value,
                "offered_at": now,
                "response_deadline": now + window,
                "resolved_at": None,
                "decline_reason": None,
                "courier_distance_km": Decimal(str(round(distance_km, 2))) if distance_km is not None else None,
            }
            try:
                await self.database.execute(order_assignments.insert().values(**offer))
            except INTEGRITY_ERRORS:
                raise ConcurrencyConflict(f"Order {order_id} already has a pending offer")

        OFFERS_CREATED.labels(assignment_type=kind.value).inc()
        logger.info(f"[Dispatch] Offered order {order_id} to courier {courier_id} until {offer['response_deadline']}")
        await self._announce_offer(order, offer)
        return offer

    # ------------------------- RESPOND -------------------------
    async def respond(
        self, offer_id: str, courier_id: str, decision, decline_reason: Optional[str] = None
    ) -> Dict[str, Any]:
        choice = self._enum(Decision, decision)
        offer = await self._pending_offer(offer_id, courier_id)

        for attempt in (1, 2):
            try:
                return await self._resolve(offer["order_id"], offer_id, courier_id, choice, decline_reason)
            except _StorageConflict:
                if attempt == 2:
                    raise ConcurrencyConflict(f"Offer {offer_id} lost a race for order {offer['order_id']}")
                logger.warning(f"[Dispatch] Storage conflict resolving offer {offer_id}, retrying once")

    async def _resolve(self, order_id, offer_id, courier_id, choice, decline_reason):
        async with self.locks.hold(order_id):
            try:
                async with self.database.transaction():
                    offer = await self._pending_offer(offer_id, courier_id)
                    now = self.clock()
                    if now > offer["response_deadline"]:
                        raise DeadlinePassed(f"Offer {offer_id} expired at {offer['response_deadline'].isoformat()}")

                    if choice is Decision.DECLINE:
                        await self._set_offer_status(offer_id, OfferStatus.DECLINED, now, decline_reason=decline_reason)
                        transition = None
                    else:
                        transition = await self._accept(order_id, offer_id, courier_id, now)
            except INTEGRITY_ERRORS:
                raise _StorageConflict()

            if transition is not None:
                await self.state_machine.announce(*transition, courier_id)

        outcome = OfferStatus.ACCEPTED if choice is Decision.ACCEPT else OfferStatus.DECLINED
        OFFERS_RESOLVED.labels(outcome=outcome.value).inc()
        logger.info(f"[Dispatch] Courier {courier_id} {outcome.value} offer {offer_id} for order {order_id}")
        return {
            "offer_id": offer_id,
            "order_id": order_id,
            "courier_id": courier_id,
            "assignment_status": outcome.value,
            "resolved_at": now,
            "decline_reason": decline_reason if choice is Decision.DECLINE else None,
        }

    async def _accept(self, order_id, offer_id, courier_id, now):
        order = await self.state_machine.get(order_id)
        if order["courier_id"] or await self._accepted_for_order(order_id):
            raise ConcurrencyConflict(f"Order {order_id} already has a courier")
        if order["status"] != OrderStatus.PENDING.value:
            raise InvalidTransition(f"Order {order_id} is {order['status']}, not awaiting a courier")

        await self._set_offer_status(offer_id, OfferStatus.ACCEPTED, now)
        await self.database.execute(
            order_assignments.update()
            .where(and_(
                order_assignments.c.order_id == order_id,
                order_assignments.c.id != offer_id,
                order_assignments.c.assignment_status == OfferStatus.PENDING.value,
            ))
            .values(assignment_status=OfferStatus.CANCELLED.value, resolved_at=now)
        )
        transition = await self.state_machine.apply(
            order_id,
            OrderStatus.COURIER_ASSIGNED,
            courier_id,
            "Courier accepted assignment",
            courier_id=courier_id,
        )
        await claim_courier_slot(self.database, courier_id, now)
        return transition

    # ------------------------- EXPIRY SWEEP -------------------------
    async def expire_overdue(self) -> List[str]:
        """Expire every pending offer past its deadline; returns the affected order ids."""
        now = self.clock()
        rows = await self.database.fetch_all(
            order_assignments.select().where(and_(
                order_assignments.c.assignment_status == OfferStatus.PENDING.value,
                order_assignments.c.response_deadline < now,
            ))
        )

        expired = []
        for row in rows:
            async with self.locks.hold(row["order_id"]):
                current = await self.database.fetch_one(
                    order_assignments.select().where(order_assignments.c.id == row["id"])
                )
                if current["assignment_status"] != OfferStatus.PENDING.value or current["response_deadline"] >= now:
                    continue
                await self._set_offer_status(row["id"], OfferStatus.EXPIRED, now)
            OFFERS_RESOLVED.labels(outcome=OfferStatus.EXPIRED.value).inc()
            logger.info(f"[Dispatch] Offer {row['id']} for order {row['order_id']} expired")
            expired.append(row["order_id"])
        return expired

    # ------------------------- ORDER TERMINATION -------------------------
    async def cancel_order(
        self, order_id: str, actor: str, reason: Optional[str] = None, cancelled_by: str = "system"
    ) -> Dict[str, Any]:
        """Cancel an order, preempting any pending offer and releasing its courier."""
        async with self.locks.hold(order_id):
            async with self.database.transaction():
                order, previous = await self._cancel(order_id, actor, reason, cancelled_by, self.clock())
            await self.state_machine.announce(order, previous, actor)
        logger.info(f"[Dispatch] Order {order_id} cancelled by {cancelled_by} ({actor})")
        return order

    async def complete_order(self, order_id: str, status, actor: str, note: Optional[str] = None, **changes) -> Dict[str, Any]:
        """Finish an order as delivered or failed and release its courier slot."""
        target = self._enum(OrderStatus, status)
        if target not in (OrderStatus.DELIVERED, OrderStatus.FAILED):
            raise ValidationError("complete_order only accepts delivered or failed")

        async with self.locks.hold(order_id):
            async with self.database.transaction():
                order, previous = await self._complete(order_id, target, actor, note, self.clock(), **changes)
            await self.state_machine.announce(order, previous, actor)
        return order

    async def reassign(self, order_id: str, courier_id: str, actor: str) -> Dict[str, Any]:
        """Move an in-flight order to another courier, swapping their active-order slots."""
        async with self.locks.hold(order_id):
            async with self.database.transaction():
                order = await self.state_machine.get(order_id)
                if order["courier_id"] == courier_id:
                    return order
                moved = await self._reassign(order, courier_id, actor, self.clock())
            await self._announce_reassignment(moved, actor)
        return moved

    async def update_order(
        self,
        order_id: str,
        actor: str,
        fields: Optional[Dict[str, Any]] = None,
        package_conditions: Optional[Dict[str, Any]] = None,
        courier_id: Optional[str] = None,
        status=None,
        note: Optional[str] = None,
        cancellation_reason: Optional[str] = None,
        cancelled_by: str = "system",
    ) -> Dict[str, Any]:
        """
        Apply a batch of edits to one order in a single transaction.

        Field edits, package conditions, a courier change and a status change
        either all commit or none do; events go out only after the commit.
        """
        target = self._enum(OrderStatus, status) if status is not None else None

        async with self.locks.hold(order_id):
            async with self.database.transaction():
                now = self.clock()
                order = await self.state_machine.get(order_id)
                if fields:
                    await self.database.execute(
                        delivery_orders.update()
                        .where(delivery_orders.c.id == order_id)
                        .values(**fields, updated_at=now)
                    )
                if package_conditions:
                    await self.database.execute(
                        packages.update().where(packages.c.order_id == order_id).values(**package_conditions)
                    )

                moved = None
                if courier_id is not None and courier_id != order["courier_id"]:
                    moved = await self._reassign(order, courier_id, actor, now)

                transition = None
                if target is OrderStatus.CANCELLED:
                    transition = await self._cancel(order_id, actor, cancellation_reason or note, cancelled_by, now)
                elif target in (OrderStatus.DELIVERED, OrderStatus.FAILED):
                    transition = await self._complete(order_id, target, actor, note, now)
                elif target is not None:
                    transition = await self.state_machine.apply(order_id, target, actor, note)

            if moved is not None:
                await self._announce_reassignment(moved, actor)
            if transition is not None:
                await self.state_machine.announce(*transition, actor)
        return await self.state_machine.get(order_id)

    async def _cancel(self, order_id, actor, reason, cancelled_by, now):
        await self._cancel_pending_offers(order_id, now)
        order, previous = await self.state_machine.apply(
            order_id,
            OrderStatus.CANCELLED,
            actor,
            reason or "Order cancelled",
            cancellation_reason=reason,
            cancelled_by=cancelled_by,
            cancelled_at=now,
        )
        if order["courier_id"]:
            await release_courier_slot(self.database, order["courier_id"], now)
        return order, previous

    async def _complete(self, order_id, target, actor, note, now, **changes):
        await self._cancel_pending_offers(order_id, now)
        order, previous = await self.state_machine.apply(order_id, target, actor, note, **changes)
        if order["courier_id"]:
            await release_courier_slot(self.database, order["courier_id"], now)
        return order, previous

    async def _reassign(self, order, courier_id, actor, now):
        order_id = order["id"]
        if is_terminal(order["status"]):
            raise InvalidTransition(f"Order {order_id} is already {order['status']}")
        previous_courier = order["courier_id"]
        if not previous_courier:
            raise InvalidTransition(f"Order {order_id} has no courier yet, offer it instead")
        await self.get_courier(courier_id)

        # the old acceptance must leave the accepted slot before the new one takes it
        await self.database.execute(
            order_assignments.update()
            .where(and_(
                order_assignments.c.order_id == order_id,
                order_assignments.c.assignment_status == OfferStatus.ACCEPTED.value,
            ))
            .values(assignment_status=OfferStatus.CANCELLED.value, resolved_at=now)
        )
        await self.database.execute(
            order_assignments.insert().values(
                id=str(uuid.uuid4()),
                order_id=order_id,
                courier_id=courier_id,
                assignment_type=AssignmentType.REASSIGNED.value,
                assignment_status=OfferStatus.ACCEPTED.value,
                offered_at=now,
                response_deadline=now,
                resolved_at=now,
                decline_reason=None,
                courier_distance_km=None,
            )
        )
        await self.database.execute(
            delivery_orders.update()
            .where(delivery_orders.c.id == order_id)
            .values(courier_id=courier_id, updated_at=now)
        )
        await release_courier_slot(self.database, previous_courier, now)
        await claim_courier_slot(self.database, courier_id, now)
        logger.info(f"[Dispatch] Order {order_id} reassigned {previous_courier} → {courier_id} by {actor}")
        return {**order, "courier_id": courier_id, "previous_courier_id": previous_courier, "updated_at": now}

    async def _cancel_pending_offers(self, order_id, now):
        await self.database.execute(
            order_assignments.update()
            .where(and_(
                order_assignments.c.order_id == order_id,
                order_assignments.c.assignment_status == OfferStatus.PENDING.value,
            ))
            .values(assignment_status=OfferStatus.CANCELLED.value, resolved_at=now)
        )

    async def _announce_reassignment(self, order: Dict[str, Any], actor: str):
        await self.bus.publish(
            order_channel(order["id"]),
            "courier_reassigned",
            {
                "order_id": order["id"],
                "order_number": order["order_number"],
                "previous_courier_id": order["previous_courier_id"],
                "courier_id": order["courier_id"],
                "timestamp": order["updated_at"],
                "changed_by": actor,
            },
        )
        if self.notifier is not None:
            await self.notifier.send(
                order["courier_id"], "push", f"Order {order['order_number']} was reassigned to you", order_id=order["id"]
            )
            await self.notifier.send(
                order["previous_courier_id"], "push",
                f"Order {order['order_number']} was reassigned to another courier", order_id=order["id"],
            )

    # ------------------------- READS -------------------------
    async def get_courier(self, courier_id: str) -> Dict[str, Any]:
        row = await self.database.fetch_one(couriers.select().where(couriers.c.id == courier_id))
        if not row:
            raise NotFound(f"Courier {courier_id} not found")
        return dict(row)

    async def get_offer(self, offer_id: str) -> Dict[str, Any]:
        row = await self.database.fetch_one(order_assignments.select().where(order_assignments.c.id == offer_id))
        if not row:
            raise NotFound(f"Offer {offer_id} not found")
        return dict(row)

    async def offers_for_order(self, order_id: str) -> List[Dict[str, Any]]:
        rows = await self.database.fetch_all(
            order_assignments.select()
            .where(order_assignments.c.order_id == order_id)
            .order_by(order_assignments.c.offered_at.asc())
        )
        return [dict(r) for r in rows]

    async def offers_for_courier(self, courier_id: str, active_only: bool = False) -> List[Dict[str, Any]]:
        query = (
            select(
                order_assignments,
                delivery_orders.c.order_number,
                delivery_orders.c.status.label("order_status"),
                delivery_orders.c.pickup_address,
                delivery_orders.c.delivery_address,
                delivery_orders.c.urgency_level,
                delivery_orders.c.courier_earnings,
            )
            .select_from(order_assignments.join(delivery_orders, delivery_orders.c.id == order_assignments.c.order_id))
            .where(order_assignments.c.courier_id == courier_id)
            .order_by(order_assignments.c.offered_at.desc())
        )
        if active_only:
            query = query.where(and_(
                order_assignments.c.assignment_status.in_([OfferStatus.PENDING.value, OfferStatus.ACCEPTED.value]),
                delivery_orders.c.status.notin_([s.value for s in (OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.FAILED)]),
            ))
        rows = await self.database.fetch_all(query)
        return [dict(r) for r in rows]

    # ------------------------- HELPERS -------------------------
    async def _pending_offer(self, offer_id: str, courier_id: str) -> Dict[str, Any]:
        row = await self.database.fetch_one(
            order_assignments.select().where(and_(
                order_assignments.c.id == offer_id,
                order_assignments.c.courier_id == courier_id,
                order_assignments.c.assignment_status == OfferStatus.PENDING.value,
            ))
        )
        if not row:
            raise NotFound(f"No pending offer {offer_id} for courier {courier_id}")
        return dict(row)

    async def _pending_for_order(self, order_id: str):
        return await self.database.fetch_one(
            order_assignments.select().where(and_(
                order_assignments.c.order_id == order_id,
                order_assignments.c.assignment_status == OfferStatus.PENDING.value,
            ))
        )

    async def _accepted_for_order(self, order_id: str):
        return await self.database.fetch_one(
            order_assignments.select().where(and_(
                order_assignments.c.order_id == order_id,
                order_assignments.c.assignment_status == OfferStatus.ACCEPTED.value,
            ))
        )

    async def _set_offer_status(self, offer_id: str, status: OfferStatus, now: datetime, **values):
        await self.database.execute(
            order_assignments.update()
            .where(and_(
                order_assignments.c.id == offer_id,
                order_assignments.c.assignment_status == OfferStatus.PENDING.value,
            ))
            .values(assignment_status=status.value, resolved_at=now, **values)
        )

    async def _announce_offer(self, order: Dict[str, Any], offer: Dict[str, Any]):
        await self.bus.publish(
            user_channel(offer["courier_id"]),
            "assignment_offered",
            {
                "offer_id": offer["id"],
                "order_id": order["id"],
                "order_number": order["order_number"],
                "pickup_address": order["pickup_address"],
                "delivery_address": order["delivery_address"],
                "urgency": order["urgency_level"],
                "estimated_earnings": order["courier_earnings"],
                "courier_distance_km": offer["courier_distance_km"],
                "response_deadline": offer["response_deadline"],
            },
        )
        if self.notifier is not None:
            await self.notifier.send(
                offer["courier_id"],
                "push",
                f"New delivery offer for order {order['order_number']}",
                offer_id=offer["id"],
                order_id=order["id"],
            )

    @staticmethod
    def _enum(enum_cls, value):
        try:
            return enum_cls(value)
        except ValueError:
            raise ValidationError(f"Unknown {enum_cls.__name__} '{value}'")
