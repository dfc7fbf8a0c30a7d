# main.py
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Query, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import func, select

from dispatch_service import config
from dispatch_service.assignment import AutoMatcher
from dispatch_service.auth import (
    admin_required, courier_required, get_current_user, sender_required, user_from_token,
)
from dispatch_service.broadcaster import LocationBroadcaster
from dispatch_service.consumer import start_dispatch_consumer
from dispatch_service.database import INTEGRITY_ERRORS, database, init_db
from dispatch_service.dispatcher import AssignmentDispatcher, AssignmentType, Decision
from dispatch_service.errors import DispatchError, InvalidTransition, NotAuthorized, NotFound, ValidationError
from dispatch_service.events import EventBus
from dispatch_service.geo import distance_km
from dispatch_service.geocoder import GoogleGeocoder
from dispatch_service.models import couriers, delivery_orders, packages
from dispatch_service.notifier import Notifier
from dispatch_service.payments import StripePaymentGateway
from dispatch_service.pricing import UrgencyLevel, money, pricing_engine
from dispatch_service.schemas import (
    AvailabilityStatus, AvailabilityUpdate, LocationPing, OfferCreate, OfferResponse, OrderCreate,
    OrderUpdate, PaymentRequest, PricingEstimate, PricingEstimateRequest,
)
from dispatch_service.state_machine import OrderStateMachine, OrderStatus
from dispatch_service.ws_manager import COURIERS_CHANNEL, manager, user_channel

logger = logging.getLogger("dispatch-service")
logger.setLevel(logging.INFO)
if not logger.handlers:
    handler = logging.StreamHandler()
    fmt = "[%(asctime)s] [%(levelname)s] %(message)s"
    handler.setFormatter(logging.Formatter(fmt))
    logger.addHandler(handler)

# ------------------------- WIRING -------------------------
bus = EventBus(manager)
notifier = Notifier(bus)
state_machine = OrderStateMachine(database, bus, notifier=notifier)
dispatcher = AssignmentDispatcher(database, state_machine, bus, notifier=notifier)
broadcaster = LocationBroadcaster(database, manager, bus)
matcher = AutoMatcher(database, dispatcher, bus)
geocoder = GoogleGeocoder()
payment_gateway = StripePaymentGateway()

MONEY_FIELDS = (
    "base_price", "urgency_premium", "size_premium", "special_handling_fee",
    "service_fee", "tax_amount", "total_amount", "courier_earnings",
)
UPDATABLE_ORDER_FIELDS = (
    "pickup_instructions", "delivery_instructions", "leave_at_door",
    "scheduled_pickup_date", "scheduled_pickup_time",
    "estimated_pickup_time", "estimated_delivery_time",
)

background_tasks = set()


# ------------------------- STARTUP / SHUTDOWN -------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Connecting database...")
    init_db()
    await database.connect()

    app.state.workers = [spawn(sweep_offers())]
    if config.USE_AWS:
        app.state.workers.append(spawn(safe_start_dispatch_consumer()))
        logger.info("🚀 Started SQS dispatch queue consumer")
    logger.info("Startup complete.")

    yield

    for task in list(background_tasks):
        task.cancel()
    await asyncio.gather(*background_tasks, return_exceptions=True)
    logger.info("Disconnecting database...")
    await database.disconnect()


app = FastAPI(title="Courier Dispatch Service", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ------------------------- MIDDLEWARE / ERRORS -------------------------
@app.middleware("http")
async def trace_requests(request: Request, call_next):
    trace_id = request.headers.get("x-trace-id") or str(uuid.uuid4())
    request.state.trace_id = trace_id
    response = await call_next(request)
    response.headers["x-trace-id"] = trace_id
    return response


def error_response(status_code: int, kind: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": {"kind": kind, "message": message}},
    )


@app.exception_handler(DispatchError)
async def dispatch_error_handler(request: Request, exc: DispatchError):
    trace_id = getattr(request.state, "trace_id", "no-trace")
    logger.info(f"[TRACE {trace_id}] {request.method} {request.url.path} → {exc.kind}: {exc.message}")
    return error_response(exc.status_code, exc.kind, exc.message)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err['loc'] if p != 'body')}: {err['msg']}" for err in exc.errors()
    )
    return error_response(422, ValidationError.kind, problems or "Invalid request")


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    trace_id = getattr(request.state, "trace_id", "no-trace")
    logger.exception(f"[TRACE {trace_id}] Unhandled error on {request.method} {request.url.path}")
    return error_response(500, "InternalError", "Internal server error")


# ------------------------- HELPERS -------------------------
def serialize_order(order: Dict[str, Any]) -> Dict[str, Any]:
    data = dict(order)
    for field in MONEY_FIELDS:
        if data.get(field) is not None:
            data[field] = f"{money(data[field]):.2f}"
    if data.get("distance_km") is not None:
        data["distance_km"] = float(data["distance_km"])
    return data


def serialize_offer(offer: Dict[str, Any]) -> Dict[str, Any]:
    data = dict(offer)
    if data.get("courier_distance_km") is not None:
        data["courier_distance_km"] = float(data["courier_distance_km"])
    if data.get("courier_earnings") is not None:
        data["courier_earnings"] = f"{money(data['courier_earnings']):.2f}"
    return data


def ensure_can_view(order: Dict[str, Any], user: Dict[str, Any]):
    if user["role"] == "admin":
        return
    if user["id"] not in (order["sender_id"], order["courier_id"]):
        raise NotAuthorized(f"Order {order['id']} does not belong to {user['id']}")


def spawn(coro):
    task = asyncio.create_task(coro)
    background_tasks.add(task)
    task.add_done_callback(background_tasks.discard)
    return task


def generate_order_number(now: datetime) -> str:
    return f"DLV-{now:%Y%m%d}-{uuid.uuid4().hex[:6].upper()}"


async def resolve_point(address) -> Dict[str, Any]:
    if address.latitude is not None and address.longitude is not None:
        return {"address": address.address, "latitude": address.latitude, "longitude": address.longitude, "approximate": False}
    point = await geocoder.geocode(address.address)
    return {
        "address": point.formatted_address,
        "latitude": point.latitude,
        "longitude": point.longitude,
        "approximate": point.approximate,
    }


async def order_details(order_id: str) -> Dict[str, Any]:
    order = await state_machine.get(order_id)
    package = await database.fetch_one(packages.select().where(packages.c.order_id == order_id))
    data = serialize_order(order)
    data["package"] = dict(package) if package else None
    data["status_history"] = await state_machine.history(order_id)
    return data


async def charge_order(order: Dict[str, Any], payment_method_id: str, user_id: str) -> Dict[str, Any]:
    result = await payment_gateway.charge(order["total_amount"], payment_method_id, order["id"], user_id)
    payment_status = "paid" if result.status == "completed" else "authorized"
    await database.execute(
        delivery_orders.update()
        .where(delivery_orders.c.id == order["id"])
        .values(
            payment_status=payment_status,
            payment_transaction_id=result.transaction_id,
            updated_at=datetime.utcnow(),
        )
    )
    return {"transaction_id": result.transaction_id, "payment_status": payment_status}


async def sweep_offers():
    """Expire overdue offers and try the next courier for each affected order."""
    while True:
        try:
            for order_id in await dispatcher.expire_overdue():
                if config.AUTO_DISPATCH:
                    await matcher.dispatch_order(order_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("[Sweep] Offer expiry sweep failed")
        await asyncio.sleep(config.SWEEP_INTERVAL_SECONDS)


async def safe_start_dispatch_consumer():
    while True:
        try:
            logger.info("📥 Starting SQS consumer loop...")
            await start_dispatch_consumer(database, matcher)
            return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"🔥 SQS consumer crashed: {e}")
            await asyncio.sleep(5)


# ------------------------- PRICING -------------------------
@app.post("/pricing/estimate", response_model=PricingEstimate)
async def estimate_price(body: PricingEstimateRequest):
    distance = round(distance_km(
        body.pickup.latitude, body.pickup.longitude,
        body.delivery.latitude, body.delivery.longitude,
    ), 2)
    breakdown = pricing_engine.quote(distance, body.package.size_category, body.package.is_fragile, body.urgency_level)
    pickup_at, delivery_at = pricing_engine.estimate_times(body.urgency_level, datetime.utcnow(), body.scheduled_at)
    return PricingEstimate(
        distance_km=distance,
        pricing=breakdown.as_dict(),
        estimated_pickup_time=pickup_at,
        estimated_delivery_time=delivery_at,
    )


# ------------------------- ORDERS -------------------------
@app.post("/orders", status_code=201)
async def create_order(body: OrderCreate, user=Depends(sender_required)):
    trace_id = user["trace_id"]
    scheduled_at = None
    if body.urgency_level == UrgencyLevel.SCHEDULED:
        if body.scheduled_pickup_date is None:
            raise ValidationError("scheduled orders need a scheduled_pickup_date")
        scheduled_at = datetime.combine(body.scheduled_pickup_date, body.scheduled_pickup_time or datetime.min.time())

    pickup = await resolve_point(body.pickup)
    delivery = await resolve_point(body.delivery)
    distance = round(distance_km(pickup["latitude"], pickup["longitude"], delivery["latitude"], delivery["longitude"]), 2)
    breakdown = pricing_engine.quote(distance, body.package.size_category, body.package.is_fragile, body.urgency_level)

    now = datetime.utcnow()
    pickup_at, delivery_at = pricing_engine.estimate_times(body.urgency_level, now, scheduled_at)
    order_id = str(uuid.uuid4())
    values = {
        "id": order_id,
        "order_number": generate_order_number(now),
        "sender_id": user["id"],
        "courier_id": None,
        "pickup_address": pickup["address"],
        "pickup_latitude": pickup["latitude"],
        "pickup_longitude": pickup["longitude"],
        "pickup_approximate": pickup["approximate"],
        "delivery_address": delivery["address"],
        "delivery_latitude": delivery["latitude"],
        "delivery_longitude": delivery["longitude"],
        "delivery_approximate": delivery["approximate"],
        "recipient_name": body.recipient_name,
        "recipient_phone": body.recipient_phone,
        "pickup_instructions": body.pickup_instructions,
        "delivery_instructions": body.delivery_instructions,
        "leave_at_door": body.leave_at_door,
        "urgency_level": body.urgency_level.value,
        "scheduled_pickup_date": body.scheduled_pickup_date,
        "scheduled_pickup_time": body.scheduled_pickup_time,
        "distance_km": Decimal(str(distance)),
        "payment_status": "pending",
        "payment_transaction_id": None,
        "estimated_pickup_time": pickup_at,
        "estimated_delivery_time": delivery_at,
        **breakdown.as_dict(),
    }

    async with database.transaction():
        order = await state_machine.initialize(values, user["id"])
        await database.execute(
            packages.insert().values(
                id=str(uuid.uuid4()),
                order_id=order_id,
                package_type=body.package.package_type.value,
                size_category=body.package.size_category.value,
                estimated_weight=body.package.estimated_weight,
                declared_value=body.package.declared_value,
                is_fragile=body.package.is_fragile,
                description=body.package.description,
                created_at=now,
            )
        )
    logger.info(f"[TRACE {trace_id}] ✅ Order {order['order_number']} created by {user['id']} ({distance} km)")

    payment = None
    if body.payment_method_id:
        try:
            payment = await charge_order(order, body.payment_method_id, user["id"])
        except DispatchError as e:
            # the order stays unpaid and can be charged again through /payments/process
            logger.warning(f"[TRACE {trace_id}] Payment for order {order_id} failed: {e.message}")
            payment = {"payment_status": order["payment_status"], "error": e.to_dict()}

    await bus.publish(
        COURIERS_CHANNEL,
        "new_order_for_matching",
        {
            "event_id": str(uuid.uuid4()),
            "order_id": order_id,
            "order_number": order["order_number"],
            "pickup_location": {
                "address": order["pickup_address"],
                "latitude": order["pickup_latitude"],
                "longitude": order["pickup_longitude"],
            },
            "urgency": order["urgency_level"],
            "estimated_earnings": breakdown.courier_earnings,
        },
        trace_id=trace_id,
    )
    if config.AUTO_DISPATCH:
        spawn(matcher.dispatch_order(order_id))

    data = await order_details(order_id)
    if payment is not None:
        data["payment"] = payment
    return {"success": True, "data": data}


@app.get("/orders")
async def list_orders(
    status: Optional[OrderStatus] = Query(None),
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user=Depends(get_current_user),
):
    if date_from and date_to and date_from > date_to:
        raise ValidationError("date_from must not be after date_to")

    filters = []
    if user["role"] == "courier":
        filters.append(delivery_orders.c.courier_id == user["id"])
    elif user["role"] != "admin":
        filters.append(delivery_orders.c.sender_id == user["id"])
    if status is not None:
        filters.append(delivery_orders.c.status == status.value)
    if date_from:
        filters.append(delivery_orders.c.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        filters.append(delivery_orders.c.created_at < datetime.combine(date_to + timedelta(days=1), time.min))

    query = delivery_orders.select()
    count = select(func.count()).select_from(delivery_orders)
    for condition in filters:
        query = query.where(condition)
        count = count.where(condition)

    rows = await database.fetch_all(
        query.order_by(delivery_orders.c.created_at.desc()).limit(limit).offset((page - 1) * limit)
    )
    total = await database.fetch_val(count)
    return {
        "success": True,
        "data": [serialize_order(dict(r)) for r in rows],
        "pagination": {"page": page, "limit": limit, "total": total, "total_pages": -(-total // limit)},
    }


@app.get("/orders/{order_id}")
async def get_order(order_id: str, user=Depends(get_current_user)):
    order = await state_machine.get(order_id)
    ensure_can_view(order, user)
    data = await order_details(order_id)
    if user["role"] == "admin":
        data["assignments"] = [serialize_offer(o) for o in await dispatcher.offers_for_order(order_id)]
    return {"success": True, "data": data}


@app.put("/orders/{order_id}")
async def update_order(order_id: str, body: OrderUpdate, user=Depends(get_current_user)):
    trace_id = user["trace_id"]
    order = await state_machine.get(order_id)
    ensure_can_view(order, user)
    role = user["role"]

    reassigning = body.courier_id is not None and body.courier_id != order["courier_id"]
    if reassigning and role != "admin":
        raise NotAuthorized("Only admins may reassign couriers")
    if body.status is not None and role == "sender" and body.status != OrderStatus.CANCELLED:
        raise NotAuthorized("Senders may only cancel their orders")

    conditions = body.model_dump(include={"pickup_condition", "delivery_condition"}, exclude_none=True)
    await dispatcher.update_order(
        order_id,
        user["id"],
        fields=body.model_dump(include=set(UPDATABLE_ORDER_FIELDS), exclude_unset=True),
        package_conditions={k: v.value for k, v in conditions.items()},
        courier_id=body.courier_id if reassigning else None,
        status=body.status,
        note=body.notes,
        cancellation_reason=body.cancellation_reason,
        cancelled_by=role or "system",
    )
    if reassigning:
        await broadcaster.revalidate(order_id)

    logger.info(f"[TRACE {trace_id}] ✏️ Order {order_id} updated by {user['id']}")
    return {"success": True, "data": await order_details(order_id)}


@app.post("/orders/{order_id}/dispatch")
async def dispatch_now(order_id: str, user=Depends(admin_required)):
    await state_machine.get(order_id)
    offer = await matcher.dispatch_order(order_id)
    if offer is None:
        return {"success": True, "data": None, "message": "No courier could be offered this order"}
    return {"success": True, "data": serialize_offer(offer)}


# ------------------------- ASSIGNMENTS -------------------------
@app.post("/assignments", status_code=201)
async def create_assignment(body: OfferCreate, user=Depends(get_current_user)):
    window = timedelta(seconds=body.response_seconds) if body.response_seconds else None

    if user["role"] == "admin":
        if not body.courier_id:
            raise ValidationError("courier_id is required")
        offer = await dispatcher.offer(
            body.order_id, body.courier_id, response_window=window, assignment_type=AssignmentType.MANUAL
        )
        return {"success": True, "data": serialize_offer(offer)}

    if user["role"] == "courier":
        # a courier claiming an order from the open feed takes it immediately
        offer = await dispatcher.offer(
            body.order_id, user["id"], response_window=window, assignment_type=AssignmentType.COURIER_INITIATED
        )
        result = await dispatcher.respond(offer["id"], user["id"], Decision.ACCEPT)
        return {"success": True, "data": result}

    raise NotAuthorized("Only admins or couriers may create assignments")


@app.post("/assignments/{offer_id}/respond")
async def respond_to_assignment(offer_id: str, body: OfferResponse, user=Depends(courier_required)):
    result = await dispatcher.respond(offer_id, user["id"], body.decision, body.decline_reason)
    logger.info(f"[TRACE {user['trace_id']}] Courier {user['id']} {result['assignment_status']} offer {offer_id}")
    if body.decision == Decision.DECLINE and config.AUTO_DISPATCH:
        spawn(matcher.dispatch_order(result["order_id"]))
    return {"success": True, "data": result}


# ------------------------- COURIERS -------------------------
@app.get("/couriers/assignments")
async def my_assignments(active_only: bool = Query(False), user=Depends(courier_required)):
    offers = await dispatcher.offers_for_courier(user["id"], active_only=active_only)
    return {"success": True, "data": [serialize_offer(o) for o in offers]}


async def courier_registered(courier_id: str) -> bool:
    return await database.fetch_one(couriers.select().where(couriers.c.id == courier_id)) is not None


async def save_availability(courier_id: str, name: str, values: Dict[str, Any]):
    update = couriers.update().where(couriers.c.id == courier_id).values(**values)
    if await courier_registered(courier_id):
        await database.execute(update)
        return
    try:
        await database.execute(
            couriers.insert().values(
                id=courier_id,
                name=name,
                phone=None,
                current_active_orders=0,
                **{"max_concurrent_orders": 1, **values},
            )
        )
    except INTEGRITY_ERRORS:
        # a concurrent first toggle inserted the row
        logger.info(f"[Courier {courier_id}] Row created concurrently, updating instead")
        await database.execute(update)


@app.put("/couriers/availability")
async def update_availability(body: AvailabilityUpdate, user=Depends(courier_required)):
    courier_id = user["id"]
    now = datetime.utcnow()
    status = body.availability_status
    values = {
        "availability_status": status.value,
        "is_online": status != AvailabilityStatus.OFFLINE,
        "updated_at": now,
    }
    if body.max_concurrent_orders is not None:
        values["max_concurrent_orders"] = body.max_concurrent_orders

    await save_availability(courier_id, user.get("name") or courier_id, values)
    courier = await dispatcher.get_courier(courier_id)

    await bus.publish(
        COURIERS_CHANNEL,
        "courier_availability_status",
        {
            "courier_id": courier_id,
            "availability_status": courier["availability_status"],
            "is_online": courier["is_online"],
            "timestamp": now,
        },
        trace_id=user["trace_id"],
    )
    return {"success": True, "data": courier}


@app.post("/couriers/location")
async def post_location(body: LocationPing, user=Depends(courier_required)):
    ping = await broadcaster.publish_ping(user["id"], body.order_id, body.latitude, body.longitude, body.telemetry())
    return {"success": True, "data": ping}


# ------------------------- PAYMENTS -------------------------
@app.post("/payments/process")
async def process_payment(body: PaymentRequest, user=Depends(sender_required)):
    order = await state_machine.get(body.order_id)
    if user["role"] != "admin" and order["sender_id"] != user["id"]:
        raise NotAuthorized(f"Order {body.order_id} does not belong to {user['id']}")
    if order["payment_status"] in ("paid", "authorized"):
        raise InvalidTransition(f"Order {body.order_id} is already {order['payment_status']}")

    payment = await charge_order(order, body.payment_method_id, user["id"])
    logger.info(f"[TRACE {user['trace_id']}] 💳 Order {body.order_id} {payment['payment_status']}")
    return {"success": True, "data": {"order_id": body.order_id, **payment}}


# ------------------------- WEBSOCKETS -------------------------
@app.websocket("/ws/orders/{order_id}")
async def order_updates(websocket: WebSocket, order_id: str, token: Optional[str] = Query(None)):
    user = user_from_token(token)
    if not user["id"]:
        await websocket.close(code=1008)
        return

    await websocket.accept()
    try:
        subscription = await broadcaster.subscribe(order_id, user["id"], websocket)
    except (NotAuthorized, NotFound) as e:
        await websocket.send_json({"type": "error", "data": e.to_dict()})
        await websocket.close(code=1008)
        return
    await websocket.send_json({"type": "subscribed", "data": {"channel": subscription.channel}})

    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        await broadcaster.unsubscribe(subscription)


@app.websocket("/ws/couriers")
async def courier_feed(websocket: WebSocket, token: Optional[str] = Query(None)):
    user = user_from_token(token)
    if not user["id"] or user["role"] != "courier":
        await websocket.close(code=1008)
        return

    await websocket.accept()
    channels: List[str] = [COURIERS_CHANNEL, user_channel(user["id"])]
    for channel in channels:
        await manager.connect(channel, user["id"], websocket)
    await websocket.send_json({"type": "subscribed", "data": {"channels": channels}})
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        for channel in channels:
            await manager.disconnect(channel, user["id"])


# ------------------------- HEALTH / METRICS -------------------------
@app.get("/health")
async def health():
    return {"status": "ok", "service": "dispatch-service"}


@app.get("/metrics")
def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
