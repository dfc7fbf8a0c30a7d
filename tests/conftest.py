import os
import tempfile
import uuid
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

_tmpdir = tempfile.mkdtemp(prefix="dispatch-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_tmpdir, 'dispatch.db')}"
os.environ["USE_AWS"] = "false"
os.environ["AUTO_DISPATCH"] = "false"
os.environ["SWEEP_INTERVAL_SECONDS"] = "60"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["GOOGLE_MAPS_API_KEY"] = ""
os.environ["STRIPE_SECRET_KEY"] = ""

from jose import jwt  # noqa: E402

from dispatch_service.database import database, engine  # noqa: E402
from dispatch_service.dispatcher import AssignmentDispatcher  # noqa: E402
from dispatch_service.events import EventBus  # noqa: E402
from dispatch_service.locks import KeyedLock  # noqa: E402
from dispatch_service.models import couriers, metadata  # noqa: E402
from dispatch_service.broadcaster import LocationBroadcaster  # noqa: E402
from dispatch_service.state_machine import OrderStateMachine  # noqa: E402
from dispatch_service.ws_manager import ChannelManager  # noqa: E402

metadata.create_all(engine)

T0 = datetime(2024, 5, 1, 12, 0, 0)


class FakeClock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


class RecordingSink:
    """Stands in for a websocket; remembers every message it was sent."""

    def __init__(self, fail=False):
        self.messages = []
        self.fail = fail

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("socket closed")
        self.messages.append(data)

    def of_type(self, event_type):
        return [m["data"] for m in self.messages if m["type"] == event_type]


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    async def send(self, user_id, channel, message, **extra):
        self.sent.append({"user_id": user_id, "channel": channel, "message": message, **extra})
        return {"delivered": True}


@pytest.fixture(autouse=True)
def clean_tables():
    yield
    with engine.begin() as conn:
        for table in reversed(metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture
async def db():
    await database.connect()
    yield database
    await database.disconnect()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def hub():
    return ChannelManager()


@pytest.fixture
def bus(hub):
    return EventBus(hub, use_aws=False)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def locks():
    return KeyedLock()


@pytest.fixture
def state_machine(db, bus, locks, clock):
    return OrderStateMachine(db, bus, locks=locks, clock=clock)


@pytest.fixture
def dispatcher(db, state_machine, bus, notifier, locks, clock):
    return AssignmentDispatcher(
        db, state_machine, bus, notifier=notifier, locks=locks, clock=clock,
        response_window=timedelta(seconds=120),
    )


@pytest.fixture
def broadcaster(db, hub, bus, clock):
    return LocationBroadcaster(db, hub, bus, clock=clock)


def order_values(sender_id="sender-1", **overrides):
    values = {
        "id": str(uuid.uuid4()),
        "order_number": f"DLV-TEST-{uuid.uuid4().hex[:8].upper()}",
        "sender_id": sender_id,
        "courier_id": None,
        "pickup_address": "1560 Broadway, New York",
        "pickup_latitude": 40.7589,
        "pickup_longitude": -73.9851,
        "pickup_approximate": False,
        "delivery_address": "100 Hudson St, New York",
        "delivery_latitude": 40.7205,
        "delivery_longitude": -74.0089,
        "delivery_approximate": False,
        "recipient_name": "Ada Recipient",
        "recipient_phone": "+15550100",
        "pickup_instructions": None,
        "delivery_instructions": None,
        "leave_at_door": False,
        "urgency_level": "asap",
        "scheduled_pickup_date": None,
        "scheduled_pickup_time": None,
        "distance_km": Decimal("4.36"),
        "base_price": Decimal("31.08"),
        "urgency_premium": Decimal("31.08"),
        "size_premium": Decimal("6.22"),
        "special_handling_fee": Decimal("5.00"),
        "service_fee": Decimal("11.01"),
        "tax_amount": Decimal("6.75"),
        "total_amount": Decimal("91.14"),
        "courier_earnings": Decimal("68.36"),
        "payment_status": "pending",
        "payment_transaction_id": None,
        "estimated_pickup_time": None,
        "estimated_delivery_time": None,
    }
    values.update(overrides)
    return values


@pytest.fixture
def make_order(state_machine):
    async def factory(sender_id="sender-1", **overrides):
        return await state_machine.initialize(order_values(sender_id, **overrides), sender_id)
    return factory


@pytest.fixture
def make_courier(db, clock):
    async def factory(courier_id=None, **overrides):
        values = {
            "id": courier_id or f"courier-{uuid.uuid4().hex[:8]}",
            "name": "Test Courier",
            "phone": None,
            "is_online": True,
            "availability_status": "online",
            "max_concurrent_orders": 1,
            "current_active_orders": 0,
            "last_latitude": None,
            "last_longitude": None,
            "last_location_update": None,
            "updated_at": clock(),
        }
        values.update(overrides)
        await db.execute(couriers.insert().values(**values))
        return values
    return factory


def token_for(user_id, role, **claims):
    return jwt.encode({"sub": user_id, "role": role, **claims}, "test-secret", algorithm="HS256")


def auth_header(user_id, role, **claims):
    return {"Authorization": f"Bearer {token_for(user_id, role, **claims)}"}
