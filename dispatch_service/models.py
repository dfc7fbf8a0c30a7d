# dispatch_service/models.py
from datetime import datetime
from sqlalchemy import (
    Table, Column, String, DateTime, Date, Time, Float, Integer, Boolean, Numeric, Text,
    MetaData, Index, UniqueConstraint,
)

metadata = MetaData()

# ------------------------
# Courier availability
# ------------------------
couriers = Table(
    "couriers",
    metadata,
    Column("id", String, primary_key=True),
    Column("name", String, nullable=False),
    Column("phone", String, nullable=True),
    Column("is_online", Boolean, nullable=False, default=False),
    Column("availability_status", String, nullable=False, default="offline"),
    Column("max_concurrent_orders", Integer, nullable=False, default=1),
    Column("current_active_orders", Integer, nullable=False, default=0),
    Column("last_latitude", Float, nullable=True),
    Column("last_longitude", Float, nullable=True),
    Column("last_location_update", DateTime, nullable=True),
    Column("updated_at", DateTime, default=datetime.utcnow),
)

# ------------------------
# Delivery orders
# ------------------------
delivery_orders = Table(
    "delivery_orders",
    metadata,
    Column("id", String, primary_key=True),
    Column("order_number", String, nullable=False, unique=True),
    Column("sender_id", String, nullable=False, index=True),
    Column("courier_id", String, nullable=True, index=True),
    Column("pickup_address", Text, nullable=False),
    Column("pickup_latitude", Float, nullable=False),
    Column("pickup_longitude", Float, nullable=False),
    Column("pickup_approximate", Boolean, nullable=False, default=False),
    Column("delivery_address", Text, nullable=False),
    Column("delivery_latitude", Float, nullable=False),
    Column("delivery_longitude", Float, nullable=False),
    Column("delivery_approximate", Boolean, nullable=False, default=False),
    Column("recipient_name", String, nullable=False),
    Column("recipient_phone", String, nullable=False),
    Column("pickup_instructions", Text, nullable=True),
    Column("delivery_instructions", Text, nullable=True),
    Column("leave_at_door", Boolean, nullable=False, default=False),
    Column("urgency_level", String, nullable=False),
    Column("scheduled_pickup_date", Date, nullable=True),
    Column("scheduled_pickup_time", Time, nullable=True),
    Column("status", String, nullable=False, default="pending"),
    Column("distance_km", Numeric(8, 2), nullable=False),
    Column("base_price", Numeric(10, 2), nullable=False),
    Column("urgency_premium", Numeric(10, 2), nullable=False, default=0),
    Column("size_premium", Numeric(10, 2), nullable=False, default=0),
    Column("special_handling_fee", Numeric(10, 2), nullable=False, default=0),
    Column("service_fee", Numeric(10, 2), nullable=False, default=0),
    Column("tax_amount", Numeric(10, 2), nullable=False, default=0),
    Column("total_amount", Numeric(10, 2), nullable=False),
    Column("courier_earnings", Numeric(10, 2), nullable=False, default=0),
    Column("payment_status", String, nullable=False, default="pending"),
    Column("payment_transaction_id", String, nullable=True),
    Column("estimated_pickup_time", DateTime, nullable=True),
    Column("estimated_delivery_time", DateTime, nullable=True),
    Column("actual_pickup_time", DateTime, nullable=True),
    Column("actual_delivery_time", DateTime, nullable=True),
    Column("cancellation_reason", Text, nullable=True),
    Column("cancelled_by", String, nullable=True),
    Column("cancelled_at", DateTime, nullable=True),
    Column("created_at", DateTime, default=datetime.utcnow),
    Column("updated_at", DateTime, default=datetime.utcnow),
)

packages = Table(
    "packages",
    metadata,
    Column("id", String, primary_key=True),
    Column("order_id", String, nullable=False, unique=True),
    Column("package_type", String, nullable=False),
    Column("size_category", String, nullable=False),
    Column("estimated_weight", Numeric(6, 2), nullable=True),
    Column("declared_value", Numeric(10, 2), nullable=True),
    Column("is_fragile", Boolean, nullable=False, default=False),
    Column("description", Text, nullable=True),
    Column("pickup_condition", String, nullable=True),
    Column("delivery_condition", String, nullable=True),
    Column("created_at", DateTime, default=datetime.utcnow),
)

# ------------------------
# Courier offers
# ------------------------
order_assignments = Table(
    "order_assignments",
    metadata,
    Column("id", String, primary_key=True),
    Column("order_id", String, nullable=False, index=True),
    Column("courier_id", String, nullable=False, index=True),
    Column("assignment_type", String, nullable=False),
    Column("assignment_status", String, nullable=False, default="pending"),
    Column("offered_at", DateTime, nullable=False),
    Column("response_deadline", DateTime, nullable=False),
    Column("resolved_at", DateTime, nullable=True),
    Column("decline_reason", Text, nullable=True),
    Column("courier_distance_km", Numeric(8, 2), nullable=True),
)

# One pending offer per order, one accepted offer per order, ever.
Index(
    "uq_order_assignments_one_pending",
    order_assignments.c.order_id,
    unique=True,
    postgresql_where=order_assignments.c.assignment_status == "pending",
    sqlite_where=order_assignments.c.assignment_status == "pending",
)
Index(
    "uq_order_assignments_one_accepted",
    order_assignments.c.order_id,
    unique=True,
    postgresql_where=order_assignments.c.assignment_status == "accepted",
    sqlite_where=order_assignments.c.assignment_status == "accepted",
)

# ------------------------
# Audit trail
# ------------------------
order_status_history = Table(
    "order_status_history",
    metadata,
    Column("id", String, primary_key=True),
    Column("order_id", String, nullable=False, index=True),
    Column("sequence", Integer, nullable=False),
    Column("previous_status", String, nullable=True),
    Column("new_status", String, nullable=False),
    Column("changed_by", String, nullable=True),
    Column("timestamp", DateTime, nullable=False),
    Column("notes", Text, nullable=True),
    UniqueConstraint("order_id", "sequence", name="uq_order_status_history_sequence"),
)

location_pings = Table(
    "location_pings",
    metadata,
    Column("id", String, primary_key=True),
    Column("courier_id", String, nullable=False, index=True),
    Column("order_id", String, nullable=True, index=True),
    Column("latitude", Float, nullable=False),
    Column("longitude", Float, nullable=False),
    Column("accuracy", Float, nullable=True),
    Column("speed", Float, nullable=True),
    Column("heading", Float, nullable=True),
    Column("battery_level", Integer, nullable=True),
    Column("timestamp", DateTime, nullable=False),
)

processed_events = Table(
    "processed_events",
    metadata,
    Column("event_id", String, primary_key=True),
    Column("event_type", String, nullable=False),
    Column("source_service", String, nullable=False),
    Column("processed_at", DateTime, default=datetime.utcnow),
)
