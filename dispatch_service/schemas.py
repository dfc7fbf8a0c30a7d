# schemas.py
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_serializer

from dispatch_service.dispatcher import Decision
from dispatch_service.pricing import SizeCategory, UrgencyLevel, money
from dispatch_service.state_machine import OrderStatus


class AvailabilityStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    ON_BREAK = "on_break"
    IN_DELIVERY = "in_delivery"


class PackageType(str, Enum):
    DOCUMENTS = "documents"
    ELECTRONICS = "electronics"
    CLOTHING = "clothing"
    FOOD = "food"
    FRAGILE = "fragile"
    OTHER = "other"


class PackageCondition(str, Enum):
    GOOD = "good"
    DAMAGED = "damaged"
    OPENED = "opened"


class Coordinates(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class Address(BaseModel):
    address: str = Field(..., min_length=1)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)


# ------------------------- PRICING -------------------------
class PackageQuote(BaseModel):
    size_category: SizeCategory
    is_fragile: bool = False


class PricingEstimateRequest(BaseModel):
    pickup: Coordinates
    delivery: Coordinates
    package: PackageQuote
    urgency_level: UrgencyLevel
    scheduled_at: Optional[datetime] = None


class PriceBreakdownOut(BaseModel):
    base_price: Decimal
    urgency_premium: Decimal
    size_premium: Decimal
    special_handling_fee: Decimal
    service_fee: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    courier_earnings: Decimal

    @field_serializer("*")
    def as_money(self, value):
        return f"{money(value):.2f}"


class PricingEstimate(BaseModel):
    distance_km: float
    pricing: PriceBreakdownOut
    estimated_pickup_time: datetime
    estimated_delivery_time: datetime


# ------------------------- ORDERS -------------------------
class PackageIn(BaseModel):
    package_type: PackageType = PackageType.OTHER
    size_category: SizeCategory
    estimated_weight: Optional[Decimal] = Field(None, ge=0)
    declared_value: Optional[Decimal] = Field(None, ge=0)
    is_fragile: bool = False
    description: Optional[str] = None


class OrderCreate(BaseModel):
    pickup: Address
    delivery: Address
    recipient_name: str = Field(..., min_length=1)
    recipient_phone: str = Field(..., min_length=1)
    package: PackageIn
    urgency_level: UrgencyLevel
    pickup_instructions: Optional[str] = None
    delivery_instructions: Optional[str] = None
    leave_at_door: bool = False
    scheduled_pickup_date: Optional[date] = None
    scheduled_pickup_time: Optional[time] = None
    payment_method_id: Optional[str] = None


class OrderUpdate(BaseModel):
    status: Optional[OrderStatus] = None
    notes: Optional[str] = None
    courier_id: Optional[str] = None
    pickup_instructions: Optional[str] = None
    delivery_instructions: Optional[str] = None
    leave_at_door: Optional[bool] = None
    scheduled_pickup_date: Optional[date] = None
    scheduled_pickup_time: Optional[time] = None
    estimated_pickup_time: Optional[datetime] = None
    estimated_delivery_time: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    pickup_condition: Optional[PackageCondition] = None
    delivery_condition: Optional[PackageCondition] = None


# ------------------------- ASSIGNMENTS -------------------------
class OfferCreate(BaseModel):
    order_id: str
    courier_id: Optional[str] = None
    response_seconds: Optional[int] = Field(None, gt=0)


class OfferResponse(BaseModel):
    decision: Decision
    decline_reason: Optional[str] = None


# ------------------------- COURIERS -------------------------
class AvailabilityUpdate(BaseModel):
    availability_status: AvailabilityStatus
    max_concurrent_orders: Optional[int] = Field(None, ge=1)


class LocationPing(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    order_id: Optional[str] = None
    accuracy: Optional[float] = None
    speed: Optional[float] = None
    heading: Optional[float] = None
    battery_level: Optional[int] = Field(None, ge=0, le=100)

    def telemetry(self) -> Dict[str, Any]:
        return {
            k: v for k, v in self.model_dump(include={"accuracy", "speed", "heading", "battery_level"}).items()
            if v is not None
        }


# ------------------------- PAYMENTS -------------------------
class PaymentRequest(BaseModel):
    order_id: str
    payment_method_id: str
