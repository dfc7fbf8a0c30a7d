# dispatch_service/pricing.py
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple

from dispatch_service.errors import ValidationError

CENT = Decimal("0.01")


class SizeCategory(str, Enum):
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"
    EXTRA_LARGE = "extra_large"


class UrgencyLevel(str, Enum):
    ASAP = "asap"
    ONE_HOUR = "1_hour"
    TWO_HOURS = "2_hours"
    FOUR_HOURS = "4_hours"
    SCHEDULED = "scheduled"


SIZE_MULTIPLIERS = {
    SizeCategory.SMALL: Decimal("1.0"),
    SizeCategory.MEDIUM: Decimal("1.2"),
    SizeCategory.LARGE: Decimal("1.5"),
    SizeCategory.EXTRA_LARGE: Decimal("2.0"),
}

URGENCY_MULTIPLIERS = {
    UrgencyLevel.ASAP: Decimal("2.0"),
    UrgencyLevel.ONE_HOUR: Decimal("1.5"),
    UrgencyLevel.TWO_HOURS: Decimal("1.2"),
    UrgencyLevel.FOUR_HOURS: Decimal("1.0"),
    UrgencyLevel.SCHEDULED: Decimal("0.9"),
}

# (pickup offset, delivery offset) in minutes
ETA_OFFSETS = {
    UrgencyLevel.ASAP: (15, 45),
    UrgencyLevel.ONE_HOUR: (30, 90),
    UrgencyLevel.TWO_HOURS: (60, 180),
}
DEFAULT_ETA_OFFSET = (120, 300)
SCHEDULED_DELIVERY_WINDOW = timedelta(hours=2)


def money(value) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class PriceBreakdown:
    base_price: Decimal
    urgency_premium: Decimal
    size_premium: Decimal
    special_handling_fee: Decimal
    service_fee: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    courier_earnings: Decimal

    def as_dict(self) -> Dict[str, Decimal]:
        return asdict(self)


class PricingEngine:
    """
    Itemized delivery quote.

    Every field is rounded half-up to cents as soon as it is derived and the
    following fields are computed from the rounded values, so the displayed
    itemization always sums to the total.
    """

    def __init__(
        self,
        base_rate: Decimal = Decimal("15.00"),
        per_km_rate: Decimal = Decimal("2.50"),
        size_multipliers: Optional[Mapping[SizeCategory, Decimal]] = None,
        urgency_multipliers: Optional[Mapping[UrgencyLevel, Decimal]] = None,
        fragile_fee: Decimal = Decimal("5.00"),
        service_fee_rate: Decimal = Decimal("0.15"),
        tax_rate: Decimal = Decimal("0.08"),
        courier_share: Decimal = Decimal("0.75"),
    ):
        self.base_rate = Decimal(base_rate)
        self.per_km_rate = Decimal(per_km_rate)
        self.size_multipliers = self._validated(SizeCategory, size_multipliers or SIZE_MULTIPLIERS)
        self.urgency_multipliers = self._validated(UrgencyLevel, urgency_multipliers or URGENCY_MULTIPLIERS)
        self.fragile_fee = Decimal(fragile_fee)
        self.service_fee_rate = Decimal(service_fee_rate)
        self.tax_rate = Decimal(tax_rate)
        self.courier_share = Decimal(courier_share)

    @staticmethod
    def _validated(enum_cls, table):
        missing = [member.value for member in enum_cls if member not in table]
        if missing:
            raise ValueError(f"{enum_cls.__name__} multiplier table is missing {missing}")
        return {member: Decimal(table[member]) for member in enum_cls}

    @staticmethod
    def _member(enum_cls, value):
        try:
            return enum_cls(value)
        except ValueError:
            raise ValidationError(f"Unknown {enum_cls.__name__} '{value}'")

    def quote(self, distance_km: float, size_category, is_fragile: bool, urgency) -> PriceBreakdown:
        size = self._member(SizeCategory, size_category)
        level = self._member(UrgencyLevel, urgency)
        if distance_km is None or distance_km < 0:
            raise ValidationError("distance_km must be a non-negative number")

        size_multiplier = self.size_multipliers[size]
        urgency_multiplier = self.urgency_multipliers[level]

        distance = Decimal(str(distance_km))
        distance_price = max(self.base_rate, self.base_rate + distance * self.per_km_rate)

        base_price = money(distance_price * size_multiplier)
        urgency_premium = money(max(Decimal(0), base_price * (urgency_multiplier - 1)))
        size_premium = money(max(Decimal(0), base_price * (size_multiplier - 1)))
        handling_fee = money(self.fragile_fee if is_fragile else 0)

        subtotal = base_price + urgency_premium + size_premium + handling_fee
        service_fee = money(subtotal * self.service_fee_rate)
        tax_amount = money((subtotal + service_fee) * self.tax_rate)
        total_amount = subtotal + service_fee + tax_amount

        return PriceBreakdown(
            base_price=base_price,
            urgency_premium=urgency_premium,
            size_premium=size_premium,
            special_handling_fee=handling_fee,
            service_fee=service_fee,
            tax_amount=tax_amount,
            total_amount=total_amount,
            courier_earnings=money(total_amount * self.courier_share),
        )

    def estimate_times(
        self, urgency, now: datetime, scheduled_at: Optional[datetime] = None
    ) -> Tuple[datetime, datetime]:
        level = self._member(UrgencyLevel, urgency)
        if level is UrgencyLevel.SCHEDULED and scheduled_at is not None:
            return scheduled_at, scheduled_at + SCHEDULED_DELIVERY_WINDOW

        pickup_minutes, delivery_minutes = ETA_OFFSETS.get(level, DEFAULT_ETA_OFFSET)
        return now + timedelta(minutes=pickup_minutes), now + timedelta(minutes=delivery_minutes)


pricing_engine = PricingEngine()
