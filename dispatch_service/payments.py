# dispatch_service/payments.py
import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import stripe

from dispatch_service import config
from dispatch_service.errors import UpstreamUnavailable

logger = logging.getLogger("dispatch-service.payments")
logger.setLevel(logging.INFO)


@dataclass
class ChargeResult:
    transaction_id: str
    status: str


class StripePaymentGateway:
    """Charges a saved payment method through a confirmed Stripe PaymentIntent."""

    def __init__(self, api_key: Optional[str] = config.STRIPE_SECRET_KEY):
        self.api_key = api_key

    async def charge(self, amount: Decimal, payment_method_id: str, order_id: str, user_id: str) -> ChargeResult:
        if not self.api_key:
            raise UpstreamUnavailable("Payment gateway is not configured")

        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.create,
                api_key=self.api_key,
                amount=int((Decimal(amount) * 100).to_integral_value()),
                currency="usd",
                payment_method=payment_method_id,
                confirm=True,
                automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
                metadata={"order_id": order_id, "user_id": user_id},
            )
        except stripe.StripeError as e:
            logger.error(f"[STRIPE ERROR] order {order_id}: {e}")
            raise UpstreamUnavailable("Payment gateway rejected or could not process the charge")

        status = "completed" if intent.status == "succeeded" else "pending"
        logger.info(f"PaymentIntent {intent.id} for order {order_id} → {intent.status}")
        return ChargeResult(transaction_id=intent.id, status=status)
