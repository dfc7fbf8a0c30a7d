# dispatch_service/notifier.py
import logging
import uuid
from datetime import datetime
from typing import Any, Dict

from dispatch_service.events import EventBus
from dispatch_service.ws_manager import user_channel

logger = logging.getLogger("dispatch-service.notifier")
logger.setLevel(logging.INFO)

CHANNELS = ("push", "sms", "email")


class Notifier:
    """
    Hands user notifications to the notification service (via the
    ``notification.requested`` event) and mirrors them on the user's personal
    channel. Best effort: failures are logged, never raised into the core.
    """

    def __init__(self, bus: EventBus):
        self.bus = bus

    async def send(self, user_id: str, channel: str, message: str, **extra) -> Dict[str, Any]:
        receipt = {
            "notification_id": str(uuid.uuid4()),
            "user_id": user_id,
            "channel": channel,
            "delivered": False,
            "sent_at": datetime.utcnow().isoformat(),
        }
        if channel not in CHANNELS:
            logger.warning(f"[NOTIFY] Unknown channel '{channel}' for user {user_id}")
            return receipt

        try:
            await self.bus.publish(
                user_channel(user_id),
                "notification.requested",
                {
                    "event_id": receipt["notification_id"],
                    "user_id": user_id,
                    "channel": channel,
                    "message": message,
                    **extra,
                },
            )
            receipt["delivered"] = True
        except Exception as e:
            logger.warning(f"[NOTIFY ERROR] {channel} to {user_id} failed: {e}")
        return receipt
