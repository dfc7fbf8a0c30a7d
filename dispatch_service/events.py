# dispatch_service/events.py
import json
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

import aioboto3

from dispatch_service import config
from dispatch_service.ws_manager import ChannelManager

logger = logging.getLogger("dispatch-service.events")
logger.setLevel(logging.INFO)

# Which downstream queues see which events when running against AWS
EVENT_TARGETS = {
    "new_order_for_matching": ["dispatch"],
    "notification.requested": ["notification"],
    "order_status_change": ["notification"],
    "dispatch.pending": ["notification"],
}


def _json_default(value):
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


class EventBus:
    """
    Publishes an event to a real-time channel of the hub and, when AWS is
    enabled, forwards it to the SQS queues / EventBridge bus listed for its type.
    """

    def __init__(
        self,
        hub: ChannelManager,
        use_aws: bool = config.USE_AWS,
        queue_urls: Optional[Dict[str, Optional[str]]] = None,
        event_bus_name: Optional[str] = config.EVENT_BUS,
        region: str = config.AWS_REGION,
    ):
        self.hub = hub
        self.use_aws = use_aws
        self.queue_urls = queue_urls if queue_urls is not None else {
            "dispatch": config.DISPATCH_QUEUE_URL,
            "notification": config.NOTIFICATION_QUEUE_URL,
        }
        self.event_bus_name = event_bus_name
        self.region = region
        self.session = aioboto3.Session() if use_aws else None

    async def publish(
        self,
        channel: Optional[str],
        event_type: str,
        data: Dict[str, Any],
        trace_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Publish locally on ``channel`` (skipped when None) and forward remotely.
        Always adds event_id and timestamp to the forwarded envelope.
        """
        event_id = str(data.get("event_id") or uuid.uuid4())
        payload = json.loads(json.dumps(data, default=_json_default))

        if channel is not None:
            await self.hub.publish(channel, event_type, payload)

        envelope = {
            "type": event_type,
            "event_id": event_id,
            "data": payload,
            "trace_id": trace_id,
            "timestamp": datetime.utcnow().isoformat(),
            "source": "dispatch-service",
        }

        if not self.use_aws:
            logger.info(f"[LOCAL EVENT] {event_type}: {json.dumps(payload)}")
            return envelope

        await self._forward(event_type, envelope)
        return envelope

    async def _forward(self, event_type: str, envelope: Dict[str, Any]):
        body = json.dumps(envelope)
        targets = [
            self.queue_urls.get(name)
            for name in EVENT_TARGETS.get(event_type, [])
        ]

        try:
            async with self.session.client("sqs", region_name=self.region) as sqs, \
                       self.session.client("events", region_name=self.region) as evb:

                for queue in filter(None, targets):
                    try:
                        await sqs.send_message(QueueUrl=queue, MessageBody=body)
                        logger.info(f"[SQS] Event '{event_type}' sent to {queue}")
                    except Exception as e:
                        logger.warning(f"[SQS ERROR] Failed to send '{event_type}' to {queue}: {e}")

                if self.event_bus_name:
                    try:
                        await evb.put_events(Entries=[{
                            "Source": "dispatch-service",
                            "DetailType": event_type,
                            "Detail": json.dumps(envelope["data"]),
                            "EventBusName": self.event_bus_name,
                        }])
                        logger.info(f"[EventBridge] Event '{event_type}' sent to {self.event_bus_name}")
                    except Exception:
                        logger.exception(f"[EventBridge ERROR] Failed to send '{event_type}'")
        except Exception as e:
            logger.error(f"[EVENT ERROR] {e}")
