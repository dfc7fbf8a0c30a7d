# dispatch_service/consumer.py
import asyncio
import json
import logging
from datetime import datetime
from typing import Awaitable, Callable, Dict

import aioboto3
from databases import Database

from dispatch_service import config
from dispatch_service.assignment import AutoMatcher
from dispatch_service.models import processed_events

logger = logging.getLogger("dispatch-service.consumer")
logger.setLevel(logging.INFO)
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("[%(asctime)s] [%(levelname)s] %(message)s"))
    logger.addHandler(handler)

Handler = Callable[[dict, str], Awaitable[None]]


# ------------------------------- EVENT LOGGING -------------------------------
async def log_event_to_db(database: Database, event_type: str, event_id: str, source: str) -> bool:
    """
    Logs event_id in processed_events.
    Returns False if duplicated → skip handler.
    """
    if not event_id:
        logger.warning(f"[Event Logging] Missing event_id for {event_type}")
        return True  # allow processing

    exists = await database.fetch_one(
        processed_events.select().where(processed_events.c.event_id == event_id)
    )
    if exists:
        logger.info(f"[SKIP] Duplicate {event_type} ({event_id})")
        return False

    await database.execute(
        processed_events.insert().values(
            event_id=event_id,
            event_type=event_type,
            source_service=source,
            processed_at=datetime.utcnow()
        )
    )
    return True


# ----------------- EVENT HANDLERS -----------------
def build_handlers(database: Database, matcher: AutoMatcher) -> Dict[str, Handler]:
    async def handle_new_order(payload: dict, event_id: str):
        if not await log_event_to_db(database, "new_order_for_matching", event_id, "dispatch-service"):
            return
        order_id = payload.get("order_id")
        logger.info(f"[Dispatch Consumer] Matching courier for order {order_id}")
        await matcher.dispatch_order(order_id)

    return {"new_order_for_matching": handle_new_order}


async def dispatch_message(body: dict, handlers: Dict[str, Handler]) -> bool:
    handler = handlers.get(body.get("type"))
    if handler is None:
        logger.info(f"[Dispatch Consumer] No handler for {body.get('type')}, dropping")
        return False
    await handler(body.get("data", {}), body.get("event_id"))
    return True


# ------------------------------- SQS CONSUMER -------------------------------
async def poll_queue(queue_url: str, handlers: Dict[str, Handler]):
    if not config.USE_AWS:
        logger.warning("AWS disabled. Skipping SQS polling.")
        return

    session = aioboto3.Session()
    async with session.client("sqs", region_name=config.AWS_REGION) as sqs:

        while True:
            try:
                resp = await sqs.receive_message(
                    QueueUrl=queue_url,
                    MaxNumberOfMessages=5,
                    WaitTimeSeconds=10,
                    VisibilityTimeout=30,
                )

                msgs = resp.get("Messages", [])
                if not msgs:
                    await asyncio.sleep(1)
                    continue

                for msg in msgs:
                    try:
                        await dispatch_message(json.loads(msg["Body"]), handlers)
                        await sqs.delete_message(
                            QueueUrl=queue_url,
                            ReceiptHandle=msg["ReceiptHandle"]
                        )
                    except Exception:
                        logger.exception("Error processing SQS message")

            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("SQS polling error")
                await asyncio.sleep(5)


async def start_dispatch_consumer(database: Database, matcher: AutoMatcher):
    if not config.DISPATCH_QUEUE_URL:
        logger.error("DISPATCH_QUEUE_URL missing.")
        return

    await poll_queue(config.DISPATCH_QUEUE_URL, build_handlers(database, matcher))
