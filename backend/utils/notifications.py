import asyncio
import json
import logging
from urllib import error, request

from config.env import NOTIFICATION_TIMEOUT_SECONDS, NOTIFICATION_WEBHOOK_URL
from utils.errors import ExternalGatewayError
from utils.outbox import OUTBOX_NOTIFY_RESTAURANT, enqueue

logger = logging.getLogger(__name__)


def _post_json(url: str, payload: dict) -> None:
    req = request.Request(
        url=url,
        data=json.dumps(payload).encode("utf-8"),
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    try:
        with request.urlopen(req, timeout=NOTIFICATION_TIMEOUT_SECONDS) as resp:
            resp.read()
    except error.HTTPError as e:
        details = e.read().decode("utf-8", errors="ignore")
        raise ExternalGatewayError(f"Notification webhook rejected: {details}", status=e.code)
    except error.URLError as e:
        raise ExternalGatewayError(f"Notification webhook unreachable: {e.reason}")


async def notify_restaurant_order_update(order_id: str, new_status: str, restaurant_id: str | None = None) -> None:
    payload = {
        "event": "order_status_update",
        "order_id": str(order_id),
        "restaurant_id": str(restaurant_id) if restaurant_id else None,
        "status": new_status,
    }

    if not NOTIFICATION_WEBHOOK_URL:
        logger.info("RESTAURANT_NOTIFY order=%s status=%s (no webhook configured)", order_id, new_status)
        return

    await asyncio.to_thread(_post_json, NOTIFICATION_WEBHOOK_URL, payload)
    logger.info("RESTAURANT_NOTIFY_SENT order=%s status=%s", order_id, new_status)


async def queue_restaurant_notification(db, order: dict, new_status: str) -> None:
    await enqueue(db, OUTBOX_NOTIFY_RESTAURANT, {
        "order_id": str(order["_id"]),
        "restaurant_id": str(order.get("restaurant_id")) if order.get("restaurant_id") else None,
        "status": new_status,
    })


async def deliver_restaurant_notification(db, payload: dict) -> None:
    """Outbox handler for restaurant notifications."""
    await notify_restaurant_order_update(
        payload["order_id"],
        payload["status"],
        payload.get("restaurant_id"),
    )
