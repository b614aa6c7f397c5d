import asyncio
import logging
from datetime import datetime, timedelta

from pymongo import ReturnDocument

from config.constants import AUTO_REJECT_REASON, AUTO_REJECT_STATUSES, ORDER_CANCELLED
from config.env import AUTO_REJECT_AFTER_SECONDS, AUTO_REJECT_INTERVAL_SECONDS
from database import get_db
from utils.cancellation_service import calculate_cancellation_refund
from utils.notifications import queue_restaurant_notification
from utils.order_timeline import EVENT_AUTO_REJECTED, record_order_event

logger = logging.getLogger(__name__)


async def _reject(db, order_id, cutoff: datetime, now: datetime):
    # the restaurant may have accepted since the scan; only stale, unaccepted orders move
    return await db.orders.find_one_and_update(
        {
            "_id": order_id,
            "status": {"$in": list(AUTO_REJECT_STATUSES)},
            "created_at": {"$lte": cutoff},
        },
        {"$set": {
            "status": ORDER_CANCELLED,
            "cancellation_reason": AUTO_REJECT_REASON,
            "cancelled_by": "system",
            "cancelled_at": now,
            "refund_calculation_pending": True,
            "updated_at": now,
        }},
        return_document=ReturnDocument.AFTER,
    )


async def _complete_rejection(db, order) -> None:
    """Refund split + restaurant notice. The pending flag is cleared only once both are recorded."""
    await calculate_cancellation_refund(db, order["_id"], AUTO_REJECT_REASON)
    await queue_restaurant_notification(db, order, ORDER_CANCELLED)
    await db.orders.update_one(
        {"_id": order["_id"]},
        {"$unset": {"refund_calculation_pending": ""}},
    )


async def process_auto_reject_orders(db, now: datetime | None = None) -> dict:
    now = now or datetime.utcnow()
    cutoff = now - timedelta(seconds=AUTO_REJECT_AFTER_SECONDS)

    cursor = db.orders.find(
        {
            "status": {"$in": list(AUTO_REJECT_STATUSES)},
            "created_at": {"$lte": cutoff},
        },
        {"_id": 1},
    )
    candidates = [doc["_id"] async for doc in cursor]

    # rejected on an earlier sweep whose refund calculation failed
    unfinished = [
        doc async for doc in db.orders.find({
            "status": ORDER_CANCELLED,
            "cancelled_by": "system",
            "refund_calculation_pending": True,
        })
    ]

    processed = 0
    for order in unfinished:
        try:
            await _complete_rejection(db, order)
            processed += 1
            logger.info("AUTO_REJECT_COMPLETED order=%s number=%s", order["_id"], order.get("order_number"))
        except Exception:
            logger.exception("AUTO_REJECT_RETRY_ERROR order=%s", order["_id"])

    for order_id in candidates:
        try:
            order = await _reject(db, order_id, cutoff, now)
            if order is None:
                continue

            await record_order_event(
                db,
                order,
                EVENT_AUTO_REJECTED,
                metadata={"reason": AUTO_REJECT_REASON},
            )
            await _complete_rejection(db, order)
            processed += 1

            logger.info("ORDER_AUTO_REJECTED order=%s number=%s", order["_id"], order.get("order_number"))
        except Exception:
            logger.exception("AUTO_REJECT_ERROR order=%s", order_id)

    return {
        "processed": processed,
        "message": f"Auto-rejected {processed} order(s)",
    }


async def auto_reject_worker():
    db = get_db()

    while True:
        try:
            await process_auto_reject_orders(db)
        except Exception:
            logger.exception("AUTO_REJECT_SWEEP_ERROR")

        await asyncio.sleep(AUTO_REJECT_INTERVAL_SECONDS)
