import asyncio
import logging

from config.env import OUTBOX_INTERVAL_SECONDS
from database import get_db
from utils.audit import write_audit_entry
from utils.notifications import deliver_restaurant_notification
from utils.outbox import OUTBOX_AUDIT, OUTBOX_NOTIFY_RESTAURANT, drain_outbox

logger = logging.getLogger(__name__)

OUTBOX_HANDLERS = {
    OUTBOX_AUDIT: write_audit_entry,
    OUTBOX_NOTIFY_RESTAURANT: deliver_restaurant_notification,
}


async def outbox_worker():
    db = get_db()

    while True:
        try:
            stats = await drain_outbox(db, OUTBOX_HANDLERS)
            if stats["done"] or stats["failed"] or stats["dead"]:
                logger.info("OUTBOX_DRAINED done=%s failed=%s dead=%s", stats["done"], stats["failed"], stats["dead"])
        except Exception:
            logger.exception("OUTBOX_WORKER_ERROR")

        await asyncio.sleep(OUTBOX_INTERVAL_SECONDS)
