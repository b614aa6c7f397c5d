import logging
from datetime import datetime, timedelta

from pymongo import ASCENDING, ReturnDocument

from config.env import OUTBOX_MAX_ATTEMPTS

logger = logging.getLogger(__name__)

OUTBOX_AUDIT = "audit"
OUTBOX_NOTIFY_RESTAURANT = "notify_restaurant"

OUTBOX_PENDING = "pending"
OUTBOX_PROCESSING = "processing"
OUTBOX_DONE = "done"
OUTBOX_DEAD = "dead"

# a claimed message whose worker died is picked up again after this
OUTBOX_LEASE_SECONDS = 60


async def enqueue(db, kind: str, payload: dict) -> None:
    now = datetime.utcnow()
    await db.outbox.insert_one({
        "kind": kind,
        "payload": payload,
        "status": OUTBOX_PENDING,
        "attempts": 0,
        "last_error": None,
        "claimed_at": None,
        "created_at": now,
        "processed_at": None,
    })


async def _claim_next(db, now: datetime, skip: list):
    stale = now - timedelta(seconds=OUTBOX_LEASE_SECONDS)
    return await db.outbox.find_one_and_update(
        {
            "_id": {"$nin": skip},
            "$or": [
                {"status": OUTBOX_PENDING},
                {"status": OUTBOX_PROCESSING, "claimed_at": {"$lte": stale}},
            ]
        },
        {"$set": {"status": OUTBOX_PROCESSING, "claimed_at": now}},
        sort=[("created_at", ASCENDING)],
        return_document=ReturnDocument.AFTER,
    )


async def drain_outbox(db, handlers: dict, limit: int = 100, now: datetime | None = None) -> dict:
    """
    Deliver up to `limit` queued side effects.

    Each message is claimed atomically, so concurrent drainers never run the
    same handler twice for one claim. A failing handler leaves the message
    pending for the next sweep until OUTBOX_MAX_ATTEMPTS, then it is dead.
    """
    stats = {"done": 0, "failed": 0, "dead": 0}
    # one attempt per message per drain
    seen = []

    for _ in range(limit):
        message = await _claim_next(db, now or datetime.utcnow(), seen)
        if message is None:
            break
        seen.append(message["_id"])

        handler = handlers.get(message["kind"])
        try:
            if handler is None:
                raise LookupError(f"No outbox handler for kind {message['kind']}")
            await handler(db, message["payload"])
        except Exception as e:
            attempts = message.get("attempts", 0) + 1
            status = OUTBOX_DEAD if attempts >= OUTBOX_MAX_ATTEMPTS else OUTBOX_PENDING
            await db.outbox.update_one(
                {"_id": message["_id"]},
                {"$set": {
                    "status": status,
                    "attempts": attempts,
                    "last_error": str(e),
                    "claimed_at": None,
                }},
            )
            logger.exception(
                "OUTBOX_DELIVERY_FAILED id=%s kind=%s attempts=%s",
                message["_id"], message["kind"], attempts,
            )
            stats["dead" if status == OUTBOX_DEAD else "failed"] += 1
            continue

        await db.outbox.update_one(
            {"_id": message["_id"]},
            {"$set": {"status": OUTBOX_DONE, "processed_at": datetime.utcnow()}},
        )
        stats["done"] += 1

    return stats
