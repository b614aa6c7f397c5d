from datetime import datetime

from pymongo import ASCENDING

# Events the settlement core appends to an order's timeline
EVENT_AUTO_REJECTED = "ORDER_AUTO_REJECTED"
EVENT_ESCROW_HELD = "ESCROW_HELD"
EVENT_ESCROW_RELEASED = "ESCROW_RELEASED"
EVENT_REFUND_CALCULATED = "REFUND_CALCULATED"
EVENT_REFUND_INITIATED = "REFUND_INITIATED"
EVENT_REFUND_PROCESSED = "REFUND_PROCESSED"
EVENT_REFUND_FAILED = "REFUND_FAILED"


async def record_order_event(
    db,
    order: dict,
    event: str,
    *,
    actor_role: str = "system",
    actor_id=None,
    metadata: dict | None = None,
):
    """Append an event to the order timeline. Timeline rows are never edited."""
    await db.order_timeline.insert_one({
        "order_id": order["_id"],
        "order_number": order.get("order_number"),
        "event": event,
        "status": order.get("status"),
        "actor_role": actor_role,
        "actor_id": str(actor_id) if actor_id else None,
        "metadata": metadata or {},
        "created_at": datetime.utcnow(),
    })


async def list_order_events(db, order_id) -> list[dict]:
    cursor = db.order_timeline.find({"order_id": order_id}).sort("created_at", ASCENDING)
    return [doc async for doc in cursor]
