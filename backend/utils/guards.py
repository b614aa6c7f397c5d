from bson import ObjectId
from bson.errors import InvalidId

from utils.errors import NotFoundError, ValidationError

# -------------------------------
# ObjectId Guard
# -------------------------------

def parse_object_id(value, name: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise ValidationError(f"Invalid {name}")


# -------------------------------
# Order Guard
# -------------------------------

async def load_order(db, order_id) -> dict:
    order = await db.orders.find_one({"_id": parse_object_id(order_id, "order_id")})
    if not order:
        raise NotFoundError("Order not found", order_id=str(order_id))
    return order
