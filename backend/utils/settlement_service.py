import logging
from datetime import datetime
from typing import Optional

from pymongo import ReturnDocument

from config.constants import (
    COMMISSION_PERCENTAGE,
    ESCROW_RELEASED,
    SETTLEMENT_PENDING,
)
from models.commission import CommissionResult, DeliveryEarning
from models.settlement import (
    AdminEarning,
    DeliveryPartnerEarning,
    RestaurantEarning,
    Settlement,
    UserPayment,
)
from utils.audit import log_audit
from utils.cache import TTLCache
from utils.commission_service import (
    calculate_commission_for_order,
    calculate_delivery_earning,
    commission_cache,
)
from utils.errors import InvalidSettlementStateError, NotFoundError, ValidationError
from utils.guards import load_order, parse_object_id

logger = logging.getLogger(__name__)


# ==============================
# Breakdown (pure)
# ==============================

def user_payment_from_order(order: dict) -> UserPayment:
    pricing = order.get("pricing") or {}
    payment = UserPayment(
        subtotal=int(pricing.get("subtotal", 0)),
        discount=int(pricing.get("discount", 0)),
        delivery_fee=int(pricing.get("delivery_fee", 0)),
        platform_fee=int(pricing.get("platform_fee", 0)),
        gst=int(pricing.get("gst", 0)),
        packaging_fee=int(pricing.get("packaging_fee", 0)),
        total=int(pricing.get("total", 0)),
    )

    parts = (
        payment.subtotal - payment.discount + payment.packaging_fee
        + payment.delivery_fee + payment.platform_fee + payment.gst
    )
    if min(payment.model_dump().values()) < 0:
        raise ValidationError("Order pricing contains negative amounts", order_id=str(order["_id"]))
    if parts != payment.total:
        raise ValidationError(
            "Order pricing does not add up to total",
            order_id=str(order["_id"]),
            expected=parts,
            total=payment.total,
        )
    return payment


def commission_base(user_payment: UserPayment) -> int:
    return user_payment.subtotal - user_payment.discount


def _admin_earning(user_payment: UserPayment, commission: int, partner_total: int) -> AdminEarning:
    delivery_margin = user_payment.delivery_fee - partner_total
    if delivery_margin < 0:
        raise ValidationError(
            "Delivery partner payout exceeds delivery fee collected",
            delivery_fee=user_payment.delivery_fee,
            partner_total=partner_total,
        )

    admin = AdminEarning(
        commission=commission,
        platform_fee=user_payment.platform_fee,
        delivery_fee=delivery_margin,
        gst=user_payment.gst,
    )
    admin.total_earning = admin.commission + admin.platform_fee + admin.delivery_fee + admin.gst
    if admin.total_earning < 0:
        raise ValidationError("Admin earning cannot be negative")
    return admin


def _partner_earning(earning: Optional[DeliveryEarning]) -> DeliveryPartnerEarning:
    if earning is None:
        return DeliveryPartnerEarning()
    return DeliveryPartnerEarning(**earning.model_dump(exclude={"rule_name"}))


def build_settlement(order: dict, commission: CommissionResult, delivery_earning: Optional[DeliveryEarning] = None) -> dict:
    """
    Compute the settlement breakdown for an order.

    restaurant net + delivery partner total + admin total always equals what
    the customer paid; anything that would break that raises ValidationError.
    """
    user_payment = user_payment_from_order(order)
    food_price = user_payment.subtotal - user_payment.discount + user_payment.packaging_fee

    restaurant = RestaurantEarning(
        food_price=food_price,
        commission=commission.commission_amount,
        commission_percentage=(
            commission.commission_value if commission.commission_type == COMMISSION_PERCENTAGE else None
        ),
        commission_type=commission.commission_type,
        net_earning=food_price - commission.commission_amount,
    )
    partner = _partner_earning(delivery_earning)
    admin = _admin_earning(user_payment, commission.commission_amount, partner.total_earning)

    payment = order.get("payment") or {}
    partner_id = order.get("delivery_partner_id") if delivery_earning is not None else None
    return {
        "order_id": order["_id"],
        "order_number": order.get("order_number"),
        "user_id": str(order["user_id"]) if order.get("user_id") else None,
        "restaurant_id": str(order["restaurant_id"]) if order.get("restaurant_id") else None,
        "delivery_partner_id": str(partner_id) if partner_id else None,
        "payment_method": payment.get("method"),
        "user_payment": user_payment.model_dump(),
        "restaurant_earning": restaurant.model_dump(),
        "delivery_partner_earning": partner.model_dump(),
        "admin_earning": admin.model_dump(),
        "escrow_status": None,
        "escrow_amount": 0,
        "escrow_held_at": None,
        "escrow_released_at": None,
        "settlement_status": SETTLEMENT_PENDING,
        "cancellation_details": {"cancelled": False},
        "party_errors": {},
    }


# ==============================
# Persistence
# ==============================

async def get_settlement(db, order_id) -> Settlement:
    doc = await db.order_settlements.find_one({"order_id": parse_object_id(order_id, "order_id")})
    if not doc:
        raise NotFoundError("Settlement not found", order_id=str(order_id))
    return Settlement.from_doc(doc)


async def find_or_create_settlement(db, order_id, cache: Optional[TTLCache] = commission_cache) -> Settlement:
    order_oid = parse_object_id(order_id, "order_id")
    existing = await db.order_settlements.find_one({"order_id": order_oid})
    if existing:
        return Settlement.from_doc(existing)

    order = await load_order(db, order_oid)
    if not order.get("restaurant_id"):
        raise ValidationError("Order has no restaurant", order_id=str(order_oid))

    user_payment = user_payment_from_order(order)
    commission = await calculate_commission_for_order(
        db, order["restaurant_id"], commission_base(user_payment), cache=cache
    )

    delivery_earning = None
    if order.get("delivery_partner_id") and order.get("delivery_distance_km") is not None:
        delivery_earning = await calculate_delivery_earning(
            db,
            float(order["delivery_distance_km"]),
            float(order.get("surge_multiplier") or 1),
        )

    breakdown = build_settlement(order, commission, delivery_earning)
    now = datetime.utcnow()
    breakdown["created_at"] = now
    breakdown["updated_at"] = now

    # concurrent creators converge on whichever insert lands first
    doc = await db.order_settlements.find_one_and_update(
        {"order_id": order_oid},
        {"$setOnInsert": breakdown},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    logger.info("SETTLEMENT_READY order=%s total=%s", order_oid, doc["user_payment"]["total"])
    return Settlement.from_doc(doc)


async def assign_delivery_partner(
    db,
    order_id,
    partner_id: str,
    distance_km: float,
    surge_multiplier: float = 1,
) -> Settlement:
    """Attach a delivery partner and recompute the partner and admin shares."""
    settlement = await find_or_create_settlement(db, order_id)
    earning = await calculate_delivery_earning(db, distance_km, surge_multiplier)

    partner = _partner_earning(earning)
    admin = _admin_earning(
        settlement.user_payment,
        settlement.restaurant_earning.commission,
        partner.total_earning,
    )

    doc = await db.order_settlements.find_one_and_update(
        {
            "order_id": settlement.order_id,
            "settlement_status": SETTLEMENT_PENDING,
            "escrow_status": {"$ne": ESCROW_RELEASED},
        },
        {"$set": {
            "delivery_partner_id": str(partner_id),
            "delivery_partner_earning": partner.model_dump(),
            "admin_earning": admin.model_dump(),
            "updated_at": datetime.utcnow(),
        }},
        return_document=ReturnDocument.AFTER,
    )
    if doc is None:
        raise InvalidSettlementStateError(
            "Delivery partner can only be assigned to a pending settlement",
            order_id=str(settlement.order_id),
            settlement_status=settlement.settlement_status,
        )

    await log_audit(
        db,
        entity_type="settlement",
        entity_id=settlement.id,
        action="assign_delivery_partner",
        action_type="update",
        changes={"after": {"delivery_partner_id": str(partner_id), "total_earning": partner.total_earning}},
        description=f"Delivery partner assigned for order {settlement.order_number}",
    )
    return Settlement.from_doc(doc)
