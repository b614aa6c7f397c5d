import logging
from datetime import datetime
from typing import Optional

from pydantic import ValidationError as PydanticValidationError

from config.env import COMMISSION_CACHE_MAX_ENTRIES, COMMISSION_CACHE_TTL_SECONDS
from config.constants import (
    COMMISSION_AMOUNT,
    COMMISSION_PERCENTAGE,
    DELIVERY_FALLBACK_BASE_PAYOUT,
    DELIVERY_FALLBACK_MIN_DISTANCE_KM,
    DELIVERY_FALLBACK_PER_KM,
)
from models.commission import (
    CommissionResult,
    CommissionRule,
    DefaultCommission,
    DeliveryCommissionRule,
    DeliveryEarning,
    RestaurantCommissionInDB,
)
from utils.audit import log_audit
from utils.cache import TTLCache
from utils.errors import CommissionNotConfigured, NotFoundError, ValidationError
from utils.guards import parse_object_id
from utils.money import percent_of

logger = logging.getLogger(__name__)

# restaurant_id -> commission record; writes below invalidate their key
commission_cache = TTLCache(COMMISSION_CACHE_TTL_SECONDS, COMMISSION_CACHE_MAX_ENTRIES)


# ==============================
# Write-time validation
# ==============================

def _coerce(model, data, label: str):
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid {label}: {e.errors()[0].get('msg')}")


def _check_value(commission_type: str, value: float, label: str) -> None:
    if commission_type == COMMISSION_PERCENTAGE and not (0 <= value <= 100):
        raise ValidationError(f"Percentage in {label} must be between 0-100")
    if commission_type == COMMISSION_AMOUNT and value < 0:
        raise ValidationError(f"Amount in {label} must be >= 0")


def _ranges_overlap(min_a, max_a, min_b, max_b) -> bool:
    # half-open ranges [min, max); None max means unbounded
    a_end = float("inf") if max_a is None else max_a
    b_end = float("inf") if max_b is None else max_b
    return min_a < b_end and min_b < a_end


def validate_commission_rules(rules, default) -> tuple[list[CommissionRule], DefaultCommission]:
    """
    Validate restaurant commission bands before they are stored.
    Overlapping bands are rejected; adjacent bands ([0, 200) + [200, None)) are fine.
    """
    if default is None:
        raise ValidationError("Default commission is required")
    default = _coerce(DefaultCommission, default, "default commission")
    _check_value(default.type, default.value, "default commission")

    parsed = [_coerce(CommissionRule, r, "commission rule") for r in rules or []]

    for rule in parsed:
        _check_value(rule.type, rule.value, "commission rules")
        if rule.max_order_amount is not None and rule.max_order_amount <= rule.min_order_amount:
            raise ValidationError("maxOrderAmount must be greater than minOrderAmount")

    for i, a in enumerate(parsed):
        for b in parsed[i + 1:]:
            if _ranges_overlap(a.min_order_amount, a.max_order_amount, b.min_order_amount, b.max_order_amount):
                raise ValidationError(
                    "Commission rule bands overlap",
                    first=a.model_dump(),
                    second=b.model_dump(),
                )

    return parsed, default


# ==============================
# Lookup (cached)
# ==============================

async def _load_commission(db, restaurant_id, cache: Optional[TTLCache] = commission_cache) -> Optional[dict]:
    key = str(restaurant_id)
    if cache is not None:
        cached = cache.get(key)
        if cached is not None:
            return cached

    doc = await db.restaurant_commissions.find_one({
        "restaurant_id": parse_object_id(restaurant_id, "restaurant_id"),
    })
    if doc and cache is not None:
        cache.set(key, doc)
    return doc


def resolve_commission(record: dict, order_amount: int) -> CommissionResult:
    """Pure resolution of a stored commission record against an order amount."""
    if order_amount < 0:
        raise ValidationError("Order amount cannot be negative")

    rules = [CommissionRule.model_validate(r) for r in record.get("commission_rules") or []]
    rule = next((r for r in rules if r.contains(order_amount)), None)

    if rule is not None:
        commission_type, value = rule.type, rule.value
    else:
        default = record.get("default_commission")
        if not default:
            raise CommissionNotConfigured("Default commission missing for restaurant")
        default = DefaultCommission.model_validate(default)
        commission_type, value = default.type, default.value

    if commission_type == COMMISSION_PERCENTAGE:
        value = min(max(value, 0), 100)
        commission_amount = percent_of(order_amount, value)
    else:
        commission_amount = int(value)
        if commission_amount < 0:
            raise ValidationError("Commission amount must be >= 0")
        if commission_amount > order_amount:
            raise ValidationError(
                "Commission amount exceeds order amount",
                commission_amount=commission_amount,
                order_amount=order_amount,
            )

    return CommissionResult(
        commission_type=commission_type,
        commission_value=value,
        commission_amount=commission_amount,
        net_amount=order_amount - commission_amount,
        rule=rule,
    )


async def calculate_commission_for_order(
    db,
    restaurant_id,
    order_amount: int,
    cache: Optional[TTLCache] = commission_cache,
) -> CommissionResult:
    record = await _load_commission(db, restaurant_id, cache)
    if not record:
        raise CommissionNotConfigured(
            "Commission not configured for restaurant",
            restaurant_id=str(restaurant_id),
        )
    if record.get("status") is False:
        raise CommissionNotConfigured(
            "Commission disabled for restaurant",
            restaurant_id=str(restaurant_id),
        )

    return resolve_commission(record, order_amount)


# ==============================
# Commission records (admin)
# ==============================

async def create_restaurant_commission(
    db,
    *,
    restaurant_id: str,
    commission_rules,
    default_commission,
    admin_id: str,
    status: bool = True,
    notes: str = "",
    cache: Optional[TTLCache] = commission_cache,
) -> dict:
    rules, default = validate_commission_rules(commission_rules, default_commission)

    restaurant_oid = parse_object_id(restaurant_id, "restaurant_id")
    restaurant = await db.restaurants.find_one({"_id": restaurant_oid})
    if not restaurant:
        raise NotFoundError("Restaurant not found")
    if not restaurant.get("is_active"):
        raise ValidationError("Restaurant is not approved. Please approve the restaurant first.")

    if await db.restaurant_commissions.find_one({"restaurant_id": restaurant_oid}):
        raise ValidationError("Commission already exists for this restaurant. Use update instead.")

    now = datetime.utcnow()
    record = RestaurantCommissionInDB(
        restaurant_id=str(restaurant_oid),
        restaurant_name=restaurant.get("name"),
        commission_rules=rules,
        default_commission=default,
        status=status,
        notes=notes,
        created_by=admin_id,
        created_at=now,
        updated_at=now,
    )
    doc = record.model_dump()
    doc["restaurant_id"] = restaurant_oid

    await db.restaurant_commissions.insert_one(doc)
    if cache is not None:
        cache.invalidate(str(restaurant_oid))

    await log_audit(
        db,
        entity_type="commission",
        entity_id=doc["_id"],
        action="create_restaurant_commission",
        action_type="create",
        performed_by={"type": "admin", "id": admin_id},
        changes={"after": {"default_commission": default.model_dump(), "rules": len(rules)}},
        description=f"Restaurant commission created for {restaurant.get('name')}",
    )
    return doc


async def update_restaurant_commission(
    db,
    *,
    restaurant_id: str,
    admin_id: str,
    commission_rules=None,
    default_commission=None,
    status: Optional[bool] = None,
    notes: Optional[str] = None,
    cache: Optional[TTLCache] = commission_cache,
) -> dict:
    restaurant_oid = parse_object_id(restaurant_id, "restaurant_id")
    existing = await db.restaurant_commissions.find_one({"restaurant_id": restaurant_oid})
    if not existing:
        raise NotFoundError("Restaurant commission not found")

    rules, default = validate_commission_rules(
        existing.get("commission_rules") if commission_rules is None else commission_rules,
        existing.get("default_commission") if default_commission is None else default_commission,
    )

    updates = {
        "commission_rules": [r.model_dump() for r in rules],
        "default_commission": default.model_dump(),
        "updated_by": admin_id,
        "updated_at": datetime.utcnow(),
    }
    if status is not None:
        updates["status"] = status
    if notes is not None:
        updates["notes"] = notes

    await db.restaurant_commissions.update_one({"_id": existing["_id"]}, {"$set": updates})
    if cache is not None:
        cache.invalidate(str(restaurant_oid))

    await log_audit(
        db,
        entity_type="commission",
        entity_id=existing["_id"],
        action="update_restaurant_commission",
        action_type="update",
        performed_by={"type": "admin", "id": admin_id},
        changes={
            "before": {"default_commission": existing.get("default_commission")},
            "after": {"default_commission": updates["default_commission"]},
        },
        description=f"Restaurant commission updated for {existing.get('restaurant_name')}",
    )

    existing.update(updates)
    return existing


async def get_restaurant_commission(db, restaurant_id: str) -> dict:
    doc = await db.restaurant_commissions.find_one({
        "restaurant_id": parse_object_id(restaurant_id, "restaurant_id"),
    })
    if not doc:
        raise NotFoundError("Commission not found for this restaurant")
    return doc


# ==============================
# Delivery partner payout (distance bands)
# ==============================

async def create_delivery_commission_rule(db, rule, admin_id: str) -> dict:
    rule = _coerce(DeliveryCommissionRule, rule, "delivery commission rule")
    if rule.max_distance_km is not None and rule.max_distance_km <= rule.min_distance_km:
        raise ValidationError("Maximum distance must be greater than minimum distance")

    async for existing in db.delivery_commission_rules.find({"status": True}):
        if _ranges_overlap(
            rule.min_distance_km,
            rule.max_distance_km,
            existing["min_distance_km"],
            existing.get("max_distance_km"),
        ):
            raise ValidationError(
                f"Distance range overlaps with existing rule \"{existing.get('name')}\""
            )

    now = datetime.utcnow()
    doc = rule.model_dump()
    doc.update({"created_by": admin_id, "created_at": now, "updated_at": now})
    await db.delivery_commission_rules.insert_one(doc)
    return doc


def _delivery_earning_for(rule: Optional[DeliveryCommissionRule], distance_km: float, surge_multiplier: float) -> DeliveryEarning:
    if rule is None:
        base = DELIVERY_FALLBACK_BASE_PAYOUT
        per_km = DELIVERY_FALLBACK_PER_KM
        min_distance = DELIVERY_FALLBACK_MIN_DISTANCE_KM
        rule_name = None
    else:
        base = rule.base_payout
        per_km = rule.commission_per_km
        min_distance = rule.min_distance_km
        rule_name = rule.name

    distance_commission = percent_of(per_km, distance_km * 100) if distance_km > min_distance else 0
    subtotal = base + distance_commission
    surge_amount = percent_of(subtotal, (surge_multiplier - 1) * 100) if surge_multiplier > 1 else 0

    return DeliveryEarning(
        base_payout=base,
        distance_km=round(distance_km, 2),
        commission_per_km=per_km,
        distance_commission=distance_commission,
        surge_multiplier=surge_multiplier,
        surge_amount=surge_amount,
        total_earning=subtotal + surge_amount,
        rule_name=rule_name,
    )


async def calculate_delivery_earning(db, distance_km: float, surge_multiplier: float = 1) -> DeliveryEarning:
    if distance_km < 0:
        raise ValidationError("Distance cannot be negative")
    if surge_multiplier < 1:
        raise ValidationError("Surge multiplier must be >= 1")

    rules = [
        DeliveryCommissionRule.model_validate(doc)
        async for doc in db.delivery_commission_rules.find({"status": True})
    ]
    rule = next((r for r in rules if r.contains(distance_km)), None)
    if rule is None:
        logger.warning("DELIVERY_COMMISSION_FALLBACK distance_km=%s", distance_km)

    return _delivery_earning_for(rule, distance_km, surge_multiplier)
