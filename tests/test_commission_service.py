from datetime import datetime, timedelta

import pytest
from bson import ObjectId

from utils.cache import TTLCache
from utils.commission_service import (
    calculate_commission_for_order,
    calculate_delivery_earning,
    create_delivery_commission_rule,
    create_restaurant_commission,
    update_restaurant_commission,
    validate_commission_rules,
)
from utils.errors import CommissionNotConfigured, NotFoundError, ValidationError
from utils.money import to_paise

PCT_15 = {"type": "percentage", "value": 15}


@pytest.mark.asyncio
async def test_default_percentage_commission(db, make):
    restaurant = await make.restaurant()
    await make.commission(restaurant, percent=15)

    result = await calculate_commission_for_order(db, restaurant["_id"], to_paise(200))

    assert result.commission_amount == to_paise(30)
    assert result.net_amount == to_paise(170)
    assert result.rule is None


@pytest.mark.asyncio
async def test_first_matching_band_wins(db, make):
    restaurant = await make.restaurant()
    await make.commission(restaurant, rules=[
        {"type": "percentage", "value": 10, "min_order_amount": 0, "max_order_amount": 20000},
        {"type": "amount", "value": 2500, "min_order_amount": 20000, "max_order_amount": None},
    ])

    small = await calculate_commission_for_order(db, restaurant["_id"], 19999)
    large = await calculate_commission_for_order(db, restaurant["_id"], 50000)

    assert small.commission_amount == 2000
    assert small.commission_type == "percentage"
    assert large.commission_amount == 2500
    assert large.net_amount == 47500


@pytest.mark.asyncio
async def test_missing_commission_is_a_configuration_error(db):
    with pytest.raises(CommissionNotConfigured):
        await calculate_commission_for_order(db, ObjectId(), 10000)


@pytest.mark.asyncio
async def test_amount_commission_above_order_amount_rejected(db, make):
    restaurant = await make.restaurant()
    await create_restaurant_commission(
        db,
        restaurant_id=str(restaurant["_id"]),
        commission_rules=[],
        default_commission={"type": "amount", "value": 5000},
        admin_id="admin-1",
    )

    with pytest.raises(ValidationError):
        await calculate_commission_for_order(db, restaurant["_id"], 4000)


def test_overlapping_bands_rejected():
    with pytest.raises(ValidationError):
        validate_commission_rules(
            [
                {"type": "percentage", "value": 10, "min_order_amount": 0, "max_order_amount": 30000},
                {"type": "percentage", "value": 12, "min_order_amount": 20000, "max_order_amount": None},
            ],
            PCT_15,
        )


def test_adjacent_bands_allowed():
    rules, default = validate_commission_rules(
        [
            {"type": "percentage", "value": 10, "min_order_amount": 0, "max_order_amount": 20000},
            {"type": "percentage", "value": 12, "min_order_amount": 20000, "max_order_amount": None},
        ],
        PCT_15,
    )
    assert len(rules) == 2
    assert default.value == 15


@pytest.mark.parametrize("rule", [
    {"type": "percentage", "value": 120, "min_order_amount": 0},
    {"type": "percentage", "value": 10, "min_order_amount": 500, "max_order_amount": 500},
    {"type": "amount", "value": -1, "min_order_amount": 0},
])
def test_invalid_rules_rejected(rule):
    with pytest.raises(ValidationError):
        validate_commission_rules([rule], PCT_15)


@pytest.mark.asyncio
async def test_inactive_restaurant_cannot_get_commission(db, make):
    restaurant = await make.restaurant(active=False)

    with pytest.raises(ValidationError):
        await make.commission(restaurant)


@pytest.mark.asyncio
async def test_one_commission_record_per_restaurant(db, make):
    restaurant = await make.restaurant()
    await make.commission(restaurant)

    with pytest.raises(ValidationError):
        await make.commission(restaurant)


@pytest.mark.asyncio
async def test_update_invalidates_cached_commission(db, make):
    restaurant = await make.restaurant()
    await make.commission(restaurant, percent=15)
    cache = TTLCache(ttl_seconds=300)

    before = await calculate_commission_for_order(db, restaurant["_id"], 10000, cache=cache)
    await update_restaurant_commission(
        db,
        restaurant_id=str(restaurant["_id"]),
        admin_id="admin-1",
        default_commission={"type": "percentage", "value": 10},
        cache=cache,
    )
    after = await calculate_commission_for_order(db, restaurant["_id"], 10000, cache=cache)

    assert before.commission_amount == 1500
    assert after.commission_amount == 1000


@pytest.mark.asyncio
async def test_update_unknown_commission(db):
    with pytest.raises(NotFoundError):
        await update_restaurant_commission(db, restaurant_id=str(ObjectId()), admin_id="admin-1")


@pytest.mark.asyncio
async def test_delivery_fallback_without_bands(db):
    near = await calculate_delivery_earning(db, 3)
    far = await calculate_delivery_earning(db, 6, surge_multiplier=1.5)

    assert near.total_earning == 1000
    assert near.distance_commission == 0
    assert far.distance_commission == 3000
    assert far.surge_amount == 2000
    assert far.total_earning == 6000


@pytest.mark.asyncio
async def test_delivery_band_selection(db):
    await create_delivery_commission_rule(db, {
        "name": "near", "min_distance_km": 0, "max_distance_km": 5,
        "commission_per_km": 400, "base_payout": 2000,
    }, "admin-1")
    await create_delivery_commission_rule(db, {
        "name": "far", "min_distance_km": 5, "max_distance_km": None,
        "commission_per_km": 600, "base_payout": 2500,
    }, "admin-1")

    near = await calculate_delivery_earning(db, 3)
    far = await calculate_delivery_earning(db, 8)

    assert near.rule_name == "near"
    assert near.total_earning == 3200
    assert far.rule_name == "far"
    assert far.total_earning == 7300


@pytest.mark.asyncio
async def test_overlapping_delivery_band_rejected(db):
    await create_delivery_commission_rule(db, {
        "name": "near", "min_distance_km": 0, "max_distance_km": 5,
        "commission_per_km": 400, "base_payout": 2000,
    }, "admin-1")

    with pytest.raises(ValidationError):
        await create_delivery_commission_rule(db, {
            "name": "mid", "min_distance_km": 4, "max_distance_km": 8,
            "commission_per_km": 500, "base_payout": 2000,
        }, "admin-1")


def test_ttl_cache_expires_entries():
    now = [0]
    start = datetime(2026, 1, 1)
    cache = TTLCache(ttl_seconds=60, clock=lambda: start + timedelta(seconds=now[0]))

    cache.set("r1", {"value": 1})
    assert cache.get("r1") == {"value": 1}

    now[0] = 61
    assert cache.get("r1") is None
    assert len(cache) == 0
