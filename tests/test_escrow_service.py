import asyncio

import pytest

from config.constants import ADMIN_WALLET_OWNER_ID, OWNER_ADMIN, OWNER_DELIVERY, OWNER_RESTAURANT
from utils import escrow_service
from utils.errors import (
    DuplicateOperationError,
    InvalidEscrowStateError,
    InvalidSettlementStateError,
    ValidationError,
)
from utils.escrow_service import hold_escrow, release_escrow, retry_failed_credits
from utils.settlement_service import assign_delivery_partner, find_or_create_settlement, get_settlement
from utils.wallet_service import add_transaction, get_wallet, recompute_balance


async def _held(db, make, **kwargs):
    restaurant, order = await make.priced_order(**kwargs)
    await hold_escrow(db, order["_id"], order["user_id"], 17500)
    return restaurant, order


@pytest.mark.asyncio
async def test_breakdown_conserves_money(db, make):
    _, order = await make.priced_order()

    settlement = await find_or_create_settlement(db, order["_id"])

    assert settlement.restaurant_earning.food_price == 14300
    assert settlement.restaurant_earning.commission == 2100
    assert settlement.restaurant_earning.net_earning == 12200
    assert settlement.admin_earning.total_earning == 5300
    assert settlement.distributed_total() == settlement.user_payment.total == 17500


@pytest.mark.asyncio
async def test_settlement_created_once(db, make):
    _, order = await make.priced_order()

    first, second = await asyncio.gather(
        find_or_create_settlement(db, order["_id"]),
        find_or_create_settlement(db, order["_id"]),
    )

    assert first.id == second.id
    assert await db.order_settlements.count_documents({}) == 1


@pytest.mark.asyncio
async def test_hold_requires_exact_total(db, make):
    _, order = await make.priced_order()

    with pytest.raises(ValidationError):
        await hold_escrow(db, order["_id"], order["user_id"], 17000)


@pytest.mark.asyncio
async def test_second_hold_is_duplicate(db, make):
    _, order = await _held(db, make)

    with pytest.raises(DuplicateOperationError):
        await hold_escrow(db, order["_id"], order["user_id"], 17500)

    settlement = await get_settlement(db, order["_id"])
    assert settlement.escrow_status == "held"
    assert settlement.escrow_amount == 17500


@pytest.mark.asyncio
async def test_release_credits_every_party(db, make):
    restaurant, order = await _held(db, make)

    result = await release_escrow(db, order["_id"])

    restaurant_wallet = await get_wallet(db, str(restaurant["_id"]), OWNER_RESTAURANT)
    admin_wallet = await get_wallet(db, ADMIN_WALLET_OWNER_ID, OWNER_ADMIN)
    settlement = await get_settlement(db, order["_id"])

    assert sorted(result.credited) == ["admin", "restaurant"]
    assert result.failed == {}
    assert restaurant_wallet.balance == 12200
    assert admin_wallet.balance == 5300
    assert admin_wallet.totals == {"commission": 2100, "platform_fee": 500, "delivery_fee": 2000, "gst": 700}
    assert restaurant_wallet.balance + admin_wallet.balance == 17500
    assert settlement.escrow_status == "released"
    assert settlement.settlement_status == "completed"
    assert settlement.restaurant_earning.status == "credited"
    assert settlement.admin_earning.status == "credited"


@pytest.mark.asyncio
async def test_release_twice_fails_without_second_credit(db, make):
    restaurant, order = await _held(db, make)
    await release_escrow(db, order["_id"])

    with pytest.raises(InvalidEscrowStateError):
        await release_escrow(db, order["_id"])

    wallet = await get_wallet(db, str(restaurant["_id"]), OWNER_RESTAURANT)
    assert wallet.balance == 12200
    assert len(wallet.transactions) == 1


@pytest.mark.asyncio
async def test_concurrent_release_has_single_winner(db, make):
    restaurant, order = await _held(db, make)

    results = await asyncio.gather(
        release_escrow(db, order["_id"]),
        release_escrow(db, order["_id"]),
        return_exceptions=True,
    )

    errors = [r for r in results if isinstance(r, Exception)]
    assert len(errors) == 1
    assert isinstance(errors[0], InvalidEscrowStateError)
    wallet = await get_wallet(db, str(restaurant["_id"]), OWNER_RESTAURANT)
    assert wallet.balance == 12200


@pytest.mark.asyncio
async def test_release_without_hold_rejected(db, make):
    _, order = await make.priced_order()
    await find_or_create_settlement(db, order["_id"])

    with pytest.raises(InvalidEscrowStateError):
        await release_escrow(db, order["_id"])


@pytest.mark.asyncio
async def test_delivery_partner_share_comes_from_delivery_fee(db, make):
    _, order = await _held(db, make)

    settlement = await assign_delivery_partner(db, order["_id"], "partner-1", distance_km=2)
    assert settlement.delivery_partner_earning.total_earning == 1000
    assert settlement.admin_earning.delivery_fee == 1000
    assert settlement.distributed_total() == 17500

    result = await release_escrow(db, order["_id"])

    partner_wallet = await get_wallet(db, "partner-1", OWNER_DELIVERY)
    admin_wallet = await get_wallet(db, ADMIN_WALLET_OWNER_ID, OWNER_ADMIN)
    assert "delivery_partner" in result.credited
    assert partner_wallet.balance == 1000
    assert admin_wallet.balance == 4300


@pytest.mark.asyncio
async def test_partner_payout_above_delivery_fee_rejected(db, make):
    _, order = await make.priced_order()

    with pytest.raises(ValidationError):
        await assign_delivery_partner(db, order["_id"], "partner-1", distance_km=6)


@pytest.mark.asyncio
async def test_assign_after_release_rejected(db, make):
    _, order = await _held(db, make)
    await release_escrow(db, order["_id"])

    with pytest.raises(InvalidSettlementStateError):
        await assign_delivery_partner(db, order["_id"], "partner-1", distance_km=2)


@pytest.mark.asyncio
async def test_partial_failure_is_isolated_and_retryable(db, make, monkeypatch):
    restaurant, order = await _held(db, make)

    async def flaky(db, owner_id, owner_type, tx=None, **data):
        if owner_type == OWNER_RESTAURANT:
            raise RuntimeError("restaurant wallet unavailable")
        return await add_transaction(db, owner_id, owner_type, tx, **data)

    monkeypatch.setattr(escrow_service, "add_transaction", flaky)
    result = await release_escrow(db, order["_id"])

    settlement = await get_settlement(db, order["_id"])
    assert result.failed == {"restaurant": "restaurant wallet unavailable"}
    assert result.credited == ["admin"]
    assert settlement.restaurant_earning.status == "failed"
    assert settlement.party_errors == {"restaurant": "restaurant wallet unavailable"}
    assert settlement.settlement_status == "completed"

    monkeypatch.setattr(escrow_service, "add_transaction", add_transaction)
    retried = await retry_failed_credits(db, order["_id"])

    settlement = await get_settlement(db, order["_id"])
    restaurant_wallet = await get_wallet(db, str(restaurant["_id"]), OWNER_RESTAURANT)
    admin_wallet = await get_wallet(db, ADMIN_WALLET_OWNER_ID, OWNER_ADMIN)
    assert retried.credited == ["restaurant"]
    assert restaurant_wallet.balance == 12200
    assert admin_wallet.balance == 5300
    assert admin_wallet.balance == recompute_balance(admin_wallet)
    assert settlement.restaurant_earning.status == "credited"
    assert settlement.party_errors == {}


@pytest.mark.asyncio
async def test_retry_before_release_rejected(db, make):
    _, order = await _held(db, make)

    with pytest.raises(InvalidEscrowStateError):
        await retry_failed_credits(db, order["_id"])
