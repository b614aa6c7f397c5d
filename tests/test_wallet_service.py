import asyncio
import random

import pytest
from bson import ObjectId

from config.constants import OWNER_RESTAURANT, OWNER_USER
from models.wallet import build_transaction
from utils.errors import InsufficientBalanceError, ValidationError
from utils.wallet_service import (
    add_transaction,
    find_or_create_wallet,
    get_wallet,
    has_order_transaction,
    list_order_transactions,
    recompute_balance,
    update_transaction_status,
)


@pytest.mark.asyncio
async def test_find_or_create_wallet_is_idempotent(db):
    first = await find_or_create_wallet(db, "u1", OWNER_USER)
    second = await find_or_create_wallet(db, "u1", OWNER_USER)

    assert first.id == second.id
    assert second.balance == 0
    assert await db.wallets.count_documents({}) == 1


@pytest.mark.asyncio
async def test_unknown_owner_type_rejected(db):
    with pytest.raises(ValidationError):
        await find_or_create_wallet(db, "u1", "merchant")


@pytest.mark.asyncio
async def test_completed_credit_updates_balance_and_totals(db):
    tx, applied = await add_transaction(db, "u1", OWNER_USER, type="addition", amount=5000)

    wallet = await get_wallet(db, "u1", OWNER_USER)
    assert applied is True
    assert wallet.balance == 5000
    assert wallet.total_added == 5000
    assert wallet.totals["addition"] == 5000
    assert wallet.find_transaction(tx.id).processed_at is not None


@pytest.mark.asyncio
async def test_debit_beyond_balance_raises_and_changes_nothing(db):
    await add_transaction(db, "u1", OWNER_USER, type="addition", amount=1000)

    with pytest.raises(InsufficientBalanceError):
        await add_transaction(db, "u1", OWNER_USER, type="deduction", amount=1500)

    wallet = await get_wallet(db, "u1", OWNER_USER)
    assert wallet.balance == 1000
    assert len(wallet.transactions) == 1


@pytest.mark.asyncio
async def test_idempotency_key_prevents_double_credit(db):
    order_id = ObjectId()
    data = {
        "type": "payment",
        "amount": 12200,
        "order_id": order_id,
        "idempotency_key": f"payment:restaurant:{order_id}",
    }

    first, applied_first = await add_transaction(db, "r1", OWNER_RESTAURANT, **data)
    second, applied_second = await add_transaction(db, "r1", OWNER_RESTAURANT, **data)

    wallet = await get_wallet(db, "r1", OWNER_RESTAURANT)
    assert applied_first is True
    assert applied_second is False
    assert second.id == first.id
    assert wallet.balance == 12200
    assert len(wallet.transactions) == 1


@pytest.mark.asyncio
async def test_concurrent_credits_are_not_lost(db):
    await asyncio.gather(*[
        add_transaction(db, "u1", OWNER_USER, type="addition", amount=100)
        for _ in range(25)
    ])

    wallet = await get_wallet(db, "u1", OWNER_USER)
    assert wallet.balance == 2500
    assert len(wallet.transactions) == 25


@pytest.mark.asyncio
async def test_balance_matches_completed_transactions_for_random_sequence(db):
    rng = random.Random(42)

    for _ in range(60):
        tx_type = rng.choice(["addition", "bonus", "deduction", "withdrawal"])
        data = {"type": tx_type, "amount": rng.randint(1, 5000)}
        if tx_type == "withdrawal":
            data["reference"] = f"payout-{rng.randint(1, 10**6)}"
        try:
            await add_transaction(db, "u1", OWNER_USER, **data)
        except InsufficientBalanceError:
            pass

    wallet = await get_wallet(db, "u1", OWNER_USER)
    assert wallet.balance >= 0
    assert wallet.balance == recompute_balance(wallet)


@pytest.mark.asyncio
async def test_pending_transaction_applies_only_on_completion(db):
    tx, _ = await add_transaction(db, "u1", OWNER_USER, type="addition", amount=700, status="Pending")
    assert (await get_wallet(db, "u1", OWNER_USER)).balance == 0

    await update_transaction_status(db, "u1", OWNER_USER, tx.id, "Completed")
    wallet = await get_wallet(db, "u1", OWNER_USER)
    assert wallet.balance == 700
    assert wallet.balance == recompute_balance(wallet)


@pytest.mark.asyncio
async def test_failing_completed_transaction_reverses_balance(db):
    tx, _ = await add_transaction(db, "u1", OWNER_USER, type="addition", amount=900)

    updated = await update_transaction_status(db, "u1", OWNER_USER, tx.id, "Failed")

    wallet = await get_wallet(db, "u1", OWNER_USER)
    assert updated.status == "Failed"
    assert wallet.balance == 0
    assert wallet.total_added == 0


@pytest.mark.asyncio
async def test_reversal_is_clamped_at_zero(db):
    tx, _ = await add_transaction(db, "u1", OWNER_USER, type="addition", amount=900)
    await add_transaction(db, "u1", OWNER_USER, type="deduction", amount=600)

    await update_transaction_status(db, "u1", OWNER_USER, tx.id, "Cancelled")

    assert (await get_wallet(db, "u1", OWNER_USER)).balance == 0


@pytest.mark.asyncio
async def test_invalid_status_transition_rejected(db):
    tx, _ = await add_transaction(db, "u1", OWNER_USER, type="addition", amount=900)
    await update_transaction_status(db, "u1", OWNER_USER, tx.id, "Failed")

    with pytest.raises(ValidationError):
        await update_transaction_status(db, "u1", OWNER_USER, tx.id, "Completed")


def test_order_linked_types_require_order_id():
    with pytest.raises(ValidationError):
        build_transaction(type="refund", amount=100)

    with pytest.raises(ValidationError):
        build_transaction(type="withdrawal", amount=100)

    tx = build_transaction(type="refund", amount=100, order_id=ObjectId())
    assert not tx.is_debit and tx.signed_amount == 100


def test_debit_types_are_signed_negative():
    tx = build_transaction(type="withdrawal", amount=250, reference="payout-1")
    assert tx.is_debit
    assert tx.signed_amount == -250


@pytest.mark.asyncio
async def test_order_transaction_lookup(db):
    order_id = ObjectId()
    await add_transaction(db, "r1", OWNER_RESTAURANT, type="payment", amount=400, order_id=order_id)
    await add_transaction(db, "r1", OWNER_RESTAURANT, type="payment", amount=900, order_id=ObjectId())

    wallet = await get_wallet(db, "r1", OWNER_RESTAURANT)
    linked = await list_order_transactions(db, "r1", OWNER_RESTAURANT, order_id)

    assert has_order_transaction(wallet, order_id, "payment")
    assert not has_order_transaction(wallet, order_id, "refund")
    assert [t.amount for t in linked] == [400]
