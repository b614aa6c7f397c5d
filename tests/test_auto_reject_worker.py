from datetime import datetime, timedelta

import pytest

from config.constants import AUTO_REJECT_REASON
from utils.order_timeline import list_order_events
from utils.settlement_service import get_settlement
from workers import auto_reject_worker
from workers.auto_reject_worker import process_auto_reject_orders


@pytest.mark.asyncio
async def test_stale_unaccepted_order_is_rejected(db, make, stale):
    _, order = await make.priced_order(created_at=stale)
    await make.hold(order)

    result = await process_auto_reject_orders(db)

    updated = await db.orders.find_one({"_id": order["_id"]})
    settlement = await get_settlement(db, order["_id"])
    events = await list_order_events(db, order["_id"])
    notifications = [n async for n in db.outbox.find({"kind": "notify_restaurant"})]

    assert result["processed"] == 1
    assert updated["status"] == "cancelled"
    assert updated["cancellation_reason"] == AUTO_REJECT_REASON
    assert updated["cancelled_by"] == "system"
    assert "refund_calculation_pending" not in updated
    assert settlement.settlement_status == "cancelled"
    assert settlement.cancellation_details.cancellation_stage == "pre_accept"
    assert settlement.cancellation_details.refund_amount == 17500
    assert "ORDER_AUTO_REJECTED" in [e["event"] for e in events]
    assert [n["payload"]["order_id"] for n in notifications] == [str(order["_id"])]


@pytest.mark.asyncio
async def test_recent_and_accepted_orders_are_left_alone(db, make, stale):
    restaurant, recent = await make.priced_order(created_at=datetime.utcnow() - timedelta(seconds=60))
    accepted = await make.order(restaurant, status="preparing", created_at=stale)

    result = await process_auto_reject_orders(db)

    assert result["processed"] == 0
    assert (await db.orders.find_one({"_id": recent["_id"]}))["status"] == "pending"
    assert (await db.orders.find_one({"_id": accepted["_id"]}))["status"] == "preparing"


@pytest.mark.asyncio
async def test_acceptance_during_sweep_wins(db, make, stale, monkeypatch):
    _, order = await make.priced_order(status="confirmed", created_at=stale)
    reject = auto_reject_worker._reject

    async def accepted_first(db, order_id, cutoff, now):
        await db.orders.update_one({"_id": order_id}, {"$set": {"status": "preparing"}})
        return await reject(db, order_id, cutoff, now)

    monkeypatch.setattr(auto_reject_worker, "_reject", accepted_first)
    result = await process_auto_reject_orders(db)

    assert result["processed"] == 0
    assert (await db.orders.find_one({"_id": order["_id"]}))["status"] == "preparing"
    assert await db.order_settlements.count_documents({}) == 0


@pytest.mark.asyncio
async def test_one_failing_order_does_not_stop_the_sweep(db, make, stale):
    unconfigured = await make.restaurant(name="No Commission")
    broken = await make.order(unconfigured, created_at=stale)
    _, healthy = await make.priced_order(created_at=stale)

    result = await process_auto_reject_orders(db)

    assert result["processed"] == 1
    broken_after = await db.orders.find_one({"_id": broken["_id"]})
    assert broken_after["status"] == "cancelled"
    assert broken_after["refund_calculation_pending"] is True
    assert (await get_settlement(db, healthy["_id"])).settlement_status == "cancelled"


@pytest.mark.asyncio
async def test_sweep_uses_supplied_clock(db, make):
    now = datetime.utcnow()
    _, order = await make.priced_order(created_at=now)

    early = await process_auto_reject_orders(db, now=now + timedelta(seconds=200))
    late = await process_auto_reject_orders(db, now=now + timedelta(seconds=241))

    assert early["processed"] == 0
    assert late["processed"] == 1


@pytest.mark.asyncio
async def test_failed_refund_calculation_is_finished_on_next_sweep(db, make, stale):
    restaurant = await make.restaurant(name="Late Config")
    order = await make.order(restaurant, created_at=stale)

    first = await process_auto_reject_orders(db)

    assert first["processed"] == 0
    assert (await db.orders.find_one({"_id": order["_id"]}))["status"] == "cancelled"
    assert await db.order_settlements.count_documents({}) == 0

    await make.commission(restaurant)
    second = await process_auto_reject_orders(db)
    third = await process_auto_reject_orders(db)

    settlement = await get_settlement(db, order["_id"])
    notifications = [n async for n in db.outbox.find({"kind": "notify_restaurant"})]
    assert second["processed"] == 1
    assert third["processed"] == 0
    assert settlement.settlement_status == "cancelled"
    assert settlement.cancellation_details.reason == AUTO_REJECT_REASON
    assert "refund_calculation_pending" not in await db.orders.find_one({"_id": order["_id"]})
    assert len(notifications) == 1


@pytest.mark.asyncio
async def test_rejecting_an_unpaid_order_records_zero_refund(db, make, stale):
    _, order = await make.priced_order(created_at=stale)

    await process_auto_reject_orders(db)

    settlement = await get_settlement(db, order["_id"])
    assert settlement.escrow_status is None
    assert settlement.cancellation_details.amount_collected == 0
    assert settlement.cancellation_details.refund_amount == 0
