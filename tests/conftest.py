"""Pytest bootstrap configuration.

Environment variables are set before any application module is imported,
because ``config.env`` and ``database`` read them at import time.
"""
import os

os.environ.setdefault("ENV", "test")
os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017/settlement_test")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("RAZORPAY_KEY_ID", "rzp_test_key")
os.environ.setdefault("RAZORPAY_KEY_SECRET", "rzp_test_secret")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "whsec_test")

from datetime import datetime, timedelta

import pytest
from bson import ObjectId
from mongomock_motor import AsyncMongoMockClient

from utils.commission_service import commission_cache, create_restaurant_commission
from utils.escrow_service import hold_escrow

ADMIN_HEADERS = {"X-Admin-Key": "test-admin-key", "X-Admin-Id": "admin-1"}

# paise; total = 15000 - 1000 + 300 + 2000 + 500 + 700
DEFAULT_PRICING = {
    "subtotal": 15000,
    "discount": 1000,
    "delivery_fee": 2000,
    "platform_fee": 500,
    "gst": 700,
    "packaging_fee": 300,
    "total": 17500,
}


def tracking(*steps, at=None):
    at = at or datetime.utcnow()
    return {step: {"status": True, "at": at} for step in steps}


class Factory:
    def __init__(self, db):
        self.db = db
        self._seq = 0

    async def restaurant(self, *, active=True, name="Spice Route"):
        doc = {
            "_id": ObjectId(),
            "name": name,
            "restaurant_code": f"R{ObjectId()}"[:8],
            "is_active": active,
        }
        await self.db.restaurants.insert_one(doc)
        return doc

    async def commission(self, restaurant, *, percent=15, rules=None):
        return await create_restaurant_commission(
            self.db,
            restaurant_id=str(restaurant["_id"]),
            commission_rules=rules or [],
            default_commission={"type": "percentage", "value": percent},
            admin_id="admin-1",
            cache=None,
        )

    async def order(
        self,
        restaurant,
        *,
        status="pending",
        method="razorpay",
        pricing=None,
        steps=(),
        created_at=None,
        user_id=None,
    ):
        self._seq += 1
        payment = {"method": method}
        if method in ("razorpay", "upi", "card"):
            payment["razorpay_payment_id"] = f"pay_test_{self._seq}"

        doc = {
            "_id": ObjectId(),
            "order_number": f"ORD-{self._seq:04d}",
            "user_id": user_id or ObjectId(),
            "restaurant_id": restaurant["_id"],
            "status": status,
            "tracking": tracking(*steps),
            "pricing": dict(pricing or DEFAULT_PRICING),
            "payment": payment,
            "created_at": created_at or datetime.utcnow(),
        }
        await self.db.orders.insert_one(doc)
        return doc

    async def hold(self, order):
        return await hold_escrow(self.db, order["_id"], order["user_id"], order["pricing"]["total"])

    async def cancel(self, order, reason="Customer changed mind"):
        await self.db.orders.update_one(
            {"_id": order["_id"]},
            {"$set": {"status": "cancelled", "cancellation_reason": reason}},
        )

    async def priced_order(self, **kwargs):
        restaurant = await self.restaurant()
        await self.commission(restaurant)
        return restaurant, await self.order(restaurant, **kwargs)


@pytest.fixture
def db():
    commission_cache.clear()
    return AsyncMongoMockClient()["settlement_test"]


@pytest.fixture
def make(db):
    return Factory(db)


@pytest.fixture
def stale():
    return datetime.utcnow() - timedelta(minutes=5)
