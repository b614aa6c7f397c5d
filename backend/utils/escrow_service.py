import logging
from datetime import datetime

from pymongo import ReturnDocument

from config.constants import (
    ADMIN_WALLET_OWNER_ID,
    EARNING_CREDITED,
    EARNING_FAILED,
    ESCROW_HELD,
    ESCROW_RELEASED,
    OWNER_ADMIN,
    OWNER_DELIVERY,
    OWNER_RESTAURANT,
    SETTLEMENT_COMPLETED,
    SETTLEMENT_PENDING,
    TX_COMMISSION,
    TX_DELIVERY_FEE,
    TX_GST,
    TX_PAYMENT,
    TX_PLATFORM_FEE,
)
from models.settlement import ReleaseResult, Settlement
from utils.audit import log_audit
from utils.errors import (
    DuplicateOperationError,
    InvalidEscrowStateError,
    ValidationError,
)
from utils.guards import parse_object_id
from utils.order_timeline import EVENT_ESCROW_HELD, EVENT_ESCROW_RELEASED, record_order_event
from utils.settlement_service import find_or_create_settlement, get_settlement
from utils.wallet_service import add_transaction

logger = logging.getLogger(__name__)

PARTY_RESTAURANT = "restaurant"
PARTY_DELIVERY_PARTNER = "delivery_partner"
PARTY_ADMIN = "admin"

# party -> settlement field holding its earning
PARTY_EARNING_FIELDS = {
    PARTY_RESTAURANT: "restaurant_earning",
    PARTY_DELIVERY_PARTNER: "delivery_partner_earning",
    PARTY_ADMIN: "admin_earning",
}


# ==============================
# Hold
# ==============================

async def hold_escrow(db, order_id, user_id, amount: int) -> Settlement:
    settlement = await find_or_create_settlement(db, order_id)

    if amount != settlement.user_payment.total:
        raise ValidationError(
            "Escrow amount must equal the order total",
            amount=amount,
            total=settlement.user_payment.total,
        )
    if settlement.user_id and str(user_id) != settlement.user_id:
        raise ValidationError("User does not match order", order_id=str(settlement.order_id))

    now = datetime.utcnow()
    doc = await db.order_settlements.find_one_and_update(
        {
            "order_id": settlement.order_id,
            "escrow_status": None,
            "settlement_status": SETTLEMENT_PENDING,
        },
        {"$set": {
            "escrow_status": ESCROW_HELD,
            "escrow_amount": amount,
            "escrow_held_at": now,
            "updated_at": now,
        }},
        return_document=ReturnDocument.AFTER,
    )

    if doc is None:
        current = await get_settlement(db, settlement.order_id)
        if current.escrow_status == ESCROW_HELD:
            raise DuplicateOperationError("Escrow already held", order_id=str(current.order_id))
        raise InvalidEscrowStateError(
            f"Cannot hold escrow in state {current.escrow_status or current.settlement_status}",
            order_id=str(current.order_id),
            escrow_status=current.escrow_status,
        )

    logger.info("ESCROW_HELD order=%s amount=%s", settlement.order_id, amount)
    held = Settlement.from_doc(doc)

    await record_order_event(
        db,
        {"_id": held.order_id, "order_number": held.order_number},
        EVENT_ESCROW_HELD,
        actor_role="user",
        actor_id=user_id,
        metadata={"amount": amount},
    )
    await log_audit(
        db,
        entity_type="settlement",
        entity_id=held.id,
        action="hold_escrow",
        action_type="escrow",
        performed_by={"type": "user", "id": str(user_id), "name": None},
        transaction_details={"amount": amount, "order_id": str(held.order_id)},
        description=f"Escrow held for order {held.order_number}",
    )
    return held


# ==============================
# Credits
# ==============================

def _party_credits(settlement: Settlement) -> dict:
    """party -> (owner_id, owner_type, [(tx_type, amount, description), ...]) for everything owed."""
    order_id = settlement.order_id
    credits = {}

    restaurant = settlement.restaurant_earning
    if settlement.restaurant_id and restaurant.net_earning > 0:
        credits[PARTY_RESTAURANT] = (
            settlement.restaurant_id,
            OWNER_RESTAURANT,
            [(TX_PAYMENT, restaurant.net_earning, f"Earning for order {settlement.order_number}")],
        )

    partner = settlement.delivery_partner_earning
    if settlement.delivery_partner_id and partner.total_earning > 0:
        credits[PARTY_DELIVERY_PARTNER] = (
            settlement.delivery_partner_id,
            OWNER_DELIVERY,
            [(TX_PAYMENT, partner.total_earning, f"Delivery earning for order {settlement.order_number}")],
        )

    admin = settlement.admin_earning
    admin_lines = [
        (tx_type, amount, f"{tx_type.replace('_', ' ').title()} from order {settlement.order_number}")
        for tx_type, amount in (
            (TX_COMMISSION, admin.commission),
            (TX_PLATFORM_FEE, admin.platform_fee),
            (TX_DELIVERY_FEE, admin.delivery_fee),
            (TX_GST, admin.gst),
        )
        if amount > 0
    ]
    if admin_lines:
        credits[PARTY_ADMIN] = (ADMIN_WALLET_OWNER_ID, OWNER_ADMIN, admin_lines)

    logger.debug("SETTLEMENT_CREDITS order=%s parties=%s", order_id, list(credits))
    return credits


async def _credit_party(db, settlement: Settlement, party: str, owner_id, owner_type: str, lines) -> None:
    for tx_type, amount, description in lines:
        data = {
            "type": tx_type,
            "amount": amount,
            "order_id": settlement.order_id,
            "description": description,
            "idempotency_key": f"{tx_type}:{party}:{settlement.order_id}",
        }
        if tx_type == TX_COMMISSION and settlement.restaurant_id:
            data["restaurant_id"] = parse_object_id(settlement.restaurant_id, "restaurant_id")
        await add_transaction(db, owner_id, owner_type, **data)


async def _credit_parties(db, settlement: Settlement, only: set | None = None) -> ReleaseResult:
    """
    Credit each party independently. One party failing never blocks the
    others; its earning is marked failed and the error kept for a retry.
    """
    result = ReleaseResult()

    for party, (owner_id, owner_type, lines) in _party_credits(settlement).items():
        if only is not None and party not in only:
            continue

        field = PARTY_EARNING_FIELDS[party]
        try:
            await _credit_party(db, settlement, party, owner_id, owner_type, lines)
        except Exception as e:
            logger.exception("SETTLEMENT_CREDIT_FAILED order=%s party=%s", settlement.order_id, party)
            await db.order_settlements.update_one(
                {"_id": settlement.id},
                {"$set": {
                    f"{field}.status": EARNING_FAILED,
                    f"party_errors.{party}": str(e),
                    "updated_at": datetime.utcnow(),
                }},
            )
            result.failed[party] = str(e)
            continue

        now = datetime.utcnow()
        await db.order_settlements.update_one(
            {"_id": settlement.id},
            {
                "$set": {
                    f"{field}.status": EARNING_CREDITED,
                    f"{field}.credited_at": now,
                    "updated_at": now,
                },
                "$unset": {f"party_errors.{party}": ""},
            },
        )
        result.credited.append(party)

    return result


# ==============================
# Release
# ==============================

async def release_escrow(db, order_id) -> ReleaseResult:
    order_oid = (await get_settlement(db, order_id)).order_id
    now = datetime.utcnow()

    doc = await db.order_settlements.find_one_and_update(
        {
            "order_id": order_oid,
            "escrow_status": ESCROW_HELD,
            "settlement_status": SETTLEMENT_PENDING,
        },
        {"$set": {
            "escrow_status": ESCROW_RELEASED,
            "escrow_released_at": now,
            "updated_at": now,
        }},
        return_document=ReturnDocument.AFTER,
    )
    if doc is None:
        current = await get_settlement(db, order_oid)
        raise InvalidEscrowStateError(
            "Escrow is not held",
            order_id=str(order_oid),
            escrow_status=current.escrow_status,
            settlement_status=current.settlement_status,
        )

    settlement = Settlement.from_doc(doc)
    result = await _credit_parties(db, settlement)

    await db.order_settlements.update_one(
        {"_id": settlement.id},
        {"$set": {"settlement_status": SETTLEMENT_COMPLETED, "updated_at": datetime.utcnow()}},
    )
    logger.info(
        "ESCROW_RELEASED order=%s credited=%s failed=%s",
        order_oid, result.credited, list(result.failed),
    )

    await record_order_event(
        db,
        {"_id": settlement.order_id, "order_number": settlement.order_number},
        EVENT_ESCROW_RELEASED,
        metadata=result.model_dump(),
    )
    await log_audit(
        db,
        entity_type="settlement",
        entity_id=settlement.id,
        action="release_escrow",
        action_type="escrow",
        transaction_details={
            "order_id": str(settlement.order_id),
            "restaurant": settlement.restaurant_earning.net_earning,
            "delivery_partner": settlement.delivery_partner_earning.total_earning,
            "admin": settlement.admin_earning.total_earning,
        },
        description=f"Escrow released for order {settlement.order_number}",
        status="success" if not result.failed else "partial",
    )
    return result


async def retry_failed_credits(db, order_id) -> ReleaseResult:
    settlement = await get_settlement(db, order_id)
    if settlement.escrow_status != ESCROW_RELEASED:
        raise InvalidEscrowStateError(
            "Only released settlements can retry credits",
            order_id=str(settlement.order_id),
            escrow_status=settlement.escrow_status,
        )

    failed = {
        party
        for party, field in PARTY_EARNING_FIELDS.items()
        if getattr(settlement, field).status == EARNING_FAILED
    }
    if not failed:
        return ReleaseResult()

    logger.info("SETTLEMENT_RETRY order=%s parties=%s", settlement.order_id, sorted(failed))
    return await _credit_parties(db, settlement, only=failed)
