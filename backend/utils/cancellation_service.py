import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from pymongo import ReturnDocument

from config.constants import (
    ADMIN_EARNING_TX_TYPES,
    ADMIN_REVERSAL_STAGES,
    ADMIN_WALLET_OWNER_ID,
    EARNING_CANCELLED,
    ESCROW_HELD,
    ESCROW_REFUNDED,
    ESCROW_RELEASED,
    ONLINE_PAYMENT_METHODS,
    ORDER_CANCELLED,
    OWNER_ADMIN,
    OWNER_RESTAURANT,
    OWNER_USER,
    PAYMENT_WALLET,
    REFUND_FAILED,
    REFUND_INITIATED,
    REFUND_PENDING,
    REFUND_PROCESSED,
    SETTLEMENT_CANCELLED,
    SETTLEMENT_PENDING,
    TX_COMPLETED,
    TX_DEDUCTION,
    TX_PAYMENT,
    TX_REFUND,
)
from models.settlement import CancellationDetails, RefundQuote, ReleaseResult, Settlement
from utils import razorpay
from utils.audit import log_audit
from utils.errors import (
    ConcurrentModificationError,
    DuplicateOperationError,
    ExternalGatewayError,
    InvalidEscrowStateError,
    InvalidOrderStateError,
    InvalidSettlementStateError,
    NotFoundError,
    ValidationError,
)
from utils.guards import load_order
from utils.money import format_inr
from utils.order_timeline import (
    EVENT_REFUND_CALCULATED,
    EVENT_REFUND_FAILED,
    EVENT_REFUND_INITIATED,
    EVENT_REFUND_PROCESSED,
    record_order_event,
)
from utils.refund_policy import compute_refund, determine_cancellation_stage
from utils.settlement_service import find_or_create_settlement, get_settlement
from utils.wallet_service import add_transaction, list_order_transactions

logger = logging.getLogger(__name__)

# refund may be (re)claimed from these states; a failed gateway call can be retried
CLAIMABLE_REFUND_STATUSES = [REFUND_PENDING, REFUND_FAILED]

CANCEL_ATTEMPTS = 3

# cancellation credits other than the customer refund, tracked in party_errors
PARTY_RESTAURANT_COMPENSATION = "restaurant_compensation"
PARTY_ADMIN_REVERSAL = "admin_reversal"


def _admin_actor(admin_id) -> dict:
    if admin_id:
        return {"type": "admin", "id": str(admin_id), "name": None}
    return {"type": "system", "id": None, "name": "system"}


# ==============================
# Calculation (no money moves)
# ==============================

async def calculate_cancellation_refund(db, order_id, reason: Optional[str] = None) -> CancellationDetails:
    """
    Record the cancellation split for a cancelled order.

    Moves the settlement pending -> cancelled in one update guarded on the
    escrow state that was read. Only a held escrow has money to split and
    moves to refunded; an escrow that was never held records a zero split.
    Calling it again returns what was recorded first.
    """
    order = await load_order(db, order_id)
    if order.get("status") != ORDER_CANCELLED:
        raise InvalidOrderStateError("Order is not cancelled", order_id=str(order["_id"]), status=order.get("status"))

    stage = determine_cancellation_stage(order.get("tracking"))

    for _ in range(CANCEL_ATTEMPTS):
        settlement = await find_or_create_settlement(db, order["_id"])
        if settlement.settlement_status == SETTLEMENT_CANCELLED:
            return settlement.cancellation_details
        if settlement.escrow_status == ESCROW_RELEASED or settlement.settlement_status != SETTLEMENT_PENDING:
            raise InvalidEscrowStateError(
                "Escrow already released; order can no longer be refunded",
                order_id=str(order["_id"]),
                escrow_status=settlement.escrow_status,
            )

        collected = settlement.escrow_amount if settlement.escrow_status == ESCROW_HELD else 0
        if collected:
            quote = compute_refund(stage, settlement.user_payment, settlement.restaurant_earning.net_earning)
        else:
            quote = RefundQuote(stage=stage, refund_amount=0, restaurant_compensation=0, retained_amount=0)

        now = datetime.utcnow()
        details = CancellationDetails(
            cancelled=True,
            cancelled_at=now,
            cancellation_stage=quote.stage,
            reason=reason or order.get("cancellation_reason"),
            amount_collected=collected,
            refund_amount=quote.refund_amount,
            restaurant_compensation=quote.restaurant_compensation,
            retained_amount=quote.retained_amount,
            refund_status=REFUND_PENDING,
        )

        doc = await db.order_settlements.find_one_and_update(
            {
                "order_id": order["_id"],
                "settlement_status": SETTLEMENT_PENDING,
                "escrow_status": settlement.escrow_status,
            },
            {"$set": {
                "settlement_status": SETTLEMENT_CANCELLED,
                "escrow_status": ESCROW_REFUNDED if collected else settlement.escrow_status,
                "restaurant_earning.status": EARNING_CANCELLED,
                "delivery_partner_earning.status": EARNING_CANCELLED,
                "admin_earning.status": EARNING_CANCELLED,
                "cancellation_details": details.model_dump(),
                "updated_at": now,
            }},
            return_document=ReturnDocument.AFTER,
        )
        if doc is not None:
            break
        # escrow moved (held or released) since the read; decide again on the fresh state
    else:
        raise ConcurrentModificationError("Settlement changed concurrently, retry later", order_id=str(order["_id"]))

    logger.info(
        "CANCELLATION_CALCULATED order=%s stage=%s collected=%s refund=%s compensation=%s retained=%s",
        order["_id"], quote.stage, collected, quote.refund_amount, quote.restaurant_compensation, quote.retained_amount,
    )

    await record_order_event(db, order, EVENT_REFUND_CALCULATED, metadata=quote.model_dump())
    await log_audit(
        db,
        entity_type="settlement",
        entity_id=doc["_id"],
        action="calculate_cancellation_refund",
        action_type="refund",
        changes={"after": {"settlement_status": SETTLEMENT_CANCELLED, "escrow_status": doc.get("escrow_status")}},
        transaction_details=quote.model_dump(),
        description=f"Cancellation refund calculated for order {order.get('order_number')}",
    )
    return details


# ==============================
# Shared money movements
# ==============================

async def _credit_customer_refund(db, settlement: Settlement, amount: int, order_number) -> bool:
    if amount <= 0 or not settlement.user_id:
        return False
    _, applied = await add_transaction(
        db,
        settlement.user_id,
        OWNER_USER,
        type=TX_REFUND,
        amount=amount,
        order_id=settlement.order_id,
        description=f"Refund of {format_inr(amount)} for cancelled order {order_number}",
        idempotency_key=f"refund:{settlement.order_id}",
    )
    if not applied:
        logger.info("REFUND_ALREADY_CREDITED order=%s", settlement.order_id)
    return applied


async def _compensate_restaurant(db, settlement: Settlement, amount: int) -> None:
    if amount <= 0 or not settlement.restaurant_id:
        return
    await add_transaction(
        db,
        settlement.restaurant_id,
        OWNER_RESTAURANT,
        type=TX_PAYMENT,
        amount=amount,
        order_id=settlement.order_id,
        description=f"Cancellation compensation for order {settlement.order_number}",
        idempotency_key=f"compensation:restaurant:{settlement.order_id}",
    )


async def _reverse_admin_credits(db, settlement: Settlement) -> int:
    """Deduct every admin earning already posted for the order. Returns the total reversed."""
    posted = await list_order_transactions(db, ADMIN_WALLET_OWNER_ID, OWNER_ADMIN, settlement.order_id)
    reversed_total = 0

    for tx in posted:
        if tx.type not in ADMIN_EARNING_TX_TYPES or tx.status != TX_COMPLETED:
            continue

        _, applied = await add_transaction(
            db,
            ADMIN_WALLET_OWNER_ID,
            OWNER_ADMIN,
            type=TX_DEDUCTION,
            amount=tx.amount,
            order_id=settlement.order_id,
            description=f"Reversal of {tx.type} for cancelled order {settlement.order_number}",
            idempotency_key=f"reversal:{tx.id}",
        )
        if applied:
            reversed_total += tx.amount

    if reversed_total:
        logger.info("ADMIN_CREDITS_REVERSED order=%s amount=%s", settlement.order_id, reversed_total)
    return reversed_total


def _other_party_steps(db, settlement: Settlement, details: CancellationDetails) -> dict:
    steps = {
        PARTY_RESTAURANT_COMPENSATION: lambda: _compensate_restaurant(db, settlement, details.restaurant_compensation),
    }
    if details.cancellation_stage in ADMIN_REVERSAL_STAGES:
        steps[PARTY_ADMIN_REVERSAL] = lambda: _reverse_admin_credits(db, settlement)
    return steps


async def _settle_other_parties(
    db,
    settlement: Settlement,
    details: CancellationDetails,
    only: set | None = None,
) -> ReleaseResult:
    """
    Restaurant compensation and admin reversals, each attempted on its own.
    A failure is kept in party_errors and never undoes the customer refund;
    retry_cancellation_credits picks it up later.
    """
    result = ReleaseResult()

    for party, step in _other_party_steps(db, settlement, details).items():
        if only is not None and party not in only:
            continue

        try:
            await step()
        except Exception as e:
            logger.exception("CANCELLATION_CREDIT_FAILED order=%s party=%s", settlement.order_id, party)
            await db.order_settlements.update_one(
                {"_id": settlement.id},
                {"$set": {f"party_errors.{party}": str(e), "updated_at": datetime.utcnow()}},
            )
            result.failed[party] = str(e)
            continue

        await db.order_settlements.update_one(
            {"_id": settlement.id},
            {"$unset": {f"party_errors.{party}": ""}, "$set": {"updated_at": datetime.utcnow()}},
        )
        result.credited.append(party)

    return result


async def _claim_refund(db, settlement: Settlement, admin_id, extra: dict | None = None) -> Settlement:
    now = datetime.utcnow()
    updates = {
        "cancellation_details.refund_status": REFUND_INITIATED,
        "cancellation_details.refund_initiated_at": now,
        "cancellation_details.refund_initiated_by": str(admin_id) if admin_id else None,
        "cancellation_details.refund_failure_reason": None,
        "updated_at": now,
    }
    updates.update(extra or {})

    doc = await db.order_settlements.find_one_and_update(
        {
            "_id": settlement.id,
            "settlement_status": SETTLEMENT_CANCELLED,
            "cancellation_details.refund_status": {"$in": CLAIMABLE_REFUND_STATUSES},
        },
        {"$set": updates},
        return_document=ReturnDocument.AFTER,
    )
    if doc is None:
        raise DuplicateOperationError("Refund already processed", order_id=str(settlement.order_id))
    return Settlement.from_doc(doc)


async def _mark_processed(db, settlement: Settlement, admin_id) -> None:
    now = datetime.utcnow()
    await db.order_settlements.update_one(
        {"_id": settlement.id},
        {"$set": {
            "cancellation_details.refund_status": REFUND_PROCESSED,
            "cancellation_details.refund_processed_at": now,
            "cancellation_details.refund_processed_by": str(admin_id) if admin_id else None,
            "updated_at": now,
        }},
    )


async def _mark_failed(db, settlement: Settlement, reason: str) -> None:
    await db.order_settlements.update_one(
        {"_id": settlement.id},
        {"$set": {
            "cancellation_details.refund_status": REFUND_FAILED,
            "cancellation_details.refund_failure_reason": reason,
            "updated_at": datetime.utcnow(),
        }},
    )


# ==============================
# Processing
# ==============================

async def process_cancellation_refund(db, order_id, reason: Optional[str] = None, admin_id=None) -> CancellationDetails:
    """
    Calculate (or reuse) the cancellation split and move the money: customer
    refund to wallet, restaurant compensation, admin reversals. An escrow that
    was never held (COD, unpaid) has a zero split, so nothing is credited.
    """
    await calculate_cancellation_refund(db, order_id, reason)
    order = await load_order(db, order_id)
    settlement = await _claim_refund(db, await get_settlement(db, order["_id"]), admin_id)
    details = settlement.cancellation_details

    await record_order_event(db, order, EVENT_REFUND_INITIATED, actor_role="admin" if admin_id else "system", actor_id=admin_id)

    try:
        await _credit_customer_refund(db, settlement, details.refund_amount, order.get("order_number"))
    except Exception as e:
        await _mark_failed(db, settlement, str(e))
        logger.exception("CANCELLATION_REFUND_FAILED order=%s", order["_id"])
        raise

    await _mark_processed(db, settlement, admin_id)
    others = await _settle_other_parties(db, settlement, details)
    await record_order_event(db, order, EVENT_REFUND_PROCESSED, metadata={"refund_amount": details.refund_amount})
    await log_audit(
        db,
        entity_type="refund",
        entity_id=settlement.id,
        action="process_cancellation_refund",
        action_type="refund",
        performed_by=_admin_actor(admin_id),
        transaction_details={
            "order_id": str(order["_id"]),
            "refund_amount": details.refund_amount,
            "restaurant_compensation": details.restaurant_compensation,
            "stage": details.cancellation_stage,
        },
        description=f"Cancellation refund processed for order {order.get('order_number')}",
        status="success" if not others.failed else "partial",
    )
    return (await get_settlement(db, order["_id"])).cancellation_details


async def process_razorpay_refund(
    db,
    order_id,
    admin_id=None,
    gateway: Callable[..., dict] = razorpay.create_refund,
) -> CancellationDetails:
    order = await load_order(db, order_id)
    payment = order.get("payment") or {}

    if payment.get("method") not in ONLINE_PAYMENT_METHODS:
        raise ValidationError("Order was not paid online", payment_method=payment.get("method"))
    payment_id = payment.get("razorpay_payment_id")
    if not payment_id:
        raise ValidationError("Razorpay payment id not found for order")

    settlement = await find_or_create_settlement(db, order["_id"])
    if settlement.settlement_status != SETTLEMENT_CANCELLED:
        await calculate_cancellation_refund(db, order["_id"], order.get("cancellation_reason"))
        settlement = await get_settlement(db, order["_id"])

    details = settlement.cancellation_details
    if details.refund_status in (REFUND_INITIATED, REFUND_PROCESSED):
        raise DuplicateOperationError("Refund already processed", order_id=str(order["_id"]))
    if details.refund_amount <= 0:
        raise ValidationError("Invalid refund amount", refund_amount=details.refund_amount)

    # initiated is recorded before the gateway call so a concurrent caller cannot refund twice
    settlement = await _claim_refund(db, settlement, admin_id)
    await record_order_event(db, order, EVENT_REFUND_INITIATED, actor_role="admin" if admin_id else "system", actor_id=admin_id)

    notes = {"order_id": str(order["_id"]), "order_number": order.get("order_number") or ""}
    try:
        refund = await asyncio.to_thread(gateway, payment_id, details.refund_amount, notes)
    except Exception as e:
        reason = e.message if isinstance(e, ExternalGatewayError) else str(e)
        await _mark_failed(db, settlement, reason)
        await record_order_event(db, order, EVENT_REFUND_FAILED, metadata={"reason": reason})
        await log_audit(
            db,
            entity_type="refund",
            entity_id=settlement.id,
            action="process_razorpay_refund",
            action_type="refund",
            performed_by=_admin_actor(admin_id),
            transaction_details={"order_id": str(order["_id"]), "refund_amount": details.refund_amount},
            description=f"Razorpay refund failed: {reason}",
            status="failed",
        )
        logger.exception("RAZORPAY_REFUND_FAILED order=%s", order["_id"])
        if isinstance(e, ExternalGatewayError):
            raise
        raise ExternalGatewayError(f"Razorpay refund failed: {reason}", order_id=str(order["_id"]))

    refund_id = refund.get("id")
    await db.order_settlements.update_one(
        {"_id": settlement.id},
        {"$set": {"cancellation_details.refund_id": refund_id, "updated_at": datetime.utcnow()}},
    )
    logger.info("RAZORPAY_REFUND_CREATED order=%s refund=%s amount=%s", order["_id"], refund_id, details.refund_amount)

    others = await _settle_other_parties(db, settlement, details)
    await log_audit(
        db,
        entity_type="refund",
        entity_id=settlement.id,
        action="process_razorpay_refund",
        action_type="refund",
        performed_by=_admin_actor(admin_id),
        transaction_details={
            "order_id": str(order["_id"]),
            "refund_id": refund_id,
            "refund_amount": details.refund_amount,
        },
        description=f"Razorpay refund initiated for order {order.get('order_number')}",
        status="success" if not others.failed else "partial",
    )
    return (await get_settlement(db, order["_id"])).cancellation_details


async def process_wallet_refund(db, order_id, admin_id=None, refund_amount: Optional[int] = None) -> CancellationDetails:
    order = await load_order(db, order_id)
    payment = order.get("payment") or {}
    if payment.get("method") != PAYMENT_WALLET:
        raise ValidationError("Order was not paid with wallet", payment_method=payment.get("method"))

    settlement = await find_or_create_settlement(db, order["_id"])
    if settlement.settlement_status != SETTLEMENT_CANCELLED:
        await calculate_cancellation_refund(db, order["_id"], order.get("cancellation_reason"))
        settlement = await get_settlement(db, order["_id"])

    details = settlement.cancellation_details
    if details.refund_status in (REFUND_INITIATED, REFUND_PROCESSED):
        raise DuplicateOperationError("Refund already processed", order_id=str(order["_id"]))

    # bounded by what the escrow actually collected; nothing when it was never held
    collected = details.amount_collected
    amount = refund_amount if refund_amount is not None else (details.refund_amount or collected)
    if amount <= 0 or amount > collected:
        raise ValidationError("Invalid refund amount", refund_amount=amount, amount_collected=collected)

    retained = collected - amount - details.restaurant_compensation
    if retained < 0:
        raise ValidationError(
            "Refund and compensation exceed amount paid",
            refund_amount=amount,
            restaurant_compensation=details.restaurant_compensation,
        )

    settlement = await _claim_refund(db, settlement, admin_id, {
        "cancellation_details.refund_amount": amount,
        "cancellation_details.retained_amount": retained,
    })
    details = settlement.cancellation_details

    try:
        await _credit_customer_refund(db, settlement, amount, order.get("order_number"))
    except Exception as e:
        await _mark_failed(db, settlement, str(e))
        logger.exception("WALLET_REFUND_FAILED order=%s", order["_id"])
        raise

    await _mark_processed(db, settlement, admin_id)
    others = await _settle_other_parties(db, settlement, details)
    await record_order_event(db, order, EVENT_REFUND_PROCESSED, actor_role="admin" if admin_id else "system", actor_id=admin_id, metadata={"refund_amount": amount})
    await log_audit(
        db,
        entity_type="refund",
        entity_id=settlement.id,
        action="process_wallet_refund",
        action_type="refund",
        performed_by=_admin_actor(admin_id),
        transaction_details={"order_id": str(order["_id"]), "refund_amount": amount},
        description=f"Wallet refund processed for order {order.get('order_number')}",
        status="success" if not others.failed else "partial",
    )
    return (await get_settlement(db, order["_id"])).cancellation_details


async def retry_cancellation_credits(db, order_id, admin_id=None) -> ReleaseResult:
    """Re-attempt the restaurant compensation / admin reversal left in party_errors."""
    settlement = await get_settlement(db, order_id)
    details = settlement.cancellation_details
    if settlement.settlement_status != SETTLEMENT_CANCELLED or details.refund_status not in (
        REFUND_INITIATED,
        REFUND_PROCESSED,
    ):
        raise InvalidSettlementStateError(
            "Only cancellations with a claimed refund can retry credits",
            order_id=str(settlement.order_id),
            refund_status=details.refund_status,
        )

    failed = set(settlement.party_errors) & {PARTY_RESTAURANT_COMPENSATION, PARTY_ADMIN_REVERSAL}
    if not failed:
        return ReleaseResult()

    logger.info("CANCELLATION_RETRY order=%s parties=%s", settlement.order_id, sorted(failed))
    result = await _settle_other_parties(db, settlement, details, only=failed)
    await log_audit(
        db,
        entity_type="refund",
        entity_id=settlement.id,
        action="retry_cancellation_credits",
        action_type="refund",
        performed_by=_admin_actor(admin_id),
        transaction_details={"order_id": str(settlement.order_id), **result.model_dump()},
        description=f"Cancellation credits retried for order {settlement.order_number}",
        status="success" if not result.failed else "partial",
    )
    return result


# ==============================
# Gateway webhooks
# ==============================

async def _transition_refund(db, refund_id: str, to_status: str, extra: dict) -> Settlement:
    doc = await db.order_settlements.find_one_and_update(
        {
            "cancellation_details.refund_id": refund_id,
            "cancellation_details.refund_status": REFUND_INITIATED,
        },
        {"$set": {"cancellation_details.refund_status": to_status, "updated_at": datetime.utcnow(), **extra}},
        return_document=ReturnDocument.AFTER,
    )
    if doc is not None:
        logger.info("REFUND_WEBHOOK refund=%s status=%s", refund_id, to_status)
        return Settlement.from_doc(doc)

    current = await db.order_settlements.find_one({"cancellation_details.refund_id": refund_id})
    if not current:
        raise NotFoundError("Refund not found", refund_id=refund_id)
    status = (current.get("cancellation_details") or {}).get("refund_status")
    if status == to_status:
        raise DuplicateOperationError(f"Refund already {to_status}", refund_id=refund_id)
    raise InvalidSettlementStateError(f"Refund is {status}", refund_id=refund_id)


async def mark_refund_processed(db, refund_id: str) -> Settlement:
    settlement = await _transition_refund(db, refund_id, REFUND_PROCESSED, {
        "cancellation_details.refund_processed_at": datetime.utcnow(),
    })
    await record_order_event(
        db,
        {"_id": settlement.order_id, "order_number": settlement.order_number},
        EVENT_REFUND_PROCESSED,
        actor_role="gateway",
        metadata={"refund_id": refund_id},
    )
    return settlement


async def mark_refund_failed(db, refund_id: str, reason: str) -> Settlement:
    settlement = await _transition_refund(db, refund_id, REFUND_FAILED, {
        "cancellation_details.refund_failure_reason": reason,
    })
    await record_order_event(
        db,
        {"_id": settlement.order_id, "order_number": settlement.order_number},
        EVENT_REFUND_FAILED,
        actor_role="gateway",
        metadata={"refund_id": refund_id, "reason": reason},
    )
    return settlement
