import logging
from datetime import datetime

from bson import ObjectId
from pymongo import ReturnDocument

from config.constants import (
    TX_ADDITION,
    TX_BONUS,
    TX_CANCELLED,
    TX_COMPLETED,
    TX_DEDUCTION,
    TX_FAILED,
    TX_PENDING,
    TX_REFUND,
    TX_WITHDRAWAL,
    WALLET_OWNER_TYPES,
)
from models.wallet import Transaction, Wallet, build_transaction
from utils.errors import (
    ConcurrentModificationError,
    InsufficientBalanceError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

MAX_STATUS_UPDATE_RETRIES = 5

# status -> allowed next statuses
ALLOWED_STATUS_TRANSITIONS = {
    TX_PENDING: {TX_COMPLETED, TX_FAILED, TX_CANCELLED},
    TX_COMPLETED: {TX_FAILED, TX_CANCELLED},
}


# ==============================
# Wallet lookup (find or create)
# ==============================

def _owner_filter(owner_id, owner_type: str) -> dict:
    if owner_type not in WALLET_OWNER_TYPES:
        raise ValidationError(f"Unknown wallet owner type: {owner_type}")
    return {"owner_id": str(owner_id), "owner_type": owner_type}


async def find_or_create_wallet(db, owner_id, owner_type: str) -> Wallet:
    now = datetime.utcnow()
    doc = await db.wallets.find_one_and_update(
        _owner_filter(owner_id, owner_type),
        {
            "$setOnInsert": {
                "balance": 0,
                "total_added": 0,
                "total_spent": 0,
                "total_refunded": 0,
                "totals": {},
                "transactions": [],
                "last_transaction_at": None,
                "version": 0,
                "created_at": now,
                "updated_at": now,
            }
        },
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return Wallet.from_doc(doc)


async def get_wallet(db, owner_id, owner_type: str) -> Wallet:
    doc = await db.wallets.find_one(_owner_filter(owner_id, owner_type))
    if not doc:
        raise NotFoundError("Wallet not found")
    return Wallet.from_doc(doc)


# ==============================
# Balance arithmetic
# ==============================

def _totals_inc(tx: Transaction, sign: int) -> dict:
    """$inc document for running totals touched by a completed transaction."""
    amount = tx.amount * sign
    inc = {f"totals.{tx.type}": amount}

    if tx.type in (TX_ADDITION, TX_BONUS):
        inc["total_added"] = amount
    elif tx.type in (TX_DEDUCTION, TX_WITHDRAWAL):
        inc["total_spent"] = amount
    elif tx.type == TX_REFUND:
        inc["total_refunded"] = amount

    return inc


def recompute_balance(wallet: Wallet) -> int:
    return sum(t.signed_amount for t in wallet.transactions if t.status == TX_COMPLETED)


def has_order_transaction(wallet: Wallet, order_id, tx_type: str) -> bool:
    order_id = ObjectId(order_id)
    return any(
        t.type == tx_type and getattr(t, "order_id", None) == order_id
        for t in wallet.transactions
    )


# ==============================
# Core: append transaction
# ==============================

async def add_transaction(db, owner_id, owner_type: str, tx=None, **data) -> tuple[Transaction, bool]:
    """
    Append a transaction to a wallet in a single atomic document update.

    Returns (transaction, applied). `applied` is False when a transaction
    with the same idempotency key already exists on the wallet; in that
    case the existing transaction is returned and nothing changes.
    """
    if tx is None:
        tx = build_transaction(**data)

    await find_or_create_wallet(db, owner_id, owner_type)

    now = datetime.utcnow()
    if tx.status == TX_COMPLETED and tx.processed_at is None:
        tx.processed_at = now

    query = _owner_filter(owner_id, owner_type)
    if tx.idempotency_key:
        query["transactions.idempotency_key"] = {"$ne": tx.idempotency_key}

    update = {
        "$push": {"transactions": tx.to_doc()},
        "$set": {"last_transaction_at": now, "updated_at": now},
        "$inc": {"version": 1},
    }

    if tx.status == TX_COMPLETED:
        if tx.is_debit:
            query["balance"] = {"$gte": tx.amount}
        update["$inc"]["balance"] = tx.signed_amount
        update["$inc"].update(_totals_inc(tx, 1))

    result = await db.wallets.update_one(query, update)
    if result.modified_count == 1:
        logger.info(
            "WALLET_TX owner=%s:%s type=%s amount=%s status=%s",
            owner_type, owner_id, tx.type, tx.amount, tx.status,
        )
        return tx, True

    wallet = await get_wallet(db, owner_id, owner_type)
    if tx.idempotency_key:
        existing = wallet.find_by_key(tx.idempotency_key)
        if existing is not None:
            logger.info(
                "WALLET_TX_DUPLICATE owner=%s:%s key=%s",
                owner_type, owner_id, tx.idempotency_key,
            )
            return existing, False

    if tx.is_debit and tx.status == TX_COMPLETED:
        raise InsufficientBalanceError(
            "Insufficient wallet balance",
            balance=wallet.balance,
            amount=tx.amount,
        )

    raise ConcurrentModificationError("Wallet transaction could not be applied")


# ==============================
# Status transitions
# ==============================

async def update_transaction_status(db, owner_id, owner_type: str, tx_id, new_status: str) -> Transaction:
    """
    Move a transaction to a new status and apply or reverse its balance delta.

    Pending -> Completed applies the delta; Completed -> Failed/Cancelled
    reverses it, clamped at zero. Uses the wallet `version` for optimistic
    concurrency so concurrent writers never lose an update.
    """
    tx_id = ObjectId(tx_id)

    for _ in range(MAX_STATUS_UPDATE_RETRIES):
        wallet = await get_wallet(db, owner_id, owner_type)
        tx = wallet.find_transaction(tx_id)
        if tx is None:
            raise NotFoundError("Transaction not found")

        if new_status == tx.status:
            return tx

        allowed = ALLOWED_STATUS_TRANSITIONS.get(tx.status, set())
        if new_status not in allowed:
            raise ValidationError(f"Cannot move transaction from {tx.status} to {new_status}")

        now = datetime.utcnow()
        new_balance = wallet.balance
        inc = {"version": 1}

        if tx.status == TX_PENDING and new_status == TX_COMPLETED:
            new_balance = wallet.balance + tx.signed_amount
            if new_balance < 0:
                raise InsufficientBalanceError(
                    "Insufficient wallet balance",
                    balance=wallet.balance,
                    amount=tx.amount,
                )
            inc.update(_totals_inc(tx, 1))
        elif tx.status == TX_COMPLETED:
            new_balance = max(wallet.balance - tx.signed_amount, 0)
            inc.update(_totals_inc(tx, -1))

        result = await db.wallets.update_one(
            {
                "_id": wallet.id,
                "version": wallet.version,
                "transactions._id": tx_id,
            },
            {
                "$set": {
                    "balance": new_balance,
                    "transactions.$.status": new_status,
                    "transactions.$.processed_at": now,
                    "updated_at": now,
                },
                "$inc": inc,
            },
        )
        if result.modified_count == 1:
            logger.info(
                "WALLET_TX_STATUS owner=%s:%s tx=%s %s->%s",
                owner_type, owner_id, tx_id, tx.status, new_status,
            )
            tx.status = new_status
            tx.processed_at = now
            return tx

    raise ConcurrentModificationError("Wallet changed concurrently, retry later")


async def list_order_transactions(db, owner_id, owner_type: str, order_id) -> list:
    wallet = await find_or_create_wallet(db, owner_id, owner_type)
    order_id = ObjectId(order_id)
    return [t for t in wallet.transactions if getattr(t, "order_id", None) == order_id]
