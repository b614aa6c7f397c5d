import logging
from datetime import datetime

from utils.errors import AuditWriteError
from utils.outbox import OUTBOX_AUDIT, enqueue

logger = logging.getLogger(__name__)


def build_audit_entry(
    *,
    entity_type: str,
    entity_id,
    action: str,
    action_type: str,
    performed_by: dict | None = None,
    changes: dict | None = None,
    transaction_details: dict | None = None,
    description: str = "",
    status: str = "success",
) -> dict:
    return {
        "entity_type": entity_type,
        "entity_id": entity_id,
        "action": action,
        "action_type": action_type,
        "performed_by": performed_by or {"type": "system", "id": None, "name": "system"},
        "changes": changes or {},
        "transaction_details": transaction_details or {},
        "description": description,
        "status": status,
        "created_at": datetime.utcnow(),
    }


async def log_audit(db, **entry) -> None:
    """
    Record an audit entry through the outbox.

    Audit is best effort for the operation that triggers it: a failed enqueue
    is logged and never undoes a money movement that already happened.
    """
    try:
        await enqueue(db, OUTBOX_AUDIT, build_audit_entry(**entry))
    except Exception:
        logger.exception(
            "%s action=%s entity_type=%s entity=%s",
            AuditWriteError.code,
            entry.get("action"),
            entry.get("entity_type"),
            entry.get("entity_id"),
        )


async def write_audit_entry(db, payload: dict) -> None:
    """Outbox handler: persist an audit entry. Audit logs are insert-only."""
    await db.audit_logs.insert_one(dict(payload))
