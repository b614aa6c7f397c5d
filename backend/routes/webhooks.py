import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from database import get_db
from utils.cancellation_service import mark_refund_failed, mark_refund_processed
from utils.errors import NotFoundError
from utils.razorpay import verify_webhook_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

REFUND_EVENTS = {"refund.processed", "refund.failed"}


@router.post("/razorpay")
async def razorpay_webhook(request: Request, db=Depends(get_db)):
    """
    Razorpay refund webhook.

    Moves an initiated refund to processed or failed. Replays are answered
    as duplicates by the settlement layer, so retries are safe.
    """
    signature = request.headers.get("X-Razorpay-Signature")
    if not signature:
        raise HTTPException(401, "Missing Razorpay signature")

    raw_body = await request.body()
    if not verify_webhook_signature(raw_body=raw_body, received_signature=signature):
        raise HTTPException(401, "Invalid Razorpay signature")

    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except ValueError:
        raise HTTPException(400, "Invalid JSON payload")

    event = payload.get("event")
    refund_entity = (
        payload.get("payload", {})
        .get("refund", {})
        .get("entity", {})
    )
    refund_id = refund_entity.get("id")

    if event not in REFUND_EVENTS or not refund_id:
        return {"ok": True, "ignored": True, "event": event}

    try:
        if event == "refund.processed":
            await mark_refund_processed(db, refund_id)
        else:
            reason = refund_entity.get("error_description") or refund_entity.get("status") or "refund failed"
            await mark_refund_failed(db, refund_id, reason)
    except NotFoundError:
        logger.warning("RAZORPAY_REFUND_WEBHOOK_UNKNOWN refund=%s", refund_id)
        return {"ok": True, "ignored": True, "event": event}

    logger.info("RAZORPAY_REFUND_WEBHOOK event=%s refund=%s", event, refund_id)
    return {"ok": True, "event": event}
