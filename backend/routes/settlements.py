from fastapi import APIRouter, Depends

from database import get_db
from models.settlement import AssignDeliveryRequest, HoldEscrowRequest
from utils.escrow_service import hold_escrow, release_escrow, retry_failed_credits
from utils.security import require_admin
from utils.serializers import serialize_doc
from utils.settlement_service import assign_delivery_partner, get_settlement

router = APIRouter(prefix="/settlements", tags=["Settlements"])


# =====================================================
# READ
# =====================================================

@router.get("/{order_id}")
async def settlement_detail(order_id: str, admin=Depends(require_admin), db=Depends(get_db)):
    settlement = await get_settlement(db, order_id)
    return serialize_doc(settlement)


# =====================================================
# ESCROW
# =====================================================

@router.post("/{order_id}/hold")
async def hold(order_id: str, body: HoldEscrowRequest, admin=Depends(require_admin), db=Depends(get_db)):
    settlement = await hold_escrow(db, order_id, body.user_id, body.amount)
    return {
        "ok": True,
        "escrow_status": settlement.escrow_status,
        "escrow_amount": settlement.escrow_amount,
    }


@router.post("/{order_id}/release")
async def release(order_id: str, admin=Depends(require_admin), db=Depends(get_db)):
    result = await release_escrow(db, order_id)
    return {"ok": not result.failed, **result.model_dump()}


@router.post("/{order_id}/retry-credits")
async def retry_credits(order_id: str, admin=Depends(require_admin), db=Depends(get_db)):
    result = await retry_failed_credits(db, order_id)
    return {"ok": not result.failed, **result.model_dump()}


# =====================================================
# DELIVERY PARTNER
# =====================================================

@router.post("/{order_id}/assign-delivery")
async def assign_delivery(
    order_id: str,
    body: AssignDeliveryRequest,
    admin=Depends(require_admin),
    db=Depends(get_db),
):
    settlement = await assign_delivery_partner(
        db,
        order_id,
        body.delivery_partner_id,
        body.distance_km,
        body.surge_multiplier,
    )
    return {
        "ok": True,
        "delivery_partner_earning": serialize_doc(settlement.delivery_partner_earning),
        "admin_earning": serialize_doc(settlement.admin_earning),
    }
