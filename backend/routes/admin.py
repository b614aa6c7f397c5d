from fastapi import APIRouter, Depends

from database import get_db
from models.commission import (
    DeliveryCommissionRule,
    RestaurantCommissionCreate,
    RestaurantCommissionUpdate,
)
from models.settlement import CommissionCalculateRequest, RefundRequest, WalletRefundRequest
from utils.cancellation_service import (
    calculate_cancellation_refund,
    process_cancellation_refund,
    process_razorpay_refund,
    process_wallet_refund,
    retry_cancellation_credits,
)
from utils.commission_service import (
    calculate_commission_for_order,
    create_delivery_commission_rule,
    create_restaurant_commission,
    get_restaurant_commission,
    update_restaurant_commission,
)
from utils.security import require_admin
from utils.serializers import serialize_doc


router = APIRouter(prefix="/admin", tags=["Admin"])


# =====================================================
# RESTAURANT COMMISSION
# =====================================================

@router.post("/restaurant-commission")
async def create_commission(
    body: RestaurantCommissionCreate,
    admin_id: str = Depends(require_admin),
    db=Depends(get_db),
):
    doc = await create_restaurant_commission(
        db,
        restaurant_id=body.restaurant_id,
        commission_rules=body.commission_rules,
        default_commission=body.default_commission,
        admin_id=admin_id,
        status=body.status,
        notes=body.notes,
    )
    return {"ok": True, "commission": serialize_doc(doc)}


@router.get("/restaurant-commission/{restaurant_id}")
async def commission_detail(
    restaurant_id: str,
    admin_id: str = Depends(require_admin),
    db=Depends(get_db),
):
    doc = await get_restaurant_commission(db, restaurant_id)
    return serialize_doc(doc)


@router.put("/restaurant-commission/{restaurant_id}")
async def update_commission(
    restaurant_id: str,
    body: RestaurantCommissionUpdate,
    admin_id: str = Depends(require_admin),
    db=Depends(get_db),
):
    doc = await update_restaurant_commission(
        db,
        restaurant_id=restaurant_id,
        admin_id=admin_id,
        commission_rules=body.commission_rules,
        default_commission=body.default_commission,
        status=body.status,
        notes=body.notes,
    )
    return {"ok": True, "commission": serialize_doc(doc)}


@router.post("/restaurant-commission/calculate")
async def calculate_commission(
    body: CommissionCalculateRequest,
    admin_id: str = Depends(require_admin),
    db=Depends(get_db),
):
    result = await calculate_commission_for_order(db, body.restaurant_id, body.order_amount)
    return serialize_doc(result)


# =====================================================
# DELIVERY COMMISSION
# =====================================================

@router.post("/delivery-commission")
async def create_delivery_commission(
    body: DeliveryCommissionRule,
    admin_id: str = Depends(require_admin),
    db=Depends(get_db),
):
    doc = await create_delivery_commission_rule(db, body, admin_id)
    return {"ok": True, "rule": serialize_doc(doc)}


# =====================================================
# CANCELLATION REFUNDS
# =====================================================

@router.post("/orders/{order_id}/refund/calculate")
async def refund_calculate(
    order_id: str,
    body: RefundRequest | None = None,
    admin_id: str = Depends(require_admin),
    db=Depends(get_db),
):
    details = await calculate_cancellation_refund(db, order_id, body.reason if body else None)
    return serialize_doc(details)


@router.post("/orders/{order_id}/refund/process")
async def refund_process(
    order_id: str,
    body: RefundRequest | None = None,
    admin_id: str = Depends(require_admin),
    db=Depends(get_db),
):
    details = await process_cancellation_refund(db, order_id, body.reason if body else None, admin_id=admin_id)
    return {"ok": True, "cancellation_details": serialize_doc(details)}


@router.post("/orders/{order_id}/refund/razorpay")
async def refund_razorpay(
    order_id: str,
    admin_id: str = Depends(require_admin),
    db=Depends(get_db),
):
    details = await process_razorpay_refund(db, order_id, admin_id=admin_id)
    return {"ok": True, "cancellation_details": serialize_doc(details)}


@router.post("/orders/{order_id}/refund/wallet")
async def refund_wallet(
    order_id: str,
    body: WalletRefundRequest | None = None,
    admin_id: str = Depends(require_admin),
    db=Depends(get_db),
):
    details = await process_wallet_refund(
        db,
        order_id,
        admin_id=admin_id,
        refund_amount=body.refund_amount if body else None,
    )
    return {"ok": True, "cancellation_details": serialize_doc(details)}


@router.post("/orders/{order_id}/refund/retry-credits")
async def refund_retry_credits(
    order_id: str,
    admin_id: str = Depends(require_admin),
    db=Depends(get_db),
):
    result = await retry_cancellation_credits(db, order_id, admin_id=admin_id)
    return {"ok": not result.failed, **result.model_dump()}
