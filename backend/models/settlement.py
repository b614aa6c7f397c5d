from datetime import datetime
from typing import Literal, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field

EscrowStatus = Literal["held", "released", "refunded"]
SettlementStatus = Literal["pending", "completed", "cancelled"]
EarningStatus = Literal["pending", "credited", "failed", "cancelled"]
RefundStatus = Literal["pending", "initiated", "processed", "failed"]
CancellationStage = Literal["pre_accept", "post_accept_pre_cook", "post_cook", "post_pickup"]


# ==============================
# Breakdown (all amounts in paise)
# ==============================

class UserPayment(BaseModel):
    subtotal: int = 0
    discount: int = 0
    delivery_fee: int = 0
    platform_fee: int = 0
    gst: int = 0
    packaging_fee: int = 0
    total: int = 0


class RestaurantEarning(BaseModel):
    food_price: int = 0
    commission: int = 0
    commission_percentage: Optional[float] = None
    commission_type: Optional[str] = None
    net_earning: int = 0
    status: EarningStatus = "pending"
    credited_at: Optional[datetime] = None


class DeliveryPartnerEarning(BaseModel):
    base_payout: int = 0
    distance_km: float = 0
    commission_per_km: int = 0
    distance_commission: int = 0
    surge_multiplier: float = 1
    surge_amount: int = 0
    total_earning: int = 0
    status: EarningStatus = "pending"
    credited_at: Optional[datetime] = None


class AdminEarning(BaseModel):
    commission: int = 0
    platform_fee: int = 0
    delivery_fee: int = 0
    gst: int = 0
    total_earning: int = 0
    status: EarningStatus = "pending"
    credited_at: Optional[datetime] = None


class CancellationDetails(BaseModel):
    cancelled: bool = False
    cancelled_at: Optional[datetime] = None
    cancellation_stage: Optional[CancellationStage] = None
    reason: Optional[str] = None
    amount_collected: int = 0
    refund_amount: int = 0
    restaurant_compensation: int = 0
    retained_amount: int = 0
    refund_status: Optional[RefundStatus] = None
    refund_id: Optional[str] = None
    refund_failure_reason: Optional[str] = None
    refund_initiated_at: Optional[datetime] = None
    refund_initiated_by: Optional[str] = None
    refund_processed_at: Optional[datetime] = None
    refund_processed_by: Optional[str] = None


class Settlement(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True, populate_by_name=True)

    id: ObjectId = Field(alias="_id")
    order_id: ObjectId
    order_number: Optional[str] = None
    user_id: Optional[str] = None
    restaurant_id: Optional[str] = None
    delivery_partner_id: Optional[str] = None
    payment_method: Optional[str] = None

    user_payment: UserPayment
    restaurant_earning: RestaurantEarning
    delivery_partner_earning: DeliveryPartnerEarning = Field(default_factory=DeliveryPartnerEarning)
    admin_earning: AdminEarning

    escrow_status: Optional[EscrowStatus] = None
    escrow_amount: int = 0
    escrow_held_at: Optional[datetime] = None
    escrow_released_at: Optional[datetime] = None

    settlement_status: SettlementStatus = "pending"
    cancellation_details: CancellationDetails = Field(default_factory=CancellationDetails)
    party_errors: dict[str, str] = Field(default_factory=dict)

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_doc(cls, doc: dict) -> "Settlement":
        return cls.model_validate(doc)

    def distributed_total(self) -> int:
        """Everything the breakdown hands out; equals user_payment.total."""
        return (
            self.restaurant_earning.net_earning
            + self.delivery_partner_earning.total_earning
            + self.admin_earning.total_earning
        )


# ==============================
# Results
# ==============================

class RefundQuote(BaseModel):
    stage: CancellationStage
    refund_amount: int
    restaurant_compensation: int
    retained_amount: int


class ReleaseResult(BaseModel):
    credited: list[str] = Field(default_factory=list)
    failed: dict[str, str] = Field(default_factory=dict)


# ==============================
# Request bodies
# ==============================

class HoldEscrowRequest(BaseModel):
    user_id: str
    amount: int = Field(..., ge=0)


class AssignDeliveryRequest(BaseModel):
    delivery_partner_id: str
    distance_km: float = Field(..., ge=0)
    surge_multiplier: float = Field(1, ge=1)


class RefundRequest(BaseModel):
    reason: Optional[str] = None


class WalletRefundRequest(BaseModel):
    refund_amount: Optional[int] = Field(None, gt=0)


class CommissionCalculateRequest(BaseModel):
    restaurant_id: str
    order_amount: int = Field(..., ge=0)
