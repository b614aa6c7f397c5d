from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

CommissionType = Literal["percentage", "amount"]


class CommissionRule(BaseModel):
    type: CommissionType
    value: float = Field(..., ge=0)
    min_order_amount: int = Field(..., ge=0)      # paise
    max_order_amount: Optional[int] = None        # paise, None = and above

    def contains(self, amount: int) -> bool:
        if amount < self.min_order_amount:
            return False
        return self.max_order_amount is None or amount < self.max_order_amount


class DefaultCommission(BaseModel):
    type: CommissionType
    value: float = Field(..., ge=0)


class RestaurantCommissionCreate(BaseModel):
    restaurant_id: str
    commission_rules: list[CommissionRule] = Field(default_factory=list)
    default_commission: DefaultCommission
    status: bool = True
    notes: str = ""


class RestaurantCommissionUpdate(BaseModel):
    commission_rules: Optional[list[CommissionRule]] = None
    default_commission: Optional[DefaultCommission] = None
    status: Optional[bool] = None
    notes: Optional[str] = None


class CommissionResult(BaseModel):
    commission_type: CommissionType
    commission_value: float
    commission_amount: int
    net_amount: int
    rule: Optional[CommissionRule] = None


class DeliveryCommissionRule(BaseModel):
    name: str = Field(..., min_length=1)
    min_distance_km: float = Field(..., ge=0)
    max_distance_km: Optional[float] = None
    commission_per_km: int = Field(..., ge=0)     # paise per km
    base_payout: int = Field(..., ge=0)           # paise
    status: bool = True

    def contains(self, distance_km: float) -> bool:
        if distance_km < self.min_distance_km:
            return False
        return self.max_distance_km is None or distance_km < self.max_distance_km


class DeliveryEarning(BaseModel):
    base_payout: int = 0
    distance_km: float = 0
    commission_per_km: int = 0
    distance_commission: int = 0
    surge_multiplier: float = 1
    surge_amount: int = 0
    total_earning: int = 0
    rule_name: Optional[str] = None


class RestaurantCommissionInDB(BaseModel):
    restaurant_id: str
    restaurant_name: Optional[str] = None
    commission_rules: list[CommissionRule] = Field(default_factory=list)
    default_commission: DefaultCommission
    status: bool = True
    notes: str = ""
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime
