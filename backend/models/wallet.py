from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError
from pydantic import TypeAdapter

from config.constants import (
    DEBIT_TX_TYPES,
    TX_COMPLETED,
)
from utils.errors import ValidationError

TxStatus = Literal["Pending", "Completed", "Failed", "Cancelled"]
OwnerType = Literal["user", "restaurant", "delivery", "admin"]


# ==============================
# Transaction variants (tagged by `type`)
# ==============================

class _TransactionBase(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True, populate_by_name=True)

    id: ObjectId = Field(default_factory=ObjectId, alias="_id")
    amount: int = Field(..., ge=0)
    status: TxStatus = TX_COMPLETED
    description: str = ""
    idempotency_key: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    processed_at: Optional[datetime] = None

    @property
    def is_debit(self) -> bool:
        return self.type in DEBIT_TX_TYPES

    @property
    def signed_amount(self) -> int:
        return -self.amount if self.is_debit else self.amount

    def to_doc(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class _OrderLinked(_TransactionBase):
    order_id: ObjectId


class AdditionTransaction(_TransactionBase):
    type: Literal["addition"] = "addition"
    order_id: Optional[ObjectId] = None


class BonusTransaction(_TransactionBase):
    type: Literal["bonus"] = "bonus"
    order_id: Optional[ObjectId] = None


class DeductionTransaction(_TransactionBase):
    type: Literal["deduction"] = "deduction"
    order_id: Optional[ObjectId] = None


class DeductionReversalTransaction(_TransactionBase):
    type: Literal["deduction_reversal"] = "deduction_reversal"
    order_id: Optional[ObjectId] = None


class WithdrawalTransaction(_TransactionBase):
    type: Literal["withdrawal"] = "withdrawal"
    reference: str


class RefundTransaction(_OrderLinked):
    type: Literal["refund"] = "refund"


class PaymentTransaction(_OrderLinked):
    type: Literal["payment"] = "payment"


class CommissionTransaction(_OrderLinked):
    type: Literal["commission"] = "commission"
    restaurant_id: Optional[ObjectId] = None


class PlatformFeeTransaction(_OrderLinked):
    type: Literal["platform_fee"] = "platform_fee"


class DeliveryFeeTransaction(_OrderLinked):
    type: Literal["delivery_fee"] = "delivery_fee"


class GstTransaction(_OrderLinked):
    type: Literal["gst"] = "gst"


Transaction = Annotated[
    Union[
        AdditionTransaction,
        BonusTransaction,
        DeductionTransaction,
        DeductionReversalTransaction,
        WithdrawalTransaction,
        RefundTransaction,
        PaymentTransaction,
        CommissionTransaction,
        PlatformFeeTransaction,
        DeliveryFeeTransaction,
        GstTransaction,
    ],
    Field(discriminator="type"),
]

_transaction_adapter = TypeAdapter(Transaction)


def build_transaction(**data) -> Transaction:
    """
    Construct a transaction variant from loose keyword data.
    Invalid combinations (e.g. a refund without order_id) raise ValidationError.
    """
    try:
        return _transaction_adapter.validate_python(data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid transaction: {e.errors()[0].get('msg')}", errors=e.errors())


# ==============================
# Wallet
# ==============================

class Wallet(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True, populate_by_name=True)

    id: ObjectId = Field(alias="_id")
    owner_id: str
    owner_type: OwnerType
    balance: int = 0
    total_added: int = 0
    total_spent: int = 0
    total_refunded: int = 0
    totals: dict[str, int] = Field(default_factory=dict)
    transactions: list[Transaction] = Field(default_factory=list)
    last_transaction_at: Optional[datetime] = None
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_doc(cls, doc: dict) -> "Wallet":
        return cls.model_validate(doc)

    def find_transaction(self, tx_id) -> Optional[Transaction]:
        tx_id = ObjectId(tx_id)
        return next((t for t in self.transactions if t.id == tx_id), None)

    def find_by_key(self, key: str) -> Optional[Transaction]:
        return next((t for t in self.transactions if t.idempotency_key == key), None)
