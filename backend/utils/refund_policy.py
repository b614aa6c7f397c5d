"""
Cancellation refund policy.

The stage an order reached before it was cancelled decides how much the
customer gets back and how much the restaurant is compensated:

    pre_accept            full total             / nothing
    post_accept_pre_cook  food + delivery fee    / nothing
    post_cook             delivery fee + half    / net earning
                          the platform fee
    post_pickup           nothing                / net earning

Whatever is neither refunded nor compensated stays with the platform.
"""

from config.constants import (
    POST_COOK_PLATFORM_FEE_REFUND_PERCENT,
    STAGE_POST_ACCEPT_PRE_COOK,
    STAGE_POST_COOK,
    STAGE_POST_PICKUP,
    STAGE_PRE_ACCEPT,
)
from models.settlement import RefundQuote, UserPayment
from utils.errors import ValidationError
from utils.money import percent_of


def _reached(tracking: dict | None, step: str) -> bool:
    entry = (tracking or {}).get(step) or {}
    return bool(entry.get("status"))


def determine_cancellation_stage(tracking: dict | None) -> str:
    if not _reached(tracking, "confirmed"):
        return STAGE_PRE_ACCEPT
    if not _reached(tracking, "preparing"):
        return STAGE_POST_ACCEPT_PRE_COOK
    if not _reached(tracking, "ready"):
        return STAGE_POST_COOK
    return STAGE_POST_PICKUP


def compute_refund(stage: str, user_payment, restaurant_net: int) -> RefundQuote:
    if not isinstance(user_payment, UserPayment):
        user_payment = UserPayment.model_validate(user_payment)

    if stage == STAGE_PRE_ACCEPT:
        refund, compensation = user_payment.total, 0
    elif stage == STAGE_POST_ACCEPT_PRE_COOK:
        refund = user_payment.subtotal - user_payment.discount + user_payment.delivery_fee
        compensation = 0
    elif stage == STAGE_POST_COOK:
        refund = user_payment.delivery_fee + percent_of(
            user_payment.platform_fee, POST_COOK_PLATFORM_FEE_REFUND_PERCENT
        )
        compensation = restaurant_net
    elif stage == STAGE_POST_PICKUP:
        refund, compensation = 0, restaurant_net
    else:
        raise ValidationError(f"Unknown cancellation stage: {stage}")

    retained = user_payment.total - refund - compensation
    if refund < 0 or compensation < 0 or retained < 0:
        raise ValidationError(
            "Refund split exceeds amount paid",
            stage=stage,
            refund=refund,
            compensation=compensation,
            total=user_payment.total,
        )

    return RefundQuote(
        stage=stage,
        refund_amount=refund,
        restaurant_compensation=compensation,
        retained_amount=retained,
    )
