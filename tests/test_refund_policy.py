import pytest

from conftest import DEFAULT_PRICING, tracking
from models.settlement import UserPayment
from utils.errors import ValidationError
from utils.refund_policy import compute_refund, determine_cancellation_stage

PAYMENT = UserPayment(**DEFAULT_PRICING)
NET = 12200


@pytest.mark.parametrize("steps,stage", [
    ((), "pre_accept"),
    (("confirmed",), "post_accept_pre_cook"),
    (("confirmed", "preparing"), "post_cook"),
    (("confirmed", "preparing", "ready"), "post_pickup"),
    (("confirmed", "preparing", "ready", "picked_up"), "post_pickup"),
])
def test_stage_follows_tracking(steps, stage):
    assert determine_cancellation_stage(tracking(*steps)) == stage


def test_missing_tracking_is_pre_accept():
    assert determine_cancellation_stage(None) == "pre_accept"
    assert determine_cancellation_stage({"confirmed": {"status": False}}) == "pre_accept"


def test_pre_accept_refunds_everything():
    quote = compute_refund("pre_accept", PAYMENT, NET)
    assert (quote.refund_amount, quote.restaurant_compensation, quote.retained_amount) == (17500, 0, 0)


def test_post_accept_refunds_food_and_delivery():
    # 150 - 10 + 20 rupees
    quote = compute_refund("post_accept_pre_cook", PAYMENT, NET)
    assert quote.refund_amount == 16000
    assert quote.restaurant_compensation == 0
    assert quote.retained_amount == 1500


def test_post_cook_refunds_delivery_and_half_platform_fee():
    quote = compute_refund("post_cook", PAYMENT, NET)
    assert quote.refund_amount == 2000 + 250
    assert quote.restaurant_compensation == NET
    assert quote.retained_amount == 17500 - 2250 - NET


def test_post_pickup_refunds_nothing():
    quote = compute_refund("post_pickup", PAYMENT, NET)
    assert quote.refund_amount == 0
    assert quote.restaurant_compensation == NET
    assert quote.retained_amount == 5300


@pytest.mark.parametrize("stage", ["pre_accept", "post_accept_pre_cook", "post_cook", "post_pickup"])
def test_split_always_adds_up_to_total(stage):
    quote = compute_refund(stage, PAYMENT.model_dump(), NET)
    assert quote.refund_amount + quote.restaurant_compensation + quote.retained_amount == PAYMENT.total


def test_unknown_stage_rejected():
    with pytest.raises(ValidationError):
        compute_refund("delivered", PAYMENT, NET)
