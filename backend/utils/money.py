from decimal import Decimal, ROUND_HALF_UP


def to_paise(amount_inr) -> int:
    """Convert a rupee value (str/int/float/Decimal) to whole paise."""
    value = Decimal(str(amount_inr)) * 100
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_paise(amount_paise: int) -> Decimal:
    return (Decimal(amount_paise) / 100).quantize(Decimal("0.01"))


def percent_of(amount_paise: int, percent) -> int:
    value = Decimal(amount_paise) * Decimal(str(percent)) / 100
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_inr(amount_paise: int) -> str:
    return f"₹{from_paise(amount_paise)}"
