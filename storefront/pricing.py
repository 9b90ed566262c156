from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union

Number = Union[Decimal, float, int, str]

CENT = Decimal("0.01")


def to_decimal(amount: Optional[Number]) -> Decimal:
    if amount is None:
        return Decimal("0")
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))


def round_money(amount: Number) -> Decimal:
    return to_decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Number) -> int:
    # Convert decimal currency to integer minor units (e.g., cents)
    minor = (to_decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(minor)


def from_minor_units(amount: Optional[int]) -> Optional[float]:
    if amount is None:
        return None
    return float(Decimal(amount) / 100)


def compute_discount(
    discount_type: str,
    discount_value: Number,
    subtotal: Number,
    max_discount: Optional[Number] = None,
) -> Decimal:
    """Return the discount a coupon grants on ``subtotal``.

    Percentage coupons take ``discount_value`` percent of the subtotal, capped
    at ``max_discount`` when one is set (a zero cap means no cap). Fixed coupons
    never discount more than the subtotal itself.
    """
    subtotal = to_decimal(subtotal)
    value = to_decimal(discount_value)
    if subtotal <= 0 or value <= 0:
        return Decimal("0.00")

    if discount_type == "percentage":
        discount = subtotal * value / Decimal("100")
        cap = to_decimal(max_discount) if max_discount else None
        if cap is not None and discount > cap:
            discount = cap
    elif discount_type == "fixed":
        discount = min(value, subtotal)
    else:
        raise ValueError(f"unknown_discount_type:{discount_type}")

    return round_money(discount)


def line_total(price: Number, quantity: int) -> Decimal:
    return round_money(to_decimal(price) * quantity)
