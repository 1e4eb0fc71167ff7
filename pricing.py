"""
Money arithmetic shared by the cart view and every order-creation path.

Amounts are computed as Decimals rounded half-up to cents and handed back
as floats, which is how they are stored in Mongo.
"""
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, Mapping, Optional

from pydantic import BaseModel

from config import SHIPPING_RATES, TAX_RATE
from errors import InvalidRequestError, StoreError

CENT = Decimal("0.01")


def money(value: Any) -> Decimal:
    return Decimal(str(value or 0)).quantize(CENT, rounding=ROUND_HALF_UP)


class PriceBreakdown(BaseModel):
    subtotal: float
    discount: float
    tax: float
    shipping: float
    total: float


def calculate_discount(promo: Optional[Mapping[str, Any]], subtotal: Any) -> float:
    """Discount granted by ``promo`` on ``subtotal``.

    Works on a promo code document or on the snapshot a cart keeps; both
    carry ``type``, ``value`` and ``maximum_discount``.
    """
    if not promo:
        return 0.0
    subtotal = money(subtotal)
    value = Decimal(str(promo.get("value") or 0))
    if promo.get("type") == "percentage":
        discount = subtotal * value / 100
        cap = promo.get("maximum_discount")
        if cap and discount > Decimal(str(cap)):
            discount = Decimal(str(cap))
    elif promo.get("type") == "fixed":
        discount = min(value, subtotal)
    else:
        # free_shipping is applied to the shipping line, not here
        discount = Decimal(0)
    return float(money(discount))


def grants_free_shipping(promo: Optional[Mapping[str, Any]]) -> bool:
    return bool(promo) and promo.get("type") == "free_shipping"


def shipping_cost(delivery_method: str, free_shipping: bool = False) -> float:
    if delivery_method not in SHIPPING_RATES:
        raise InvalidRequestError(f"Unknown delivery method: {delivery_method}", "invalid_delivery_method")
    if free_shipping:
        return 0.0
    return float(money(SHIPPING_RATES[delivery_method]))


def calculate_tax(subtotal: Any) -> float:
    return float(money(money(subtotal) * Decimal(str(TAX_RATE))))


def price_order(subtotal: Any, delivery_method: str, promo: Optional[Mapping[str, Any]] = None) -> PriceBreakdown:
    sub = money(subtotal)
    discount = money(calculate_discount(promo, sub))
    tax = money(calculate_tax(sub))
    shipping = money(shipping_cost(delivery_method, grants_free_shipping(promo)))
    total = sub + tax + shipping - discount
    return PriceBreakdown(
        subtotal=float(sub),
        discount=float(discount),
        tax=float(tax),
        shipping=float(shipping),
        total=float(total),
    )


def summarize_lines(lines: Iterable[Mapping[str, Any]], promo: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    """Cart summary: lines carry ``price`` (None when the product is gone) and ``quantity``."""
    item_count = 0
    subtotal = Decimal(0)
    for line in lines:
        item_count += int(line["quantity"])
        if line.get("price") is not None:
            subtotal += money(line["price"]) * int(line["quantity"])
    subtotal = money(subtotal)
    discount = money(calculate_discount(promo, subtotal))
    return {
        "item_count": item_count,
        "subtotal": float(subtotal),
        "discount": float(discount),
        "total": float(subtotal - discount),
    }


def check_totals(order: Mapping[str, Any]) -> None:
    expected = money(order["subtotal"]) + money(order["tax"]) + money(order["shipping"]) - money(order["discount"])
    if money(order["total"]) != expected:
        raise StoreError(
            f"Order total {order['total']} does not match its breakdown ({expected})",
            "total_mismatch",
        )
