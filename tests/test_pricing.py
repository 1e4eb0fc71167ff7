import pytest

import pricing
from errors import InvalidRequestError, StoreError

SAVE10 = {"type": "percentage", "value": 10}


def test_percentage_discount():
    assert pricing.calculate_discount(SAVE10, 100) == 10.0


def test_percentage_discount_is_capped():
    promo = {"type": "percentage", "value": 50, "maximum_discount": 20}
    assert pricing.calculate_discount(promo, 100) == 20.0


def test_fixed_discount_never_exceeds_subtotal():
    promo = {"type": "fixed", "value": 25}
    assert pricing.calculate_discount(promo, 100) == 25.0
    assert pricing.calculate_discount(promo, 12.5) == 12.5


def test_free_shipping_discounts_nothing_but_waives_shipping():
    promo = {"type": "free_shipping", "value": 0}
    assert pricing.calculate_discount(promo, 100) == 0.0
    breakdown = pricing.price_order(100, "express_delivery", promo)
    assert breakdown.shipping == 0.0
    assert breakdown.total == 110.0


def test_no_promo_no_discount():
    assert pricing.calculate_discount(None, 100) == 0.0


@pytest.mark.parametrize("method, expected", [
    ("express_delivery", 15.0),
    ("home_delivery", 5.0),
    ("store_pickup", 0.0),
])
def test_shipping_by_delivery_method(method, expected):
    assert pricing.shipping_cost(method) == expected


def test_unknown_delivery_method():
    with pytest.raises(InvalidRequestError):
        pricing.shipping_cost("drone")


def test_tax_rounds_half_up_to_cents():
    assert pricing.calculate_tax(100) == 10.0
    assert pricing.calculate_tax(19.99) == 2.0
    assert pricing.calculate_tax(0.05) == 0.01


def test_price_order_with_promo():
    breakdown = pricing.price_order(100, "home_delivery", SAVE10)
    assert breakdown.model_dump() == {
        "subtotal": 100.0,
        "discount": 10.0,
        "tax": 10.0,
        "shipping": 5.0,
        "total": 105.0,
    }


def test_cart_summary_matches_promo_discount():
    lines = [{"price": 19.99, "quantity": 3}, {"price": 5.5, "quantity": 2}, {"price": None, "quantity": 1}]
    promo = {"type": "percentage", "value": 15, "maximum_discount": 100}
    summary = pricing.summarize_lines(lines, promo)
    assert summary["item_count"] == 6
    assert summary["subtotal"] == 70.97
    assert summary["discount"] == pricing.calculate_discount(promo, summary["subtotal"])
    assert summary["total"] == round(summary["subtotal"] - summary["discount"], 2)


def test_check_totals_detects_drift():
    order = {"subtotal": 100.0, "tax": 10.0, "shipping": 5.0, "discount": 10.0, "total": 105.0}
    pricing.check_totals(order)
    with pytest.raises(StoreError):
        pricing.check_totals({**order, "total": 115.0})
