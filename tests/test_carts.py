import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

import carts
import pricing
from database import now_utc
from errors import InvalidRequestError, NotFoundError, PromoCodeError


def test_adding_the_same_product_twice_merges_lines(db, make_product):
    pid = make_product()
    carts.add_item(db, "u1", pid, 1)
    cart = carts.add_item(db, "u1", pid, 1)
    assert len(cart["items"]) == 1
    assert cart["items"][0]["quantity"] == 2


def test_variants_are_separate_lines(db, make_product):
    pid = make_product()
    carts.add_item(db, "u1", pid, 1, {"name": "color", "value": "red"})
    carts.add_item(db, "u1", pid, 1, {"name": "color", "value": "blue"})
    cart = carts.add_item(db, "u1", pid, 2, {"name": "color", "value": "red"})
    quantities = sorted(it["quantity"] for it in cart["items"])
    assert quantities == [1, 3]


def test_cart_created_lazily_with_rolling_expiry(db, make_product):
    pid = make_product()
    assert carts.get_cart(db, "u1") is None
    cart = carts.add_item(db, "u1", pid)
    remaining = cart["expires_at"] - now_utc()
    assert timedelta(days=29, hours=23) < remaining <= timedelta(days=30)


def test_inactive_or_missing_product_cannot_be_added(db, make_product):
    pid = make_product(is_active=False)
    with pytest.raises(NotFoundError):
        carts.add_item(db, "u1", pid)
    with pytest.raises(InvalidRequestError):
        carts.add_item(db, "u1", "not-an-id")


def test_update_quantity_and_zero_removes(db, make_product):
    a, b = make_product(), make_product()
    carts.add_item(db, "u1", a)
    carts.add_item(db, "u1", b)
    cart = carts.update_item_quantity(db, "u1", a, 5)
    assert {it["product_id"]: it["quantity"] for it in cart["items"]} == {a: 5, b: 1}
    cart = carts.update_item_quantity(db, "u1", a, 0)
    assert [it["product_id"] for it in cart["items"]] == [b]


def test_update_quantity_errors(db, make_product):
    pid = make_product()
    with pytest.raises(NotFoundError) as exc:
        carts.update_item_quantity(db, "u1", pid, 1)
    assert exc.value.message == "Cart not found"
    carts.add_item(db, "u1", pid)
    with pytest.raises(InvalidRequestError):
        carts.update_item_quantity(db, "u1", pid, -1)
    with pytest.raises(NotFoundError) as exc:
        carts.update_item_quantity(db, "u1", make_product(), 1)
    assert exc.value.message == "Item not found in cart"


def test_remove_and_clear(db, make_product):
    a, b = make_product(), make_product()
    carts.add_item(db, "u1", a)
    carts.add_item(db, "u1", b)
    cart = carts.remove_item(db, "u1", a)
    assert [it["product_id"] for it in cart["items"]] == [b]
    carts.clear_cart(db, "u1")
    assert carts.get_cart(db, "u1") is None


def test_summary_uses_the_shared_discount(db, make_product, make_promo):
    make_promo(code="SAVE10")
    pid = make_product(price=25.0)
    carts.add_item(db, "u1", pid, 4)
    cart = carts.apply_promo_code(db, "u1", "save10")
    view = carts.cart_view(db, cart)
    assert view["promo_code"]["code"] == "SAVE10"
    assert view["summary"] == {"item_count": 4, "subtotal": 100.0, "discount": 10.0, "total": 90.0}
    assert view["summary"]["discount"] == pricing.calculate_discount(cart["promo_code"], 100.0)

    view = carts.cart_view(db, carts.remove_promo_code(db, "u1"))
    assert view["summary"]["total"] == 100.0


def test_apply_promo_respects_minimum(db, make_product, make_promo):
    make_promo(code="BIG", minimum_order_amount=500)
    carts.add_item(db, "u1", make_product(price=10.0))
    with pytest.raises(PromoCodeError) as exc:
        carts.apply_promo_code(db, "u1", "BIG")
    assert exc.value.code == "promo_minimum_amount"


def test_validate_stock_messages(db, make_product):
    ok = make_product(name="Bulb", stock=10)
    short = make_product(name="Drill", stock=1)
    hidden = make_product(name="Panel", stock=5)
    gone = make_product(name="Cable", stock=5)
    for pid, qty in ((ok, 2), (short, 3), (hidden, 1), (gone, 1)):
        carts.add_item(db, "u1", pid, qty)
    db["product"].update_one({"name": "Panel"}, {"$set": {"is_active": False}})
    db["product"].delete_one({"name": "Cable"})

    problems = carts.validate_stock(db, carts.get_cart(db, "u1"))
    assert problems == [
        "Insufficient stock for Drill. Available: 1, Requested: 3",
        "Product Panel is not available",
        f"Product {gone} not found",
    ]


def test_clean_expired(db, make_product):
    pid = make_product()
    carts.add_item(db, "old", pid)
    carts.add_item(db, "fresh", pid)
    db["cart"].update_one({"user_id": "old"}, {"$set": {"expires_at": now_utc() - timedelta(days=1)}})
    assert carts.clean_expired(db) == 1
    assert carts.get_cart(db, "old") is None
    assert carts.get_cart(db, "fresh") is not None


def test_concurrent_adds_do_not_lose_quantity(db, make_product):
    pid = make_product(stock=100)
    carts.add_item(db, "u1", pid, 1)
    barrier = threading.Barrier(8)

    def add():
        barrier.wait()
        carts.add_item(db, "u1", pid, 1)

    with ThreadPoolExecutor(max_workers=8) as pool:
        for fut in [pool.submit(add) for _ in range(8)]:
            fut.result()
    cart = carts.get_cart(db, "u1")
    assert [(it["product_id"], it["quantity"]) for it in cart["items"]] == [(pid, 9)]


def test_update_quantity_targets_the_variant_line(db, make_product):
    a, b = make_product(), make_product()
    carts.add_item(db, "u1", a, 2)
    carts.add_item(db, "u1", b, 3, {"name": "Color", "value": "Red"})
    cart = carts.update_item_quantity(db, "u1", b, 7, {"name": "Color", "value": "Red"})
    assert {it["product_id"]: it["quantity"] for it in cart["items"]} == {a: 2, b: 7}
    with pytest.raises(NotFoundError) as exc:
        carts.update_item_quantity(db, "u1", b, 1)
    assert exc.value.message == "Item not found in cart"


def test_remove_item_without_cart(db, make_product):
    with pytest.raises(NotFoundError) as exc:
        carts.remove_item(db, "u1", make_product())
    assert exc.value.message == "Cart not found"
