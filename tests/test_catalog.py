import pytest

import catalog
from errors import InvalidRequestError, NotFoundError
from schemas import Product


def test_create_uppercases_sku_and_rejects_duplicates(db):
    pid = catalog.create_product(db, Product(sku=" de-001 ", name="Switch", price=4.5, category="Switches"))
    assert catalog.get_product(db, pid)["sku"] == "DE-001"
    with pytest.raises(InvalidRequestError):
        catalog.create_product(db, Product(sku="DE-001", name="Other", price=1, category="Switches"))


def test_stock_is_not_editable_through_update(db, make_product):
    pid = make_product()
    with pytest.raises(InvalidRequestError) as exc:
        catalog.update_product(db, pid, {"stock": 500})
    assert exc.value.code == "protected_field"
    assert catalog.update_product(db, pid, {"price": 12.5})["price"] == 12.5


@pytest.mark.parametrize("stock, threshold, status", [
    (0, 10, "out_of_stock"),
    (3, 10, "low_stock"),
    (3, None, "low_stock"),
    (11, 10, "in_stock"),
])
def test_stock_status(stock, threshold, status):
    view = catalog.present({"stock": stock, "low_stock_threshold": threshold})
    assert view["stock_status"] == status
    assert view["is_in_stock"] is (stock > 0)


def test_listing_filters(db, make_product):
    make_product(name="LED bulb (warm)", price=5.0)
    make_product(name="Drill", price=80.0, category="Tools")
    make_product(name="Old bulb", is_active=False)

    assert [p["name"] for p in catalog.list_products(db, q="bulb (")] == ["LED bulb (warm)"]
    assert [p["name"] for p in catalog.list_products(db, category="Tools")] == ["Drill"]
    assert [p["name"] for p in catalog.list_products(db, min_price=50)] == ["Drill"]
    assert len(catalog.list_products(db, include_inactive=True)) == 3


def test_inactive_products_are_hidden_from_shoppers(db, make_product):
    pid = make_product(is_active=False)
    assert catalog.get_product(db, pid)["is_active"] is False
    with pytest.raises(NotFoundError):
        catalog.get_product(db, pid, active_only=True)
    catalog.delete_product(db, pid)
    with pytest.raises(NotFoundError):
        catalog.delete_product(db, pid)
