import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from bson import ObjectId

import inventory
from errors import InsufficientStockError, InvalidRequestError, NotFoundError


def _stock(db, pid):
    return db["product"].find_one({"_id": ObjectId(pid)})["stock"]


def test_decrease_and_increase(db, make_product):
    pid = make_product(stock=5)
    assert inventory.update_stock(db, pid, 2, "decrease")["stock"] == 3
    assert inventory.update_stock(db, pid, 4, "increase")["stock"] == 7


def test_decrease_rejects_overdraw(db, make_product):
    pid = make_product(name="Drill", stock=2)
    with pytest.raises(InsufficientStockError) as exc:
        inventory.update_stock(db, pid, 3)
    assert exc.value.message == "Insufficient stock for Drill. Available: 2, Requested: 3"
    assert exc.value.details["available"] == 2
    assert _stock(db, pid) == 2


def test_invalid_arguments(db, make_product):
    pid = make_product()
    with pytest.raises(InvalidRequestError):
        inventory.update_stock(db, pid, 0)
    with pytest.raises(InvalidRequestError):
        inventory.update_stock(db, pid, 1, "steal")
    with pytest.raises(NotFoundError):
        inventory.update_stock(db, "5f0000000000000000000000", 1)


def test_last_unit_goes_to_exactly_one_buyer(db, make_product):
    pid = make_product(stock=1)
    product = db["product"].find_one()
    # both requests pass the pre-check before either writes
    assert inventory.can_purchase(product, 1)
    assert inventory.can_purchase(product, 1)

    inventory.reserve_lines(db, [{"product_id": pid, "quantity": 1}])
    with pytest.raises(InsufficientStockError):
        inventory.reserve_lines(db, [{"product_id": pid, "quantity": 1}])
    assert _stock(db, pid) == 0


def test_simultaneous_reservations_of_the_last_unit(db, make_product):
    pid = make_product(stock=1)
    barrier = threading.Barrier(8)

    def reserve(_):
        barrier.wait()
        try:
            inventory.reserve_lines(db, [{"product_id": pid, "quantity": 1}])
            return True
        except InsufficientStockError:
            return False

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(reserve, range(8)))
    assert results.count(True) == 1
    assert _stock(db, pid) == 0


def test_reserve_lines_is_all_or_nothing(db, make_product):
    plenty = make_product(stock=10)
    scarce = make_product(stock=1)
    with pytest.raises(InsufficientStockError):
        inventory.reserve_lines(db, [
            {"product_id": plenty, "quantity": 4},
            {"product_id": scarce, "quantity": 2},
        ])
    assert _stock(db, plenty) == 10
    assert _stock(db, scarce) == 1


def test_reserve_skips_inactive_products(db, make_product):
    pid = make_product(stock=10, is_active=False)
    with pytest.raises(NotFoundError):
        inventory.reserve_lines(db, [{"product_id": pid, "quantity": 1}])
    assert _stock(db, pid) == 10
