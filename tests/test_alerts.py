import pytest

import alerts
from errors import InvalidTransitionError, NotFoundError


@pytest.mark.parametrize("stock, threshold, priority", [
    (0, 10, "critical"),
    (1, 10, "high"),
    (5, 10, "medium"),
    (6, 10, "low"),
    (10, 10, "low"),
    (1, 1, "high"),
])
def test_priority(stock, threshold, priority):
    assert alerts.calculate_priority(stock, threshold) == priority


def test_check_raises_alerts_for_low_active_products(db, make_product):
    make_product(name="Empty", stock=0)
    make_product(name="Few", stock=3)
    make_product(name="Plenty", stock=50)
    make_product(name="Hidden", stock=0, is_active=False)
    make_product(name="Defaulted", stock=5, low_stock_threshold=None)

    result = alerts.check_low_stock(db)
    assert result["products_checked"] == 4
    assert result["alerts_created"] == 3
    by_stock = {a["current_stock"]: a for a in result["alerts"]}
    assert by_stock[0]["alert_type"] == "out_of_stock"
    assert by_stock[0]["priority"] == "critical"
    assert by_stock[3]["priority"] == "medium"
    assert by_stock[5]["threshold"] == 10


def test_repeat_check_refreshes_the_open_alert(db, make_product):
    pid = make_product(stock=4)
    alerts.check_low_stock(db)
    db["product"].update_one({"name": {"$exists": True}}, {"$set": {"stock": 0}})
    alerts.check_low_stock(db)

    found = list(db["low_stock_alert"].find({"product_id": pid}))
    assert len(found) == 1
    assert found[0]["current_stock"] == 0
    assert found[0]["priority"] == "critical"


def test_resolved_alert_is_not_reused(db, make_product):
    pid = make_product(stock=2)
    alert = alerts.check_low_stock(db)["alerts"][0]
    alerts.resolve(db, str(alert["_id"]), "admin", "Reordered")
    alerts.check_low_stock(db)
    assert db["low_stock_alert"].count_documents({"product_id": pid}) == 2


def test_workflow(db, make_product):
    make_product(stock=2)
    alert_id = str(alerts.check_low_stock(db)["alerts"][0]["_id"])

    acked = alerts.acknowledge(db, alert_id, "admin")
    assert acked["status"] == "acknowledged"
    assert acked["acknowledged_by"] == "admin"
    with pytest.raises(InvalidTransitionError):
        alerts.acknowledge(db, alert_id)

    resolved = alerts.resolve(db, alert_id, "admin", "Restocked")
    assert resolved["status"] == "resolved"
    assert resolved["resolution_notes"] == "Restocked"
    with pytest.raises(InvalidTransitionError):
        alerts.dismiss(db, alert_id)

    alerts.delete_alert(db, alert_id)
    with pytest.raises(NotFoundError):
        alerts.get_alert(db, alert_id)


def test_listing_puts_critical_first(db, make_product):
    make_product(name="Few", stock=4)
    make_product(name="Empty", stock=0)
    alerts.check_low_stock(db)

    listing = alerts.list_alerts(db)
    assert [a["priority"] for a in listing["alerts"]] == ["critical", "medium"]
    assert listing["alerts"][0]["product"]["name"] == "Empty"
    assert listing["pagination"]["total_alerts"] == 2

    stats = alerts.alert_stats(db)
    assert stats["total"] == 2 and stats["active"] == 2 and stats["critical"] == 1

    board = alerts.dashboard(db)
    assert len(board["critical_alerts"]) == 1
    assert len(board["recent_alerts"]) == 2
