import logging
from typing import Any, Dict, List, Optional

from pymongo import DESCENDING
from pymongo.database import Database

from config import DEFAULT_LOW_STOCK_THRESHOLD
from database import now_utc, oid
from errors import InvalidTransitionError, NotFoundError
from schemas import LowStockAlert

logger = logging.getLogger(__name__)

OPEN_STATUSES = ["active", "acknowledged"]
STATUSES = ("active", "acknowledged", "resolved", "dismissed")
PRIORITIES = ("critical", "high", "medium", "low")
PRIORITY_RANK = {p: i for i, p in enumerate(PRIORITIES)}


def calculate_priority(current_stock: int, threshold: int) -> str:
    if current_stock == 0:
        return "critical"
    if current_stock <= 1:
        return "high"
    if current_stock <= threshold * 0.5:
        return "medium"
    return "low"


def _message(product: Dict[str, Any], current_stock: int, threshold: int) -> str:
    return (f"Low stock alert: {product.get('name')} has {current_stock} units remaining "
            f"(threshold: {threshold})")


def create_low_stock_alert(db: Database, product: Dict[str, Any], current_stock: int, threshold: int) -> Dict[str, Any]:
    """Refresh the product's open alert, or raise a new one."""
    product_id = str(product["_id"])
    priority = calculate_priority(current_stock, threshold)
    alert_type = "out_of_stock" if current_stock == 0 else "low_stock"
    existing = db["low_stock_alert"].find_one({"product_id": product_id, "status": {"$in": OPEN_STATUSES}})
    if existing:
        db["low_stock_alert"].update_one({"_id": existing["_id"]}, {"$set": {
            "current_stock": current_stock,
            "threshold": threshold,
            "message": _message(product, current_stock, threshold),
            "priority": priority,
            "alert_type": alert_type,
            "updated_at": now_utc(),
        }})
        return db["low_stock_alert"].find_one({"_id": existing["_id"]})

    doc = LowStockAlert(
        product_id=product_id,
        current_stock=current_stock,
        threshold=threshold,
        priority=priority,
        alert_type=alert_type,
        message=_message(product, current_stock, threshold),
    ).model_dump()
    doc.update({"created_at": now_utc(), "updated_at": now_utc()})
    db["low_stock_alert"].insert_one(doc)
    logger.info("New %s alert for %s (stock %d)", priority, product.get("sku"), current_stock)
    return doc


def check_low_stock(db: Database) -> Dict[str, Any]:
    checked = 0
    touched: List[Dict[str, Any]] = []
    for product in db["product"].find({"is_active": True}):
        checked += 1
        threshold = product.get("low_stock_threshold")
        if threshold is None:
            threshold = DEFAULT_LOW_STOCK_THRESHOLD
        stock = max(int(product.get("stock", 0)), 0)
        if stock <= threshold:
            touched.append(create_low_stock_alert(db, product, stock, threshold))
    logger.info("Checked %d products, %d low-stock alert(s)", checked, len(touched))
    return {"products_checked": checked, "alerts_created": len(touched), "alerts": touched}

# ---------------------- Workflow ----------------------

def get_alert(db: Database, alert_id: str) -> Dict[str, Any]:
    alert = db["low_stock_alert"].find_one({"_id": oid(alert_id, "alert ID")})
    if not alert:
        raise NotFoundError("Alert not found", "alert_not_found")
    return alert


def _close(db: Database, alert_id: str, status: str, user_id: Optional[str], notes: Optional[str],
           allowed_from: List[str]) -> Dict[str, Any]:
    alert = get_alert(db, alert_id)
    if alert["status"] not in allowed_from:
        raise InvalidTransitionError(f"Cannot mark a {alert['status']} alert as {status}")
    sets: Dict[str, Any] = {"status": status, "updated_at": now_utc()}
    if status == "resolved":
        sets.update({"resolved_by": user_id, "resolved_at": now_utc()})
    else:
        sets.update({"acknowledged_by": user_id, "acknowledged_at": now_utc()})
    if notes:
        sets["resolution_notes"] = notes
    db["low_stock_alert"].update_one({"_id": alert["_id"]}, {"$set": sets})
    return get_alert(db, alert_id)


def acknowledge(db: Database, alert_id: str, user_id: Optional[str] = None, notes: Optional[str] = None) -> Dict[str, Any]:
    return _close(db, alert_id, "acknowledged", user_id, notes, ["active"])


def resolve(db: Database, alert_id: str, user_id: Optional[str] = None, notes: Optional[str] = None) -> Dict[str, Any]:
    return _close(db, alert_id, "resolved", user_id, notes, OPEN_STATUSES)


def dismiss(db: Database, alert_id: str, user_id: Optional[str] = None, notes: Optional[str] = None) -> Dict[str, Any]:
    return _close(db, alert_id, "dismissed", user_id, notes, OPEN_STATUSES)


def delete_alert(db: Database, alert_id: str) -> None:
    res = db["low_stock_alert"].delete_one({"_id": oid(alert_id, "alert ID")})
    if res.deleted_count == 0:
        raise NotFoundError("Alert not found", "alert_not_found")

# ---------------------- Read side ----------------------

def _with_products(db: Database, alerts: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    ids = list({oid(a["product_id"]) for a in alerts})
    products = {str(p["_id"]): p for p in db["product"].find({"_id": {"$in": ids}})} if ids else {}
    out = []
    for a in alerts:
        p = products.get(a["product_id"])
        out.append({**a, "product": {
            "_id": p["_id"],
            "name": p.get("name"),
            "sku": p.get("sku"),
            "category": p.get("category"),
            "price": p.get("price"),
            "stock": p.get("stock"),
            "low_stock_threshold": p.get("low_stock_threshold"),
        } if p else None})
    return out


def list_alerts(db: Database, status: str = "active", priority: Optional[str] = None,
                alert_type: Optional[str] = None, page: int = 1, limit: int = 20) -> Dict[str, Any]:
    filt: Dict[str, Any] = {}
    if status != "all":
        filt["status"] = status
    if priority:
        filt["priority"] = priority
    if alert_type:
        filt["alert_type"] = alert_type
    found = list(db["low_stock_alert"].find(filt))
    found.sort(key=lambda a: a.get("created_at"), reverse=True)
    found.sort(key=lambda a: PRIORITY_RANK.get(a.get("priority"), len(PRIORITIES)))
    page = max(page, 1)
    skip = (page - 1) * limit
    window = found[skip:skip + limit]
    return {
        "alerts": _with_products(db, window),
        "pagination": {
            "current_page": page,
            "total_pages": -(-len(found) // limit) if limit else 0,
            "total_alerts": len(found),
            "has_next": skip + len(window) < len(found),
            "has_prev": page > 1,
        },
    }


def alert_stats(db: Database) -> Dict[str, int]:
    coll = db["low_stock_alert"]
    stats = {"total": coll.count_documents({})}
    for s in STATUSES:
        stats[s] = coll.count_documents({"status": s})
    for p in PRIORITIES:
        stats[p] = coll.count_documents({"priority": p})
    return stats


def dashboard(db: Database) -> Dict[str, Any]:
    active = list_alerts(db, status="active", limit=100)["alerts"]
    recent = list(db["low_stock_alert"].find({"status": "active"}).sort("created_at", DESCENDING).limit(10))
    return {
        "stats": alert_stats(db),
        "active_alerts": active,
        "critical_alerts": [a for a in active if a["priority"] == "critical"],
        "recent_alerts": _with_products(db, recent),
    }
