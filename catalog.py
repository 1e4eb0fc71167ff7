import logging
import re
from typing import Any, Dict, List, Optional

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from config import DEFAULT_LOW_STOCK_THRESHOLD
from database import create_document, get_documents, now_utc, oid
from errors import InvalidRequestError, NotFoundError
from schemas import Product

logger = logging.getLogger(__name__)

# Stock moves only through inventory.update_stock and order placement.
PROTECTED_FIELDS = {"_id", "stock", "created_at"}


def stock_status(product: Dict[str, Any]) -> str:
    stock = product.get("stock", 0)
    if stock <= 0:
        return "out_of_stock"
    threshold = product.get("low_stock_threshold")
    if stock <= (DEFAULT_LOW_STOCK_THRESHOLD if threshold is None else threshold):
        return "low_stock"
    return "in_stock"


def present(product: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(product)
    out["is_in_stock"] = out.get("stock", 0) > 0
    out["stock_status"] = stock_status(out)
    return out


def get_product(db: Database, product_id: str, active_only: bool = False) -> Dict[str, Any]:
    filt: Dict[str, Any] = {"_id": oid(product_id, "product ID")}
    if active_only:
        filt["is_active"] = True
    prod = db["product"].find_one(filt)
    if not prod:
        raise NotFoundError("Product not found", "product_not_found", product_id=product_id)
    return prod


def create_product(db: Database, product: Product) -> str:
    doc = product.model_dump()
    doc.update({"rating": 0.0, "review_count": 0})
    try:
        product_id = create_document("product", doc, database=db)
    except DuplicateKeyError:
        raise InvalidRequestError("SKU already exists", "duplicate_sku")
    logger.info("Created product %s (%s)", product.sku, product_id)
    return product_id


def update_product(db: Database, product_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    blocked = PROTECTED_FIELDS.intersection(changes)
    if blocked:
        raise InvalidRequestError(f"Cannot update {', '.join(sorted(blocked))} here", "protected_field")
    if "sku" in changes:
        changes["sku"] = str(changes["sku"]).strip().upper()
    if "price" in changes and float(changes["price"]) < 0:
        raise InvalidRequestError("Price cannot be negative", "invalid_price")
    try:
        res = db["product"].update_one({"_id": oid(product_id, "product ID")}, {"$set": {**changes, "updated_at": now_utc()}})
    except DuplicateKeyError:
        raise InvalidRequestError("SKU already exists", "duplicate_sku")
    if res.matched_count == 0:
        raise NotFoundError("Product not found", "product_not_found", product_id=product_id)
    return get_product(db, product_id)


def delete_product(db: Database, product_id: str) -> None:
    res = db["product"].delete_one({"_id": oid(product_id, "product ID")})
    if res.deleted_count == 0:
        raise NotFoundError("Product not found", "product_not_found", product_id=product_id)
    logger.info("Deleted product %s", product_id)


def list_products(db: Database, q: Optional[str] = None, category: Optional[str] = None,
                  min_price: Optional[float] = None, max_price: Optional[float] = None,
                  featured: Optional[bool] = None, in_stock: Optional[bool] = None,
                  include_inactive: bool = False, limit: int = 50) -> List[Dict[str, Any]]:
    filt: Dict[str, Any] = {}
    if not include_inactive:
        filt["is_active"] = True
    if q:
        pattern = re.escape(q)
        filt["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"sku": {"$regex": pattern, "$options": "i"}},
        ]
    if category:
        filt["category"] = category
    price_cond = {}
    if min_price is not None:
        price_cond["$gte"] = min_price
    if max_price is not None:
        price_cond["$lte"] = max_price
    if price_cond:
        filt["price"] = price_cond
    if featured is not None:
        filt["is_featured"] = featured
    if in_stock is not None:
        filt["stock"] = {"$gt": 0} if in_stock else {"$lte": 0}
    return [present(p) for p in get_documents("product", filt, limit, database=db)]
