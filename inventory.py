"""
Stock mutations.

A decrease is one conditional update (``stock >= n`` in the filter, ``$inc``
in the update), so two requests racing for the last unit cannot both win.
"""
import logging
from typing import Any, Dict, Iterable, List, Literal, Mapping

from pymongo import ReturnDocument
from pymongo.database import Database

from database import now_utc, oid
from errors import InsufficientStockError, InvalidRequestError, NotFoundError

logger = logging.getLogger(__name__)

StockOperation = Literal["increase", "decrease"]


def can_purchase(product: Mapping[str, Any], quantity: int = 1) -> bool:
    return bool(product.get("is_active", True)) and product.get("stock", 0) >= quantity


def _insufficient(product: Mapping[str, Any], requested: int) -> InsufficientStockError:
    available = product.get("stock", 0)
    return InsufficientStockError(
        f"Insufficient stock for {product.get('name')}. Available: {available}, Requested: {requested}",
        product_id=str(product["_id"]),
        available=available,
        requested=requested,
    )


def update_stock(db: Database, product_id: str, quantity: int, operation: StockOperation = "decrease") -> Dict[str, Any]:
    if quantity < 1:
        raise InvalidRequestError("Quantity must be at least 1", "invalid_quantity")
    if operation not in ("increase", "decrease"):
        raise InvalidRequestError(f"Unknown stock operation: {operation}", "invalid_operation")
    _id = oid(product_id, "product ID")

    if operation == "increase":
        prod = db["product"].find_one_and_update(
            {"_id": _id},
            {"$inc": {"stock": quantity}, "$set": {"updated_at": now_utc()}},
            return_document=ReturnDocument.AFTER,
        )
        if prod is None:
            raise NotFoundError("Product not found", "product_not_found", product_id=product_id)
        logger.info("Stock of %s increased by %d to %d", prod.get("sku"), quantity, prod["stock"])
        return prod

    prod = db["product"].find_one_and_update(
        {"_id": _id, "stock": {"$gte": quantity}},
        {"$inc": {"stock": -quantity}, "$set": {"updated_at": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    if prod is None:
        current = db["product"].find_one({"_id": _id})
        if current is None:
            raise NotFoundError("Product not found", "product_not_found", product_id=product_id)
        raise _insufficient(current, quantity)
    logger.info("Stock of %s decreased by %d to %d", prod.get("sku"), quantity, prod["stock"])
    return prod


def reserve_lines(db: Database, lines: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """Decrement stock for every order line, all or nothing.

    Only active products can be reserved. When a line fails, the lines
    already taken are put back before the error propagates.
    """
    reserved: List[Dict[str, Any]] = []
    try:
        for line in lines:
            _id = oid(line["product_id"], "product ID")
            qty = int(line["quantity"])
            prod = db["product"].find_one_and_update(
                {"_id": _id, "is_active": True, "stock": {"$gte": qty}},
                {"$inc": {"stock": -qty}, "$set": {"updated_at": now_utc()}},
                return_document=ReturnDocument.AFTER,
            )
            if prod is None:
                current = db["product"].find_one({"_id": _id})
                if current is None or not current.get("is_active", True):
                    raise NotFoundError("Product not found or inactive", "product_not_found",
                                        product_id=line["product_id"])
                raise _insufficient(current, qty)
            reserved.append({"product_id": line["product_id"], "quantity": qty})
    except Exception:
        if reserved:
            logger.warning("Stock reservation failed, restoring %d line(s)", len(reserved))
            restore_lines(db, reserved)
        raise
    return reserved


def restore_lines(db: Database, lines: Iterable[Mapping[str, Any]]) -> None:
    for line in lines:
        db["product"].update_one(
            {"_id": oid(line["product_id"], "product ID")},
            {"$inc": {"stock": int(line["quantity"])}, "$set": {"updated_at": now_utc()}},
        )
        logger.info("Restored %d unit(s) of product %s", int(line["quantity"]), line["product_id"])
