import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import pricing
import promo_codes
from catalog import get_product
from config import CART_TTL_DAYS, CART_WRITE_ATTEMPTS
from database import now_utc, oid
from errors import ConflictError, InvalidRequestError, NotFoundError
from schemas import Cart, CartItem, CartPromoCode, Variant

logger = logging.getLogger(__name__)


def _variant(variant: Optional[Any]) -> Optional[Dict[str, str]]:
    if variant is None:
        return None
    if isinstance(variant, Variant):
        return variant.model_dump()
    return {"name": variant["name"], "value": variant["value"]}


def get_cart(db: Database, user_id: str) -> Optional[Dict[str, Any]]:
    return db["cart"].find_one({"user_id": user_id})


def _require_cart(db: Database, user_id: str) -> Dict[str, Any]:
    cart = get_cart(db, user_id)
    if not cart:
        raise NotFoundError("Cart not found", "cart_not_found")
    return cart


def _touched(now: datetime) -> Dict[str, Any]:
    return {"last_updated": now, "updated_at": now, "expires_at": now + timedelta(days=CART_TTL_DAYS)}


def _line_filter(product_id: str, variant: Optional[Dict[str, str]]) -> Dict[str, Any]:
    return {"product_id": product_id, "variant": variant}


def add_item(db: Database, user_id: str, product_id: str, quantity: int = 1, variant: Optional[Any] = None) -> Dict[str, Any]:
    """Add to the user's cart, merging with a line for the same product and variant.

    Each write is a single update on the cart document: ``$inc`` on the
    matching line, or ``$push`` guarded by "no such line yet". When both miss,
    another request changed the cart in between and the pair is retried.
    """
    if quantity < 1:
        raise InvalidRequestError("Quantity must be at least 1", "invalid_quantity")
    get_product(db, product_id, active_only=True)
    variant = _variant(variant)
    line = _line_filter(product_id, variant)
    fresh = Cart(user_id=user_id).model_dump(include={"items", "promo_code"})
    try:
        db["cart"].update_one(
            {"user_id": user_id},
            {"$setOnInsert": {**fresh, "created_at": now_utc()}},
            upsert=True,
        )
    except DuplicateKeyError:
        pass  # created by a concurrent request

    for _ in range(CART_WRITE_ATTEMPTS):
        now = now_utc()
        res = db["cart"].update_one(
            {"user_id": user_id, "items": {"$elemMatch": line}},
            {"$inc": {"items.$.quantity": quantity}, "$set": {"items.$.added_at": now, **_touched(now)}},
        )
        if res.matched_count:
            break
        item = CartItem(product_id=product_id, quantity=quantity, variant=variant, added_at=now).model_dump()
        res = db["cart"].update_one(
            {"user_id": user_id, "items": {"$not": {"$elemMatch": line}}},
            {"$push": {"items": item}, "$set": _touched(now)},
        )
        if res.matched_count:
            break
    else:
        raise ConflictError("Cart is being updated concurrently, please retry", "concurrent_update")
    logger.debug("Added %d x %s to cart of %s", quantity, product_id, user_id)
    return get_cart(db, user_id)


def update_item_quantity(db: Database, user_id: str, product_id: str, quantity: int,
                         variant: Optional[Any] = None) -> Dict[str, Any]:
    """Set a line's quantity; 0 drops the line."""
    if quantity < 0:
        raise InvalidRequestError("Quantity must be non-negative", "invalid_quantity")
    _require_cart(db, user_id)
    line = _line_filter(product_id, _variant(variant))
    now = now_utc()
    if quantity == 0:
        update = {"$pull": {"items": line}, "$set": _touched(now)}
    else:
        update = {"$set": {"items.$.quantity": quantity, "items.$.added_at": now, **_touched(now)}}
    res = db["cart"].update_one({"user_id": user_id, "items": {"$elemMatch": line}}, update)
    if res.matched_count == 0:
        raise NotFoundError("Item not found in cart", "cart_item_not_found")
    return get_cart(db, user_id)


def remove_item(db: Database, user_id: str, product_id: str, variant: Optional[Any] = None) -> Dict[str, Any]:
    line = _line_filter(product_id, _variant(variant))
    res = db["cart"].update_one({"user_id": user_id}, {"$pull": {"items": line}, "$set": _touched(now_utc())})
    if res.matched_count == 0:
        raise NotFoundError("Cart not found", "cart_not_found")
    return get_cart(db, user_id)


def clear_cart(db: Database, user_id: str) -> None:
    db["cart"].delete_one({"user_id": user_id})

# ---------------------- Promo ----------------------

def _set_promo(db: Database, user_id: str, promo_code: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    now = now_utc()
    res = db["cart"].update_one(
        {"user_id": user_id},
        {"$set": {"promo_code": promo_code, "last_updated": now, "updated_at": now}},
    )
    if res.matched_count == 0:
        raise NotFoundError("Cart not found", "cart_not_found")
    return get_cart(db, user_id)


def apply_promo_code(db: Database, user_id: str, code: str) -> Dict[str, Any]:
    cart = _require_cart(db, user_id)
    lines = priced_lines(db, cart)
    subtotal = pricing.summarize_lines(lines)["subtotal"]
    promo, _ = promo_codes.evaluate(db, code, user_id, subtotal, lines)
    snapshot = CartPromoCode(
        promo_code_id=str(promo["_id"]),
        code=promo["code"],
        type=promo["type"],
        value=promo["value"],
        maximum_discount=promo.get("maximum_discount"),
        applied_at=now_utc(),
    ).model_dump()
    logger.info("Promo code %s attached to cart of %s", promo["code"], user_id)
    return _set_promo(db, user_id, snapshot)


def remove_promo_code(db: Database, user_id: str) -> Dict[str, Any]:
    return _set_promo(db, user_id, None)

# ---------------------- Read side ----------------------

def priced_lines(db: Database, cart: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Cart lines joined with their live product; ``price`` is None for vanished products."""
    ids = [oid(it["product_id"]) for it in cart.get("items", [])]
    products = {str(p["_id"]): p for p in db["product"].find({"_id": {"$in": ids}})} if ids else {}
    lines = []
    for it in cart.get("items", []):
        prod = products.get(it["product_id"])
        lines.append({
            **it,
            "price": prod.get("price") if prod else None,
            "category": prod.get("category") if prod else None,
            "product": {
                "_id": prod["_id"],
                "name": prod.get("name"),
                "sku": prod.get("sku"),
                "price": prod.get("price"),
                "stock": prod.get("stock", 0),
                "is_active": prod.get("is_active", True),
                "image": (prod.get("images") or [{}])[0].get("url") if prod.get("images") else None,
            } if prod else None,
        })
    return lines


def cart_view(db: Database, cart: Optional[Dict[str, Any]], user_id: Optional[str] = None) -> Dict[str, Any]:
    if not cart:
        return {
            "user_id": user_id,
            "items": [],
            "promo_code": None,
            "summary": pricing.summarize_lines([]),
            "is_empty": True,
            "is_expired": False,
        }
    lines = priced_lines(db, cart)
    expires_at = cart.get("expires_at")
    return {
        "_id": cart["_id"],
        "user_id": cart["user_id"],
        "items": lines,
        "promo_code": cart.get("promo_code"),
        "summary": pricing.summarize_lines(lines, cart.get("promo_code")),
        "is_empty": not lines,
        "is_expired": bool(expires_at and expires_at < now_utc()),
        "expires_at": expires_at,
        "last_updated": cart.get("last_updated"),
    }


def validate_stock(db: Database, cart: Dict[str, Any]) -> List[str]:
    errors = []
    for line in priced_lines(db, cart):
        prod = line["product"]
        if prod is None:
            errors.append(f"Product {line['product_id']} not found")
            continue
        if not prod["is_active"]:
            errors.append(f"Product {prod['name']} is not available")
            continue
        if prod["stock"] < line["quantity"]:
            errors.append(
                f"Insufficient stock for {prod['name']}. Available: {prod['stock']}, Requested: {line['quantity']}"
            )
    return errors


def clean_expired(db: Database, now: Optional[datetime] = None) -> int:
    res = db["cart"].delete_many({"expires_at": {"$lt": now or now_utc()}})
    if res.deleted_count:
        logger.info("Removed %d expired cart(s)", res.deleted_count)
    return res.deleted_count
