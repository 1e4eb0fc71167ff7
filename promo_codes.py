"""
Promo code evaluation and redemption.

Validation is a pure function of the code document and an OrderContext;
redemption is the only place ``used_count`` moves, always through a
conditional update.
"""
import logging
import re
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import pricing
from config import PROMO_REDEEM_ATTEMPTS
from database import as_naive_utc, now_utc, oid
from errors import ConflictError, InvalidRequestError, NotFoundError, PromoCodeError
from schemas import PromoCode, PromoRedemption

logger = logging.getLogger(__name__)


class OrderContext(BaseModel):
    subtotal: float
    user_type: Optional[str] = None  # "new" | "existing"
    categories: List[str] = []
    product_ids: List[str] = []
    user_redemptions: int = 0


class PromoValidation(BaseModel):
    valid: bool
    message: str
    code: Optional[str] = None


def _amount(value: float) -> str:
    return ("%.2f" % value).rstrip("0").rstrip(".")


def _fail(message: str, code: str) -> PromoValidation:
    return PromoValidation(valid=False, message=message, code=code)


def is_exhausted(promo: Mapping[str, Any]) -> bool:
    limit = promo.get("usage_limit", -1)
    return limit != -1 and promo.get("used_count", 0) >= limit


def remaining_uses(promo: Mapping[str, Any]) -> Any:
    if promo.get("usage_limit", -1) == -1:
        return "unlimited"
    return max(0, promo["usage_limit"] - promo.get("used_count", 0))


def validate_for_order(promo: Mapping[str, Any], context: OrderContext, user_id: Optional[str],
                       now: Optional[datetime] = None) -> PromoValidation:
    now = now or now_utc()
    valid_from = promo.get("valid_from")
    valid_until = promo.get("valid_until")
    if not promo.get("is_active") or (valid_from and now < valid_from) or (valid_until and now > valid_until):
        return _fail("Promo code is not active or has expired", "promo_expired")

    if is_exhausted(promo):
        return _fail("Promo code usage limit reached", "promo_usage_limit")

    minimum = promo.get("minimum_order_amount") or 0
    if context.subtotal < minimum:
        return _fail(f"Minimum order amount of ${_amount(minimum)} required", "promo_minimum_amount")

    restrictions = promo.get("user_restrictions") or {}
    if restrictions.get("new_users_only") and context.user_type != "new":
        return _fail("Promo code is for new users only", "promo_new_users_only")
    if restrictions.get("existing_users_only") and context.user_type != "existing":
        return _fail("Promo code is for existing users only", "promo_existing_users_only")
    specific = restrictions.get("specific_users") or []
    if specific and user_id not in specific:
        return _fail("Promo code not available for this user", "promo_user_not_allowed")

    applicable = set(promo.get("applicable_categories") or [])
    if applicable and not applicable.intersection(context.categories):
        return _fail("Promo code does not apply to these products", "promo_not_applicable")
    if set(promo.get("excluded_categories") or []).intersection(context.categories):
        return _fail("Promo code does not apply to these products", "promo_not_applicable")
    applicable = set(promo.get("applicable_products") or [])
    if applicable and not applicable.intersection(context.product_ids):
        return _fail("Promo code does not apply to these products", "promo_not_applicable")
    if set(promo.get("excluded_products") or []).intersection(context.product_ids):
        return _fail("Promo code does not apply to these products", "promo_not_applicable")

    if context.user_redemptions >= promo.get("user_usage_limit", 1):
        return _fail("You have already used this promo code", "promo_user_limit")

    return PromoValidation(valid=True, message="Promo code is valid")


def calculate_discount(promo: Mapping[str, Any], subtotal: float) -> float:
    return pricing.calculate_discount(promo, subtotal)

# ---------------------- Lookup & evaluation ----------------------

def find_valid_code(db: Database, code: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or now_utc()
    promo = db["promo_code"].find_one({
        "code": code.strip().upper(),
        "is_active": True,
        "valid_from": {"$lte": now},
        "valid_until": {"$gte": now},
    })
    if not promo:
        raise PromoCodeError("Invalid or expired promo code", "promo_not_found")
    return promo


def user_type(db: Database, user_id: Optional[str]) -> str:
    if not user_id:
        return "new"
    placed = db["order"].count_documents({"customer_id": user_id, "status": {"$nin": ["cancelled"]}})
    return "existing" if placed else "new"


def build_context(db: Database, promo: Mapping[str, Any], user_id: Optional[str], subtotal: float,
                  lines: Iterable[Mapping[str, Any]] = (), user_type_hint: Optional[str] = None) -> OrderContext:
    lines = list(lines)
    redemptions = 0
    if user_id:
        redemptions = db["promo_redemption"].count_documents(
            {"promo_code_id": str(promo["_id"]), "user_id": user_id}
        )
    return OrderContext(
        subtotal=subtotal,
        user_type=user_type_hint or user_type(db, user_id),
        categories=sorted({l["category"] for l in lines if l.get("category")}),
        product_ids=[str(l["product_id"]) for l in lines],
        user_redemptions=redemptions,
    )


def evaluate(db: Database, code: str, user_id: Optional[str], subtotal: float,
             lines: Iterable[Mapping[str, Any]] = (), user_type_hint: Optional[str] = None) -> Tuple[Dict[str, Any], float]:
    """Look a code up and validate it for an order; returns the code and its discount."""
    promo = find_valid_code(db, code)
    context = build_context(db, promo, user_id, subtotal, lines, user_type_hint)
    result = validate_for_order(promo, context, user_id)
    if not result.valid:
        raise PromoCodeError(result.message, result.code)
    return promo, calculate_discount(promo, subtotal)

# ---------------------- Redemption ----------------------

def _claim_user_slot(db: Database, promo: Mapping[str, Any], user_id: str, order_id: str) -> Dict[str, Any]:
    # (promo_code_id, user_id, slot) is unique, so each of the user's allowed uses can be taken once
    for slot in range(max(int(promo.get("user_usage_limit", 1)), 1)):
        redemption = PromoRedemption(promo_code_id=str(promo["_id"]), user_id=user_id, order_id=order_id,
                                     slot=slot).model_dump()
        redemption["created_at"] = now_utc()
        try:
            db["promo_redemption"].insert_one(redemption)
        except DuplicateKeyError:
            continue
        return redemption
    raise PromoCodeError("You have already used this promo code", "promo_user_limit")


def redeem(db: Database, promo: Mapping[str, Any], user_id: str, order_id: str) -> Dict[str, Any]:
    """Take one use of ``promo``.

    The user's share is claimed first through the unique redemption slot.
    Limited codes are then bumped with a compare-and-set on the count in the
    caller's snapshot, re-reading after a miss, so ``used_count`` never
    passes ``usage_limit``.
    """
    coll = db["promo_code"]
    _id = promo["_id"]
    redemption = _claim_user_slot(db, promo, user_id, order_id)
    current: Optional[Mapping[str, Any]] = promo
    try:
        for _ in range(PROMO_REDEEM_ATTEMPTS):
            if current is None:
                raise PromoCodeError("Invalid or expired promo code", "promo_not_found")
            if is_exhausted(current):
                raise PromoCodeError("Promo code usage limit reached", "promo_usage_limit")
            filt: Dict[str, Any] = {"_id": _id}
            if current.get("usage_limit", -1) != -1:
                filt["used_count"] = current.get("used_count", 0)
            res = coll.update_one(filt, {"$inc": {"used_count": 1}, "$set": {"updated_at": now_utc()}})
            if res.modified_count == 1:
                logger.info("Promo code %s redeemed by %s for order %s", current["code"], user_id, order_id)
                return coll.find_one({"_id": _id})
            logger.debug("Promo code %s changed under us, re-reading", current["code"])
            current = coll.find_one({"_id": _id})
        raise ConflictError("Promo code is being redeemed concurrently, please retry", "concurrent_update")
    except Exception:
        db["promo_redemption"].delete_one({"_id": redemption["_id"]})
        raise


def release(db: Database, promo_code_id: str, order_id: str) -> None:
    removed = db["promo_redemption"].delete_one({"promo_code_id": promo_code_id, "order_id": order_id})
    if removed.deleted_count:
        db["promo_code"].update_one(
            {"_id": oid(promo_code_id), "used_count": {"$gt": 0}},
            {"$inc": {"used_count": -1}, "$set": {"updated_at": now_utc()}},
        )
        logger.info("Released promo code %s for order %s", promo_code_id, order_id)

# ---------------------- Admin ----------------------

def create_promo_code(db: Database, body: PromoCode, created_by: Optional[str] = None) -> Dict[str, Any]:
    doc = body.model_dump()
    doc["valid_from"] = as_naive_utc(doc["valid_from"]) or now_utc()
    doc["valid_until"] = as_naive_utc(doc["valid_until"])
    if doc["valid_until"] <= doc["valid_from"]:
        raise InvalidRequestError("valid_until must be after valid_from", "invalid_window")
    doc["used_count"] = 0
    doc.update({"created_by": created_by, "created_at": now_utc(), "updated_at": now_utc()})
    try:
        res = db["promo_code"].insert_one(doc)
    except DuplicateKeyError:
        raise InvalidRequestError("Promo code already exists", "duplicate_promo_code")
    logger.info("Created promo code %s", doc["code"])
    doc["_id"] = res.inserted_id
    return doc


def get_promo_code(db: Database, promo_id: str) -> Dict[str, Any]:
    promo = db["promo_code"].find_one({"_id": oid(promo_id, "promo code ID")})
    if not promo:
        raise NotFoundError("Promo code not found", "promo_not_found")
    return promo


def update_promo_code(db: Database, promo_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    changes = {k: as_naive_utc(v) if isinstance(v, datetime) else v for k, v in changes.items()}
    changes.pop("used_count", None)
    if "code" in changes:
        changes["code"] = changes["code"].strip().upper()
    try:
        res = db["promo_code"].update_one(
            {"_id": oid(promo_id, "promo code ID")},
            {"$set": {**changes, "updated_at": now_utc()}},
        )
    except DuplicateKeyError:
        raise InvalidRequestError("Promo code already exists", "duplicate_promo_code")
    if res.matched_count == 0:
        raise NotFoundError("Promo code not found", "promo_not_found")
    return get_promo_code(db, promo_id)


def delete_promo_code(db: Database, promo_id: str) -> None:
    res = db["promo_code"].delete_one({"_id": oid(promo_id, "promo code ID")})
    if res.deleted_count == 0:
        raise NotFoundError("Promo code not found", "promo_not_found")


def toggle_promo_code(db: Database, promo_id: str) -> Dict[str, Any]:
    promo = get_promo_code(db, promo_id)
    db["promo_code"].update_one(
        {"_id": promo["_id"]},
        {"$set": {"is_active": not promo.get("is_active", True), "updated_at": now_utc()}},
    )
    return get_promo_code(db, promo_id)


def list_promo_codes(db: Database, status: str = "all", search: Optional[str] = None,
                     page: int = 1, limit: int = 20) -> Dict[str, Any]:
    now = now_utc()
    filt: Dict[str, Any] = {}
    if status == "active":
        filt.update({"is_active": True, "valid_until": {"$gte": now}})
    elif status == "inactive":
        filt["is_active"] = False
    elif status == "expired":
        filt["valid_until"] = {"$lt": now}
    if search:
        filt["code"] = {"$regex": re.escape(search.strip().upper())}
    skip = (max(page, 1) - 1) * limit
    codes = list(db["promo_code"].find(filt).sort("created_at", DESCENDING).skip(skip).limit(limit))
    total = db["promo_code"].count_documents(filt)
    return {
        "promo_codes": codes,
        "pagination": {
            "current_page": page,
            "total_pages": -(-total // limit) if limit else 0,
            "total": total,
        },
    }


def list_active_codes(db: Database) -> List[Dict[str, Any]]:
    now = now_utc()
    codes = db["promo_code"].find({
        "is_active": True,
        "valid_from": {"$lte": now},
        "valid_until": {"$gte": now},
    }).sort("valid_until", ASCENDING)
    return [
        {
            "_id": c["_id"],
            "code": c["code"],
            "name": c.get("name"),
            "description": c.get("description"),
            "type": c["type"],
            "value": c["value"],
            "minimum_order_amount": c.get("minimum_order_amount", 0),
            "valid_until": c["valid_until"],
            "remaining_uses": remaining_uses(c),
        }
        for c in codes if not is_exhausted(c)
    ]


def usage_analytics(db: Database, start: Optional[datetime] = None, end: Optional[datetime] = None) -> Dict[str, Any]:
    now = now_utc()
    filt: Dict[str, Any] = {}
    if start and end:
        filt["created_at"] = {"$gte": as_naive_utc(start), "$lte": as_naive_utc(end)}
    codes = list(db["promo_code"].find(filt))
    total_usage = sum(c.get("used_count", 0) for c in codes)
    top = sorted(codes, key=lambda c: c.get("used_count", 0), reverse=True)[:5]
    return {
        "stats": {
            "total_codes": len(codes),
            "active_codes": sum(1 for c in codes if c.get("is_active") and c["valid_until"] >= now),
            "total_usage": total_usage,
            "average_usage": round(total_usage / len(codes), 2) if codes else 0,
        },
        "top_codes": [{"_id": c["_id"], "code": c["code"], "name": c.get("name"), "used_count": c.get("used_count", 0)}
                      for c in top],
    }
