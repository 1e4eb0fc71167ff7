"""
Order assembly and the order state machine.

Placing an order is a short saga: reserve stock, redeem the promo code,
insert the order. When a step fails, the steps already done are undone in
reverse order before the error reaches the caller.

Status changes go through `next_state`, which maps the whole
(status, payment status, delivery status) triple plus an event to the next
triple; `apply_event` persists it with a compare-and-set on the old triple.
"""
import logging
import random
from typing import Any, Callable, Dict, Iterable, List, Mapping, NamedTuple, Optional, Tuple, Union

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import carts
import inventory
import pricing
import promo_codes
from catalog import get_product
from config import ORDER_NUMBER_ATTEMPTS, PICKUP_CODE_ATTEMPTS
from database import now_utc, oid
from errors import ConflictError, InvalidRequestError, InvalidTransitionError, NotFoundError
from schemas import Address, Delivery, Order, OrderItem, OrderPromoCode, Payment, ProductSnapshot

logger = logging.getLogger(__name__)

ORDER_STATUSES = ("pending", "confirmed", "processing", "ready_for_pickup", "shipped", "delivered", "cancelled",
                  "refunded")
SHIPPED_DELIVERY = ("shipped", "out_for_delivery", "delivered")
OPEN_PICKUP_STATUSES = ("confirmed", "processing", "ready_for_pickup")
# Events that only make sense for orders collected in store.
PICKUP_EVENTS = ("ready_for_pickup", "pick_up")


class OrderState(NamedTuple):
    status: str
    payment_status: str
    delivery_status: str


StateField = Union[None, str, Callable[[OrderState], str]]


class Transition(NamedTuple):
    sources: Tuple[str, ...]
    status: str
    payment: StateField = None
    delivery: StateField = None
    payment_sources: Optional[Tuple[str, ...]] = None


def _cancelled_payment(state: OrderState) -> str:
    return "refunded" if state.payment_status == "completed" else "cancelled"


def _refunded_delivery(state: OrderState) -> str:
    return "returned" if state.delivery_status in SHIPPED_DELIVERY else state.delivery_status


TRANSITIONS: Dict[str, Transition] = {
    "confirm": Transition(("pending",), "confirmed", delivery="confirmed"),
    "payment_completed": Transition(("pending", "confirmed"), "confirmed", "completed", "confirmed",
                                    payment_sources=("pending", "processing", "failed")),
    # a failed payment sends a confirmed order back to pending
    "payment_failed": Transition(("pending", "confirmed"), "pending", "failed", "pending",
                                 payment_sources=("pending", "processing")),
    "start_processing": Transition(("confirmed",), "processing", delivery="processing"),
    "ready_for_pickup": Transition(("confirmed", "processing"), "ready_for_pickup", delivery="ready_for_pickup"),
    "pick_up": Transition(("ready_for_pickup",), "delivered", delivery="delivered"),
    "ship": Transition(("processing",), "shipped", delivery="shipped"),
    "out_for_delivery": Transition(("shipped",), "shipped", delivery="out_for_delivery"),
    "deliver": Transition(("shipped",), "delivered", delivery="delivered"),
    "cancel": Transition(("pending", "confirmed", "processing", "ready_for_pickup"), "cancelled", _cancelled_payment),
    "refund": Transition(("confirmed", "processing", "ready_for_pickup", "shipped", "delivered"), "refunded",
                         "refunded", _refunded_delivery),
}

# What the admin status endpoint means by each requested value.
STATUS_EVENTS = {
    "confirmed": "confirm",
    "processing": "start_processing",
    "ready_for_pickup": "ready_for_pickup",
    "shipped": "ship",
    "delivered": "deliver",
    "cancelled": "cancel",
    "refunded": "refund",
}
PAYMENT_EVENTS = {"completed": "payment_completed", "failed": "payment_failed", "refunded": "refund"}
DELIVERY_EVENTS = {"ready_for_pickup": "ready_for_pickup", "shipped": "ship", "out_for_delivery": "out_for_delivery",
                   "delivered": "deliver"}


def state_of(order: Mapping[str, Any]) -> OrderState:
    return OrderState(order["status"], order["payment"]["status"], order["delivery"]["status"])


def next_state(state: OrderState, event: str) -> OrderState:
    t = TRANSITIONS.get(event)
    if t is None:
        raise InvalidRequestError(f"Unknown order event: {event}", "invalid_event")
    if state.status not in t.sources:
        raise InvalidTransitionError(f"Cannot apply {event} to an order that is {state.status}")
    if t.payment_sources is not None and state.payment_status not in t.payment_sources:
        raise InvalidTransitionError(f"Cannot apply {event} when payment is {state.payment_status}")

    def resolve(field: StateField, current: str) -> str:
        if callable(field):
            return field(state)
        return field or current

    return OrderState(t.status, resolve(t.payment, state.payment_status), resolve(t.delivery, state.delivery_status))


def events_for(order: Mapping[str, Any], status: Optional[str] = None, payment_status: Optional[str] = None,
               delivery_status: Optional[str] = None) -> List[str]:
    """Translate requested field values into events; payment goes first so that
    "completed" + "processing" confirms before processing starts."""
    current = state_of(order)
    events = []
    for wanted, have, table, label in (
        (payment_status, current.payment_status, PAYMENT_EVENTS, "payment status"),
        (status, current.status, STATUS_EVENTS, "status"),
        (delivery_status, current.delivery_status, DELIVERY_EVENTS, "delivery status"),
    ):
        if wanted is None or wanted == have:
            continue
        if wanted not in table:
            raise InvalidRequestError(f"Cannot set {label} to {wanted}", "invalid_event")
        event = table[wanted]
        if event == "deliver" and current.status == "ready_for_pickup":
            event = "pick_up"
        if event in events or (table is STATUS_EVENTS and any(TRANSITIONS[e].status == wanted for e in events)):
            continue
        events.append(event)
    return events

# ---------------------- Assembly ----------------------

def generate_order_number() -> str:
    return f"DE{now_utc():%y%m%d}{random.randint(0, 999):03d}"


def generate_pickup_code(db: Database) -> str:
    """Four digits, not shared with any order still waiting in store."""
    for _ in range(PICKUP_CODE_ATTEMPTS):
        code = str(random.randint(1000, 9999))
        taken = db["order"].count_documents({
            "delivery.method": "store_pickup",
            "delivery.pickup_code": code,
            "status": {"$in": list(OPEN_PICKUP_STATUSES)},
        })
        if not taken:
            return code
    raise ConflictError("Could not allocate a free pickup code", "pickup_code_exhausted")


def snapshot_lines(db: Database, items: Iterable[Any]) -> List[Dict[str, Any]]:
    lines = []
    for it in items:
        data = it.model_dump() if hasattr(it, "model_dump") else dict(it)
        product_id = str(data["product_id"])
        quantity = int(data.get("quantity", 1))
        if quantity < 1:
            raise InvalidRequestError("Quantity must be at least 1", "invalid_quantity")
        prod = get_product(db, product_id, active_only=True)
        price = pricing.money(prod.get("price"))
        lines.append(OrderItem(
            product_id=product_id,
            quantity=quantity,
            price=float(price),
            total=float(pricing.money(price * quantity)),
            category=prod.get("category"),
            product_snapshot=ProductSnapshot(
                name=prod.get("name", ""),
                sku=prod.get("sku", ""),
                image=(prod.get("images") or [{}])[0].get("url", "") if prod.get("images") else "",
            ),
        ).model_dump())
    return lines


def _insert(db: Database, doc: Dict[str, Any]) -> Dict[str, Any]:
    for _ in range(ORDER_NUMBER_ATTEMPTS):
        try:
            db["order"].insert_one(doc)
            return doc
        except DuplicateKeyError:
            logger.warning("Order number %s already taken, generating another", doc["order_number"])
            doc["order_number"] = generate_order_number()
    raise ConflictError("Could not allocate a unique order number", "order_number_exhausted")


def _compensate(steps: List[Callable[[], None]]) -> None:
    for undo in reversed(steps):
        try:
            undo()
        except Exception:
            logger.exception("Compensation step failed; stock or promo usage needs manual correction")


def create_order(db: Database, user_id: str, items: Iterable[Any], payment_method: str = "cash_on_delivery",
                 delivery_method: str = "home_delivery", promo_code: Optional[str] = None,
                 confirmed: bool = False, address: Optional[Address] = None,
                 customer_notes: Optional[str] = None, source: str = "website",
                 idempotency_key: Optional[str] = None, total_amount: Optional[float] = None) -> Dict[str, Any]:
    if idempotency_key:
        existing = db["order"].find_one({"customer_id": user_id, "idempotency_key": idempotency_key})
        if existing:
            logger.info("Replaying order %s for idempotency key %s", existing["order_number"], idempotency_key)
            return existing

    items = list(items)
    if not items:
        raise InvalidRequestError("Order items are required", "empty_order")
    lines = snapshot_lines(db, items)
    subtotal = float(sum(pricing.money(l["total"]) for l in lines))

    promo = None
    if promo_code:
        promo, _ = promo_codes.evaluate(db, promo_code, user_id, subtotal, lines)
    breakdown = pricing.price_order(subtotal, delivery_method, promo)
    if total_amount is not None and pricing.money(total_amount) != pricing.money(breakdown.total):
        logger.warning("Client total %s differs from computed total %s for %s; using computed",
                       total_amount, breakdown.total, user_id)

    order_id = ObjectId()
    now = now_utc()
    status = "confirmed" if confirmed else "pending"
    delivery_status = "confirmed" if confirmed else "pending"
    doc = Order(
        order_number=generate_order_number(),
        customer_id=user_id,
        items=lines,
        promo_code=OrderPromoCode(promo_code_id=str(promo["_id"]), code=promo["code"], type=promo["type"]) if promo else None,
        payment=Payment(method=payment_method, amount=breakdown.total),
        delivery=Delivery(method=delivery_method, status=delivery_status, address=address),
        status=status,
        source=source,
        customer_notes=customer_notes,
        idempotency_key=idempotency_key,
        status_history=[{
            "event": "created",
            "status": status,
            "payment_status": "pending",
            "delivery_status": delivery_status,
            "at": now,
        }],
        **breakdown.model_dump(),
    ).model_dump()
    pricing.check_totals(doc)
    doc.update({"_id": order_id, "created_at": now, "updated_at": now})

    done: List[Callable[[], None]] = []
    try:
        reserved = inventory.reserve_lines(db, lines)
        done.append(lambda: inventory.restore_lines(db, reserved))
        if promo is not None:
            promo_codes.redeem(db, promo, user_id, str(order_id))
            done.append(lambda: promo_codes.release(db, str(promo["_id"]), str(order_id)))
        _insert(db, doc)
    except Exception:
        if done:
            logger.warning("Placing order for %s failed, undoing %d step(s)", user_id, len(done))
        _compensate(done)
        raise

    logger.info("Created order %s for %s: total %.2f", doc["order_number"], user_id, doc["total"])
    return doc


def checkout(db: Database, user_id: str, cart_items: Optional[List[Any]] = None,
             payment_method: str = "cash_on_delivery", delivery_method: str = "home_delivery",
             promo_code: Optional[str] = None, **kwargs: Any) -> Dict[str, Any]:
    """Order from the cart, created confirmed; the cart is emptied afterwards."""
    cart = carts.get_cart(db, user_id)
    items = cart_items if cart_items else (cart or {}).get("items", [])
    if not promo_code and cart and cart.get("promo_code"):
        promo_code = cart["promo_code"]["code"]
    order = create_order(db, user_id, items, payment_method, delivery_method, promo_code,
                         confirmed=True, **kwargs)
    carts.clear_cart(db, user_id)
    return order

# ---------------------- Transitions ----------------------

def apply_event(db: Database, order_id: str, event: str, transaction_id: Optional[str] = None,
                tracking_number: Optional[str] = None, carrier: Optional[str] = None,
                notes: Optional[str] = None, actor: Optional[str] = None) -> Dict[str, Any]:
    order = get_order(db, order_id)
    state = state_of(order)
    nxt = next_state(state, event)
    if event in PICKUP_EVENTS and order["delivery"]["method"] != "store_pickup":
        raise InvalidTransitionError(f"Cannot apply {event} to a {order['delivery']['method']} order")
    now = now_utc()

    sets: Dict[str, Any] = {
        "status": nxt.status,
        "payment.status": nxt.payment_status,
        "delivery.status": nxt.delivery_status,
        "updated_at": now,
    }
    if transaction_id:
        sets["payment.transaction_id"] = transaction_id
    if nxt.payment_status == "completed" and state.payment_status != "completed":
        sets["payment.payment_date"] = now
    if tracking_number:
        sets["delivery.tracking_number"] = tracking_number
    if carrier:
        sets["delivery.carrier"] = carrier
    if nxt.delivery_status == "delivered":
        sets["delivery.actual_delivery"] = now
    if nxt.status == "ready_for_pickup" and not order["delivery"].get("pickup_code"):
        sets["delivery.pickup_code"] = generate_pickup_code(db)

    entry = {
        "event": event,
        "status": nxt.status,
        "payment_status": nxt.payment_status,
        "delivery_status": nxt.delivery_status,
        "at": now,
        "notes": notes,
        "actor": actor,
    }
    res = db["order"].update_one(
        {
            "_id": order["_id"],
            "status": state.status,
            "payment.status": state.payment_status,
            "delivery.status": state.delivery_status,
        },
        {"$set": sets, "$push": {"status_history": entry}},
    )
    if res.modified_count == 0:
        raise ConflictError("Order was updated by another request, please retry", "concurrent_update")

    if nxt.status == "cancelled":
        inventory.restore_lines(db, order["items"])
        if order.get("promo_code"):
            promo_codes.release(db, order["promo_code"]["promo_code_id"], str(order["_id"]))

    logger.info("Order %s: %s -> %s (payment %s, delivery %s)", order["order_number"], state.status,
                nxt.status, nxt.payment_status, nxt.delivery_status)
    updated = get_order(db, order_id)
    pricing.check_totals(updated)
    return updated


def update_status(db: Database, order_id: str, status: Optional[str] = None, payment_status: Optional[str] = None,
                  delivery_status: Optional[str] = None, event: Optional[str] = None, **kwargs: Any) -> Dict[str, Any]:
    order = get_order(db, order_id)
    events = [event] if event else events_for(order, status, payment_status, delivery_status)
    if not events:
        raise InvalidRequestError("Nothing to update", "no_change")
    for ev in events:
        order = apply_event(db, order_id, ev, **kwargs)
    return order


def cancel_order(db: Database, order_id: str, user_id: str) -> Dict[str, Any]:
    order = get_order(db, order_id, user_id=user_id)
    if order["status"] != "pending":
        raise InvalidRequestError("Only pending orders can be cancelled", "not_cancellable")
    return apply_event(db, order_id, "cancel", notes="Cancelled by customer", actor=user_id)

# ---------------------- Store pickup ----------------------

def verify_pickup(db: Database, code: str) -> Dict[str, Any]:
    if not code or len(code) != 4 or not code.isdigit():
        raise InvalidRequestError("Invalid pickup code format. Must be 4 digits.", "invalid_pickup_code")
    order = db["order"].find_one({
        "delivery.method": "store_pickup",
        "delivery.pickup_code": code,
        "status": "ready_for_pickup",
    })
    if not order:
        raise NotFoundError("Pickup code not found or order not ready for pickup.", "pickup_not_found")
    return order


def complete_pickup(db: Database, code: str, notes: Optional[str] = None, actor: Optional[str] = None) -> Dict[str, Any]:
    order = verify_pickup(db, code)
    done = apply_event(db, str(order["_id"]), "pick_up", notes=notes or "Order picked up successfully", actor=actor)
    logger.info("Order %s picked up with code %s", done["order_number"], code)
    return done


def pending_pickups(db: Database) -> List[Dict[str, Any]]:
    return list(db["order"].find({
        "delivery.method": "store_pickup",
        "status": {"$in": list(OPEN_PICKUP_STATUSES)},
    }).sort("created_at", DESCENDING))


def pickup_history(db: Database, limit: int = 50) -> List[Dict[str, Any]]:
    return list(db["order"].find({
        "delivery.method": "store_pickup",
        "status": "delivered",
    }).sort("delivery.actual_delivery", DESCENDING).limit(limit))

# ---------------------- Read side ----------------------

def get_order(db: Database, order_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
    filt: Dict[str, Any] = {"_id": oid(order_id, "order ID")}
    if user_id is not None:
        filt["customer_id"] = user_id
    order = db["order"].find_one(filt)
    if not order:
        raise NotFoundError("Order not found", "order_not_found")
    return order


def list_customer_orders(db: Database, user_id: str, status: Optional[str] = None) -> List[Dict[str, Any]]:
    filt: Dict[str, Any] = {"customer_id": user_id}
    if status:
        filt["status"] = status
    return list(db["order"].find(filt).sort("created_at", DESCENDING))


def list_orders(db: Database, page: int = 1, limit: int = 50, status: Optional[str] = None,
                payment_status: Optional[str] = None, sort_by: str = "created_at",
                sort_order: str = "desc") -> Dict[str, Any]:
    filt: Dict[str, Any] = {}
    if status and status != "all":
        filt["status"] = status
    if payment_status and payment_status != "all":
        filt["payment.status"] = payment_status
    page = max(page, 1)
    skip = (page - 1) * limit
    direction = DESCENDING if sort_order == "desc" else ASCENDING
    found = list(db["order"].find(filt).sort(sort_by, direction).skip(skip).limit(limit))
    total = db["order"].count_documents(filt)
    total_pages = -(-total // limit) if limit else 0
    return {
        "orders": found,
        "pagination": {
            "current_page": page,
            "total_pages": total_pages,
            "total_orders": total,
            "has_next_page": page < total_pages,
            "has_prev_page": page > 1,
        },
    }


def order_counts(db: Database) -> Dict[str, int]:
    counts = {s: db["order"].count_documents({"status": s}) for s in ORDER_STATUSES}
    counts["total"] = db["order"].count_documents({})
    return counts
