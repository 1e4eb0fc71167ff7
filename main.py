import asyncio
import contextlib
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, List, Literal, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pymongo.database import Database
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import alerts
import carts
import catalog
import database
import inventory
import orders
import promo_codes
from config import ADMIN_KEY, CART_SWEEP_INTERVAL, LOG_LEVEL
from database import ensure_indexes, get_db, now_utc, serialize
from errors import StoreError
from schemas import Address, DeliveryMethod, PaymentMethod, Product, PromoCode, PromoType, UserRestrictions, Variant

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("dollerselectro")

# ---------------------- Lifespan ----------------------

async def _sweep_expired_carts(db: Database, interval: float = CART_SWEEP_INTERVAL):
    while True:
        await asyncio.sleep(interval)
        try:
            await run_in_threadpool(carts.clean_expired, db)
        except Exception:
            logger.exception("Expired cart sweep failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    sweeper = None
    if database.db is not None:
        ensure_indexes(database.db)
        sweeper = asyncio.create_task(_sweep_expired_carts(database.db))
    else:
        logger.warning("DATABASE_URL / DATABASE_NAME not set; running without a database")
    yield
    if sweeper is not None:
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper


app = FastAPI(title="DollersElectro API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------- Errors & Utilities ----------------------

@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": exc.detail})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    problems = [f"{'.'.join(str(p) for p in e['loc'] if p != 'body')}: {e['msg']}" for e in exc.errors()]
    return JSONResponse(status_code=400, content={"success": False, "message": "; ".join(problems)})


def ok(data: Any = None, message: str = "OK") -> Dict[str, Any]:
    return {"success": True, "message": message, "data": serialize(data)}


def require_admin(x_admin_key: Optional[str] = Header(None)):
    if x_admin_key != ADMIN_KEY:
        raise HTTPException(401, "Unauthorized")

# ---------------------- Models ----------------------

class ProductUpdateBody(BaseModel):
    sku: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    low_stock_threshold: Optional[int] = Field(None, ge=0)
    category: Optional[str] = None
    images: Optional[List[Dict[str, str]]] = None
    tags: Optional[List[str]] = None
    is_active: Optional[bool] = None
    is_featured: Optional[bool] = None


class StockBody(BaseModel):
    quantity: int = Field(..., ge=1)
    operation: Literal["increase", "decrease"] = "decrease"


class AddToCartBody(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)
    variant: Optional[Variant] = None


class UpdateCartBody(BaseModel):
    quantity: int
    variant: Optional[Variant] = None


class PromoCodeBody(BaseModel):
    code: str


class PromoCodeUpdateBody(BaseModel):
    code: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    type: Optional[PromoType] = None
    value: Optional[float] = Field(None, ge=0)
    minimum_order_amount: Optional[float] = Field(None, ge=0)
    maximum_discount: Optional[float] = Field(None, ge=0)
    usage_limit: Optional[int] = Field(None, ge=-1)
    user_usage_limit: Optional[int] = Field(None, ge=1)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    is_active: Optional[bool] = None
    applicable_categories: Optional[List[str]] = None
    excluded_categories: Optional[List[str]] = None
    applicable_products: Optional[List[str]] = None
    excluded_products: Optional[List[str]] = None
    user_restrictions: Optional[UserRestrictions] = None


class OrderLineBody(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)


class OrderData(BaseModel):
    subtotal: float = Field(..., ge=0)
    user_type: Optional[Literal["new", "existing"]] = None
    items: List[OrderLineBody] = []


class ValidatePromoBody(BaseModel):
    code: str
    order_data: OrderData


class CreateOrderBody(BaseModel):
    items: List[OrderLineBody]
    total_amount: float = Field(..., gt=0)
    payment_method: PaymentMethod = "cash_on_delivery"
    delivery_method: DeliveryMethod = "home_delivery"
    promo_code: Optional[str] = None
    address: Optional[Address] = None
    customer_notes: Optional[str] = None


class CheckoutBody(BaseModel):
    cart_items: Optional[List[OrderLineBody]] = None
    payment_method: PaymentMethod = "cash_on_delivery"
    delivery_method: DeliveryMethod = "home_delivery"
    promo_code: Optional[str] = None
    address: Optional[Address] = None
    customer_notes: Optional[str] = None


class OrderStatusBody(BaseModel):
    status: Optional[str] = None
    payment_status: Optional[str] = None
    delivery_status: Optional[str] = None
    event: Optional[str] = None
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    transaction_id: Optional[str] = None
    notes: Optional[str] = None


class PaymentBody(BaseModel):
    status: Literal["completed", "failed"]
    transaction_id: Optional[str] = None


class PickupBody(BaseModel):
    notes: Optional[str] = None


class AlertNotesBody(BaseModel):
    notes: Optional[str] = None

# ---------------------- Root & Health ----------------------

@app.get("/")
def read_root():
    return {"message": "DollersElectro API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    if database.db is not None:
        response["database"] = "✅ Available"
        response["database_name"] = database.db.name
        response["connection_status"] = "Connected"
        try:
            response["collections"] = database.db.list_collection_names()
            response["database"] = "✅ Connected & Working"
        except PyMongoError as e:
            response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
    return response

# ---------------------- Products ----------------------

@app.get("/api/products")
def list_products(q: Optional[str] = None, category: Optional[str] = None,
                  min_price: Optional[float] = None, max_price: Optional[float] = None,
                  featured: Optional[bool] = None, in_stock: Optional[bool] = None,
                  limit: int = Query(50, ge=1, le=200), db: Database = Depends(get_db)):
    return ok(catalog.list_products(db, q, category, min_price, max_price, featured, in_stock, limit=limit))


@app.get("/api/products/{pid}")
def get_product(pid: str, db: Database = Depends(get_db)):
    return ok(catalog.present(catalog.get_product(db, pid, active_only=True)))


@app.post("/api/admin/products", status_code=201, dependencies=[Depends(require_admin)])
def admin_create_product(body: Product, db: Database = Depends(get_db)):
    return ok({"_id": catalog.create_product(db, body)}, "Product created")


@app.put("/api/admin/products/{pid}", dependencies=[Depends(require_admin)])
def admin_update_product(pid: str, body: ProductUpdateBody, db: Database = Depends(get_db)):
    return ok(catalog.present(catalog.update_product(db, pid, body.model_dump(exclude_unset=True))), "Product updated")


@app.delete("/api/admin/products/{pid}", dependencies=[Depends(require_admin)])
def admin_delete_product(pid: str, db: Database = Depends(get_db)):
    catalog.delete_product(db, pid)
    return ok(message="Product deleted")


@app.post("/api/admin/products/{pid}/stock", dependencies=[Depends(require_admin)])
def admin_update_stock(pid: str, body: StockBody, db: Database = Depends(get_db)):
    prod = inventory.update_stock(db, pid, body.quantity, body.operation)
    return ok(catalog.present(prod), "Stock updated")

# ---------------------- Cart ----------------------

@app.get("/api/cart")
def get_cart(user_id: str = Query(...), db: Database = Depends(get_db)):
    return ok(carts.cart_view(db, carts.get_cart(db, user_id), user_id))


@app.post("/api/cart")
def add_to_cart(body: AddToCartBody, user_id: str = Query(...), db: Database = Depends(get_db)):
    cart = carts.add_item(db, user_id, body.product_id, body.quantity, body.variant)
    return ok(carts.cart_view(db, cart), "Item added to cart")


@app.delete("/api/cart")
def clear_cart(user_id: str = Query(...), db: Database = Depends(get_db)):
    carts.clear_cart(db, user_id)
    return ok(carts.cart_view(db, None, user_id), "Cart cleared")


@app.get("/api/cart/validate")
def validate_cart(user_id: str = Query(...), db: Database = Depends(get_db)):
    cart = carts.get_cart(db, user_id)
    problems = carts.validate_stock(db, cart) if cart else []
    return ok({"valid": not problems, "errors": problems})


@app.post("/api/cart/promo-code")
def apply_cart_promo(body: PromoCodeBody, user_id: str = Query(...), db: Database = Depends(get_db)):
    return ok(carts.cart_view(db, carts.apply_promo_code(db, user_id, body.code)), "Promo code applied")


@app.delete("/api/cart/promo-code")
def remove_cart_promo(user_id: str = Query(...), db: Database = Depends(get_db)):
    return ok(carts.cart_view(db, carts.remove_promo_code(db, user_id)), "Promo code removed")


@app.put("/api/cart/{product_id}")
def update_cart_item(product_id: str, body: UpdateCartBody, user_id: str = Query(...), db: Database = Depends(get_db)):
    cart = carts.update_item_quantity(db, user_id, product_id, body.quantity, body.variant)
    return ok(carts.cart_view(db, cart), "Cart updated")


@app.delete("/api/cart/{product_id}")
def remove_cart_item(product_id: str, user_id: str = Query(...), db: Database = Depends(get_db)):
    return ok(carts.cart_view(db, carts.remove_item(db, user_id, product_id)), "Item removed from cart")


@app.post("/api/admin/carts/cleanup", dependencies=[Depends(require_admin)])
def cleanup_carts(db: Database = Depends(get_db)):
    return ok({"deleted": carts.clean_expired(db)}, "Expired carts removed")

# ---------------------- Promo codes ----------------------

@app.get("/api/promo-codes/available")
def available_promo_codes(db: Database = Depends(get_db)):
    return ok(promo_codes.list_active_codes(db))


@app.post("/api/promo-codes/validate")
def validate_promo_code(body: ValidatePromoBody, user_id: Optional[str] = Query(None), db: Database = Depends(get_db)):
    lines = orders.snapshot_lines(db, body.order_data.items) if body.order_data.items else []
    promo, discount = promo_codes.evaluate(db, body.code, user_id, body.order_data.subtotal, lines,
                                           body.order_data.user_type)
    return ok({"promo_code": {
        "_id": promo["_id"],
        "code": promo["code"],
        "name": promo.get("name"),
        "type": promo["type"],
        "value": promo["value"],
        "discount": discount,
    }}, "Promo code is valid")


@app.get("/api/admin/promo-codes", dependencies=[Depends(require_admin)])
def admin_list_promo_codes(status: str = "all", search: Optional[str] = None,
                           page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                           db: Database = Depends(get_db)):
    return ok(promo_codes.list_promo_codes(db, status, search, page, limit))


@app.post("/api/admin/promo-codes", status_code=201, dependencies=[Depends(require_admin)])
def admin_create_promo_code(body: PromoCode, x_user_id: Optional[str] = Header(None),
                            db: Database = Depends(get_db)):
    return ok(promo_codes.create_promo_code(db, body, x_user_id), "Promo code created successfully")


@app.get("/api/admin/promo-codes/analytics/usage", dependencies=[Depends(require_admin)])
def admin_promo_analytics(start_date: Optional[datetime] = None, end_date: Optional[datetime] = None,
                          db: Database = Depends(get_db)):
    return ok(promo_codes.usage_analytics(db, start_date, end_date))


@app.get("/api/admin/promo-codes/{promo_id}", dependencies=[Depends(require_admin)])
def admin_get_promo_code(promo_id: str, db: Database = Depends(get_db)):
    return ok(promo_codes.get_promo_code(db, promo_id))


@app.put("/api/admin/promo-codes/{promo_id}", dependencies=[Depends(require_admin)])
def admin_update_promo_code(promo_id: str, body: PromoCodeUpdateBody, db: Database = Depends(get_db)):
    changes = body.model_dump(exclude_unset=True)
    return ok(promo_codes.update_promo_code(db, promo_id, changes), "Promo code updated")


@app.delete("/api/admin/promo-codes/{promo_id}", dependencies=[Depends(require_admin)])
def admin_delete_promo_code(promo_id: str, db: Database = Depends(get_db)):
    promo_codes.delete_promo_code(db, promo_id)
    return ok(message="Promo code deleted")


@app.patch("/api/admin/promo-codes/{promo_id}/toggle", dependencies=[Depends(require_admin)])
def admin_toggle_promo_code(promo_id: str, db: Database = Depends(get_db)):
    promo = promo_codes.toggle_promo_code(db, promo_id)
    state = "activated" if promo["is_active"] else "deactivated"
    return ok(promo, f"Promo code {state}")

# ---------------------- Orders ----------------------

@app.post("/api/orders", status_code=201)
def create_order(body: CreateOrderBody, user_id: str = Query(...),
                 idempotency_key: Optional[str] = Header(None), db: Database = Depends(get_db)):
    order = orders.create_order(
        db, user_id, body.items, body.payment_method, body.delivery_method, body.promo_code,
        address=body.address, customer_notes=body.customer_notes,
        idempotency_key=idempotency_key, total_amount=body.total_amount,
    )
    return ok(order, "Order created successfully")


@app.post("/api/orders/checkout", status_code=201)
def checkout(body: CheckoutBody, user_id: str = Query(...),
             idempotency_key: Optional[str] = Header(None), db: Database = Depends(get_db)):
    order = orders.checkout(
        db, user_id, body.cart_items, body.payment_method, body.delivery_method, body.promo_code,
        address=body.address, customer_notes=body.customer_notes, idempotency_key=idempotency_key,
    )
    return ok({
        "order": order,
        "order_number": order["order_number"],
        "total": order["total"],
        "status": order["status"],
    }, "Order placed successfully")


@app.get("/api/orders")
def list_my_orders(user_id: str = Query(...), status: Optional[str] = None, db: Database = Depends(get_db)):
    return ok(orders.list_customer_orders(db, user_id, status))


@app.get("/api/orders/pickup/pending", dependencies=[Depends(require_admin)])
def pending_pickups(db: Database = Depends(get_db)):
    found = orders.pending_pickups(db)
    return ok({"orders": found, "count": len(found)})


@app.get("/api/orders/pickup/history", dependencies=[Depends(require_admin)])
def pickup_history(limit: int = Query(50, ge=1, le=200), db: Database = Depends(get_db)):
    found = orders.pickup_history(db, limit)
    return ok({"orders": found, "count": len(found)})


@app.get("/api/orders/pickup/verify/{code}", dependencies=[Depends(require_admin)])
def verify_pickup(code: str, db: Database = Depends(get_db)):
    return ok(orders.verify_pickup(db, code), "Pickup code verified")


@app.post("/api/orders/pickup/complete/{code}", dependencies=[Depends(require_admin)])
def complete_pickup(code: str, body: Optional[PickupBody] = None, x_user_id: Optional[str] = Header(None),
                    db: Database = Depends(get_db)):
    notes = body.notes if body else None
    return ok(orders.complete_pickup(db, code, notes, actor=x_user_id), "Order pickup completed successfully")


@app.get("/api/orders/{order_id}")
def get_my_order(order_id: str, user_id: str = Query(...), db: Database = Depends(get_db)):
    return ok(orders.get_order(db, order_id, user_id=user_id))


@app.delete("/api/orders/{order_id}")
def cancel_my_order(order_id: str, user_id: str = Query(...), db: Database = Depends(get_db)):
    return ok(orders.cancel_order(db, order_id, user_id), "Order cancelled successfully")


@app.put("/api/orders/{order_id}/status", dependencies=[Depends(require_admin)])
def update_order_status(order_id: str, body: OrderStatusBody, db: Database = Depends(get_db)):
    order = orders.update_status(
        db, order_id, body.status, body.payment_status, body.delivery_status, body.event,
        transaction_id=body.transaction_id, tracking_number=body.tracking_number,
        carrier=body.carrier, notes=body.notes, actor="admin",
    )
    return ok(order, "Order status updated successfully")


@app.post("/api/orders/{order_id}/payment", dependencies=[Depends(require_admin)])
def record_payment(order_id: str, body: PaymentBody, db: Database = Depends(get_db)):
    event = "payment_completed" if body.status == "completed" else "payment_failed"
    return ok(orders.apply_event(db, order_id, event, transaction_id=body.transaction_id), "Payment recorded")


@app.get("/api/admin/orders", dependencies=[Depends(require_admin)])
def admin_list_orders(page: int = Query(1, ge=1), limit: int = Query(50, ge=1, le=200),
                      status: Optional[str] = None, payment_status: Optional[str] = None,
                      sort_by: Literal["created_at", "total", "order_number", "status"] = "created_at",
                      sort_order: Literal["asc", "desc"] = "desc", db: Database = Depends(get_db)):
    return ok(orders.list_orders(db, page, limit, status, payment_status, sort_by, sort_order))


@app.get("/api/admin/orders/count", dependencies=[Depends(require_admin)])
def admin_order_counts(db: Database = Depends(get_db)):
    return ok(orders.order_counts(db))


@app.get("/api/admin/orders/{order_id}", dependencies=[Depends(require_admin)])
def admin_get_order(order_id: str, db: Database = Depends(get_db)):
    return ok(orders.get_order(db, order_id))

# ---------------------- Low-stock alerts ----------------------

@app.get("/api/low-stock-alerts", dependencies=[Depends(require_admin)])
def list_low_stock_alerts(status: str = "active", priority: Optional[str] = None, alert_type: Optional[str] = None,
                          page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                          db: Database = Depends(get_db)):
    return ok(alerts.list_alerts(db, status, priority, alert_type, page, limit))


@app.get("/api/low-stock-alerts/stats", dependencies=[Depends(require_admin)])
def low_stock_stats(db: Database = Depends(get_db)):
    return ok({"stats": alerts.alert_stats(db), "active_alerts": alerts.list_alerts(db)["alerts"]})


@app.get("/api/low-stock-alerts/dashboard", dependencies=[Depends(require_admin)])
def low_stock_dashboard(db: Database = Depends(get_db)):
    return ok(alerts.dashboard(db))


@app.post("/api/low-stock-alerts/check", dependencies=[Depends(require_admin)])
def check_low_stock(db: Database = Depends(get_db)):
    result = alerts.check_low_stock(db)
    message = f"Checked {result['products_checked']} products and created {result['alerts_created']} alerts"
    return ok(result, message)


@app.put("/api/low-stock-alerts/{alert_id}/acknowledge", dependencies=[Depends(require_admin)])
def acknowledge_alert(alert_id: str, body: AlertNotesBody, x_user_id: Optional[str] = Header(None),
                      db: Database = Depends(get_db)):
    return ok(alerts.acknowledge(db, alert_id, x_user_id, body.notes), "Alert acknowledged successfully")


@app.put("/api/low-stock-alerts/{alert_id}/resolve", dependencies=[Depends(require_admin)])
def resolve_alert(alert_id: str, body: AlertNotesBody, x_user_id: Optional[str] = Header(None),
                  db: Database = Depends(get_db)):
    return ok(alerts.resolve(db, alert_id, x_user_id, body.notes), "Alert resolved successfully")


@app.put("/api/low-stock-alerts/{alert_id}/dismiss", dependencies=[Depends(require_admin)])
def dismiss_alert(alert_id: str, body: AlertNotesBody, x_user_id: Optional[str] = Header(None),
                  db: Database = Depends(get_db)):
    return ok(alerts.dismiss(db, alert_id, x_user_id, body.notes), "Alert dismissed successfully")


@app.delete("/api/low-stock-alerts/{alert_id}", dependencies=[Depends(require_admin)])
def delete_alert(alert_id: str, db: Database = Depends(get_db)):
    alerts.delete_alert(db, alert_id)
    return ok(message="Alert deleted successfully")

# ---------------------- Seed Demo Data ----------------------

@app.post("/api/admin/seed", dependencies=[Depends(require_admin)])
def seed(db: Database = Depends(get_db)):
    if db["product"].count_documents({}) == 0:
        demo = []
        for i, category in enumerate(["Lighting", "Tools", "Cables", "Switches", "Sensors", "Safety Equipment"], 1):
            demo.append({
                "sku": f"DE-{category[:3].upper()}-{i:03d}",
                "name": f"{category} Essential {i}",
                "description": "Reliable electrical supply for home and trade use.",
                "price": 9.99 + i * 5,
                "stock": 3 * i,
                "low_stock_threshold": 10,
                "category": category,
                "images": [{"url": f"https://picsum.photos/seed/de{i}/600/400", "alt": "Product image"}],
                "tags": ["new"],
                "is_active": True,
                "is_featured": i <= 3,
                "rating": 0.0,
                "review_count": 0,
                "created_at": now_utc(),
                "updated_at": now_utc(),
            })
        db["product"].insert_many(demo)
    if db["promo_code"].count_documents({}) == 0:
        promo_codes.create_promo_code(db, PromoCode(
            code="WELCOME10",
            name="Welcome discount",
            type="percentage",
            value=10,
            maximum_discount=50,
            valid_until=now_utc() + timedelta(days=90),
            user_restrictions=UserRestrictions(new_users_only=True),
        ))
    return ok(message="Seeded")


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
