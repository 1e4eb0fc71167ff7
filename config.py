import os

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

ADMIN_KEY = os.getenv("ADMIN_KEY", "demo-admin-key")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# ---------------------- Pricing ----------------------

TAX_RATE = float(os.getenv("TAX_RATE", "0.10"))

SHIPPING_RATES = {
    "express_delivery": float(os.getenv("EXPRESS_SHIPPING", "15.00")),
    "home_delivery": float(os.getenv("HOME_SHIPPING", "5.00")),
    "store_pickup": float(os.getenv("PICKUP_SHIPPING", "0.00")),
}

# ---------------------- Cart ----------------------

CART_TTL_DAYS = int(os.getenv("CART_TTL_DAYS", "30"))
CART_SWEEP_INTERVAL = int(os.getenv("CART_SWEEP_INTERVAL", "600"))
CART_WRITE_ATTEMPTS = int(os.getenv("CART_WRITE_ATTEMPTS", "5"))

# ---------------------- Inventory & Orders ----------------------

DEFAULT_LOW_STOCK_THRESHOLD = int(os.getenv("DEFAULT_LOW_STOCK_THRESHOLD", "10"))
ORDER_NUMBER_ATTEMPTS = int(os.getenv("ORDER_NUMBER_ATTEMPTS", "5"))
PICKUP_CODE_ATTEMPTS = int(os.getenv("PICKUP_CODE_ATTEMPTS", "10"))
PROMO_REDEEM_ATTEMPTS = int(os.getenv("PROMO_REDEEM_ATTEMPTS", "5"))
