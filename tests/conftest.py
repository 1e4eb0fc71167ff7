import uuid
from datetime import timedelta

import mongomock
import pytest
from fastapi.testclient import TestClient

import main
from database import ensure_indexes, get_db, now_utc

ADMIN = {"X-Admin-Key": "demo-admin-key"}


@pytest.fixture
def db():
    database = mongomock.MongoClient()[f"test_{uuid.uuid4().hex}"]
    ensure_indexes(database)
    return database


@pytest.fixture
def client(db):
    main.app.dependency_overrides[get_db] = lambda: db
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def make_product(db):
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        doc = {
            "sku": f"SKU-{counter['n']:03d}",
            "name": f"Product {counter['n']}",
            "description": "",
            "price": 10.0,
            "stock": 10,
            "low_stock_threshold": 10,
            "category": "Lighting",
            "images": [{"url": f"https://img.example/{counter['n']}.png"}],
            "is_active": True,
            "is_featured": False,
            "created_at": now_utc(),
            "updated_at": now_utc(),
        }
        doc.update(overrides)
        return str(db["product"].insert_one(doc).inserted_id)

    return _make


@pytest.fixture
def make_promo(db):
    def _make(**overrides):
        doc = {
            "code": "SAVE10",
            "name": "Ten percent off",
            "type": "percentage",
            "value": 10,
            "minimum_order_amount": 0,
            "maximum_discount": None,
            "usage_limit": -1,
            "used_count": 0,
            "user_usage_limit": 1,
            "valid_from": now_utc() - timedelta(days=1),
            "valid_until": now_utc() + timedelta(days=30),
            "is_active": True,
            "applicable_categories": [],
            "excluded_categories": [],
            "applicable_products": [],
            "excluded_products": [],
            "user_restrictions": {"new_users_only": False, "existing_users_only": False, "specific_users": []},
            "created_at": now_utc(),
            "updated_at": now_utc(),
        }
        doc.update(overrides)
        db["promo_code"].insert_one(doc)
        return doc

    return _make
