import hashlib
import itertools
import os
from datetime import timedelta

import mongomock

os.environ["DATABASE_URL"] = "mongodb://localhost:27017"
os.environ["DATABASE_NAME"] = "farmmarket_test"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["PAYHERE_MERCHANT_ID"] = "1211149"
os.environ["PAYHERE_MERCHANT_SECRET"] = "merchant-secret"

# Must be active before database.py builds its MongoClient.
_mongo = mongomock.patch(servers=(("localhost", 27017),))
_mongo.start()

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

import database  # noqa: E402
from auth import create_token, hash_password  # noqa: E402
from main import app  # noqa: E402

MERCHANT_ID = "1211149"
MERCHANT_SECRET = "merchant-secret"
PASSWORD = "secret123"

_counter = itertools.count(1)
_password_hash = hash_password(PASSWORD)


@pytest.fixture(autouse=True)
def clean_db():
    for name in database.db.list_collection_names():
        database.db.drop_collection(name)
    database.ensure_indexes()
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def make_user():
    def _make(type="customer", **fields):
        n = next(_counter)
        doc = {
            "email": f"{type}{n}@example.com",
            "password_hash": _password_hash,
            "type": type,
            "first_name": type.title(),
            "last_name": str(n),
            "name": f"{type.title()} {n}",
            "phone": "0771234567",
            "is_blocked": False,
            "subscription_paid": False,
            "farmer_status": "",
        }
        doc.update(fields)
        doc["_id"] = database.db["user"].insert_one(dict(doc)).inserted_id
        return doc
    return _make


def headers_for(user):
    return {"Authorization": f"Bearer {create_token(user)}"}


@pytest.fixture
def headers():
    return headers_for


@pytest.fixture
def admin(make_user):
    return make_user("admin")


@pytest.fixture
def customer(make_user):
    return make_user("customer")


@pytest.fixture
def farmer(make_user):
    return make_user(
        "farmer",
        farm_name="Green Acres",
        farm_location="Kandy",
        subscription_paid=True,
        farmer_status="approved",
    )


@pytest.fixture
def make_product(farmer):
    def _make(name="Carrots", stock=10, price=100.0, days=30, owner=None, **fields):
        now = database.utcnow()
        doc = {
            "product_id": f"product-{next(_counter):09d}",
            "product_name": name,
            "alt_names": [],
            "description": "Fresh from the farm",
            "price": price,
            "last_price": price,
            "quantity_in_stock": stock,
            "expiry_date": now + timedelta(days=days),
            "images": ["https://img.example.com/p.jpg"],
            "owner": owner or str(farmer["_id"]),
            "created_at": now,
            "updated_at": now,
        }
        doc.update(fields)
        doc["_id"] = database.db["product"].insert_one(dict(doc)).inserted_id
        return doc
    return _make


@pytest.fixture
def make_order(customer):
    def _make(order_id, status="processing", items=None, email=None):
        now = database.utcnow()
        doc = {
            "order_id": order_id,
            "email": email or customer["email"],
            "name": "Nimal Perera",
            "address": "12 Temple Road, Colombo",
            "phone": "0771234567",
            "ordered_items": items or [
                {"name": "Carrots", "price": 100.0, "quantity": 2, "image": "img", "product_id": "product-x", "owner": None, "status": "pending"}
            ],
            "total": 200.0,
            "status": status,
            "notes": "",
            "date": now,
            "created_at": now,
            "updated_at": now,
        }
        database.db["order"].insert_one(doc)
        return doc
    return _make


def sign_notification(data, secret=MERCHANT_SECRET):
    hashed_secret = hashlib.md5(secret.encode()).hexdigest().upper()
    amount = f"{float(data['payhere_amount']):.2f}"
    raw = f"{data['merchant_id']}{data['order_id']}{amount}{data['payhere_currency']}{data['status_code']}{hashed_secret}"
    return hashlib.md5(raw.encode()).hexdigest().upper()


@pytest.fixture
def signed():
    def _signed(**fields):
        data = {
            "merchant_id": MERCHANT_ID,
            "payhere_currency": "LKR",
            "status_code": "2",
            "payment_id": f"PAY{next(_counter)}",
        }
        data.update(fields)
        data["md5sig"] = sign_notification(data)
        return data
    return _signed
