import os

os.environ["DATABASE_URL"] = "mongodb://localhost:27017"
os.environ["DATABASE_NAME"] = "lanka_chemist_test"
os.environ["JWT_SECRET"] = "test-secret-that-is-long-enough-for-hs256"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["APP_ENV"] = "test"
os.environ.pop("SMTP_HOST", None)
os.environ.pop("ADMIN_EMAIL", None)

import mongomock  # noqa: E402
import pymongo  # noqa: E402

# swap the real client out before database.py builds its module-level handle
pymongo.MongoClient = mongomock.MongoClient

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

import admin as admin_api  # noqa: E402
import database  # noqa: E402
import delivery  # noqa: E402
import main  # noqa: E402
import notifications  # noqa: E402
import orders  # noqa: E402
import settings  # noqa: E402
import storage  # noqa: E402
from auth import hash_password, login_limiter, sign_admin_token, sign_customer_token  # noqa: E402
from database import create_document, utcnow  # noqa: E402

PASSWORD = "Secret123"


@pytest.fixture(autouse=True)
def clean_state():
    for name in database.db.list_collection_names():
        database.db.drop_collection(name)
    database.ensure_indexes()
    delivery.store_location_cache.clear()
    delivery.address_quote_cache.clear()
    login_limiter.reset()
    yield


@pytest.fixture(autouse=True)
def object_store(monkeypatch):
    """In-memory replacement for the GridFS bucket."""
    store = {}

    def put_object(key, data, content_type):
        store[key] = data
        return key

    monkeypatch.setattr(storage, "put_object", put_object)
    monkeypatch.setattr(notifications, "put_object", put_object)
    monkeypatch.setattr(storage, "get_object", store.get)
    monkeypatch.setattr(orders, "get_object", store.get)
    monkeypatch.setattr(admin_api, "get_object", store.get)
    return store


@pytest.fixture
def db():
    return database.db


@pytest.fixture
def client():
    return TestClient(main.app)


@pytest.fixture
def make_customer():
    counter = {"n": 0}

    def _make(status="approved", email=None, customer_type="pharmacy", is_active=True, **extra):
        counter["n"] += 1
        doc = {
            "email": email or f"buyer{counter['n']}@example.com",
            "password_hash": hash_password(PASSWORD),
            "customer_type": customer_type,
            "contact_name": f"Buyer {counter['n']}",
            "business_name": f"Pharmacy {counter['n']}",
            "nmra_license_number": "NMRA-1234",
            "phone": "0771234567",
            "status": status,
            "is_active": is_active,
        }
        doc.update(extra)
        customer_id = create_document("customer", doc)
        return database.find_by_id("customer", customer_id)

    return _make


@pytest.fixture
def make_product():
    counter = {"n": 0}

    def _make(price=100.0, stock=10, **extra):
        counter["n"] += 1
        doc = {
            "sku": f"SKU-{counter['n']:03d}",
            "generic_name": f"Generic {counter['n']}",
            "brand_name": f"Brand {counter['n']}",
            "section": "medicines",
            "wholesale_price": price,
            "stock_quantity": stock,
            "low_stock_threshold": 10,
            "is_prescription": False,
            "is_active": True,
            "is_visible": True,
            "total_sold": 0,
        }
        doc.update(extra)
        product_id = create_document("product", doc)
        return database.find_by_id("product", product_id)

    return _make


@pytest.fixture
def make_address():
    def _make(customer, latitude=None, longitude=None, is_default=True, **extra):
        doc = {
            "customer_id": str(customer["_id"]),
            "label": "Shop",
            "address_line1": "12 Main Street",
            "city": "Colombo",
            "district": "Colombo",
            "latitude": latitude,
            "longitude": longitude,
            "is_default": is_default,
        }
        doc.update(extra)
        address_id = create_document("address", doc)
        return database.find_by_id("address", address_id)

    return _make


@pytest.fixture
def add_to_cart():
    def _add(customer, product, quantity):
        return create_document("cartitem", {
            "customer_id": str(customer["_id"]),
            "product_id": str(product["_id"]),
            "quantity": quantity,
        })

    return _add


@pytest.fixture
def customer(make_customer):
    return make_customer()


@pytest.fixture
def login_as(client):
    def _login(customer):
        client.cookies.set(settings.CUSTOMER_COOKIE, sign_customer_token(str(customer["_id"]), customer["email"]))
        return client

    return _login


@pytest.fixture
def customer_client(login_as, customer):
    return login_as(customer)


@pytest.fixture
def admin():
    admin_id = create_document("adminuser", {
        "email": "admin@example.com",
        "password_hash": hash_password(PASSWORD),
        "name": "Store Admin",
        "is_active": True,
    })
    return database.find_by_id("adminuser", admin_id)


@pytest.fixture
def admin_client(client, admin):
    client.cookies.set(settings.ADMIN_COOKIE, sign_admin_token(str(admin["_id"]), admin["email"]))
    return client


@pytest.fixture
def store_location(db):
    def _set(lat, lng):
        now = utcnow()
        for key, value in (("store_latitude", lat), ("store_longitude", lng)):
            db["storesetting"].update_one(
                {"key": key},
                {"$set": {"value": str(value), "updated_at": now}},
                upsert=True,
            )

    return _set
