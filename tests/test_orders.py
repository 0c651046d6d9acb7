from datetime import date, timedelta

import mongomock
import pytest
from bson import ObjectId
from pymongo.errors import PyMongoError

import orders
from delivery import calculate_delivery_fee, haversine_km

PICKUP = {"delivery_method": "pickup", "payment_method": "cash_on_delivery"}


@pytest.fixture
def two_line_cart(customer, make_product, add_to_cart):
    first = make_product(price=100.0, stock=10)
    second = make_product(price=50.0, stock=10)
    add_to_cart(customer, first, 2)
    add_to_cart(customer, second, 1)
    return first, second


def test_pickup_order_totals(customer_client, customer, two_line_cart, db):
    first, second = two_line_cart

    res = customer_client.post("/api/orders", json=PICKUP)

    assert res.status_code == 201
    order = res.json()["order"]
    assert order["subtotal"] == 250.0
    assert order["delivery_fee"] == 0
    assert order["total"] == 250.0
    assert order["status"] == "new"
    assert order["payment_status"] == "pending"
    assert order["order_number"] == "LC-000001"
    assert sum(i["unit_price"] * i["quantity"] for i in order["items"]) == order["subtotal"]
    assert order["items"][0]["product_name"] == "Generic 1 (Brand 1)"


def test_order_decrements_stock_and_records_movements(customer_client, customer, two_line_cart, db):
    first, second = two_line_cart

    order_id = customer_client.post("/api/orders", json=PICKUP).json()["order"]["id"]

    after_first = db["product"].find_one({"_id": first["_id"]})
    after_second = db["product"].find_one({"_id": second["_id"]})
    assert after_first["stock_quantity"] == 8
    assert after_first["total_sold"] == 2
    assert after_second["stock_quantity"] == 9

    movements = list(db["stockmovement"].find({"reference_id": order_id}))
    assert len(movements) == 2
    assert {m["reason"] for m in movements} == {"sale"}
    first_move = next(m for m in movements if m["product_id"] == str(first["_id"]))
    assert (first_move["quantity_before"], first_move["quantity_after"]) == (10, 8)

    assert db["cartitem"].count_documents({"customer_id": str(customer["_id"])}) == 0
    assert db["orderitem"].count_documents({"order_id": order_id}) == 2


def test_placed_order_matches_stored_header(customer_client, two_line_cart):
    placed = customer_client.post("/api/orders", json=PICKUP).json()["order"]

    stored = customer_client.get(f"/api/orders/{placed['id']}").json()["order"]

    assert placed["created_at"] == stored["created_at"]
    assert placed["payment_status"] == stored["payment_status"] == "pending"
    assert len(placed["items"]) == 2


def test_order_numbers_increase(customer_client, customer, make_product, add_to_cart):
    product = make_product(stock=10)
    add_to_cart(customer, product, 1)
    customer_client.post("/api/orders", json=PICKUP)
    add_to_cart(customer, product, 1)
    second = customer_client.post("/api/orders", json=PICKUP).json()["order"]
    assert second["order_number"] == "LC-000002"


def test_invoice_is_generated_after_placement(customer_client, two_line_cart, db, object_store):
    order = customer_client.post("/api/orders", json=PICKUP).json()["order"]

    stored = db["order"].find_one({"_id": ObjectId(order["id"])})
    assert stored["invoice_key"] == "invoices/LC-000001.html"
    assert b"LC-000001" in object_store["invoices/LC-000001.html"]

    res = customer_client.get(f"/api/orders/{order['id']}/invoice")
    assert res.status_code == 200
    assert "attachment" in res.headers["content-disposition"]


def test_insufficient_stock_aborts_whole_order(customer_client, customer, make_product, add_to_cart, db):
    short = make_product(stock=3)
    fine = make_product(stock=10)
    add_to_cart(customer, short, 5)
    add_to_cart(customer, fine, 1)

    res = customer_client.post("/api/orders", json=PICKUP)

    assert res.status_code == 400
    issues = res.json()["detail"]["stock_issues"]
    assert issues == [{
        "product_id": str(short["_id"]),
        "product_name": "Generic 1 (Brand 1)",
        "requested": 5,
        "available": 3,
    }]
    assert db["order"].count_documents({}) == 0
    assert db["product"].find_one({"_id": fine["_id"]})["stock_quantity"] == 10
    assert db["cartitem"].count_documents({}) == 2


def test_empty_cart_is_rejected(customer_client, customer, make_product, add_to_cart, db):
    add_to_cart(customer, make_product(is_active=False), 1)
    res = customer_client.post("/api/orders", json=PICKUP)
    assert res.status_code == 400
    assert db["order"].count_documents({}) == 0


def test_standard_delivery_needs_an_address(customer_client, two_line_cart):
    res = customer_client.post("/api/orders", json={"delivery_method": "standard", "payment_method": "bank_transfer"})
    assert res.status_code == 400
    assert "delivery_address_id" in res.json()["detail"]["errors"]


def test_standard_delivery_rejects_foreign_address(customer_client, two_line_cart, make_customer, make_address):
    address = make_address(make_customer())
    res = customer_client.post("/api/orders", json={
        "delivery_method": "standard",
        "payment_method": "bank_transfer",
        "delivery_address_id": str(address["_id"]),
    })
    assert res.status_code == 404


def test_standard_delivery_adds_distance_fee(customer_client, customer, two_line_cart, make_address, store_location):
    store_location(0, 0)
    address = make_address(customer, latitude=0.1, longitude=0)

    res = customer_client.post("/api/orders", json={
        "delivery_method": "standard",
        "payment_method": "cash_on_delivery",
        "delivery_address_id": str(address["_id"]),
    })

    order = res.json()["order"]
    fee = calculate_delivery_fee(haversine_km(0, 0, 0.1, 0), 25)
    assert order["delivery_fee"] == fee
    assert order["total"] == pytest.approx(order["subtotal"] + order["delivery_fee"])
    assert order["delivery_address_id"] == str(address["_id"])


def test_express_delivery_fee_is_deferred(customer_client, customer, two_line_cart, make_address, store_location):
    store_location(0, 0)
    address = make_address(customer, latitude=0.1, longitude=0)
    res = customer_client.post("/api/orders", json={
        "delivery_method": "express",
        "payment_method": "cash_on_delivery",
        "delivery_address_id": str(address["_id"]),
    })
    order = res.json()["order"]
    assert order["delivery_fee"] == 0
    assert order["total"] == order["subtotal"]


def test_past_delivery_date_is_rejected(customer_client, two_line_cart, db):
    yesterday = (date.today() - timedelta(days=1)).isoformat()
    res = customer_client.post("/api/orders", json={**PICKUP, "preferred_delivery_date": yesterday})
    assert res.status_code == 400
    assert db["order"].count_documents({}) == 0


def test_long_notes_are_rejected(customer_client, two_line_cart):
    res = customer_client.post("/api/orders", json={**PICKUP, "order_notes": "x" * 1001})
    assert res.status_code == 400


def test_notes_are_escaped(customer_client, two_line_cart):
    order = customer_client.post("/api/orders", json={**PICKUP, "order_notes": "<b>urgent</b>"}).json()["order"]
    assert order["order_notes"] == "&lt;b&gt;urgent&lt;/b&gt;"


def test_item_insert_failure_removes_order_header(customer_client, customer, two_line_cart, db, monkeypatch):
    first, _ = two_line_cart
    original = mongomock.collection.Collection.insert_many

    def failing_insert_many(self, documents, *args, **kwargs):
        if self.name == "orderitem":
            raise PyMongoError("disk full")
        return original(self, documents, *args, **kwargs)

    monkeypatch.setattr(mongomock.collection.Collection, "insert_many", failing_insert_many)

    res = customer_client.post("/api/orders", json=PICKUP)

    assert res.status_code == 500
    assert res.json()["detail"] == "Failed to create order"
    assert db["order"].count_documents({}) == 0
    assert db["product"].find_one({"_id": first["_id"]})["stock_quantity"] == 10
    assert db["cartitem"].count_documents({"customer_id": str(customer["_id"])}) == 2


def test_movement_write_failure_does_not_fail_the_order(customer_client, customer, two_line_cart, db, monkeypatch, caplog):
    first, second = two_line_cart
    real_create = orders.create_document

    def failing_create(collection_name, data):
        if collection_name == "stockmovement":
            raise PyMongoError("write failed")
        return real_create(collection_name, data)

    monkeypatch.setattr(orders, "create_document", failing_create)

    res = customer_client.post("/api/orders", json=PICKUP)

    assert res.status_code == 201
    assert db["product"].find_one({"_id": first["_id"]})["stock_quantity"] == 8
    assert db["product"].find_one({"_id": second["_id"]})["stock_quantity"] == 9
    assert db["stockmovement"].count_documents({}) == 0
    assert db["cartitem"].count_documents({"customer_id": str(customer["_id"])}) == 0
    assert "Stock movement for order LC-000001" in caplog.text


def test_lost_stock_race_is_logged_not_raised(make_product, db, caplog):
    product = make_product(stock=1)
    orders._decrement_stock("order-id", product["_id"], 2, "LC-000009")
    assert db["product"].find_one({"_id": product["_id"]})["stock_quantity"] == 1
    assert db["stockmovement"].count_documents({}) == 0
    assert "manual reconciliation" in caplog.text


def test_pending_customer_cannot_order(client, login_as, make_customer):
    login_as(make_customer(status="pending"))
    res = client.post("/api/orders", json=PICKUP)
    assert res.status_code == 403


def test_order_history(customer_client, customer, two_line_cart):
    customer_client.post("/api/orders", json=PICKUP)

    listing = customer_client.get("/api/orders").json()
    assert listing["total"] == 1
    assert listing["orders"][0]["item_count"] == 2

    order_id = listing["orders"][0]["id"]
    detail = customer_client.get(f"/api/orders/{order_id}").json()["order"]
    assert len(detail["items"]) == 2
    assert detail["status_history"] == []

    assert customer_client.get("/api/orders?status=delivered").json()["total"] == 0


def test_other_customers_order_is_not_found(client, login_as, customer, two_line_cart, make_customer):
    login_as(customer)
    order_id = client.post("/api/orders", json=PICKUP).json()["order"]["id"]

    login_as(make_customer())
    assert client.get(f"/api/orders/{order_id}").status_code == 404
    assert client.get(f"/api/orders/{order_id}/invoice").status_code == 404


def test_reorder_adds_available_lines(customer_client, customer, two_line_cart, db):
    first, second = two_line_cart
    order_id = customer_client.post("/api/orders", json=PICKUP).json()["order"]["id"]
    db["product"].update_one({"_id": second["_id"]}, {"$set": {"is_active": False}})

    res = customer_client.post(f"/api/orders/{order_id}/reorder")

    assert res.status_code == 200
    body = res.json()
    assert body["added"] == 1
    assert body["warnings"][0]["product_id"] == str(second["_id"])
    row = db["cartitem"].find_one({"customer_id": str(customer["_id"])})
    assert row["product_id"] == str(first["_id"])
    assert row["quantity"] == 2


def test_bank_details(customer_client, db):
    db["storesetting"].insert_one({"key": "bank_name", "value": "Commercial Bank"})
    body = customer_client.get("/api/checkout/bank-details").json()
    assert body["bank_name"] == "Commercial Bank"
    assert body["bank_account_number"] == ""
