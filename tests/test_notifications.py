import pytest

import notifications
import settings
from database import create_document


class FakeSMTP:
    sent = []

    def __init__(self, host, port, timeout=None):
        self.host = host

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        pass

    def login(self, user, password):
        pass

    def send_message(self, msg):
        FakeSMTP.sent.append(msg)


@pytest.fixture
def smtp(monkeypatch):
    FakeSMTP.sent = []
    monkeypatch.setattr(settings, "SMTP_HOST", "smtp.test")
    monkeypatch.setattr(notifications.smtplib, "SMTP", FakeSMTP)
    return FakeSMTP.sent


@pytest.fixture
def order_id(customer, make_product):
    product = make_product(price=100.0)
    order_id = create_document("order", {
        "order_number": "LC-000042",
        "customer_id": str(customer["_id"]),
        "status": "new",
        "delivery_method": "pickup",
        "delivery_address_id": None,
        "delivery_fee": 0.0,
        "subtotal": 200.0,
        "total": 200.0,
        "payment_method": "bank_transfer",
        "payment_status": "pending",
    })
    create_document("orderitem", {
        "order_id": order_id,
        "product_id": str(product["_id"]),
        "product_name": "Generic 1 (Brand 1)",
        "product_sku": "SKU-001",
        "quantity": 2,
        "unit_price": 100.0,
        "total_price": 200.0,
    })
    return order_id


def test_email_is_skipped_without_smtp():
    assert notifications.send_email("a@b.lk", "Hi", "<p>x</p>") is False


def test_new_order_mails_customer_with_invoice_and_admin(smtp, order_id, customer, db):
    db["storesetting"].insert_one({"key": "admin_email", "value": "owner@store.lk"})

    notifications.process_new_order(order_id)

    customer_mail, admin_mail = smtp
    assert customer_mail["To"] == customer["email"]
    assert customer_mail["Subject"] == "Order Confirmed - LC-000042"
    attachment = next(customer_mail.iter_attachments())
    assert attachment.get_filename() == "INV-LC-000042.html"
    assert admin_mail["To"] == "owner@store.lk"


def test_invoice_shows_bank_details_for_transfers(order_id, db, object_store):
    db["storesetting"].insert_many([
        {"key": "bank_name", "value": "Commercial Bank"},
        {"key": "bank_account_number", "value": "1000123456"},
    ])

    key, content = notifications.generate_invoice(order_id)

    assert key == "invoices/LC-000042.html"
    assert b"1000123456" in content
    assert b"Rs 200.00" in content
    assert object_store[key] == content


def test_mail_failure_does_not_escape(monkeypatch, order_id, db, caplog):
    def broken(*args, **kwargs):
        raise OSError("connection refused")

    monkeypatch.setattr(notifications, "send_email", broken)

    notifications.process_new_order(order_id)

    assert "Customer email failed for order LC-000042" in caplog.text
    assert db["order"].find_one({"order_number": "LC-000042"})["invoice_key"] == "invoices/LC-000042.html"


def test_customer_status_change_mail(smtp, customer):
    notifications.process_customer_status_change(str(customer["_id"]), "rejected", "Licence expired")

    assert smtp[0]["Subject"] == "Lanka Chemist account verification update"
    assert "Licence expired" in smtp[0].get_body(("html",)).get_content()


def test_pending_status_sends_nothing(smtp, customer):
    notifications.process_customer_status_change(str(customer["_id"]), "pending")
    assert smtp == []


def test_registration_without_admin_address_is_dropped(smtp):
    notifications.process_new_registration("abc", "Nimal", "doctor", "n@example.com")
    assert smtp == []
