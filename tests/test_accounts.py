import jwt
import pytest
from bson import ObjectId

import delivery
import settings
from auth import LoginRateLimiter, decode_token, sign_admin_token, sign_customer_token, verify_password
from conftest import PASSWORD


def registration(**overrides):
    payload = {
        "email": "Owner@CityPharmacy.lk",
        "password": "Strong123",
        "customer_type": "pharmacy",
        "contact_name": "Nimal Perera",
        "business_name": "City Pharmacy",
        "nmra_license_number": "NMRA-2041",
        "phone": "077 123 4567",
        "address_line1": "45 Galle Road",
        "city": "Colombo 03",
        "district": "Colombo",
    }
    payload.update(overrides)
    return payload


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


# Registration

def test_register_creates_pending_customer_with_default_address(client, db):
    res = client.post("/api/auth/register", json=registration())

    assert res.status_code == 201
    body = res.json()
    assert body["customer"]["status"] == "pending"
    assert body["customer"]["email"] == "owner@citypharmacy.lk"
    assert settings.CUSTOMER_COOKIE in res.cookies

    stored = db["customer"].find_one({"email": "owner@citypharmacy.lk"})
    assert stored["phone"] == "0771234567"
    assert verify_password("Strong123", stored["password_hash"])
    address = db["address"].find_one({"customer_id": str(stored["_id"])})
    assert address["is_default"] is True


def test_register_keeps_verification_document(client, db):
    key = "uploads/123e4567-e89b-12d3-a456-426614174000.pdf"
    client.post("/api/auth/register", json=registration(document_key=key, document_file_name="licence.pdf"))
    doc = db["verificationdocument"].find_one()
    assert doc["file_key"] == key
    assert doc["document_type"] == "nmra_license"


def test_register_ignores_foreign_document_keys(client, db):
    client.post("/api/auth/register", json=registration(document_key="../../etc/passwd"))
    assert db["verificationdocument"].count_documents({}) == 0


def test_register_rejects_duplicate_email(client, make_customer):
    make_customer(email="owner@citypharmacy.lk")
    res = client.post("/api/auth/register", json=registration())
    assert res.status_code == 409
    assert "email" in res.json()["detail"]["errors"]


def test_register_reports_field_errors(client, db):
    res = client.post("/api/auth/register", json=registration(
        password="short", phone="12345", district="Atlantis", nmra_license_number="",
    ))

    assert res.status_code == 400
    errors = res.json()["detail"]["errors"]
    assert set(errors) >= {"password", "phone", "district", "nmra_license_number"}
    assert db["customer"].count_documents({}) == 0


def test_doctor_needs_slmc_number(client):
    res = client.post("/api/auth/register", json=registration(customer_type="doctor", business_name=None))
    assert "slmc_number" in res.json()["detail"]["errors"]

    ok = client.post("/api/auth/register", json=registration(
        customer_type="doctor", slmc_number="12345", email="dr@example.com",
    ))
    assert ok.status_code == 201


# Login

def test_login_and_me(client, customer):
    res = client.post("/api/auth/login", json={"email": customer["email"].upper(), "password": PASSWORD})

    assert res.status_code == 200
    assert "password_hash" not in res.json()["customer"]
    assert client.get("/api/auth/me").json()["customer"]["id"] == str(customer["_id"])


def test_profile_never_exposes_password_hash(customer_client, customer):
    profile = customer_client.get("/api/account/profile").json()["customer"]
    updated = customer_client.patch("/api/account/profile", json={"contact_name": "Nimal"}).json()["customer"]

    assert profile["id"] == str(customer["_id"])
    assert "password_hash" not in profile
    assert "password_hash" not in updated
    assert updated["contact_name"] == "Nimal"


def test_login_wrong_password(client, customer):
    res = client.post("/api/auth/login", json={"email": customer["email"], "password": "Wrong123"})
    assert res.status_code == 401


def test_login_missing_fields(client):
    assert client.post("/api/auth/login", json={"email": "a@b.lk"}).status_code == 400


def test_login_locks_out_after_five_failures(client, customer):
    for _ in range(5):
        client.post("/api/auth/login", json={"email": customer["email"], "password": "Wrong123"})
    res = client.post("/api/auth/login", json={"email": customer["email"], "password": PASSWORD})
    assert res.status_code == 429


def test_deactivated_customer_cannot_login(client, make_customer):
    inactive = make_customer(is_active=False)
    res = client.post("/api/auth/login", json={"email": inactive["email"], "password": PASSWORD})
    assert res.status_code == 403


def test_logout_clears_session(client, customer):
    client.post("/api/auth/login", json={"email": customer["email"], "password": PASSWORD})
    client.post("/api/auth/logout")
    assert client.get("/api/auth/me").status_code == 401


# Tokens and throttling

def test_token_types_are_not_interchangeable():
    customer_token = sign_customer_token("abc", "a@b.lk")
    assert decode_token(customer_token, "customer")["sub"] == "abc"
    with pytest.raises(jwt.InvalidTokenError):
        decode_token(customer_token, "admin")
    with pytest.raises(jwt.InvalidTokenError):
        decode_token(sign_admin_token("abc", "a@b.lk"), "customer")


def test_limiter_lockout_expires():
    clock = FakeClock()
    limiter = LoginRateLimiter(max_attempts=3, lockout_minutes=15, clock=clock)
    for _ in range(3):
        limiter.record_failure("1.2.3.4", "a@b.lk")

    assert limiter.check("1.2.3.4", "A@B.lk") == "Too many failed attempts. Try again in 15 minutes."
    assert limiter.check("5.6.7.8", "a@b.lk") is None

    clock.now = 14 * 60 + 30
    assert limiter.check("1.2.3.4", "a@b.lk") == "Too many failed attempts. Try again in 1 minute."
    clock.now = 15 * 60
    assert limiter.check("1.2.3.4", "a@b.lk") is None


def test_limiter_clear_forgets_failures():
    limiter = LoginRateLimiter(max_attempts=2, clock=FakeClock())
    limiter.record_failure("ip", "a@b.lk")
    limiter.clear("ip", "a@b.lk")
    limiter.record_failure("ip", "a@b.lk")
    assert limiter.check("ip", "a@b.lk") is None


# Profile

def test_profile_update(customer_client, customer, db):
    res = customer_client.patch("/api/account/profile", json={"contact_name": "New Name", "phone": "+94771234567"})
    assert res.status_code == 200
    stored = db["customer"].find_one({"_id": customer["_id"]})
    assert stored["contact_name"] == "New Name"
    assert stored["phone"] == "+94771234567"


def test_profile_update_rejects_bad_phone(customer_client):
    res = customer_client.patch("/api/account/profile", json={"phone": "555"})
    assert res.status_code == 400
    assert "phone" in res.json()["detail"]["errors"]


def test_empty_profile_update(customer_client):
    assert customer_client.patch("/api/account/profile", json={}).status_code == 400


def test_change_password(client, login_as, customer):
    login_as(customer)

    wrong = client.post("/api/account/change-password", json={"current_password": "nope", "new_password": "Newpass123"})
    weak = client.post("/api/account/change-password", json={"current_password": PASSWORD, "new_password": "weak"})
    ok = client.post("/api/account/change-password", json={"current_password": PASSWORD, "new_password": "Newpass123"})

    assert wrong.status_code == 400
    assert weak.status_code == 400
    assert ok.status_code == 200
    client.cookies.clear()
    assert client.post("/api/auth/login", json={"email": customer["email"], "password": "Newpass123"}).status_code == 200


# Addresses

ADDRESS = {"address_line1": "1 Temple Road", "city": "Kandy", "district": "Kandy"}


def defaults(db, customer):
    return [a["label"] for a in db["address"].find({"customer_id": str(customer["_id"]), "is_default": True})]


def test_first_address_becomes_default(customer_client, customer, db):
    res = customer_client.post("/api/account/addresses", json={**ADDRESS, "label": "Main"})
    assert res.status_code == 201
    assert res.json()["address"]["is_default"] is True
    assert defaults(db, customer) == ["Main"]


def test_new_default_replaces_old_one(customer_client, customer, db):
    customer_client.post("/api/account/addresses", json={**ADDRESS, "label": "Main"})
    customer_client.post("/api/account/addresses", json={**ADDRESS, "label": "Branch"})
    assert defaults(db, customer) == ["Main"]

    customer_client.post("/api/account/addresses", json={**ADDRESS, "label": "Store", "set_as_default": True})
    assert defaults(db, customer) == ["Store"]


def test_set_default_on_edit(customer_client, customer, make_address, db):
    make_address(customer, label="Main", is_default=True)
    other = make_address(customer, label="Branch", is_default=False)

    res = customer_client.patch(f"/api/account/addresses/{other['_id']}", json={"set_as_default": True})

    assert res.status_code == 200
    assert defaults(db, customer) == ["Branch"]


def test_address_rejects_unknown_district(customer_client):
    res = customer_client.post("/api/account/addresses", json={**ADDRESS, "district": "Gotham"})
    assert res.status_code == 400


def test_deleting_default_promotes_oldest(customer_client, customer, make_address, db):
    main = make_address(customer, label="Main", is_default=True)
    make_address(customer, label="Branch", is_default=False)
    make_address(customer, label="Store", is_default=False)

    assert customer_client.delete(f"/api/account/addresses/{main['_id']}").status_code == 200
    assert defaults(db, customer) == ["Branch"]


def test_coordinate_change_drops_cached_quote(customer_client, customer, make_address, store_location):
    store_location(0, 0)
    address = make_address(customer, latitude=0.1, longitude=0)
    delivery.quote_delivery("standard", address)
    assert str(address["_id"]) in delivery.address_quote_cache

    customer_client.patch(f"/api/account/addresses/{address['_id']}", json={"latitude": 0.2})

    assert str(address["_id"]) not in delivery.address_quote_cache


def test_other_customers_address_is_not_found(customer_client, make_customer, make_address):
    address = make_address(make_customer())
    assert customer_client.patch(f"/api/account/addresses/{address['_id']}", json={"label": "x"}).status_code == 404
    assert customer_client.delete(f"/api/account/addresses/{address['_id']}").status_code == 404
    assert customer_client.delete(f"/api/account/addresses/{ObjectId()}").status_code == 404


def test_checkout_addresses_need_approval(client, login_as, make_customer, make_address):
    pending = make_customer(status="pending")
    make_address(pending)
    login_as(pending)
    assert client.get("/api/checkout/addresses").status_code == 403
    assert len(client.get("/api/account/addresses").json()["addresses"]) == 1
