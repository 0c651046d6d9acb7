"""
Customer accounts: registration, login, profile and delivery addresses.
"""

import logging
import re

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, Response
from pymongo.errors import DuplicateKeyError

from auth import (
    approved_customer,
    clear_customer_cookie,
    client_ip,
    current_customer,
    hash_password,
    login_limiter,
    set_customer_cookie,
    sign_customer_token,
    verify_password,
)
from database import create_document, require_db, serialize, update_document
from delivery import invalidate_address, owned_address
from notifications import process_new_registration
from schemas import Address, AddressIn, AddressUpdate, Customer, LoginIn, PasswordChange, ProfileUpdate, RegisterIn, VerificationDocument
from settings import SLMC_CUSTOMER_TYPES
from validators import normalize_phone, sanitize, validate_district, validate_password, validate_phone, validate_registration

logger = logging.getLogger(__name__)

DOCUMENT_KEY_RE = re.compile(r"^uploads/[0-9a-f-]{36}\.(jpg|png|pdf)$")

router = APIRouter(tags=["accounts"])


# Registration and sessions

@router.post("/api/auth/register", status_code=201)
def register(payload: RegisterIn, response: Response, background: BackgroundTasks):
    db = require_db()
    errors = validate_registration(payload)
    if errors:
        raise HTTPException(status_code=400, detail={"error": "Validation failed", "errors": errors})

    email = payload.email.strip().lower()
    if db["customer"].find_one({"email": email}):
        raise HTTPException(status_code=409, detail={"errors": {"email": "An account with this email already exists"}})

    is_slmc = payload.customer_type in SLMC_CUSTOMER_TYPES
    customer = Customer(
        email=email,
        password_hash=hash_password(payload.password),
        customer_type=payload.customer_type,
        contact_name=sanitize(payload.contact_name),
        business_name=sanitize(payload.business_name) or None,
        slmc_number=payload.slmc_number.strip() if is_slmc and payload.slmc_number else None,
        nmra_license_number=(
            payload.nmra_license_number.strip() if not is_slmc and payload.nmra_license_number else None
        ),
        phone=normalize_phone(payload.phone),
        whatsapp=normalize_phone(payload.whatsapp) or None,
    )
    try:
        customer_id = create_document("customer", customer)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail={"errors": {"email": "An account with this email already exists"}})

    create_document("address", Address(
        customer_id=customer_id,
        address_line1=sanitize(payload.address_line1),
        address_line2=sanitize(payload.address_line2) or None,
        city=sanitize(payload.city),
        district=payload.district.strip(),
        postal_code=sanitize(payload.postal_code) or None,
        latitude=payload.latitude,
        longitude=payload.longitude,
        is_default=True,
    ))

    if payload.document_key and DOCUMENT_KEY_RE.match(payload.document_key):
        create_document("verificationdocument", VerificationDocument(
            customer_id=customer_id,
            document_type="slmc_id" if is_slmc else "nmra_license",
            file_key=payload.document_key,
            file_name=sanitize(payload.document_file_name) or payload.document_key.rsplit("/", 1)[-1],
            file_size=payload.document_file_size,
            mime_type=payload.document_mime_type,
        ))

    set_customer_cookie(response, sign_customer_token(customer_id, email))
    background.add_task(
        process_new_registration, customer_id, customer.contact_name, customer.customer_type, email
    )
    logger.info("Registered customer %s (%s)", customer_id, customer.customer_type)
    return {"success": True, "customer": {"id": customer_id, "email": email, "status": "pending"}}


@router.post("/api/auth/login")
def login(payload: LoginIn, request: Request, response: Response):
    email = payload.email.strip().lower()
    if not email or not payload.password:
        raise HTTPException(status_code=400, detail="Email and password are required")

    ip = client_ip(request)
    locked = login_limiter.check(ip, email)
    if locked:
        raise HTTPException(status_code=429, detail=locked)

    customer = require_db()["customer"].find_one({"email": email})
    if not customer or not verify_password(payload.password, customer["password_hash"]):
        login_limiter.record_failure(ip, email)
        raise HTTPException(status_code=401, detail="Invalid email or password")
    if not customer.get("is_active", True):
        raise HTTPException(status_code=403, detail="Account is deactivated")

    login_limiter.clear(ip, email)
    set_customer_cookie(response, sign_customer_token(str(customer["_id"]), email))
    return {"success": True, "customer": serialize(customer)}


@router.post("/api/auth/logout")
def logout(response: Response):
    clear_customer_cookie(response)
    return {"success": True}


@router.get("/api/auth/me")
def me(customer: dict = Depends(current_customer)):
    return {"customer": serialize(customer)}


# Profile

@router.get("/api/account/profile")
def get_profile(customer: dict = Depends(current_customer)):
    return {"customer": serialize(customer)}


@router.patch("/api/account/profile")
def update_profile(payload: ProfileUpdate, customer: dict = Depends(current_customer)):
    changes = {}
    errors = {}
    if payload.contact_name is not None:
        if not payload.contact_name.strip():
            errors["contact_name"] = "Name is required"
        changes["contact_name"] = sanitize(payload.contact_name)
    if payload.business_name is not None:
        changes["business_name"] = sanitize(payload.business_name) or None
    if payload.phone is not None:
        message = validate_phone(payload.phone)
        if message:
            errors["phone"] = message
        changes["phone"] = normalize_phone(payload.phone)
    if payload.whatsapp is not None:
        if payload.whatsapp:
            message = validate_phone(payload.whatsapp)
            if message:
                errors["whatsapp"] = message
        changes["whatsapp"] = normalize_phone(payload.whatsapp) or None

    if errors:
        raise HTTPException(status_code=400, detail={"error": "Validation failed", "errors": errors})
    if not changes:
        raise HTTPException(status_code=400, detail="No changes to apply")

    update_document("customer", customer["_id"], changes)
    customer.update(changes)
    return {"customer": serialize(customer)}


@router.post("/api/account/change-password")
def change_password(payload: PasswordChange, customer: dict = Depends(current_customer)):
    if not verify_password(payload.current_password, customer["password_hash"]):
        raise HTTPException(status_code=400, detail={"errors": {"current_password": "Current password is incorrect"}})
    message = validate_password(payload.new_password)
    if message:
        raise HTTPException(status_code=400, detail={"errors": {"new_password": message}})
    update_document("customer", customer["_id"], {"password_hash": hash_password(payload.new_password)})
    return {"success": True}


# Addresses

def _clear_default(customer_id: str):
    require_db()["address"].update_many(
        {"customer_id": customer_id, "is_default": True}, {"$set": {"is_default": False}}
    )


def list_addresses(customer_id: str):
    cursor = require_db()["address"].find({"customer_id": customer_id}).sort([("is_default", -1), ("created_at", 1)])
    return [serialize(a) for a in cursor]


@router.get("/api/account/addresses")
def get_addresses(customer: dict = Depends(current_customer)):
    return {"addresses": list_addresses(str(customer["_id"]))}


@router.post("/api/account/addresses", status_code=201)
def add_address(payload: AddressIn, customer: dict = Depends(current_customer)):
    db = require_db()
    customer_id = str(customer["_id"])
    errors = {}
    if not payload.address_line1.strip():
        errors["address_line1"] = "Address is required"
    if not payload.city.strip():
        errors["city"] = "City is required"
    message = validate_district(payload.district)
    if message:
        errors["district"] = message
    if errors:
        raise HTTPException(status_code=400, detail={"error": "Validation failed", "errors": errors})

    is_first = db["address"].count_documents({"customer_id": customer_id}) == 0
    make_default = is_first or payload.set_as_default
    if make_default:
        _clear_default(customer_id)

    address = Address(
        customer_id=customer_id,
        label=sanitize(payload.label) or "Address",
        address_line1=sanitize(payload.address_line1),
        address_line2=sanitize(payload.address_line2) or None,
        city=sanitize(payload.city),
        district=payload.district.strip(),
        postal_code=sanitize(payload.postal_code) or None,
        latitude=payload.latitude,
        longitude=payload.longitude,
        is_default=make_default,
    )
    address_id = create_document("address", address)
    return {"address": serialize({"_id": address_id, **address.model_dump()})}


@router.patch("/api/account/addresses/{address_id}")
def edit_address(address_id: str, payload: AddressUpdate, customer: dict = Depends(current_customer)):
    customer_id = str(customer["_id"])
    address = owned_address(address_id, customer_id)
    fields = payload.model_dump(exclude_unset=True)
    set_default = fields.pop("set_as_default", None)

    changes = {}
    for key in ("label", "address_line1", "address_line2", "city", "postal_code"):
        if key in fields:
            changes[key] = sanitize(fields[key]) or None
    if "district" in fields:
        message = validate_district(fields["district"])
        if message:
            raise HTTPException(status_code=400, detail={"errors": {"district": message}})
        changes["district"] = fields["district"].strip()
    for key in ("address_line1", "city"):
        if key in changes and not changes[key]:
            raise HTTPException(status_code=400, detail={"errors": {key: "This field is required"}})
    coords_changed = False
    for key in ("latitude", "longitude"):
        if key in fields and fields[key] != address.get(key):
            changes[key] = fields[key]
            coords_changed = True

    if set_default:
        _clear_default(customer_id)
        changes["is_default"] = True

    if not changes:
        raise HTTPException(status_code=400, detail="No changes to apply")

    update_document("address", address["_id"], changes)
    if coords_changed:
        invalidate_address(address_id)
    address.update(changes)
    return {"address": serialize(address)}


@router.delete("/api/account/addresses/{address_id}")
def delete_address(address_id: str, customer: dict = Depends(current_customer)):
    db = require_db()
    customer_id = str(customer["_id"])
    address = owned_address(address_id, customer_id)
    db["address"].delete_one({"_id": address["_id"]})
    invalidate_address(address_id)

    if address.get("is_default"):
        # promote the oldest remaining address
        remaining = db["address"].find_one({"customer_id": customer_id}, sort=[("created_at", 1)])
        if remaining:
            update_document("address", remaining["_id"], {"is_default": True})
    return {"success": True}


@router.get("/api/checkout/addresses")
def checkout_addresses(customer: dict = Depends(approved_customer)):
    return {"addresses": list_addresses(str(customer["_id"]))}
