"""
Admin API: staff accounts, order fulfilment, inventory and categories,
customer verification and store settings.
"""

import logging
import math
import re
from typing import Optional

from bson import ObjectId
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, Response
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from auth import (
    clear_admin_cookie,
    client_ip,
    current_admin,
    hash_password,
    login_limiter,
    set_admin_cookie,
    sign_admin_token,
    verify_password,
)
from catalog import build_product_query, product_views
from database import (
    create_document,
    find_by_id,
    get_documents,
    get_store_settings,
    paginate,
    require_db,
    serialize,
    update_document,
    utcnow,
)
from delivery import invalidate_store_location
from errors import log_error
from notifications import generate_invoice, process_customer_status_change, process_order_status_change
from schemas import (
    AdminPasswordChange,
    AdminSetup,
    AdminUser,
    BulkPriceUpdate,
    Category,
    CategoryIn,
    CategoryUpdate,
    CustomerStatusUpdate,
    LoginIn,
    OrderStatusHistory,
    OrderStatusUpdate,
    Product,
    ProductUpdate,
    StockAdjustment,
    StockMovement,
    StoreSettingsUpdate,
)
from settings import (
    CUSTOMER_STATUSES,
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    ORDER_STATUSES,
    PAYMENT_STATUSES,
    STORE_SETTING_KEYS,
    VALID_ORDER_TRANSITIONS,
)
from storage import get_object
from validators import sanitize

logger = logging.getLogger(__name__)

STATUS_TIMESTAMPS = {
    "confirmed": "confirmed_at",
    "dispatched": "dispatched_at",
    "delivered": "delivered_at",
    "cancelled": "cancelled_at",
}

COORDINATE_RANGES = {"store_latitude": 90.0, "store_longitude": 180.0}
MAX_COPY_ATTEMPTS = 50

router = APIRouter(tags=["admin"])


def _page(items, total, page, per_page, key):
    return {
        key: items,
        "total": total,
        "page": page,
        "per_page": per_page,
        "total_pages": math.ceil(total / per_page) if total else 0,
    }


def _found(collection: str, doc_id: str, label: str) -> dict:
    doc = find_by_id(collection, doc_id)
    if not doc:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return doc


# Setup and session

@router.post("/api/admin/setup", status_code=201)
def setup_admin(payload: AdminSetup):
    db = require_db()
    if db["adminuser"].count_documents({}) > 0:
        raise HTTPException(status_code=403, detail="An admin account already exists. Setup is disabled.")
    admin = AdminUser(
        email=str(payload.email).strip().lower(),
        password_hash=hash_password(payload.password),
        name=payload.name.strip(),
    )
    admin_id = create_document("adminuser", admin)
    logger.info("Created first admin account %s", admin_id)
    return {"message": "Admin account created successfully", "id": admin_id}


@router.post("/api/admin/auth/login")
def admin_login(payload: LoginIn, request: Request, response: Response):
    email = payload.email.strip().lower()
    if not email or not payload.password:
        raise HTTPException(status_code=400, detail="Email and password are required")

    ip = client_ip(request)
    limiter_email = f"admin:{email}"
    locked = login_limiter.check(ip, limiter_email)
    if locked:
        raise HTTPException(status_code=429, detail=locked)

    admin = require_db()["adminuser"].find_one({"email": email})
    if not admin or not admin.get("is_active", True) or not verify_password(payload.password, admin["password_hash"]):
        login_limiter.record_failure(ip, limiter_email)
        logger.warning("Failed admin login for %s from %s", email, ip)
        raise HTTPException(status_code=401, detail="Invalid email or password")

    login_limiter.clear(ip, limiter_email)
    set_admin_cookie(response, sign_admin_token(str(admin["_id"]), email))
    return {"success": True, "admin": serialize(admin)}


@router.post("/api/admin/auth/logout")
def admin_logout(response: Response):
    clear_admin_cookie(response)
    return {"success": True}


@router.get("/api/admin/auth/me")
def admin_me(admin: dict = Depends(current_admin)):
    return {"admin": serialize(admin)}


@router.patch("/api/admin/auth/change-password")
def admin_change_password(payload: AdminPasswordChange, admin: dict = Depends(current_admin)):
    if not verify_password(payload.current_password, admin["password_hash"]):
        raise HTTPException(status_code=403, detail="Current password is incorrect")
    update_document("adminuser", admin["_id"], {"password_hash": hash_password(payload.new_password)})
    logger.info("Admin %s changed their password", admin["_id"])
    return {"success": True}


# Orders

@router.get("/api/admin/orders")
def list_orders(
    status: Optional[str] = None,
    q: Optional[str] = None,
    page: int = Query(1, ge=1),
    per_page: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    admin: dict = Depends(current_admin),
):
    db = require_db()
    query = {}
    if status:
        if status not in ORDER_STATUSES:
            raise HTTPException(status_code=400, detail="Invalid status")
        query["status"] = status
    if q:
        pattern = {"$regex": re.escape(q.strip()), "$options": "i"}
        customer_ids = [
            str(c["_id"])
            for c in db["customer"].find({"$or": [{"contact_name": pattern}, {"business_name": pattern}, {"email": pattern}]})
        ]
        query["$or"] = [{"order_number": pattern}, {"customer_id": {"$in": customer_ids}}]

    total = db["order"].count_documents(query)
    orders = list(paginate(db["order"].find(query).sort("created_at", -1), page, per_page))
    customer_oids = [ObjectId(o["customer_id"]) for o in orders if ObjectId.is_valid(o["customer_id"])]
    customers = {str(c["_id"]): c for c in db["customer"].find({"_id": {"$in": customer_oids}})}
    views = []
    for order in orders:
        view = serialize(order)
        customer = customers.get(order["customer_id"])
        view["customer_name"] = customer.get("contact_name") if customer else None
        view["business_name"] = customer.get("business_name") if customer else None
        view["item_count"] = db["orderitem"].count_documents({"order_id": str(order["_id"])})
        views.append(view)
    return _page(views, total, page, per_page, "orders")


@router.get("/api/admin/orders/{order_id}")
def get_order(order_id: str, admin: dict = Depends(current_admin)):
    db = require_db()
    order = _found("order", order_id, "Order")
    view = serialize(order)
    view["items"] = serialize(list(db["orderitem"].find({"order_id": order_id}).sort("created_at", 1)))
    customer = find_by_id("customer", order["customer_id"])
    view["customer"] = serialize(customer) if customer else None
    address = find_by_id("address", order["delivery_address_id"]) if order.get("delivery_address_id") else None
    view["delivery_address"] = serialize(address) if address else None

    history = list(db["orderstatushistory"].find({"order_id": order_id}).sort("created_at", -1))
    admin_names = {}
    for row in history:
        changed_by = row.get("changed_by")
        if changed_by and changed_by not in admin_names:
            staff = find_by_id("adminuser", changed_by)
            admin_names[changed_by] = staff["name"] if staff else None
    view["status_history"] = [
        {**serialize(row), "admin_name": admin_names.get(row.get("changed_by"))} for row in history
    ]
    return {"order": view}


@router.patch("/api/admin/orders/{order_id}")
def update_order(
    order_id: str,
    payload: OrderStatusUpdate,
    background: BackgroundTasks,
    admin: dict = Depends(current_admin),
):
    order = _found("order", order_id, "Order")
    changes = {}
    notes = sanitize(payload.notes) or None
    status_changed = bool(payload.status and payload.status != order["status"])

    if status_changed:
        allowed = VALID_ORDER_TRANSITIONS.get(order["status"], [])
        if payload.status not in allowed:
            raise HTTPException(status_code=400, detail={
                "error": f'Cannot change status from "{order["status"]}" to "{payload.status}"',
                "allowed": allowed,
            })
        if payload.status == "cancelled":
            if not (payload.cancelled_reason or "").strip():
                raise HTTPException(status_code=400, detail="Cancellation reason is required")
            changes["cancelled_reason"] = sanitize(payload.cancelled_reason)
        changes["status"] = payload.status
        stamp = STATUS_TIMESTAMPS.get(payload.status)
        if stamp:
            changes[stamp] = utcnow()

    if payload.payment_status and payload.payment_status != order.get("payment_status"):
        if payload.payment_status not in PAYMENT_STATUSES:
            raise HTTPException(status_code=400, detail="Invalid payment status")
        changes["payment_status"] = payload.payment_status

    if payload.admin_notes is not None:
        admin_notes = sanitize(payload.admin_notes) or None
        if admin_notes != order.get("admin_notes"):
            changes["admin_notes"] = admin_notes

    if not changes:
        raise HTTPException(status_code=400, detail="No changes to apply")

    update_document("order", order["_id"], changes)
    if status_changed:
        create_document("orderstatushistory", OrderStatusHistory(
            order_id=order_id,
            old_status=order["status"],
            new_status=payload.status,
            notes=notes,
            changed_by=str(admin["_id"]),
        ))
        background.add_task(process_order_status_change, order_id, payload.status, notes)
        logger.info("Order %s moved %s -> %s", order["order_number"], order["status"], payload.status)

    order.update(changes)
    return {"success": True, "order": serialize(order)}


@router.get("/api/admin/orders/{order_id}/invoice")
def download_invoice(order_id: str, admin: dict = Depends(current_admin)):
    order = _found("order", order_id, "Order")
    content = get_object(order["invoice_key"]) if order.get("invoice_key") else None
    if content is None:
        raise HTTPException(status_code=404, detail="Invoice not yet generated")
    return Response(
        content=content,
        media_type="text/html",
        headers={"Content-Disposition": f'attachment; filename="INV-{order["order_number"]}.html"'},
    )


@router.post("/api/admin/orders/{order_id}/invoice")
def regenerate_invoice(order_id: str, admin: dict = Depends(current_admin)):
    order = _found("order", order_id, "Order")
    try:
        key, _ = generate_invoice(order_id)
    except PyMongoError as exc:
        log_error(f"Invoice regeneration for order {order['order_number']}", exc)
        raise HTTPException(status_code=500, detail="Failed to generate invoice")
    return {"invoice_key": key}


# Products

@router.get("/api/admin/products")
def list_products(
    q: Optional[str] = None,
    section: Optional[str] = None,
    low_stock: bool = False,
    is_active: Optional[bool] = None,
    page: int = Query(1, ge=1),
    per_page: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    admin: dict = Depends(current_admin),
):
    db = require_db()
    query = build_product_query(q=q, section=section)
    if is_active is not None:
        query["is_active"] = is_active
    cursor = db["product"].find(query).sort("generic_name", 1)
    if low_stock:
        # threshold is per product, so filter after the fetch
        matching = [p for p in cursor if p.get("stock_quantity", 0) <= p.get("low_stock_threshold", 10)]
        start = (page - 1) * per_page
        return _page(product_views(matching[start:start + per_page]), len(matching), page, per_page, "products")
    total = db["product"].count_documents(query)
    return _page(product_views(list(paginate(cursor, page, per_page))), total, page, per_page, "products")


@router.post("/api/admin/products", status_code=201)
def create_product(product: Product, admin: dict = Depends(current_admin)):
    db = require_db()
    product.sku = product.sku.strip()
    if db["product"].find_one({"sku": product.sku}):
        raise HTTPException(status_code=409, detail="A product with this SKU already exists")
    try:
        product_id = create_document("product", product)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="A product with this SKU already exists")
    return {"product": product_views([find_by_id("product", product_id)])[0]}


# registered before /{product_id} so the literal path wins
@router.patch("/api/admin/products/bulk-price")
def bulk_price(payload: BulkPriceUpdate, admin: dict = Depends(current_admin)):
    db = require_db()
    updated = 0
    for item in payload.updates:
        product = find_by_id("product", item.id)
        if not product:
            continue
        try:
            update_document("product", product["_id"], {"wholesale_price": item.price})
            updated += 1
        except PyMongoError as exc:
            log_error(f"Bulk price update for {item.id}", exc)
    logger.info("Bulk price update: %d of %d applied", updated, len(payload.updates))
    return {"success": True, "updated": updated, "total": len(payload.updates)}


@router.get("/api/admin/products/{product_id}")
def get_product(product_id: str, admin: dict = Depends(current_admin)):
    product = _found("product", product_id, "Product")
    view = product_views([product])[0]
    movements = require_db()["stockmovement"].find({"product_id": product_id}).sort("created_at", -1).limit(20)
    view["recent_movements"] = serialize(list(movements))
    return {"product": view}


@router.patch("/api/admin/products/{product_id}")
def update_product(product_id: str, payload: ProductUpdate, admin: dict = Depends(current_admin)):
    db = require_db()
    product = _found("product", product_id, "Product")
    changes = payload.model_dump(exclude_unset=True)
    if "sku" in changes:
        if not (changes["sku"] or "").strip():
            raise HTTPException(status_code=400, detail="SKU cannot be empty")
        changes["sku"] = changes["sku"].strip()
        clash = db["product"].find_one({"sku": changes["sku"], "_id": {"$ne": product["_id"]}})
        if clash:
            raise HTTPException(status_code=409, detail="A product with this SKU already exists")
    for key in ("generic_name", "brand_name"):
        if key in changes and not (changes[key] or "").strip():
            raise HTTPException(status_code=400, detail=f"{key} cannot be empty")
    if not changes:
        raise HTTPException(status_code=400, detail="No changes to apply")
    update_document("product", product["_id"], changes)
    product.update(changes)
    return {"product": product_views([product])[0]}


@router.post("/api/admin/products/{product_id}/stock")
def adjust_stock(product_id: str, payload: StockAdjustment, admin: dict = Depends(current_admin)):
    db = require_db()
    if payload.quantity_change == 0:
        raise HTTPException(status_code=400, detail="quantity_change must be a non-zero number")
    product = _found("product", product_id, "Product")

    change = payload.quantity_change
    guard = {"_id": product["_id"]}
    if change < 0:
        guard["stock_quantity"] = {"$gte": -change}
    before = db["product"].find_one_and_update(
        guard,
        {"$inc": {"stock_quantity": change}, "$set": {"updated_at": utcnow()}},
        return_document=ReturnDocument.BEFORE,
    )
    if before is None:
        current = (find_by_id("product", product_id) or product).get("stock_quantity", 0)
        raise HTTPException(
            status_code=400,
            detail=f"Cannot reduce stock below 0. Current: {current}, change: {change}",
        )

    quantity_before = before["stock_quantity"]
    quantity_after = quantity_before + change
    try:
        create_document("stockmovement", StockMovement(
            product_id=product_id,
            quantity_change=change,
            quantity_before=quantity_before,
            quantity_after=quantity_after,
            reason=payload.reason,
            notes=sanitize(payload.notes) or None,
            created_by=str(admin["_id"]),
        ))
    except PyMongoError as exc:
        # quantity already changed; the audit row is lost
        log_error(f"Stock movement for product {product_id}", exc)

    return {
        "success": True,
        "stock_quantity": quantity_after,
        "movement": {
            "quantity_before": quantity_before,
            "quantity_after": quantity_after,
            "quantity_change": change,
        },
    }


@router.delete("/api/admin/products/{product_id}")
def delete_product(product_id: str, admin: dict = Depends(current_admin)):
    db = require_db()
    product = _found("product", product_id, "Product")
    if db["orderitem"].count_documents({"product_id": product_id}) > 0:
        # order history keeps pointing at it
        update_document("product", product["_id"], {"is_active": False, "is_visible": False})
        logger.info("Deactivated product %s instead of deleting it", product["sku"])
        return {
            "success": True,
            "soft_delete": True,
            "message": "Product has been deactivated (it has existing order references).",
        }
    db["product"].delete_one({"_id": product["_id"]})
    logger.info("Deleted product %s", product["sku"])
    return {"success": True, "soft_delete": False}


def _copy_sku(sku: str) -> Optional[str]:
    collection = require_db()["product"]
    candidate = f"{sku}-COPY"
    for suffix in range(2, MAX_COPY_ATTEMPTS + 2):
        if not collection.find_one({"sku": candidate}):
            return candidate
        candidate = f"{sku}-COPY-{suffix}"
    return None


@router.post("/api/admin/products/{product_id}/duplicate", status_code=201)
def duplicate_product(product_id: str, admin: dict = Depends(current_admin)):
    original = _found("product", product_id, "Product")
    sku = _copy_sku(original["sku"])
    if sku is None:
        raise HTTPException(status_code=409, detail="Could not generate a unique SKU. Please duplicate manually.")

    copy = Product(**{
        **{k: v for k, v in original.items() if k in Product.model_fields},
        "sku": sku,
        "brand_name": f"{original['brand_name']} (Copy)",
        "stock_quantity": 0,
        "total_sold": 0,
        "barcode": None,
        "is_active": False,
        "is_visible": False,
    })
    try:
        copy_id = create_document("product", copy)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="A product with this SKU already exists")
    return {"success": True, "product": {"id": copy_id, "brand_name": copy.brand_name, "sku": copy.sku}}


# Categories

def slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


def _unique_slug(base: str, exclude_id=None) -> str:
    collection = require_db()["category"]
    slug, suffix = base, 2
    while True:
        query = {"slug": slug}
        if exclude_id is not None:
            query["_id"] = {"$ne": exclude_id}
        if not collection.find_one(query):
            return slug
        slug = f"{base}-{suffix}"
        suffix += 1


def _category_slug(name: str, exclude_id=None) -> str:
    base = slugify(name)
    if not base:
        raise HTTPException(status_code=400, detail="Name must contain at least one alphanumeric character")
    return _unique_slug(base, exclude_id)


def _check_parent(parent_id: str):
    if not find_by_id("category", parent_id):
        raise HTTPException(status_code=400, detail="Parent category not found")


@router.get("/api/admin/categories")
def list_categories(admin: dict = Depends(current_admin)):
    cursor = require_db()["category"].find().sort([("sort_order", 1), ("name", 1)])
    return {"categories": serialize(list(cursor))}


@router.post("/api/admin/categories", status_code=201)
def create_category(payload: CategoryIn, admin: dict = Depends(current_admin)):
    name = payload.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Name is required")
    if payload.parent_id:
        _check_parent(payload.parent_id)
    category = Category(
        name=name,
        slug=_category_slug(name),
        description=(payload.description or "").strip() or None,
        parent_id=payload.parent_id or None,
        section=payload.section,
        is_active=payload.is_active,
    )
    category_id = create_document("category", category)
    return {"category": serialize(find_by_id("category", category_id))}


@router.get("/api/admin/categories/{category_id}")
def get_category(category_id: str, admin: dict = Depends(current_admin)):
    return {"category": serialize(_found("category", category_id, "Category"))}


@router.patch("/api/admin/categories/{category_id}")
def update_category(category_id: str, payload: CategoryUpdate, admin: dict = Depends(current_admin)):
    category = _found("category", category_id, "Category")
    fields = payload.model_dump(exclude_unset=True)
    changes = {}

    if "name" in fields:
        name = (fields["name"] or "").strip()
        if not name:
            raise HTTPException(status_code=400, detail="Name cannot be empty")
        changes["name"] = name
        if name != category["name"]:
            changes["slug"] = _category_slug(name, category["_id"])
    if "description" in fields:
        changes["description"] = (fields["description"] or "").strip() or None
    if fields.get("section") is not None:
        changes["section"] = fields["section"]
    if "parent_id" in fields:
        parent_id = fields["parent_id"]
        if parent_id == category_id:
            raise HTTPException(status_code=400, detail="Category cannot be its own parent")
        if parent_id:
            _check_parent(parent_id)
        changes["parent_id"] = parent_id or None
    for key in ("is_active", "sort_order"):
        if fields.get(key) is not None:
            changes[key] = fields[key]

    if not changes:
        raise HTTPException(status_code=400, detail="No changes to apply")
    update_document("category", category["_id"], changes)
    category.update(changes)
    return {"category": serialize(category)}


@router.delete("/api/admin/categories/{category_id}")
def delete_category(category_id: str, admin: dict = Depends(current_admin)):
    db = require_db()
    category = _found("category", category_id, "Category")
    in_use = db["product"].count_documents({"category_id": category_id})
    if in_use:
        raise HTTPException(status_code=400, detail=f"Cannot delete: {in_use} products use this category.")
    db["category"].delete_one({"_id": category["_id"]})
    return {"success": True}


# Customers

@router.get("/api/admin/customers")
def list_customers(
    status: Optional[str] = None,
    q: Optional[str] = None,
    page: int = Query(1, ge=1),
    per_page: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    admin: dict = Depends(current_admin),
):
    db = require_db()
    query = {}
    if status:
        if status not in CUSTOMER_STATUSES:
            raise HTTPException(status_code=400, detail="Invalid status")
        query["status"] = status
    if q:
        pattern = {"$regex": re.escape(q.strip()), "$options": "i"}
        query["$or"] = [{"contact_name": pattern}, {"business_name": pattern}, {"email": pattern}]
    total = db["customer"].count_documents(query)
    cursor = paginate(db["customer"].find(query).sort("created_at", -1), page, per_page)
    return _page(serialize(list(cursor)), total, page, per_page, "customers")


@router.get("/api/admin/customers/{customer_id}")
def get_customer(customer_id: str, admin: dict = Depends(current_admin)):
    db = require_db()
    customer = _found("customer", customer_id, "Customer")
    view = serialize(customer)
    view["addresses"] = serialize(get_documents("address", {"customer_id": customer_id}))
    view["documents"] = serialize(get_documents("verificationdocument", {"customer_id": customer_id}))
    view["recent_orders"] = serialize(list(
        db["order"].find({"customer_id": customer_id}).sort("created_at", -1).limit(10)
    ))
    return {"customer": view}


@router.patch("/api/admin/customers/{customer_id}")
def update_customer(
    customer_id: str,
    payload: CustomerStatusUpdate,
    background: BackgroundTasks,
    admin: dict = Depends(current_admin),
):
    customer = _found("customer", customer_id, "Customer")
    reason = (payload.rejection_reason or "").strip()
    if payload.status in ("rejected", "suspended") and not reason:
        raise HTTPException(status_code=400, detail="Reason is required when rejecting or suspending a customer")

    changes = {
        "status": payload.status,
        "rejection_reason": None if payload.status == "approved" else sanitize(reason),
    }
    if payload.admin_notes is not None:
        changes["admin_notes"] = sanitize(payload.admin_notes) or None
    update_document("customer", customer["_id"], changes)
    background.add_task(process_customer_status_change, customer_id, payload.status, reason or None)
    logger.info("Customer %s status %s -> %s", customer_id, customer.get("status"), payload.status)

    customer.update(changes)
    return {"success": True, "customer": serialize(customer)}


# Store settings

@router.get("/api/admin/settings")
def get_settings(admin: dict = Depends(current_admin)):
    values = get_store_settings(STORE_SETTING_KEYS)
    return {"settings": {key: values.get(key, "") for key in STORE_SETTING_KEYS}}


@router.put("/api/admin/settings")
def update_settings(payload: StoreSettingsUpdate, admin: dict = Depends(current_admin)):
    db = require_db()
    unknown = sorted(set(payload.settings) - set(STORE_SETTING_KEYS))
    if unknown:
        raise HTTPException(status_code=400, detail=f"Unknown settings: {', '.join(unknown)}")
    for key, limit in COORDINATE_RANGES.items():
        value = payload.settings.get(key)
        if value and value.strip():
            try:
                number = float(value)
            except ValueError:
                raise HTTPException(status_code=400, detail=f"{key} must be a number")
            if not math.isfinite(number) or abs(number) > limit:
                raise HTTPException(status_code=400, detail=f"{key} must be between -{limit:g} and {limit:g}")

    now = utcnow()
    for key, value in payload.settings.items():
        db["storesetting"].update_one(
            {"key": key},
            {"$set": {"value": value.strip(), "updated_at": now}, "$setOnInsert": {"created_at": now}},
            upsert=True,
        )
    invalidate_store_location()
    return get_settings(admin)
