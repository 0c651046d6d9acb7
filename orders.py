"""
Checkout and customer order history.

Placing an order is a sequence of separate writes rather than one
transaction: header, line items, per-product stock decrements with their
audit rows, then clearing the cart. If the line items cannot be written
the header is deleted again; later steps are not rolled back.
"""

import logging
import math
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Response
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from auth import approved_customer, current_customer
from cart import add_to_cart, product_label
from catalog import is_purchasable
from database import (
    create_document,
    find_by_id,
    get_store_settings,
    next_sequence,
    oid,
    paginate,
    require_db,
    serialize,
    utcnow,
)
from delivery import owned_address, quote_delivery, round_money
from errors import log_error
from notifications import process_new_order
from schemas import Order, OrderItem, PlaceOrderIn, StockMovement
from settings import DEFAULT_ORDERS_PER_PAGE, MAX_ORDERS_PER_PAGE, ORDER_STATUSES
from storage import get_object
from validators import sanitize

logger = logging.getLogger(__name__)

MAX_ORDER_NOTES = 1000
BANK_SETTING_KEYS = ("bank_name", "bank_account_name", "bank_account_number", "bank_branch")

router = APIRouter(tags=["orders"])


def format_order_number(seq: int) -> str:
    return f"LC-{seq:06d}"


def order_totals(lines: List[dict], delivery_fee: float) -> dict:
    """Price cart lines at current wholesale prices.

    Each line is ``{"product": ..., "quantity": ...}``. Returns the priced
    lines plus subtotal and total, all rounded with ``round_money``.
    """
    priced = []
    for line in lines:
        unit_price = round_money(line["product"]["wholesale_price"])
        priced.append({
            **line,
            "unit_price": unit_price,
            "total_price": round_money(unit_price * line["quantity"]),
        })
    subtotal = round_money(sum(p["total_price"] for p in priced))
    fee = round_money(delivery_fee)
    return {"lines": priced, "subtotal": subtotal, "delivery_fee": fee, "total": round_money(subtotal + fee)}


def _validate_request(payload: PlaceOrderIn, customer_id: str) -> Optional[dict]:
    errors = {}
    if payload.order_notes and len(payload.order_notes) > MAX_ORDER_NOTES:
        errors["order_notes"] = f"Order notes must be at most {MAX_ORDER_NOTES} characters"
    if payload.preferred_delivery_date and payload.preferred_delivery_date < date.today():
        errors["preferred_delivery_date"] = "Preferred delivery date cannot be in the past"
    needs_address = payload.delivery_method in ("standard", "express")
    if needs_address and not payload.delivery_address_id:
        errors["delivery_address_id"] = "Delivery address is required"
    if errors:
        raise HTTPException(status_code=400, detail={"error": "Validation failed", "errors": errors})
    if needs_address:
        return owned_address(payload.delivery_address_id, customer_id)
    return None


def _cart_lines(customer_id: str) -> List[dict]:
    db = require_db()
    lines = []
    for row in db["cartitem"].find({"customer_id": customer_id}).sort("created_at", 1):
        product = find_by_id("product", row["product_id"])
        if is_purchasable(product):
            lines.append({"product": product, "quantity": row["quantity"]})
    return lines


def _stock_issues(lines: List[dict]) -> List[dict]:
    return [
        {
            "product_id": str(line["product"]["_id"]),
            "product_name": product_label(line["product"]),
            "requested": line["quantity"],
            "available": line["product"]["stock_quantity"],
        }
        for line in lines
        if line["quantity"] > line["product"]["stock_quantity"]
    ]


def _decrement_stock(order_id: str, product_id, quantity: int, order_number: str):
    db = require_db()
    before = db["product"].find_one_and_update(
        {"_id": product_id, "stock_quantity": {"$gte": quantity}},
        {"$inc": {"stock_quantity": -quantity, "total_sold": quantity}, "$set": {"updated_at": utcnow()}},
        return_document=ReturnDocument.BEFORE,
    )
    if before is None:
        # someone else bought the stock between the check and now
        logger.warning(
            "Stock for product %s fell below %d while placing order %s; needs manual reconciliation",
            product_id, quantity, order_number,
        )
        return
    try:
        create_document("stockmovement", StockMovement(
            product_id=str(product_id),
            quantity_change=-quantity,
            quantity_before=before["stock_quantity"],
            quantity_after=before["stock_quantity"] - quantity,
            reason="sale",
            reference_id=order_id,
            notes=f"Order {order_number}",
        ))
    except PyMongoError as exc:
        log_error(f"Stock movement for order {order_number}", exc)


@router.post("/api/orders", status_code=201)
def place_order(payload: PlaceOrderIn, background: BackgroundTasks, customer: dict = Depends(approved_customer)):
    db = require_db()
    customer_id = str(customer["_id"])
    address = _validate_request(payload, customer_id)

    lines = _cart_lines(customer_id)
    if not lines:
        raise HTTPException(status_code=400, detail="Your cart is empty or has no available products")

    issues = _stock_issues(lines)
    if issues:
        raise HTTPException(
            status_code=400,
            detail={"error": "Some items do not have enough stock", "stock_issues": issues},
        )

    quote = quote_delivery(payload.delivery_method, address if payload.delivery_method == "standard" else None)
    totals = order_totals(lines, quote.delivery_fee)

    order = Order(
        order_number=format_order_number(next_sequence("order_number")),
        customer_id=customer_id,
        delivery_method=payload.delivery_method,
        delivery_address_id=str(address["_id"]) if address else None,
        delivery_fee=totals["delivery_fee"],
        delivery_distance_km=quote.delivery_distance_km,
        preferred_delivery_date=payload.preferred_delivery_date.isoformat() if payload.preferred_delivery_date else None,
        subtotal=totals["subtotal"],
        total=totals["total"],
        payment_method=payload.payment_method,
        order_notes=sanitize(payload.order_notes) or None,
    )
    order_id = create_document("order", order)

    now = utcnow()
    items = [
        {
            **OrderItem(
                order_id=order_id,
                product_id=str(line["product"]["_id"]),
                product_name=product_label(line["product"]),
                product_generic_name=line["product"].get("generic_name"),
                product_sku=line["product"].get("sku"),
                quantity=line["quantity"],
                unit_price=line["unit_price"],
                total_price=line["total_price"],
            ).model_dump(),
            "created_at": now,
            "updated_at": now,
        }
        for line in totals["lines"]
    ]
    try:
        db["orderitem"].insert_many(items)
    except PyMongoError as exc:
        log_error(f"Order items for {order.order_number}", exc)
        try:
            db["order"].delete_one({"_id": oid(order_id)})
            logger.warning("Removed order header %s after item insert failure", order.order_number)
        except PyMongoError as cleanup_exc:
            log_error(f"Compensating delete of order {order.order_number}", cleanup_exc)
        raise HTTPException(status_code=500, detail="Failed to create order")

    for line in totals["lines"]:
        _decrement_stock(order_id, line["product"]["_id"], line["quantity"], order.order_number)

    db["cartitem"].delete_many({"customer_id": customer_id})

    background.add_task(process_new_order, order_id)
    logger.info("Placed order %s for customer %s (total %.2f)", order.order_number, customer_id, order.total)

    body = serialize(find_by_id("order", order_id))
    body["items"] = serialize(items)
    return {"order": body}


# Order history

def owned_order(order_id: str, customer_id: str) -> dict:
    order = find_by_id("order", order_id)
    if not order or order.get("customer_id") != customer_id:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


def order_items(order_id: str) -> List[dict]:
    return list(require_db()["orderitem"].find({"order_id": order_id}).sort("created_at", 1))


@router.get("/api/orders")
def list_orders(
    status: Optional[str] = None,
    page: int = Query(1, ge=1),
    per_page: int = Query(DEFAULT_ORDERS_PER_PAGE, ge=1, le=MAX_ORDERS_PER_PAGE),
    customer: dict = Depends(current_customer),
):
    db = require_db()
    query = {"customer_id": str(customer["_id"])}
    if status:
        if status not in ORDER_STATUSES:
            raise HTTPException(status_code=400, detail="Invalid status")
        query["status"] = status
    total = db["order"].count_documents(query)
    orders = []
    for order in paginate(db["order"].find(query).sort("created_at", -1), page, per_page):
        view = serialize(order)
        view["item_count"] = db["orderitem"].count_documents({"order_id": str(order["_id"])})
        orders.append(view)
    return {
        "orders": orders,
        "total": total,
        "page": page,
        "per_page": per_page,
        "total_pages": math.ceil(total / per_page) if total else 0,
    }


@router.get("/api/orders/{order_id}")
def get_order(order_id: str, customer: dict = Depends(current_customer)):
    order = owned_order(order_id, str(customer["_id"]))
    view = serialize(order)
    view["items"] = serialize(order_items(order_id))
    address = find_by_id("address", order["delivery_address_id"]) if order.get("delivery_address_id") else None
    view["address"] = serialize(address) if address else None
    history = require_db()["orderstatushistory"].find({"order_id": order_id}).sort("created_at", 1)
    view["status_history"] = serialize(list(history))
    return {"order": view}


@router.post("/api/orders/{order_id}/reorder")
def reorder(order_id: str, customer: dict = Depends(approved_customer)):
    customer_id = str(customer["_id"])
    owned_order(order_id, customer_id)
    added, warnings = 0, []
    for item in order_items(order_id):
        product = find_by_id("product", item["product_id"])
        if not is_purchasable(product):
            warnings.append({
                "product_id": item["product_id"],
                "product_name": item["product_name"],
                "message": "No longer available",
            })
            continue
        row, clamped = add_to_cart(customer_id, product, item["quantity"])
        added += 1
        if clamped:
            warnings.append({
                "product_id": item["product_id"],
                "product_name": item["product_name"],
                "message": f"Quantity limited to {row['quantity']} (available stock)",
            })
    return {"added": added, "warnings": warnings}


@router.get("/api/orders/{order_id}/invoice")
def get_invoice(order_id: str, customer: dict = Depends(current_customer)):
    order = owned_order(order_id, str(customer["_id"]))
    content = get_object(order["invoice_key"]) if order.get("invoice_key") else None
    if content is None:
        raise HTTPException(status_code=404, detail="Invoice not available yet")
    return Response(
        content=content,
        media_type="text/html",
        headers={"Content-Disposition": f'attachment; filename="INV-{order["order_number"]}.html"'},
    )


@router.get("/api/checkout/bank-details")
def bank_details(customer: dict = Depends(approved_customer)):
    values = get_store_settings(BANK_SETTING_KEYS)
    return {key: values.get(key, "") for key in BANK_SETTING_KEYS}
