"""
Per-customer cart.

Every read revalidates against live product data: unavailable or
stocked-out lines are removed, over-stock quantities are clamped, and each
correction is reported back as a warning.
"""

import logging
from typing import List, Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException

from auth import approved_customer, optional_customer_id
from catalog import product_views
from database import create_document, find_by_id, require_db, serialize, update_document
from delivery import round_money
from schemas import CartAdd, CartItem, CartQuantity
from settings import MAX_CART_QUANTITY, NON_PURCHASABLE_SECTIONS

logger = logging.getLogger(__name__)

router = APIRouter(tags=["cart"])


def product_label(product: dict) -> str:
    return f"{product.get('generic_name', '')} ({product.get('brand_name', '')})"


def product_available(product: Optional[dict]) -> bool:
    return bool(product and product.get("is_active") and product.get("is_visible"))


def _warning(kind: str, product: Optional[dict], product_id: str, message: str, **extra) -> dict:
    warning = {
        "type": kind,
        "product_id": product_id,
        "product_name": product_label(product) if product else None,
        "message": message,
    }
    warning.update(extra)
    return warning


def load_cart(customer_id: str) -> Tuple[List[dict], List[dict]]:
    """Revalidate a customer's cart in place.

    Returns ``(lines, warnings)``; each line is a dict holding the stored
    cart row under ``item`` and the live product under ``product``.
    """
    db = require_db()
    rows = list(db["cartitem"].find({"customer_id": customer_id}).sort("created_at", 1))
    lines, warnings = [], []
    for row in rows:
        product = find_by_id("product", row["product_id"])
        if not product_available(product):
            db["cartitem"].delete_one({"_id": row["_id"]})
            warnings.append(_warning(
                "product_unavailable", product, row["product_id"],
                "This product is no longer available and was removed from your cart",
            ))
            continue
        stock = product.get("stock_quantity", 0)
        if stock <= 0:
            db["cartitem"].delete_one({"_id": row["_id"]})
            warnings.append(_warning(
                "out_of_stock", product, row["product_id"],
                "This product is out of stock and was removed from your cart",
            ))
            continue
        if row["quantity"] > stock:
            warnings.append(_warning(
                "quantity_reduced", product, row["product_id"],
                f"Quantity reduced from {row['quantity']} to {stock} (available stock)",
                old_quantity=row["quantity"],
                new_quantity=stock,
            ))
            update_document("cartitem", row["_id"], {"quantity": stock})
            row["quantity"] = stock
        lines.append({"item": row, "product": product})
    return lines, warnings


def line_view(item: dict, product: dict) -> dict:
    view = serialize(item)
    view["product"] = product_views([product])[0]
    view["unit_price"] = round_money(product["wholesale_price"])
    view["line_total"] = round_money(product["wholesale_price"] * item["quantity"])
    return view


def add_to_cart(customer_id: str, product: dict, quantity: int) -> Tuple[dict, bool]:
    """Upsert a cart line, summing with any existing quantity and clamping to stock.

    Returns the stored row and whether the requested quantity was reduced.
    """
    db = require_db()
    stock = product.get("stock_quantity", 0)
    product_id = str(product["_id"])
    existing = db["cartitem"].find_one({"customer_id": customer_id, "product_id": product_id})
    wanted = quantity + (existing["quantity"] if existing else 0)
    final = min(wanted, stock, MAX_CART_QUANTITY)

    if existing:
        update_document("cartitem", existing["_id"], {"quantity": final})
        existing["quantity"] = final
        row = existing
    else:
        item_id = create_document("cartitem", CartItem(customer_id=customer_id, product_id=product_id, quantity=final))
        row = find_by_id("cartitem", item_id)
    return row, final < wanted


def owned_cart_item(item_id: str, customer_id: str) -> dict:
    item = find_by_id("cartitem", item_id)
    if not item or item.get("customer_id") != customer_id:
        raise HTTPException(status_code=404, detail="Cart item not found")
    return item


@router.get("/api/cart")
def get_cart(customer: dict = Depends(approved_customer)):
    lines, warnings = load_cart(str(customer["_id"]))
    items = [line_view(line["item"], line["product"]) for line in lines]
    subtotal = round_money(sum(i["line_total"] for i in items))
    return {"items": items, "warnings": warnings, "subtotal": subtotal}


@router.post("/api/cart", status_code=201)
def add_item(payload: CartAdd, customer: dict = Depends(approved_customer)):
    product = find_by_id("product", payload.product_id)
    if not product:
        raise HTTPException(status_code=400, detail="Product not found")
    if not product_available(product):
        raise HTTPException(status_code=400, detail="Product is not available")
    if product.get("section") in NON_PURCHASABLE_SECTIONS:
        raise HTTPException(status_code=400, detail="This product cannot be ordered online")
    if product.get("stock_quantity", 0) <= 0:
        raise HTTPException(status_code=400, detail="Product is out of stock")

    row, clamped = add_to_cart(str(customer["_id"]), product, payload.quantity)
    body = {"item": line_view(row, product)}
    if clamped:
        body["warning"] = f"Quantity limited to {row['quantity']} (available stock)"
    return body


@router.patch("/api/cart/{item_id}")
def update_item(item_id: str, payload: CartQuantity, customer: dict = Depends(approved_customer)):
    db = require_db()
    item = owned_cart_item(item_id, str(customer["_id"]))
    product = find_by_id("product", item["product_id"])
    if not product_available(product) or product.get("stock_quantity", 0) <= 0:
        db["cartitem"].delete_one({"_id": item["_id"]})
        raise HTTPException(status_code=400, detail="Product is no longer available and was removed from your cart")

    quantity = min(payload.quantity, product["stock_quantity"])
    update_document("cartitem", item["_id"], {"quantity": quantity})
    item["quantity"] = quantity
    body = {"item": line_view(item, product)}
    if quantity < payload.quantity:
        body["warning"] = f"Quantity limited to {quantity} (available stock)"
    return body


@router.delete("/api/cart/{item_id}")
def remove_item(item_id: str, customer: dict = Depends(approved_customer)):
    item = owned_cart_item(item_id, str(customer["_id"]))
    require_db()["cartitem"].delete_one({"_id": item["_id"]})
    return {"success": True}


@router.get("/api/cart/count")
def cart_count(customer_id: Optional[str] = Depends(optional_customer_id)):
    if not customer_id:
        return {"count": 0}
    return {"count": require_db()["cartitem"].count_documents({"customer_id": customer_id})}
