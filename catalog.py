"""
Public catalog: product search and suggestions, product detail and
alternatives, categories and manufacturers.

Only products that are both active and visible are ever returned here.
"""

import math
import re
from typing import Optional

from bson import ObjectId
from fastapi import APIRouter, HTTPException, Query

from database import find_by_id, paginate, require_db, serialize
from schemas import ProductIds
from settings import (
    DEFAULT_PAGE_SIZE,
    DOSAGE_FORMS,
    MAX_PAGE_SIZE,
    NON_PURCHASABLE_SECTIONS,
    PRODUCT_SECTIONS,
    PRODUCT_SORTS,
)

router = APIRouter(tags=["catalog"])

PUBLIC_FILTER = {"is_active": True, "is_visible": True}

SUGGESTION_LIMIT = 8
MAX_QUERY_LENGTH = 200
MAX_IDS = 20
MAX_ALTERNATIVES = 4

SORTS = {
    "name_asc": [("generic_name", 1)],
    "name_desc": [("generic_name", -1)],
    "price_asc": [("wholesale_price", 1)],
    "price_desc": [("wholesale_price", -1)],
    "newest": [("created_at", -1)],
    "popular": [("total_sold", -1)],
}


def is_purchasable(product: Optional[dict]) -> bool:
    """Active, visible, in stock and not in a display-only section."""
    return bool(
        product
        and product.get("is_active")
        and product.get("is_visible")
        and product.get("section") not in NON_PURCHASABLE_SECTIONS
        and product.get("stock_quantity", 0) > 0
    )


def _slug_id(collection: str, slug: Optional[str]) -> Optional[str]:
    if not slug:
        return None
    doc = require_db()[collection].find_one({"slug": slug, "is_active": True})
    return str(doc["_id"]) if doc else ""


def _names(collection: str, ids) -> dict:
    valid = [ObjectId(i) for i in set(ids) if i and ObjectId.is_valid(i)]
    if not valid:
        return {}
    return {str(d["_id"]): d for d in require_db()[collection].find({"_id": {"$in": valid}})}


def product_views(products: list) -> list:
    """Serialize products with their category and manufacturer names attached."""
    categories = _names("category", [p.get("category_id") for p in products])
    manufacturers = _names("manufacturer", [p.get("manufacturer_id") for p in products])
    out = []
    for p in products:
        view = serialize(p)
        category = categories.get(p.get("category_id"))
        manufacturer = manufacturers.get(p.get("manufacturer_id"))
        view["category_name"] = category["name"] if category else None
        view["manufacturer_name"] = manufacturer["name"] if manufacturer else None
        view["in_stock"] = p.get("stock_quantity", 0) > 0
        out.append(view)
    return out


def build_product_query(q=None, section=None, category_id=None, manufacturer_id=None,
                        dosage_form=None, prescription=None, in_stock=None, base=None) -> dict:
    query = dict(base or {})
    if q:
        pattern = {"$regex": re.escape(q.strip()), "$options": "i"}
        query["$or"] = [
            {"generic_name": pattern},
            {"brand_name": pattern},
            {"sku": pattern},
            {"barcode": pattern},
        ]
    if section:
        query["section"] = section
    if category_id is not None:
        query["category_id"] = category_id
    if manufacturer_id is not None:
        query["manufacturer_id"] = manufacturer_id
    if dosage_form:
        query["dosage_form"] = dosage_form
    if prescription is not None:
        query["is_prescription"] = prescription
    if in_stock:
        query["stock_quantity"] = {"$gt": 0}
    return query


@router.get("/api/products")
def list_products(
    q: Optional[str] = None,
    section: Optional[str] = None,
    category: Optional[str] = None,
    manufacturer: Optional[str] = None,
    dosage_form: Optional[str] = None,
    prescription: Optional[bool] = None,
    in_stock: Optional[bool] = None,
    sort: str = "name_asc",
    page: int = Query(1, ge=1),
    per_page: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
):
    if section and section not in PRODUCT_SECTIONS:
        raise HTTPException(status_code=400, detail="Invalid section")
    if dosage_form and dosage_form not in DOSAGE_FORMS:
        raise HTTPException(status_code=400, detail="Invalid dosage form")
    if sort not in PRODUCT_SORTS:
        sort = "name_asc"

    query = build_product_query(
        q=q,
        section=section,
        category_id=_slug_id("category", category),
        manufacturer_id=_slug_id("manufacturer", manufacturer),
        dosage_form=dosage_form,
        prescription=prescription,
        in_stock=in_stock,
        base=PUBLIC_FILTER,
    )
    collection = require_db()["product"]
    total = collection.count_documents(query)
    cursor = paginate(collection.find(query).sort(SORTS[sort]), page, per_page)
    return {
        "products": product_views(list(cursor)),
        "total": total,
        "page": page,
        "per_page": per_page,
        "total_pages": math.ceil(total / per_page) if total else 0,
    }


@router.get("/api/products/search")
def search_suggestions(q: str = ""):
    """Typeahead: a handful of matches once at least two characters are typed."""
    text = q.strip()[:MAX_QUERY_LENGTH]
    if len(text) < 2:
        return {"suggestions": []}
    fields = {"generic_name": 1, "brand_name": 1, "strength": 1, "dosage_form": 1}
    cursor = require_db()["product"].find(build_product_query(q=text, base=PUBLIC_FILTER), fields)
    return {"suggestions": serialize(list(cursor.limit(SUGGESTION_LIMIT)))}


@router.post("/api/products/by-ids")
def products_by_ids(payload: ProductIds):
    ids = [i for i in payload.ids if ObjectId.is_valid(i)][:MAX_IDS]
    if not ids:
        return {"products": []}
    query = {**PUBLIC_FILTER, "_id": {"$in": [ObjectId(i) for i in ids]}}
    found = {str(p["_id"]): p for p in require_db()["product"].find(query)}
    # keep the caller's order
    ordered = [found[i] for i in dict.fromkeys(ids) if i in found]
    return {"products": product_views(ordered)}


@router.get("/api/products/{product_id}")
def get_product(product_id: str):
    product = find_by_id("product", product_id)
    if not product or not product.get("is_active") or not product.get("is_visible"):
        raise HTTPException(status_code=404, detail="Product not found")
    return {"product": product_views([product])[0]}


@router.get("/api/products/{product_id}/alternatives")
def get_alternatives(product_id: str):
    """In-stock substitutes: same generic name first, then best sellers from the same category."""
    product = find_by_id("product", product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")

    collection = require_db()["product"]
    available = {**PUBLIC_FILTER, "_id": {"$ne": product["_id"]}, "stock_quantity": {"$gt": 0}}
    generic = product.get("generic_name") or ""
    same_generic = {"$regex": f"^{re.escape(generic)}$", "$options": "i"}
    alternatives = list(
        collection.find({**available, "generic_name": same_generic})
        .sort("stock_quantity", -1)
        .limit(MAX_ALTERNATIVES)
    )

    if len(alternatives) < MAX_ALTERNATIVES and product.get("category_id"):
        seen = {a["_id"] for a in alternatives}
        cursor = (
            collection.find({**available, "category_id": product["category_id"]})
            .sort("total_sold", -1)
            .limit(2 * MAX_ALTERNATIVES)
        )
        for candidate in cursor:
            if candidate["_id"] in seen or (candidate.get("generic_name") or "").lower() == generic.lower():
                continue
            alternatives.append(candidate)
            if len(alternatives) >= MAX_ALTERNATIVES:
                break

    return {"alternatives": product_views(alternatives)}


@router.get("/api/categories")
def list_categories(section: Optional[str] = None):
    query = {"is_active": True}
    if section:
        query["section"] = section
    cursor = require_db()["category"].find(query).sort([("sort_order", 1), ("name", 1)])
    return {"categories": [serialize(c) for c in cursor]}


@router.get("/api/manufacturers")
def list_manufacturers():
    cursor = require_db()["manufacturer"].find({"is_active": True}).sort("name", 1)
    return {"manufacturers": [serialize(m) for m in cursor]}
