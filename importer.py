"""
CSV product import.

Rows are validated one at a time. Bad rows are reported back with their
row number (the header is row 1) and skipped; good rows are upserted by
SKU. One bad row never stops the rest of the file.
"""

import csv
import io
import logging
import math
from typing import Dict, List

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from pydantic import ValidationError
from pymongo.errors import PyMongoError

from auth import current_admin
from database import create_document, require_db, update_document
from errors import log_error
from schemas import Product
from settings import CSV_CONTENT_TYPES, MAX_FILE_SIZE, PRODUCT_SECTIONS

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("brand_name", "generic_name", "sku", "wholesale_price")
OPTIONAL_TEXT_COLUMNS = ("category_id", "manufacturer_id", "dosage_form", "strength", "pack_size", "description")

router = APIRouter(tags=["admin"])


class RowError(ValueError):
    pass


def normalize_header(name: str) -> str:
    return "_".join(name.strip().lower().split())


def parse_rows(text: str) -> List[List[str]]:
    """Split CSV text into rows, dropping blank lines."""
    reader = csv.reader(io.StringIO(text))
    return [row for row in reader if any(cell.strip() for cell in row)]


def product_fields(row: Dict[str, str]) -> dict:
    """Validate one CSV row and return the product fields it sets."""
    for column in ("brand_name", "generic_name", "sku"):
        if not row.get(column, "").strip():
            raise RowError(f"{column} is required")

    try:
        price = float(row.get("wholesale_price", ""))
    except ValueError:
        price = None
    if price is None or not math.isfinite(price) or price <= 0:
        raise RowError("wholesale_price must be a positive number")

    raw_stock = row.get("stock_quantity", "").strip()
    try:
        stock = int(raw_stock) if raw_stock else 0
    except ValueError:
        stock = -1
    if stock < 0:
        raise RowError("stock_quantity must be a non-negative integer")

    section = row.get("section", "").strip() or "medicines"
    if section not in PRODUCT_SECTIONS:
        raise RowError(f"section must be one of: {', '.join(PRODUCT_SECTIONS)}")

    fields = {
        "brand_name": row["brand_name"].strip(),
        "generic_name": row["generic_name"].strip(),
        "sku": row["sku"].strip(),
        "wholesale_price": price,
        "stock_quantity": stock,
        "section": section,
    }
    for column in OPTIONAL_TEXT_COLUMNS:
        value = row.get(column, "").strip()
        if value:
            fields[column] = value
    if row.get("is_prescription", "").strip().lower() == "true":
        fields["is_prescription"] = True
    threshold = row.get("low_stock_threshold", "").strip()
    if threshold.isdigit():
        fields["low_stock_threshold"] = int(threshold)
    return fields


def import_products(text: str) -> dict:
    rows = parse_rows(text)
    if len(rows) < 2:
        raise HTTPException(status_code=400, detail="CSV must have a header row and at least one data row")

    headers = [normalize_header(h) for h in rows[0]]
    missing = [c for c in REQUIRED_COLUMNS if c not in headers]
    if missing:
        raise HTTPException(status_code=400, detail=f"Missing required columns: {', '.join(missing)}")

    db = require_db()
    inserted = updated = 0
    errors = []
    for index, values in enumerate(rows[1:], start=2):
        row = {h: (values[i] if i < len(values) else "") for i, h in enumerate(headers)}
        try:
            fields = product_fields(row)
        except RowError as exc:
            errors.append({"row": index, "message": str(exc)})
            continue

        try:
            existing = db["product"].find_one({"sku": fields["sku"]})
            if existing:
                update_document("product", existing["_id"], fields)
                updated += 1
            else:
                create_document("product", Product(**fields))
                inserted += 1
        except (PyMongoError, ValidationError) as exc:
            log_error(f"CSV import row {index}", exc)
            errors.append({"row": index, "message": "Could not save this row"})

    logger.info("CSV import: %d inserted, %d updated, %d errors", inserted, updated, len(errors))
    return {
        "success": True,
        "inserted": inserted,
        "updated": updated,
        "errors": errors,
        "total_rows": len(rows) - 1,
    }


@router.post("/api/admin/products/import")
async def import_csv(file: UploadFile = File(...), admin: dict = Depends(current_admin)):
    if file.content_type and file.content_type not in CSV_CONTENT_TYPES:
        raise HTTPException(status_code=400, detail="File must be a CSV file")
    if not (file.filename or "").lower().endswith(".csv"):
        raise HTTPException(status_code=400, detail="File must have a .csv extension")
    data = await file.read(MAX_FILE_SIZE + 1)
    if len(data) > MAX_FILE_SIZE:
        raise HTTPException(status_code=400, detail="File must be under 5MB")
    try:
        text = data.decode("utf-8-sig")
    except UnicodeDecodeError:
        raise HTTPException(status_code=400, detail="File must be UTF-8 encoded text")
    return import_products(text)
