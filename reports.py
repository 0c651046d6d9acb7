"""
Admin reports.

Each report is built as a list of flat rows plus a summary dict and is
returned either as JSON ``{data, summary}`` or, with ``?format=xlsx``, as
an Excel workbook download.
"""

import io
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import List, Literal, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException, Query, Response
from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill
from openpyxl.utils import get_column_letter

from auth import current_admin
from database import require_db, utcnow
from delivery import round_money
from settings import (
    DELIVERY_METHOD_LABELS,
    ORDER_STATUS_LABELS,
    OUTSTANDING_ORDER_STATUSES,
    STOCK_ADJUSTMENT_REASON_LABELS,
    STORE_NAME,
)

logger = logging.getLogger(__name__)

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
MAX_MOVEMENT_ROWS = 1000
URGENT_AFTER_DAYS = 3

ReportFormat = Literal["json", "xlsx"]

router = APIRouter(prefix="/api/admin/reports", tags=["reports"])


@dataclass
class Column:
    header: str
    key: str
    width: int = 14
    kind: str = "text"  # text | number | currency


@dataclass
class Report:
    slug: str
    title: str
    sheet: str
    columns: List[Column]
    rows: List[dict]
    summary: dict = field(default_factory=dict)


# ---------- Rendering ----------

NUMBER_FORMATS = {"number": "#,##0", "currency": "#,##0.00"}


def build_workbook(report: Report) -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = report.sheet

    ws.append([f"{STORE_NAME} - {report.title}"])
    ws["A1"].font = Font(bold=True, size=14)
    ws.append([f"Generated {utcnow().strftime('%Y-%m-%d %H:%M')} UTC"])
    ws.append([])

    ws.append([c.header for c in report.columns])
    header_row = ws.max_row
    for idx, column in enumerate(report.columns, start=1):
        cell = ws.cell(row=header_row, column=idx)
        cell.font = Font(bold=True, color="FFFFFF")
        cell.fill = PatternFill("solid", fgColor="2E7D32")
        ws.column_dimensions[get_column_letter(idx)].width = column.width

    for row in report.rows:
        ws.append([row.get(c.key) for c in report.columns])
        for idx, column in enumerate(report.columns, start=1):
            fmt = NUMBER_FORMATS.get(column.kind)
            if fmt:
                ws.cell(row=ws.max_row, column=idx).number_format = fmt

    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


def respond(report: Report, fmt: str):
    if fmt == "xlsx":
        filename = f"{report.slug}-{date.today().isoformat()}.xlsx"
        return Response(
            content=build_workbook(report),
            media_type=XLSX_MEDIA_TYPE,
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )
    return {"data": report.rows, "summary": report.summary}


# ---------- Queries ----------

def date_range(start: Optional[date], end: Optional[date]) -> dict:
    if start and end and start > end:
        raise HTTPException(status_code=400, detail="'from' must not be after 'to'")
    bounds = {}
    if start:
        bounds["$gte"] = datetime.combine(start, time.min)
    if end:
        bounds["$lt"] = datetime.combine(end + timedelta(days=1), time.min)
    return {"created_at": bounds} if bounds else {}


def _customers(ids) -> dict:
    oids = [ObjectId(i) for i in set(ids) if i and ObjectId.is_valid(i)]
    if not oids:
        return {}
    return {str(c["_id"]): c for c in require_db()["customer"].find({"_id": {"$in": oids}})}


def _item_counts(order_ids) -> dict:
    counts = {}
    for item in require_db()["orderitem"].find({"order_id": {"$in": list(order_ids)}}):
        counts[item["order_id"]] = counts.get(item["order_id"], 0) + 1
    return counts


def clamp_limit(limit: int) -> int:
    return max(10, min(100, limit))


def _title(base: str, start: Optional[date], end: Optional[date]) -> str:
    if start and end:
        return f"{base} ({start} to {end})"
    if start:
        return f"{base} (from {start})"
    if end:
        return f"{base} (to {end})"
    return base


def sales_report(start: Optional[date] = None, end: Optional[date] = None) -> Report:
    db = require_db()
    query = {"status": {"$ne": "cancelled"}, **date_range(start, end)}
    orders = list(db["order"].find(query).sort("created_at", -1))
    customers = _customers(o["customer_id"] for o in orders)
    counts = _item_counts(str(o["_id"]) for o in orders)

    rows = []
    for order in orders:
        customer = customers.get(order["customer_id"]) or {}
        rows.append({
            "date": order["created_at"].date().isoformat(),
            "order_number": order["order_number"],
            "customer_name": customer.get("business_name") or customer.get("contact_name") or "Unknown",
            "item_count": counts.get(str(order["_id"]), 0),
            "subtotal": round_money(order["subtotal"]),
            "delivery_fee": round_money(order["delivery_fee"]),
            "total": round_money(order["total"]),
            "status": order["status"],
            "payment_status": order.get("payment_status"),
        })

    revenue = round_money(sum(r["total"] for r in rows))
    summary = {
        "total_orders": len(rows),
        "total_revenue": revenue,
        "total_delivery_fees": round_money(sum(r["delivery_fee"] for r in rows)),
        "average_order_value": round_money(revenue / len(rows)) if rows else 0.0,
    }
    columns = [
        Column("Date", "date", 12),
        Column("Order #", "order_number", 14),
        Column("Customer", "customer_name", 25),
        Column("Items", "item_count", 8, "number"),
        Column("Subtotal", "subtotal", 15, "currency"),
        Column("Delivery", "delivery_fee", 12, "currency"),
        Column("Total", "total", 15, "currency"),
        Column("Status", "status", 12),
        Column("Payment", "payment_status", 10),
    ]
    return Report("sales-report", _title("Sales Report", start, end), "Sales", columns, rows, summary)


def best_sellers_report(start: Optional[date] = None, end: Optional[date] = None, limit: int = 50) -> Report:
    db = require_db()
    orders = db["order"].find({"status": {"$ne": "cancelled"}, **date_range(start, end)}, {"_id": 1})
    order_ids = [str(o["_id"]) for o in orders]

    totals = {}
    for item in db["orderitem"].find({"order_id": {"$in": order_ids}}):
        entry = totals.setdefault(item["product_id"], {
            "product_id": item["product_id"],
            "product_name": item["product_name"],
            "sku": item.get("product_sku"),
            "units_sold": 0,
            "revenue": 0.0,
        })
        entry["units_sold"] += item["quantity"]
        entry["revenue"] += item["total_price"]

    ranked = sorted(totals.values(), key=lambda e: e["units_sold"], reverse=True)[:limit]
    product_oids = [ObjectId(e["product_id"]) for e in ranked if ObjectId.is_valid(e["product_id"])]
    products = {str(p["_id"]): p for p in db["product"].find({"_id": {"$in": product_oids}})}
    category_oids = [
        ObjectId(p["category_id"]) for p in products.values()
        if p.get("category_id") and ObjectId.is_valid(p["category_id"])
    ]
    categories = {str(c["_id"]): c["name"] for c in db["category"].find({"_id": {"$in": category_oids}})}

    rows = []
    for rank, entry in enumerate(ranked, start=1):
        product = products.get(entry["product_id"]) or {}
        rows.append({
            "rank": rank,
            "product_name": entry["product_name"],
            "brand_name": product.get("brand_name", ""),
            "sku": entry["sku"],
            "category": categories.get(product.get("category_id")),
            "units_sold": entry["units_sold"],
            "revenue": round_money(entry["revenue"]),
            "current_stock": product.get("stock_quantity", 0),
        })

    summary = {
        "total_products": len(rows),
        "total_units_sold": sum(r["units_sold"] for r in rows),
        "total_revenue": round_money(sum(r["revenue"] for r in rows)),
    }
    columns = [
        Column("Rank", "rank", 6, "number"),
        Column("Product", "product_name", 35),
        Column("Brand", "brand_name", 20),
        Column("SKU", "sku", 14),
        Column("Category", "category", 18),
        Column("Units Sold", "units_sold", 12, "number"),
        Column("Revenue", "revenue", 15, "currency"),
        Column("Current Stock", "current_stock", 14, "number"),
    ]
    return Report("best-sellers", _title("Best Sellers", start, end), "Best Sellers", columns, rows, summary)


def inventory_movement_report(start: Optional[date] = None, end: Optional[date] = None,
                              reason: Optional[str] = None) -> Report:
    db = require_db()
    query = date_range(start, end)
    if reason:
        query["reason"] = reason
    movements = list(db["stockmovement"].find(query).sort("created_at", -1).limit(MAX_MOVEMENT_ROWS))
    product_oids = [ObjectId(m["product_id"]) for m in movements if ObjectId.is_valid(m["product_id"])]
    products = {str(p["_id"]): p for p in db["product"].find({"_id": {"$in": product_oids}})}

    rows = []
    for m in movements:
        product = products.get(m["product_id"])
        rows.append({
            "date": m["created_at"].date().isoformat(),
            "time": m["created_at"].strftime("%H:%M"),
            "product_name": f"{product['generic_name']} ({product['brand_name']})" if product else "Unknown Product",
            "product_sku": product.get("sku") if product else None,
            "reason": STOCK_ADJUSTMENT_REASON_LABELS.get(m["reason"], m["reason"]),
            "quantity_change": m["quantity_change"],
            "quantity_before": m["quantity_before"],
            "quantity_after": m["quantity_after"],
            "reference": m.get("reference_id"),
            "notes": m.get("notes"),
        })

    summary = {
        "total_movements": len(rows),
        "total_additions": sum(r["quantity_change"] for r in rows if r["quantity_change"] > 0),
        "total_deductions": sum(-r["quantity_change"] for r in rows if r["quantity_change"] < 0),
    }
    columns = [
        Column("Date", "date", 12),
        Column("Time", "time", 8),
        Column("Product", "product_name", 35),
        Column("SKU", "product_sku", 14),
        Column("Reason", "reason", 16),
        Column("Change", "quantity_change", 10, "number"),
        Column("Before", "quantity_before", 10, "number"),
        Column("After", "quantity_after", 10, "number"),
        Column("Reference", "reference", 26),
        Column("Notes", "notes", 30),
    ]
    return Report(
        "inventory-movement", _title("Inventory Movement", start, end), "Movements", columns, rows, summary
    )


def outstanding_orders_report(status: Optional[str] = None, now: Optional[datetime] = None) -> Report:
    db = require_db()
    if status and status not in OUTSTANDING_ORDER_STATUSES:
        raise HTTPException(status_code=400, detail="Invalid status")
    now = now or utcnow()
    statuses = [status] if status else list(OUTSTANDING_ORDER_STATUSES)
    orders = list(db["order"].find({"status": {"$in": statuses}}).sort("created_at", 1))
    customers = _customers(o["customer_id"] for o in orders)
    counts = _item_counts(str(o["_id"]) for o in orders)

    rows = []
    for order in orders:
        customer = customers.get(order["customer_id"]) or {}
        rows.append({
            "order_number": order["order_number"],
            "customer_name": customer.get("contact_name") or "Unknown",
            "business_name": customer.get("business_name"),
            "status": ORDER_STATUS_LABELS.get(order["status"], order["status"]),
            "delivery_method": DELIVERY_METHOD_LABELS.get(order["delivery_method"], order["delivery_method"]),
            "item_count": counts.get(str(order["_id"]), 0),
            "total": round_money(order["total"]),
            "days_pending": (now - order["created_at"]).days,
            "created_at": order["created_at"].date().isoformat(),
        })

    by_status = {}
    for row in rows:
        entry = by_status.setdefault(row["status"], {"status": row["status"], "count": 0, "value": 0.0})
        entry["count"] += 1
        entry["value"] = round_money(entry["value"] + row["total"])
    summary = {
        "total_orders": len(rows),
        "total_value": round_money(sum(r["total"] for r in rows)),
        "by_status": list(by_status.values()),
        "urgent_count": sum(1 for r in rows if r["days_pending"] > URGENT_AFTER_DAYS),
    }
    columns = [
        Column("Order #", "order_number", 14),
        Column("Customer", "customer_name", 22),
        Column("Business", "business_name", 25),
        Column("Status", "status", 18),
        Column("Delivery", "delivery_method", 18),
        Column("Items", "item_count", 8, "number"),
        Column("Total", "total", 15, "currency"),
        Column("Days Pending", "days_pending", 13, "number"),
        Column("Ordered", "created_at", 12),
    ]
    return Report("outstanding-orders", "Outstanding Orders", "Outstanding", columns, rows, summary)


def customer_analysis_report(start: Optional[date] = None, end: Optional[date] = None, limit: int = 50) -> Report:
    db = require_db()
    orders = list(db["order"].find({"status": {"$ne": "cancelled"}, **date_range(start, end)}))
    customers = _customers(o["customer_id"] for o in orders)

    stats = {}
    for order in orders:
        entry = stats.setdefault(order["customer_id"], {"total_orders": 0, "total_spent": 0.0, "last_order": None})
        entry["total_orders"] += 1
        entry["total_spent"] += order["total"]
        if entry["last_order"] is None or order["created_at"] > entry["last_order"]:
            entry["last_order"] = order["created_at"]

    ranked = sorted(stats.items(), key=lambda kv: kv[1]["total_spent"], reverse=True)[:limit]
    rows = []
    for rank, (customer_id, entry) in enumerate(ranked, start=1):
        customer = customers.get(customer_id) or {}
        rows.append({
            "rank": rank,
            "customer_name": customer.get("contact_name") or "Unknown",
            "business_name": customer.get("business_name"),
            "customer_type": customer.get("customer_type", "other"),
            "total_orders": entry["total_orders"],
            "total_spent": round_money(entry["total_spent"]),
            "average_order_value": round_money(entry["total_spent"] / entry["total_orders"]),
            "last_order_date": entry["last_order"].date().isoformat(),
        })

    summary = {
        "total_customers": len(rows),
        "total_revenue": round_money(sum(r["total_spent"] for r in rows)),
        "total_orders": sum(r["total_orders"] for r in rows),
    }
    columns = [
        Column("Rank", "rank", 6, "number"),
        Column("Customer", "customer_name", 22),
        Column("Business", "business_name", 25),
        Column("Type", "customer_type", 12),
        Column("Orders", "total_orders", 9, "number"),
        Column("Total Spent", "total_spent", 15, "currency"),
        Column("Avg Order", "average_order_value", 14, "currency"),
        Column("Last Order", "last_order_date", 12),
    ]
    return Report(
        "customer-analysis", _title("Customer Analysis", start, end), "Customers", columns, rows, summary
    )


# ---------- Routes ----------

@router.get("/sales")
def sales(
    start: Optional[date] = Query(None, alias="from"),
    end: Optional[date] = Query(None, alias="to"),
    format: ReportFormat = "json",
    admin: dict = Depends(current_admin),
):
    return respond(sales_report(start, end), format)


@router.get("/best-sellers")
def best_sellers(
    start: Optional[date] = Query(None, alias="from"),
    end: Optional[date] = Query(None, alias="to"),
    limit: int = 50,
    format: ReportFormat = "json",
    admin: dict = Depends(current_admin),
):
    return respond(best_sellers_report(start, end, clamp_limit(limit)), format)


@router.get("/inventory-movement")
def inventory_movement(
    start: Optional[date] = Query(None, alias="from"),
    end: Optional[date] = Query(None, alias="to"),
    reason: Optional[str] = None,
    format: ReportFormat = "json",
    admin: dict = Depends(current_admin),
):
    return respond(inventory_movement_report(start, end, reason), format)


@router.get("/outstanding-orders")
def outstanding_orders(
    status: Optional[str] = None,
    format: ReportFormat = "json",
    admin: dict = Depends(current_admin),
):
    return respond(outstanding_orders_report(status), format)


@router.get("/customer-analysis")
def customer_analysis(
    start: Optional[date] = Query(None, alias="from"),
    end: Optional[date] = Query(None, alias="to"),
    limit: int = 50,
    format: ReportFormat = "json",
    admin: dict = Depends(current_admin),
):
    return respond(customer_analysis_report(start, end, clamp_limit(limit)), format)
