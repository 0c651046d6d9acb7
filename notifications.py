"""
Fire-and-forget side effects: invoice generation and transactional email.

These functions are scheduled with FastAPI ``BackgroundTasks`` so they run
after the response is sent. Each step catches and logs its own failure; a
failed email never affects the order or account change that triggered it,
and nothing is retried.
"""

import html
import logging
import smtplib
from email.message import EmailMessage
from typing import List, Optional, Tuple

import settings
from database import find_by_id, get_store_settings, require_db, update_document
from delivery import round_money
from errors import log_error
from storage import put_object

logger = logging.getLogger(__name__)

Attachment = Tuple[str, bytes, str]


# ---------- Mail transport ----------

def send_email(to: str, subject: str, body_html: str, attachments: Optional[List[Attachment]] = None) -> bool:
    if not settings.SMTP_HOST:
        logger.info("SMTP not configured; skipping email to %s (%s)", to, subject)
        return False

    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = settings.MAIL_FROM
    msg["To"] = to
    msg.set_content("This message requires an HTML capable mail client.")
    msg.add_alternative(body_html, subtype="html")
    for filename, content, mime_type in attachments or []:
        maintype, subtype = mime_type.split("/", 1)
        msg.add_attachment(content, maintype=maintype, subtype=subtype, filename=filename)

    with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=30) as smtp:
        smtp.starttls()
        if settings.SMTP_USER:
            smtp.login(settings.SMTP_USER, settings.SMTP_PASSWORD or "")
        smtp.send_message(msg)
    logger.info("Sent email to %s (%s)", to, subject)
    return True


def admin_recipient() -> Optional[str]:
    return get_store_settings(["admin_email"]).get("admin_email") or settings.ADMIN_EMAIL


def send_admin_notification(subject: str, body_html: str) -> bool:
    recipient = admin_recipient()
    if not recipient:
        logger.warning("No admin email configured; dropping notification: %s", subject)
        return False
    return send_email(recipient, subject, body_html)


# ---------- Templates ----------

def _money(value) -> str:
    return f"Rs {round_money(value or 0):,.2f}"


def _layout(title: str, body: str) -> str:
    return (
        "<html><body style=\"font-family:Arial,sans-serif;color:#222\">"
        f"<h2 style=\"color:#2E7D32\">{html.escape(settings.STORE_NAME)}</h2>"
        f"<h3>{html.escape(title)}</h3>{body}"
        "</body></html>"
    )


def _items_table(items: List[dict]) -> str:
    rows = "".join(
        "<tr>"
        f"<td>{html.escape(item.get('product_name') or '')}</td>"
        f"<td>{html.escape(item.get('product_sku') or '')}</td>"
        f"<td align=\"right\">{item['quantity']}</td>"
        f"<td align=\"right\">{_money(item['unit_price'])}</td>"
        f"<td align=\"right\">{_money(item['total_price'])}</td>"
        "</tr>"
        for item in items
    )
    return (
        "<table border=\"1\" cellpadding=\"4\" cellspacing=\"0\">"
        "<tr><th>Product</th><th>SKU</th><th>Qty</th><th>Unit price</th><th>Total</th></tr>"
        f"{rows}</table>"
    )


def format_address(address: Optional[dict]) -> Optional[str]:
    if not address:
        return None
    parts = [address.get(k) for k in ("address_line1", "address_line2", "city", "district", "postal_code")]
    return ", ".join(p for p in parts if p)


def render_invoice(order: dict, items: List[dict], customer: dict, address: Optional[dict], store: dict) -> str:
    created = order.get("created_at")
    created_str = created.strftime("%Y-%m-%d") if created else ""
    bill_to = html.escape(customer.get("business_name") or customer.get("contact_name") or "")
    body = (
        f"<p>Invoice: INV-{html.escape(order['order_number'])}<br>Date: {created_str}</p>"
        f"<p>Bill to: {bill_to}<br>{html.escape(customer.get('email', ''))}</p>"
    )
    if address:
        body += f"<p>Deliver to: {html.escape(format_address(address))}</p>"
    body += _items_table(items)
    body += (
        f"<p>Subtotal: {_money(order['subtotal'])}<br>"
        f"Delivery: {_money(order['delivery_fee'])}<br>"
        f"<strong>Total: {_money(order['total'])}</strong></p>"
        f"<p>Payment: {settings.PAYMENT_METHOD_LABELS.get(order['payment_method'], order['payment_method'])}</p>"
    )
    if order["payment_method"] == "bank_transfer" and store.get("bank_account_number"):
        body += (
            f"<p>Bank: {html.escape(store.get('bank_name', ''))}, "
            f"{html.escape(store.get('bank_branch', ''))}<br>"
            f"Account: {html.escape(store.get('bank_account_name', ''))} "
            f"{html.escape(store.get('bank_account_number', ''))}</p>"
        )
    if store.get("nmra_license_number"):
        body += f"<p>NMRA licence: {html.escape(store['nmra_license_number'])}</p>"
    return _layout(f"Invoice {order['order_number']}", body)


def order_confirmation_email(order: dict, items: List[dict], customer: dict, address: Optional[dict]) -> str:
    method = settings.DELIVERY_METHOD_LABELS.get(order["delivery_method"], order["delivery_method"])
    body = (
        f"<p>Dear {html.escape(customer.get('contact_name', ''))},</p>"
        f"<p>Thank you for your order <strong>{html.escape(order['order_number'])}</strong>. "
        "We will confirm it shortly.</p>"
        f"{_items_table(items)}"
        f"<p>Subtotal: {_money(order['subtotal'])}<br>"
        f"Delivery ({html.escape(method)}): {_money(order['delivery_fee'])}<br>"
        f"<strong>Total: {_money(order['total'])}</strong></p>"
    )
    if address:
        body += f"<p>Delivery address: {html.escape(format_address(address))}</p>"
    if order.get("order_notes"):
        body += f"<p>Notes: {order['order_notes']}</p>"
    return _layout("Order confirmed", body)


def admin_new_order_email(order: dict, customer: dict, item_count: int) -> str:
    body = (
        f"<p>Order {html.escape(order['order_number'])} from "
        f"{html.escape(customer.get('contact_name', ''))} ({html.escape(customer.get('customer_type', ''))})</p>"
        f"<p>{item_count} items, total {_money(order['total'])}</p>"
        f"<p>Order id: {order['_id']}</p>"
    )
    return _layout("New order", body)


def order_status_email(order: dict, customer: dict, new_status: str, notes: Optional[str]) -> str:
    label = settings.ORDER_STATUS_LABELS.get(new_status, new_status)
    body = (
        f"<p>Dear {html.escape(customer.get('contact_name', ''))},</p>"
        f"<p>Your order <strong>{html.escape(order['order_number'])}</strong> is now "
        f"<strong>{html.escape(label)}</strong>.</p>"
    )
    if notes:
        body += f"<p>{html.escape(notes)}</p>"
    return _layout("Order status update", body)


CUSTOMER_STATUS_SUBJECTS = {
    "approved": "Your Lanka Chemist account has been approved!",
    "rejected": "Lanka Chemist account verification update",
    "suspended": "Lanka Chemist account suspended",
}


def customer_status_email(customer: dict, new_status: str, reason: Optional[str]) -> str:
    name = html.escape(customer.get("contact_name", ""))
    if new_status == "approved":
        body = f"<p>Dear {name},</p><p>Your account has been approved. You can now place orders.</p>"
    else:
        body = (
            f"<p>Dear {name},</p><p>Your account status is now {html.escape(new_status)}.</p>"
            f"<p>Reason: {html.escape(reason or 'No reason provided')}</p>"
        )
    return _layout("Account update", body)


# ---------- Workflows ----------

def generate_invoice(order_id: str) -> Tuple[str, bytes]:
    """Render and store the invoice for an order; returns (key, content)."""
    db = require_db()
    order = find_by_id("order", order_id)
    if not order:
        raise LookupError(f"Order not found: {order_id}")
    items = list(db["orderitem"].find({"order_id": order_id}))
    customer = find_by_id("customer", order["customer_id"]) or {}
    address = find_by_id("address", order["delivery_address_id"]) if order.get("delivery_address_id") else None
    content = render_invoice(order, items, customer, address, get_store_settings()).encode("utf-8")
    key = f"invoices/{order['order_number']}.html"
    put_object(key, content, "text/html")
    update_document("order", order["_id"], {"invoice_key": key})
    return key, content


def process_new_order(order_id: str) -> None:
    try:
        db = require_db()
        order = find_by_id("order", order_id)
        if not order:
            logger.error("[notification] Order not found: %s", order_id)
            return
        items = list(db["orderitem"].find({"order_id": order_id}))
        customer = find_by_id("customer", order["customer_id"]) or {}
        address = find_by_id("address", order["delivery_address_id"]) if order.get("delivery_address_id") else None
    except Exception as exc:
        log_error(f"Could not load order {order_id}", exc)
        return

    number = order["order_number"]

    invoice = None
    try:
        invoice = generate_invoice(order_id)
        logger.info("[notification] Invoice generated for order %s", number)
    except Exception as exc:
        log_error(f"Invoice generation failed for order {number}", exc)

    try:
        attachments = [(f"INV-{number}.html", invoice[1], "text/html")] if invoice else None
        send_email(
            customer.get("email", ""),
            f"Order Confirmed - {number}",
            order_confirmation_email(order, items, customer, address),
            attachments,
        )
    except Exception as exc:
        log_error(f"Customer email failed for order {number}", exc)

    try:
        send_admin_notification(
            f"New Order - {number} ({len(items)} items)",
            admin_new_order_email(order, customer, len(items)),
        )
    except Exception as exc:
        log_error(f"Admin notification failed for order {number}", exc)


def process_order_status_change(order_id: str, new_status: str, notes: Optional[str] = None) -> None:
    try:
        order = find_by_id("order", order_id)
        if not order:
            logger.error("[notification] Order not found for status update: %s", order_id)
            return
        customer = find_by_id("customer", order["customer_id"]) or {}
        send_email(
            customer.get("email", ""),
            f"Order {order['order_number']} - Status Update",
            order_status_email(order, customer, new_status, notes),
        )
    except Exception as exc:
        log_error(f"Status update email failed for order {order_id}", exc)


def process_customer_status_change(customer_id: str, new_status: str, reason: Optional[str] = None) -> None:
    subject = CUSTOMER_STATUS_SUBJECTS.get(new_status)
    if not subject:
        return
    try:
        customer = find_by_id("customer", customer_id)
        if not customer:
            logger.error("[notification] Customer not found: %s", customer_id)
            return
        send_email(customer["email"], subject, customer_status_email(customer, new_status, reason))
    except Exception as exc:
        log_error(f"Customer status email failed for {customer_id}", exc)


def process_new_registration(customer_id: str, name: str, customer_type: str, email: str) -> None:
    try:
        body = _layout(
            "New registration",
            f"<p>{html.escape(name)} ({html.escape(customer_type)}) registered with "
            f"{html.escape(email)} and is awaiting verification.</p><p>Customer id: {customer_id}</p>",
        )
        send_admin_notification(f"New Registration - {name}", body)
    except Exception as exc:
        log_error(f"Admin registration notification failed for {customer_id}", exc)
