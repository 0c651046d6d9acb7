"""Field validators for customer-supplied data. Each returns an error message or None."""

import html
import re
from typing import Dict, Optional

from settings import CUSTOMER_TYPES, SLMC_CUSTOMER_TYPES, SRI_LANKAN_DISTRICTS

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^(\+94\d{9}|0\d{9})$")
SLMC_RE = re.compile(r"^\d{4,10}$")
NMRA_RE = re.compile(r"^[A-Za-z0-9\-/]{3,20}$")
PHONE_STRIP_RE = re.compile(r"[\s\-()]")


def sanitize(value: Optional[str]) -> str:
    if not value:
        return ""
    return html.escape(value, quote=True).strip()


def normalize_phone(phone: str) -> str:
    return PHONE_STRIP_RE.sub("", phone or "")


def validate_email(email: str) -> Optional[str]:
    if not email:
        return "Email is required"
    if not EMAIL_RE.match(email):
        return "Invalid email address"
    if len(email) > 255:
        return "Email is too long"
    return None


def validate_phone(phone: str) -> Optional[str]:
    if not phone:
        return "Phone number is required"
    if not PHONE_RE.match(normalize_phone(phone)):
        return "Enter a valid Sri Lankan phone number (e.g. 0771234567)"
    return None


def validate_password(password: str) -> Optional[str]:
    if not password:
        return "Password is required"
    if len(password) < 8:
        return "Password must be at least 8 characters"
    if not re.search(r"[a-z]", password):
        return "Password must contain a lowercase letter"
    if not re.search(r"[A-Z]", password):
        return "Password must contain an uppercase letter"
    if not re.search(r"\d", password):
        return "Password must contain a digit"
    return None


def validate_slmc_number(value: str) -> Optional[str]:
    if not value:
        return "SLMC number is required"
    if not SLMC_RE.match(value.strip()):
        return "Enter a valid SLMC number (4-10 digits)"
    return None


def validate_nmra_license(value: str) -> Optional[str]:
    if not value:
        return "NMRA license number is required"
    if not NMRA_RE.match(value.strip()):
        return "Enter a valid NMRA license number"
    return None


def validate_district(value: str) -> Optional[str]:
    if not value or not value.strip():
        return "District is required"
    if value.strip() not in SRI_LANKAN_DISTRICTS:
        return "Invalid district"
    return None


def validate_registration(data) -> Dict[str, str]:
    errors: Dict[str, str] = {}

    if data.customer_type not in CUSTOMER_TYPES:
        errors["customer_type"] = "Invalid account type"

    for field, check in (("email", validate_email), ("password", validate_password), ("phone", validate_phone)):
        message = check(getattr(data, field))
        if message:
            errors[field] = message

    if not (data.contact_name or "").strip():
        errors["contact_name"] = "Name is required"

    if data.whatsapp:
        message = validate_phone(data.whatsapp)
        if message:
            errors["whatsapp"] = message

    if data.customer_type in SLMC_CUSTOMER_TYPES:
        if not data.slmc_number:
            errors["slmc_number"] = "SLMC number is required for doctors/dentists"
        else:
            message = validate_slmc_number(data.slmc_number)
            if message:
                errors["slmc_number"] = message
    elif data.customer_type in CUSTOMER_TYPES:
        if not (data.business_name or "").strip():
            errors["business_name"] = "Business name is required"
        if not data.nmra_license_number:
            errors["nmra_license_number"] = "NMRA license is required for businesses"
        else:
            message = validate_nmra_license(data.nmra_license_number)
            if message:
                errors["nmra_license_number"] = message

    if not (data.address_line1 or "").strip():
        errors["address_line1"] = "Address is required"
    if not (data.city or "").strip():
        errors["city"] = "City is required"
    message = validate_district(data.district)
    if message:
        errors["district"] = message

    return errors
