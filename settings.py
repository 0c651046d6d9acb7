"""
Runtime configuration and business constants.

Everything environment-dependent is read once at import time. Constants that
describe the order workflow, catalog vocabulary and upload limits live here so
routers and tests share one definition.
"""

import os

APP_ENV = os.getenv("APP_ENV", "development")
IS_PRODUCTION = APP_ENV == "production"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

JWT_SECRET = os.getenv("JWT_SECRET")
JWT_ALGORITHM = "HS256"
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))

CUSTOMER_COOKIE = "lc_token"
ADMIN_COOKIE = "lc_admin_token"
CUSTOMER_TOKEN_MAX_AGE = 60 * 60 * 24 * 7
ADMIN_TOKEN_MAX_AGE = 60 * 60 * 8

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

SMTP_HOST = os.getenv("SMTP_HOST")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
MAIL_FROM = os.getenv("MAIL_FROM", "Lanka Chemist <noreply@lankachemist.lk>")
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL")

STORE_NAME = "Lanka Chemist Wholesale"

# Delivery
DELIVERY_RATE_PER_KM = float(os.getenv("DELIVERY_RATE_PER_KM", "25"))

# Payments
PAYMENT_STATUSES = ("pending", "paid", "refunded")

# Orders
ORDER_STATUS_FLOW = ("new", "confirmed", "packing", "ready", "dispatched", "delivered")
ORDER_STATUSES = ORDER_STATUS_FLOW + ("cancelled",)
OUTSTANDING_ORDER_STATUSES = ("new", "confirmed", "packing", "ready", "dispatched")

VALID_ORDER_TRANSITIONS = {
    "new": ["confirmed", "cancelled"],
    "confirmed": ["packing", "cancelled"],
    "packing": ["ready", "cancelled"],
    "ready": ["dispatched", "cancelled"],
    "dispatched": ["delivered"],
    "delivered": [],
    "cancelled": [],
}

ORDER_STATUS_LABELS = {
    "new": "New",
    "confirmed": "Confirmed",
    "packing": "Packing",
    "ready": "Ready for Dispatch",
    "dispatched": "Dispatched",
    "delivered": "Delivered",
    "cancelled": "Cancelled",
}

DELIVERY_METHOD_LABELS = {
    "pickup": "Store Pickup",
    "standard": "Standard Delivery",
    "express": "Express Delivery",
}

PAYMENT_METHOD_LABELS = {
    "cash_on_delivery": "Cash on Delivery",
    "bank_transfer": "Bank Transfer",
}

# Customers
CUSTOMER_STATUSES = ("pending", "approved", "rejected", "suspended")
CUSTOMER_TYPES = ("doctor", "dentist", "pharmacy", "clinic", "dispensary", "other")
SLMC_CUSTOMER_TYPES = ("doctor", "dentist")

# Catalog
PRODUCT_SECTIONS = ("medicines", "surgical", "equipment", "spc")
NON_PURCHASABLE_SECTIONS = ("spc",)
DOSAGE_FORMS = (
    "tablet", "capsule", "syrup", "suspension", "injection", "cream",
    "ointment", "gel", "drops", "inhaler", "suppository", "patch",
    "powder", "solution", "spray", "other",
)
PRODUCT_SORTS = ("name_asc", "name_desc", "price_asc", "price_desc", "newest", "popular")

# Inventory
STOCK_ADJUSTMENT_REASON_LABELS = {
    "purchase": "Purchase",
    "sale": "Sale",
    "return": "Return",
    "damage": "Damage",
    "expired": "Expired",
    "count_correction": "Count Correction",
    "other": "Other",
}
MAX_BULK_PRICE_UPDATES = 100

# Cart
MIN_CART_QUANTITY = 1
MAX_CART_QUANTITY = 9999

# Uploads and imports
MAX_FILE_SIZE = 5 * 1024 * 1024
ALLOWED_UPLOAD_TYPES = ("image/jpeg", "image/jpg", "image/png", "application/pdf")
CSV_CONTENT_TYPES = ("text/csv", "text/plain", "application/csv", "application/vnd.ms-excel")

# Pagination
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
DEFAULT_ORDERS_PER_PAGE = 10
MAX_ORDERS_PER_PAGE = 50

# Login throttling
MAX_LOGIN_ATTEMPTS = 5
LOGIN_LOCKOUT_MINUTES = 15

# Store settings an admin may edit
STORE_SETTING_KEYS = (
    "store_name",
    "store_phone",
    "store_email",
    "store_address",
    "store_latitude",
    "store_longitude",
    "nmra_license_number",
    "bank_name",
    "bank_account_name",
    "bank_account_number",
    "bank_branch",
    "admin_email",
)

SRI_LANKAN_DISTRICTS = (
    "Ampara", "Anuradhapura", "Badulla", "Batticaloa", "Colombo", "Galle",
    "Gampaha", "Hambantota", "Jaffna", "Kalutara", "Kandy", "Kegalle",
    "Kilinochchi", "Kurunegala", "Mannar", "Matale", "Matara", "Monaragala",
    "Mullaitivu", "Nuwara Eliya", "Polonnaruwa", "Puttalam", "Ratnapura",
    "Trincomalee", "Vavuniya",
)
