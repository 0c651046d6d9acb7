"""
Database Schemas for the Lanka Chemist wholesale storefront

Each Pydantic model in the first half of this file represents a MongoDB
collection. Collection name is the lowercase of the class name
(e.g., Product -> "product", StockMovement -> "stockmovement").

The second half holds request payloads accepted by the API routers.

This storefront covers:
- Customers (verified B2B buyers) and their Addresses
- Products, Categories and Manufacturers (catalog with stock on hand)
- CartItems (per-customer basket)
- Orders with OrderItem snapshots and OrderStatusHistory
- StockMovement (audit of quantity changes)
- AdminUser and StoreSetting
"""

from datetime import date
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

from settings import MAX_BULK_PRICE_UPDATES, MAX_CART_QUANTITY, MIN_CART_QUANTITY

CustomerStatus = Literal["pending", "approved", "rejected", "suspended"]
CustomerType = Literal["doctor", "dentist", "pharmacy", "clinic", "dispensary", "other"]
OrderStatus = Literal["new", "confirmed", "packing", "ready", "dispatched", "delivered", "cancelled"]
DeliveryMethod = Literal["pickup", "standard", "express"]
PaymentMethod = Literal["cash_on_delivery", "bank_transfer"]
PaymentStatus = Literal["pending", "paid", "refunded"]
ProductSection = Literal["medicines", "surgical", "equipment", "spc"]
StockReason = Literal["purchase", "sale", "return", "damage", "expired", "count_correction", "other"]


# ---------- Collections ----------

class Customer(BaseModel):
    email: str = Field(..., description="Login email, stored lowercase")
    password_hash: str = Field(..., description="bcrypt hash")
    customer_type: CustomerType
    contact_name: str
    business_name: Optional[str] = None
    slmc_number: Optional[str] = Field(None, description="Sri Lanka Medical Council number (doctors/dentists)")
    nmra_license_number: Optional[str] = Field(None, description="NMRA licence (businesses)")
    phone: str
    whatsapp: Optional[str] = None
    status: CustomerStatus = Field("pending", description="Approval status")
    rejection_reason: Optional[str] = None
    admin_notes: Optional[str] = None
    is_active: bool = Field(True, description="Deactivated instead of deleted")


class Address(BaseModel):
    customer_id: str = Field(..., description="Owning customer ObjectId as string")
    label: str = "Default"
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    district: str
    postal_code: Optional[str] = None
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    is_default: bool = Field(False, description="At most one default per customer")


class VerificationDocument(BaseModel):
    customer_id: str
    document_type: str = Field(..., description="'slmc_id' | 'nmra_license'")
    file_key: str = Field(..., description="Storage key of the uploaded file")
    file_name: str
    file_size: Optional[int] = None
    mime_type: Optional[str] = None


class Category(BaseModel):
    name: str
    slug: str
    description: Optional[str] = None
    parent_id: Optional[str] = Field(None, description="Parent category ObjectId as string")
    section: ProductSection = "medicines"
    sort_order: int = 0
    is_active: bool = True


class Manufacturer(BaseModel):
    name: str
    slug: str
    country: Optional[str] = None
    is_active: bool = True


class Product(BaseModel):
    sku: str = Field(..., description="Unique stock keeping unit")
    generic_name: str = Field(..., description="Generic (INN) name")
    brand_name: str = Field(..., description="Brand name")
    manufacturer_id: Optional[str] = None
    category_id: Optional[str] = None
    section: ProductSection = "medicines"
    strength: Optional[str] = None
    dosage_form: Optional[str] = None
    pack_size: Optional[str] = None
    wholesale_price: float = Field(..., gt=0, allow_inf_nan=False, description="Unit wholesale price")
    mrp: Optional[float] = Field(None, ge=0, allow_inf_nan=False, description="Maximum retail price")
    stock_quantity: int = Field(0, ge=0, description="Quantity on hand, never negative")
    low_stock_threshold: int = Field(10, ge=0)
    barcode: Optional[str] = None
    is_prescription: bool = False
    is_active: bool = True
    is_visible: bool = True
    description: Optional[str] = None
    total_sold: int = Field(0, ge=0, description="Cumulative units sold")


class CartItem(BaseModel):
    customer_id: str
    product_id: str
    quantity: int = Field(..., ge=MIN_CART_QUANTITY, le=MAX_CART_QUANTITY)


class Order(BaseModel):
    order_number: str
    customer_id: str
    status: OrderStatus = "new"
    delivery_method: DeliveryMethod
    delivery_address_id: Optional[str] = None
    delivery_fee: float = Field(0, ge=0)
    delivery_distance_km: Optional[float] = None
    preferred_delivery_date: Optional[str] = None
    subtotal: float = Field(..., ge=0, description="Sum of line totals")
    total: float = Field(..., ge=0, description="subtotal + delivery_fee")
    payment_method: PaymentMethod
    payment_status: PaymentStatus = "pending"
    order_notes: Optional[str] = None
    admin_notes: Optional[str] = None
    cancelled_reason: Optional[str] = None
    invoice_key: Optional[str] = None


class OrderItem(BaseModel):
    order_id: str
    product_id: str
    product_name: str = Field(..., description="Snapshot: 'generic (brand)' at time of purchase")
    product_generic_name: Optional[str] = None
    product_sku: Optional[str] = None
    quantity: int = Field(..., ge=1)
    unit_price: float = Field(..., ge=0, description="Unit price at time of purchase")
    total_price: float = Field(..., ge=0, description="unit_price * quantity")


class OrderStatusHistory(BaseModel):
    order_id: str
    old_status: Optional[str] = None
    new_status: str
    notes: Optional[str] = None
    changed_by: Optional[str] = Field(None, description="Admin ObjectId as string")


class StockMovement(BaseModel):
    product_id: str = Field(..., description="Product ObjectId as string")
    quantity_change: int = Field(..., description="Negative for sale, positive for purchase/return")
    quantity_before: int
    quantity_after: int
    reason: StockReason
    reference_id: Optional[str] = Field(None, description="Related document id (order)")
    notes: Optional[str] = None
    created_by: Optional[str] = None


class AdminUser(BaseModel):
    email: str
    password_hash: str
    name: str
    is_active: bool = True


# ---------- Request payloads ----------

class RegisterIn(BaseModel):
    email: str
    password: str
    customer_type: str
    contact_name: str = ""
    business_name: Optional[str] = None
    phone: str = ""
    whatsapp: Optional[str] = None
    slmc_number: Optional[str] = None
    nmra_license_number: Optional[str] = None
    address_line1: str = ""
    address_line2: Optional[str] = None
    city: str = ""
    district: str = ""
    postal_code: Optional[str] = None
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    document_key: Optional[str] = None
    document_file_name: Optional[str] = None
    document_file_size: Optional[int] = None
    document_mime_type: Optional[str] = None


class LoginIn(BaseModel):
    email: str = ""
    password: str = ""


class ProfileUpdate(BaseModel):
    contact_name: Optional[str] = None
    business_name: Optional[str] = None
    phone: Optional[str] = None
    whatsapp: Optional[str] = None


class PasswordChange(BaseModel):
    current_password: str
    new_password: str


class AddressIn(BaseModel):
    label: Optional[str] = None
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    district: str
    postal_code: Optional[str] = None
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    set_as_default: bool = False


class AddressUpdate(BaseModel):
    label: Optional[str] = None
    address_line1: Optional[str] = None
    address_line2: Optional[str] = None
    city: Optional[str] = None
    district: Optional[str] = None
    postal_code: Optional[str] = None
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    set_as_default: Optional[bool] = None


class ProductIds(BaseModel):
    ids: List[str]


class CartAdd(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=MIN_CART_QUANTITY, le=MAX_CART_QUANTITY)


class CartQuantity(BaseModel):
    quantity: int = Field(..., ge=MIN_CART_QUANTITY, le=MAX_CART_QUANTITY)


class DeliveryFeeRequest(BaseModel):
    delivery_method: DeliveryMethod
    address_id: Optional[str] = None


class PlaceOrderIn(BaseModel):
    delivery_method: DeliveryMethod
    payment_method: PaymentMethod
    delivery_address_id: Optional[str] = None
    order_notes: Optional[str] = None
    preferred_delivery_date: Optional[date] = None


class OrderStatusUpdate(BaseModel):
    status: Optional[OrderStatus] = None
    payment_status: Optional[str] = None
    notes: Optional[str] = None
    cancelled_reason: Optional[str] = None
    admin_notes: Optional[str] = None


class StockAdjustment(BaseModel):
    quantity_change: int = Field(..., description="Signed change, never zero")
    reason: StockReason
    notes: Optional[str] = None


class PriceUpdate(BaseModel):
    id: str
    price: float = Field(..., gt=0, allow_inf_nan=False)


class BulkPriceUpdate(BaseModel):
    updates: List[PriceUpdate] = Field(..., min_length=1, max_length=MAX_BULK_PRICE_UPDATES)


class ProductUpdate(BaseModel):
    sku: Optional[str] = None
    generic_name: Optional[str] = None
    brand_name: Optional[str] = None
    manufacturer_id: Optional[str] = None
    category_id: Optional[str] = None
    section: Optional[ProductSection] = None
    strength: Optional[str] = None
    dosage_form: Optional[str] = None
    pack_size: Optional[str] = None
    wholesale_price: Optional[float] = Field(None, gt=0, allow_inf_nan=False)
    mrp: Optional[float] = Field(None, ge=0, allow_inf_nan=False)
    low_stock_threshold: Optional[int] = Field(None, ge=0)
    barcode: Optional[str] = None
    is_prescription: Optional[bool] = None
    is_active: Optional[bool] = None
    is_visible: Optional[bool] = None
    description: Optional[str] = None


class CustomerStatusUpdate(BaseModel):
    status: Literal["approved", "rejected", "suspended"]
    rejection_reason: Optional[str] = None
    admin_notes: Optional[str] = None


class AdminSetup(BaseModel):
    name: str
    email: EmailStr
    password: str = Field(..., min_length=8)


class StoreSettingsUpdate(BaseModel):
    settings: Dict[str, str]


class CategoryIn(BaseModel):
    name: str
    section: ProductSection
    description: Optional[str] = None
    parent_id: Optional[str] = None
    is_active: bool = True


class CategoryUpdate(BaseModel):
    name: Optional[str] = None
    section: Optional[ProductSection] = None
    description: Optional[str] = None
    parent_id: Optional[str] = None
    is_active: Optional[bool] = None
    sort_order: Optional[int] = None


class AdminPasswordChange(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=8)
