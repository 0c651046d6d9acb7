"""
Delivery fee calculation.

Standard delivery is priced by great-circle distance between the store and the
customer's address at a flat rate per kilometre. Pickup is free and express is
quoted out of band. Two process-local caches sit in front of the database:
store coordinates (1 hour) and per-address quotes (24 hours, bounded).
"""

import logging
import math
import time
from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException

import settings
from auth import current_customer_id
from database import find_by_id, require_db
from schemas import DeliveryFeeRequest

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0

STORE_LOCATION_TTL = 60 * 60
ADDRESS_QUOTE_TTL = 24 * 60 * 60
ADDRESS_QUOTE_MAX_ENTRIES = 1000
ADDRESS_QUOTE_EVICT_COUNT = 100

NOTE_PICKUP = "Free - collect from store"
NOTE_EXPRESS = "Contact us for express delivery pricing"
NOTE_NO_ADDRESS = "Select an address to calculate delivery fee"
NOTE_DEFERRED = "Delivery fee will be confirmed after order review"


def round_money(value) -> float:
    """Round a currency amount or distance to 2 places, half up."""
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(a)))


def calculate_delivery_fee(distance_km: float, rate_per_km: float = None) -> float:
    rate = settings.DELIVERY_RATE_PER_KM if rate_per_km is None else rate_per_km
    return round_money(distance_km * rate)


class TTLCache:
    """Small expiring map.

    When ``max_entries`` is set and exceeded, the ``evict_count`` entries
    closest to expiry are dropped. Not thread-safe.
    """

    def __init__(self, ttl_seconds: float, max_entries: Optional[int] = None,
                 evict_count: int = 100, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.evict_count = evict_count
        self.clock = clock
        self._entries: Dict[Hashable, Tuple[float, Any]] = {}

    def get(self, key: Hashable):
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self.clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    def set(self, key: Hashable, value: Any) -> None:
        self._entries[key] = (self.clock() + self.ttl_seconds, value)
        if self.max_entries is not None and len(self._entries) > self.max_entries:
            soonest = sorted(self._entries.items(), key=lambda kv: kv[1][0])[: self.evict_count]
            for k, _ in soonest:
                del self._entries[k]

    def invalidate(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self):
        return len(self._entries)

    def __contains__(self, key):
        return self.get(key) is not None


store_location_cache = TTLCache(STORE_LOCATION_TTL)
address_quote_cache = TTLCache(
    ADDRESS_QUOTE_TTL,
    max_entries=ADDRESS_QUOTE_MAX_ENTRIES,
    evict_count=ADDRESS_QUOTE_EVICT_COUNT,
)


@dataclass
class DeliveryQuote:
    delivery_method: str
    delivery_fee: float
    delivery_distance_km: Optional[float]
    fee_note: str
    has_coordinates: bool

    def to_dict(self) -> dict:
        return asdict(self)


def _to_float(value) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def get_store_location() -> Optional[Tuple[float, float]]:
    cached = store_location_cache.get("store")
    if cached is not None:
        return cached
    rows = require_db()["storesetting"].find({"key": {"$in": ["store_latitude", "store_longitude"]}})
    values = {row["key"]: row.get("value") for row in rows}
    lat = _to_float(values.get("store_latitude"))
    lng = _to_float(values.get("store_longitude"))
    if lat is None or lng is None:
        return None
    store_location_cache.set("store", (lat, lng))
    return lat, lng


def invalidate_store_location() -> None:
    # quotes were priced against the old location too
    store_location_cache.clear()
    address_quote_cache.clear()


def invalidate_address(address_id: str) -> None:
    address_quote_cache.invalidate(address_id)


def quote_delivery(method: str, address: Optional[dict] = None) -> DeliveryQuote:
    if method == "pickup":
        return DeliveryQuote("pickup", 0.0, None, NOTE_PICKUP, False)
    if method == "express":
        return DeliveryQuote("express", 0.0, None, NOTE_EXPRESS, False)
    if method != "standard":
        raise ValueError(f"Unknown delivery method: {method}")
    if address is None:
        return DeliveryQuote("standard", 0.0, None, NOTE_NO_ADDRESS, False)

    address_id = str(address["_id"])
    cached = address_quote_cache.get(address_id)
    if cached is not None:
        return cached

    store = get_store_location()
    lat = _to_float(address.get("latitude"))
    lng = _to_float(address.get("longitude"))
    if store is None or lat is None or lng is None:
        return DeliveryQuote("standard", 0.0, None, NOTE_DEFERRED, False)

    distance = haversine_km(store[0], store[1], lat, lng)
    rate = settings.DELIVERY_RATE_PER_KM
    quote = DeliveryQuote(
        delivery_method="standard",
        delivery_fee=calculate_delivery_fee(distance, rate),
        delivery_distance_km=round_money(distance),
        fee_note=f"Rs {rate:g}/km x {distance:.1f} km (subject to change)",
        has_coordinates=True,
    )
    address_quote_cache.set(address_id, quote)
    return quote


def owned_address(address_id: str, customer_id: str) -> dict:
    address = find_by_id("address", address_id)
    if not address or address.get("customer_id") != customer_id:
        raise HTTPException(status_code=404, detail="Address not found")
    return address


router = APIRouter(tags=["checkout"])


@router.post("/api/checkout/delivery-fee")
def delivery_fee(payload: DeliveryFeeRequest, customer_id: str = Depends(current_customer_id)):
    address = None
    if payload.delivery_method == "standard" and payload.address_id and ObjectId.is_valid(payload.address_id):
        address = owned_address(payload.address_id, customer_id)
    return quote_delivery(payload.delivery_method, address).to_dict()
