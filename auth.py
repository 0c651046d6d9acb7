"""
Authentication helpers: bcrypt password hashing, JWT session tokens carried in
HTTP-only cookies, FastAPI dependencies for customers and admins, and an
in-memory login throttle.
"""

import logging
import math
import time
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

import bcrypt
import jwt
from fastapi import HTTPException, Request, Response

import settings
from database import find_by_id

logger = logging.getLogger(__name__)


# ---------- Passwords ----------

def hash_password(plain: str) -> str:
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=settings.BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# ---------- Tokens ----------

def _secret() -> str:
    if not settings.JWT_SECRET:
        raise RuntimeError("JWT_SECRET environment variable is not set")
    return settings.JWT_SECRET


def _sign(subject: str, email: str, token_type: str, max_age: int) -> str:
    payload = {
        "sub": subject,
        "email": email,
        "type": token_type,
        "exp": datetime.now(timezone.utc) + timedelta(seconds=max_age),
    }
    return jwt.encode(payload, _secret(), algorithm=settings.JWT_ALGORITHM)


def sign_customer_token(customer_id: str, email: str) -> str:
    return _sign(customer_id, email, "customer", settings.CUSTOMER_TOKEN_MAX_AGE)


def sign_admin_token(admin_id: str, email: str) -> str:
    return _sign(admin_id, email, "admin", settings.ADMIN_TOKEN_MAX_AGE)


def decode_token(token: str, expected_type: str) -> dict:
    """Verify signature/expiry and that the token was issued for this audience."""
    claims = jwt.decode(token, _secret(), algorithms=[settings.JWT_ALGORITHM])
    if claims.get("type") != expected_type:
        raise jwt.InvalidTokenError("Invalid token type")
    return claims


# ---------- Cookies ----------

def _set_cookie(response: Response, name: str, token: str, max_age: int):
    response.set_cookie(
        name,
        token,
        max_age=max_age,
        httponly=True,
        secure=settings.IS_PRODUCTION,
        samesite="strict",
        path="/",
    )


def set_customer_cookie(response: Response, token: str):
    _set_cookie(response, settings.CUSTOMER_COOKIE, token, settings.CUSTOMER_TOKEN_MAX_AGE)


def set_admin_cookie(response: Response, token: str):
    _set_cookie(response, settings.ADMIN_COOKIE, token, settings.ADMIN_TOKEN_MAX_AGE)


def clear_customer_cookie(response: Response):
    response.delete_cookie(settings.CUSTOMER_COOKIE, path="/")


def clear_admin_cookie(response: Response):
    response.delete_cookie(settings.ADMIN_COOKIE, path="/")


def _claims_from_cookie(request: Request, cookie: str, token_type: str) -> Optional[dict]:
    token = request.cookies.get(cookie)
    if not token:
        return None
    try:
        return decode_token(token, token_type)
    except jwt.PyJWTError:
        return None


# ---------- Dependencies ----------

def optional_customer_id(request: Request) -> Optional[str]:
    claims = _claims_from_cookie(request, settings.CUSTOMER_COOKIE, "customer")
    return claims["sub"] if claims else None


def current_customer_id(request: Request) -> str:
    customer_id = optional_customer_id(request)
    if not customer_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return customer_id


def current_customer(request: Request) -> dict:
    customer = find_by_id("customer", current_customer_id(request))
    if not customer:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return customer


def approved_customer(request: Request) -> dict:
    """Customer allowed to shop: approved and still active."""
    customer = current_customer(request)
    if not customer.get("is_active") or customer.get("status") != "approved":
        raise HTTPException(status_code=403, detail="Account not approved for ordering")
    return customer


def current_admin(request: Request) -> dict:
    claims = _claims_from_cookie(request, settings.ADMIN_COOKIE, "admin")
    if not claims:
        raise HTTPException(status_code=401, detail="Not authenticated")
    admin = find_by_id("adminuser", claims["sub"])
    if not admin or not admin.get("is_active", True):
        raise HTTPException(status_code=401, detail="Not authenticated")
    return admin


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    return request.client.host if request.client else "unknown"


# ---------- Login throttling ----------

class LoginRateLimiter:
    """Locks an ip+email pair out after repeated failed logins.

    State is per process; it resets on restart and is not shared between
    instances.
    """

    def __init__(self, max_attempts=settings.MAX_LOGIN_ATTEMPTS,
                 lockout_minutes=settings.LOGIN_LOCKOUT_MINUTES,
                 max_entries=10_000, clock=time.monotonic):
        self.max_attempts = max_attempts
        self.lockout_seconds = lockout_minutes * 60
        self.stale_seconds = (lockout_minutes + 5) * 60
        self.max_entries = max_entries
        self.clock = clock
        self._attempts: Dict[str, dict] = {}

    @staticmethod
    def _key(ip: str, email: str) -> str:
        return f"{ip}:{email.lower()}"

    def check(self, ip: str, email: str) -> Optional[str]:
        """Return None when allowed, else a message naming the remaining lockout."""
        key = self._key(ip, email)
        record = self._attempts.get(key)
        if not record or record["locked_until"] is None:
            return None
        now = self.clock()
        if now < record["locked_until"]:
            remaining = math.ceil((record["locked_until"] - now) / 60)
            plural = "" if remaining == 1 else "s"
            return f"Too many failed attempts. Try again in {remaining} minute{plural}."
        del self._attempts[key]
        return None

    def record_failure(self, ip: str, email: str) -> None:
        self._cleanup()
        key = self._key(ip, email)
        record = self._attempts.get(key)
        if record is None:
            self._attempts[key] = {"count": 1, "first": self.clock(), "locked_until": None}
            return
        record["count"] += 1
        if record["count"] >= self.max_attempts:
            record["locked_until"] = self.clock() + self.lockout_seconds

    def clear(self, ip: str, email: str) -> None:
        self._attempts.pop(self._key(ip, email), None)

    def reset(self) -> None:
        self._attempts.clear()

    def _cleanup(self):
        if len(self._attempts) <= self.max_entries // 2:
            return
        now = self.clock()
        for key, record in list(self._attempts.items()):
            expired = record["locked_until"] is not None and now > record["locked_until"]
            if now - record["first"] > self.stale_seconds or expired:
                del self._attempts[key]
        overflow = len(self._attempts) - self.max_entries
        if overflow > 0:
            oldest = sorted(self._attempts.items(), key=lambda kv: kv[1]["first"])[:overflow]
            for key, _ in oldest:
                del self._attempts[key]


login_limiter = LoginRateLimiter()
