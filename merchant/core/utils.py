"""
Utility functions for the application.
"""
import re
import secrets
import uuid
from datetime import datetime, timezone
from typing import Optional

# Confusable characters (0, O, 1, I) removed
_ORDER_SUFFIX_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive timestamps read back from the store."""
    if value is None:
        return None
    if value.tzinfo is None or value.utcoffset() is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def generate_order_number(now: Optional[datetime] = None) -> str:
    """
    Human-readable order number: ORD-YYMMDD-XXXX.

    Time-based with a random suffix so concurrent finalizations never contend
    on a sequential counter. Uniqueness is enforced by the orders table.
    """
    now = now or utcnow()
    suffix = "".join(secrets.choice(_ORDER_SUFFIX_ALPHABET) for _ in range(4))
    return f"ORD-{now.strftime('%y%m%d')}-{suffix}"


def generate_webhook_secret() -> str:
    return "whsec_" + secrets.token_hex(32)


def is_valid_email(email: Optional[str]) -> bool:
    return bool(email) and bool(_EMAIL_RE.match(email))


def truncate(value: Optional[str], limit: int = 1000) -> Optional[str]:
    if value is None:
        return None
    return value[:limit]
