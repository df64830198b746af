"""
Utility functions for the Chatcast API.
"""

import hmac
import hashlib
import logging
import random
import time
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)


def verify_hmac_signature(body: bytes, signature: str, secret: str) -> bool:
    """
    Verify HMAC-SHA256 signature.

    Args:
        body: Raw request body bytes
        signature: Hex-encoded signature from X-Signature header
        secret: WEBHOOK_SECRET

    Returns:
        True if signature is valid, False otherwise
    """
    logger.debug(f"Verifying HMAC signature, body length: {len(body)} bytes")

    expected_signature = hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256
    ).hexdigest()

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected_signature, signature)
    logger.debug(f"HMAC signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid


def generate_session_id() -> str:
    """Return a new session id of the form session_<epoch-millis>_<0-999>."""
    return f"session_{int(time.time() * 1000)}_{random.randint(0, 999)}"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Aware UTC datetime; naive values are taken to be UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_ts(value: datetime) -> str:
    """
    Format a datetime as an ISO-8601 UTC string with millisecond precision.

    Naive datetimes are taken to be UTC. The fixed width keeps string order
    equal to chronological order in the database.
    """
    value = as_utc(value)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_ts(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored ISO-8601 timestamp; returns None for empty or malformed values."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Unparseable timestamp: {value}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def from_unix_seconds(seconds: float) -> datetime:
    """Convert a chat platform timestamp (seconds since epoch) to an aware UTC datetime."""
    return datetime.fromtimestamp(seconds, tz=timezone.utc)
