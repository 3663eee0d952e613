"""
Utility functions shared by the chat service.
"""

import hashlib
import hmac
import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"
PBKDF2_ITERATIONS = 390_000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    """Format a datetime as the fixed-width UTC string stored in every table."""
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.strftime(TIMESTAMP_FORMAT)


def iso_now() -> str:
    return to_iso(utcnow())


def iso_ago(seconds: float, now: Optional[datetime] = None) -> str:
    return to_iso((now or utcnow()) - timedelta(seconds=seconds))


def parse_iso(value: str) -> datetime:
    """Parse a stored timestamp (or any ISO-8601 string with Z/offset) to an aware datetime."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def new_id() -> str:
    return str(uuid.uuid4())


def new_token() -> str:
    return secrets.token_urlsafe(32)


def hash_password(password: str, salt: Optional[str] = None) -> str:
    """
    Hash a password with PBKDF2-HMAC-SHA256.

    Returns:
        "<salt>$<hex digest>" suitable for storing in the accounts table
    """
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt.encode("utf-8"),
        PBKDF2_ITERATIONS,
    ).hex()
    return f"{salt}${digest}"


def verify_password(password: str, stored: str) -> bool:
    """
    Verify a password against a stored PBKDF2 hash.

    Args:
        password: Plain-text password from the login request
        stored: Value produced by hash_password

    Returns:
        True if the password matches, False otherwise
    """
    salt, _, expected = stored.partition("$")
    if not salt or not expected:
        logger.warning("Stored password hash is malformed")
        return False
    candidate = hash_password(password, salt).partition("$")[2]

    # Use constant-time comparison to prevent timing attacks
    return hmac.compare_digest(candidate, expected)


def verify_api_key(provided: Optional[str], expected: str) -> bool:
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))
