"""
Utility functions for the communication audit API.
"""

import hmac
import hashlib
import logging
from datetime import datetime, timezone

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    """Current UTC time as a naive datetime, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC already."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def end_of_day(value: datetime) -> datetime:
    """Last representable instant of value's calendar day."""
    return datetime.combine(value.date(), datetime.max.time())


def verify_hmac_signature(body: bytes, signature: str, secret: str) -> bool:
    """
    Verify HMAC-SHA256 signature of a provider webhook.

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
    logger.info(f"HMAC signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid


def determine_provider(external_id: str) -> str:
    """Infer the delivery provider from the external message id format."""
    if external_id.startswith(("sendgrid-", "sg-")):
        return "SendGrid"
    if external_id.startswith(("twilio-", "SM")):
        return "Twilio"
    if external_id.startswith("internal-"):
        return "Internal"
    return "Unknown"


SENDGRID_EVENT_STATUS = {
    "delivered": "Delivered",
    "open": "Read",
    "click": "Read",
    "bounce": "Bounced",
    "dropped": "Failed",
    "deferred": "Sent",
    "processed": "Sent",
}

TWILIO_STATUS = {
    "delivered": "Delivered",
    "read": "Read",
    "sent": "Sent",
    "failed": "Failed",
    "undelivered": "Failed",
    "queued": "Sent",
    "accepted": "Sent",
}


def map_sendgrid_event(event: str) -> str:
    return SENDGRID_EVENT_STATUS.get((event or "").lower(), "Sent")


def map_twilio_status(status: str) -> str:
    return TWILIO_STATUS.get((status or "").lower(), "Sent")
