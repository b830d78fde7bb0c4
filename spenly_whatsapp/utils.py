"""
Utility functions for the WhatsApp backend.
"""

import hashlib
import hmac
import logging
from datetime import datetime, timezone
from typing import Iterable, Mapping, Optional, Tuple, Union

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "whatsapp:"

FormParams = Union[Mapping[str, Union[str, Iterable[str]]], Iterable[Tuple[str, str]]]


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the form stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def isoformat_utc(value: Optional[datetime]) -> Optional[str]:
    """Format a naive UTC datetime as ISO-8601 with a Z suffix."""
    if value is None:
        return None
    return value.replace(microsecond=0).isoformat() + "Z"


def strip_channel_prefix(address: str) -> str:
    """'whatsapp:+14155550100' -> '+14155550100'"""
    address = (address or "").strip()
    if address.startswith(CHANNEL_PREFIX):
        return address[len(CHANNEL_PREFIX):]
    return address


def _group_params(params: FormParams) -> dict:
    grouped: dict = {}
    items = params.items() if isinstance(params, Mapping) else params
    for key, value in items:
        if isinstance(value, (list, tuple)):
            grouped.setdefault(key, []).extend(value)
        else:
            grouped.setdefault(key, []).append(value)
    return grouped


def compute_webhook_signature(url: str, params: FormParams, secret: str) -> str:
    """
    Compute the provider signature for a form-encoded webhook request.

    The signed payload is the full URL followed by every parameter as
    key + value, keys in lexicographic order, repeated keys contributing each
    value in the order received.

    Args:
        url: Full request URL the provider posted to
        params: Form parameters, as a mapping or a sequence of (key, value) pairs
        secret: Shared signing secret

    Returns:
        Hex-encoded HMAC-SHA256 signature
    """
    grouped = _group_params(params)
    payload = [url]
    for key in sorted(grouped):
        for value in grouped[key]:
            payload.append(key)
            payload.append(value)

    return hmac.new(
        secret.encode("utf-8"),
        "".join(payload).encode("utf-8"),
        hashlib.sha256
    ).hexdigest()


def verify_webhook_signature(url: str, params: FormParams, signature: Optional[str], secret: str) -> bool:
    """
    Verify the provider signature of an inbound webhook.

    An empty secret disables verification and always returns True; callers
    decide whether that mode is allowed.

    Returns:
        True if signature is valid (or verification is disabled), False otherwise
    """
    if not secret:
        logger.warning("Webhook signature verification skipped: no signing secret configured")
        return True

    if not signature:
        logger.info("Webhook signature missing")
        return False

    expected_signature = compute_webhook_signature(url, params, secret)
    logger.debug(f"Expected signature: {expected_signature[:8]}...")

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected_signature, signature)
    logger.info(f"Webhook signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid


def mask_phone(number: str) -> str:
    """'+15550001111' -> '+1555***1111'"""
    number = strip_channel_prefix(number)
    if len(number) <= 8:
        return "***" + number[-2:]
    return f"{number[:5]}***{number[-4:]}"
