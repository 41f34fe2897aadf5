"""
Webhook Security Module

Signature verification for payment provider webhooks (Standard Webhooks / Svix format):
- Constant-time signature comparison
- Timestamp validation against replays
- Verification over the raw, unparsed request body
"""

import base64
import hashlib
import hmac
import logging
import time
from typing import Optional

from fastapi import HTTPException, Request

logger = logging.getLogger(__name__)

# Maximum age of webhook in seconds (5 minutes)
MAX_WEBHOOK_AGE_SECONDS = 300


def constant_time_compare(a: str, b: str) -> bool:
    """Compare two strings in constant time"""
    if not a or not b:
        return False
    return hmac.compare_digest(a, b)


def extract_svix_signing_key(secret: str) -> bytes:
    """
    Extract Standard Webhooks signing key bytes from a "whsec_BASE64KEY" secret.

    Unprefixed secrets are base64-decoded when possible, otherwise used as UTF-8 bytes.
    """
    try:
        if secret.startswith("whsec_"):
            return base64.b64decode(secret[6:])
        return base64.b64decode(secret, validate=True)
    except ValueError:
        return secret.encode("utf-8")


def verify_timestamp(
    timestamp: Optional[str], max_age: int = MAX_WEBHOOK_AGE_SECONDS, now: Optional[int] = None
) -> bool:
    """
    Verify webhook timestamp is within acceptable range.

    Args:
        timestamp: Unix timestamp as string
        max_age: Maximum age in seconds
        now: Current unix time (defaults to time.time())
    """
    if not timestamp:
        return False

    try:
        webhook_time = int(timestamp)
        current_time = int(now if now is not None else time.time())
        age = abs(current_time - webhook_time)

        if age > max_age:
            logger.warning(f"🚫 Webhook timestamp too old: {age}s (max: {max_age}s)")
            return False

        return True
    except (ValueError, TypeError):
        logger.warning(f"🚫 Invalid webhook timestamp format: {timestamp}")
        return False


def sign_standard_webhook(secret: str, webhook_id: str, timestamp: str, payload: bytes) -> str:
    """Signature for ``webhook-id.webhook-timestamp.payload``, as sent in webhook-signature"""
    signing_key = extract_svix_signing_key(secret)
    signed_message = b".".join([webhook_id.encode("utf-8"), timestamp.encode("utf-8"), payload])
    digest = hmac.new(signing_key, signed_message, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


async def verify_dodo_webhook(
    request: Request, secret: str, raise_on_failure: bool = True
) -> tuple[bool, bytes]:
    """
    Verify a Dodo Payments webhook using the Standard Webhooks specification.

    The signed message is ``webhook-id.webhook-timestamp.payload``; the
    ``webhook-signature`` header holds one or more space separated ``v1,<sig>`` entries.

    Returns:
        Tuple of (is_valid, raw_body)
    """
    raw_body = await request.body()

    signature_header = request.headers.get("webhook-signature", "")
    timestamp = request.headers.get("webhook-timestamp", "")
    webhook_id = request.headers.get("webhook-id", "")

    logger.info(f"📥 Payment webhook received: id={webhook_id or 'unknown'}")

    def fail(detail: str) -> tuple[bool, bytes]:
        logger.error(f"❌ Payment webhook rejected ({webhook_id or 'unknown'}): {detail}")
        if raise_on_failure:
            raise HTTPException(status_code=401, detail=detail)
        return False, raw_body

    if not signature_header or not webhook_id:
        return fail("Missing webhook signature")

    if not verify_timestamp(timestamp):
        return fail("Webhook timestamp expired")

    expected_signature = sign_standard_webhook(secret, webhook_id, timestamp, raw_body)

    for entry in signature_header.split():
        version, _, received_signature = entry.partition(",")
        if version == "v1" and constant_time_compare(expected_signature, received_signature):
            logger.info(f"✅ Payment webhook signature verified: {webhook_id}")
            return True, raw_body

    return fail("Invalid webhook signature")
