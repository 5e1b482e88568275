"""
Webhook Security Module

Signature verification for inbound webhooks. Intuit signs every QuickBooks
notification with the app's verifier token:

    intuit-signature: base64(HMAC-SHA256(verifier_token, raw_body))
"""

import base64
import hashlib
import hmac
import logging

from fastapi import HTTPException, Request

logger = logging.getLogger(__name__)

INTUIT_SIGNATURE_HEADER = "intuit-signature"


def constant_time_compare(a: str, b: str) -> bool:
    """Compare two strings in constant time"""
    if not a or not b:
        return False
    return hmac.compare_digest(a, b)


def compute_hmac_sha256_base64(secret: str, payload: bytes) -> str:
    """Compute HMAC-SHA256 signature of payload and return base64 encoded"""
    signature = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).digest()
    return base64.b64encode(signature).decode("utf-8")


def is_valid_intuit_signature(secret: str, payload: bytes, signature: str) -> bool:
    expected = compute_hmac_sha256_base64(secret, payload)
    return constant_time_compare(expected, signature.strip() if signature else "")


async def verify_intuit_webhook(request: Request, secret: str) -> bytes:
    """
    Verify a QuickBooks (Intuit) webhook signature.

    Args:
        request: FastAPI request object
        secret: Webhook verifier token from the Intuit developer dashboard

    Returns:
        The raw request body, once the signature has been verified

    Raises:
        HTTPException: 401 when the signature is missing or does not match
    """
    # Raw body, before any JSON parsing
    raw_body = await request.body()
    signature_header = request.headers.get(INTUIT_SIGNATURE_HEADER, "")

    logger.debug("📥 QuickBooks webhook received")

    if not signature_header:
        logger.warning("🚫 QuickBooks webhook missing signature header")
        raise HTTPException(status_code=401, detail="Missing webhook signature")

    if not is_valid_intuit_signature(secret, raw_body, signature_header):
        logger.warning("🚫 QuickBooks webhook signature mismatch")
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    logger.debug("✅ QuickBooks webhook signature verified")
    return raw_body
