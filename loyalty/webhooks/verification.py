"""Shopify webhook signature verification (constant-time HMAC).

Security contract:
- Signature is base64(HMAC-SHA256(secret, raw body)) from X-Shopify-Hmac-SHA256
- The raw request bytes are verified; re-serialized JSON would not match
- Comparison uses hmac.compare_digest() (constant-time, no timing attacks)
- Missing/invalid signature -> WebhookAuthenticationError (401)
- Missing secret env var -> WebhookConfigurationError (500, fail-closed)
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import os
from typing import Mapping

from loyalty.errors import WebhookAuthenticationError, WebhookConfigurationError

logger = logging.getLogger(__name__)

_SHOPIFY_WEBHOOK_SECRET = os.environ.get("SHOPIFY_WEBHOOK_SECRET", "")

SIGNATURE_HEADER = "x-shopify-hmac-sha256"


def compute_signature(body: bytes, secret: str) -> str:
    """Base64 HMAC-SHA256 of ``body``, as Shopify sends it."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_shopify(
    body: bytes,
    signature_header: str | None,
    secret: str | None = None,
) -> None:
    """Verify a Shopify webhook signature; return normally if valid.

    Args:
        body: Raw request body bytes, exactly as received
        signature_header: Value of X-Shopify-Hmac-SHA256 header
        secret: Shared secret; defaults to SHOPIFY_WEBHOOK_SECRET

    Raises:
        WebhookConfigurationError: no secret configured
        WebhookAuthenticationError: header missing or signature mismatch
    """
    secret = _SHOPIFY_WEBHOOK_SECRET if secret is None else secret
    if not secret:
        logger.error("SHOPIFY_WEBHOOK_SECRET not set, rejecting webhook")
        raise WebhookConfigurationError("SHOPIFY_WEBHOOK_SECRET is not configured")
    if not signature_header:
        raise WebhookAuthenticationError("missing signature")

    expected = compute_signature(body, secret)
    if not hmac.compare_digest(
        expected.encode("utf-8"), signature_header.strip().encode("utf-8")
    ):
        logger.warning("Invalid Shopify webhook signature")
        raise WebhookAuthenticationError("invalid signature")

    logger.debug("Shopify webhook signature verified")


def verify_webhook(body: bytes, headers: Mapping[str, str]) -> None:
    """Verify using request headers (lowercase keys)."""
    verify_shopify(body, headers.get(SIGNATURE_HEADER))
