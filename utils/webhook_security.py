"""Webhook signature verification for the payment provider callback"""

import hashlib
import hmac
import logging
from typing import Optional

from config import Config

logger = logging.getLogger(__name__)


class WebhookSecurity:

    @staticmethod
    def compute_signature(raw_body: bytes, secret: str) -> str:
        """HMAC-SHA256 hex digest over the raw request body"""
        return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()

    @staticmethod
    def verify_payment_webhook(raw_body: bytes, signature: Optional[str], secret: Optional[str] = None) -> bool:
        """
        Check the provider's signature header.

        Accepts a bare hex digest or the "sha256=<hex>" form. Returns False when
        no secret is configured, so callers decide what unsigned traffic means.
        """
        secret = secret if secret is not None else Config.PAYMENT_WEBHOOK_SECRET
        if not secret or not signature:
            return False

        received = signature.strip()
        if received.lower().startswith("sha256="):
            received = received[len("sha256="):]

        expected = WebhookSecurity.compute_signature(raw_body, secret)
        is_valid = hmac.compare_digest(received.lower(), expected.lower())
        if not is_valid:
            logger.error("🚨 PAYMENT_WEBHOOK_SIGNATURE: verification FAILED")
            logger.error(f"Received: {received[:16]}...")
        return is_valid
