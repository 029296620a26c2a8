"""
Webhook Verifier
================
Authenticates Stripe webhook deliveries before anything else sees them.

The signature covers the raw request body, so verification runs on the
exact bytes received; the JSON is only parsed after the check passes.
"""

import json
from typing import Any, Dict, Optional

import stripe
import structlog

from pipeline.errors import SignatureInvalid

logger = structlog.get_logger().bind(component="webhook_verifier")


class WebhookVerifier:
    """Stripe-Signature check against a shared endpoint secret"""

    def __init__(self, secret: str, tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE):
        if not secret:
            raise ValueError("Webhook secret is required")
        self._secret = secret
        self._tolerance = tolerance

    def verify(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Return the parsed event envelope or raise SignatureInvalid."""
        if not signature:
            logger.warning("webhook_signature_missing")
            raise SignatureInvalid("Missing stripe-signature header")

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            logger.warning("webhook_body_not_utf8")
            raise SignatureInvalid("Webhook body is not valid UTF-8") from e

        try:
            stripe.WebhookSignature.verify_header(body, signature, self._secret, self._tolerance)
        except stripe.SignatureVerificationError as e:
            logger.warning("webhook_signature_invalid", error=str(e))
            raise SignatureInvalid(str(e)) from e

        try:
            event = json.loads(body)
        except ValueError as e:
            logger.warning("webhook_body_not_json", error=str(e))
            raise SignatureInvalid("Webhook body is not valid JSON") from e

        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            logger.warning("webhook_envelope_invalid")
            raise SignatureInvalid("Webhook body is not a Stripe event envelope")

        return event
