"""Webhook signature verification.

Instagram (Meta) signs the raw body with the app secret and sends
``X-Hub-Signature-256: sha256=<hex>``. Stripe signs ``"{timestamp}.{body}"``
and sends ``Stripe-Signature: t=<ts>,v1=<hex>``; verification is delegated to
the Stripe SDK, which also enforces the timestamp tolerance.
"""

import hashlib
import hmac
import json

import stripe

from neuraslide.logging import get_logger
from neuraslide.services.exceptions import InvalidSignature

logger = get_logger(__name__)


def verify_instagram_signature(
    payload_body: bytes,
    signature_header: str | None,
    app_secret: str,
) -> bool:
    """Verify an Instagram webhook signature (X-Hub-Signature-256).

    Args:
        payload_body: Raw request body bytes
        signature_header: Value of X-Hub-Signature-256 header
        app_secret: Instagram/Meta app secret

    Returns:
        True if signature is valid, False otherwise. An empty secret always
        fails: it never disables verification.
    """
    if not app_secret:
        logger.warning("instagram_webhook_secret_not_configured")
        return False
    if not signature_header or not signature_header.startswith("sha256="):
        logger.warning("instagram_webhook_signature_missing_or_invalid")
        return False

    expected_signature = signature_header[7:]
    computed_signature = hmac.new(
        app_secret.encode(),
        payload_body,
        hashlib.sha256,
    ).hexdigest()

    is_valid = hmac.compare_digest(expected_signature, computed_signature)
    if not is_valid:
        logger.warning("instagram_webhook_signature_mismatch")
    return is_valid


def verify_stripe_signature(
    payload_body: bytes,
    signature_header: str | None,
    webhook_secret: str,
    tolerance: int = 300,
) -> dict:
    """Verify a Stripe delivery and return the parsed event envelope.

    Raises:
        InvalidSignature: missing header, missing secret, bad signature or a
            timestamp outside the tolerance window.
    """
    if not webhook_secret:
        logger.error("stripe_webhook_secret_not_configured")
        raise InvalidSignature("Stripe webhook secret not configured")
    if not signature_header:
        logger.warning("stripe_webhook_signature_missing")
        raise InvalidSignature("Missing Stripe signature")

    try:
        stripe.Webhook.construct_event(
            payload_body, signature_header, webhook_secret, tolerance=tolerance
        )
    except stripe.SignatureVerificationError as exc:
        logger.warning("stripe_webhook_signature_mismatch")
        raise InvalidSignature("Invalid Stripe signature") from exc
    except ValueError as exc:
        logger.warning("stripe_webhook_payload_invalid error=%s", exc)
        raise InvalidSignature("Invalid Stripe payload") from exc

    # Plain dicts keep handlers independent of the SDK's StripeObject API.
    event = json.loads(payload_body)
    if not isinstance(event, dict):
        raise InvalidSignature("Invalid Stripe payload")
    return event
