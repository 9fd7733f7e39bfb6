"""Tests for webhook signature verification."""

import hashlib
import hmac
import json
import time

import pytest

from neuraslide.services.exceptions import InvalidSignature
from neuraslide.services.webhook_signatures import (
    verify_instagram_signature,
    verify_stripe_signature,
)

BODY = b'{"object":"instagram","entry":[]}'


def _meta_signature(body: bytes, secret: str) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def _stripe_header(payload: bytes, secret: str, timestamp: int | None = None) -> str:
    ts = int(time.time()) if timestamp is None else timestamp
    signed = f"{ts}.".encode() + payload
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


# =============================================================================
# Instagram
# =============================================================================


def test_instagram_signature_valid():
    assert verify_instagram_signature(BODY, _meta_signature(BODY, "s3cret"), "s3cret") is True


def test_instagram_signature_mismatch():
    assert verify_instagram_signature(BODY, _meta_signature(BODY, "other"), "s3cret") is False


def test_instagram_signature_body_tampered():
    signature = _meta_signature(BODY, "s3cret")
    assert verify_instagram_signature(BODY + b" ", signature, "s3cret") is False


def test_instagram_signature_missing_header():
    assert verify_instagram_signature(BODY, None, "s3cret") is False


def test_instagram_signature_wrong_prefix():
    digest = hmac.new(b"s3cret", BODY, hashlib.sha256).hexdigest()
    assert verify_instagram_signature(BODY, f"sha1={digest}", "s3cret") is False


def test_instagram_signature_empty_secret_rejects_everything():
    """An unset app secret never turns verification off."""
    assert verify_instagram_signature(BODY, _meta_signature(BODY, ""), "") is False


# =============================================================================
# Stripe
# =============================================================================


def test_stripe_signature_valid_returns_event():
    payload = json.dumps({"id": "evt_1", "type": "invoice.paid", "data": {"object": {}}}).encode()
    event = verify_stripe_signature(payload, _stripe_header(payload, "whsec_x"), "whsec_x")
    assert event["id"] == "evt_1"
    assert event["type"] == "invoice.paid"


def test_stripe_signature_wrong_secret():
    payload = b'{"id": "evt_1", "type": "invoice.paid"}'
    with pytest.raises(InvalidSignature):
        verify_stripe_signature(payload, _stripe_header(payload, "whsec_other"), "whsec_x")


def test_stripe_signature_outside_tolerance():
    payload = b'{"id": "evt_1", "type": "invoice.paid"}'
    header = _stripe_header(payload, "whsec_x", timestamp=int(time.time()) - 3600)
    with pytest.raises(InvalidSignature):
        verify_stripe_signature(payload, header, "whsec_x", tolerance=300)


def test_stripe_signature_missing_header():
    with pytest.raises(InvalidSignature):
        verify_stripe_signature(b"{}", None, "whsec_x")


def test_stripe_signature_missing_secret():
    payload = b'{"id": "evt_1"}'
    with pytest.raises(InvalidSignature):
        verify_stripe_signature(payload, _stripe_header(payload, ""), "")
