"""HTTP tests for the webhook endpoints."""

import hashlib
import hmac
import json
import time
from unittest.mock import patch

from neuraslide.api import webhooks as webhooks_api
from neuraslide.config import settings
from neuraslide.models.billing import Subscription, SubscriptionStatus
from neuraslide.models.webhook import ProcessedEvent, WebhookProvider

INSTAGRAM_SECRET = "test-app-secret"
STRIPE_SECRET = "whsec_test_secret"


def _instagram_post(client, payload, secret=INSTAGRAM_SECRET):
    body = json.dumps(payload).encode()
    signature = "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return client.post(
        "/webhooks/instagram",
        content=body,
        headers={"X-Hub-Signature-256": signature, "Content-Type": "application/json"},
    )


def _stripe_post(client, event, secret=STRIPE_SECRET):
    body = json.dumps(event)
    ts = int(time.time())
    digest = hmac.new(secret.encode(), f"{ts}.{body}".encode(), hashlib.sha256).hexdigest()
    return client.post(
        "/webhooks/stripe",
        content=body,
        headers={"Stripe-Signature": f"t={ts},v1={digest}", "Content-Type": "application/json"},
    )


def _subscription_created(event_id="evt_sub_1"):
    return {
        "id": event_id,
        "type": "customer.subscription.created",
        "created": 1704067200,
        "data": {
            "object": {
                "id": "sub_1",
                "object": "subscription",
                "customer": "cus_test",
                "status": "active",
                "current_period_start": 1704067200,
                "current_period_end": 1706745600,
                "items": {"data": [{"price": {"id": "price_pro"}}]},
            }
        },
    }


# =============================================================================
# Instagram verification handshake
# =============================================================================


def test_instagram_verification_returns_challenge(client):
    response = client.get(
        "/webhooks/instagram",
        params={
            "hub.mode": "subscribe",
            "hub.verify_token": "test-verify-token",
            "hub.challenge": "1158201444",
        },
    )
    assert response.status_code == 200
    assert response.text == "1158201444"


def test_instagram_verification_wrong_token(client):
    response = client.get(
        "/webhooks/instagram",
        params={"hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "1"},
    )
    assert response.status_code == 403
    assert response.json()["success"] is False


def test_instagram_verification_missing_params(client):
    response = client.get("/webhooks/instagram", params={"hub.mode": "subscribe"})
    assert response.status_code == 400


# =============================================================================
# Instagram deliveries
# =============================================================================


def test_instagram_delivery_bad_signature(client):
    response = _instagram_post(client, {"object": "instagram", "entry": []}, secret="wrong")
    assert response.status_code == 403


def test_instagram_delivery_wrong_object(client):
    response = _instagram_post(client, {"object": "page", "entry": []})
    assert response.status_code == 400


def test_instagram_comment_end_to_end(client, db_session, instagram_account, make_automation):
    make_automation(
        {"type": "comment_received"},
        {"type": "custom", "message": "Price is {price}"},
        context={"price": "$20"},
    )
    payload = {
        "object": "instagram",
        "entry": [
            {
                "id": instagram_account.ig_user_id,
                "time": 1704103200,
                "changes": [
                    {
                        "field": "comments",
                        "value": {"comment_id": "c1", "text": "How much?"},
                    }
                ],
            }
        ],
    }

    with patch("neuraslide.services.instagram_api.reply_to_comment") as reply:
        response = _instagram_post(client, payload)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["eventsProcessed"] == 1
    (result,) = body["data"]["results"]
    assert result["eventType"] == "COMMENT_CREATED"
    assert result["automationTriggered"] is True
    assert result["responseGenerated"] is True
    assert reply.call_args.args[1:] == ("c1", "Price is $20")

    row = db_session.query(ProcessedEvent).one()
    assert row.success is True
    assert row.event_type == "COMMENT_CREATED"
    assert row.outcome["automationTriggered"] is True
    assert row.outcome["responseGenerated"] is True


def _message_entry(account_id, mid):
    return {
        "id": account_id,
        "messaging": [
            {
                "sender": {"id": "user_1"},
                "recipient": {"id": account_id},
                "message": {"mid": mid, "text": "hi"},
            }
        ],
    }


def test_instagram_partial_failure_still_returns_200(client, instagram_account):
    payload = {
        "object": "instagram",
        "entry": [
            _message_entry("unknown_account", "m_x"),
            _message_entry(instagram_account.ig_user_id, "m_y"),
        ],
    }
    response = _instagram_post(client, payload)
    assert response.status_code == 200
    results = response.json()["data"]["results"]
    assert [item["success"] for item in results] == [False, True]


def test_instagram_events_listing(client, instagram_account):
    mention = {"field": "mentions", "value": {"media_id": "media_9", "comment_id": "c9"}}
    payload = {
        "object": "instagram",
        "entry": [{"id": instagram_account.ig_user_id, "changes": [mention]}],
    }
    _instagram_post(client, payload)

    response = client.get(
        "/webhooks/instagram/events", params={"user_id": str(instagram_account.user_id)}
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["total"] == 1
    assert data["hasMore"] is False
    assert data["events"][0]["event_type"] == "MENTION_CREATED"
    assert data["events"][0]["provider"] == "instagram"


def test_instagram_events_invalid_user_id(client):
    response = client.get("/webhooks/instagram/events", params={"user_id": "not-a-uuid"})
    assert response.status_code == 400


def test_instagram_test_endpoint(client, instagram_account):
    response = client.post(
        "/webhooks/instagram/test", params={"account_id": instagram_account.ig_user_id}
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["eventsProcessed"] == 1
    assert data["results"][0]["success"] is True
    assert data["testEvent"]["object"] == "instagram"


def test_instagram_test_endpoint_disabled_in_production(client, monkeypatch, instagram_account):
    monkeypatch.setattr(
        webhooks_api, "settings", settings.model_copy(update={"app_env": "production"})
    )
    response = client.post(
        "/webhooks/instagram/test", params={"account_id": instagram_account.ig_user_id}
    )
    assert response.status_code == 403


def test_health_endpoints(client):
    instagram = client.get("/webhooks/instagram/health").json()
    stripe = client.get("/webhooks/stripe/health").json()
    assert instagram["data"]["signatureVerification"] is True
    assert stripe["data"]["signatureVerification"] is True


# =============================================================================
# Stripe
# =============================================================================


def test_stripe_bad_signature(client):
    response = _stripe_post(client, _subscription_created(), secret="whsec_wrong")
    assert response.status_code == 400
    assert response.json()["success"] is False


def test_stripe_missing_signature(client):
    response = client.post("/webhooks/stripe", content=b"{}")
    assert response.status_code == 400


def test_stripe_subscription_created_and_replayed(client, db_session, user, plan):
    first = _stripe_post(client, _subscription_created())
    assert first.status_code == 200
    data = first.json()["data"]
    assert data["eventId"] == "evt_sub_1"
    assert data["eventType"] == "customer.subscription.created"
    assert data["processed"] is True
    assert data["action"] == "subscription_created"

    replay = _stripe_post(client, _subscription_created())
    assert replay.status_code == 200
    assert replay.json()["data"]["duplicate"] is True
    assert db_session.query(Subscription).one().status == SubscriptionStatus.active

    rows = (
        db_session.query(ProcessedEvent)
        .filter(ProcessedEvent.provider == WebhookProvider.stripe)
        .all()
    )
    assert sorted(row.action for row in rows) == ["duplicate", "subscription_created"]


def test_stripe_invalid_transition_is_acknowledged(client, db_session, user, plan):
    _stripe_post(client, _subscription_created())
    deleted = _subscription_created("evt_sub_2")
    deleted["type"] = "customer.subscription.deleted"
    _stripe_post(client, deleted)

    revived = _subscription_created("evt_sub_3")
    revived["type"] = "customer.subscription.updated"
    response = _stripe_post(client, revived)

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["processed"] is False
    assert "canceled -> active" in data["error"]


def test_stripe_unhandled_event_is_ignored(client):
    response = _stripe_post(
        client, {"id": "evt_other", "type": "charge.refunded", "data": {"object": {}}}
    )
    assert response.status_code == 200
    assert response.json()["data"]["action"] == "ignored"


def test_stripe_events_listing(client, user, plan):
    _stripe_post(client, _subscription_created())
    response = client.get("/webhooks/stripe/events", params={"limit": 10})
    data = response.json()["data"]
    assert data["total"] == 1
    assert data["events"][0]["event_id"] == "evt_sub_1"
    assert data["events"][0]["user_id"] == str(user.id)
