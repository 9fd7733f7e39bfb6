"""Tests for Stripe event reconciliation."""

from datetime import UTC, datetime
from decimal import Decimal

import pytest

from neuraslide.models.account import User
from neuraslide.models.billing import (
    Invoice,
    InvoiceStatus,
    Subscription,
    SubscriptionStatus,
    UsageRecord,
)
from neuraslide.services import billing_webhooks
from neuraslide.services.exceptions import InvalidTransition
from neuraslide.services.usage import UNLIMITED
from neuraslide.services.webhook_events import normalize_stripe_event

PERIOD_START = 1704067200  # 2024-01-01T00:00:00Z
PERIOD_END = 1706745600  # 2024-02-01T00:00:00Z


def _subscription_event(event_type, status="active", event_id="evt_sub", **extra):
    obj = {
        "id": "sub_1",
        "object": "subscription",
        "customer": "cus_test",
        "status": status,
        "current_period_start": PERIOD_START,
        "current_period_end": PERIOD_END,
        "cancel_at_period_end": False,
        "items": {"data": [{"price": {"id": "price_pro"}}]},
    }
    obj.update(extra)
    return normalize_stripe_event(
        {"id": event_id, "type": event_type, "created": PERIOD_START, "data": {"object": obj}}
    )


def _invoice_event(event_type, status="open", event_id="evt_inv", **extra):
    obj = {
        "id": "in_1",
        "object": "invoice",
        "customer": "cus_test",
        "subscription": "sub_1",
        "status": status,
        "total": 2999,
        "currency": "usd",
    }
    obj.update(extra)
    return normalize_stripe_event({"id": event_id, "type": event_type, "data": {"object": obj}})


# =============================================================================
# Status mapping / state machine
# =============================================================================


def test_unknown_subscription_status_maps_to_incomplete():
    assert billing_webhooks.map_subscription_status("paused") == SubscriptionStatus.incomplete
    assert billing_webhooks.map_subscription_status(None) == SubscriptionStatus.incomplete


def test_unknown_invoice_status_maps_to_draft():
    assert billing_webhooks.map_invoice_status("weird") == InvoiceStatus.draft
    assert billing_webhooks.map_invoice_status("PAID") == InvoiceStatus.paid


def test_transition_table():
    assert billing_webhooks.can_transition(SubscriptionStatus.active, SubscriptionStatus.active)
    assert billing_webhooks.can_transition(SubscriptionStatus.trialing, SubscriptionStatus.active)
    assert not billing_webhooks.can_transition(
        SubscriptionStatus.canceled, SubscriptionStatus.active
    )
    subscription = Subscription(status=SubscriptionStatus.incomplete_expired)
    with pytest.raises(InvalidTransition):
        billing_webhooks.transition(subscription, SubscriptionStatus.active)


# =============================================================================
# Subscriptions
# =============================================================================


def test_subscription_created_initializes_usage(db_session, user, plan):
    result = billing_webhooks.reconcile(
        db_session, _subscription_event("customer.subscription.created")
    )
    assert result.success is True
    assert result.action == "subscription_created"
    assert result.details["usageRecords"] == 9

    subscription = db_session.query(Subscription).one()
    assert subscription.user_id == user.id
    assert subscription.plan_id == plan.id
    assert subscription.status == SubscriptionStatus.active
    assert subscription.current_period_start.replace(tzinfo=UTC) == datetime(
        2024, 1, 1, tzinfo=UTC
    )

    limits = {record.feature: record.limit for record in db_session.query(UsageRecord).all()}
    assert limits["aiReplies"] == 500
    assert limits["productCatalog"] == UNLIMITED
    assert limits["instagramIntegration"] == 1
    assert limits["advancedAnalytics"] == 0
    assert limits["prioritySupport"] == 0


def test_subscription_created_without_user_fails(db_session, plan):
    result = billing_webhooks.reconcile(
        db_session, _subscription_event("customer.subscription.created")
    )
    assert result.success is False
    assert "User not found" in result.error
    assert db_session.query(Subscription).count() == 0


def test_subscription_created_without_plan_fails(db_session, user):
    result = billing_webhooks.reconcile(
        db_session, _subscription_event("customer.subscription.created")
    )
    assert result.success is False
    assert "plan not found" in result.error


def test_subscription_updated_is_idempotent(db_session, user, plan):
    billing_webhooks.reconcile(db_session, _subscription_event("customer.subscription.created"))
    event = _subscription_event(
        "customer.subscription.updated", status="past_due", cancel_at_period_end=True
    )
    first = billing_webhooks.reconcile(db_session, event)
    second = billing_webhooks.reconcile(db_session, event)

    assert first.success is True and second.success is True
    subscription = db_session.query(Subscription).one()
    assert subscription.status == SubscriptionStatus.past_due
    assert subscription.cancel_at_period_end is True


def test_subscription_updated_before_created_upserts(db_session, user, plan):
    result = billing_webhooks.reconcile(
        db_session, _subscription_event("customer.subscription.updated", status="trialing")
    )
    assert result.success is True
    assert db_session.query(Subscription).one().status == SubscriptionStatus.trialing


def test_invalid_transition_is_reported_and_rolled_back(db_session, user, plan):
    billing_webhooks.reconcile(db_session, _subscription_event("customer.subscription.created"))
    billing_webhooks.reconcile(db_session, _subscription_event("customer.subscription.deleted"))

    result = billing_webhooks.reconcile(
        db_session, _subscription_event("customer.subscription.updated", status="active")
    )
    assert result.success is False
    assert result.action == "subscription_updated"
    assert "canceled -> active" in result.error
    assert db_session.query(Subscription).one().status == SubscriptionStatus.canceled


def test_subscription_deleted_sets_canceled_at(db_session, user, plan):
    billing_webhooks.reconcile(db_session, _subscription_event("customer.subscription.created"))
    result = billing_webhooks.reconcile(
        db_session,
        _subscription_event("customer.subscription.deleted", canceled_at=PERIOD_END),
    )
    assert result.success is True
    subscription = db_session.query(Subscription).one()
    assert subscription.status == SubscriptionStatus.canceled
    assert subscription.canceled_at is not None


def test_checkout_completed_activates_subscription(db_session, user, plan):
    billing_webhooks.reconcile(
        db_session, _subscription_event("customer.subscription.created", status="incomplete")
    )
    event = normalize_stripe_event(
        {
            "id": "evt_checkout",
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": "cs_1",
                    "object": "checkout.session",
                    "customer": "cus_test",
                    "subscription": "sub_1",
                    "created": PERIOD_END,
                }
            },
        }
    )
    result = billing_webhooks.reconcile(db_session, event)

    assert result.success is True
    assert result.action == "checkout_session_completed"
    subscription = db_session.query(Subscription).one()
    assert subscription.status == SubscriptionStatus.active
    assert subscription.current_period_start.replace(tzinfo=UTC) == datetime(
        2024, 2, 1, tzinfo=UTC
    )


def test_checkout_completed_without_subscription_fails(db_session, user):
    event = normalize_stripe_event(
        {
            "id": "evt_checkout",
            "type": "checkout.session.completed",
            "data": {"object": {"id": "cs_1", "customer": "cus_test", "subscription": "sub_x"}},
        }
    )
    result = billing_webhooks.reconcile(db_session, event)
    assert result.success is False
    assert result.action == "checkout_session_completed"


# =============================================================================
# Invoices
# =============================================================================


def test_invoice_paid_creates_missing_invoice(db_session, user):
    event = _invoice_event(
        "invoice.paid", status="paid", status_transitions={"paid_at": PERIOD_START}
    )
    result = billing_webhooks.reconcile(db_session, event)

    assert result.success is True
    invoice = db_session.query(Invoice).one()
    assert invoice.status == InvoiceStatus.paid
    assert invoice.amount == Decimal("29.99")
    assert invoice.currency == "USD"
    assert invoice.paid_at.replace(tzinfo=UTC) == datetime(2024, 1, 1, tzinfo=UTC)


def test_invoice_payment_succeeded_is_handled_like_paid(db_session, user):
    result = billing_webhooks.reconcile(
        db_session, _invoice_event("invoice.payment_succeeded", status="paid")
    )
    assert result.action == "invoice_paid"
    assert db_session.query(Invoice).one().status == InvoiceStatus.paid


def test_paid_invoice_is_never_downgraded(db_session, user):
    billing_webhooks.reconcile(db_session, _invoice_event("invoice.paid", status="paid"))
    failed = billing_webhooks.reconcile(
        db_session, _invoice_event("invoice.payment_failed", status="open")
    )
    created = billing_webhooks.reconcile(
        db_session, _invoice_event("invoice.created", status="draft")
    )
    assert failed.success is True and created.success is True
    assert db_session.query(Invoice).one().status == InvoiceStatus.paid


def test_invoice_payment_failed_without_invoice_is_acknowledged(db_session):
    result = billing_webhooks.reconcile(
        db_session, _invoice_event("invoice.payment_failed", status="open")
    )
    assert result.success is True
    assert result.details["invoiceFound"] is False


# =============================================================================
# Customers / other
# =============================================================================


def test_customer_lifecycle(db_session, user):
    user.stripe_customer_id = None
    db_session.commit()

    created = normalize_stripe_event(
        {
            "id": "evt_c1",
            "type": "customer.created",
            "data": {"object": {"id": "cus_new", "object": "customer", "email": user.email}},
        }
    )
    assert billing_webhooks.reconcile(db_session, created).success is True
    assert db_session.get(User, user.id).stripe_customer_id == "cus_new"

    updated = normalize_stripe_event(
        {
            "id": "evt_c2",
            "type": "customer.updated",
            "data": {"object": {"id": "cus_new", "object": "customer", "email": "new@example.com"}},
        }
    )
    assert billing_webhooks.reconcile(db_session, updated).details["emailChanged"] is True
    assert db_session.get(User, user.id).email == "new@example.com"

    deleted = normalize_stripe_event(
        {
            "id": "evt_c3",
            "type": "customer.deleted",
            "data": {"object": {"id": "cus_new", "object": "customer"}},
        }
    )
    assert billing_webhooks.reconcile(db_session, deleted).success is True
    assert db_session.get(User, user.id).stripe_customer_id is None


def test_unhandled_event_type_is_ignored(db_session):
    event = normalize_stripe_event({"id": "evt_x", "type": "charge.refunded", "data": {}})
    result = billing_webhooks.reconcile(db_session, event)
    assert result.success is True
    assert result.action == "ignored"


def test_payment_intent_events_are_acknowledged(db_session):
    event = normalize_stripe_event(
        {
            "id": "evt_pi",
            "type": "payment_intent.payment_failed",
            "data": {"object": {"id": "pi_1", "last_payment_error": {"message": "declined"}}},
        }
    )
    result = billing_webhooks.reconcile(db_session, event)
    assert result.success is True
    assert result.details["paymentIntentId"] == "pi_1"
