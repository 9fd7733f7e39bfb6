"""Stripe event reconciliation.

Each handler maps one Stripe event onto local Subscription, Invoice, User and
UsageRecord rows and returns a ``WebhookProcessingResult``. Handlers only
overwrite fields, so replaying an event converges on the same state.
Subscription status changes go through ``VALID_TRANSITIONS``.
"""

from collections.abc import Callable
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy.orm import Session

from neuraslide.logging import get_logger
from neuraslide.models.account import User
from neuraslide.models.billing import (
    Invoice,
    InvoiceStatus,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
)
from neuraslide.schemas.webhook import WebhookProcessingResult
from neuraslide.services import usage
from neuraslide.services.common import from_unix
from neuraslide.services.exceptions import InvalidTransition
from neuraslide.services.webhook_events import BillingEvent, BillingEventType

logger = get_logger(__name__)

STRIPE_SUBSCRIPTION_STATUS = {
    "incomplete": SubscriptionStatus.incomplete,
    "incomplete_expired": SubscriptionStatus.incomplete_expired,
    "trialing": SubscriptionStatus.trialing,
    "active": SubscriptionStatus.active,
    "past_due": SubscriptionStatus.past_due,
    "canceled": SubscriptionStatus.canceled,
    "unpaid": SubscriptionStatus.unpaid,
}

STRIPE_INVOICE_STATUS = {
    "draft": InvoiceStatus.draft,
    "open": InvoiceStatus.open,
    "paid": InvoiceStatus.paid,
    "void": InvoiceStatus.void,
    "uncollectible": InvoiceStatus.uncollectible,
}

# Valid subscription status transitions (from -> allowed to states).
# Staying in the same state is always allowed.
VALID_TRANSITIONS = {
    SubscriptionStatus.incomplete: {
        SubscriptionStatus.trialing,
        SubscriptionStatus.active,
        SubscriptionStatus.incomplete_expired,
        SubscriptionStatus.canceled,
    },
    SubscriptionStatus.trialing: {
        SubscriptionStatus.active,
        SubscriptionStatus.past_due,
        SubscriptionStatus.canceled,
        SubscriptionStatus.unpaid,
    },
    SubscriptionStatus.active: {
        SubscriptionStatus.past_due,
        SubscriptionStatus.canceled,
        SubscriptionStatus.unpaid,
    },
    SubscriptionStatus.past_due: {
        SubscriptionStatus.active,
        SubscriptionStatus.canceled,
        SubscriptionStatus.unpaid,
    },
    SubscriptionStatus.unpaid: {
        SubscriptionStatus.active,
        SubscriptionStatus.canceled,
    },
    SubscriptionStatus.canceled: set(),
    SubscriptionStatus.incomplete_expired: set(),
}


def map_subscription_status(value: str | None) -> SubscriptionStatus:
    status = STRIPE_SUBSCRIPTION_STATUS.get((value or "").lower())
    if status is None:
        logger.warning("stripe_subscription_status_unrecognized status=%s", value)
        return SubscriptionStatus.incomplete
    return status


def map_invoice_status(value: str | None) -> InvoiceStatus:
    return STRIPE_INVOICE_STATUS.get((value or "").lower(), InvoiceStatus.draft)


def can_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    if current == target:
        return True
    return target in VALID_TRANSITIONS.get(current, set())


def transition(subscription: Subscription, target: SubscriptionStatus) -> None:
    """Move ``subscription`` to ``target``.

    Raises:
        InvalidTransition: the state machine does not allow the move.
    """
    current = subscription.status or SubscriptionStatus.incomplete
    if not can_transition(current, target):
        raise InvalidTransition(current, target)
    subscription.status = target


def _ok(action: str, **details) -> WebhookProcessingResult:
    return WebhookProcessingResult(success=True, action=action, details=details or None)


def _fail(action: str, error: str) -> WebhookProcessingResult:
    logger.warning("stripe_reconciliation_failed action=%s error=%s", action, error)
    return WebhookProcessingResult(success=False, action=action, error=error)


def _user_for_customer(db: Session, customer_id: str | None) -> User | None:
    if not customer_id:
        return None
    return db.query(User).filter(User.stripe_customer_id == customer_id).first()


def _plan_for_price(db: Session, price_id: str | None) -> SubscriptionPlan | None:
    if not price_id:
        return None
    return (
        db.query(SubscriptionPlan).filter(SubscriptionPlan.stripe_price_id == price_id).first()
    )


def _subscription(db: Session, stripe_subscription_id: str | None) -> Subscription | None:
    if not stripe_subscription_id:
        return None
    return (
        db.query(Subscription)
        .filter(Subscription.stripe_subscription_id == stripe_subscription_id)
        .first()
    )


def _apply_subscription_fields(subscription: Subscription, event: BillingEvent) -> None:
    subscription.stripe_customer_id = event.customer_id or subscription.stripe_customer_id
    subscription.current_period_start = event.current_period_start
    subscription.current_period_end = event.current_period_end
    subscription.trial_start = event.trial_start
    subscription.trial_end = event.trial_end
    subscription.cancel_at_period_end = event.cancel_at_period_end
    subscription.canceled_at = event.canceled_at


# ---------------------------------------------------------------------------
# Customers
# ---------------------------------------------------------------------------


def handle_customer_created(db: Session, event: BillingEvent) -> WebhookProcessingResult:
    email = (event.object.get("email") or "").strip().lower()
    user = db.query(User).filter(User.email == email).first() if email else None
    if not user:
        return _fail("customer_created", "User not found for customer email")
    user.stripe_customer_id = event.customer_id
    db.commit()
    return _ok("customer_created", userId=str(user.id))


def handle_customer_updated(db: Session, event: BillingEvent) -> WebhookProcessingResult:
    user = _user_for_customer(db, event.customer_id)
    if not user:
        return _fail("customer_updated", "User not found for Stripe customer")
    email = (event.object.get("email") or "").strip().lower()
    changed = bool(email) and email != user.email
    if changed:
        user.email = email
        db.commit()
    return _ok("customer_updated", userId=str(user.id), emailChanged=changed)


def handle_customer_deleted(db: Session, event: BillingEvent) -> WebhookProcessingResult:
    user = _user_for_customer(db, event.customer_id)
    if not user:
        return _fail("customer_deleted", "User not found for Stripe customer")
    user.stripe_customer_id = None
    db.commit()
    return _ok("customer_deleted", userId=str(user.id))


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


def _upsert_subscription(
    db: Session, event: BillingEvent, action: str
) -> WebhookProcessingResult:
    user = _user_for_customer(db, event.customer_id)
    if not user:
        return _fail(action, f"User not found for Stripe customer {event.customer_id}")
    plan = _plan_for_price(db, event.price_id)
    if not plan:
        return _fail(action, f"Subscription plan not found for price {event.price_id}")

    target = map_subscription_status(event.status)
    subscription = _subscription(db, event.subscription_id)
    created = subscription is None
    if created:
        subscription = Subscription(
            user_id=user.id,
            plan_id=plan.id,
            stripe_subscription_id=event.subscription_id,
            stripe_customer_id=event.customer_id,
            status=target,
        )
        db.add(subscription)
    else:
        transition(subscription, target)
        subscription.plan_id = plan.id
    _apply_subscription_fields(subscription, event)
    db.flush()
    records = usage.sync_limits(db, subscription, plan)
    db.commit()
    return _ok(
        action,
        subscriptionId=str(subscription.id),
        status=subscription.status.value,
        created=created,
        usageRecords=len(records),
    )


def handle_subscription_created(db: Session, event: BillingEvent) -> WebhookProcessingResult:
    return _upsert_subscription(db, event, "subscription_created")


def handle_subscription_updated(db: Session, event: BillingEvent) -> WebhookProcessingResult:
    subscription = _subscription(db, event.subscription_id)
    if not subscription:
        # Arrived before subscription.created: build the row from this event.
        return _upsert_subscription(db, event, "subscription_updated")

    transition(subscription, map_subscription_status(event.status))
    plan = _plan_for_price(db, event.price_id)
    if plan:
        subscription.plan_id = plan.id
    _apply_subscription_fields(subscription, event)
    db.commit()
    return _ok(
        "subscription_updated",
        subscriptionId=str(subscription.id),
        status=subscription.status.value,
    )


def handle_subscription_deleted(db: Session, event: BillingEvent) -> WebhookProcessingResult:
    subscription = _subscription(db, event.subscription_id)
    if not subscription:
        return _fail("subscription_deleted", "Subscription not found")
    transition(subscription, SubscriptionStatus.canceled)
    subscription.canceled_at = (
        event.canceled_at or subscription.canceled_at or datetime.now(UTC)
    )
    db.commit()
    return _ok("subscription_deleted", subscriptionId=str(subscription.id))


def handle_trial_will_end(db: Session, event: BillingEvent) -> WebhookProcessingResult:
    subscription = _subscription(db, event.subscription_id)
    if not subscription:
        return _fail("trial_will_end", "Subscription not found")
    logger.info(
        "stripe_trial_will_end subscription_id=%s trial_end=%s",
        subscription.id,
        event.trial_end,
    )
    return _ok("trial_will_end", subscriptionId=str(subscription.id), userNotified=False)


def handle_checkout_completed(db: Session, event: BillingEvent) -> WebhookProcessingResult:
    action = "checkout_session_completed"
    session = event.object
    user = _user_for_customer(db, event.customer_id)
    if not user:
        return _fail(action, "User not found for Stripe customer")
    subscription = (
        db.query(Subscription)
        .filter(Subscription.user_id == user.id)
        .filter(Subscription.stripe_subscription_id == event.subscription_id)
        .order_by(Subscription.created_at.desc())
        .first()
        if event.subscription_id
        else None
    )
    if not subscription:
        return _fail(action, "No subscription found for this checkout session")

    transition(subscription, SubscriptionStatus.active)
    subscription.current_period_start = from_unix(session.get("created")) or datetime.now(UTC)
    if session.get("current_period_end"):
        subscription.current_period_end = from_unix(session.get("current_period_end"))
    if session.get("trial_start"):
        subscription.trial_start = from_unix(session.get("trial_start"))
    if session.get("trial_end"):
        subscription.trial_end = from_unix(session.get("trial_end"))
    if "cancel_at_period_end" in session:
        subscription.cancel_at_period_end = bool(session.get("cancel_at_period_end"))
    if session.get("canceled_at"):
        subscription.canceled_at = from_unix(session.get("canceled_at"))

    plan = db.get(SubscriptionPlan, subscription.plan_id)
    if plan:
        usage.sync_limits(db, subscription, plan)
    db.commit()
    return _ok(action, subscriptionId=str(subscription.id), subscriptionUpdated=True)


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------


def _invoice(db: Session, stripe_invoice_id: str | None) -> Invoice | None:
    if not stripe_invoice_id:
        return None
    return db.query(Invoice).filter(Invoice.stripe_invoice_id == stripe_invoice_id).first()


def _upsert_invoice(db: Session, event: BillingEvent, user: User) -> Invoice:
    obj = event.object
    invoice = _invoice(db, event.invoice_id)
    if not invoice:
        invoice = Invoice(stripe_invoice_id=event.invoice_id, user_id=user.id)
        db.add(invoice)
    subscription = _subscription(db, event.subscription_id)
    invoice.subscription_id = subscription.id if subscription else invoice.subscription_id
    total = obj.get("total", obj.get("amount_due"))
    if total is not None:
        invoice.amount = Decimal(int(total)) / Decimal(100)
    invoice.currency = str(obj.get("currency") or invoice.currency or "usd").upper()
    invoice.description = obj.get("description") or invoice.description or "Subscription invoice"
    invoice.invoice_url = obj.get("hosted_invoice_url") or invoice.invoice_url
    invoice.due_date = from_unix(obj.get("due_date") or obj.get("period_end")) or invoice.due_date
    if invoice.status != InvoiceStatus.paid:
        invoice.status = map_invoice_status(event.status)
    return invoice


def handle_invoice_created(db: Session, event: BillingEvent) -> WebhookProcessingResult:
    user = _user_for_customer(db, event.customer_id)
    if not user:
        return _fail("invoice_created", "User not found for Stripe customer")
    invoice = _upsert_invoice(db, event, user)
    if invoice.status == InvoiceStatus.paid and not invoice.paid_at:
        invoice.paid_at = event.created or datetime.now(UTC)
    db.commit()
    return _ok("invoice_created", invoiceId=str(invoice.id), status=invoice.status.value)


def handle_invoice_paid(db: Session, event: BillingEvent) -> WebhookProcessingResult:
    invoice = _invoice(db, event.invoice_id)
    if not invoice:
        user = _user_for_customer(db, event.customer_id)
        if not user:
            return _fail("invoice_paid", "Invoice not found in database")
        invoice = _upsert_invoice(db, event, user)
    invoice.status = InvoiceStatus.paid
    if not invoice.paid_at:
        transitions = event.object.get("status_transitions") or {}
        invoice.paid_at = from_unix(transitions.get("paid_at")) or datetime.now(UTC)
    db.commit()
    return _ok("invoice_paid", invoiceId=str(invoice.id), paymentProcessed=True)


def handle_invoice_payment_failed(db: Session, event: BillingEvent) -> WebhookProcessingResult:
    invoice = _invoice(db, event.invoice_id)
    if invoice and invoice.status != InvoiceStatus.paid:
        # Stripe's own dunning retries the charge; the invoice stays open.
        invoice.status = InvoiceStatus.open
        db.commit()
    logger.warning(
        "stripe_invoice_payment_failed invoice_id=%s customer_id=%s amount=%s",
        event.invoice_id,
        event.customer_id,
        event.object.get("total"),
    )
    return _ok("invoice_payment_failed", invoiceFound=invoice is not None, userNotified=False)


# ---------------------------------------------------------------------------
# Payment intents
# ---------------------------------------------------------------------------


def handle_payment_succeeded(db: Session, event: BillingEvent) -> WebhookProcessingResult:
    logger.info(
        "stripe_payment_intent_succeeded payment_intent_id=%s customer_id=%s amount=%s",
        event.object.get("id"),
        event.customer_id,
        event.object.get("amount"),
    )
    return _ok("payment_succeeded", paymentIntentId=event.object.get("id"))


def handle_payment_failed(db: Session, event: BillingEvent) -> WebhookProcessingResult:
    error = event.object.get("last_payment_error") or {}
    logger.warning(
        "stripe_payment_intent_failed payment_intent_id=%s customer_id=%s reason=%s",
        event.object.get("id"),
        event.customer_id,
        error.get("message") if isinstance(error, dict) else None,
    )
    return _ok("payment_failed", paymentIntentId=event.object.get("id"))


HANDLERS: dict[BillingEventType, Callable[[Session, BillingEvent], WebhookProcessingResult]] = {
    BillingEventType.customer_created: handle_customer_created,
    BillingEventType.customer_updated: handle_customer_updated,
    BillingEventType.customer_deleted: handle_customer_deleted,
    BillingEventType.subscription_created: handle_subscription_created,
    BillingEventType.subscription_updated: handle_subscription_updated,
    BillingEventType.subscription_deleted: handle_subscription_deleted,
    BillingEventType.subscription_trial_will_end: handle_trial_will_end,
    BillingEventType.checkout_completed: handle_checkout_completed,
    BillingEventType.invoice_created: handle_invoice_created,
    BillingEventType.invoice_paid: handle_invoice_paid,
    BillingEventType.invoice_payment_succeeded: handle_invoice_paid,
    BillingEventType.invoice_payment_failed: handle_invoice_payment_failed,
    BillingEventType.payment_intent_succeeded: handle_payment_succeeded,
    BillingEventType.payment_intent_failed: handle_payment_failed,
}


TRANSITION_ACTIONS = {
    BillingEventType.subscription_created: "subscription_created",
    BillingEventType.subscription_updated: "subscription_updated",
    BillingEventType.subscription_deleted: "subscription_deleted",
    BillingEventType.checkout_completed: "checkout_session_completed",
}


def reconcile(db: Session, event: BillingEvent) -> WebhookProcessingResult:
    """Apply one Stripe event. Never raises.

    Unhandled types are a successful no-op (``ignored``). Invalid status
    transitions and unexpected errors roll back and come back as failures.
    """
    handler = HANDLERS.get(event.event_type)
    if handler is None:
        logger.info("stripe_webhook_event_ignored event_type=%s", event.raw_type)
        return WebhookProcessingResult(success=True, action="ignored", details={})
    try:
        return handler(db, event)
    except InvalidTransition as exc:
        db.rollback()
        return _fail(TRANSITION_ACTIONS.get(event.event_type, "failed"), str(exc))
    except Exception as exc:
        db.rollback()
        logger.exception(
            "stripe_reconciliation_error event_id=%s event_type=%s",
            event.event_id,
            event.raw_type,
        )
        return WebhookProcessingResult(success=False, action="failed", error=str(exc))
