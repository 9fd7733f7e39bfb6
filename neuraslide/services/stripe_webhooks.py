"""Stripe webhook processing: verify, dedup, reconcile, record."""

from sqlalchemy.orm import Session

from neuraslide.config import settings
from neuraslide.logging import get_logger
from neuraslide.models.account import User
from neuraslide.models.webhook import WebhookProvider
from neuraslide.schemas.webhook import StripeWebhookData, WebhookProcessingResult
from neuraslide.services import billing_webhooks
from neuraslide.services.webhook_events import BillingEvent, normalize_stripe_event
from neuraslide.services.webhook_ledger import ProcessedEvents
from neuraslide.services.webhook_signatures import verify_stripe_signature

logger = get_logger(__name__)


def _owner_id(db: Session, event: BillingEvent):
    if not event.customer_id:
        return None
    user = db.query(User).filter(User.stripe_customer_id == event.customer_id).first()
    return user.id if user else None


def process_event(db: Session, event: BillingEvent) -> StripeWebhookData:
    """Reconcile one verified event unless it was already applied."""
    earlier = ProcessedEvents.find_successful(db, WebhookProvider.stripe, event.dedup_key)
    if earlier:
        logger.info(
            "stripe_webhook_event_duplicate event_id=%s event_type=%s",
            event.event_id,
            event.raw_type,
        )
        result = WebhookProcessingResult(
            success=True, action="duplicate", details={"action": earlier.action}
        )
    else:
        result = billing_webhooks.reconcile(db, event)

    ProcessedEvents.record(
        db,
        provider=WebhookProvider.stripe,
        event_id=event.event_id,
        event_type=event.raw_type or "unknown",
        success=result.success,
        action=result.action,
        outcome=result.model_dump(),
        error=result.error,
        dedup_key=event.dedup_key,
        user_id=_owner_id(db, event),
        external_account_id=event.customer_id,
        occurred_at=event.created,
    )
    logger.info(
        "stripe_webhook_processed event_id=%s event_type=%s action=%s success=%s",
        event.event_id,
        event.raw_type,
        result.action,
        result.success,
    )
    return StripeWebhookData(
        event_id=event.event_id,
        event_type=event.raw_type,
        processed=result.success,
        action=result.action,
        duplicate=earlier is not None,
        error=result.error,
    )


def process_delivery(db: Session, body: bytes, signature: str | None) -> StripeWebhookData:
    """Verify a raw delivery and process it.

    Raises:
        InvalidSignature: see ``verify_stripe_signature``.
    """
    payload = verify_stripe_signature(
        body,
        signature,
        settings.stripe_webhook_secret,
        tolerance=settings.stripe_webhook_tolerance,
    )
    return process_event(db, normalize_stripe_event(payload))
