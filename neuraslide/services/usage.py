"""Per-feature monthly usage records.

Limits come from the plan's ``features`` map. ``-1`` means unlimited and is
stored as ``UNLIMITED``; boolean features are stored as 1 (enabled) or 0.
"""

from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from neuraslide.logging import get_logger
from neuraslide.models.billing import (
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
    UsageRecord,
)
from neuraslide.services.common import coerce_uuid, current_period

logger = get_logger(__name__)

UNLIMITED = 999999
AI_REPLIES = "aiReplies"
TRACKED_FEATURES = (
    AI_REPLIES,
    "instagramIntegration",
    "basicTemplates",
    "emailSupport",
    "advancedAutomations",
    "advancedAnalytics",
    "prioritySupport",
    "productCatalog",
    "realTimeMonitoring",
)


def feature_limit(features: dict | None, feature: str) -> int:
    value = (features or {}).get(feature)
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, (int, float)):
        return UNLIMITED if value < 0 else int(value)
    return 0


def _find(db: Session, user_id, feature: str, period: str) -> UsageRecord | None:
    return (
        db.query(UsageRecord)
        .filter(UsageRecord.user_id == coerce_uuid(user_id))
        .filter(UsageRecord.feature == feature)
        .filter(UsageRecord.period == period)
        .first()
    )


def _current_plan(db: Session, user_id) -> tuple[Subscription | None, SubscriptionPlan | None]:
    subscription = (
        db.query(Subscription)
        .filter(Subscription.user_id == coerce_uuid(user_id))
        .filter(
            Subscription.status.in_(
                [SubscriptionStatus.active, SubscriptionStatus.trialing]
            )
        )
        .order_by(Subscription.created_at.desc())
        .first()
    )
    if not subscription:
        return None, None
    return subscription, db.get(SubscriptionPlan, subscription.plan_id)


def sync_limits(
    db: Session,
    subscription: Subscription,
    plan: SubscriptionPlan,
    now: datetime | None = None,
) -> list[UsageRecord]:
    """Create or resync the current period's records from the plan.

    Usage counts on existing rows are kept; only the limits change.
    Flushes but does not commit.
    """
    period = current_period(now)
    records = []
    for feature in TRACKED_FEATURES:
        limit = feature_limit(plan.features, feature)
        record = _find(db, subscription.user_id, feature, period)
        if record:
            record.limit = limit
            record.subscription_id = subscription.id
        else:
            record = UsageRecord(
                user_id=subscription.user_id,
                subscription_id=subscription.id,
                feature=feature,
                period=period,
                usage=0,
                limit=limit,
            )
            db.add(record)
        records.append(record)
    db.flush()
    return records


def increment_usage(db: Session, user_id, feature: str, amount: int = 1) -> UsageRecord:
    """Add ``amount`` to the current period's usage without touching the limit."""
    period = current_period()
    record = _find(db, user_id, feature, period)
    if not record:
        subscription, plan = _current_plan(db, user_id)
        record = UsageRecord(
            user_id=coerce_uuid(user_id),
            subscription_id=subscription.id if subscription else None,
            feature=feature,
            period=period,
            usage=0,
            limit=feature_limit(plan.features if plan else None, feature),
        )
        db.add(record)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            record = _find(db, user_id, feature, period)
            if not record:
                raise
    db.query(UsageRecord).filter(UsageRecord.id == record.id).update(
        {UsageRecord.usage: UsageRecord.usage + amount}, synchronize_session=False
    )
    db.commit()
    db.refresh(record)
    logger.debug(
        "usage_incremented user_id=%s feature=%s period=%s usage=%s",
        user_id,
        feature,
        period,
        record.usage,
    )
    return record
