"""Processed-event ledger.

One row per processing attempt, never updated. ``find_successful`` is the
dedup check run before side effects: only a *successful* earlier attempt
with the same provider and dedup key suppresses reprocessing, so failed
attempts stay retryable.
"""

from datetime import datetime

from sqlalchemy.orm import Session

from neuraslide.logging import get_logger
from neuraslide.models.webhook import ProcessedEvent, WebhookProvider
from neuraslide.services.common import apply_pagination, coerce_uuid
from neuraslide.services.response import ListResponseMixin

logger = get_logger(__name__)


class ProcessedEvents(ListResponseMixin):
    @staticmethod
    def record(
        db: Session,
        *,
        provider: WebhookProvider,
        event_id: str,
        event_type: str,
        success: bool,
        action: str | None = None,
        outcome: dict | None = None,
        error: str | None = None,
        dedup_key: str | None = None,
        user_id=None,
        external_account_id: str | None = None,
        occurred_at: datetime | None = None,
    ) -> ProcessedEvent | None:
        """Append one ledger row. Write failures are logged, not raised."""
        entry = ProcessedEvent(
            provider=provider,
            event_id=str(event_id),
            dedup_key=dedup_key,
            event_type=event_type,
            user_id=coerce_uuid(user_id),
            external_account_id=external_account_id,
            success=success,
            action=action,
            outcome=outcome,
            error=error,
            occurred_at=occurred_at,
        )
        try:
            db.add(entry)
            db.commit()
        except Exception as exc:
            db.rollback()
            logger.error(
                "processed_event_record_failed provider=%s event_id=%s error=%s",
                provider.value,
                event_id,
                exc,
            )
            return None
        db.refresh(entry)
        return entry

    @staticmethod
    def find_successful(
        db: Session, provider: WebhookProvider, dedup_key: str | None
    ) -> ProcessedEvent | None:
        if not dedup_key:
            return None
        return (
            db.query(ProcessedEvent)
            .filter(ProcessedEvent.provider == provider)
            .filter(ProcessedEvent.dedup_key == dedup_key)
            .filter(ProcessedEvent.success.is_(True))
            .order_by(ProcessedEvent.created_at.asc())
            .first()
        )

    @staticmethod
    def _query(db: Session, provider: WebhookProvider, user_id=None):
        query = db.query(ProcessedEvent).filter(ProcessedEvent.provider == provider)
        if user_id:
            query = query.filter(ProcessedEvent.user_id == coerce_uuid(user_id))
        return query

    @staticmethod
    def list(
        db: Session,
        provider: WebhookProvider,
        user_id=None,
        limit: int = 50,
        offset: int = 0,
    ):
        query = ProcessedEvents._query(db, provider, user_id).order_by(
            ProcessedEvent.created_at.desc()
        )
        return apply_pagination(query, limit, offset).all()

    @staticmethod
    def count(db: Session, provider: WebhookProvider, user_id=None) -> int:
        return ProcessedEvents._query(db, provider, user_id).count()


processed_events = ProcessedEvents()
