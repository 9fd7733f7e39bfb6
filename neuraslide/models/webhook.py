import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import JSON, Boolean, DateTime, Enum, ForeignKey, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from neuraslide.db import Base


class WebhookProvider(enum.Enum):
    instagram = "instagram"
    stripe = "stripe"


class ProcessedEvent(Base):
    """Append-only ledger row: one per processing attempt of one sub-event."""

    __tablename__ = "processed_events"
    __table_args__ = (
        Index("ix_processed_events_dedup", "provider", "dedup_key"),
        Index("ix_processed_events_user", "user_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    provider: Mapped[WebhookProvider] = mapped_column(Enum(WebhookProvider), nullable=False)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    dedup_key: Mapped[str | None] = mapped_column(String(255))
    event_type: Mapped[str] = mapped_column(String(120), nullable=False)
    user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("users.id"))
    external_account_id: Mapped[str | None] = mapped_column(String(120))
    success: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    action: Mapped[str | None] = mapped_column(String(80))
    outcome: Mapped[dict | None] = mapped_column(JSON)
    error: Mapped[str | None] = mapped_column(Text)
    occurred_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )
