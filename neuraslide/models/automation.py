import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import JSON, Boolean, DateTime, Enum, Float, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from neuraslide.db import Base


class AutomationStatus(enum.Enum):
    draft = "draft"
    active = "active"
    inactive = "inactive"


class AutomationPriority(enum.Enum):
    low = "low"
    medium = "medium"
    high = "high"
    urgent = "urgent"


PRIORITY_RANK = {
    AutomationPriority.urgent: 4,
    AutomationPriority.high: 3,
    AutomationPriority.medium: 2,
    AutomationPriority.low: 1,
}


class Automation(Base):
    """Tenant rule pairing one trigger with one response.

    ``trigger`` and ``response`` hold tagged JSON objects (see
    ``neuraslide.schemas.automation``). The performance columns are running
    aggregates maintained with single UPDATE statements.
    """

    __tablename__ = "automations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(160), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    trigger: Mapped[dict] = mapped_column(JSON, nullable=False)
    response: Mapped[dict] = mapped_column(JSON, nullable=False)
    context: Mapped[dict | None] = mapped_column(JSON)
    status: Mapped[AutomationStatus] = mapped_column(
        Enum(AutomationStatus), default=AutomationStatus.draft
    )
    priority: Mapped[AutomationPriority] = mapped_column(
        Enum(AutomationPriority), default=AutomationPriority.medium
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=False)

    total_triggers: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    successful_responses: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_responses: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    average_response_time: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    success_rate: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    last_triggered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), onupdate=lambda: datetime.now(UTC)
    )

    user = relationship("User")

    @property
    def performance(self) -> dict:
        return {
            "totalTriggers": self.total_triggers or 0,
            "successfulResponses": self.successful_responses or 0,
            "failedResponses": self.failed_responses or 0,
            "averageResponseTime": self.average_response_time or 0.0,
            "successRate": self.success_rate or 0.0,
            "lastTriggeredAt": (
                self.last_triggered_at.isoformat() if self.last_triggered_at else None
            ),
        }
