from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from neuraslide.models.webhook import WebhookProvider


class WebhookProcessingResult(BaseModel):
    """Uniform outcome of reconciling one provider event."""

    success: bool
    action: str
    details: dict | None = None
    error: str | None = None


class InstagramEventResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    event_id: str = Field(alias="eventId")
    event_type: str = Field(alias="eventType")
    success: bool
    automation_triggered: bool = Field(default=False, alias="automationTriggered")
    response_generated: bool = Field(default=False, alias="responseGenerated")
    duplicate: bool = False
    error: str | None = None

    def public(self) -> dict:
        return self.model_dump(by_alias=True)


class InstagramWebhookData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    events_processed: int = Field(alias="eventsProcessed")
    results: list[dict]


class StripeWebhookData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    event_id: str = Field(alias="eventId")
    event_type: str = Field(alias="eventType")
    processed: bool
    action: str
    duplicate: bool = False
    error: str | None = None


class ProcessedEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    provider: WebhookProvider
    event_id: str
    dedup_key: str | None = None
    event_type: str
    user_id: UUID | None = None
    external_account_id: str | None = None
    success: bool
    action: str | None = None
    outcome: dict | None = None
    error: str | None = None
    occurred_at: datetime | None = None
    created_at: datetime


class ProcessedEventList(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    events: list[ProcessedEventRead]
    total: int
    has_more: bool = Field(alias="hasMore")
