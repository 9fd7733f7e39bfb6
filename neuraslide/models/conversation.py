import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from neuraslide.db import Base


class ConversationStatus(enum.Enum):
    active = "active"
    archived = "archived"
    closed = "closed"


class MessageDirection(enum.Enum):
    inbound = "inbound"
    outbound = "outbound"


class SenderType(enum.Enum):
    user = "user"
    business = "business"
    automation = "automation"


class MessageStatus(enum.Enum):
    pending = "pending"
    received = "received"
    sent = "sent"
    delivered = "delivered"
    read = "read"
    failed = "failed"


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "instagram_account_id",
            "external_conversation_id",
            name="uq_conversations_external",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    instagram_account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("instagram_accounts.id"), nullable=False
    )
    external_conversation_id: Mapped[str] = mapped_column(String(255), nullable=False)
    participant_id: Mapped[str] = mapped_column(String(120), nullable=False)
    participant_username: Mapped[str | None] = mapped_column(String(160))
    participant_type: Mapped[str | None] = mapped_column(String(60))
    status: Mapped[ConversationStatus] = mapped_column(
        Enum(ConversationStatus), default=ConversationStatus.active
    )
    last_message_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_message_text: Mapped[str | None] = mapped_column(Text)
    message_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), onupdate=lambda: datetime.now(UTC)
    )

    messages = relationship("Message", back_populates="conversation")
    instagram_account = relationship("InstagramAccount")


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint(
            "conversation_id", "external_message_id", name="uq_messages_external"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("conversations.id"), nullable=False, index=True
    )
    external_message_id: Mapped[str | None] = mapped_column(String(255))
    direction: Mapped[MessageDirection] = mapped_column(
        Enum(MessageDirection), default=MessageDirection.inbound
    )
    sender_type: Mapped[SenderType] = mapped_column(Enum(SenderType), default=SenderType.user)
    sender_id: Mapped[str | None] = mapped_column(String(120))
    text: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[MessageStatus] = mapped_column(
        Enum(MessageStatus), default=MessageStatus.received
    )
    automation_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("automations.id"))
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )

    conversation = relationship("Conversation", back_populates="messages")
