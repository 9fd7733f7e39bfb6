"""Conversation resolution and message bookkeeping for Instagram DMs.

A conversation is identified by ``"{participant_id}_{business_id}"``. For an
inbound message that is ``"{sender_id}_{recipient_id}"``; echoes of our own
outbound messages swap the two so they land in the same conversation.
"""

from datetime import UTC, datetime, timedelta

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from neuraslide.logging import get_logger
from neuraslide.models.account import InstagramAccount
from neuraslide.models.conversation import (
    Conversation,
    ConversationStatus,
    Message,
    MessageDirection,
    MessageStatus,
    SenderType,
)
from neuraslide.services import instagram_api
from neuraslide.services.common import coerce_uuid
from neuraslide.services.exceptions import NotFound

logger = get_logger(__name__)

# Receipts only ever move a message forward along this order.
_STATUS_RANK = {
    MessageStatus.failed: 0,
    MessageStatus.pending: 1,
    MessageStatus.sent: 2,
    MessageStatus.received: 2,
    MessageStatus.delivered: 3,
    MessageStatus.read: 4,
}


def conversation_key(participant_id: str, business_id: str) -> str:
    return f"{participant_id}_{business_id}"


def resolve_account(db: Session, account_external_id: str) -> InstagramAccount:
    account = instagram_api.get_account_by_external_id(db, account_external_id)
    if not account:
        raise NotFound(f"Instagram account {account_external_id} not found")
    if not account.user_id:
        raise NotFound(f"Instagram account {account_external_id} has no owner")
    return account


class Conversations:
    @staticmethod
    def find(db: Session, account: InstagramAccount, participant_id: str, business_id: str):
        return (
            db.query(Conversation)
            .filter(Conversation.user_id == account.user_id)
            .filter(Conversation.instagram_account_id == account.id)
            .filter(
                Conversation.external_conversation_id
                == conversation_key(participant_id, business_id)
            )
            .first()
        )

    @staticmethod
    def resolve(
        db: Session,
        account_external_id: str,
        sender_id: str,
        recipient_id: str,
        participant_username: str | None = None,
    ) -> Conversation:
        """Find or create the conversation for a sender/recipient pair.

        Creation relies on the ``uq_conversations_external`` constraint: a
        concurrent delivery that wins the insert race makes ours fail, and we
        read back the winner's row.

        Raises:
            NotFound: unknown account or account without an owning user.
        """
        account = resolve_account(db, account_external_id)
        existing = Conversations.find(db, account, sender_id, recipient_id)
        if existing:
            return existing

        conversation = Conversation(
            user_id=account.user_id,
            instagram_account_id=account.id,
            external_conversation_id=conversation_key(sender_id, recipient_id),
            participant_id=sender_id,
            participant_username=participant_username,
            status=ConversationStatus.active,
        )
        db.add(conversation)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            existing = Conversations.find(db, account, sender_id, recipient_id)
            if not existing:
                raise
            logger.info(
                "conversation_create_race_resolved conversation_id=%s", existing.id
            )
            return existing
        db.refresh(conversation)
        logger.info(
            "conversation_created conversation_id=%s account_id=%s",
            conversation.id,
            account.id,
        )
        return conversation


class Messages:
    @staticmethod
    def find_external(db: Session, conversation_id, external_message_id: str | None):
        if not external_message_id:
            return None
        return (
            db.query(Message)
            .filter(Message.conversation_id == conversation_id)
            .filter(Message.external_message_id == external_message_id)
            .first()
        )

    @staticmethod
    def record(
        db: Session,
        conversation: Conversation,
        *,
        text: str,
        direction: MessageDirection = MessageDirection.inbound,
        sender_type: SenderType = SenderType.user,
        sender_id: str | None = None,
        external_message_id: str | None = None,
        status: MessageStatus = MessageStatus.received,
        automation_id=None,
        sent_at: datetime | None = None,
        metadata: dict | None = None,
        commit: bool = True,
    ) -> tuple[Message, bool]:
        """Store a message and bump the conversation's counters.

        Returns ``(message, created)``; a message whose external id is
        already stored is returned untouched. With ``commit=False`` the row is
        only flushed, so a later rollback discards it.
        """
        existing = Messages.find_external(db, conversation.id, external_message_id)
        if existing:
            return existing, False

        now = datetime.now(UTC)
        message = Message(
            conversation_id=conversation.id,
            external_message_id=external_message_id,
            direction=direction,
            sender_type=sender_type,
            sender_id=sender_id,
            text=text or "",
            status=status,
            automation_id=automation_id,
            sent_at=sent_at or now,
            metadata_=metadata,
        )
        db.add(message)
        db.flush()
        db.query(Conversation).filter(Conversation.id == conversation.id).update(
            {
                Conversation.message_count: Conversation.message_count + 1,
                Conversation.last_message_at: sent_at or now,
                Conversation.last_message_text: (text or "")[:1000],
            },
            synchronize_session=False,
        )
        if commit:
            db.commit()
            db.refresh(message)
        return message, True

    @staticmethod
    def count_recent(
        db: Session, conversation_id, window_minutes: int, now: datetime | None = None
    ) -> int:
        if not conversation_id:
            return 0
        since = (now or datetime.now(UTC)) - timedelta(minutes=window_minutes)
        return (
            db.query(func.count(Message.id))
            .filter(Message.conversation_id == coerce_uuid(conversation_id))
            .filter(Message.created_at >= since)
            .scalar()
            or 0
        )

    @staticmethod
    def _advance(messages, target: MessageStatus) -> int:
        changed = 0
        for message in messages:
            if _STATUS_RANK.get(message.status, 0) < _STATUS_RANK[target]:
                message.status = target
                changed += 1
        return changed

    @staticmethod
    def apply_delivery(
        db: Session,
        conversation: Conversation,
        mids: list[str],
        watermark: datetime | None,
    ) -> int:
        """Mark our outbound messages as delivered.

        Explicit ``mids`` win; without them everything sent up to the
        watermark counts as delivered.
        """
        query = (
            db.query(Message)
            .filter(Message.conversation_id == conversation.id)
            .filter(Message.direction == MessageDirection.outbound)
        )
        if mids:
            query = query.filter(Message.external_message_id.in_(mids))
        elif watermark is not None:
            query = query.filter(Message.sent_at <= watermark)
        else:
            return 0
        changed = Messages._advance(query.all(), MessageStatus.delivered)
        db.commit()
        return changed

    @staticmethod
    def apply_read(db: Session, conversation: Conversation, watermark: datetime | None) -> int:
        """Mark every outbound message sent up to the watermark as read."""
        query = (
            db.query(Message)
            .filter(Message.conversation_id == conversation.id)
            .filter(Message.direction == MessageDirection.outbound)
        )
        if watermark is not None:
            query = query.filter(Message.sent_at <= watermark)
        changed = Messages._advance(query.all(), MessageStatus.read)
        db.commit()
        return changed


conversations = Conversations()
messages = Messages()
