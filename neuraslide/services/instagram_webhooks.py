"""Instagram webhook processing.

Handles the verification handshake and signed deliveries. A delivery is
flattened into normalized events and each one is processed on its own:
failures are caught at the event boundary, the session is rolled back and
the event is reported as failed while its siblings carry on. Every attempt
lands in the processed-event ledger.
"""

import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime

from pydantic import ValidationError
from sqlalchemy.orm import Session

from neuraslide.config import settings
from neuraslide.logging import get_logger
from neuraslide.models.account import InstagramAccount
from neuraslide.models.automation import Automation
from neuraslide.models.conversation import (
    Conversation,
    MessageDirection,
    MessageStatus,
    SenderType,
)
from neuraslide.models.webhook import WebhookProvider
from neuraslide.schemas.instagram_webhook import InstagramWebhookPayload
from neuraslide.schemas.webhook import InstagramEventResult
from neuraslide.services import instagram_api
from neuraslide.services.automation_triggers import SOURCE_COMMENT, SOURCE_MESSAGE
from neuraslide.services.automations import Automations
from neuraslide.services.common import from_unix
from neuraslide.services.conversations import Conversations, Messages, resolve_account
from neuraslide.services.exceptions import InvalidPayload, InvalidSignature, NotFound
from neuraslide.services.webhook_events import (
    ChangeEvent,
    MessagingEvent,
    NormalizedEvent,
    UnknownEvent,
    WebhookEventType,
    normalize_instagram_payload,
)
from neuraslide.services.webhook_ledger import ProcessedEvents
from neuraslide.services.webhook_signatures import verify_instagram_signature

logger = get_logger(__name__)


def verify_subscription(mode: str | None, token: str | None, challenge: str | None) -> str | None:
    """Answer Meta's ``hub.*`` handshake: the challenge on success, else None."""
    expected = settings.instagram_webhook_verify_token
    if mode == "subscribe" and expected and token == expected:
        logger.info("instagram_webhook_verified")
        return challenge
    logger.warning("instagram_webhook_verification_failed mode=%s", mode)
    return None


def parse_delivery(body: bytes, signature: str | None) -> dict:
    """Verify and decode a delivery.

    Raises:
        InvalidSignature: signature missing, wrong, or no app secret set.
        InvalidPayload: body is not JSON or not an ``instagram`` envelope.
    """
    if not verify_instagram_signature(body, signature, settings.instagram_app_secret):
        raise InvalidSignature("Invalid webhook signature")
    try:
        payload = json.loads(body)
    except (ValueError, UnicodeDecodeError) as exc:
        raise InvalidPayload("Invalid JSON payload") from exc
    if not isinstance(payload, dict):
        raise InvalidPayload("Invalid webhook payload")
    try:
        InstagramWebhookPayload.model_validate(payload)
    except ValidationError as exc:
        raise InvalidPayload("Invalid webhook payload structure") from exc
    return payload


@dataclass
class _Outcome:
    action: str
    user_id: uuid.UUID | None = None
    automation_triggered: bool = False
    response_generated: bool = False
    details: dict = field(default_factory=dict)
    error: str | None = None


def _summarize(outcome: _Outcome, executions) -> _Outcome:
    outcome.automation_triggered = bool(executions)
    outcome.response_generated = any(item.response_generated for item in executions)
    outcome.details["executions"] = [
        {
            "automationId": item.automation_id,
            "success": item.success,
            "status": item.status,
            "responseTimeMs": item.response_time_ms,
            "error": item.error,
        }
        for item in executions
    ]
    failed = [item.error for item in executions if not item.success and item.error]
    if failed:
        outcome.error = "; ".join(failed)
    return outcome


def _dm_deliverer(db: Session, conversation: Conversation, account: InstagramAccount):
    # No DM send API is wired in; replies wait as PENDING outbound messages.
    def deliver(automation: Automation, text: str) -> None:
        Messages.record(
            db,
            conversation,
            text=text,
            direction=MessageDirection.outbound,
            sender_type=SenderType.automation,
            sender_id=account.ig_user_id,
            status=MessageStatus.pending,
            automation_id=automation.id,
            metadata={"automationId": str(automation.id)},
        )

    return deliver


def _comment_deliverer(account: InstagramAccount, comment_id: str):
    def deliver(automation: Automation, text: str) -> None:
        instagram_api.reply_to_comment(account, comment_id, text)

    return deliver


def handle_message(db: Session, event: MessagingEvent) -> _Outcome:
    account = resolve_account(db, event.account_external_id)
    user_id = account.user_id
    if event.is_echo or event.sender_id == account.ig_user_id:
        conversation = Conversations.resolve(
            db, event.account_external_id, event.recipient_id, event.sender_id
        )
        Messages.record(
            db,
            conversation,
            text=event.text or "",
            direction=MessageDirection.outbound,
            sender_type=SenderType.business,
            sender_id=event.sender_id,
            external_message_id=event.message_id,
            status=MessageStatus.sent,
            sent_at=event.timestamp,
        )
        return _Outcome(
            "echo_stored", user_id, details={"conversationId": str(conversation.id)}
        )

    conversation = Conversations.resolve(
        db, event.account_external_id, event.sender_id, event.recipient_id
    )
    message, created = Messages.record(
        db,
        conversation,
        text=event.text or "",
        direction=MessageDirection.inbound,
        sender_type=SenderType.user,
        sender_id=event.sender_id,
        external_message_id=event.message_id,
        status=MessageStatus.received,
        sent_at=event.timestamp,
        commit=False,
    )
    details = {"conversationId": str(conversation.id), "messageId": str(message.id)}
    if not created:
        return _Outcome("message_exists", user_id, details=details)

    context = {
        "userId": str(user_id),
        "conversationId": str(conversation.id),
        "senderId": event.sender_id,
        "recipientId": event.recipient_id,
        "messageId": event.message_id,
        "text": event.text or "",
    }
    if conversation.participant_type:
        context["userType"] = conversation.participant_type
    executions = Automations.run(
        db,
        user_id,
        event.text or "",
        context,
        SOURCE_MESSAGE,
        _dm_deliverer(db, conversation, account),
    )
    return _summarize(_Outcome("message_received", user_id, details=details), executions)


def handle_receipt(db: Session, event: MessagingEvent) -> _Outcome:
    account = resolve_account(db, event.account_external_id)
    conversation = Conversations.find(db, account, event.sender_id, event.recipient_id)
    if not conversation:
        return _Outcome("no_conversation", account.user_id)
    watermark = from_unix(event.watermark)
    if event.event_type == WebhookEventType.message_delivered:
        changed = Messages.apply_delivery(db, conversation, event.mids, watermark)
        action = "delivery_recorded"
    else:
        changed = Messages.apply_read(db, conversation, watermark)
        action = "read_recorded"
    return _Outcome(
        action,
        account.user_id,
        details={"conversationId": str(conversation.id), "messagesUpdated": changed},
    )


def handle_comment(db: Session, event: ChangeEvent) -> _Outcome:
    account = resolve_account(db, event.account_external_id)
    user_id = account.user_id
    if event.from_user_id and event.from_user_id == account.ig_user_id:
        # Our own replies come back as comment webhooks.
        return _Outcome("own_comment_ignored", user_id)

    context = {
        "userId": str(user_id),
        "commentId": event.comment_id,
        "mediaId": event.media_id,
        "fromUserId": event.from_user_id,
        "username": event.from_username,
        "text": event.text or "",
    }
    executions = Automations.run(
        db,
        user_id,
        event.text or "",
        context,
        SOURCE_COMMENT,
        _comment_deliverer(account, event.comment_id),
    )
    return _summarize(
        _Outcome("comment_received", user_id, details={"commentId": event.comment_id}),
        executions,
    )


def handle_acknowledged(db: Session, event: ChangeEvent) -> _Outcome:
    account = resolve_account(db, event.account_external_id)
    logger.info(
        "instagram_change_acknowledged field=%s account_id=%s media_id=%s",
        event.change_field,
        account.id,
        event.media_id,
    )
    return _Outcome(
        "acknowledged",
        account.user_id,
        details={"mediaId": event.media_id, "commentId": event.comment_id},
    )


HANDLERS = {
    WebhookEventType.message_received: handle_message,
    WebhookEventType.message_delivered: handle_receipt,
    WebhookEventType.message_read: handle_receipt,
    WebhookEventType.comment_created: handle_comment,
    WebhookEventType.mention_created: handle_acknowledged,
    WebhookEventType.story_mention: handle_acknowledged,
    WebhookEventType.media_published: handle_acknowledged,
}


def process_event(db: Session, event: NormalizedEvent) -> InstagramEventResult:
    """Process one normalized event. Never raises."""
    result = InstagramEventResult(
        event_id=event.event_id, event_type=event.event_type.value, success=False
    )
    started = time.perf_counter()

    if isinstance(event, UnknownEvent):
        outcome = _Outcome("ignored" if not event.malformed else "malformed")
        result.success = not event.malformed
        result.error = event.reason if event.malformed else None
        if event.malformed:
            logger.warning(
                "instagram_webhook_event_malformed account=%s reason=%s",
                event.account_external_id,
                event.reason,
            )
    elif ProcessedEvents.find_successful(db, WebhookProvider.instagram, event.dedup_key):
        outcome = _Outcome("duplicate")
        result.success = True
        result.duplicate = True
        logger.info(
            "instagram_webhook_event_duplicate event_id=%s dedup_key=%s",
            event.event_id,
            event.dedup_key,
        )
    else:
        try:
            outcome = HANDLERS[event.event_type](db, event)
            result.success = True
            result.automation_triggered = outcome.automation_triggered
            result.response_generated = outcome.response_generated
            result.error = outcome.error
        except NotFound as exc:
            db.rollback()
            outcome = _Outcome("account_not_found", error=str(exc))
            result.error = str(exc)
            logger.warning(
                "instagram_webhook_account_unresolved account=%s error=%s",
                event.account_external_id,
                exc,
            )
        except Exception as exc:
            db.rollback()
            outcome = _Outcome("failed", error=str(exc))
            result.error = str(exc) or exc.__class__.__name__
            logger.exception(
                "instagram_webhook_event_failed event_id=%s event_type=%s",
                event.event_id,
                event.event_type.value,
            )

    ProcessedEvents.record(
        db,
        provider=WebhookProvider.instagram,
        event_id=event.event_id,
        event_type=event.event_type.value,
        success=result.success,
        action=outcome.action,
        outcome={
            **result.public(),
            "details": outcome.details,
            "processingTimeMs": round((time.perf_counter() - started) * 1000, 3),
        },
        error=result.error,
        dedup_key=event.dedup_key,
        user_id=outcome.user_id,
        external_account_id=event.account_external_id,
        occurred_at=getattr(event, "timestamp", None) or datetime.now(UTC),
    )
    return result


def process_payload(db: Session, payload: dict) -> list[InstagramEventResult]:
    """Process every event in a delivery, in array order."""
    events = normalize_instagram_payload(payload)
    results = [process_event(db, event) for event in events]
    logger.info(
        "instagram_webhook_processed events=%s failed=%s",
        len(results),
        sum(1 for item in results if not item.success),
    )
    return results


def build_test_payload(
    account_external_id: str,
    sender_id: str = "test_sender_id",
    text: str = "This is a test message from webhook test endpoint",
) -> dict:
    now_ms = int(time.time() * 1000)
    return {
        "object": "instagram",
        "entry": [
            {
                "id": account_external_id,
                "time": now_ms,
                "messaging": [
                    {
                        "sender": {"id": sender_id},
                        "recipient": {"id": account_external_id},
                        "timestamp": now_ms,
                        "message": {"mid": f"test_{now_ms}", "text": text},
                    }
                ],
            }
        ],
    }
