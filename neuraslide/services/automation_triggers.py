"""Trigger predicates for automations.

Each predicate takes the parsed trigger config, the inbound text and the
request context. ``now`` is injectable so time windows can be tested.
"""

from datetime import UTC, datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.orm import Session

from neuraslide.logging import get_logger
from neuraslide.schemas.automation import (
    CommentReceivedTrigger,
    IntentTrigger,
    KeywordTrigger,
    MessageCountTrigger,
    MessageReceivedTrigger,
    TimeTrigger,
    UserTypeTrigger,
)
from neuraslide.services.conversations import Messages

logger = get_logger(__name__)

SOURCE_MESSAGE = "message"
SOURCE_COMMENT = "comment"


def check_keyword(trigger: KeywordTrigger, text: str) -> bool:
    message = text or ""
    if not trigger.case_sensitive:
        message = message.lower()
    for keyword in trigger.keywords:
        candidate = keyword if trigger.case_sensitive else keyword.lower()
        if trigger.match_type == "exact" and message == candidate:
            return True
        if trigger.match_type == "contains" and candidate in message:
            return True
        if trigger.match_type == "starts_with" and message.startswith(candidate):
            return True
        if trigger.match_type == "ends_with" and message.endswith(candidate):
            return True
    return False


def check_intent(trigger: IntentTrigger, text: str) -> bool:
    # Plain substring match; there is no intent classifier behind this.
    message = (text or "").lower()
    return any(intent.lower() in message for intent in trigger.intents if intent)


def _minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def check_time(trigger: TimeTrigger, now: datetime | None = None) -> bool:
    try:
        tz = ZoneInfo(trigger.timezone or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("automation_trigger_bad_timezone timezone=%s", trigger.timezone)
        return False
    current = (now or datetime.now(UTC)).astimezone(tz)
    # isoweekday() is already 1=Monday .. 7=Sunday.
    if current.isoweekday() not in trigger.days_of_week:
        return False
    minute_of_day = current.hour * 60 + current.minute
    return (
        _minutes(trigger.time_range.start)
        <= minute_of_day
        <= _minutes(trigger.time_range.end)
    )


def check_user_type(trigger: UserTypeTrigger, context: dict) -> bool:
    user_type = context.get("userType") or "unknown"
    return user_type in trigger.user_types


def check_message_count(
    db: Session,
    trigger: MessageCountTrigger,
    context: dict,
    now: datetime | None = None,
) -> bool:
    conversation_id = context.get("conversationId")
    if not conversation_id:
        return False
    try:
        count = Messages.count_recent(db, conversation_id, trigger.time_window, now=now)
    except Exception as exc:
        logger.error(
            "automation_trigger_message_count_failed conversation_id=%s error=%s",
            conversation_id,
            exc,
        )
        return False
    return count >= trigger.count


def evaluate(
    db: Session,
    trigger,
    text: str,
    context: dict,
    source: str = SOURCE_MESSAGE,
    now: datetime | None = None,
) -> bool:
    """Return True when ``trigger`` fires for this inbound message or comment."""
    if isinstance(trigger, MessageReceivedTrigger):
        return source == SOURCE_MESSAGE
    if isinstance(trigger, CommentReceivedTrigger):
        return source == SOURCE_COMMENT
    if isinstance(trigger, KeywordTrigger):
        return check_keyword(trigger, text)
    if isinstance(trigger, IntentTrigger):
        return check_intent(trigger, text)
    if isinstance(trigger, TimeTrigger):
        return check_time(trigger, now)
    if isinstance(trigger, UserTypeTrigger):
        return check_user_type(trigger, context)
    if isinstance(trigger, MessageCountTrigger):
        if source != SOURCE_MESSAGE:
            return False
        return check_message_count(db, trigger, context, now)
    return False
