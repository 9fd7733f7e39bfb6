"""Normalized webhook events.

Provider payloads are flattened into small typed records before any domain
logic runs. Instagram deliveries fan out into one record per ``messaging`` or
``changes`` item; Stripe deliveries map onto exactly one ``BillingEvent``.

Shapes that cannot be recognised become ``UnknownEvent`` records instead of
raising, so one bad entry never hides its siblings. ``malformed`` separates
"structurally broken" (reported as a failure) from "well-formed but not
something we act on" (acknowledged and ignored).
"""

import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from neuraslide.services.common import from_unix


class WebhookEventType(enum.Enum):
    message_received = "MESSAGE_RECEIVED"
    message_delivered = "MESSAGE_DELIVERED"
    message_read = "MESSAGE_READ"
    comment_created = "COMMENT_CREATED"
    mention_created = "MENTION_CREATED"
    story_mention = "STORY_MENTION"
    media_published = "MEDIA_PUBLISHED"
    unknown = "UNKNOWN"


class BillingEventType(enum.Enum):
    subscription_created = "customer.subscription.created"
    subscription_updated = "customer.subscription.updated"
    subscription_deleted = "customer.subscription.deleted"
    subscription_trial_will_end = "customer.subscription.trial_will_end"
    checkout_completed = "checkout.session.completed"
    invoice_created = "invoice.created"
    invoice_paid = "invoice.paid"
    invoice_payment_succeeded = "invoice.payment_succeeded"
    invoice_payment_failed = "invoice.payment_failed"
    customer_created = "customer.created"
    customer_updated = "customer.updated"
    customer_deleted = "customer.deleted"
    payment_intent_succeeded = "payment_intent.succeeded"
    payment_intent_failed = "payment_intent.payment_failed"
    unknown = "unknown"


CHANGE_FIELD_TYPES = {
    "comments": WebhookEventType.comment_created,
    "mentions": WebhookEventType.mention_created,
    "story_insights": WebhookEventType.story_mention,
    "media": WebhookEventType.media_published,
}


@dataclass
class MessagingEvent:
    event_type: WebhookEventType
    account_external_id: str
    sender_id: str
    recipient_id: str
    timestamp: datetime | None = None
    message_id: str | None = None
    text: str | None = None
    is_echo: bool = False
    mids: list[str] = field(default_factory=list)
    watermark: int | None = None
    raw: dict = field(default_factory=dict)
    fallback_id: str = field(default_factory=lambda: uuid.uuid4().hex, repr=False)

    @property
    def event_id(self) -> str:
        if self.message_id:
            return self.message_id
        if self.watermark is not None:
            return f"{self.sender_id}_{self.recipient_id}_{self.watermark}"
        return self.fallback_id

    @property
    def dedup_key(self) -> str | None:
        if self.event_type == WebhookEventType.message_received:
            return f"ig:msg:{self.message_id}" if self.message_id else None
        if self.watermark is None:
            return None
        kind = "delivery" if self.event_type == WebhookEventType.message_delivered else "read"
        return f"ig:{kind}:{self.sender_id}:{self.recipient_id}:{self.watermark}"


@dataclass
class ChangeEvent:
    event_type: WebhookEventType
    account_external_id: str
    change_field: str
    comment_id: str | None = None
    media_id: str | None = None
    parent_id: str | None = None
    text: str | None = None
    from_user_id: str | None = None
    from_username: str | None = None
    timestamp: datetime | None = None
    raw: dict = field(default_factory=dict)
    fallback_id: str = field(default_factory=lambda: uuid.uuid4().hex, repr=False)

    @property
    def event_id(self) -> str:
        return self.comment_id or self.media_id or self.fallback_id

    @property
    def dedup_key(self) -> str | None:
        if self.event_type == WebhookEventType.comment_created:
            return f"ig:comment:{self.comment_id}" if self.comment_id else None
        if self.event_type == WebhookEventType.mention_created:
            ref = self.comment_id or self.media_id
            return f"ig:mention:{ref}" if ref else None
        ref = self.media_id or self.comment_id
        return f"ig:{self.change_field}:{ref}" if ref else None


@dataclass
class UnknownEvent:
    reason: str
    account_external_id: str | None = None
    malformed: bool = False
    raw: Any = None
    event_type: WebhookEventType = WebhookEventType.unknown
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def dedup_key(self) -> None:
        return None


NormalizedEvent = MessagingEvent | ChangeEvent | UnknownEvent


def _str_id(value) -> str | None:
    if value is None or isinstance(value, (dict, list, bool)):
        return None
    text = str(value).strip()
    return text or None


def _normalize_messaging(account_id: str, item) -> NormalizedEvent:
    if not isinstance(item, dict):
        return UnknownEvent("messaging item is not an object", account_id, True, item)
    sender = item.get("sender") if isinstance(item.get("sender"), dict) else {}
    recipient = item.get("recipient") if isinstance(item.get("recipient"), dict) else {}
    sender_id = _str_id(sender.get("id"))
    recipient_id = _str_id(recipient.get("id"))
    if not sender_id or not recipient_id:
        return UnknownEvent("messaging item missing sender or recipient", account_id, True, item)
    timestamp = from_unix(item.get("timestamp"))

    if "message" in item:
        message = item["message"]
        if not isinstance(message, dict):
            return UnknownEvent("message is not an object", account_id, True, item)
        text = message.get("text")
        return MessagingEvent(
            event_type=WebhookEventType.message_received,
            account_external_id=account_id,
            sender_id=sender_id,
            recipient_id=recipient_id,
            timestamp=timestamp,
            message_id=_str_id(message.get("mid")),
            text=text if isinstance(text, str) else "",
            is_echo=bool(message.get("is_echo")),
            raw=item,
        )
    if "delivery" in item:
        delivery = item["delivery"]
        if not isinstance(delivery, dict):
            return UnknownEvent("delivery is not an object", account_id, True, item)
        mids = delivery.get("mids") if isinstance(delivery.get("mids"), list) else []
        return MessagingEvent(
            event_type=WebhookEventType.message_delivered,
            account_external_id=account_id,
            sender_id=sender_id,
            recipient_id=recipient_id,
            timestamp=timestamp,
            mids=[mid for mid in (_str_id(m) for m in mids) if mid],
            watermark=_watermark(delivery.get("watermark")),
            raw=item,
        )
    if "read" in item:
        read = item["read"]
        if not isinstance(read, dict):
            return UnknownEvent("read is not an object", account_id, True, item)
        mid = _str_id(read.get("mid"))
        return MessagingEvent(
            event_type=WebhookEventType.message_read,
            account_external_id=account_id,
            sender_id=sender_id,
            recipient_id=recipient_id,
            timestamp=timestamp,
            mids=[mid] if mid else [],
            watermark=_watermark(read.get("watermark")),
            raw=item,
        )
    return UnknownEvent("unsupported messaging item", account_id, False, item)


def _watermark(value) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return None


def _normalize_change(account_id: str, item, entry_time) -> NormalizedEvent:
    if not isinstance(item, dict):
        return UnknownEvent("change item is not an object", account_id, True, item)
    field_name = item.get("field")
    value = item.get("value")
    if not isinstance(field_name, str) or not isinstance(value, dict):
        return UnknownEvent("change item missing field or value", account_id, True, item)
    event_type = CHANGE_FIELD_TYPES.get(field_name)
    if event_type is None:
        return UnknownEvent(f"unsupported change field {field_name}", account_id, False, item)

    sender = value.get("from") if isinstance(value.get("from"), dict) else {}
    media = value.get("media") if isinstance(value.get("media"), dict) else {}
    text = value.get("text")
    event = ChangeEvent(
        event_type=event_type,
        account_external_id=account_id,
        change_field=field_name,
        comment_id=_str_id(value.get("comment_id")),
        media_id=_str_id(value.get("media_id")) or _str_id(media.get("id")),
        parent_id=_str_id(value.get("parent_id")),
        text=text if isinstance(text, str) else None,
        from_user_id=_str_id(sender.get("id")),
        from_username=_str_id(sender.get("username")),
        timestamp=from_unix(entry_time),
        raw=item,
    )
    if event_type == WebhookEventType.comment_created:
        event.comment_id = event.comment_id or _str_id(value.get("id"))
        if not event.comment_id:
            return UnknownEvent("comment change missing comment id", account_id, True, item)
    elif event_type == WebhookEventType.media_published:
        event.media_id = event.media_id or _str_id(value.get("id"))
    return event


def normalize_instagram_payload(payload: dict) -> list[NormalizedEvent]:
    """Flat-map an ``{object, entry[]}`` delivery into normalized events.

    Entries are walked in array order; within an entry ``messaging`` items
    come before ``changes`` items.
    """
    events: list[NormalizedEvent] = []
    for entry in payload.get("entry") or []:
        if not isinstance(entry, dict):
            events.append(UnknownEvent("entry is not an object", None, True, entry))
            continue
        account_id = _str_id(entry.get("id"))
        if not account_id:
            events.append(UnknownEvent("entry missing id", None, True, entry))
            continue

        messaging = entry.get("messaging")
        changes = entry.get("changes")
        if messaging is None and changes is None:
            events.append(
                UnknownEvent("entry has no messaging or changes", account_id, False, entry)
            )
            continue
        if messaging is not None:
            if isinstance(messaging, list):
                events.extend(_normalize_messaging(account_id, item) for item in messaging)
            else:
                events.append(UnknownEvent("messaging is not a list", account_id, True, entry))
        if changes is not None:
            if isinstance(changes, list):
                events.extend(
                    _normalize_change(account_id, item, entry.get("time")) for item in changes
                )
            else:
                events.append(UnknownEvent("changes is not a list", account_id, True, entry))
    return events


@dataclass
class BillingEvent:
    """One Stripe event, with the fields the reconciler reads pulled out."""

    event_id: str
    event_type: BillingEventType
    raw_type: str
    object: dict
    customer_id: str | None = None
    subscription_id: str | None = None
    invoice_id: str | None = None
    price_id: str | None = None
    status: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    trial_start: datetime | None = None
    trial_end: datetime | None = None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None
    created: datetime | None = None

    @property
    def dedup_key(self) -> str:
        return self.event_id


def _first_item(obj: dict) -> dict:
    items = obj.get("items")
    data = items.get("data") if isinstance(items, dict) else None
    if isinstance(data, list) and data and isinstance(data[0], dict):
        return data[0]
    return {}


def normalize_stripe_event(event: dict) -> BillingEvent:
    raw_type = str(event.get("type") or "")
    try:
        event_type = BillingEventType(raw_type)
    except ValueError:
        event_type = BillingEventType.unknown
    data = event.get("data") if isinstance(event.get("data"), dict) else {}
    obj = data.get("object") if isinstance(data.get("object"), dict) else {}
    event_id = _str_id(event.get("id")) or uuid.uuid4().hex

    billing = BillingEvent(
        event_id=event_id,
        event_type=event_type,
        raw_type=raw_type,
        object=obj,
        status=_str_id(obj.get("status")),
        created=from_unix(event.get("created")),
    )
    object_id = _str_id(obj.get("id"))
    object_kind = obj.get("object")

    if object_kind == "customer" or (
        raw_type.startswith("customer.") and not raw_type.startswith("customer.subscription.")
    ):
        billing.customer_id = object_id
    else:
        billing.customer_id = _str_id(obj.get("customer"))

    if object_kind == "subscription" or raw_type.startswith("customer.subscription."):
        item = _first_item(obj)
        price = item.get("price") if isinstance(item.get("price"), dict) else {}
        billing.subscription_id = object_id
        billing.price_id = _str_id(price.get("id"))
        billing.current_period_start = from_unix(
            obj.get("current_period_start") or item.get("current_period_start")
        )
        billing.current_period_end = from_unix(
            obj.get("current_period_end") or item.get("current_period_end")
        )
        billing.trial_start = from_unix(obj.get("trial_start"))
        billing.trial_end = from_unix(obj.get("trial_end"))
        billing.cancel_at_period_end = bool(obj.get("cancel_at_period_end"))
        billing.canceled_at = from_unix(obj.get("canceled_at"))
    else:
        billing.subscription_id = _str_id(obj.get("subscription"))

    if object_kind == "invoice" or raw_type.startswith("invoice."):
        billing.invoice_id = object_id
    return billing
