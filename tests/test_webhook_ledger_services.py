"""Tests for the processed-event ledger."""

from neuraslide.models.webhook import ProcessedEvent, WebhookProvider
from neuraslide.services.webhook_ledger import processed_events


def _record(db_session, event_id, success=True, provider=WebhookProvider.instagram, **kwargs):
    return processed_events.record(
        db_session,
        provider=provider,
        event_id=event_id,
        event_type="MESSAGE_RECEIVED",
        success=success,
        action="message_received" if success else "failed",
        dedup_key=f"ig:msg:{event_id}",
        **kwargs,
    )


def test_record_appends_rows(db_session):
    first = _record(db_session, "m1", success=False, error="boom")
    second = _record(db_session, "m1")
    assert first.id != second.id
    assert db_session.query(ProcessedEvent).count() == 2


def test_find_successful_ignores_failed_attempts(db_session):
    _record(db_session, "m1", success=False)
    assert processed_events.find_successful(
        db_session, WebhookProvider.instagram, "ig:msg:m1"
    ) is None

    _record(db_session, "m1")
    found = processed_events.find_successful(db_session, WebhookProvider.instagram, "ig:msg:m1")
    assert found is not None
    assert found.success is True


def test_find_successful_is_scoped_by_provider(db_session):
    _record(db_session, "m1")
    assert processed_events.find_successful(
        db_session, WebhookProvider.stripe, "ig:msg:m1"
    ) is None


def test_find_successful_without_key(db_session):
    assert processed_events.find_successful(db_session, WebhookProvider.instagram, None) is None


def test_list_response_pages_and_filters(db_session, user):
    for index in range(3):
        _record(db_session, f"m{index}", user_id=user.id)
    _record(db_session, "other")
    _record(db_session, "evt_1", provider=WebhookProvider.stripe)

    page = processed_events.list_response(
        db_session, WebhookProvider.instagram, limit=2, offset=0
    )
    assert page["total"] == 4
    assert len(page["events"]) == 2
    assert page["hasMore"] is True

    last = processed_events.list_response(
        db_session, WebhookProvider.instagram, limit=2, offset=2
    )
    assert len(last["events"]) == 2
    assert last["hasMore"] is False

    mine = processed_events.list_response(
        db_session, WebhookProvider.instagram, user_id=str(user.id), limit=10, offset=0
    )
    assert mine["total"] == 3
    assert {item.user_id for item in mine["events"]} == {user.id}


def test_list_is_newest_first(db_session):
    _record(db_session, "old")
    _record(db_session, "new")
    events = processed_events.list(db_session, WebhookProvider.instagram)
    assert [item.event_id for item in events] == ["new", "old"]
