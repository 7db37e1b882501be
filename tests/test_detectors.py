"""
Tests for the event detectors and the HubSpot contact ingestion.
"""

import re
from datetime import timedelta, timezone

import httpx
import pytest
from sqlalchemy import select

from app.agent.detectors import CalendarDetector, EmailDetector, ingest_crm_contact
from app.agent.errors import AuthExpiredError, DuplicateEventError, TransientAdapterError
from app.db import CalendarEvent, Contact, Email, Notification, NotificationType, TriggerType
from app.config import settings
from app.integrations.gmail import GmailClient

from tests.conftest import NOW, USER_EMAIL


# ============ Email ============

@pytest.mark.asyncio
async def test_new_emails_are_stored_and_emitted_oldest_first(db_session, user, adapters):
    adapters.gmail.add_message("m-late", "b@x.com", date=NOW - timedelta(minutes=1))
    adapters.gmail.add_message("m-early", "a@x.com", date=NOW - timedelta(minutes=30))

    events = await EmailDetector(db_session, adapters.gmail).detect(user, NOW)

    assert [e.source_id for e in events] == ["m-early", "m-late"]
    assert all(e.trigger_type == TriggerType.NEW_EMAIL for e in events)
    assert events[0].event_ref == "new_email:m-early"
    stored = await db_session.execute(select(Email.gmail_id))
    assert sorted(stored.scalars().all()) == ["m-early", "m-late"]


@pytest.mark.asyncio
async def test_second_pass_emits_nothing(db_session, user, adapters):
    adapters.gmail.add_message("m-1", "a@x.com")
    detector = EmailDetector(db_session, adapters.gmail)

    first = await detector.detect(user, NOW)
    second = await detector.detect(user, NOW)

    assert len(first) == 1
    assert second == []


@pytest.mark.asyncio
async def test_watermark_starts_at_lookback_then_follows_newest_email(db_session, user, adapters):
    detector = EmailDetector(db_session, adapters.gmail)
    assert await detector.watermark(user.id, NOW) == NOW - timedelta(hours=24)

    adapters.gmail.add_message("m-1", "a@x.com", date=NOW - timedelta(minutes=10))
    await detector.detect(user, NOW)

    assert await detector.watermark(user.id, NOW) == NOW - timedelta(minutes=10)


@pytest.mark.asyncio
async def test_page_size_caps_a_cycle(db_session, user, adapters):
    for i in range(5):
        adapters.gmail.add_message(f"m-{i}", "a@x.com", date=NOW - timedelta(minutes=50 - i))

    events = await EmailDetector(db_session, adapters.gmail, page_size=2).detect(user, NOW)
    rest = await EmailDetector(db_session, adapters.gmail, page_size=10).detect(user, NOW)

    assert [e.source_id for e in events] == ["m-0", "m-1"]
    assert [e.source_id for e in rest] == ["m-2", "m-3", "m-4"]


class NewestFirstGmail:
    """Gmail REST double: listings are newest first and paged by token."""

    def __init__(self, dates):
        self.dates = dates
        self.listings = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/users/me/messages"):
            self.listings += 1
            after = int(re.search(r"after:(\d+)", request.url.params["q"]).group(1))
            newest_first = sorted(
                (gid for gid, dt in self.dates.items() if self._epoch(dt) > after),
                key=lambda gid: self.dates[gid], reverse=True,
            )
            start = int(request.url.params.get("pageToken", 0))
            size = int(request.url.params["maxResults"])
            body = {"messages": [{"id": gid} for gid in newest_first[start:start + size]]}
            if start + size < len(newest_first):
                body["nextPageToken"] = str(start + size)
            return httpx.Response(200, json=body)
        gmail_id = request.url.path.rsplit("/", 1)[-1]
        return httpx.Response(200, json={
            "id": gmail_id,
            "threadId": f"thread-{gmail_id}",
            "internalDate": str(self._epoch(self.dates[gmail_id]) * 1000),
            "payload": {"headers": [{"name": "From", "value": "a@x.com"}]},
        })

    @staticmethod
    def _epoch(dt):
        return int(dt.replace(tzinfo=timezone.utc).timestamp())


@pytest.mark.asyncio
async def test_backlog_larger_than_a_page_is_drained_oldest_first(db_session, user, monkeypatch):
    monkeypatch.setattr(settings, "gmail_list_page_size", 2)
    provider = NewestFirstGmail({f"m{i}": NOW - timedelta(minutes=50 - 10 * i) for i in range(5)})
    http = httpx.AsyncClient(base_url="https://api.test", transport=httpx.MockTransport(provider.handler))
    detector = EmailDetector(db_session, GmailClient("token", http=http), page_size=2)

    emitted = []
    for _ in range(4):
        emitted.extend(e.source_id for e in await detector.detect(user, NOW))

    assert emitted == ["m0", "m1", "m2", "m3", "m4"]
    stored = await db_session.execute(select(Email.gmail_id))
    assert sorted(stored.scalars().all()) == ["m0", "m1", "m2", "m3", "m4"]


@pytest.mark.asyncio
async def test_reply_also_emits_email_response(db_session, user, adapters):
    adapters.gmail.add_message("m-orig", "a@x.com", subject="Meeting", thread_id="t-1",
                               date=NOW - timedelta(minutes=20))
    detector = EmailDetector(db_session, adapters.gmail)
    await detector.detect(user, NOW)

    adapters.gmail.add_message("m-reply", "a@x.com", subject="Thursday works", thread_id="t-1")
    events = await detector.detect(user, NOW)

    assert [e.trigger_type for e in events] == [TriggerType.NEW_EMAIL, TriggerType.EMAIL_RESPONSE]
    assert {e.source_id for e in events} == {"m-reply"}


@pytest.mark.asyncio
async def test_duplicate_ingest_raises(db_session, user, adapters):
    message = adapters.gmail.add_message("m-1", "a@x.com")
    detector = EmailDetector(db_session, adapters.gmail)
    await detector.ingest(user, message)

    with pytest.raises(DuplicateEventError):
        await detector.ingest(user, message)


@pytest.mark.asyncio
async def test_self_sent_email_is_stored_without_event(db_session, user, adapters):
    adapters.gmail.add_message("m-self", f"Me <{USER_EMAIL}>")

    events = await EmailDetector(db_session, adapters.gmail).detect(user, NOW)

    assert events == []
    stored = await db_session.execute(select(Email).where(Email.gmail_id == "m-self"))
    assert stored.scalar_one() is not None


@pytest.mark.asyncio
async def test_expired_google_credentials_notify_once(db_session, user, adapters, notifier):
    adapters.gmail.fail_with = AuthExpiredError("google")
    detector = EmailDetector(db_session, adapters.gmail, notifier)

    assert await detector.detect(user, NOW) == []
    await notifier.flush()
    assert await detector.detect(user, NOW) == []
    await notifier.flush()

    result = await db_session.execute(select(Notification).where(Notification.user_id == user.id))
    notifications = result.scalars().all()
    assert len(notifications) == 1
    assert notifications[0].type == NotificationType.GOOGLE_TOKEN_EXPIRED.value
    assert notifications[0].dedupe_key == "auth:google"


@pytest.mark.asyncio
async def test_transient_failure_yields_no_events(db_session, user, adapters, notifier):
    adapters.gmail.fail_with = TransientAdapterError("google returned 503", provider="google", status_code=503)

    events = await EmailDetector(db_session, adapters.gmail, notifier).detect(user, NOW)
    await notifier.flush()

    assert events == []
    assert notifier.written == 0


# ============ Calendar ============

@pytest.mark.asyncio
async def test_calendar_events_in_window_are_emitted(db_session, user, adapters):
    adapters.calendar.add_event("ev-1", "Intro call", NOW + timedelta(days=1), attendees=["client@x.com", USER_EMAIL])
    adapters.calendar.add_event("ev-far", "Next month", NOW + timedelta(days=30))

    events = await CalendarDetector(db_session, adapters.calendar).detect(user, NOW)

    assert [e.source_id for e in events] == ["ev-1"]
    event = events[0]
    assert event.trigger_type == TriggerType.NEW_CALENDAR_EVENT
    assert event.payload["title"] == "Intro call"
    assert event.payload["attendees"] == ["client@x.com", USER_EMAIL]
    assert event.originator == "client@x.com"

    again = await CalendarDetector(db_session, adapters.calendar).detect(user, NOW)
    assert again == []


@pytest.mark.asyncio
async def test_calendar_event_organized_by_user_is_suppressed(db_session, user, adapters):
    adapters.calendar.add_event("ev-own", "My meeting", NOW + timedelta(hours=3), organizer=USER_EMAIL)

    events = await CalendarDetector(db_session, adapters.calendar).detect(user, NOW)

    assert events == []
    stored = await db_session.execute(select(CalendarEvent).where(CalendarEvent.google_id == "ev-own"))
    assert stored.scalar_one().organizer == USER_EMAIL


# ============ HubSpot ============

@pytest.mark.asyncio
async def test_new_crm_contact_is_mirrored_once(db_session, user):
    contact = {"hubspot_id": "777", "email": "lead@x.com", "first_name": "Lee", "company": "Acme"}

    event = await ingest_crm_contact(db_session, user, TriggerType.NEW_CONTACT, contact)

    assert event.source_id == "777"
    assert event.payload["hubspot_id"] == "777"
    assert event.originator == "lead@x.com"
    assert event.originator_name == "Lee"
    stored = await db_session.execute(select(Contact).where(Contact.hubspot_id == "777"))
    assert stored.scalar_one().company == "Acme"

    with pytest.raises(DuplicateEventError):
        await ingest_crm_contact(db_session, user, TriggerType.NEW_CONTACT, contact)


@pytest.mark.asyncio
async def test_crm_update_refreshes_mirror_and_keys_on_time(db_session, user):
    await ingest_crm_contact(db_session, user, TriggerType.NEW_CONTACT, {"hubspot_id": "778", "email": "u@x.com"})

    event = await ingest_crm_contact(
        db_session, user, TriggerType.CRM_UPDATE,
        {"hubspot_id": "778", "job_title": "CFO", "occurred_at": "1760000000000"},
    )

    assert event.trigger_type == TriggerType.CRM_UPDATE
    assert event.source_id == "778@1760000000000"
    stored = await db_session.execute(select(Contact).where(Contact.hubspot_id == "778"))
    contact = stored.scalar_one()
    assert contact.job_title == "CFO"
    assert contact.email == "u@x.com"


@pytest.mark.asyncio
async def test_crm_contact_for_user_yields_no_event(db_session, user):
    event = await ingest_crm_contact(
        db_session, user, TriggerType.NEW_CONTACT, {"hubspot_id": "779", "email": USER_EMAIL},
    )
    assert event is None
