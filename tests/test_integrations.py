"""
Tests for the provider REST clients: error classification, retries and
response parsing. HTTP is served by httpx.MockTransport.
"""

import base64
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from app.agent.errors import AdapterError, AuthExpiredError, ToolValidationError, TransientAdapterError
from app.agent.ids import is_record_id, parse_crm_contact_id
from app.integrations import base
from app.integrations.calendar import CalendarClient, find_free_slots, parse_calendar_event
from app.integrations.gmail import GmailClient, parse_gmail_message
from app.integrations.hubspot import HubSpotClient, parse_hubspot_contact

from tests.conftest import NOW


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    monkeypatch.setattr(base, "RETRY_BACKOFF_SECONDS", 0)


def mock_http(responses, calls, base_url="https://api.test"):
    """Serve ``responses`` in order; record each request in ``calls``."""
    queue = list(responses)

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        status, body = queue.pop(0)
        return httpx.Response(status, json=body)

    return httpx.AsyncClient(base_url=base_url, transport=httpx.MockTransport(handler))


def _b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode()).decode().rstrip("=")


# ============ Error classification ============

@pytest.mark.asyncio
async def test_unauthorized_is_auth_expired_and_not_retried():
    calls = []
    client = HubSpotClient("token", http=mock_http([(401, {"message": "expired"})], calls))

    with pytest.raises(AuthExpiredError) as exc:
        await client.search_contacts("bob")

    assert exc.value.provider == "hubspot"
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_server_error_is_retried_once():
    calls = []
    client = HubSpotClient("token", http=mock_http([
        (503, {}),
        (200, {"results": [{"id": "12", "properties": {"email": "Bob@X.com", "firstname": "Bob"}}]}),
    ], calls))

    contacts = await client.search_contacts("bob")

    assert len(calls) == 2
    assert contacts[0].hubspot_id == "12"
    assert contacts[0].email == "bob@x.com"


@pytest.mark.asyncio
async def test_rate_limit_surviving_retry_is_transient():
    calls = []
    client = HubSpotClient("token", http=mock_http([(429, {}), (429, {})], calls))

    with pytest.raises(TransientAdapterError) as exc:
        await client.get_contact("12")

    assert exc.value.status_code == 429
    assert exc.value.to_dict()["type"] == "transient_error"
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_client_error_is_not_retried():
    calls = []
    client = HubSpotClient("token", http=mock_http([(404, {"message": "not found"})], calls))

    with pytest.raises(AdapterError) as exc:
        await client.get_contact("12")

    assert not isinstance(exc.value, TransientAdapterError)
    assert exc.value.status_code == 404
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_missing_token_fails_without_request():
    calls = []
    client = GmailClient(None, http=mock_http([], calls))

    with pytest.raises(AuthExpiredError):
        await client.list_messages_since(NOW)

    assert calls == []


@pytest.mark.asyncio
async def test_bearer_token_is_sent():
    calls = []
    client = HubSpotClient("secret", http=mock_http([(200, {"id": "99"})], calls))

    note_id = await client.add_note("12", "Called")

    assert note_id == "99"
    assert calls[0].headers["Authorization"] == "Bearer secret"


# ============ Gmail ============

def test_gmail_message_is_flattened():
    data = {
        "id": "m1",
        "threadId": "t1",
        "labelIds": ["INBOX"],
        "payload": {
            "headers": [
                {"name": "From", "value": "Bob <bob@x.com>"},
                {"name": "To", "value": "advisor@firm.com"},
                {"name": "Subject", "value": "Hello"},
                {"name": "Date", "value": "Wed, 14 Oct 2026 12:00:00 +0200"},
            ],
            "mimeType": "multipart/alternative",
            "parts": [
                {"mimeType": "text/plain", "body": {"data": _b64("Plain body")}},
                {"mimeType": "text/html", "body": {"data": _b64("<p>Html body</p>")}},
            ],
        },
    }

    message = parse_gmail_message(data)

    assert message.sender == "Bob <bob@x.com>"
    assert message.body == "Plain body"
    assert message.date == datetime(2026, 10, 14, 10, 0)
    assert message.is_read is True


@pytest.mark.asyncio
async def test_gmail_lists_then_fetches_each_message():
    calls = []
    full = {"id": "m1", "threadId": "t1", "snippet": "hi", "internalDate": "1791972000000", "payload": {}}
    client = GmailClient("token", http=mock_http([(200, {"messages": [{"id": "m1"}]}), (200, full)], calls))

    messages = await client.list_messages_since(NOW - timedelta(hours=1))

    assert [m.gmail_id for m in messages] == ["m1"]
    assert messages[0].body == "hi"
    assert "in:inbox" in calls[0].url.params["q"]
    assert calls[1].url.path.endswith("/users/me/messages/m1")


@pytest.mark.asyncio
async def test_gmail_walks_listing_pages_and_keeps_the_oldest():
    calls = []

    def full(gmail_id, minutes_ago):
        ms = int((NOW - timedelta(minutes=minutes_ago)).replace(tzinfo=timezone.utc).timestamp() * 1000)
        return {"id": gmail_id, "threadId": "t", "internalDate": str(ms), "payload": {}}

    client = GmailClient("token", http=mock_http([
        (200, {"messages": [{"id": "m3"}, {"id": "m2"}], "nextPageToken": "p2"}),
        (200, {"messages": [{"id": "m1"}, {"id": "m0"}]}),
        (200, full("m1", 30)),
        (200, full("m0", 40)),
    ], calls))

    messages = await client.list_messages_since(NOW - timedelta(hours=1), max_results=2)

    assert [m.gmail_id for m in messages] == ["m0", "m1"]
    assert calls[1].url.params["pageToken"] == "p2"
    assert len(calls) == 4


# ============ Calendar ============

def test_calendar_event_times_are_normalized():
    event = parse_calendar_event({
        "id": "ev1",
        "summary": "Review",
        "start": {"dateTime": "2026-10-15T14:00:00-04:00"},
        "end": {"dateTime": "2026-10-15T15:00:00-04:00"},
        "attendees": [{"email": "Client@X.com"}, {"displayName": "no email"}],
        "organizer": {"email": "Client@X.com"},
    })
    all_day = parse_calendar_event({"id": "ev2", "start": {"date": "2026-10-16"}, "end": {"date": "2026-10-17"}})

    assert event.start_time == datetime(2026, 10, 15, 18, 0)
    assert event.attendees == ["client@x.com"]
    assert event.organizer == "client@x.com"
    assert all_day.title == "(no title)"
    assert all_day.start_time == datetime(2026, 10, 16)


def test_free_slots_skip_busy_time():
    busy = [(datetime(2026, 10, 14, 10, 0), datetime(2026, 10, 14, 12, 0))]

    slots = find_free_slots(busy, NOW, duration_minutes=60, days_ahead=1, max_slots=2)

    assert slots == [
        {"start": "2026-10-14T12:00:00Z", "end": "2026-10-14T13:00:00Z"},
        {"start": "2026-10-14T12:30:00Z", "end": "2026-10-14T13:30:00Z"},
    ]


def test_free_slots_skip_weekends():
    friday_late = datetime(2026, 10, 16, 16, 0)

    slots = find_free_slots([], friday_late, duration_minutes=60, days_ahead=4, max_slots=2)

    assert [s["start"] for s in slots] == ["2026-10-16T16:00:00Z", "2026-10-19T09:00:00Z"]


@pytest.mark.asyncio
async def test_available_slots_use_free_busy():
    calls = []
    busy = {"calendars": {"primary": {"busy": [{"start": "2026-10-14T10:00:00Z", "end": "2026-10-14T16:00:00Z"}]}}}
    client = CalendarClient("token", http=mock_http([(200, busy)], calls))

    slots = await client.find_available_slots(NOW, duration_minutes=60, days_ahead=1)

    assert slots[0]["start"] == "2026-10-14T16:00:00Z"
    assert calls[0].method == "POST"


# ============ HubSpot ids ============

def test_webhook_contact_uses_object_id():
    contact = parse_hubspot_contact({"objectId": 345, "properties": {"email": "A@X.COM"}})
    assert contact.hubspot_id == "345"
    assert contact.email == "a@x.com"


def test_crm_id_parsing():
    assert parse_crm_contact_id(12345) == "12345"
    assert is_record_id("3f2b8c9e-1d4a-4b6f-9c2e-7a8b9c0d1e2f")

    with pytest.raises(ToolValidationError) as exc:
        parse_crm_contact_id("bob@x.com")
    assert "numeric" in exc.value.hint
