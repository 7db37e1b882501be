"""
Shared fixtures: in-memory database, a scripted oracle and fake adapters.
"""

import itertools
import os
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["POLL_ENABLED"] = "false"
os.environ.setdefault("OPENAI_API_KEY", "test-key")

import pytest
import pytest_asyncio

from app.agent.dispatcher import EventDispatcher
from app.agent.errors import AdapterError, OracleUnavailableError
from app.db import async_session_maker, drop_db, init_db
from app.integrations import Adapters
from app.integrations.calendar import ProviderEvent
from app.integrations.gmail import ProviderEmail
from app.integrations.hubspot import ProviderContact
from app.services import create_user
from app.services.notification_service import NotificationSink
from app.services.openai_agent_service import OracleReply, ToolCall

NOW = datetime(2026, 10, 14, 10, 0, 0)  # a Wednesday
USER_EMAIL = "advisor@firm.com"


# ============ Oracle ============

class ScriptedOracle:
    """Replays a fixed list of replies; records every history it was shown."""

    def __init__(self, replies: Optional[List[Any]] = None):
        self.replies = list(replies or [])
        self.calls: List[Dict[str, Any]] = []

    async def chat(self, messages, system="", tools=None, **kwargs) -> OracleReply:
        self.calls.append({"messages": list(messages), "system": system, "tools": tools})
        if not self.replies:
            return OracleReply(content="Nothing more to do.")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


def tool_reply(*calls, content: Optional[str] = None) -> OracleReply:
    """Build a reply proposing ``(name, arguments_json)`` tool calls."""
    return OracleReply(
        content=content,
        tool_calls=[ToolCall(id=f"call_{i}", name=name, arguments_json=args) for i, (name, args) in enumerate(calls)],
        finish_reason="tool_calls",
    )


def text_reply(content: str) -> OracleReply:
    return OracleReply(content=content, finish_reason="stop")


def quota_error() -> OracleUnavailableError:
    return OracleUnavailableError("You exceeded your current quota", reason="quota_exceeded")


# ============ Adapters ============

class FakeGmail:
    def __init__(self):
        self.messages: List[ProviderEmail] = []
        self.sent: List[Dict[str, Any]] = []
        self.fail_with: Optional[Exception] = None
        self.list_calls = 0

    def add_message(self, gmail_id: str, sender: str, subject: str = "Hello", body: str = "Hi there",
                    date: Optional[datetime] = None, thread_id: Optional[str] = None) -> ProviderEmail:
        message = ProviderEmail(
            gmail_id=gmail_id,
            thread_id=thread_id or f"thread-{gmail_id}",
            subject=subject,
            sender=sender,
            recipient=USER_EMAIL,
            body=body,
            date=date or NOW - timedelta(minutes=5),
            labels=["INBOX", "UNREAD"],
        )
        self.messages.append(message)
        return message

    async def list_messages_since(self, since: datetime, max_results: int = 20) -> List[ProviderEmail]:
        self.list_calls += 1
        if self.fail_with:
            raise self.fail_with
        found = sorted((m for m in self.messages if m.date >= since), key=lambda m: m.date)
        # Oldest page, in Gmail's newest-first listing order
        return list(reversed(found[:max_results]))

    async def send_email(self, to, subject, body, html_body=None, thread_id=None) -> Dict[str, Any]:
        if self.fail_with:
            raise self.fail_with
        self.sent.append({"to": to, "subject": subject, "body": body, "thread_id": thread_id})
        return {"id": f"sent-{len(self.sent)}", "thread_id": thread_id or f"thread-sent-{len(self.sent)}"}


class FakeCalendar:
    def __init__(self):
        self.events: List[ProviderEvent] = []
        self.created: List[ProviderEvent] = []
        self.fail_with: Optional[Exception] = None
        self._ids = itertools.count(1)

    def add_event(self, google_id: str, title: str, start: datetime, organizer: str = "client@x.com",
                  attendees: Optional[List[str]] = None) -> ProviderEvent:
        event = ProviderEvent(
            google_id=google_id,
            title=title,
            start_time=start,
            end_time=start + timedelta(hours=1),
            attendees=attendees or [organizer],
            status="confirmed",
            organizer=organizer,
        )
        self.events.append(event)
        return event

    async def list_events(self, time_min: datetime, time_max: datetime, max_results: int = 50) -> List[ProviderEvent]:
        if self.fail_with:
            raise self.fail_with
        found = [e for e in self.events if time_min <= e.start_time <= time_max]
        return sorted(found, key=lambda e: e.start_time)[:max_results]

    async def create_event(self, title, start_time, end_time, description=None, attendees=None, location=None):
        if self.fail_with:
            raise self.fail_with
        event = ProviderEvent(
            google_id=f"created-{next(self._ids)}",
            title=title,
            start_time=start_time,
            end_time=end_time,
            description=description,
            attendees=list(attendees or []),
            location=location,
            status="confirmed",
            html_link="https://calendar.google.com/event",
        )
        self.created.append(event)
        return event

    async def find_available_slots(self, now, duration_minutes=60, days_ahead=7):
        return [{"start": "2026-10-15T09:00:00Z", "end": "2026-10-15T10:00:00Z"}]


class FakeHubSpot:
    def __init__(self):
        self.contacts: Dict[str, ProviderContact] = {}
        self.notes: List[Dict[str, str]] = []
        self.fail_with: Optional[Exception] = None
        self.create_calls = 0
        self.note_fail_with: Optional[Exception] = None
        self._ids = itertools.count(501)

    def add_contact(self, email: str, first_name: str = "", last_name: str = "") -> ProviderContact:
        contact = ProviderContact(
            hubspot_id=str(next(self._ids)), email=email, first_name=first_name, last_name=last_name,
        )
        self.contacts[contact.hubspot_id] = contact
        return contact

    async def create_contact(self, email, first_name=None, last_name=None, phone=None, company=None, job_title=None):
        self.create_calls += 1
        if self.fail_with:
            raise self.fail_with
        contact = ProviderContact(
            hubspot_id=str(next(self._ids)), email=email, first_name=first_name, last_name=last_name,
            phone=phone, company=company, job_title=job_title,
        )
        self.contacts[contact.hubspot_id] = contact
        return contact

    async def get_contact(self, contact_id):
        if contact_id not in self.contacts:
            raise AdapterError(f"hubspot rejected the request (404): contact {contact_id}", provider="hubspot", status_code=404)
        return self.contacts[contact_id]

    async def add_note(self, contact_id, note) -> str:
        if self.fail_with:
            raise self.fail_with
        if self.note_fail_with:
            raise self.note_fail_with
        self.notes.append({"contact_id": contact_id, "note": note})
        return f"note-{len(self.notes)}"

    async def search_contacts(self, query, limit=10):
        q = query.lower()
        return [
            c for c in self.contacts.values()
            if q in (c.email or "").lower() or q in (c.first_name or "").lower() or q in (c.last_name or "").lower()
        ][:limit]


def make_adapters() -> Adapters:
    return Adapters(gmail=FakeGmail(), calendar=FakeCalendar(), hubspot=FakeHubSpot())


# ============ Fixtures ============

@pytest_asyncio.fixture(autouse=True)
async def setup_database():
    """Create a fresh database for each test"""
    await init_db()
    yield
    await drop_db()


@pytest_asyncio.fixture
async def db_session():
    """Get a database session"""
    async with async_session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def user(db_session):
    return await create_user(
        db_session, USER_EMAIL, name="Ada Advisor",
        google_access_token="g-token", hubspot_access_token="h-token",
    )


@pytest.fixture
def adapters():
    return make_adapters()


@pytest.fixture
def oracle():
    return ScriptedOracle()


@pytest.fixture
def notifier():
    return NotificationSink(async_session_maker)


@pytest.fixture
def dispatcher(oracle, adapters, notifier):
    return EventDispatcher(
        session_factory=async_session_maker,
        oracle=oracle,
        adapters_factory=lambda user: adapters,
        notifier=notifier,
        clock=lambda: NOW,
    )
