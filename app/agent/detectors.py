"""
Event detectors: turn provider state into InboundEvents.

An item is new only if no stored record carries its provider id
(Email.gmail_id, CalendarEvent.google_id, Contact.hubspot_id). Detectors
persist the record before emitting the event, so the stored record is the
watermark: a crash between fetch and persist just refetches the item next
cycle, and a second pass over the same provider state emits nothing.

Provider failures yield zero events for the user this cycle. Expired
credentials additionally raise a (debounced) reconnect notification.
"""

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.agent.errors import AdapterError, AuthExpiredError, DuplicateEventError
from app.agent.events import InboundEvent, is_self_originated
from app.config import settings
from app.db.models import (
    CalendarEvent, Contact, Email, NotificationSeverity, NotificationType, TriggerType, User,
)

logger = logging.getLogger(__name__)


def notify_auth_expired(notifier, user_id: str, error: AuthExpiredError):
    if notifier is None:
        return
    if error.provider == "hubspot":
        ntype, title, provider = NotificationType.HUBSPOT_TOKEN_EXPIRED, "HubSpot Connection Expired", "HubSpot"
    else:
        ntype, title, provider = NotificationType.GOOGLE_TOKEN_EXPIRED, "Google Connection Expired", "Google"
    notifier.emit(
        user_id, ntype, title,
        f"Your {provider} connection has expired. Please reconnect {provider} so the agent can keep working.",
        NotificationSeverity.ERROR,
        metadata={"provider": error.provider, "status_code": error.status_code},
        dedupe_key=f"auth:{error.provider}",
    )


class EmailDetector:
    """Polls Gmail for inbox messages newer than the stored watermark."""

    def __init__(self, db: AsyncSession, gmail, notifier=None, page_size: Optional[int] = None):
        self.db = db
        self.gmail = gmail
        self.notifier = notifier
        self.page_size = page_size or settings.detector_page_size

    async def watermark(self, user_id: str, now: datetime) -> datetime:
        """Date of the newest stored email, or the initial lookback."""
        result = await self.db.execute(select(func.max(Email.date)).where(Email.user_id == user_id))
        latest = result.scalar()
        return latest or now - timedelta(hours=settings.initial_lookback_hours)

    async def detect(self, user: User, now: Optional[datetime] = None) -> List[InboundEvent]:
        now = now or datetime.utcnow()
        since = await self.watermark(user.id, now)
        try:
            messages = await self.gmail.list_messages_since(since, max_results=self.page_size)
        except AuthExpiredError as e:
            logger.warning(f"[DETECT] Gmail credentials expired for {user.id}")
            notify_auth_expired(self.notifier, user.id, e)
            return []
        except AdapterError as e:
            logger.warning(f"[DETECT] Gmail poll failed for {user.id}: {e.message}")
            return []

        events: List[InboundEvent] = []
        for message in sorted(messages, key=lambda m: m.date)[: self.page_size]:
            try:
                events.extend(await self.ingest(user, message))
            except DuplicateEventError:
                continue

        if not events:
            logger.info(f"[DETECT] No new emails for {user.id} since {since.isoformat()}")
        else:
            logger.info(f"[DETECT] {len(events)} new email event(s) for {user.id}")
        return events

    async def ingest(self, user: User, message) -> List[InboundEvent]:
        """
        Materialize one provider message and return its events.

        Raises DuplicateEventError when the message is already stored.
        Self-sent mail is stored (so it counts as seen) but yields no event.
        """
        existing = await self.db.execute(select(Email.id).where(Email.gmail_id == message.gmail_id))
        if existing.scalar_one_or_none() is not None:
            raise DuplicateEventError(TriggerType.NEW_EMAIL.value, message.gmail_id)

        is_reply = await self._is_reply(user.id, message)
        self.db.add(Email(
            user_id=user.id,
            gmail_id=message.gmail_id,
            thread_id=message.thread_id,
            subject=message.subject,
            sender=message.sender,
            recipient=message.recipient,
            body=message.body,
            date=message.date,
            labels_json=json.dumps(message.labels),
            is_read=message.is_read,
        ))
        try:
            await self.db.commit()
        except IntegrityError:
            # Another cycle stored it between the check and the insert
            await self.db.rollback()
            raise DuplicateEventError(TriggerType.NEW_EMAIL.value, message.gmail_id)

        payload = {
            "sender": message.sender,
            "recipient": message.recipient,
            "subject": message.subject,
            "body": message.body,
            "thread_id": message.thread_id,
            "date": message.date.isoformat(),
        }
        event = InboundEvent(
            trigger_type=TriggerType.NEW_EMAIL,
            source_id=message.gmail_id,
            payload=payload,
            user_id=user.id,
            occurred_at=message.date,
        )
        if is_self_originated(event, user.email):
            logger.info(f"[DETECT] Ignoring self-sent email {message.gmail_id}")
            return []

        events = [event]
        if is_reply:
            events.append(InboundEvent(
                trigger_type=TriggerType.EMAIL_RESPONSE,
                source_id=message.gmail_id,
                payload=payload,
                user_id=user.id,
                occurred_at=message.date,
            ))
        return events

    async def _is_reply(self, user_id: str, message) -> bool:
        if (message.subject or "").lower().startswith("re:"):
            return True
        if not message.thread_id:
            return False
        result = await self.db.execute(
            select(Email.id).where(Email.user_id == user_id, Email.thread_id == message.thread_id).limit(1)
        )
        return result.scalar_one_or_none() is not None


class CalendarDetector:
    """Scans the upcoming calendar window for events not yet stored."""

    def __init__(self, db: AsyncSession, calendar, notifier=None, page_size: Optional[int] = None):
        self.db = db
        self.calendar = calendar
        self.notifier = notifier
        self.page_size = page_size or settings.detector_page_size

    async def detect(self, user: User, now: Optional[datetime] = None) -> List[InboundEvent]:
        now = now or datetime.utcnow()
        window_end = now + timedelta(days=settings.calendar_lookahead_days)
        try:
            provider_events = await self.calendar.list_events(now, window_end, max_results=100)
        except AuthExpiredError as e:
            logger.warning(f"[DETECT] Calendar credentials expired for {user.id}")
            notify_auth_expired(self.notifier, user.id, e)
            return []
        except AdapterError as e:
            logger.warning(f"[DETECT] Calendar poll failed for {user.id}: {e.message}")
            return []

        events: List[InboundEvent] = []
        for pe in sorted(provider_events, key=lambda e: e.start_time):
            if len(events) >= self.page_size:
                break
            try:
                event = await self.ingest(user, pe)
            except DuplicateEventError:
                continue
            if event is not None:
                events.append(event)

        if not events:
            logger.info(f"[DETECT] No new calendar events for {user.id}")
        else:
            logger.info(f"[DETECT] {len(events)} new calendar event(s) for {user.id}")
        return events

    async def ingest(self, user: User, pe) -> Optional[InboundEvent]:
        existing = await self.db.execute(
            select(CalendarEvent.id).where(CalendarEvent.google_id == pe.google_id)
        )
        if existing.scalar_one_or_none() is not None:
            raise DuplicateEventError(TriggerType.NEW_CALENDAR_EVENT.value, pe.google_id)

        self.db.add(CalendarEvent(
            user_id=user.id,
            google_id=pe.google_id,
            title=pe.title,
            description=pe.description,
            start_time=pe.start_time,
            end_time=pe.end_time,
            attendees_json=json.dumps(pe.attendees),
            location=pe.location,
            status=pe.status,
            organizer=pe.organizer,
        ))
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise DuplicateEventError(TriggerType.NEW_CALENDAR_EVENT.value, pe.google_id)

        event = InboundEvent(
            trigger_type=TriggerType.NEW_CALENDAR_EVENT,
            source_id=pe.google_id,
            payload={
                "title": pe.title,
                "description": pe.description,
                "start_time": pe.start_time.isoformat(),
                "end_time": pe.end_time.isoformat(),
                "attendees": pe.attendees,
                "location": pe.location,
                "organizer": pe.organizer or "",
            },
            user_id=user.id,
            occurred_at=pe.start_time,
        )
        if is_self_originated(event, user.email):
            logger.info(f"[DETECT] Ignoring calendar event {pe.google_id} organized by the user")
            return None
        return event


async def ingest_crm_contact(
    db: AsyncSession, user: User, trigger_type: TriggerType, contact: Dict[str, Any]
) -> Optional[InboundEvent]:
    """
    Materialize a contact pushed by HubSpot.

    New contacts are de-duplicated on hubspot_id and raise DuplicateEventError
    when already stored; updates refresh the mirror and always produce an event.
    """
    hubspot_id = str(contact.get("hubspot_id") or "")
    result = await db.execute(select(Contact).where(Contact.hubspot_id == hubspot_id))
    stored = result.scalar_one_or_none()

    if trigger_type == TriggerType.NEW_CONTACT and stored is not None:
        raise DuplicateEventError(trigger_type.value, hubspot_id)

    if stored is None:
        stored = Contact(user_id=user.id, hubspot_id=hubspot_id)
        db.add(stored)
    for attr in ("email", "first_name", "last_name", "phone", "company", "job_title"):
        if contact.get(attr):
            setattr(stored, attr, contact[attr])
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise DuplicateEventError(trigger_type.value, hubspot_id)

    source_id = hubspot_id
    if trigger_type == TriggerType.CRM_UPDATE:
        source_id = f"{hubspot_id}@{contact.get('occurred_at') or datetime.utcnow().isoformat()}"

    payload = {k: contact.get(k) for k in ("email", "first_name", "last_name", "company", "job_title", "phone")}
    payload["hubspot_id"] = hubspot_id
    event = InboundEvent(
        trigger_type=trigger_type,
        source_id=source_id,
        payload=payload,
        user_id=user.id,
        occurred_at=datetime.utcnow(),
    )
    if is_self_originated(event, user.email):
        logger.info(f"[DETECT] Ignoring HubSpot contact {hubspot_id} for the user's own address")
        return None
    return event
