"""
Webhook normalizers: push payloads → InboundEvents.

Every body is first logged as a WebhookEvent row. Then:

  gmail     Pub/Sub envelope ({"message": {"data": base64 JSON}}) or a
            plain {"userId", "eventType"} body → poll that user's inbox
  calendar  channel push (user id in X-Goog-Channel-Token or body.userId)
            → poll that user's calendar
  hubspot   {"userId", "eventType", "objectId", "properties"}. Contact
            pushes are mirrored into contacts: contact.creation → a
            new_contact event de-duplicated on hubspot_id, any other
            contact change → crm_update. Other objects (deal, company)
            become a crm_update event and never touch contacts.

Gmail and calendar pushes carry no message content, so they reuse the
pollers and inherit their de-duplication.
"""

import base64
import binascii
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.agent.detectors import ingest_crm_contact
from app.agent.errors import DuplicateEventError
from app.agent.events import InboundEvent
from app.db.models import TriggerType, User, WebhookEvent
from app.services.user_service import get_user_by_email, get_user_by_id

logger = logging.getLogger(__name__)

# HubSpot property name → Contact attribute
HUBSPOT_PROPERTY_MAP = {
    "email": "email",
    "firstname": "first_name",
    "lastname": "last_name",
    "phone": "phone",
    "company": "company",
    "jobtitle": "job_title",
}


@dataclass
class WebhookOutcome:
    source: str
    accepted: bool
    user_id: Optional[str] = None
    events_processed: int = 0
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "source": self.source,
            "accepted": self.accepted,
            "events_processed": self.events_processed,
            "detail": self.detail,
        }


def decode_pubsub_data(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Decode the base64 JSON carried in a Pub/Sub push envelope."""
    message = payload.get("message") or {}
    data_b64 = message.get("data", "")
    if not data_b64:
        return {}
    try:
        return json.loads(base64.b64decode(data_b64))
    except (binascii.Error, ValueError):
        logger.warning("[WEBHOOK] Undecodable Pub/Sub data")
        return {}


def hubspot_object_type(event_type: str) -> str:
    """"deal.propertyChange" -> "deal"; a push without eventType is a contact push."""
    object_type = (event_type or "").strip().lower().split(".")[0]
    return object_type or "contact"


def hubspot_trigger_type(event_type: str) -> TriggerType:
    object_type, _, action = (event_type or "").strip().lower().partition(".")
    if object_type in ("", "contact") and action in ("", "creation"):
        return TriggerType.NEW_CONTACT
    return TriggerType.CRM_UPDATE


def hubspot_object_event(user: User, payload: Dict[str, Any]) -> InboundEvent:
    """CRM_UPDATE for a non-contact object (deal, company, ...); nothing is mirrored locally."""
    object_type = hubspot_object_type(payload.get("eventType", ""))
    object_id = str(payload.get("objectId") or "")
    occurred_at = payload.get("occurredAt") or datetime.utcnow().isoformat()
    return InboundEvent(
        trigger_type=TriggerType.CRM_UPDATE,
        source_id=f"{object_type}:{object_id}@{occurred_at}",
        payload={
            "object_type": object_type,
            "object_id": object_id,
            "event_type": payload.get("eventType"),
            "properties": payload.get("properties") or {},
        },
        user_id=user.id,
        occurred_at=datetime.utcnow(),
    )


def normalize_hubspot_contact(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten a HubSpot push body into Contact attributes plus hubspot_id."""
    props = payload.get("properties") or {}
    contact = {attr: props.get(name) for name, attr in HUBSPOT_PROPERTY_MAP.items()}
    contact["hubspot_id"] = str(payload.get("objectId") or payload.get("hubspotId") or "")
    contact["occurred_at"] = payload.get("occurredAt")
    return contact


async def record_webhook(
    db: AsyncSession, source: str, payload: Dict[str, Any], user_id: Optional[str] = None
) -> WebhookEvent:
    row = WebhookEvent(
        user_id=user_id,
        source=source,
        event_type=str(payload.get("eventType") or "unknown"),
        payload_json=json.dumps(payload, default=str),
        processed=False,
    )
    db.add(row)
    await db.commit()
    return row


async def _mark_processed(db: AsyncSession, row: WebhookEvent):
    row.processed = True
    await db.commit()


async def _resolve_user(db: AsyncSession, user_id: Optional[str], email: Optional[str]) -> Optional[User]:
    if user_id:
        return await get_user_by_id(db, user_id)
    if email:
        return await get_user_by_email(db, email)
    return None


class WebhookHandler:
    """Turns push payloads into dispatcher calls."""

    def __init__(self, dispatcher):
        self.dispatcher = dispatcher

    async def handle_gmail(self, payload: Dict[str, Any]) -> WebhookOutcome:
        data = decode_pubsub_data(payload)
        async with self.dispatcher.session_factory() as db:
            user = await _resolve_user(db, payload.get("userId"), data.get("emailAddress"))
            row = await record_webhook(db, "gmail", payload, user.id if user else None)
            if user is None:
                logger.info("[WEBHOOK] Gmail push for unknown user ignored")
                return WebhookOutcome("gmail", accepted=False, detail="unknown user")
            await _mark_processed(db, row)

        logger.info(f"[WEBHOOK] Gmail push for {user.id}; polling inbox")
        poll = await self.dispatcher.poll_and_dispatch(user.id, sources=("gmail",))
        return WebhookOutcome("gmail", accepted=True, user_id=user.id, events_processed=poll.events_processed)

    async def handle_calendar(
        self, payload: Dict[str, Any], channel_token: Optional[str] = None
    ) -> WebhookOutcome:
        async with self.dispatcher.session_factory() as db:
            user = await _resolve_user(db, channel_token or payload.get("userId"), None)
            row = await record_webhook(db, "calendar", payload, user.id if user else None)
            if user is None:
                logger.info("[WEBHOOK] Calendar push for unknown user ignored")
                return WebhookOutcome("calendar", accepted=False, detail="unknown user")
            await _mark_processed(db, row)

        logger.info(f"[WEBHOOK] Calendar push for {user.id}; polling calendar")
        poll = await self.dispatcher.poll_and_dispatch(user.id, sources=("calendar",))
        return WebhookOutcome("calendar", accepted=True, user_id=user.id, events_processed=poll.events_processed)

    async def handle_hubspot(self, payload: Dict[str, Any]) -> WebhookOutcome:
        trigger_type = hubspot_trigger_type(payload.get("eventType", ""))
        contact = normalize_hubspot_contact(payload)

        async with self.dispatcher.session_factory() as db:
            user = await _resolve_user(db, payload.get("userId"), None)
            row = await record_webhook(db, "hubspot", payload, user.id if user else None)
            if user is None:
                logger.info("[WEBHOOK] HubSpot push for unknown user ignored")
                return WebhookOutcome("hubspot", accepted=False, detail="unknown user")
            if not contact["hubspot_id"]:
                logger.info("[WEBHOOK] HubSpot push without objectId ignored")
                return WebhookOutcome("hubspot", accepted=False, user_id=user.id, detail="missing objectId")

            try:
                if hubspot_object_type(payload.get("eventType", "")) == "contact":
                    event = await ingest_crm_contact(db, user, trigger_type, contact)
                else:
                    event = hubspot_object_event(user, payload)
            except DuplicateEventError as e:
                logger.info(f"[WEBHOOK] {e}")
                await _mark_processed(db, row)
                return WebhookOutcome("hubspot", accepted=True, user_id=user.id, detail="duplicate")
            await _mark_processed(db, row)

        if event is None:
            return WebhookOutcome("hubspot", accepted=True, user_id=user.id, detail="self-originated")
        await self.dispatcher.run_instructions_for_event(user.id, event)
        return WebhookOutcome("hubspot", accepted=True, user_id=user.id, events_processed=1)
