"""
Inbound events: the normalized "something happened" shape.

Pollers and webhook handlers both produce an InboundEvent; the dispatcher
matches it to standing instructions and the agent loop renders it into the
conversation. Events are not persisted: the synced domain record carrying
the same provider id is what marks an event as seen.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from email.utils import parseaddr
from typing import Any, Dict, Optional

from app.db.models import TriggerType

EMAIL_BODY_PREVIEW_CHARS = 1000


@dataclass
class InboundEvent:
    trigger_type: TriggerType
    source_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None
    occurred_at: Optional[datetime] = None

    @property
    def event_ref(self) -> str:
        return f"{self.trigger_type.value}:{self.source_id}"

    @property
    def originator(self) -> str:
        """Bare, lower-cased address of whoever caused the event."""
        if self.trigger_type in (TriggerType.NEW_EMAIL, TriggerType.EMAIL_RESPONSE):
            raw = self.payload.get("sender", "")
        elif self.trigger_type in (TriggerType.NEW_CALENDAR_EVENT, TriggerType.CALENDAR_RESPONSE):
            raw = self.payload.get("organizer", "")
        else:
            raw = self.payload.get("email", "")
        return normalize_address(raw)

    @property
    def originator_name(self) -> str:
        if self.trigger_type in (TriggerType.NEW_EMAIL, TriggerType.EMAIL_RESPONSE):
            name, _ = parseaddr(self.payload.get("sender", "") or "")
            return name.strip()
        if self.trigger_type in (TriggerType.NEW_CONTACT, TriggerType.CRM_UPDATE):
            return " ".join(
                p for p in (self.payload.get("first_name"), self.payload.get("last_name")) if p
            )
        return ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trigger_type": self.trigger_type.value,
            "source_id": self.source_id,
            "payload": self.payload,
            "user_id": self.user_id,
            "occurred_at": self.occurred_at.isoformat() if self.occurred_at else None,
        }


def normalize_address(raw: Optional[str]) -> str:
    """'Jane Doe <Jane@X.com>' -> 'jane@x.com'."""
    _, addr = parseaddr(raw or "")
    return addr.strip().lower()


def is_self_originated(event: InboundEvent, user_email: Optional[str]) -> bool:
    """True when the event was caused by the acting user themselves."""
    if not user_email:
        return False
    origin = event.originator
    return bool(origin) and origin == normalize_address(user_email)


def render_event(event: InboundEvent) -> str:
    """Render an event as natural-language context for the oracle."""
    p = event.payload
    tt = event.trigger_type

    if tt in (TriggerType.NEW_EMAIL, TriggerType.EMAIL_RESPONSE):
        heading = "A new email was received" if tt == TriggerType.NEW_EMAIL else "A reply email was received"
        body = (p.get("body") or "")[:EMAIL_BODY_PREVIEW_CHARS]
        return (
            f"{heading}:\n"
            f"FROM: {p.get('sender', '')}\n"
            f"SUBJECT: {p.get('subject') or '(no subject)'}\n"
            f"BODY: {body}"
        )

    if tt in (TriggerType.NEW_CALENDAR_EVENT, TriggerType.CALENDAR_RESPONSE):
        heading = "A new calendar event was created" if tt == TriggerType.NEW_CALENDAR_EVENT \
            else "A calendar invitation response was received"
        attendees = p.get("attendees") or []
        return (
            f"{heading}:\n"
            f"TITLE: {p.get('title', '')}\n"
            f"START: {p.get('start_time', '')}\n"
            f"END: {p.get('end_time', '')}\n"
            f"ATTENDEES: {', '.join(attendees) if attendees else 'none'}"
        )

    if tt == TriggerType.CRM_UPDATE and p.get("object_type", "contact") != "contact":
        return (
            "A HubSpot record was updated:\n"
            f"OBJECT_TYPE: {p['object_type']}\n"
            f"OBJECT_ID: {p.get('object_id') or event.source_id}\n"
            f"CHANGE: {p.get('event_type') or '(unknown)'}\n"
            f"PROPERTIES: {json.dumps(p.get('properties') or {}, default=str)}"
        )

    if tt in (TriggerType.NEW_CONTACT, TriggerType.CRM_UPDATE):
        heading = "A new contact was created in HubSpot" if tt == TriggerType.NEW_CONTACT \
            else "A HubSpot record was updated"
        name = " ".join(x for x in (p.get("first_name"), p.get("last_name")) if x)
        return (
            f"{heading}:\n"
            f"NAME: {name or '(unknown)'}\n"
            f"EMAIL: {p.get('email') or '(unknown)'}\n"
            f"COMPANY: {p.get('company') or '(unknown)'}\n"
            f"HUBSPOT_ID: {p.get('hubspot_id') or event.source_id}"
        )

    return f"Event data:\n{json.dumps(p, default=str, indent=2)}"
