"""Google Calendar REST client and free-slot search."""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from app.config import settings
from app.integrations.base import ProviderClient

logger = logging.getLogger(__name__)

WORKDAY_START = time(9, 0)
WORKDAY_END = time(17, 0)
SLOT_STEP_MINUTES = 30
MAX_SLOTS = 10


@dataclass
class ProviderEvent:
    google_id: str
    title: str
    start_time: datetime
    end_time: datetime
    description: Optional[str] = None
    attendees: List[str] = field(default_factory=list)
    location: Optional[str] = None
    status: Optional[str] = None
    organizer: Optional[str] = None
    html_link: Optional[str] = None


def _iso(dt: datetime) -> str:
    """Naive UTC datetime → RFC 3339 string."""
    return dt.replace(tzinfo=timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_when(value: Dict[str, Any]) -> datetime:
    if value.get("dateTime"):
        dt = datetime.fromisoformat(value["dateTime"].replace("Z", "+00:00"))
        if dt.tzinfo is not None:
            dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
        return dt
    # All-day events carry a date only
    return datetime.combine(date.fromisoformat(value["date"]), time.min)


def parse_calendar_event(data: Dict[str, Any]) -> ProviderEvent:
    return ProviderEvent(
        google_id=data["id"],
        title=data.get("summary") or "(no title)",
        start_time=_parse_when(data.get("start") or {}),
        end_time=_parse_when(data.get("end") or {}),
        description=data.get("description"),
        attendees=[a["email"].lower() for a in data.get("attendees") or [] if a.get("email")],
        location=data.get("location"),
        status=data.get("status"),
        organizer=((data.get("organizer") or {}).get("email") or "").lower() or None,
        html_link=data.get("htmlLink"),
    )


def find_free_slots(
    busy: List[Tuple[datetime, datetime]],
    now: datetime,
    duration_minutes: int = 60,
    days_ahead: int = 7,
    max_slots: int = MAX_SLOTS,
) -> List[Dict[str, str]]:
    """
    Walk business days in 30-minute steps between 09:00 and 17:00 and
    return the first ``max_slots`` windows that overlap no busy interval.
    """
    duration = timedelta(minutes=duration_minutes)
    step = timedelta(minutes=SLOT_STEP_MINUTES)
    horizon = now + timedelta(days=days_ahead)
    slots: List[Dict[str, str]] = []

    day = now.date()
    while datetime.combine(day, WORKDAY_START) < horizon and len(slots) < max_slots:
        if day.weekday() < 5:
            current = datetime.combine(day, WORKDAY_START)
            day_end = datetime.combine(day, WORKDAY_END)
            while current + duration <= day_end and len(slots) < max_slots:
                slot_end = current + duration
                if current >= now and slot_end <= horizon and not any(
                    current < b_end and slot_end > b_start for b_start, b_end in busy
                ):
                    slots.append({"start": _iso(current), "end": _iso(slot_end)})
                current += step
        day += timedelta(days=1)
    return slots


class CalendarClient(ProviderClient):
    provider = "google"
    base_url = settings.calendar_api_url

    async def list_events(
        self, time_min: datetime, time_max: datetime, max_results: int = 50
    ) -> List[ProviderEvent]:
        data = await self._request(
            "GET", "/calendars/primary/events",
            params={
                "timeMin": _iso(time_min),
                "timeMax": _iso(time_max),
                "maxResults": max_results,
                "singleEvents": "true",
                "orderBy": "startTime",
            },
        )
        events = []
        for item in data.get("items") or []:
            try:
                events.append(parse_calendar_event(item))
            except (KeyError, ValueError) as e:
                logger.warning(f"[ADAPTER] Skipping malformed calendar event {item.get('id')}: {e}")
        return events

    async def create_event(
        self,
        title: str,
        start_time: datetime,
        end_time: datetime,
        description: Optional[str] = None,
        attendees: Optional[List[str]] = None,
        location: Optional[str] = None,
    ) -> ProviderEvent:
        body: Dict[str, Any] = {
            "summary": title,
            "start": {"dateTime": _iso(start_time), "timeZone": "UTC"},
            "end": {"dateTime": _iso(end_time), "timeZone": "UTC"},
        }
        if description:
            body["description"] = description
        if location:
            body["location"] = location
        if attendees:
            body["attendees"] = [{"email": a} for a in attendees]

        created = await self._request(
            "POST", "/calendars/primary/events", params={"sendUpdates": "all"}, json=body,
        )
        logger.info(f"[ADAPTER] Calendar created event {created.get('id')}")
        return parse_calendar_event(created)

    async def free_busy(self, time_min: datetime, time_max: datetime) -> List[Tuple[datetime, datetime]]:
        data = await self._request(
            "POST", "/freeBusy",
            json={"timeMin": _iso(time_min), "timeMax": _iso(time_max), "items": [{"id": "primary"}]},
        )
        busy = ((data.get("calendars") or {}).get("primary") or {}).get("busy") or []
        return [
            (_parse_when({"dateTime": b["start"]}), _parse_when({"dateTime": b["end"]}))
            for b in busy
        ]

    async def find_available_slots(
        self, now: datetime, duration_minutes: int = 60, days_ahead: int = 7
    ) -> List[Dict[str, str]]:
        busy = await self.free_busy(now, now + timedelta(days=days_ahead))
        return find_free_slots(busy, now, duration_minutes, days_ahead)
