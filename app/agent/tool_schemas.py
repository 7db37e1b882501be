"""
Argument models for the agent's tools.

Every tool call proposed by the oracle is parsed into one of these models
before any adapter is touched. A parse failure becomes a ToolValidationError
that is fed back to the oracle so it can correct itself next round.
"""

import json
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from app.agent.errors import ToolValidationError
from app.agent.ids import parse_crm_contact_id
from app.db.models import TaskPriority, TaskStatus, TriggerType

_EMAIL_RE = re.compile(r"^[^@\s<>]+@[^@\s<>]+\.[^@\s<>]+$")


def _check_email(value: str) -> str:
    value = (value or "").strip()
    if not _EMAIL_RE.match(value):
        raise ValueError(f"'{value}' is not a valid email address")
    return value.lower()


def _to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class ToolArgs(BaseModel):
    """Base for tool argument models: unknown keys are rejected, strings trimmed."""
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


# ── Search ──────────────────────────────────────────────────────────

class SearchArgs(ToolArgs):
    query: str = Field(min_length=1, description="Keywords to search for")
    limit: int = Field(5, ge=1, le=25)


class RecentEmailsArgs(ToolArgs):
    days_back: int = Field(1, ge=1, le=90)
    limit: int = Field(10, ge=1, le=50)


class CalendarRangeArgs(ToolArgs):
    start_date: datetime
    end_date: datetime
    max_results: int = Field(50, ge=1, le=250)

    normalize_dates = field_validator("start_date", "end_date")(_to_naive_utc)

    @model_validator(mode="after")
    def _check_window(self):
        if self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        return self


class UpcomingEventsArgs(ToolArgs):
    max_results: int = Field(10, ge=1, le=50)


class FreeSlotArgs(ToolArgs):
    duration_minutes: int = Field(60, ge=15, le=480)
    days_ahead: int = Field(7, ge=1, le=30)


# ── Mutations ───────────────────────────────────────────────────────

class SendEmailArgs(ToolArgs):
    to: str
    subject: str = Field(min_length=1)
    body: str = Field(min_length=1)
    html_body: Optional[str] = None
    thread_id: Optional[str] = None

    check_email = field_validator("to")(_check_email)


class CreateContactArgs(ToolArgs):
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    job_title: Optional[str] = None
    notes: Optional[str] = None

    check_email = field_validator("email")(_check_email)


class AddContactNoteArgs(ToolArgs):
    contact_id: str
    note: str = Field(min_length=1)

    @field_validator("contact_id", mode="before")
    @classmethod
    def _crm_id(cls, value: Any) -> str:
        # Raises ToolValidationError directly so the hint reaches the oracle
        return parse_crm_contact_id(value, field="contact_id")


class CreateCalendarEventArgs(ToolArgs):
    title: str = Field(min_length=1)
    start_time: datetime
    end_time: datetime
    description: Optional[str] = None
    attendees: List[str] = Field(default_factory=list)
    location: Optional[str] = None

    normalize_dates = field_validator("start_time", "end_time")(_to_naive_utc)

    @field_validator("attendees")
    @classmethod
    def _attendee_emails(cls, value: List[str]) -> List[str]:
        return [_check_email(v) for v in value]

    @model_validator(mode="after")
    def _check_window(self):
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


# ── Tasks & instructions ────────────────────────────────────────────

class CreateTaskArgs(ToolArgs):
    title: str = Field(min_length=1)
    description: Optional[str] = None
    priority: TaskPriority = TaskPriority.MEDIUM
    context: Optional[Dict[str, Any]] = None


class UpdateTaskStatusArgs(ToolArgs):
    task_id: str = Field(min_length=1)
    status: TaskStatus
    result: Optional[str] = None
    error: Optional[str] = None


class ListTasksArgs(ToolArgs):
    limit: int = Field(20, ge=1, le=100)


class SaveInstructionArgs(ToolArgs):
    instruction: str = Field(min_length=3)
    trigger_type: TriggerType


class NoArgs(ToolArgs):
    pass


TOOL_ARG_MODELS: Dict[str, Type[ToolArgs]] = {
    "search_emails": SearchArgs,
    "get_recent_emails": RecentEmailsArgs,
    "search_contacts": SearchArgs,
    "search_contact_notes": SearchArgs,
    "search_calendar_events": CalendarRangeArgs,
    "get_upcoming_events": UpcomingEventsArgs,
    "find_available_time_slots": FreeSlotArgs,
    "send_email": SendEmailArgs,
    "create_contact": CreateContactArgs,
    "add_contact_note": AddContactNoteArgs,
    "create_calendar_event": CreateCalendarEventArgs,
    "create_task": CreateTaskArgs,
    "update_task_status": UpdateTaskStatusArgs,
    "list_open_tasks": ListTasksArgs,
    "save_standing_instruction": SaveInstructionArgs,
    "list_standing_instructions": NoArgs,
}


def parse_arguments_json(arguments_json: Any) -> Dict[str, Any]:
    """Decode the oracle's argument string into a dict."""
    if isinstance(arguments_json, dict):
        return arguments_json
    if not arguments_json:
        return {}
    try:
        data = json.loads(arguments_json)
    except (TypeError, json.JSONDecodeError) as e:
        raise ToolValidationError(f"Arguments are not valid JSON: {e}")
    if not isinstance(data, dict):
        raise ToolValidationError("Arguments must be a JSON object")
    return data


def validate_tool_arguments(tool_name: str, arguments_json: Any) -> ToolArgs:
    """Parse and validate a tool call's arguments against its model."""
    model = TOOL_ARG_MODELS.get(tool_name)
    if model is None:
        raise ToolValidationError(
            f"Unknown tool '{tool_name}'",
            hint=f"Available tools: {', '.join(sorted(TOOL_ARG_MODELS))}",
        )
    data = parse_arguments_json(arguments_json)
    try:
        return model.model_validate(data)
    except ToolValidationError:
        raise
    except ValidationError as e:
        errors = e.errors()
        first = errors[0] if errors else {}
        loc = ".".join(str(p) for p in first.get("loc", ())) or None
        messages = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ())) or 'arguments'}: {err.get('msg')}"
            for err in errors
        )
        hint = None
        if first.get("type") == "extra_forbidden":
            hint = f"Accepted arguments: {', '.join(model.model_fields)}"
        raise ToolValidationError(messages, field=loc, hint=hint)
