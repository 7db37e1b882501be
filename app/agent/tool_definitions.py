"""
Tool definitions for the Advisor Agent.

Each tool is defined in Anthropic's tool format:
{ name, description, input_schema (JSON Schema) }

The oracle service converts them to OpenAI function tools at call time.
Descriptions that depend on "today" are built from the ``now`` argument,
never from the model's own idea of the date.
"""

from datetime import datetime
from typing import List, Dict, Any, Optional

CATALOG_VERSION = "2"

# Tools whose execution changes state in an external system or the local store.
# These are idempotency-ledgered and produce exactly one notification per outcome.
SIDE_EFFECTING_TOOLS = frozenset({
    "send_email",
    "create_contact",
    "add_contact_note",
    "create_calendar_event",
})

TRIGGER_TYPE_VALUES = [
    "new_email", "new_contact", "new_calendar_event",
    "email_response", "calendar_response", "crm_update",
]
TASK_STATUS_VALUES = [
    "pending", "in_progress", "waiting_for_response",
    "completed", "failed", "cancelled",
]
TASK_PRIORITY_VALUES = ["low", "medium", "high", "urgent"]


def get_agent_tools(now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Return all tool definitions available to the agent, grounded at ``now``."""
    now = now or datetime.utcnow()
    today = now.strftime("%Y-%m-%d")
    year = now.year

    return [
        # ------------------------------------------------------------------
        # 1. Email search
        # ------------------------------------------------------------------
        {
            "name": "search_emails",
            "description": (
                "Search the user's synced emails by keyword (matches sender, subject and body). "
                "Use to find previous conversations with a person or about a topic."
            ),
            "input_schema": {
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "Keywords, a name or an email address."},
                    "limit": {"type": "integer", "description": "Max results (default 5, max 25)."},
                },
                "required": ["query"],
            },
        },
        {
            "name": "get_recent_emails",
            "description": (
                f"List the most recent emails received. Today is {today}. "
                "Use when asked what came in recently rather than about a specific topic."
            ),
            "input_schema": {
                "type": "object",
                "properties": {
                    "days_back": {"type": "integer", "description": "How many days back to look (default 1)."},
                    "limit": {"type": "integer", "description": "Max results (default 10, max 50)."},
                },
                "required": [],
            },
        },
        # ------------------------------------------------------------------
        # 2. CRM search
        # ------------------------------------------------------------------
        {
            "name": "search_contacts",
            "description": (
                "Search HubSpot contacts by name, email or company. Each result includes "
                "'hubspot_id' (the HubSpot contact id) and 'record_id' (internal only). "
                "Always pass hubspot_id to tools that act on a contact. "
                "Search before creating a contact to avoid duplicates."
            ),
            "input_schema": {
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "Name, email address or company."},
                    "limit": {"type": "integer", "description": "Max results (default 5, max 25)."},
                },
                "required": ["query"],
            },
        },
        {
            "name": "search_contact_notes",
            "description": "Search notes attached to HubSpot contacts by keyword.",
            "input_schema": {
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "Keywords to look for in notes."},
                    "limit": {"type": "integer", "description": "Max results (default 5, max 25)."},
                },
                "required": ["query"],
            },
        },
        # ------------------------------------------------------------------
        # 3. Calendar search
        # ------------------------------------------------------------------
        {
            "name": "search_calendar_events",
            "description": (
                f"List calendar events between two dates. Today is {today} (year {year}). "
                "Use this tool whenever the request names a specific day, week, month or "
                "any past window (e.g. 'last week', 'on March 3'). Dates are ISO 8601; a "
                f"date without a year means {year}."
            ),
            "input_schema": {
                "type": "object",
                "properties": {
                    "start_date": {"type": "string", "description": f"Window start, ISO 8601 (e.g. {today}T00:00:00Z)."},
                    "end_date": {"type": "string", "description": "Window end, ISO 8601. Must be after start_date."},
                    "max_results": {"type": "integer", "description": "Max results (default 50)."},
                },
                "required": ["start_date", "end_date"],
            },
        },
        {
            "name": "get_upcoming_events",
            "description": (
                f"List the next upcoming calendar events starting from now ({now.isoformat(timespec='minutes')}). "
                "Only use when no specific time window was requested; prefer search_calendar_events otherwise."
            ),
            "input_schema": {
                "type": "object",
                "properties": {
                    "max_results": {"type": "integer", "description": "Max results (default 10)."},
                },
                "required": [],
            },
        },
        {
            "name": "find_available_time_slots",
            "description": (
                f"Find free slots in the user's calendar on business days between 09:00 and 17:00, "
                f"starting from today ({today}). Returns up to 10 candidate slots."
            ),
            "input_schema": {
                "type": "object",
                "properties": {
                    "duration_minutes": {"type": "integer", "description": "Meeting length in minutes (default 60)."},
                    "days_ahead": {"type": "integer", "description": "How many days ahead to search (default 7, max 30)."},
                },
                "required": [],
            },
        },
        # ------------------------------------------------------------------
        # 4. Mutations
        # ------------------------------------------------------------------
        {
            "name": "send_email",
            "description": "Send an email from the user's Gmail account.",
            "input_schema": {
                "type": "object",
                "properties": {
                    "to": {"type": "string", "description": "Recipient email address."},
                    "subject": {"type": "string", "description": "Subject line."},
                    "body": {"type": "string", "description": "Plain-text body."},
                    "html_body": {"type": "string", "description": "Optional HTML body."},
                    "thread_id": {"type": "string", "description": "Gmail thread id when replying in a thread."},
                },
                "required": ["to", "subject", "body"],
            },
        },
        {
            "name": "create_contact",
            "description": (
                "Create a new HubSpot contact. Never create a contact for the user themselves. "
                "Search first to avoid duplicates."
            ),
            "input_schema": {
                "type": "object",
                "properties": {
                    "email": {"type": "string", "description": "Contact email address (required)."},
                    "first_name": {"type": "string"},
                    "last_name": {"type": "string"},
                    "phone": {"type": "string"},
                    "company": {"type": "string"},
                    "job_title": {"type": "string"},
                    "notes": {"type": "string", "description": "Optional note describing how the contact was found."},
                },
                "required": ["email"],
            },
        },
        {
            "name": "add_contact_note",
            "description": (
                "Add a note to a HubSpot contact. contact_id MUST be the 'hubspot_id' returned by "
                "search_contacts or create_contact (a numeric HubSpot id), never the 'record_id'."
            ),
            "input_schema": {
                "type": "object",
                "properties": {
                    "contact_id": {"type": "string", "description": "HubSpot contact id (numeric)."},
                    "note": {"type": "string", "description": "Note text."},
                },
                "required": ["contact_id", "note"],
            },
        },
        {
            "name": "create_calendar_event",
            "description": (
                f"Create a calendar event and invite attendees. Today is {today}. "
                "Times are ISO 8601; use find_available_time_slots first when no time was agreed."
            ),
            "input_schema": {
                "type": "object",
                "properties": {
                    "title": {"type": "string"},
                    "start_time": {"type": "string", "description": "Start, ISO 8601."},
                    "end_time": {"type": "string", "description": "End, ISO 8601. Must be after start_time."},
                    "description": {"type": "string"},
                    "attendees": {"type": "array", "items": {"type": "string"}, "description": "Attendee email addresses."},
                    "location": {"type": "string"},
                },
                "required": ["title", "start_time", "end_time"],
            },
        },
        # ------------------------------------------------------------------
        # 5. Task bookkeeping
        # ------------------------------------------------------------------
        {
            "name": "create_task",
            "description": (
                "Record work that cannot finish now (e.g. proposed meeting times were sent and a "
                "reply is awaited). Mention the other party's name and email so a later reply "
                "can be matched to the task."
            ),
            "input_schema": {
                "type": "object",
                "properties": {
                    "title": {"type": "string"},
                    "description": {"type": "string"},
                    "priority": {"type": "string", "enum": TASK_PRIORITY_VALUES},
                    "context": {"type": "object", "description": "Free-form data needed to resume the task."},
                },
                "required": ["title"],
            },
        },
        {
            "name": "update_task_status",
            "description": (
                "Move a task forward: pending → in_progress → waiting_for_response → completed|failed. "
                "A task that is not finished may also be cancelled."
            ),
            "input_schema": {
                "type": "object",
                "properties": {
                    "task_id": {"type": "string", "description": "Task id from create_task or list_open_tasks."},
                    "status": {"type": "string", "enum": TASK_STATUS_VALUES},
                    "result": {"type": "string", "description": "Outcome summary when completing."},
                    "error": {"type": "string", "description": "Reason when failing."},
                },
                "required": ["task_id", "status"],
            },
        },
        {
            "name": "list_open_tasks",
            "description": "List tasks that are pending, in progress or waiting for a response.",
            "input_schema": {
                "type": "object",
                "properties": {
                    "limit": {"type": "integer", "description": "Max results (default 20)."},
                },
                "required": [],
            },
        },
        # ------------------------------------------------------------------
        # 6. Standing instructions
        # ------------------------------------------------------------------
        {
            "name": "save_standing_instruction",
            "description": (
                "Save a rule the user wants applied automatically in the future, "
                "e.g. 'when someone new emails me, add them to HubSpot'."
            ),
            "input_schema": {
                "type": "object",
                "properties": {
                    "instruction": {"type": "string", "description": "The rule, in the user's words."},
                    "trigger_type": {"type": "string", "enum": TRIGGER_TYPE_VALUES},
                },
                "required": ["instruction", "trigger_type"],
            },
        },
        {
            "name": "list_standing_instructions",
            "description": "List the user's active standing instructions.",
            "input_schema": {"type": "object", "properties": {}, "required": []},
        },
    ]


def get_tool_names() -> List[str]:
    return [t["name"] for t in get_agent_tools()]
