"""
Tool executor: runs one tool call proposed by the oracle.

Each call goes through the same pipeline:

  1. validate arguments against the tool's model (never reaches an adapter
     when invalid)
  2. for side-effecting tools, look up the idempotency ledger and replay a
     stored result instead of repeating the external action
  3. dispatch to ``_tool_<name>`` under a per-tool timeout
  4. record side-effecting successes in the ledger

Every outcome, including failures, comes back as a ToolResult; nothing
raised by an adapter escapes ``execute``.
"""

import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from app.agent.errors import AdapterError, StoreUnavailableError, ToolValidationError
from app.agent.events import normalize_address
from app.agent.tool_definitions import SIDE_EFFECTING_TOOLS
from app.agent.tool_schemas import ToolArgs, validate_tool_arguments
from app.config import settings
from app.db.models import CalendarEvent, Contact, ContactNote, Email, ToolInvocation
from app.services.instruction_service import InstructionService
from app.services.task_service import TaskService, TaskTransitionError, task_to_dict

logger = logging.getLogger(__name__)

# Effects reported back to the agent loop
EFFECT_NONE = "none"            # read-only call, refusal, or failure before any side effect
EFFECT_PERFORMED = "performed"  # the external action happened in this call
EFFECT_REPLAYED = "replayed"    # result served from the idempotency ledger


@dataclass
class ToolContext:
    """Who is acting and where in the run the call happens."""
    user_id: str
    user_email: str
    run_key: str = ""
    agent_run_id: Optional[str] = None
    round_index: int = 0
    now: datetime = field(default_factory=datetime.utcnow)


@dataclass
class ToolResult:
    tool_call_id: str
    tool_name: str
    ok: bool
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None
    effect: str = EFFECT_NONE
    refused: bool = False

    @property
    def side_effecting(self) -> bool:
        return self.tool_name in SIDE_EFFECTING_TOOLS

    @property
    def error_type(self) -> Optional[str]:
        return (self.error or {}).get("type")

    def to_payload(self) -> Dict[str, Any]:
        if self.ok:
            return {"ok": True, **self.data}
        payload: Dict[str, Any] = {"ok": False, "error": self.error}
        if self.refused:
            payload["refused"] = True
        return payload

    def to_content(self) -> str:
        """Serialized result fed back to the oracle, truncated to the output limit."""
        text = json.dumps(self.to_payload(), default=str)
        limit = settings.tool_max_output_chars
        if len(text) > limit:
            text = text[:limit] + f"... [truncated, {len(text) - limit} more chars]"
        return text

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tool_call_id": self.tool_call_id,
            "tool_name": self.tool_name,
            "ok": self.ok,
            "effect": self.effect,
            "refused": self.refused,
            "error": self.error,
        }


def canonical_arguments(args: ToolArgs) -> str:
    return json.dumps(args.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))


def invocation_key(run_key: str, tool_name: str, canonical_args: str) -> str:
    """Stable key for one side effect within one (instruction, event) run."""
    raw = f"{run_key}:{tool_name}:{canonical_args}"
    return hashlib.sha256(raw.encode()).hexdigest()[:32]


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def _contact_dict(c: Contact) -> Dict[str, Any]:
    return {
        "hubspot_id": c.hubspot_id,
        "record_id": c.id,
        "email": c.email,
        "name": c.full_name or None,
        "company": c.company,
        "job_title": c.job_title,
        "phone": c.phone,
    }


def _event_dict(e: CalendarEvent) -> Dict[str, Any]:
    return {
        "event_id": e.google_id,
        "title": e.title,
        "start_time": _iso(e.start_time),
        "end_time": _iso(e.end_time),
        "attendees": json.loads(e.attendees_json) if e.attendees_json else [],
        "location": e.location,
        "status": e.status,
    }


def _provider_event_dict(e) -> Dict[str, Any]:
    return {
        "event_id": e.google_id,
        "title": e.title,
        "start_time": _iso(e.start_time),
        "end_time": _iso(e.end_time),
        "attendees": list(e.attendees or []),
        "location": e.location,
        "status": e.status,
    }


class ToolExecutor:
    """Executes the agent's tools for one user against the store and the adapters."""

    def __init__(self, db: AsyncSession, adapters):
        self.db = db
        self.adapters = adapters

    async def execute(
        self, tool_call_id: str, tool_name: str, arguments_json: Any, ctx: ToolContext
    ) -> ToolResult:
        # ── Validation ────────────────────────────────────────
        try:
            args = validate_tool_arguments(tool_name, arguments_json)
        except ToolValidationError as e:
            logger.info(f"[TOOL] {tool_name} rejected: {e.message}")
            return ToolResult(tool_call_id, tool_name, ok=False, error=e.to_dict())

        side_effecting = tool_name in SIDE_EFFECTING_TOOLS
        key = None
        if side_effecting:
            key = invocation_key(ctx.run_key, tool_name, canonical_arguments(args))
            replay = await self._load_invocation(key)
            if replay is not None and replay.status == "completed":
                logger.info(f"[TOOL] {tool_name} replayed from ledger ({key})")
                data = json.loads(replay.result_json) if replay.result_json else {}
                return ToolResult(tool_call_id, tool_name, ok=True, data=data, effect=EFFECT_REPLAYED)

        # ── Dispatch under timeout ────────────────────────────
        tool_timeout = settings.tool_timeout_overrides.get(tool_name, settings.tool_timeout_default)
        handler = getattr(self, f"_tool_{tool_name}")
        try:
            outcome = await asyncio.wait_for(handler(args, ctx), timeout=tool_timeout)
        except asyncio.TimeoutError:
            await self.db.rollback()
            logger.warning(f"[TOOL] {tool_name} timed out after {tool_timeout}s")
            return ToolResult(tool_call_id, tool_name, ok=False, error={
                "type": "timeout", "message": f"Tool '{tool_name}' timed out after {tool_timeout}s",
            })
        except AdapterError as e:
            await self.db.rollback()
            logger.warning(f"[TOOL] {tool_name} failed: {e.kind} {e.message}")
            return ToolResult(tool_call_id, tool_name, ok=False, error=e.to_dict())
        except ToolValidationError as e:
            await self.db.rollback()
            return ToolResult(tool_call_id, tool_name, ok=False, error=e.to_dict())
        except (TaskTransitionError, LookupError) as e:
            await self.db.rollback()
            return ToolResult(tool_call_id, tool_name, ok=False, error={
                "type": "invalid_request", "message": str(e),
            })
        except (OperationalError, InterfaceError) as e:
            raise StoreUnavailableError(str(e)) from e
        except Exception as e:
            await self.db.rollback()
            logger.exception(f"[TOOL] {tool_name} raised")
            return ToolResult(tool_call_id, tool_name, ok=False, error={
                "type": "internal_error", "message": f"{type(e).__name__}: {e}",
            })

        if isinstance(outcome, ToolResult):
            outcome.tool_call_id = tool_call_id
            return outcome

        effect = EFFECT_PERFORMED if side_effecting and not outcome.pop("_no_effect", False) else EFFECT_NONE
        if effect == EFFECT_PERFORMED:
            await self._record_invocation(key, tool_name, args, outcome, ctx)
        return ToolResult(tool_call_id, tool_name, ok=True, data=outcome, effect=effect)

    # ------------------------------------------------------------------
    # Idempotency ledger
    # ------------------------------------------------------------------
    async def _load_invocation(self, key: str) -> Optional[ToolInvocation]:
        result = await self.db.execute(
            select(ToolInvocation).where(ToolInvocation.idempotency_key == key)
        )
        return result.scalar_one_or_none()

    async def _record_invocation(self, key: str, tool_name: str, args: ToolArgs, data: Dict[str, Any], ctx: ToolContext):
        self.db.add(ToolInvocation(
            user_id=ctx.user_id,
            agent_run_id=ctx.agent_run_id,
            idempotency_key=key,
            tool_name=tool_name,
            arguments_json=canonical_arguments(args),
            result_json=json.dumps(data, default=str),
            status="completed",
        ))
        try:
            await self.db.commit()
        except IntegrityError:
            # A concurrent run recorded the same side effect first
            await self.db.rollback()
            logger.info(f"[TOOL] Ledger entry {key} already present")

    # ------------------------------------------------------------------
    # Search tools (read-only)
    # ------------------------------------------------------------------
    async def _tool_search_emails(self, args, ctx: ToolContext) -> Dict[str, Any]:
        pattern = f"%{args.query}%"
        result = await self.db.execute(
            select(Email)
            .where(
                Email.user_id == ctx.user_id,
                or_(Email.sender.ilike(pattern), Email.subject.ilike(pattern), Email.body.ilike(pattern)),
            )
            .order_by(Email.date.desc())
            .limit(args.limit)
        )
        emails = result.scalars().all()
        return {"count": len(emails), "emails": [self._email_dict(e) for e in emails]}

    async def _tool_get_recent_emails(self, args, ctx: ToolContext) -> Dict[str, Any]:
        since = ctx.now - timedelta(days=args.days_back)
        result = await self.db.execute(
            select(Email)
            .where(Email.user_id == ctx.user_id, Email.date >= since)
            .order_by(Email.date.desc())
            .limit(args.limit)
        )
        emails = result.scalars().all()
        return {"count": len(emails), "emails": [self._email_dict(e) for e in emails]}

    @staticmethod
    def _email_dict(e: Email) -> Dict[str, Any]:
        return {
            "gmail_id": e.gmail_id,
            "thread_id": e.thread_id,
            "from": e.sender,
            "to": e.recipient,
            "subject": e.subject,
            "date": _iso(e.date),
            "preview": (e.body or "")[:500],
        }

    async def _tool_search_contacts(self, args, ctx: ToolContext) -> Dict[str, Any]:
        pattern = f"%{args.query}%"
        result = await self.db.execute(
            select(Contact)
            .where(
                Contact.user_id == ctx.user_id,
                or_(
                    Contact.email.ilike(pattern),
                    Contact.first_name.ilike(pattern),
                    Contact.last_name.ilike(pattern),
                    Contact.company.ilike(pattern),
                ),
            )
            .order_by(Contact.created_at.desc())
            .limit(args.limit)
        )
        contacts = list(result.scalars().all())
        source = "local"
        if not contacts:
            # Nothing synced locally; ask HubSpot directly and mirror what it knows
            remote = await self.adapters.hubspot.search_contacts(args.query, limit=args.limit)
            contacts = [await self._upsert_contact(ctx.user_id, pc) for pc in remote]
            source = "hubspot"
        return {"count": len(contacts), "source": source, "contacts": [_contact_dict(c) for c in contacts]}

    async def _tool_search_contact_notes(self, args, ctx: ToolContext) -> Dict[str, Any]:
        result = await self.db.execute(
            select(ContactNote, Contact)
            .join(Contact, ContactNote.contact_id == Contact.id)
            .where(ContactNote.user_id == ctx.user_id, ContactNote.note.ilike(f"%{args.query}%"))
            .order_by(ContactNote.created_at.desc())
            .limit(args.limit)
        )
        notes = [
            {
                "note": note.note,
                "contact_hubspot_id": contact.hubspot_id,
                "contact_name": contact.full_name or contact.email,
                "created_at": _iso(note.created_at),
            }
            for note, contact in result.all()
        ]
        return {"count": len(notes), "notes": notes}

    async def _tool_search_calendar_events(self, args, ctx: ToolContext) -> Dict[str, Any]:
        events = await self.adapters.calendar.list_events(args.start_date, args.end_date, args.max_results)
        return {
            "window": {"start": _iso(args.start_date), "end": _iso(args.end_date)},
            "count": len(events),
            "events": [_provider_event_dict(e) for e in events],
        }

    async def _tool_get_upcoming_events(self, args, ctx: ToolContext) -> Dict[str, Any]:
        result = await self.db.execute(
            select(CalendarEvent)
            .where(CalendarEvent.user_id == ctx.user_id, CalendarEvent.start_time >= ctx.now)
            .order_by(CalendarEvent.start_time.asc())
            .limit(args.max_results)
        )
        events = result.scalars().all()
        return {"count": len(events), "events": [_event_dict(e) for e in events]}

    async def _tool_find_available_time_slots(self, args, ctx: ToolContext) -> Dict[str, Any]:
        slots = await self.adapters.calendar.find_available_slots(
            ctx.now, duration_minutes=args.duration_minutes, days_ahead=args.days_ahead
        )
        return {"duration_minutes": args.duration_minutes, "count": len(slots), "slots": slots}

    # ------------------------------------------------------------------
    # Side-effecting tools
    # ------------------------------------------------------------------
    async def _tool_send_email(self, args, ctx: ToolContext) -> Dict[str, Any]:
        sent = await self.adapters.gmail.send_email(
            to=args.to,
            subject=args.subject,
            body=args.body,
            html_body=args.html_body,
            thread_id=args.thread_id,
        )
        return {"message_id": sent.get("id"), "thread_id": sent.get("thread_id"), "to": args.to, "subject": args.subject}

    async def _tool_create_contact(self, args, ctx: ToolContext):
        if normalize_address(args.email) == normalize_address(ctx.user_email):
            logger.info("[TOOL] Refused create_contact for the user's own address")
            return ToolResult("", "create_contact", ok=False, refused=True, error={
                "type": "refused",
                "message": "Cannot create contact for yourself",
                "hint": f"{args.email} is the user's own email address; no contact was created.",
            })

        result = await self.db.execute(
            select(Contact).where(Contact.user_id == ctx.user_id, Contact.email == args.email)
        )
        existing = result.scalars().first()
        if existing is not None:
            return {"_no_effect": True, "already_exists": True, "contact": _contact_dict(existing)}

        created = await self.adapters.hubspot.create_contact(
            email=args.email,
            first_name=args.first_name,
            last_name=args.last_name,
            phone=args.phone,
            company=args.company,
            job_title=args.job_title,
        )
        contact = await self._upsert_contact(ctx.user_id, created, notes=args.notes)
        outcome: Dict[str, Any] = {"created": True, "contact": _contact_dict(contact)}
        if not args.notes:
            return outcome

        # The contact exists from here on; the HubSpot copy of the note is a follow-up
        try:
            note_id = await self.adapters.hubspot.add_note(created.hubspot_id, args.notes)
        except AdapterError as e:
            logger.warning(f"[TOOL] Contact {created.hubspot_id} created but its note failed: {e.message}")
            outcome["note_error"] = e.to_dict()
            outcome["hint"] = (
                f"The contact was created. Retry the note with add_contact_note "
                f"using contact_id {created.hubspot_id}."
            )
            return outcome
        self.db.add(ContactNote(user_id=ctx.user_id, contact_id=contact.id, hubspot_id=note_id, note=args.notes))
        await self.db.commit()
        outcome["note_id"] = note_id
        return outcome

    async def _tool_add_contact_note(self, args, ctx: ToolContext) -> Dict[str, Any]:
        result = await self.db.execute(
            select(Contact).where(Contact.user_id == ctx.user_id, Contact.hubspot_id == args.contact_id)
        )
        contact = result.scalar_one_or_none()
        if contact is None:
            # Not mirrored yet; HubSpot answers 404 for unknown ids
            remote = await self.adapters.hubspot.get_contact(args.contact_id)
            contact = await self._upsert_contact(ctx.user_id, remote)

        note_id = await self.adapters.hubspot.add_note(args.contact_id, args.note)
        self.db.add(ContactNote(user_id=ctx.user_id, contact_id=contact.id, hubspot_id=note_id, note=args.note))
        await self.db.commit()
        return {
            "note_id": note_id,
            "contact_hubspot_id": args.contact_id,
            "contact_name": contact.full_name or contact.email,
        }

    async def _tool_create_calendar_event(self, args, ctx: ToolContext) -> Dict[str, Any]:
        created = await self.adapters.calendar.create_event(
            title=args.title,
            start_time=args.start_time,
            end_time=args.end_time,
            description=args.description,
            attendees=args.attendees,
            location=args.location,
        )
        # Mirror the event so the calendar detector sees it as already known
        result = await self.db.execute(select(CalendarEvent).where(CalendarEvent.google_id == created.google_id))
        if result.scalar_one_or_none() is None:
            self.db.add(CalendarEvent(
                user_id=ctx.user_id,
                google_id=created.google_id,
                title=created.title,
                description=created.description,
                start_time=created.start_time,
                end_time=created.end_time,
                attendees_json=json.dumps(created.attendees),
                location=created.location,
                status=created.status,
                organizer=ctx.user_email.lower(),
            ))
            await self.db.commit()
        return {"created": True, "event": _provider_event_dict(created), "link": created.html_link}

    async def _upsert_contact(self, user_id: str, pc, notes: Optional[str] = None) -> Contact:
        result = await self.db.execute(select(Contact).where(Contact.hubspot_id == pc.hubspot_id))
        contact = result.scalar_one_or_none()
        if contact is None:
            contact = Contact(user_id=user_id, hubspot_id=pc.hubspot_id)
            self.db.add(contact)
        contact.email = pc.email or contact.email
        contact.first_name = pc.first_name or contact.first_name
        contact.last_name = pc.last_name or contact.last_name
        contact.phone = pc.phone or contact.phone
        contact.company = pc.company or contact.company
        contact.job_title = pc.job_title or contact.job_title
        if notes:
            contact.notes = notes
        await self.db.commit()
        await self.db.refresh(contact)
        return contact

    # ------------------------------------------------------------------
    # Task bookkeeping
    # ------------------------------------------------------------------
    async def _tool_create_task(self, args, ctx: ToolContext) -> Dict[str, Any]:
        context = dict(args.context or {})
        if ctx.agent_run_id:
            context.setdefault("agent_run_id", ctx.agent_run_id)
        task = await TaskService(self.db).create_task(
            ctx.user_id, args.title, args.description, args.priority, context or None
        )
        return {"task": task_to_dict(task)}

    async def _tool_update_task_status(self, args, ctx: ToolContext) -> Dict[str, Any]:
        task = await TaskService(self.db).update_status(
            ctx.user_id, args.task_id, args.status, result=args.result, error=args.error, now=ctx.now
        )
        return {"task": task_to_dict(task)}

    async def _tool_list_open_tasks(self, args, ctx: ToolContext) -> Dict[str, Any]:
        tasks = await TaskService(self.db).list_open(ctx.user_id, limit=args.limit)
        return {"count": len(tasks), "tasks": [task_to_dict(t) for t in tasks]}

    # ------------------------------------------------------------------
    # Standing instructions
    # ------------------------------------------------------------------
    async def _tool_save_standing_instruction(self, args, ctx: ToolContext) -> Dict[str, Any]:
        instruction = await InstructionService(self.db).create(ctx.user_id, args.instruction, args.trigger_type)
        return {"instruction_id": instruction.id, "trigger_type": instruction.trigger_type, "saved": True}

    async def _tool_list_standing_instructions(self, args, ctx: ToolContext) -> Dict[str, Any]:
        instructions = await InstructionService(self.db).list_for_user(ctx.user_id)
        return {
            "count": len(instructions),
            "instructions": [
                {"id": i.id, "instruction": i.instruction_text, "trigger_type": i.trigger_type}
                for i in instructions
            ],
        }
