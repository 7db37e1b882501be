"""
Agent Runner: Core orchestration loop.

Flow (one run per (instruction, event) pair):
  1. Init: system directive (tools policy + current date), the event rendered
     as text, the instruction, and any related open tasks
  2. Propose: call the oracle with the full history and the tool catalog
  3. Execute: run every proposed tool call in order, each isolated, and
     feed all results back keyed by call id
  4. Repeat until the oracle stops calling tools (completed) or the round
     budget runs out (exhausted)

An oracle failure ends the run as errored before any call of that round is
executed; side effects from earlier rounds stay in place. The AgentRun row
is appended to after every round and left untouched once terminal.
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.agent.errors import OracleUnavailableError, StoreUnavailableError
from app.agent.events import InboundEvent, render_event
from app.agent.structured_logging import set_run_context
from app.agent.tool_definitions import CATALOG_VERSION, get_agent_tools
from app.agent.tool_executor import EFFECT_PERFORMED, ToolContext, ToolExecutor, ToolResult
from app.config import settings
from app.db.models import (
    AgentRun, NotificationSeverity, NotificationType, RunOutcome, StandingInstruction, Task, User,
)

logger = logging.getLogger(__name__)

EXHAUSTED_NOTICE = "Finished working on this event without a final summary (round limit reached)."

# (type, title, severity) per side-effecting tool success
SUCCESS_NOTIFICATIONS = {
    "create_contact": (NotificationType.NEW_CONTACT_CREATED, "New Contact Created", NotificationSeverity.SUCCESS),
    "create_calendar_event": (NotificationType.CALENDAR_EVENT_CREATED, "Meeting Scheduled", NotificationSeverity.SUCCESS),
    "send_email": (NotificationType.PROACTIVE_ACTION, "Email Sent", NotificationSeverity.SUCCESS),
    "add_contact_note": (NotificationType.PROACTIVE_ACTION, "Note Added to Contact", NotificationSeverity.INFO),
}

# Failures the oracle caused itself; it gets them back as results, the user is not paged
SILENT_ERROR_TYPES = {"validation_error", "refused", "invalid_request"}


@dataclass
class AgentRunResult:
    """Outcome of one agent run."""
    run_id: str
    outcome: RunOutcome
    rounds: int = 0
    final_text: str = ""
    tool_results: List[Dict[str, Any]] = field(default_factory=list)
    user_message: Optional[str] = None  # Direct message for the user when the run errored
    error: Optional[str] = None
    skipped: bool = False


def make_run_key(user_id: str, instruction_id: str, event_ref: str) -> str:
    raw = f"{user_id}:{instruction_id}:{event_ref}"
    return hashlib.sha256(raw.encode()).hexdigest()[:32]


def build_system_prompt(user: User, now: datetime) -> str:
    today = now.strftime("%A, %B %d, %Y")
    return (
        "You are an autonomous AI agent acting for a financial advisor. You can use their "
        "Gmail, HubSpot CRM and Google Calendar through the provided tools.\n\n"
        f"CURRENT DATE AND TIME: {today}, {now.strftime('%H:%M')} {settings.agent_timezone} "
        f"(ISO {now.isoformat(timespec='minutes')}). Resolve every relative date "
        "('tomorrow', 'last week') against this value.\n"
        f"THE USER: {user.name or 'the advisor'} <{user.email}>.\n\n"
        "RULES:\n"
        "- Act on the instruction without asking for permission; nobody is watching this run live.\n"
        "- Never create a HubSpot contact for the user themselves.\n"
        "- Search before creating, so you do not create duplicates.\n"
        "- When a tool needs a contact id, pass the 'hubspot_id' from search_contacts or "
        "create_contact, never the 'record_id'.\n"
        "- When the request names a specific or past time window, use search_calendar_events "
        "with explicit dates instead of get_upcoming_events.\n"
        "- If something cannot finish now (e.g. you proposed meeting times and await a reply), "
        "record it with create_task, naming the other party's email.\n"
        "- If a tool returns an error, correct the arguments or choose another approach; do not "
        "repeat the same failing call.\n"
        "- When you are done, reply with a one or two sentence summary of what you did."
    )


def build_run_prompt(
    event: InboundEvent, instruction: StandingInstruction, related_tasks: Optional[List[Task]] = None
) -> str:
    parts = [
        render_event(event),
        "",
        f"YOUR INSTRUCTION: {instruction.instruction_text}",
        "",
        "Decide whether this instruction applies to the event. If it does, carry it out with the "
        "tools. If it does not, reply briefly that no action is needed.",
    ]
    if related_tasks:
        parts.append("")
        parts.append("OPEN TASKS THAT MAY RELATE TO THIS EVENT:")
        for t in related_tasks:
            line = f"- [{t.id}] {t.title} (status: {t.status})"
            if t.description:
                line += f": {t.description[:200]}"
            parts.append(line)
        parts.append("If the event resolves one of these, update its status with update_task_status.")
    return "\n".join(parts)


class AgentRunner:
    """
    Runs the agentic loop:  (event, instruction) → (oracle ↔ tools)* → outcome.
    """

    def __init__(
        self,
        oracle,
        db: AsyncSession,
        tool_executor: ToolExecutor,
        notifier,
        max_rounds: Optional[int] = None,
    ):
        self.oracle = oracle
        self.db = db
        self.tools = tool_executor
        self.notifier = notifier
        self.max_rounds = max_rounds or settings.agent_max_rounds

    async def run(
        self,
        user: User,
        event: InboundEvent,
        instruction: StandingInstruction,
        now: Optional[datetime] = None,
        related_tasks: Optional[List[Task]] = None,
    ) -> AgentRunResult:
        now = now or datetime.utcnow()
        try:
            return await self._run(user, event, instruction, now, related_tasks)
        except (OperationalError, InterfaceError) as e:
            logger.error(f"[AGENT] Store unavailable during run for {user.id}: {e}")
            raise StoreUnavailableError(str(e)) from e

    async def _run(
        self,
        user: User,
        event: InboundEvent,
        instruction: StandingInstruction,
        now: datetime,
        related_tasks: Optional[List[Task]],
    ) -> AgentRunResult:
        run_key = make_run_key(user.id, instruction.id, event.event_ref)

        previous = await self._finished_run(run_key)
        if previous is not None:
            logger.info(f"[AGENT] Run {previous.id} already finished for {event.event_ref}; skipping")
            return AgentRunResult(
                run_id=previous.id, outcome=RunOutcome(previous.outcome),
                final_text=previous.final_text or "", skipped=True,
            )

        # ── Init ──────────────────────────────────────────────
        run = AgentRun(
            user_id=user.id,
            instruction_id=instruction.id,
            event_ref=event.event_ref,
            run_key=run_key,
            rounds_json="[]",
            outcome=RunOutcome.RUNNING.value,
            catalog_version=CATALOG_VERSION,
            started_at=now,
        )
        self.db.add(run)
        await self.db.commit()
        set_run_context(user_id=user.id, run_id=run.id)
        run_id, user_id, instruction_id = run.id, user.id, instruction.id

        try:
            return await self._loop(run, run_key, user, event, instruction, now, related_tasks)
        except Exception as e:
            logger.error(f"[AGENT] Run {run_id} aborted: {e!r}")
            await self._abort(run_id, user_id, instruction_id, e)
            raise

    async def _loop(
        self,
        run: AgentRun,
        run_key: str,
        user: User,
        event: InboundEvent,
        instruction: StandingInstruction,
        now: datetime,
        related_tasks: Optional[List[Task]],
    ) -> AgentRunResult:
        system = build_system_prompt(user, now)
        tools = get_agent_tools(now)
        messages: List[Dict[str, Any]] = [
            {"role": "user", "content": build_run_prompt(event, instruction, related_tasks)},
        ]
        rounds_log: List[Dict[str, Any]] = []
        all_results: List[Dict[str, Any]] = []
        last_text = ""
        final_text = ""
        outcome = RunOutcome.EXHAUSTED

        logger.info(
            f"[AGENT] Run {run.id} started: instruction {instruction.id} on {event.event_ref}"
        )

        for round_index in range(self.max_rounds):
            logger.info(f"[AGENT] Round {round_index + 1}/{self.max_rounds}")

            # ── Propose ───────────────────────────────────────
            try:
                reply = await self.oracle.chat(messages, system=system, tools=tools)
            except OracleUnavailableError as e:
                logger.error(f"[AGENT] Oracle failed in round {round_index + 1}: {e.reason} {e.message}")
                await self._finish(run, RunOutcome.ERRORED, rounds_log, last_text, error=e.message)
                self._emit(
                    user.id,
                    NotificationType.ERROR,
                    "AI Service Unavailable",
                    e.user_message,
                    NotificationSeverity.ERROR,
                    metadata={"run_id": run.id, "instruction_id": instruction.id, "reason": e.reason},
                    dedupe_key=f"oracle:{e.reason}",
                )
                return AgentRunResult(
                    run_id=run.id,
                    outcome=RunOutcome.ERRORED,
                    rounds=round_index,
                    final_text=last_text,
                    tool_results=all_results,
                    user_message=e.user_message,
                    error=e.message,
                )

            if reply.content:
                last_text = reply.content

            assistant_content: List[Dict[str, Any]] = []
            if reply.content:
                assistant_content.append({"type": "text", "text": reply.content})
            for tc in reply.tool_calls:
                assistant_content.append({
                    "type": "tool_use",
                    "id": tc.id,
                    "name": tc.name,
                    "input": tc.arguments_json,
                })
            if assistant_content:
                messages.append({"role": "assistant", "content": assistant_content})

            # ── Done ──────────────────────────────────────────
            if not reply.tool_calls:
                final_text = reply.content or ""
                outcome = RunOutcome.COMPLETED
                break

            # ── Execute ───────────────────────────────────────
            ctx = ToolContext(
                user_id=user.id,
                user_email=user.email,
                run_key=run_key,
                agent_run_id=run.id,
                round_index=round_index,
                now=now,
            )
            tool_results: List[Dict[str, Any]] = []
            round_entries: List[Dict[str, Any]] = []
            for tc in reply.tool_calls:
                logger.info(f"[AGENT] Tool called: {tc.name}({tc.arguments_json[:200]})")
                result = await self.tools.execute(tc.id, tc.name, tc.arguments_json, ctx)
                self._notify_tool_outcome(user, instruction, run, result)

                content = result.to_content()
                logger.info(f"[AGENT] Tool result: {content[:200]}")
                tool_results.append({
                    "type": "tool_result",
                    "tool_use_id": tc.id,
                    "content": content,
                })
                entry = {**result.to_dict(), "arguments": tc.arguments_json[:2000]}
                round_entries.append(entry)
                all_results.append(entry)

            messages.append({"role": "user", "content": tool_results})
            rounds_log.append({"round": round_index + 1, "tool_calls": round_entries})
            run.rounds_json = json.dumps(rounds_log, default=str)
            await self.db.commit()

        else:
            # Round budget reached
            final_text = last_text or EXHAUSTED_NOTICE
            logger.warning(f"[AGENT] Run {run.id} exhausted its {self.max_rounds} rounds")

        await self._finish(run, outcome, rounds_log, final_text)
        logger.info(f"[AGENT] Run {run.id} {outcome.value} after {len(rounds_log)} tool round(s)")
        return AgentRunResult(
            run_id=run.id,
            outcome=outcome,
            rounds=len(rounds_log) + (1 if outcome == RunOutcome.COMPLETED else 0),
            final_text=final_text,
            tool_results=all_results,
        )

    async def _abort(self, run_id: str, user_id: str, instruction_id: str, error: Exception):
        """Mark a run that died mid-loop as errored; the error itself still propagates."""
        detail = f"{type(error).__name__}: {error}"[:2000]
        try:
            await self.db.rollback()
            await self.db.execute(
                update(AgentRun)
                .where(AgentRun.id == run_id, AgentRun.outcome == RunOutcome.RUNNING.value)
                .values(outcome=RunOutcome.ERRORED.value, error=detail, finished_at=datetime.utcnow())
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            logger.error(f"[AGENT] Could not mark run {run_id} as errored: {e}")
        self._emit(
            user_id,
            NotificationType.ERROR,
            "Instruction Run Failed",
            f"An instruction stopped before finishing: {detail[:300]}",
            NotificationSeverity.ERROR,
            metadata={"run_id": run_id, "instruction_id": instruction_id},
            dedupe_key=f"run_failed:{type(error).__name__}",
        )

    def _emit(self, *args, **kwargs):
        if self.notifier is not None:
            self.notifier.emit(*args, **kwargs)

    async def _finished_run(self, run_key: str) -> Optional[AgentRun]:
        result = await self.db.execute(
            select(AgentRun).where(
                AgentRun.run_key == run_key,
                AgentRun.outcome.in_([RunOutcome.COMPLETED.value, RunOutcome.EXHAUSTED.value]),
            ).limit(1)
        )
        return result.scalar_one_or_none()

    async def _finish(
        self,
        run: AgentRun,
        outcome: RunOutcome,
        rounds_log: List[Dict[str, Any]],
        final_text: str,
        error: Optional[str] = None,
    ):
        run.outcome = outcome.value
        run.rounds_json = json.dumps(rounds_log, default=str)
        run.final_text = final_text
        run.error = error
        run.finished_at = datetime.utcnow()
        await self.db.commit()

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------
    def _notify_tool_outcome(
        self, user: User, instruction: StandingInstruction, run: AgentRun, result: ToolResult
    ):
        """Exactly one notification per side-effecting success or failure."""
        if not result.side_effecting:
            return

        metadata = {
            "run_id": run.id,
            "instruction_id": instruction.id,
            "event_ref": run.event_ref,
            "tool": result.tool_name,
        }

        if result.ok:
            if result.effect != EFFECT_PERFORMED:
                return
            ntype, title, severity = SUCCESS_NOTIFICATIONS[result.tool_name]
            self._emit(
                user.id, ntype, title, self._success_message(result), severity,
                metadata={**metadata, "result": result.data},
            )
            return

        if result.error_type in SILENT_ERROR_TYPES:
            return

        error = result.error or {}
        message = error.get("message", "unknown error")
        if result.error_type == "auth_expired":
            provider = error.get("provider", "")
            if provider == "hubspot":
                ntype, title = NotificationType.HUBSPOT_TOKEN_EXPIRED, "HubSpot Connection Expired"
                message = "Your HubSpot connection has expired. Please reconnect HubSpot so actions can continue."
            else:
                ntype, title = NotificationType.GOOGLE_TOKEN_EXPIRED, "Google Connection Expired"
                message = "Your Google connection has expired. Please reconnect Google so actions can continue."
            self._emit(
                user.id, ntype, title, message, NotificationSeverity.ERROR,
                metadata=metadata, dedupe_key=f"auth:{provider or 'google'}",
            )
            return

        self._emit(
            user.id,
            NotificationType.ERROR,
            f"Action Failed: {result.tool_name}",
            message,
            NotificationSeverity.ERROR,
            metadata=metadata,
            dedupe_key=f"{result.tool_name}:{result.error_type}:{message[:120]}",
        )

    @staticmethod
    def _success_message(result: ToolResult) -> str:
        data = result.data
        if result.tool_name == "create_contact":
            contact = data.get("contact") or {}
            who = contact.get("name") or contact.get("email") or "a new contact"
            if data.get("note_error"):
                return f"Created {who} in HubSpot, but the note could not be attached."
            return f"Created {who} in HubSpot."
        if result.tool_name == "create_calendar_event":
            ev = data.get("event") or {}
            return f"Scheduled \"{ev.get('title', 'a meeting')}\" for {ev.get('start_time', 'the agreed time')}."
        if result.tool_name == "send_email":
            return f"Sent \"{data.get('subject', '')}\" to {data.get('to', '')}."
        if result.tool_name == "add_contact_note":
            return f"Added a note to {data.get('contact_name') or 'the contact'}."
        return f"{result.tool_name} completed."
