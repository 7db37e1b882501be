"""
Event dispatcher: Detectors → Instruction Matcher → Agent Loop.

One ``EventDispatcher`` owns the wiring for a process. Everything it needs
(session factory, oracle, adapters factory, notifier, clock) is injected,
so the scheduler, the HTTP API and the tests all drive the same code path.

Isolation:
  - each user in ``poll_all_users`` runs in its own try/except
  - each (instruction, event) run gets its own DB session
  - a failed run is logged and the next instruction still runs
Only a store outage aborts the rest of a user's cycle.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from app.agent.agent_runner import AgentRunner, AgentRunResult
from app.agent.detectors import CalendarDetector, EmailDetector
from app.agent.errors import StoreUnavailableError
from app.agent.events import InboundEvent, is_self_originated
from app.agent.instruction_matcher import match_instructions
from app.agent.structured_logging import clear_run_context, generate_run_id, set_run_context
from app.agent.tool_executor import ToolExecutor
from app.db.database import async_session_maker
from app.integrations import build_adapters
from app.services.task_service import TaskService
from app.services.user_service import get_user_by_id, get_users_with_active_instructions

logger = logging.getLogger(__name__)

POLL_SOURCES = ("gmail", "calendar")


@dataclass
class PollResult:
    """Outcome of one detection + dispatch cycle for a user."""
    user_id: str
    events_processed: int = 0
    runs: List[AgentRunResult] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "events_processed": self.events_processed,
            "runs": [
                {
                    "run_id": r.run_id,
                    "outcome": r.outcome.value,
                    "rounds": r.rounds,
                    "final_text": r.final_text,
                    "skipped": r.skipped,
                }
                for r in self.runs
            ],
            "error": self.error,
        }


class EventDispatcher:
    def __init__(
        self,
        session_factory: Callable[[], Any] = async_session_maker,
        oracle=None,
        adapters_factory: Callable[[Any], Any] = build_adapters,
        notifier=None,
        clock: Callable[[], datetime] = datetime.utcnow,
        max_rounds: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.oracle = oracle
        self.adapters_factory = adapters_factory
        self.notifier = notifier
        self.clock = clock
        self.max_rounds = max_rounds

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run_instructions_for_event(
        self, user_id: str, event: InboundEvent, adapters=None
    ) -> List[AgentRunResult]:
        """
        Run every active instruction matching the event's trigger type.

        Outcomes are observed through notifications; the returned results are
        informational. ``adapters`` may be passed in when the caller already
        holds a set for this user (the poll cycle does).
        """
        async with self.session_factory() as db:
            user = await get_user_by_id(db, user_id)
            if user is None:
                logger.warning(f"[DISPATCH] Unknown user {user_id}; dropping {event.event_ref}")
                return []
            if is_self_originated(event, user.email):
                logger.info(f"[DISPATCH] {event.event_ref} originated from the user; not matching")
                return []

            instructions = await match_instructions(db, user_id, event.trigger_type)
            if not instructions:
                logger.info(f"[DISPATCH] No active instructions for {event.trigger_type.value}")
                return []

            related = await TaskService(db).find_related_open_tasks(
                user_id, address=event.originator, name=event.originator_name,
            )

        owns_adapters = adapters is None
        if owns_adapters:
            adapters = self.adapters_factory(user)

        results: List[AgentRunResult] = []
        try:
            for instruction in instructions:
                logger.info(
                    f"[DISPATCH] Instruction {instruction.id} on {event.event_ref}: "
                    f"{instruction.instruction_text[:80]}"
                )
                try:
                    async with self.session_factory() as run_db:
                        runner = AgentRunner(
                            oracle=self.oracle,
                            db=run_db,
                            tool_executor=ToolExecutor(run_db, adapters),
                            notifier=self.notifier,
                            max_rounds=self.max_rounds,
                        )
                        results.append(await runner.run(
                            user, event, instruction, now=self.clock(), related_tasks=related,
                        ))
                except StoreUnavailableError:
                    raise
                except Exception as e:
                    logger.error(
                        f"[DISPATCH] Run for instruction {instruction.id} on {event.event_ref} failed: {e}",
                        exc_info=True,
                    )
        finally:
            if owns_adapters:
                await adapters.close()
        return results

    async def poll_and_dispatch(self, user_id: str, sources: Sequence[str] = POLL_SOURCES) -> PollResult:
        """Detect new emails and calendar events for a user and dispatch each."""
        poll = PollResult(user_id=user_id)
        set_run_context(user_id=user_id, run_id=generate_run_id("poll"))
        try:
            async with self.session_factory() as db:
                user = await get_user_by_id(db, user_id)
            if user is None or not user.is_active:
                poll.error = "user not found"
                return poll

            adapters = self.adapters_factory(user)
            try:
                now = self.clock()
                # Detection commits each record before its event is returned
                events: List[InboundEvent] = []
                async with self.session_factory() as db:
                    if "gmail" in sources:
                        events += await EmailDetector(db, adapters.gmail, self.notifier).detect(user, now)
                    if "calendar" in sources:
                        events += await CalendarDetector(db, adapters.calendar, self.notifier).detect(user, now)

                for event in events:
                    poll.runs.extend(
                        await self.run_instructions_for_event(user_id, event, adapters=adapters)
                    )
                    poll.events_processed += 1
            finally:
                await adapters.close()
        finally:
            clear_run_context()

        logger.info(
            f"[DISPATCH] Poll for {user_id}: {poll.events_processed} event(s), {len(poll.runs)} run(s)"
        )
        return poll

    async def poll_all_users(self) -> Dict[str, PollResult]:
        """Poll every user with an active instruction, one at a time."""
        async with self.session_factory() as db:
            user_ids = [u.id for u in await get_users_with_active_instructions(db)]

        results: Dict[str, PollResult] = {}
        for user_id in user_ids:
            try:
                results[user_id] = await self.poll_and_dispatch(user_id)
            except Exception as e:
                logger.error(f"[DISPATCH] Poll failed for user {user_id}: {e}", exc_info=True)
                results[user_id] = PollResult(user_id=user_id, error=str(e))
        return results
