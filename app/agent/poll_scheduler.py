"""
Poll Scheduler: the proactive timer.

Owns an APScheduler AsyncIOScheduler with three interval jobs:

  proactive_poll     every poll_interval_minutes: detect + dispatch for
                     every user with an active instruction
  task_sweep         every task_sweep_interval_minutes: fail stale
                     pending tasks
  notification_gc    daily: delete old read notifications

There is no module-level instance. main.py builds one in the lifespan
and calls start()/stop(). A tick that fires while the previous one is
still running is skipped.
"""

import logging
from typing import Any, Callable, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.config import settings
from app.services.notification_service import NotificationService
from app.services.task_service import TaskService

logger = logging.getLogger(__name__)


class PollScheduler:
    def __init__(
        self,
        dispatcher,
        session_factory: Optional[Callable[[], Any]] = None,
        interval_minutes: Optional[int] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self.dispatcher = dispatcher
        self.session_factory = session_factory or dispatcher.session_factory
        self.interval_minutes = interval_minutes or settings.poll_interval_minutes
        self.scheduler = scheduler or AsyncIOScheduler()
        self._in_flight = False
        self.ticks_run = 0
        self.ticks_skipped = 0

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self):
        """Register jobs and start the scheduler."""
        self.scheduler.add_job(
            self.tick,
            IntervalTrigger(minutes=self.interval_minutes),
            id="proactive_poll",
            name="Proactive poll",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.add_job(
            self.sweep_tasks,
            IntervalTrigger(minutes=settings.task_sweep_interval_minutes),
            id="task_sweep",
            name="Stale task sweep",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.cleanup_notifications,
            IntervalTrigger(days=1),
            id="notification_gc",
            name="Notification cleanup",
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(f"[POLLER] Started, polling every {self.interval_minutes} minute(s)")

    async def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        notifier = getattr(self.dispatcher, "notifier", None)
        if notifier is not None:
            await notifier.flush()
        logger.info("[POLLER] Stopped")

    async def tick(self) -> Optional[Dict[str, Any]]:
        """One proactive cycle. Returns None when skipped."""
        if self._in_flight:
            self.ticks_skipped += 1
            logger.info("[POLLER] Previous tick still running; skipping")
            return None

        self._in_flight = True
        try:
            results = await self.dispatcher.poll_all_users()
            self.ticks_run += 1
            processed = sum(r.events_processed for r in results.values())
            failed = [uid for uid, r in results.items() if r.error]
            logger.info(
                f"[POLLER] Tick complete: {len(results)} user(s), {processed} event(s)"
                + (f", {len(failed)} user(s) failed" if failed else "")
            )
            return {uid: r.to_dict() for uid, r in results.items()}
        except Exception as e:
            logger.error(f"[POLLER] Tick failed: {e}", exc_info=True)
            return {}
        finally:
            self._in_flight = False

    async def sweep_tasks(self) -> int:
        try:
            async with self.session_factory() as db:
                return await TaskService(db).sweep_stale()
        except Exception as e:
            logger.error(f"[POLLER] Task sweep failed: {e}")
            return 0

    async def cleanup_notifications(self) -> int:
        try:
            async with self.session_factory() as db:
                deleted = await NotificationService(db).delete_old()
            if deleted:
                logger.info(f"[POLLER] Deleted {deleted} old notification(s)")
            return deleted
        except Exception as e:
            logger.error(f"[POLLER] Notification cleanup failed: {e}")
            return 0
