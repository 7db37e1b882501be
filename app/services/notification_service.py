"""
Notification Sink: user-visible outcome records.

Two layers:
  * NotificationService: CRUD against the notifications table (the read
    side used by the API, plus debounced creation).
  * NotificationSink: a non-blocking outbox used by the agent loop. emit()
    schedules the write on a background task and returns immediately;
    write failures are logged and swallowed.
"""

import asyncio
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.db.models import Notification, NotificationSeverity, NotificationType

logger = logging.getLogger(__name__)


class NotificationService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(
        self,
        user_id: str,
        type: NotificationType,
        title: str,
        message: str,
        severity: NotificationSeverity = NotificationSeverity.INFO,
        metadata: Optional[Dict[str, Any]] = None,
        dedupe_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Notification]:
        """
        Insert a notification.

        When ``dedupe_key`` is given and an identical (user, type, key)
        notification exists inside the debounce window, nothing is written
        and None is returned.
        """
        now = now or datetime.utcnow()
        type_value = NotificationType(type).value

        if dedupe_key:
            window_start = now - timedelta(minutes=settings.notification_debounce_minutes)
            existing = await self.db.execute(
                select(Notification.id).where(
                    Notification.user_id == user_id,
                    Notification.type == type_value,
                    Notification.dedupe_key == dedupe_key,
                    Notification.created_at >= window_start,
                ).limit(1)
            )
            if existing.scalar_one_or_none() is not None:
                logger.info(f"[NOTIFY] Debounced {type_value} ({dedupe_key}) for {user_id}")
                return None

        notification = Notification(
            user_id=user_id,
            type=type_value,
            title=title,
            message=message,
            severity=NotificationSeverity(severity).value,
            metadata_json=json.dumps(metadata, default=str) if metadata else None,
            dedupe_key=dedupe_key,
            created_at=now,
        )
        self.db.add(notification)
        await self.db.commit()
        return notification

    async def get_unread(self, user_id: str, limit: int = 20) -> List[Notification]:
        result = await self.db.execute(
            select(Notification)
            .where(Notification.user_id == user_id, Notification.is_read == False)
            .order_by(Notification.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_all(self, user_id: str, limit: int = 50) -> List[Notification]:
        result = await self.db.execute(
            select(Notification)
            .where(Notification.user_id == user_id)
            .order_by(Notification.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_unread(self, user_id: str) -> int:
        result = await self.db.execute(
            select(func.count(Notification.id)).where(
                Notification.user_id == user_id, Notification.is_read == False
            )
        )
        return result.scalar() or 0

    async def mark_as_read(self, user_id: str, notification_ids: List[str]) -> int:
        if not notification_ids:
            return 0
        result = await self.db.execute(
            update(Notification)
            .where(Notification.user_id == user_id, Notification.id.in_(notification_ids))
            .values(is_read=True)
        )
        await self.db.commit()
        return result.rowcount or 0

    async def mark_all_as_read(self, user_id: str) -> int:
        result = await self.db.execute(
            update(Notification)
            .where(Notification.user_id == user_id, Notification.is_read == False)
            .values(is_read=True)
        )
        await self.db.commit()
        return result.rowcount or 0

    async def delete_old(self, days: Optional[int] = None, now: Optional[datetime] = None) -> int:
        """Delete read notifications older than the retention window."""
        days = settings.notification_retention_days if days is None else days
        cutoff = (now or datetime.utcnow()) - timedelta(days=days)
        result = await self.db.execute(
            delete(Notification).where(Notification.created_at < cutoff, Notification.is_read == True)
        )
        await self.db.commit()
        return result.rowcount or 0


class NotificationSink:
    """
    Fire-and-forget notification outbox.

    emit() never raises and never awaits the database. Pending writes can be
    drained with flush() (shutdown, end of a poll cycle, tests).
    """

    def __init__(self, session_factory: Callable[[], Any]):
        self._session_factory = session_factory
        self._pending: Set[asyncio.Task] = set()
        # (user_id, type, dedupe_key) -> [lock, holders]; writes sharing a key run one at a time
        self._key_locks: Dict[Tuple[str, str, str], List[Any]] = {}
        self.written = 0
        self.failed = 0

    def emit(
        self,
        user_id: str,
        type: NotificationType,
        title: str,
        message: str,
        severity: NotificationSeverity = NotificationSeverity.INFO,
        metadata: Optional[Dict[str, Any]] = None,
        dedupe_key: Optional[str] = None,
    ) -> None:
        try:
            task = asyncio.get_running_loop().create_task(
                self._write(user_id, type, title, message, severity, metadata, dedupe_key)
            )
        except Exception as e:
            self.failed += 1
            logger.error(f"[NOTIFY] Could not schedule {type} notification: {e}")
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write(self, user_id, type, title, message, severity, metadata, dedupe_key):
        if not dedupe_key:
            await self._store(user_id, type, title, message, severity, metadata, dedupe_key)
            return

        lock_key = (user_id, getattr(type, "value", type), dedupe_key)
        entry = self._key_locks.setdefault(lock_key, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                await self._store(user_id, type, title, message, severity, metadata, dedupe_key)
        finally:
            entry[1] -= 1
            if not entry[1]:
                self._key_locks.pop(lock_key, None)

    async def _store(self, user_id, type, title, message, severity, metadata, dedupe_key):
        try:
            async with self._session_factory() as session:
                created = await NotificationService(session).create(
                    user_id=user_id,
                    type=type,
                    title=title,
                    message=message,
                    severity=severity,
                    metadata=metadata,
                    dedupe_key=dedupe_key,
                )
            if created is not None:
                self.written += 1
        except Exception as e:
            self.failed += 1
            logger.error(f"[NOTIFY] Failed to write {type} notification for {user_id}: {e}")

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def flush(self):
        """Wait for every scheduled write to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
