"""
Task Ledger: multi-step or deferred intents.

Status only moves forward:

    pending → in_progress → waiting_for_response → completed | failed

Steps may be skipped, never reversed. ``cancelled`` is reachable from any
status that is not terminal.
"""

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.db.models import NotificationSeverity, NotificationType, Task, TaskPriority, TaskStatus
from app.services.notification_service import NotificationService

logger = logging.getLogger(__name__)

STATUS_RANK = {
    TaskStatus.PENDING: 0,
    TaskStatus.IN_PROGRESS: 1,
    TaskStatus.WAITING_FOR_RESPONSE: 2,
    TaskStatus.COMPLETED: 3,
    TaskStatus.FAILED: 3,
}
TERMINAL_STATUSES = {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
OPEN_STATUSES = [TaskStatus.PENDING, TaskStatus.IN_PROGRESS, TaskStatus.WAITING_FOR_RESPONSE]


class TaskTransitionError(ValueError):
    """Requested status change would move a task backwards or out of a terminal state."""


def check_transition(current: TaskStatus, target: TaskStatus) -> None:
    current, target = TaskStatus(current), TaskStatus(target)
    if current in TERMINAL_STATUSES:
        raise TaskTransitionError(f"Task is already {current.value}")
    if target == TaskStatus.CANCELLED or target == current:
        return
    if STATUS_RANK[target] < STATUS_RANK[current]:
        raise TaskTransitionError(f"Cannot move task from {current.value} back to {target.value}")


class TaskService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_task(
        self,
        user_id: str,
        title: str,
        description: Optional[str] = None,
        priority: TaskPriority = TaskPriority.MEDIUM,
        context: Optional[Dict[str, Any]] = None,
    ) -> Task:
        task = Task(
            user_id=user_id,
            title=title,
            description=description,
            priority=TaskPriority(priority).value,
            status=TaskStatus.PENDING.value,
            context_json=json.dumps(context, default=str) if context else None,
        )
        self.db.add(task)
        await self.db.commit()
        await self.db.refresh(task)
        logger.info(f"[TASKS] Created task {task.id} '{title}' for {user_id}")
        return task

    async def get(self, user_id: str, task_id: str) -> Optional[Task]:
        result = await self.db.execute(
            select(Task).where(Task.id == task_id, Task.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def update_status(
        self,
        user_id: str,
        task_id: str,
        status: TaskStatus,
        result: Optional[str] = None,
        error: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Task:
        """Apply a forward transition; raises LookupError or TaskTransitionError."""
        task = await self.get(user_id, task_id)
        if task is None:
            raise LookupError(f"Task {task_id} not found")

        status = TaskStatus(status)
        check_transition(TaskStatus(task.status), status)
        now = now or datetime.utcnow()

        task.status = status.value
        if status == TaskStatus.IN_PROGRESS and task.started_at is None:
            task.started_at = now
        if status in TERMINAL_STATUSES:
            task.completed_at = now
        if result is not None:
            task.result = result
        if error is not None:
            task.error = error

        await self.db.commit()
        await self.db.refresh(task)
        logger.info(f"[TASKS] Task {task_id} → {status.value}")

        if status in (TaskStatus.COMPLETED, TaskStatus.FAILED):
            await self._notify_finished(task, status, now)
        return task

    async def _notify_finished(self, task: Task, status: TaskStatus, now: datetime):
        if status == TaskStatus.COMPLETED:
            ntype, title, severity = NotificationType.TASK_COMPLETED, "Task Completed", NotificationSeverity.SUCCESS
            detail = task.result
        else:
            ntype, title, severity = NotificationType.TASK_FAILED, "Task Failed", NotificationSeverity.ERROR
            detail = task.error
        message = f"{task.title}: {detail}" if detail else task.title
        await NotificationService(self.db).create(
            task.user_id, ntype, title, message, severity,
            metadata={"task_id": task.id}, now=now,
        )

    async def list_tasks(
        self, user_id: str, status: Optional[TaskStatus] = None, limit: int = 50
    ) -> List[Task]:
        query = select(Task).where(Task.user_id == user_id)
        if status is not None:
            query = query.where(Task.status == TaskStatus(status).value)
        result = await self.db.execute(query.order_by(Task.created_at.desc()).limit(limit))
        return list(result.scalars().all())

    async def list_open(self, user_id: str, limit: int = 20) -> List[Task]:
        result = await self.db.execute(
            select(Task)
            .where(Task.user_id == user_id, Task.status.in_([s.value for s in OPEN_STATUSES]))
            .order_by(Task.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def find_related_open_tasks(
        self, user_id: str, address: str = "", name: str = "", limit: int = 5
    ) -> List[Task]:
        """Open tasks whose text mentions the event sender's address or name."""
        needles = [n.strip().lower() for n in (address, name) if n and len(n.strip()) >= 3]
        if not needles:
            return []
        clauses = []
        for needle in needles:
            pattern = f"%{needle}%"
            clauses.extend([
                Task.title.ilike(pattern),
                Task.description.ilike(pattern),
                Task.context_json.ilike(pattern),
            ])
        result = await self.db.execute(
            select(Task)
            .where(
                Task.user_id == user_id,
                Task.status.in_([s.value for s in OPEN_STATUSES]),
                or_(*clauses),
            )
            .order_by(Task.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def sweep_stale(self, now: Optional[datetime] = None, hours: Optional[int] = None) -> int:
        """Mark pending tasks older than the retention window as failed."""
        now = now or datetime.utcnow()
        hours = settings.task_stale_hours if hours is None else hours
        cutoff = now - timedelta(hours=hours)
        result = await self.db.execute(
            update(Task)
            .where(Task.status == TaskStatus.PENDING.value, Task.created_at < cutoff)
            .values(
                status=TaskStatus.FAILED.value,
                error=f"stale: no progress within {hours}h",
                completed_at=now,
                updated_at=now,
            )
        )
        await self.db.commit()
        swept = result.rowcount or 0
        if swept:
            logger.info(f"[TASKS] Marked {swept} stale pending task(s) as failed")
        return swept


def task_to_dict(task: Task) -> Dict[str, Any]:
    return {
        "id": task.id,
        "title": task.title,
        "description": task.description,
        "status": task.status,
        "priority": task.priority,
        "context": json.loads(task.context_json) if task.context_json else None,
        "result": task.result,
        "error": task.error,
        "created_at": task.created_at.isoformat() if task.created_at else None,
    }
