"""Task ledger endpoints"""

import json
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user
from app.db import Task, TaskStatus, get_db
from app.schemas import TaskListResponse, TaskResponse
from app.services.task_service import TaskService, TaskTransitionError

router = APIRouter(prefix="/tasks", tags=["Tasks"])


def task_to_response(task: Task) -> TaskResponse:
    return TaskResponse(
        id=task.id,
        title=task.title,
        description=task.description,
        status=task.status,
        priority=task.priority,
        context=json.loads(task.context_json) if task.context_json else None,
        result=task.result,
        error=task.error,
        started_at=task.started_at,
        completed_at=task.completed_at,
        created_at=task.created_at,
    )


@router.get("", response_model=TaskListResponse)
async def list_tasks(
    status: Optional[TaskStatus] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    current_user=Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    tasks = await TaskService(db).list_tasks(current_user.id, status=status, limit=limit)
    return TaskListResponse(tasks=[task_to_response(t) for t in tasks], total=len(tasks))


@router.post("/{task_id}/cancel", response_model=TaskResponse)
async def cancel_task(
    task_id: str,
    current_user=Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        task = await TaskService(db).update_status(current_user.id, task_id, TaskStatus.CANCELLED)
    except LookupError:
        raise HTTPException(status_code=404, detail="Task not found")
    except TaskTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return task_to_response(task)
