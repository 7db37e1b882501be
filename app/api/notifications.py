"""Notification feed endpoints"""

import json

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user
from app.db import Notification, get_db
from app.schemas import MarkReadRequest, MarkReadResponse, NotificationListResponse, NotificationResponse
from app.services.notification_service import NotificationService

router = APIRouter(prefix="/notifications", tags=["Notifications"])


def notification_to_response(n: Notification) -> NotificationResponse:
    return NotificationResponse(
        id=n.id,
        type=n.type,
        title=n.title,
        message=n.message,
        severity=n.severity,
        is_read=n.is_read,
        metadata=json.loads(n.metadata_json) if n.metadata_json else None,
        created_at=n.created_at,
    )


@router.get("", response_model=NotificationListResponse)
async def list_notifications(
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    current_user=Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    service = NotificationService(db)
    if unread_only:
        notifications = await service.get_unread(current_user.id, limit=limit)
    else:
        notifications = await service.get_all(current_user.id, limit=limit)
    return NotificationListResponse(
        notifications=[notification_to_response(n) for n in notifications],
        unread_count=await service.count_unread(current_user.id),
    )


@router.post("/read", response_model=MarkReadResponse)
async def mark_read(
    body: MarkReadRequest,
    current_user=Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Mark the given notifications (or all of them) as read."""
    service = NotificationService(db)
    if body.all:
        updated = await service.mark_all_as_read(current_user.id)
    else:
        updated = await service.mark_as_read(current_user.id, body.notification_ids or [])
    return MarkReadResponse(updated=updated, unread_count=await service.count_unread(current_user.id))
