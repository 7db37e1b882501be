"""Pydantic schemas for API request/response validation"""

from datetime import datetime
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field

from app.db.models import NotificationSeverity, NotificationType, TaskPriority, TaskStatus, TriggerType


# ============ Standing Instructions ============

class InstructionCreate(BaseModel):
    instruction_text: str = Field(..., min_length=1, max_length=4000)
    trigger_type: TriggerType
    conditions: Optional[Dict[str, Any]] = None


class InstructionUpdate(BaseModel):
    is_active: bool


class InstructionResponse(BaseModel):
    id: str
    instruction_text: str
    trigger_type: TriggerType
    is_active: bool
    conditions: Optional[Dict[str, Any]] = None
    created_at: datetime
    updated_at: Optional[datetime] = None


class InstructionListResponse(BaseModel):
    instructions: List[InstructionResponse]
    total: int


# ============ Notifications ============

class NotificationResponse(BaseModel):
    id: str
    type: NotificationType
    title: str
    message: str
    severity: NotificationSeverity
    is_read: bool
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime


class NotificationListResponse(BaseModel):
    notifications: List[NotificationResponse]
    unread_count: int


class MarkReadRequest(BaseModel):
    """Either explicit ids or all=True"""
    notification_ids: Optional[List[str]] = None
    all: bool = False


class MarkReadResponse(BaseModel):
    updated: int
    unread_count: int


# ============ Tasks ============

class TaskResponse(BaseModel):
    id: str
    title: str
    description: Optional[str] = None
    status: TaskStatus
    priority: TaskPriority
    context: Optional[Dict[str, Any]] = None
    result: Optional[str] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime


class TaskListResponse(BaseModel):
    tasks: List[TaskResponse]
    total: int


# ============ Proactive ============

class AgentRunSummary(BaseModel):
    run_id: str
    outcome: str
    rounds: int
    final_text: str = ""
    skipped: bool = False


class PollResponse(BaseModel):
    user_id: str
    events_processed: int
    runs: List[AgentRunSummary] = Field(default_factory=list)
    error: Optional[str] = None


class WebhookResponse(BaseModel):
    success: bool = True
    source: str
    accepted: bool
    events_processed: int = 0
    detail: str = ""
