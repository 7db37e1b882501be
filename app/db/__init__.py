from app.db.models import (
    Base, User,
    # Synced provider records
    Email, Contact, ContactNote, CalendarEvent,
    # Instruction engine
    StandingInstruction, Task, Notification, WebhookEvent, AgentRun, ToolInvocation,
    TriggerType, TaskStatus, TaskPriority, NotificationType, NotificationSeverity, RunOutcome,
)
from app.db.database import get_db, init_db, drop_db, async_session_maker, engine

__all__ = [
    "Base",
    "User",
    # Synced provider records
    "Email",
    "Contact",
    "ContactNote",
    "CalendarEvent",
    # Instruction engine
    "StandingInstruction",
    "Task",
    "Notification",
    "WebhookEvent",
    "AgentRun",
    "ToolInvocation",
    "TriggerType",
    "TaskStatus",
    "TaskPriority",
    "NotificationType",
    "NotificationSeverity",
    "RunOutcome",
    # Database
    "get_db",
    "init_db",
    "drop_db",
    "async_session_maker",
    "engine",
]
