"""
Database models for the Advisor Agent

This implements the durable side of the instruction engine:
- Synced provider records (emails, contacts, notes, calendar events) whose
  provider-native ids are the de-duplication keys for inbound events
- Standing instructions, tasks and notifications owned by a user
- Audit trail of agent runs and an idempotency ledger for tool side effects
"""

from datetime import datetime
from typing import Optional, List
from enum import Enum
import uuid

from sqlalchemy import (
    String, Text, DateTime, Integer, Boolean, ForeignKey, Index
)
from sqlalchemy.orm import relationship, Mapped, mapped_column
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class TriggerType(str, Enum):
    """Category of event that activates a standing instruction"""
    NEW_EMAIL = "new_email"
    NEW_CONTACT = "new_contact"
    NEW_CALENDAR_EVENT = "new_calendar_event"
    EMAIL_RESPONSE = "email_response"
    CALENDAR_RESPONSE = "calendar_response"
    CRM_UPDATE = "crm_update"


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    WAITING_FOR_RESPONSE = "waiting_for_response"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class NotificationType(str, Enum):
    NEW_CONTACT_CREATED = "new_contact_created"
    NEW_EMAIL_PROCESSED = "new_email_processed"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    CALENDAR_EVENT_CREATED = "calendar_event_created"
    HUBSPOT_TOKEN_EXPIRED = "hubspot_token_expired"
    GOOGLE_TOKEN_EXPIRED = "google_token_expired"
    PROACTIVE_ACTION = "proactive_action"
    ERROR = "error"


class NotificationSeverity(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class RunOutcome(str, Enum):
    """Lifecycle of one agent run; everything but RUNNING is terminal"""
    RUNNING = "running"
    COMPLETED = "completed"     # Oracle stopped proposing tool calls
    EXHAUSTED = "exhausted"     # Round budget reached
    ERRORED = "errored"         # Oracle failure aborted the run


class User(Base):
    """User model with connected provider credentials"""
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(255))

    # Google OAuth (Gmail + Calendar)
    google_access_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    google_refresh_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # HubSpot OAuth
    hubspot_access_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    hubspot_refresh_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    hubspot_connected: Mapped[bool] = mapped_column(Boolean, default=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    instructions: Mapped[List["StandingInstruction"]] = relationship("StandingInstruction", back_populates="user")
    tasks: Mapped[List["Task"]] = relationship("Task", back_populates="user")


class Email(Base):
    """Gmail message synced by the email detector"""
    __tablename__ = "emails"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), index=True)
    gmail_id: Mapped[str] = mapped_column(String(255), unique=True)  # Provider message id (dedupe key)
    thread_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    subject: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sender: Mapped[str] = mapped_column(String(512))
    recipient: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    body: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    date: Mapped[datetime] = mapped_column(DateTime)
    labels_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_emails_user_date", "user_id", "date"),
        Index("ix_emails_user_sender", "user_id", "sender"),
    )


class Contact(Base):
    """HubSpot contact mirrored locally"""
    __tablename__ = "contacts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), index=True)
    hubspot_id: Mapped[str] = mapped_column(String(64), unique=True)  # External CRM id (dedupe key)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    first_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    company: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    job_title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    contact_notes: Mapped[List["ContactNote"]] = relationship("ContactNote", back_populates="contact")

    __table_args__ = (
        Index("ix_contacts_user_email", "user_id", "email"),
    )

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)


class ContactNote(Base):
    """Note attached to a HubSpot contact"""
    __tablename__ = "contact_notes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), index=True)
    contact_id: Mapped[str] = mapped_column(String(36), ForeignKey("contacts.id"), index=True)
    hubspot_id: Mapped[str] = mapped_column(String(64), unique=True)
    note: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    contact: Mapped["Contact"] = relationship("Contact", back_populates="contact_notes")


class CalendarEvent(Base):
    """Google Calendar event synced by the calendar detector"""
    __tablename__ = "calendar_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), index=True)
    google_id: Mapped[str] = mapped_column(String(255), unique=True)  # Provider event id (dedupe key)
    title: Mapped[str] = mapped_column(String(512))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    start_time: Mapped[datetime] = mapped_column(DateTime)
    end_time: Mapped[datetime] = mapped_column(DateTime)
    attendees_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # JSON list of emails
    location: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)  # confirmed | tentative | cancelled
    organizer: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_calendar_events_user_start", "user_id", "start_time"),
    )


class StandingInstruction(Base):
    """
    A user-authored rule describing what the agent does when a trigger fires.

    Instructions are never physically deleted: they are disabled through
    is_active so that agent run history keeps pointing at them.
    """
    __tablename__ = "standing_instructions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), index=True)
    instruction_text: Mapped[str] = mapped_column(Text)
    trigger_type: Mapped[str] = mapped_column(String(32))  # TriggerType enum
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    conditions_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user: Mapped["User"] = relationship("User", back_populates="instructions")

    __table_args__ = (
        Index("ix_instructions_user_trigger_active", "user_id", "trigger_type", "is_active"),
    )


class Task(Base):
    """Durable multi-step or deferred intent (e.g. waiting for a scheduling reply)"""
    __tablename__ = "tasks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), index=True)
    title: Mapped[str] = mapped_column(String(512))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(32), default=TaskStatus.PENDING.value)  # TaskStatus enum
    priority: Mapped[str] = mapped_column(String(16), default=TaskPriority.MEDIUM.value)  # TaskPriority enum
    context_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    result: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user: Mapped["User"] = relationship("User", back_populates="tasks")

    __table_args__ = (
        Index("ix_tasks_user_status", "user_id", "status"),
    )


class Notification(Base):
    """Append-only, user-visible outcome entry"""
    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"))
    type: Mapped[str] = mapped_column(String(40))  # NotificationType enum
    title: Mapped[str] = mapped_column(String(255))
    message: Mapped[str] = mapped_column(Text)
    severity: Mapped[str] = mapped_column(String(16), default=NotificationSeverity.INFO.value)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    dedupe_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)  # Debounce identity
    metadata_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_notifications_user_read_created", "user_id", "is_read", "created_at"),
        Index("ix_notifications_user_type_created", "user_id", "type", "created_at"),
    )


class WebhookEvent(Base):
    """Raw push payload received from a provider"""
    __tablename__ = "webhook_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("users.id"), nullable=True, index=True)
    source: Mapped[str] = mapped_column(String(32))  # gmail | calendar | hubspot
    event_type: Mapped[str] = mapped_column(String(128))
    payload_json: Mapped[str] = mapped_column(Text)
    processed: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class AgentRun(Base):
    """
    One execution of the agent loop for an (instruction, event) pair.

    rounds_json holds the ordered list of rounds, each with the tool calls
    the oracle proposed and the results fed back. Rows are not updated after
    the outcome leaves RUNNING.
    """
    __tablename__ = "agent_runs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), index=True)
    instruction_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("standing_instructions.id"), nullable=True, index=True)
    event_ref: Mapped[str] = mapped_column(String(300))  # "<trigger_type>:<source_id>"
    run_key: Mapped[str] = mapped_column(String(64), index=True)  # Stable across re-delivery of the same pair
    rounds_json: Mapped[str] = mapped_column(Text, default="[]")
    outcome: Mapped[str] = mapped_column(String(16), default=RunOutcome.RUNNING.value)  # RunOutcome enum
    final_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    catalog_version: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class ToolInvocation(Base):
    """
    Idempotency ledger for side-effecting tool calls.

    The unique idempotency_key lets a re-delivered round replay the stored
    result instead of repeating the external side effect.
    """
    __tablename__ = "tool_invocations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), index=True)
    agent_run_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("agent_runs.id"), nullable=True, index=True)
    idempotency_key: Mapped[str] = mapped_column(String(64), unique=True)
    tool_name: Mapped[str] = mapped_column(String(64))
    arguments_json: Mapped[str] = mapped_column(Text)
    result_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16))  # completed | failed
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
