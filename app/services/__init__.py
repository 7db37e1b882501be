from app.services.user_service import (
    create_user, get_user_by_id, get_user_by_email, get_users_with_active_instructions,
)
from app.services.instruction_service import InstructionService
from app.services.notification_service import NotificationService, NotificationSink
from app.services.task_service import TaskService, TaskTransitionError
from app.services.openai_agent_service import (
    OpenAIAgentService, OracleReply, ToolCall, get_openai_agent_service,
)

__all__ = [
    "create_user",
    "get_user_by_id",
    "get_user_by_email",
    "get_users_with_active_instructions",
    "InstructionService",
    "NotificationService",
    "NotificationSink",
    "TaskService",
    "TaskTransitionError",
    "OpenAIAgentService",
    "OracleReply",
    "ToolCall",
    "get_openai_agent_service",
]
