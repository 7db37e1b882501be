from app.api.deps import get_current_user, get_dispatcher
from app.api.instructions import router as instructions_router
from app.api.notifications import router as notifications_router
from app.api.tasks import router as tasks_router
from app.api.proactive import router as proactive_router
from app.api.webhooks import router as webhooks_router

__all__ = [
    "instructions_router",
    "notifications_router",
    "tasks_router",
    "proactive_router",
    "webhooks_router",
    "get_current_user",
    "get_dispatcher",
]
