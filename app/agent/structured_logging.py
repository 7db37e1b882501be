"""
Structured Logging: JSON log output with run correlation.

Every module logs through ``logging.getLogger(__name__)`` with a bracketed
prefix (``[AGENT]``, ``[DETECT]``, ...). This module adds an optional JSON
formatter that tags each line with its subsystem and with the user and run
currently being processed, so one agent run can be followed across the
dispatcher, the loop and the tool executor.
"""

import json
import logging
import re
import sys
import uuid
from contextvars import ContextVar
from enum import Enum
from typing import Optional

# Context variables for run correlation
run_id_var: ContextVar[str] = ContextVar("run_id", default="")
user_id_var: ContextVar[str] = ContextVar("user_id", default="")


class Subsystem(str, Enum):
    AGENT = "agent"
    TOOL = "tool"
    DETECT = "detect"
    DISPATCH = "dispatch"
    POLLER = "poller"
    NOTIFY = "notify"
    WEBHOOK = "webhook"
    ORACLE = "oracle"
    ADAPTER = "adapter"
    API = "api"


_PREFIX_RE = re.compile(r"^\[([A-Z_]+)\]")
_SUBSYSTEMS = {s.value for s in Subsystem}


def subsystem_for(record: logging.LogRecord) -> str:
    """Resolve the subsystem from an explicit extra, the message prefix, or the logger name."""
    explicit = getattr(record, "subsystem", None)
    if explicit:
        return explicit
    match = _PREFIX_RE.match(str(record.msg))
    if match and match.group(1).lower() in _SUBSYSTEMS:
        return match.group(1).lower()
    parts = record.name.split(".")
    return parts[1] if len(parts) > 1 else "general"


class StructuredFormatter(logging.Formatter):
    """JSON structured log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "subsystem": subsystem_for(record),
            "message": record.getMessage(),
            "logger": record.name,
        }

        run_id = run_id_var.get("")
        if run_id:
            log_entry["run_id"] = run_id
        usr_id = user_id_var.get("")
        if usr_id:
            log_entry["user_id"] = usr_id

        extra = getattr(record, "extra_data", None)
        if extra:
            log_entry["data"] = extra

        if record.exc_info and record.exc_info[0]:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
            }

        return json.dumps(log_entry, default=str)


_configured = False


def configure_logging(level: str = "INFO", json_output: bool = False):
    """Install a stdout handler on the ``app`` logger tree (idempotent)."""
    global _configured
    if _configured:
        return

    handler = logging.StreamHandler(sys.stdout)
    if json_output:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s"
        ))

    root = logging.getLogger("app")
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.propagate = False
    _configured = True


def set_run_context(user_id: str = "", run_id: str = ""):
    """Set context variables for the run being processed."""
    if user_id:
        user_id_var.set(user_id)
    if run_id:
        run_id_var.set(run_id)


def clear_run_context():
    run_id_var.set("")
    user_id_var.set("")


def generate_run_id(prefix: Optional[str] = None) -> str:
    """Generate a short correlation id."""
    rid = str(uuid.uuid4())[:12]
    return f"{prefix}-{rid}" if prefix else rid
