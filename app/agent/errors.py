"""
Error taxonomy for the instruction engine.

Adapter errors stay inside the agent loop: the executor turns them into
structured tool results and classified notifications. Only an oracle
failure (returned as an errored run) or a store failure ends a run early.
"""

from typing import Any, Dict, Optional


class AdapterError(Exception):
    """Base class for failures raised by a capability adapter."""

    kind = "adapter_error"

    def __init__(self, message: str, provider: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.kind, "message": self.message}
        if self.provider:
            data["provider"] = self.provider
        if self.status_code is not None:
            data["status_code"] = self.status_code
        return data


class TransientAdapterError(AdapterError):
    """Rate limit, 5xx or network failure that survived the adapter's own retry."""

    kind = "transient_error"


class AuthExpiredError(AdapterError):
    """OAuth credentials for a provider are missing, expired or revoked."""

    kind = "auth_expired"

    def __init__(self, provider: str, message: Optional[str] = None, status_code: Optional[int] = 401):
        super().__init__(
            message or f"{provider} connection expired; the user must reconnect",
            provider=provider,
            status_code=status_code,
        )


class ToolValidationError(Exception):
    """Oracle-supplied tool arguments that violate the tool's schema."""

    kind = "validation_error"

    def __init__(self, message: str, field: Optional[str] = None, hint: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field
        self.hint = hint

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.kind, "message": self.message}
        if self.field:
            data["field"] = self.field
        if self.hint:
            data["hint"] = self.hint
        return data


class OracleUnavailableError(Exception):
    """The reasoning oracle could not produce a reply (quota, outage, timeout)."""

    def __init__(self, message: str, reason: str = "unavailable"):
        super().__init__(message)
        self.message = message
        self.reason = reason  # quota_exceeded | timeout | connection | unavailable

    @property
    def user_message(self) -> str:
        if self.reason == "quota_exceeded":
            return (
                "The AI service quota has been exceeded, so your instructions could not run. "
                "Check the OpenAI account billing and try again."
            )
        if self.reason == "timeout":
            return "The AI service did not respond in time, so your instructions could not run."
        return f"The AI service is unavailable, so your instructions could not run: {self.message}"


class DuplicateEventError(Exception):
    """An inbound event whose source id is already materialized."""

    def __init__(self, trigger_type: str, source_id: str):
        super().__init__(f"{trigger_type}:{source_id} already processed")
        self.trigger_type = trigger_type
        self.source_id = source_id


class StoreUnavailableError(Exception):
    """The relational store could not be reached; aborts the current run."""
