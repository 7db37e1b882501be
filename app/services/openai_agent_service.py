"""
OpenAI Agent Service: the reasoning oracle behind the agent loop.

Uses OpenAI's chat completion API with tool calling. The agent loop keeps
its history in Anthropic-style content blocks (text / tool_use /
tool_result); this service converts them to OpenAI messages on every call
and returns a single ``OracleReply``.

Any failure that survives the retries (quota exhausted, outage, timeout)
is raised as ``OracleUnavailableError`` so the loop can abort the run.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional

from openai import (
    AsyncOpenAI, RateLimitError, APIConnectionError, APITimeoutError, APIStatusError, APIError,
)

from app.agent.errors import OracleUnavailableError
from app.config import settings

logger = logging.getLogger(__name__)


@dataclass
class ToolCall:
    """One tool invocation proposed by the oracle."""
    id: str
    name: str
    arguments_json: str = "{}"


@dataclass
class OracleReply:
    content: Optional[str] = None
    tool_calls: List[ToolCall] = field(default_factory=list)
    finish_reason: str = ""
    usage: Dict[str, int] = field(default_factory=dict)


def _anthropic_tools_to_openai(tools: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Convert Anthropic-format tool definitions to OpenAI function-calling format.

    Anthropic:  { name, description, input_schema: {...} }
    OpenAI:     { type: "function", function: { name, description, parameters: {...} } }
    """
    openai_tools = []
    for tool in tools:
        openai_tools.append({
            "type": "function",
            "function": {
                "name": tool["name"],
                "description": tool.get("description", ""),
                "parameters": tool.get("input_schema", {"type": "object", "properties": {}}),
            },
        })
    return openai_tools


def _is_quota_error(exc: RateLimitError) -> bool:
    body = getattr(exc, "body", None) or {}
    code = body.get("code") if isinstance(body, dict) else None
    if code is None and isinstance(body, dict):
        code = (body.get("error") or {}).get("code")
    return code == "insufficient_quota" or "quota" in str(exc).lower()


class OpenAIAgentService:
    """OpenAI-based reasoning oracle: ``chat(history, tools) -> OracleReply``."""

    def __init__(self, client: Optional[AsyncOpenAI] = None):
        api_key = settings.openai_api_key
        if client is None and not api_key:
            logger.warning("OPENAI_API_KEY not set; OpenAIAgentService will fail on calls")
        self.client = client or AsyncOpenAI(api_key=api_key or "missing", max_retries=0)
        self.default_model = settings.agent_model
        self.fallback_model = settings.agent_fallback_model
        self.default_max_tokens = settings.agent_max_tokens
        self.timeout = settings.oracle_timeout_seconds
        self.max_retries = settings.oracle_max_retries

    async def chat(
        self,
        messages: List[Dict[str, Any]],
        system: str = "",
        tools: Optional[List[Dict[str, Any]]] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> OracleReply:
        """
        Run one chat completion with ``tool_choice=auto``.

        Rate limits and connection errors are retried with exponential
        backoff; the fallback model gets one attempt after that. Quota
        exhaustion is not retried.
        """
        models = [model or self.default_model]
        if self.fallback_model and self.fallback_model not in models:
            models.append(self.fallback_model)

        kwargs: Dict[str, Any] = dict(
            messages=self._build_openai_messages(system, messages),
            max_tokens=max_tokens or self.default_max_tokens,
            temperature=settings.agent_temperature if temperature is None else temperature,
        )
        if tools:
            kwargs["tools"] = _anthropic_tools_to_openai(tools)
            kwargs["tool_choice"] = "auto"

        last_error: Optional[OracleUnavailableError] = None
        for index, current_model in enumerate(models):
            attempts = self.max_retries + 1 if index == 0 else 1
            for attempt in range(attempts):
                try:
                    response = await asyncio.wait_for(
                        self.client.chat.completions.create(model=current_model, **kwargs),
                        timeout=self.timeout,
                    )
                    return self._parse_response(response)
                except RateLimitError as e:
                    if _is_quota_error(e):
                        logger.error(f"[ORACLE] Quota exceeded on {current_model}: {e}")
                        raise OracleUnavailableError(str(e), reason="quota_exceeded")
                    last_error = OracleUnavailableError(str(e), reason="rate_limited")
                    logger.warning(f"[ORACLE] {current_model} rate-limited (attempt {attempt + 1})")
                except (asyncio.TimeoutError, APITimeoutError):
                    last_error = OracleUnavailableError(
                        f"no reply within {self.timeout}s", reason="timeout"
                    )
                    logger.warning(f"[ORACLE] {current_model} timed out (attempt {attempt + 1})")
                except APIConnectionError as e:
                    last_error = OracleUnavailableError(str(e), reason="connection")
                    logger.warning(f"[ORACLE] {current_model} connection error (attempt {attempt + 1}): {e}")
                except APIStatusError as e:
                    last_error = OracleUnavailableError(f"{e.status_code}: {e.message}", reason="unavailable")
                    logger.warning(f"[ORACLE] {current_model} returned {e.status_code}")
                    break  # a 4xx/5xx from this model will not improve on retry
                except APIError as e:
                    last_error = OracleUnavailableError(str(e), reason="invalid_response")
                    logger.warning(f"[ORACLE] {current_model} API error: {e}")
                    break
                except (IndexError, AttributeError, TypeError) as e:
                    last_error = OracleUnavailableError(f"malformed completion: {e!r}", reason="invalid_response")
                    logger.warning(f"[ORACLE] {current_model} returned an unreadable completion: {e!r}")
                    break

                if attempt < attempts - 1:
                    await asyncio.sleep(2 ** attempt)

            if index + 1 < len(models):
                logger.warning(f"[ORACLE] Falling back from {current_model} to {models[index + 1]}")

        raise last_error or OracleUnavailableError("no model produced a reply")

    def _parse_response(self, response) -> OracleReply:
        choice = response.choices[0]
        message = choice.message
        tool_calls = [
            ToolCall(
                id=tc.id,
                name=tc.function.name,
                arguments_json=tc.function.arguments or "{}",
            )
            for tc in (message.tool_calls or [])
        ]
        usage = {}
        if getattr(response, "usage", None):
            usage = {
                "input_tokens": response.usage.prompt_tokens or 0,
                "output_tokens": response.usage.completion_tokens or 0,
            }
        return OracleReply(
            content=message.content,
            tool_calls=tool_calls,
            finish_reason=choice.finish_reason or "",
            usage=usage,
        )

    # ------------------------------------------------------------------
    # Message format conversion
    # ------------------------------------------------------------------
    def _convert_message(self, msg: Dict[str, Any]) -> Dict[str, Any]:
        """
        Convert the loop's Anthropic-style messages to OpenAI format.

        Handles:
        - Simple string content → pass through
        - List content with text/tool_use blocks → OpenAI assistant message with tool_calls
        - List content with tool_result blocks → multiple "tool" role messages
        """
        role = msg["role"]
        content = msg["content"]

        if isinstance(content, str):
            return {"role": role, "content": content}

        if isinstance(content, list):
            if content and isinstance(content[0], dict) and content[0].get("type") == "tool_result":
                return {
                    "_multi": True,
                    "messages": [
                        {
                            "role": "tool",
                            "tool_call_id": block["tool_use_id"],
                            "content": block.get("content", ""),
                        }
                        for block in content
                        if block.get("type") == "tool_result"
                    ],
                }

            text_parts = []
            tool_calls = []
            for block in content:
                if isinstance(block, dict):
                    if block.get("type") == "text":
                        text_parts.append(block.get("text", ""))
                    elif block.get("type") == "tool_use":
                        raw = block.get("input", {})
                        tool_calls.append({
                            "id": block["id"],
                            "type": "function",
                            "function": {
                                "name": block["name"],
                                "arguments": raw if isinstance(raw, str) else json.dumps(raw),
                            },
                        })

            result: Dict[str, Any] = {"role": "assistant"}
            result["content"] = "\n".join(text_parts) if text_parts else None
            if tool_calls:
                result["tool_calls"] = tool_calls
            return result

        return {"role": role, "content": str(content)}

    def _build_openai_messages(self, system: str, messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Convert a full message list, expanding multi-messages."""
        oai: List[Dict[str, Any]] = []
        if system:
            oai.append({"role": "system", "content": system})
        for msg in messages:
            converted = self._convert_message(msg)
            if converted.get("_multi"):
                oai.extend(converted["messages"])
            else:
                oai.append(converted)
        return oai


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------
_service: Optional[OpenAIAgentService] = None


def get_openai_agent_service() -> OpenAIAgentService:
    global _service
    if _service is None:
        _service = OpenAIAgentService()
    return _service
