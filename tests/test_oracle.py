"""
Tests for the OpenAI-backed oracle: reply parsing, history conversion and
failure classification. The SDK client is replaced by a stub.
"""

from types import SimpleNamespace

import httpx
import pytest
from openai import APIConnectionError, APIResponseValidationError, RateLimitError

from app.agent.errors import OracleUnavailableError
from app.agent.tool_definitions import get_agent_tools
from app.services.openai_agent_service import OpenAIAgentService

from tests.conftest import NOW

_REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def completion(content=None, tool_calls=None, finish_reason="stop"):
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(
        choices=[SimpleNamespace(message=message, finish_reason=finish_reason)],
        usage=SimpleNamespace(prompt_tokens=120, completion_tokens=30),
    )


def openai_tool_call(call_id, name, arguments):
    return SimpleNamespace(id=call_id, function=SimpleNamespace(name=name, arguments=arguments))


class StubCompletions:
    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.requests = []

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def make_service(outcomes):
    completions = StubCompletions(outcomes)
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    service = OpenAIAgentService(client=client)
    service.max_retries = 0
    return service, completions


def quota_exceeded():
    return RateLimitError(
        "You exceeded your current quota",
        response=httpx.Response(429, request=_REQUEST),
        body={"code": "insufficient_quota"},
    )


@pytest.mark.asyncio
async def test_tool_calls_are_parsed():
    service, completions = make_service([
        completion(tool_calls=[openai_tool_call("call_1", "search_contacts", '{"query": "bob"}')],
                   finish_reason="tool_calls"),
    ])

    reply = await service.chat([{"role": "user", "content": "hi"}], system="sys", tools=get_agent_tools(NOW))

    assert reply.tool_calls[0].name == "search_contacts"
    assert reply.tool_calls[0].arguments_json == '{"query": "bob"}'
    assert reply.finish_reason == "tool_calls"
    assert reply.usage == {"input_tokens": 120, "output_tokens": 30}

    request = completions.requests[0]
    assert request["tool_choice"] == "auto"
    assert request["tools"][0]["type"] == "function"
    assert request["messages"][0] == {"role": "system", "content": "sys"}


@pytest.mark.asyncio
async def test_quota_is_not_retried():
    service, completions = make_service([quota_exceeded(), completion("never reached")])

    with pytest.raises(OracleUnavailableError) as exc:
        await service.chat([{"role": "user", "content": "hi"}])

    assert exc.value.reason == "quota_exceeded"
    assert "quota" in exc.value.user_message.lower()
    assert len(completions.requests) == 1


@pytest.mark.asyncio
async def test_connection_error_falls_back_to_second_model():
    service, completions = make_service([APIConnectionError(request=_REQUEST), completion("Done.")])

    reply = await service.chat([{"role": "user", "content": "hi"}])

    assert reply.content == "Done."
    assert [r["model"] for r in completions.requests] == [service.default_model, service.fallback_model]


@pytest.mark.asyncio
async def test_persistent_outage_is_unavailable():
    service, _ = make_service([APIConnectionError(request=_REQUEST), APIConnectionError(request=_REQUEST)])

    with pytest.raises(OracleUnavailableError) as exc:
        await service.chat([{"role": "user", "content": "hi"}])

    assert exc.value.reason == "connection"


def test_history_is_converted_to_openai_messages():
    service, _ = make_service([])
    history = [
        {"role": "user", "content": "A new email was received"},
        {"role": "assistant", "content": [
            {"type": "text", "text": "Checking the CRM."},
            {"type": "tool_use", "id": "call_0", "name": "search_contacts", "input": '{"query": "b@x.com"}'},
            {"type": "tool_use", "id": "call_1", "name": "search_emails", "input": {"query": "b@x.com"}},
        ]},
        {"role": "user", "content": [
            {"type": "tool_result", "tool_use_id": "call_0", "content": '{"ok": true, "count": 0}'},
            {"type": "tool_result", "tool_use_id": "call_1", "content": '{"ok": true, "count": 2}'},
        ]},
    ]

    messages = service._build_openai_messages("system prompt", history)

    assert [m["role"] for m in messages] == ["system", "user", "assistant", "tool", "tool"]
    assistant = messages[2]
    assert assistant["content"] == "Checking the CRM."
    assert [tc["function"]["arguments"] for tc in assistant["tool_calls"]] == [
        '{"query": "b@x.com"}', '{"query": "b@x.com"}',
    ]
    assert [m["tool_call_id"] for m in messages[3:]] == ["call_0", "call_1"]


@pytest.mark.asyncio
async def test_unreadable_completion_is_unavailable():
    empty = SimpleNamespace(choices=[], usage=None)
    service, completions = make_service([empty, empty])

    with pytest.raises(OracleUnavailableError) as exc:
        await service.chat([{"role": "user", "content": "hi"}])

    assert exc.value.reason == "invalid_response"
    assert len(completions.requests) == 2


@pytest.mark.asyncio
async def test_response_validation_error_falls_back():
    invalid = APIResponseValidationError(httpx.Response(200, request=_REQUEST), body={"choices": "?"})
    service, completions = make_service([invalid, completion("Done.")])

    reply = await service.chat([{"role": "user", "content": "hi"}])

    assert reply.content == "Done."
    assert [r["model"] for r in completions.requests] == [service.default_model, service.fallback_model]
