"""Tests for the LangChain chat model adapter."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from notechat.domain.errors import RateLimitError
from notechat.domain.orchestration.core.model_client import CancellationToken
from notechat.infrastructure.llm.langchain_client import (
    LangChainModelClient,
    is_rate_limit_error,
    retry_after_seconds,
)


class ProviderError(Exception):
    def __init__(self, message, status_code=None, headers=None):
        super().__init__(message)
        self.status_code = status_code
        self.response = MagicMock(status_code=status_code, headers=headers or {})


def _chat_model(response=None, error=None):
    model = MagicMock()
    model.ainvoke = AsyncMock(return_value=response, side_effect=error)
    model.bind_tools.return_value = model
    return model


@pytest.mark.asyncio
async def test_maps_tool_calls_and_usage():
    reply = AIMessage(
        content="Checking",
        tool_calls=[{"name": "search", "args": {"query": "x"}, "id": "call_1"}],
        usage_metadata={"input_tokens": 7, "output_tokens": 3, "total_tokens": 10},
    )
    model = _chat_model(reply)
    tools = [{"type": "function", "function": {"name": "search"}}]

    response = await LangChainModelClient(model).invoke("Be nice", [HumanMessage(content="hi")], tools)

    model.bind_tools.assert_called_once_with(tools)
    payload = model.ainvoke.await_args.args[0]
    assert isinstance(payload[0], SystemMessage)
    assert payload[0].content == "Be nice"
    assert response.content == "Checking"
    assert response.tool_calls[0].name == "search"
    assert response.tool_calls[0].id == "call_1"
    assert response.token_usage.total_tokens == 10


@pytest.mark.asyncio
async def test_no_tools_and_no_system_prompt():
    model = _chat_model(AIMessage(content="ok"))
    response = await LangChainModelClient(model).invoke("", [HumanMessage(content="hi")], [])

    model.bind_tools.assert_not_called()
    assert len(model.ainvoke.await_args.args[0]) == 1
    assert response.token_usage is None


@pytest.mark.asyncio
async def test_missing_total_is_summed():
    reply = AIMessage(content="ok", usage_metadata={"input_tokens": 4, "output_tokens": 2, "total_tokens": 0})
    response = await LangChainModelClient(_chat_model(reply)).invoke("", [HumanMessage(content="hi")], [])

    assert response.token_usage.total_tokens == 6
    assert response.token_usage.estimated is False


@pytest.mark.asyncio
async def test_rate_limit_errors_are_translated():
    error = ProviderError("Too Many Requests", status_code=429, headers={"retry-after": "15"})
    client = LangChainModelClient(_chat_model(error=error))

    with pytest.raises(RateLimitError) as excinfo:
        await client.invoke("", [HumanMessage(content="hi")], [])
    assert excinfo.value.retry_after == 15.0


@pytest.mark.asyncio
async def test_other_errors_propagate_unchanged():
    client = LangChainModelClient(_chat_model(error=ProviderError("bad request", status_code=400)))
    with pytest.raises(ProviderError):
        await client.invoke("", [HumanMessage(content="hi")], [])


@pytest.mark.asyncio
async def test_cancellation_abandons_call():
    async def never_answers(payload):
        await asyncio.sleep(10)

    model = MagicMock()
    model.ainvoke = never_answers
    token = CancellationToken()
    client = LangChainModelClient(model)

    task = asyncio.create_task(client.invoke("", [HumanMessage(content="hi")], [], token))
    await asyncio.sleep(0)
    token.cancel()
    response = await asyncio.wait_for(task, 1)

    assert response.content == ""
    assert response.tool_calls == []


def test_rate_limit_detection():
    assert is_rate_limit_error(ProviderError("x", status_code=429))
    assert is_rate_limit_error(Exception("RateLimitError: slow down"))
    assert not is_rate_limit_error(ProviderError("x", status_code=500))
    assert retry_after_seconds(ProviderError("x", headers={"retry-after": "soon"})) is None
