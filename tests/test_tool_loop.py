"""Tests for the bounded model/tool loop."""

import pytest
from langchain_core.messages import AIMessage, HumanMessage, ToolMessage

from notechat.domain.errors import RateLimitError
from notechat.domain.models.message import TokenUsage
from notechat.domain.models.tool import LoopStatus, ToolCall
from notechat.domain.orchestration.core.model_client import CancellationToken, ModelResponse
from notechat.domain.orchestration.core.tool_loop import ToolLoopExecutor, iteration_limit_message
from notechat.domain.tool.tool_executor import ToolExecutor

QUESTION = [HumanMessage(content="What is 1 + 2?")]


@pytest.fixture
def loop_factory(tool_registry):
    tool_registry.register("add", lambda a, b=0: a + b)

    def build(client, max_iterations=4):
        return ToolLoopExecutor(client, ToolExecutor(tool_registry), max_iterations)

    return build


@pytest.mark.asyncio
async def test_answer_without_tools(loop_factory, make_model_client):
    client = make_model_client([ModelResponse(content="Hi there")])
    result = await loop_factory(client).run("system", QUESTION)

    assert result.status == LoopStatus.COMPLETED
    assert result.content == "Hi there"
    assert result.iterations == 0
    assert result.token_usage.estimated is True
    assert client.calls[0]["system_prompt"] == "system"


@pytest.mark.asyncio
async def test_zero_usage_counters_fall_back_to_estimate(loop_factory, make_model_client):
    client = make_model_client([ModelResponse(content="Hi there friend", token_usage=TokenUsage())])
    result = await loop_factory(client).run("system", QUESTION)

    assert result.token_usage == TokenUsage(input_tokens=6, output_tokens=4, total_tokens=10, estimated=True)


@pytest.mark.asyncio
async def test_tool_round_then_answer(loop_factory, make_model_client):
    client = make_model_client([
        ModelResponse(tool_calls=[ToolCall(name="add", args={"a": 1, "b": 2})],
                      token_usage=TokenUsage(input_tokens=10, output_tokens=2, total_tokens=12)),
        ModelResponse(content="It is 3", token_usage=TokenUsage(input_tokens=20, output_tokens=3, total_tokens=23)),
    ])
    result = await loop_factory(client).run("system", QUESTION, tools=[{"type": "function"}])

    assert result.status == LoopStatus.COMPLETED
    assert result.content == "It is 3"
    assert result.iterations == 1
    assert [r.result for r in result.tool_results] == ["3"]
    assert result.token_usage.total_tokens == 35

    second_request = client.calls[1]["messages"]
    assert isinstance(second_request[1], AIMessage)
    assert isinstance(second_request[2], ToolMessage)
    call_id = second_request[1].tool_calls[0]["id"]
    assert call_id.startswith("call_")
    assert second_request[2].tool_call_id == call_id
    assert second_request[2].content == "3"


@pytest.mark.asyncio
async def test_failed_tool_in_batch_does_not_stop_loop(loop_factory, make_model_client):
    client = make_model_client([
        ModelResponse(tool_calls=[
            ToolCall(name="add", args={"a": 1}, id="ok"),
            ToolCall(name="missing_tool", args={}, id="bad"),
        ]),
        ModelResponse(content="Partly done"),
    ])
    result = await loop_factory(client).run("system", QUESTION)

    assert result.status == LoopStatus.COMPLETED
    assert [r.success for r in result.tool_results] == [True, False]
    tool_messages = [m for m in client.calls[1]["messages"] if isinstance(m, ToolMessage)]
    assert [m.status for m in tool_messages] == ["success", "error"]


@pytest.mark.asyncio
async def test_iteration_cap_is_never_exceeded(loop_factory, make_model_client):
    always_tools = [ModelResponse(tool_calls=[ToolCall(name="add", args={"a": i})]) for i in range(10)]
    client = make_model_client(always_tools)

    result = await loop_factory(client, max_iterations=4).run("system", QUESTION, max_iterations=2)

    assert result.status == LoopStatus.ITERATION_LIMIT
    assert result.iterations == 2
    assert len(client.calls) == 2
    assert len(result.tool_results) == 2
    assert result.content == iteration_limit_message(2)
    assert result.content.startswith("Iteration limit reached (2 tool rounds).")


@pytest.mark.asyncio
async def test_cancelled_before_model_call(loop_factory, make_model_client):
    client = make_model_client()
    token = CancellationToken()
    token.cancel()

    result = await loop_factory(client).run("system", QUESTION, cancellation=token)

    assert result.status == LoopStatus.ABORTED
    assert result.content == ""
    assert client.calls == []


@pytest.mark.asyncio
async def test_cancelled_during_model_call_keeps_partial_text(loop_factory, make_model_client):
    token = CancellationToken()

    async def cancel_mid_call(cancellation):
        cancellation.cancel()
        return ModelResponse(content="Partial answer", tool_calls=[ToolCall(name="add", args={"a": 1})])

    client = make_model_client([cancel_mid_call])
    result = await loop_factory(client).run("system", QUESTION, cancellation=token)

    assert result.status == LoopStatus.ABORTED
    assert result.content == "Partial answer"
    assert result.tool_results == []


@pytest.mark.asyncio
async def test_model_errors_propagate(loop_factory, make_model_client):
    client = make_model_client([RateLimitError("slow down", retry_after=5)])
    with pytest.raises(RateLimitError):
        await loop_factory(client).run("system", QUESTION)


def test_iteration_limit_message_keeps_partial_text():
    assert iteration_limit_message(3, "So far").startswith("So far\n\nIteration limit reached (3 tool rounds).")
