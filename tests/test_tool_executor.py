"""Tests for tool registration, argument validation and execution."""

import asyncio

import pytest
from pydantic import BaseModel, Field

from notechat.domain.errors import ToolExecutionError
from notechat.domain.models.tool import ToolCall, ValidationFailure, ValidationSuccess
from notechat.domain.tool.tool_executor import ToolExecutor, execute_tool_call, stringify_result
from notechat.domain.tool.tool_validator import JsonSchemaValidator, PydanticArgsValidator


class AddArgs(BaseModel):
    a: int
    b: int = Field(default=0)


def add(a: int, b: int = 0) -> int:
    return a + b


async def search(query: str):
    return {"query": query, "hits": 2}


@pytest.fixture
def executor(tool_registry):
    tool_registry.register("add", add, "Add two numbers", args_model=AddArgs)
    tool_registry.register(
        "search",
        search,
        "Search the vault",
        parameters_schema={
            "type": "object",
            "properties": {"query": {"type": "string"}},
            "required": ["query"],
        },
    )
    return ToolExecutor(tool_registry, default_timeout=1)


@pytest.mark.asyncio
async def test_sync_and_async_handlers(executor):
    added = await executor.execute_tool_call(ToolCall(name="add", args={"a": "2", "b": 3}))
    assert added.success is True
    assert added.result == "5"

    found = await executor.execute_tool_call(ToolCall(name="search", args={"query": "notes"}))
    assert found.success is True
    assert found.result == '{"query": "notes", "hits": 2}'


@pytest.mark.asyncio
async def test_unknown_tool_lists_available(executor):
    result = await executor.execute_tool_call(ToolCall(name="delete_everything"))
    assert result.success is False
    assert result.tool_name == "delete_everything"
    assert result.result == (
        "Error: Tool 'delete_everything' not found. Available tools: add, search. "
        "Make sure you have the tool enabled in the Agent settings."
    )


@pytest.mark.asyncio
async def test_missing_tool_name(executor):
    result = await executor.execute_tool_call(ToolCall(name=None, args={}))
    assert result.tool_name == "unknown"
    assert result.result == "Error: Invalid tool call - missing tool name"
    assert result.success is False


@pytest.mark.asyncio
async def test_invalid_arguments(executor):
    bad_model = await executor.execute_tool_call(ToolCall(name="add", args={"a": "many"}))
    assert bad_model.success is False
    assert bad_model.result.startswith("Error: Invalid arguments for tool 'add': a:")

    bad_schema = await executor.execute_tool_call(ToolCall(name="search", args={}))
    assert bad_schema.success is False
    assert "'query' is a required property" in bad_schema.result


@pytest.mark.asyncio
async def test_handler_errors_become_results(tool_registry):
    def broken():
        raise ValueError("disk on fire")

    def refused():
        raise ToolExecutionError("refuse", "Permission denied")

    tool_registry.register("broken", broken)
    tool_registry.register("refuse", refused)
    executor = ToolExecutor(tool_registry)

    broken_result = await executor.execute_tool_call(ToolCall(name="broken"))
    assert broken_result.result == "Error executing tool 'broken': disk on fire"
    refused_result = await executor.execute_tool_call(ToolCall(name="refuse"))
    assert refused_result.result == "Error: Permission denied"


@pytest.mark.asyncio
async def test_timeout(tool_registry):
    async def slow():
        await asyncio.sleep(1)

    tool_registry.register("slow", slow, timeout_seconds=0.01)
    result = await ToolExecutor(tool_registry).execute_tool_call(ToolCall(name="slow"))

    assert result.success is False
    assert result.result == "Error: Tool 'slow' timed out after 0.01 seconds"


@pytest.mark.asyncio
async def test_batch_keeps_order_with_one_failure(executor, tool_registry):
    async def fails():
        raise RuntimeError("nope")

    tool_registry.register("fails", fails)
    results = await executor.execute_tool_calls([
        ToolCall(name="fails", id="1"),
        ToolCall(name="add", args={"a": 1}, id="2"),
    ])

    assert [r.tool_name for r in results] == ["fails", "add"]
    assert [r.success for r in results] == [False, True]
    assert await executor.execute_tool_calls([]) == []


@pytest.mark.asyncio
async def test_module_level_execute(executor, tool_registry):
    result = await execute_tool_call(ToolCall(name="add", args={"a": 4}), tool_registry)
    assert result.result == "4"


def test_registry_lookup_and_specs(executor, tool_registry):
    assert tool_registry.get_tool_names() == ["add", "search"]

    specs = tool_registry.to_model_specs()
    assert specs[0]["type"] == "function"
    assert specs[0]["function"]["name"] == "add"
    assert "a" in specs[0]["function"]["parameters"]["properties"]
    assert specs[1]["function"]["parameters"]["required"] == ["query"]

    tool_registry.register("add", lambda a: a)
    assert tool_registry.get_tool_names() == ["search", "add"]
    assert tool_registry.unregister_tool("add") is True
    assert tool_registry.unregister_tool("add") is False


def test_validators():
    pydantic_validator = PydanticArgsValidator(AddArgs)
    assert pydantic_validator.validate({"a": "3"}) == ValidationSuccess(args={"a": 3, "b": 0})
    assert isinstance(pydantic_validator.validate({}), ValidationFailure)

    schema_validator = JsonSchemaValidator({"type": "object", "properties": {"n": {"type": "integer"}}})
    assert schema_validator.validate({"n": 1}).ok is True
    failure = schema_validator.validate({"n": "x"})
    assert failure.ok is False
    assert failure.errors[0].startswith("n:")


def test_stringify_result():
    assert stringify_result(None) == ""
    assert stringify_result("text") == "text"
    assert stringify_result(AddArgs(a=1)) == '{"a":1,"b":0}'
    assert stringify_result([1, 2]) == "[1, 2]"
