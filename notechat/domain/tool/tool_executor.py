from typing import Any, List, Optional
from pydantic import BaseModel
import asyncio
import inspect
import json
import time

import structlog

from notechat.domain.errors import ToolExecutionError
from notechat.domain.models.tool import ToolCall, ToolResult, ValidationFailure
from notechat.infrastructure.observability.logging import ChatLogger, MetricsCollector
from .tool_registry import ToolRegistry

logger = structlog.get_logger(__name__)


def stringify_result(result: Any) -> str:
    if result is None:
        return ""
    if isinstance(result, str):
        return result
    if isinstance(result, BaseModel):
        return result.model_dump_json()
    try:
        return json.dumps(result, default=str, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(result)


class ToolExecutor:
    """
    Runs tool calls against a registry.

    Every outcome is a ToolResult: unknown tools, invalid arguments, handler
    errors and timeouts become failed results carrying a readable message.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        default_timeout: Optional[float] = None,
        chat_logger: Optional[ChatLogger] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        self.registry = registry
        self.default_timeout = default_timeout
        self.chat_logger = chat_logger or ChatLogger(__name__)
        self.metrics = metrics

    async def execute_tool_call(self, call: ToolCall) -> ToolResult:
        if not call.name:
            logger.warning("Tool call without a name", call_id=call.id)
            return ToolResult(
                tool_name="unknown",
                result="Error: Invalid tool call - missing tool name",
                success=False
            )

        tool = self.registry.get_tool(call.name)
        if tool is None:
            available = ", ".join(self.registry.get_tool_names())
            logger.warning("Unknown tool requested", tool_name=call.name)
            return ToolResult(
                tool_name=call.name,
                result=(
                    f"Error: Tool '{call.name}' not found. Available tools: {available}. "
                    "Make sure you have the tool enabled in the Agent settings."
                ),
                success=False
            )

        validation = tool.validator.validate(call.args)
        if isinstance(validation, ValidationFailure):
            message = "; ".join(validation.errors)
            self.chat_logger.log_tool_execution(call.name, call.args, False, error=message)
            return ToolResult(
                tool_name=call.name,
                result=f"Error: Invalid arguments for tool '{call.name}': {message}",
                success=False
            )

        timeout = tool.timeout_seconds or self.default_timeout
        start_time = time.time()
        try:
            output = await asyncio.wait_for(self._invoke(tool.handler, validation.args), timeout)
            result = ToolResult(tool_name=call.name, result=stringify_result(output), success=True)
            error = None
        except asyncio.TimeoutError:
            error = f"Tool '{call.name}' timed out after {timeout} seconds"
            result = ToolResult(tool_name=call.name, result=f"Error: {error}", success=False)
        except ToolExecutionError as e:
            error = str(e)
            result = ToolResult(tool_name=call.name, result=f"Error: {error}", success=False)
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.error("Tool handler raised", tool_name=call.name, error=error)
            result = ToolResult(
                tool_name=call.name,
                result=f"Error executing tool '{call.name}': {error}",
                success=False
            )

        duration_ms = (time.time() - start_time) * 1000
        self.chat_logger.log_tool_execution(call.name, validation.args, result.success, duration_ms, error)
        if self.metrics is not None:
            self.metrics.record_latency(f"tool_call.{call.name}", duration_ms)
            self.metrics.increment_counter("tool_calls.success" if result.success else "tool_calls.failure")
        return result

    async def execute_tool_calls(self, calls: List[ToolCall]) -> List[ToolResult]:
        """Run one batch concurrently; results keep the order of the calls"""

        if not calls:
            return []
        return list(await asyncio.gather(*(self.execute_tool_call(call) for call in calls)))

    @staticmethod
    async def _invoke(handler, args) -> Any:
        output = handler(**args)
        if inspect.isawaitable(output):
            output = await output
        return output


async def execute_tool_call(call: ToolCall, registry: ToolRegistry, timeout: Optional[float] = None) -> ToolResult:
    """Run one call against a registry"""
    return await ToolExecutor(registry, default_timeout=timeout).execute_tool_call(call)
