from typing import TypedDict, Annotated, List, Dict, Any, Optional
import operator
import time
import uuid

from langgraph.graph import StateGraph, END
from langgraph.graph.message import add_messages
from langchain_core.messages import BaseMessage, AIMessage, ToolMessage
import structlog

from notechat.domain.models.message import TokenUsage
from notechat.domain.models.tool import LoopStatus, ToolCall, ToolLoopResult, ToolResult
from notechat.domain.tool.tool_executor import ToolExecutor
from notechat.infrastructure.observability.logging import ChatLogger, MetricsCollector
from .model_client import CancellationToken, ModelClient, estimate_usage

logger = structlog.get_logger(__name__)

DEFAULT_MAX_ITERATIONS = 4


class ToolLoopState(TypedDict):
    """State for the tool loop graph"""
    messages: Annotated[List[BaseMessage], add_messages]
    system_prompt: str
    tools: List[Dict[str, Any]]
    cancellation: Optional[CancellationToken]
    max_iterations: int
    iterations: int
    pending_calls: List[ToolCall]
    tool_results: Annotated[List[ToolResult], operator.add]
    token_usage: TokenUsage
    content: str
    status: Optional[LoopStatus]


def iteration_limit_message(max_iterations: int, partial: str = "") -> str:
    notice = (
        f"Iteration limit reached ({max_iterations} tool rounds). "
        "Stopping here; ask me to continue if more work is needed."
    )
    return f"{partial}\n\n{notice}" if partial else notice


class ToolLoopExecutor:
    """
    Bounded model/tool loop using LangGraph.

    call_model -> END               when the model answers without tool calls
    call_model -> execute_tools     when it requests tools
    execute_tools -> call_model     while under the iteration cap
    execute_tools -> iteration_limit once the cap is reached
    any node -> END (aborted)       when the cancellation token is set
    """

    def __init__(
        self,
        model_client: ModelClient,
        tool_executor: ToolExecutor,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        chat_logger: Optional[ChatLogger] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        self.model_client = model_client
        self.tool_executor = tool_executor
        self.max_iterations = max_iterations
        self.chat_logger = chat_logger or ChatLogger(__name__)
        self.metrics = metrics
        self.workflow = self._create_workflow()

    def _create_workflow(self):
        workflow = StateGraph(ToolLoopState)

        workflow.add_node("call_model", self.call_model_node)
        workflow.add_node("execute_tools", self.execute_tools_node)
        workflow.add_node("iteration_limit", self.iteration_limit_node)

        workflow.set_entry_point("call_model")

        workflow.add_conditional_edges(
            "call_model",
            self.route_after_model,
            {
                "tools": "execute_tools",
                "end": END
            }
        )
        workflow.add_conditional_edges(
            "execute_tools",
            self.route_after_tools,
            {
                "continue": "call_model",
                "limit": "iteration_limit",
                "end": END
            }
        )
        workflow.add_edge("iteration_limit", END)

        return workflow.compile()

    async def run(
        self,
        system_prompt: str,
        messages: List[BaseMessage],
        tools: Optional[List[Dict[str, Any]]] = None,
        cancellation: Optional[CancellationToken] = None,
        max_iterations: Optional[int] = None
    ) -> ToolLoopResult:
        """Drive the loop to a terminal state; model errors propagate"""

        cap = max_iterations or self.max_iterations
        initial: ToolLoopState = {
            "messages": list(messages),
            "system_prompt": system_prompt,
            "tools": list(tools or []),
            "cancellation": cancellation,
            "max_iterations": cap,
            "iterations": 0,
            "pending_calls": [],
            "tool_results": [],
            "token_usage": TokenUsage(),
            "content": "",
            "status": None,
        }

        final = await self.workflow.ainvoke(initial, config={"recursion_limit": 2 * cap + 5})

        status = final.get("status") or LoopStatus.COMPLETED
        logger.info(
            "Tool loop finished",
            status=status.value,
            iterations=final["iterations"],
            tool_calls=len(final["tool_results"])
        )
        return ToolLoopResult(
            content=final["content"],
            status=status,
            iterations=final["iterations"],
            tool_results=final["tool_results"],
            token_usage=final["token_usage"],
        )

    async def call_model_node(self, state: ToolLoopState) -> Dict[str, Any]:
        cancellation = state["cancellation"]
        if cancellation is not None and cancellation.is_cancelled:
            logger.info("Tool loop cancelled before model call", iteration=state["iterations"])
            return {"status": LoopStatus.ABORTED, "pending_calls": []}

        start_time = time.time()
        response = await self.model_client.invoke(
            state["system_prompt"], state["messages"], state["tools"], cancellation
        )
        if self.metrics is not None:
            self.metrics.record_latency("model_call", (time.time() - start_time) * 1000)

        usage = response.token_usage
        if usage is None or usage.total_tokens <= 0:
            usage = estimate_usage(state["system_prompt"], state["messages"], response.content)

        if cancellation is not None and cancellation.is_cancelled:
            logger.info("Tool loop cancelled during model call", iteration=state["iterations"])
            return {
                "status": LoopStatus.ABORTED,
                "pending_calls": [],
                "content": response.content,
                "token_usage": state["token_usage"] + usage,
            }

        calls = [
            call if call.id else call.model_copy(update={"id": f"call_{uuid.uuid4().hex[:12]}"})
            for call in response.tool_calls
        ]
        ai_message = AIMessage(
            content=response.content,
            tool_calls=[{"name": call.name or "", "args": call.args, "id": call.id} for call in calls]
        )

        return {
            "messages": [ai_message],
            "pending_calls": calls,
            "content": response.content,
            "token_usage": state["token_usage"] + usage,
        }

    async def execute_tools_node(self, state: ToolLoopState) -> Dict[str, Any]:
        cancellation = state["cancellation"]
        if cancellation is not None and cancellation.is_cancelled:
            logger.info("Tool loop cancelled before tool batch", iteration=state["iterations"])
            return {"status": LoopStatus.ABORTED, "pending_calls": []}

        calls = state["pending_calls"]
        results = await self.tool_executor.execute_tool_calls(calls)

        tool_messages = [
            ToolMessage(
                content=result.result,
                tool_call_id=call.id,
                name=result.tool_name,
                status="success" if result.success else "error"
            )
            for call, result in zip(calls, results)
        ]

        return {
            "messages": tool_messages,
            "tool_results": results,
            "pending_calls": [],
            "iterations": state["iterations"] + 1,
        }

    async def iteration_limit_node(self, state: ToolLoopState) -> Dict[str, Any]:
        logger.warning("Tool loop iteration limit reached", max_iterations=state["max_iterations"])
        return {
            "status": LoopStatus.ITERATION_LIMIT,
            "content": iteration_limit_message(state["max_iterations"], state["content"]),
        }

    def route_after_model(self, state: ToolLoopState) -> str:
        if state.get("status") == LoopStatus.ABORTED:
            route = "end"
        elif state["pending_calls"]:
            route = "tools"
        else:
            route = "end"

        self.chat_logger.log_loop_transition("call_model", route, state["iterations"])
        return route

    def route_after_tools(self, state: ToolLoopState) -> str:
        if state.get("status") == LoopStatus.ABORTED:
            route = "end"
        elif state["iterations"] >= state["max_iterations"]:
            route = "limit"
        else:
            route = "continue"

        self.chat_logger.log_loop_transition("execute_tools", route, state["iterations"])
        return route
