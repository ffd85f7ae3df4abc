from typing import Any, Dict, List, Optional, Protocol
from pydantic import BaseModel, Field
import asyncio
import math

from langchain_core.messages import BaseMessage

from notechat.domain.models.message import TokenUsage
from notechat.domain.models.tool import ToolCall


class CancellationToken:
    """Cooperative cancellation flag checked at suspension points"""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class ModelResponse(BaseModel):
    """One model turn: text and/or tool requests"""
    content: str = ""
    tool_calls: List[ToolCall] = Field(default_factory=list)
    token_usage: Optional[TokenUsage] = None


class ModelClient(Protocol):
    async def invoke(
        self,
        system_prompt: str,
        messages: List[BaseMessage],
        tools: List[Dict[str, Any]],
        cancellation: Optional[CancellationToken] = None
    ) -> ModelResponse:
        ...


def estimate_tokens(text: str) -> int:
    """Rough client-side token count, about four characters per token"""
    return math.ceil(len(text or "") / 4)


def message_text(message: BaseMessage) -> str:
    content = message.content
    if isinstance(content, str):
        return content
    parts = []
    for part in content:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            parts.append(part.get("text", ""))
    return "".join(parts)


def estimate_usage(system_prompt: str, messages: List[BaseMessage], output: str) -> TokenUsage:
    input_tokens = estimate_tokens(system_prompt) + sum(estimate_tokens(message_text(m)) for m in messages)
    output_tokens = estimate_tokens(output)
    return TokenUsage(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=input_tokens + output_tokens,
        estimated=True,
    )
