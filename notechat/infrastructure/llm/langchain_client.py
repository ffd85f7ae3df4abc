from typing import Any, Dict, List, Optional
import asyncio

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import BaseMessage, SystemMessage
import structlog

from notechat.domain.errors import RateLimitError
from notechat.domain.models.message import TokenUsage
from notechat.domain.models.tool import ToolCall
from notechat.domain.orchestration.core.model_client import (
    CancellationToken,
    ModelResponse,
    message_text,
)

logger = structlog.get_logger(__name__)


def is_rate_limit_error(error: Exception) -> bool:
    status = getattr(error, "status_code", None) or getattr(getattr(error, "response", None), "status_code", None)
    if status == 429:
        return True
    text = f"{type(error).__name__} {error}".lower()
    return "ratelimit" in text or "rate limit" in text or "rate_limit" in text or "429" in text


def retry_after_seconds(error: Exception) -> Optional[float]:
    headers = getattr(getattr(error, "response", None), "headers", None) or {}
    value = headers.get("retry-after") if hasattr(headers, "get") else None
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class LangChainModelClient:
    """ModelClient backed by any LangChain chat model that supports tool binding"""

    def __init__(self, chat_model: BaseChatModel):
        self.chat_model = chat_model

    async def invoke(
        self,
        system_prompt: str,
        messages: List[BaseMessage],
        tools: List[Dict[str, Any]],
        cancellation: Optional[CancellationToken] = None
    ) -> ModelResponse:
        model = self.chat_model.bind_tools(tools) if tools else self.chat_model
        payload: List[BaseMessage] = [SystemMessage(content=system_prompt)] if system_prompt else []
        payload.extend(messages)

        try:
            response = await self._ainvoke(model, payload, cancellation)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if is_rate_limit_error(e):
                logger.warning("Model provider rate limited the request", error=str(e))
                raise RateLimitError(str(e), retry_after_seconds(e)) from e
            raise

        if response is None:
            return ModelResponse()

        if getattr(response, "invalid_tool_calls", None):
            logger.warning("Model returned malformed tool calls", count=len(response.invalid_tool_calls))

        tool_calls = [
            ToolCall(name=call.get("name") or None, args=call.get("args") or {}, id=call.get("id"))
            for call in getattr(response, "tool_calls", None) or []
        ]

        usage = None
        metadata = getattr(response, "usage_metadata", None)
        if metadata:
            input_tokens = metadata.get("input_tokens") or 0
            output_tokens = metadata.get("output_tokens") or 0
            usage = TokenUsage(
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                total_tokens=metadata.get("total_tokens") or input_tokens + output_tokens,
            )

        return ModelResponse(content=message_text(response), tool_calls=tool_calls, token_usage=usage)

    @staticmethod
    async def _ainvoke(model, payload: List[BaseMessage], cancellation: Optional[CancellationToken]):
        """Invoke the model; returns None when cancelled before it answers"""

        if cancellation is None:
            return await model.ainvoke(payload)

        call = asyncio.ensure_future(model.ainvoke(payload))
        cancelled = asyncio.ensure_future(cancellation.wait())
        try:
            done, _ = await asyncio.wait({call, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            call.cancel()
            raise
        finally:
            cancelled.cancel()

        if call in done:
            return call.result()

        call.cancel()
        logger.info("Model call cancelled")
        return None
