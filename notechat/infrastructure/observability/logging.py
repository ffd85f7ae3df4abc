from typing import Any, Dict, Optional, Tuple
import logging
import sys

import structlog


def setup_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Route structlog through stdlib logging with JSON or console output"""

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO)
    )

    renderer = structlog.processors.JSONRenderer() if log_format == "json" else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            add_conversation_context,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    structlog.contextvars.bind_contextvars(service="notechat")


def add_conversation_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Move the bound conversation id to the front of the entry"""

    conversation_id = event_dict.pop("conversation_id", None)
    if conversation_id:
        return {"conversation_id": conversation_id, **event_dict}
    return event_dict


class ChatLogger:
    """Structured events of the conversation core"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_tool_execution(
        self,
        tool_name: str,
        args: Dict[str, Any],
        success: bool,
        duration_ms: float = 0.0,
        error: Optional[str] = None
    ):
        self.logger.info(
            "tool_execution",
            tool_name=tool_name,
            args=args,
            success=success,
            duration_ms=round(duration_ms, 2),
            error=error
        )

    def log_loop_transition(self, from_node: str, to_node: str, iteration: int):
        self.logger.debug("loop_transition", from_node=from_node, to_node=to_node, iteration=iteration)

    def log_context_update(self, message_id: str, action: str, details: Dict[str, Any]):
        self.logger.info("context_update", message_id=message_id, action=action, **details)

    def log_prompt_sync(self, kind: str, path: str, **details: Any):
        """A prompt file change handled by the prompt sync"""
        self.logger.info("prompt_sync", kind=kind, path=path, **details)


class MetricsCollector:
    """In-process call counters and latencies, reported by the health endpoint"""

    def __init__(self):
        self._counters: Dict[str, int] = {}
        # operation -> (calls, total ms, slowest ms)
        self._latency: Dict[str, Tuple[int, float, float]] = {}

    def record_latency(self, operation: str, duration_ms: float) -> None:
        calls, total, slowest = self._latency.get(operation, (0, 0.0, 0.0))
        self._latency[operation] = (calls + 1, total + duration_ms, max(slowest, duration_ms))

    def increment_counter(self, name: str) -> None:
        self._counters[name] = self._counters.get(name, 0) + 1

    def get_metrics_summary(self) -> Dict[str, Any]:
        summary: Dict[str, Any] = dict(self._counters)
        for operation, (calls, total, slowest) in self._latency.items():
            summary[f"latency.{operation}"] = {
                "count": calls,
                "avg_ms": round(total / calls, 2),
                "max_ms": round(slowest, 2),
            }
        return summary
