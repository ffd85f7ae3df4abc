from typing import Dict, Any, List, Literal, Optional, Union
from pydantic import BaseModel, Field
from enum import Enum

from .message import TokenUsage


class ToolCall(BaseModel):
    """A tool request emitted by the model"""
    name: Optional[str] = None
    args: Dict[str, Any] = Field(default_factory=dict)
    id: Optional[str] = None


class ToolResult(BaseModel):
    """Outcome of one tool call; failures are data, never exceptions"""
    tool_name: str
    result: str
    success: bool


class ValidationSuccess(BaseModel):
    ok: Literal[True] = True
    args: Dict[str, Any] = Field(default_factory=dict)


class ValidationFailure(BaseModel):
    ok: Literal[False] = False
    errors: List[str] = Field(default_factory=list)


ValidationResult = Union[ValidationSuccess, ValidationFailure]


class LoopStatus(str, Enum):
    """Terminal state of a tool loop run"""
    COMPLETED = "completed"
    ABORTED = "aborted"
    ITERATION_LIMIT = "iteration_limit"


class ToolLoopResult(BaseModel):
    """Final answer of a tool loop plus what happened on the way"""
    content: str
    status: LoopStatus
    iterations: int = 0
    tool_results: List[ToolResult] = Field(default_factory=list)
    token_usage: Optional[TokenUsage] = None
