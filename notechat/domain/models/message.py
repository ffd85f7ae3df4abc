from typing import Dict, List, Optional
from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from enum import Enum
import uuid


class Sender(str, Enum):
    """Author of a conversation turn"""
    USER = "user"
    ASSISTANT = "assistant"


class ChainType(str, Enum):
    """Kind of conversation a message is sent in"""
    LLM_CHAIN = "llm_chain"
    AGENT_CHAIN = "agent_chain"
    PROJECT_CHAIN = "project_chain"


def _dedupe(values: List[str]) -> List[str]:
    seen = set()
    result = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result


class SelectedTextContext(BaseModel):
    """A fragment of a note the user highlighted"""
    path: str = Field(description="Note the text was selected from")
    content: str
    start_line: Optional[int] = None
    end_line: Optional[int] = None


class MessageContext(BaseModel):
    """References attached to a message at creation"""
    notes: List[str] = Field(default_factory=list, description="Note paths, insertion ordered")
    urls: List[str] = Field(default_factory=list)
    selected_text: List[SelectedTextContext] = Field(default_factory=list)

    @field_validator("notes", "urls")
    @classmethod
    def _unique(cls, v: List[str]) -> List[str]:
        return _dedupe(v)

    def is_empty(self) -> bool:
        return not (self.notes or self.urls or self.selected_text)


class ContextEnvelope(BaseModel):
    """What was actually sent to the model for one message"""
    system_prompt: str = ""
    notes: List[str] = Field(default_factory=list)
    urls: List[str] = Field(default_factory=list)
    selected_text_count: int = 0
    included_in_system_prompt: List[str] = Field(default_factory=list)
    errors: Dict[str, str] = Field(default_factory=dict, description="Reference -> failure message")


class TokenUsage(BaseModel):
    """Token counters reported by the provider, or estimated client side"""
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    estimated: bool = False

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
            estimated=self.estimated or other.estimated,
        )


def new_message_id() -> str:
    return f"msg-{uuid.uuid4().hex[:12]}"


class ChatMessage(BaseModel):
    """One turn of a conversation"""
    id: str = Field(default_factory=new_message_id)
    display_text: str = Field(description="Text as the user typed it")
    processed_text: str = Field(description="Text after context enrichment")
    sender: Sender
    context: MessageContext = Field(default_factory=MessageContext)
    context_envelope: Optional[ContextEnvelope] = None
    is_visible: bool = True
    is_error_message: bool = False
    parent_id: Optional[str] = None
    token_usage: Optional[TokenUsage] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class ProjectConfig(BaseModel):
    """Project-scoped settings layered into project conversations"""
    id: str
    name: str
    system_prompt: str = ""
    context_notes: List[str] = Field(default_factory=list)
