from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, Field

from notechat.domain.models.message import ChainType, ChatMessage, MessageContext, ProjectConfig
from notechat.domain.models.prompt import PromptRecord


class CreateConversationRequest(BaseModel):
    """Open a conversation, optionally bound to an active note or a project"""
    active_note: Optional[str] = None
    project: Optional[ProjectConfig] = None


class CreateConversationResponse(BaseModel):
    conversation_id: str


class SendMessageRequest(BaseModel):
    """A user turn with its attached references"""
    text: str = Field(min_length=1)
    context: MessageContext = Field(default_factory=MessageContext)
    chain_type: ChainType = ChainType.LLM_CHAIN
    include_active_note: bool = False
    active_note: Optional[str] = Field(None, description="Replaces the conversation's active note when set")
    generate: bool = Field(True, description="Also run the model and append its answer")


class SendMessageResponse(BaseModel):
    message_id: str
    response: Optional[ChatMessage] = None


class EditMessageRequest(BaseModel):
    text: str
    chain_type: ChainType = ChainType.LLM_CHAIN
    include_active_note: bool = False


class RegenerateRequest(BaseModel):
    chain_type: ChainType = ChainType.LLM_CHAIN


class TruncateRequest(BaseModel):
    message_id: str


class SuccessResponse(BaseModel):
    success: bool


class MessagesResponse(BaseModel):
    view: Literal["display", "llm"]
    messages: List[ChatMessage]


class CreatePromptRequest(BaseModel):
    title: str
    content: str


class UpdatePromptRequest(BaseModel):
    content: Optional[str] = None
    new_title: Optional[str] = None


class PromptsResponse(BaseModel):
    prompts: List[PromptRecord]
    default_title: str = ""
    session_title: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    prompts: int
    conversations: int
    metrics: Dict[str, Any] = Field(default_factory=dict)


class SessionPromptRequest(BaseModel):
    title: Optional[str] = None
