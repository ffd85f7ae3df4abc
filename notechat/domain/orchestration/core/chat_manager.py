from typing import Any, Dict, List, Optional
import asyncio
import uuid

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage
import structlog

from notechat.domain.context.context_manager import ContextManager
from notechat.domain.context.file_parser import FileParserManager
from notechat.domain.context.memory.user_memory import UserMemoryManager, summarize_conversation
from notechat.domain.conversation.message_repository import MessageRepository
from notechat.domain.errors import NotFoundError, RateLimitError
from notechat.domain.models.message import (
    ChainType,
    ChatMessage,
    MessageContext,
    ProjectConfig,
    Sender,
)
from notechat.domain.models.tool import LoopStatus
from notechat.domain.prompts.prompt_composer import ComposedPrompt, PromptComposer, build_tool_guidance
from notechat.domain.prompts.prompt_manager import PromptManager
from notechat.domain.tool.tool_registry import ToolRegistry
from notechat.infrastructure.config.settings import SettingsStore
from notechat.infrastructure.storage.file_store import FileStore
from .model_client import CancellationToken
from .tool_loop import ToolLoopExecutor

logger = structlog.get_logger(__name__)

TOOL_CHAINS = (ChainType.AGENT_CHAIN, ChainType.PROJECT_CHAIN)


def to_langchain_messages(messages: List[ChatMessage]) -> List[BaseMessage]:
    """Model view of the conversation, read with processed text"""

    converted: List[BaseMessage] = []
    for message in messages:
        if message.sender == Sender.USER:
            converted.append(HumanMessage(content=message.processed_text, id=message.id))
        else:
            converted.append(AIMessage(content=message.processed_text, id=message.id))
    return converted


def describe_error(error: Exception) -> str:
    if isinstance(error, RateLimitError):
        if error.retry_after:
            return f"Error: Rate limit exceeded. Please try again in {int(error.retry_after)} seconds."
        return "Error: Rate limit exceeded. Please try again later."
    return f"Error: {error}" if str(error) else f"Error: {type(error).__name__}"


class ChatManager:
    """
    Conversation orchestrator: one instance per conversation.

    Every mutation of the conversation runs under one asyncio.Lock so sends,
    edits, regenerations and deletions never interleave.
    """

    def __init__(
        self,
        repo: MessageRepository,
        context_manager: ContextManager,
        file_parser: FileParserManager,
        file_store: FileStore,
        composer: PromptComposer,
        tool_loop: ToolLoopExecutor,
        tool_registry: ToolRegistry,
        settings_store: SettingsStore,
        conversation_id: Optional[str] = None,
        prompt_manager: Optional[PromptManager] = None,
        user_memory: Optional[UserMemoryManager] = None
    ):
        self.repo = repo
        self.context_manager = context_manager
        self.file_parser = file_parser
        self.file_store = file_store
        self.composer = composer
        self.tool_loop = tool_loop
        self.tool_registry = tool_registry
        self.settings_store = settings_store
        self.conversation_id = conversation_id or f"conv-{uuid.uuid4().hex[:12]}"
        self.prompt_manager = prompt_manager
        self.user_memory = user_memory

        self.active_note: Optional[str] = None
        self.project: Optional[ProjectConfig] = None
        self._lock = asyncio.Lock()

    def set_active_note(self, path: Optional[str]) -> None:
        self.active_note = path or None

    def set_project(self, project: Optional[ProjectConfig]) -> None:
        self.project = project

    async def _compose(self, chain_type: ChainType) -> ComposedPrompt:
        return await self.composer.compose(chain_type, self.active_note, self.project)

    # Sending

    async def send_message(
        self,
        display_text: str,
        context: Optional[MessageContext] = None,
        chain_type: ChainType = ChainType.LLM_CHAIN,
        include_active_note: bool = False
    ) -> str:
        """Record a user turn and enrich it; returns the message id"""

        with structlog.contextvars.bound_contextvars(conversation_id=self.conversation_id):
            async with self._lock:
                return await self._send_message(display_text, context, chain_type, include_active_note)

    async def _send_message(
        self,
        display_text: str,
        context: Optional[MessageContext],
        chain_type: ChainType,
        include_active_note: bool
    ) -> str:
        context = context or MessageContext()
        if include_active_note and self.active_note and self.active_note not in context.notes:
            context = context.model_copy(update={"notes": [*context.notes, self.active_note]})

        message_id = self.repo.add_message(display_text, display_text, Sender.USER, context)
        logger.info("Added user message", message_id=message_id, chain_type=chain_type.value)

        message = self.repo.get_message(message_id)
        if message is None:
            raise NotFoundError(f"Failed to retrieve message {message_id}")

        composed = await self._compose(chain_type)
        result = await self.context_manager.process_message_context(
            message,
            self.file_parser,
            self.file_store,
            chain_type,
            include_active_note,
            self.active_note,
            self.repo,
            composed.system_prompt,
            composed.included_files
        )
        self.repo.update_processed_text(message_id, result.processed_content, result.context_envelope)
        return message_id

    async def generate_response(
        self,
        user_message_id: str,
        chain_type: ChainType = ChainType.LLM_CHAIN,
        cancellation: Optional[CancellationToken] = None
    ) -> Optional[ChatMessage]:
        """Run the model on the history up to the given user turn and append its answer"""

        with structlog.contextvars.bound_contextvars(conversation_id=self.conversation_id):
            async with self._lock:
                return await self._generate_response(user_message_id, chain_type, cancellation)

    async def _generate_response(
        self,
        user_message_id: str,
        chain_type: ChainType,
        cancellation: Optional[CancellationToken]
    ) -> Optional[ChatMessage]:
        history = self.repo.get_llm_messages()
        index = next((i for i, m in enumerate(history) if m.id == user_message_id), -1)
        if index < 0:
            logger.warning("Cannot respond to a message outside the model view", message_id=user_message_id)
            return None
        history = history[:index + 1]

        try:
            composed = await self._compose(chain_type)
            system_prompt = composed.system_prompt
            await self._touch_prompt(composed.prompt_title)
            tools: List[Dict[str, Any]] = []
            if chain_type in TOOL_CHAINS:
                tools = self.tool_registry.to_model_specs()
                guidance = build_tool_guidance(self.tool_registry.get_tool_names())
                if guidance:
                    system_prompt = f"{system_prompt}\n\n{guidance}" if system_prompt else guidance

            result = await self.tool_loop.run(
                system_prompt,
                to_langchain_messages(history),
                tools,
                cancellation,
                max_iterations=self.settings_store.get().max_tool_iterations
            )
        except Exception as e:
            logger.error("Error generating response", message_id=user_message_id, error=str(e))
            error_text = describe_error(e)
            error_id = self.repo.add_message(
                error_text, error_text, Sender.ASSISTANT, parent_id=user_message_id, is_error_message=True
            )
            return self.repo.get_message(error_id)

        if result.status == LoopStatus.ABORTED and not result.content:
            logger.info("Response generation aborted", message_id=user_message_id)
            return None

        response_id = self.repo.add_message(
            result.content, result.content, Sender.ASSISTANT, parent_id=user_message_id
        )
        self.repo.update_message(response_id, token_usage=result.token_usage)
        logger.info(
            "Added assistant message",
            message_id=response_id,
            status=result.status.value,
            iterations=result.iterations
        )
        return self.repo.get_message(response_id)

    async def _touch_prompt(self, title: Optional[str]) -> None:
        if not title or self.prompt_manager is None:
            return
        try:
            await self.prompt_manager.touch_last_used(title)
        except Exception as e:
            logger.warning("Could not record prompt use", title=title, error=str(e))

    async def chat(
        self,
        display_text: str,
        context: Optional[MessageContext] = None,
        chain_type: ChainType = ChainType.LLM_CHAIN,
        include_active_note: bool = False,
        cancellation: Optional[CancellationToken] = None
    ) -> Optional[ChatMessage]:
        """Send a message and generate the answer without releasing the lock in between"""

        with structlog.contextvars.bound_contextvars(conversation_id=self.conversation_id):
            async with self._lock:
                message_id = await self._send_message(display_text, context, chain_type, include_active_note)
                return await self._generate_response(message_id, chain_type, cancellation)

    # History edits

    async def edit_message(
        self,
        message_id: str,
        new_text: str,
        chain_type: ChainType = ChainType.LLM_CHAIN,
        include_active_note: bool = False
    ) -> bool:
        """Change a message's text and reprocess its context exactly once"""

        with structlog.contextvars.bound_contextvars(conversation_id=self.conversation_id):
            async with self._lock:
                try:
                    if not self.repo.edit_message(message_id, new_text):
                        return False

                    composed = await self._compose(chain_type)
                    await self.context_manager.reprocess_message_context(
                        message_id,
                        self.repo,
                        self.file_parser,
                        self.file_store,
                        chain_type,
                        include_active_note,
                        self.active_note,
                        composed.system_prompt,
                        composed.included_files
                    )
                    logger.info("Edited message", message_id=message_id)
                    return True
                except Exception as e:
                    logger.error("Error editing message", message_id=message_id, error=str(e))
                    return False

    async def regenerate_message(
        self,
        message_id: str,
        chain_type: ChainType = ChainType.LLM_CHAIN,
        cancellation: Optional[CancellationToken] = None
    ) -> bool:
        """
        Drop an answer and everything after it, then answer its user turn again.

        When no new answer is produced (model error, cancellation) the
        dropped turns are put back and False is returned.
        """

        with structlog.contextvars.bound_contextvars(conversation_id=self.conversation_id):
            async with self._lock:
                snapshot = list(self.repo.messages)
                try:
                    messages = self.repo.get_display_messages()
                    index = next((i for i, m in enumerate(messages) if m.id == message_id), -1)
                    if index <= 0:
                        logger.warning("Cannot regenerate message", message_id=message_id, index=index)
                        return False

                    user_message = messages[index - 1]
                    if not user_message.id:
                        logger.warning("Previous message has no id", message_id=message_id)
                        return False

                    if self.repo.get_llm_message(user_message.id) is None:
                        logger.warning("Previous message is not visible to the model", message_id=user_message.id)
                        return False

                    self.repo.truncate_after(index - 1)
                    response = await self._generate_response(user_message.id, chain_type, cancellation)
                    if response is not None and not response.is_error_message:
                        return True

                    logger.warning("Regeneration produced no answer, restoring history", message_id=message_id)
                    self.repo.messages = snapshot
                    return False
                except Exception as e:
                    logger.error("Error regenerating message", message_id=message_id, error=str(e))
                    self.repo.messages = snapshot
                    return False

    async def delete_message(self, message_id: str) -> bool:
        with structlog.contextvars.bound_contextvars(conversation_id=self.conversation_id):
            async with self._lock:
                try:
                    return self.repo.delete_message(message_id)
                except Exception as e:
                    logger.error("Error deleting message", message_id=message_id, error=str(e))
                    return False

    async def truncate_after_message_id(self, message_id: str) -> bool:
        async with self._lock:
            return self.repo.truncate_after_message_id(message_id)

    async def clear_messages(self) -> None:
        async with self._lock:
            await self._remember_conversation()
            self.repo.clear()

    async def close(self) -> None:
        """Record the conversation in user memory before it is discarded"""

        async with self._lock:
            await self._remember_conversation()

    async def _remember_conversation(self) -> None:
        if self.user_memory is None or not self.settings_store.get().remember_recent_conversations:
            return

        title, summary = summarize_conversation(self.repo.get_llm_messages())
        if not summary:
            return
        try:
            await self.user_memory.add_recent_conversation(title, summary)
        except Exception as e:
            logger.error("Failed to record conversation in user memory", error=str(e))

    async def add_message(self, message: ChatMessage) -> str:
        async with self._lock:
            return self.repo.add_chat_message(message)

    async def load_messages(self, messages: List[ChatMessage]) -> None:
        """Replace the conversation with previously saved messages"""

        async with self._lock:
            self.repo.clear()
            for message in messages:
                self.repo.add_chat_message(message)
            logger.info("Loaded messages", conversation_id=self.conversation_id, count=len(messages))

    # Views

    def get_message(self, message_id: str) -> Optional[ChatMessage]:
        return self.repo.get_message(message_id)

    def get_display_messages(self) -> List[ChatMessage]:
        return self.repo.get_display_messages()

    def get_llm_messages(self) -> List[ChatMessage]:
        return self.repo.get_llm_messages()

    def get_debug_info(self) -> Dict[str, Any]:
        return {"conversation_id": self.conversation_id, **self.repo.get_debug_info()}
