from typing import Any, Dict, List, Optional
from datetime import datetime
import asyncio

import structlog

from notechat.domain.context.context_manager import ContextManager
from notechat.domain.context.file_parser import FileParserManager, RateLimitNotifier
from notechat.domain.context.memory.user_memory import UserMemoryManager
from notechat.domain.context.mention import Mention
from notechat.domain.conversation.message_repository import MessageRepository
from notechat.domain.errors import NotFoundError
from notechat.domain.models.message import ProjectConfig
from notechat.domain.models.prompt import MigrationResult
from notechat.domain.orchestration.core.chat_manager import ChatManager
from notechat.domain.orchestration.core.model_client import ModelClient
from notechat.domain.orchestration.core.tool_loop import ToolLoopExecutor
from notechat.domain.prompts.migration import migrate_legacy_prompt
from notechat.domain.prompts.prompt_cache import PromptCache
from notechat.domain.prompts.prompt_composer import PromptComposer
from notechat.domain.prompts.prompt_manager import PromptManager
from notechat.domain.prompts.prompt_register import PromptRegister
from notechat.domain.prompts.templating import NoteTemplateEngine, TemplateEngine
from notechat.domain.tool.tool_executor import ToolExecutor
from notechat.domain.tool.tool_registry import ToolRegistry
from notechat.infrastructure.config.settings import SettingsStore
from notechat.infrastructure.observability.logging import ChatLogger, MetricsCollector
from notechat.infrastructure.storage.file_store import FileStore

logger = structlog.get_logger(__name__)


class NotechatServices:
    """
    Wires the conversation core together and tracks the open conversations.

    Shared by every conversation: file store, settings, prompt cache and
    sync, composer, context pipeline, tools. Each conversation gets its own
    MessageRepository and ChatManager.
    """

    def __init__(
        self,
        file_store: FileStore,
        model_client: ModelClient,
        settings_store: Optional[SettingsStore] = None,
        tool_registry: Optional[ToolRegistry] = None,
        mention: Optional[Mention] = None,
        template_engine: Optional[TemplateEngine] = None
    ):
        self.file_store = file_store
        self.model_client = model_client
        self.settings_store = settings_store or SettingsStore()
        settings = self.settings_store.get()

        self.chat_logger = ChatLogger("notechat")
        self.metrics = MetricsCollector()

        self.prompt_cache = PromptCache()
        self.prompt_manager = PromptManager(file_store, self.prompt_cache, self.settings_store)
        self.prompt_register = PromptRegister(
            file_store, self.prompt_cache, self.prompt_manager, self.settings_store, self.chat_logger
        )
        self.user_memory = UserMemoryManager(file_store, self.settings_store)
        self.composer = PromptComposer(
            self.settings_store,
            self.prompt_cache,
            file_store,
            template_engine or NoteTemplateEngine(),
            self.user_memory
        )

        self.file_parser = FileParserManager(RateLimitNotifier(settings.rate_limit_notice_interval_seconds))
        self.context_manager = ContextManager(mention or Mention(), self.chat_logger)

        self.tool_registry = tool_registry or ToolRegistry()
        self.tool_executor = ToolExecutor(
            self.tool_registry, settings.tool_timeout_seconds, self.chat_logger, self.metrics
        )
        self.tool_loop = ToolLoopExecutor(
            model_client, self.tool_executor, settings.max_tool_iterations, self.chat_logger, self.metrics
        )

        self.conversations: Dict[str, ChatManager] = {}
        self.conversation_metadata: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()
        self.started = False
        self.migration_result: Optional[MigrationResult] = None

    async def start(self) -> None:
        """Migrate the legacy prompt, load prompts and start file sync"""

        if self.started:
            return
        self.migration_result = await migrate_legacy_prompt(self.file_store, self.prompt_cache, self.settings_store)
        await self.prompt_register.initialize()
        await self.file_store.start_watching()
        self.started = True
        logger.info("Notechat services started", prompts=len(self.prompt_cache.prompts))

    async def stop(self) -> None:
        await self.file_store.stop_watching()
        self.prompt_register.cleanup()
        async with self._lock:
            self.conversations.clear()
            self.conversation_metadata.clear()
        self.started = False
        logger.info("Notechat services stopped")

    async def create_conversation(
        self,
        active_note: Optional[str] = None,
        project: Optional[ProjectConfig] = None
    ) -> ChatManager:
        manager = ChatManager(
            MessageRepository(),
            self.context_manager,
            self.file_parser,
            self.file_store,
            self.composer,
            self.tool_loop,
            self.tool_registry,
            self.settings_store,
            prompt_manager=self.prompt_manager,
            user_memory=self.user_memory,
        )
        manager.set_active_note(active_note)
        manager.set_project(project)

        async with self._lock:
            self.conversations[manager.conversation_id] = manager
            self.conversation_metadata[manager.conversation_id] = {
                "created_at": datetime.utcnow(),
                "project_id": project.id if project else None,
            }

        logger.info("Conversation created", conversation_id=manager.conversation_id)
        return manager

    def get_conversation(self, conversation_id: str) -> ChatManager:
        manager = self.conversations.get(conversation_id)
        if manager is None:
            raise NotFoundError(f"Conversation not found: {conversation_id}")
        return manager

    async def close_conversation(self, conversation_id: str) -> bool:
        """Forget a conversation after recording it in user memory"""

        async with self._lock:
            self.conversation_metadata.pop(conversation_id, None)
            manager = self.conversations.pop(conversation_id, None)

        if manager is None:
            return False
        await manager.close()
        logger.info("Conversation closed", conversation_id=conversation_id)
        return True

    def list_conversations(self) -> List[Dict[str, Any]]:
        return [
            {
                "conversation_id": conversation_id,
                "message_count": len(manager.repo.messages),
                **self.conversation_metadata.get(conversation_id, {}),
            }
            for conversation_id, manager in self.conversations.items()
        ]
