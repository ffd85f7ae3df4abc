from typing import Awaitable, Callable, Dict, List, Optional, Set
import asyncio

import structlog

from notechat.infrastructure.config.settings import AppSettings, SettingsStore
from notechat.infrastructure.observability.logging import ChatLogger
from notechat.infrastructure.storage.file_store import FileChangeEvent, FileStore, basename
from .prompt_cache import PromptCache
from .prompt_manager import PromptManager
from .prompt_utils import (
    ensure_prompt_frontmatter,
    is_system_prompt_file,
    parse_system_prompt_file,
)

logger = structlog.get_logger(__name__)

EventHandler = Callable[[FileChangeEvent], Awaitable[None]]


class PromptRegister:
    """
    Keeps the prompt cache in step with changes made to the prompt files.

    File store listeners run synchronously, so the guards (prompt-file
    classification and pending-write markers) are evaluated at notification
    time. Handler bodies then run as tasks, one at a time per path. Modify
    notifications are debounced per path on the trailing edge.
    """

    def __init__(
        self,
        file_store: FileStore,
        cache: PromptCache,
        manager: PromptManager,
        settings_store: SettingsStore,
        chat_logger: Optional[ChatLogger] = None
    ):
        self.file_store = file_store
        self.cache = cache
        self.manager = manager
        self.settings_store = settings_store
        self.chat_logger = chat_logger or ChatLogger(__name__)

        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._path_locks: Dict[str, asyncio.Lock] = {}
        self._path_users: Dict[str, int] = {}
        self._unsubscribers: List[Callable[[], None]] = []

    @property
    def folder(self) -> str:
        return self.settings_store.get().system_prompts_folder

    async def initialize(self) -> None:
        """Load every prompt, pick the session prompt and start listening"""

        await self.manager.initialize()
        self.cache.initialize_session_prompt_from_default(
            self.settings_store.get().default_system_prompt_title
        )
        if not self._unsubscribers:
            self._unsubscribers.append(self.file_store.subscribe(self.handle_file_event))
            self._unsubscribers.append(self.settings_store.subscribe(self.handle_settings_change))

    def cleanup(self) -> None:
        """Cancel pending debounce timers and in-flight handlers, stop listening"""

        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()

        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self._path_locks.clear()
        self._path_users.clear()

        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    async def drain(self) -> None:
        """Wait for the handlers already started to finish"""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # Notification entry points

    def handle_file_event(self, event: FileChangeEvent) -> None:
        if event.kind == "rename":
            self._on_rename(event)
            return

        if not is_system_prompt_file(event.path, self.folder) or self.cache.is_pending_file_write(event.path):
            return

        if event.kind == "create":
            self._spawn(self._handle_file_creation, event)
        elif event.kind == "delete":
            self._spawn(self._handle_file_deletion, event)
        elif event.kind == "modify":
            self._debounce(event)

    def handle_settings_change(self, previous: AppSettings, current: AppSettings) -> None:
        if previous.system_prompts_folder == current.system_prompts_folder:
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(
                "Prompts folder changed outside the event loop, reload skipped",
                previous_folder=previous.system_prompts_folder,
                next_folder=current.system_prompts_folder
            )
            return

        task = loop.create_task(
            self._handle_folder_change(previous.system_prompts_folder, current.system_prompts_folder)
        )
        self._track(task)

    def _on_rename(self, event: FileChangeEvent) -> None:
        old_path = event.old_path or ""
        if self.cache.is_pending_file_write(event.path) or self.cache.is_pending_file_write(old_path):
            return

        was_prompt = is_system_prompt_file(old_path, self.folder)
        is_prompt = is_system_prompt_file(event.path, self.folder)
        if not was_prompt and not is_prompt:
            return

        self._spawn(self._handle_file_rename, event)

    # Scheduling

    def _debounce(self, event: FileChangeEvent) -> None:
        existing = self._timers.pop(event.path, None)
        if existing is not None:
            existing.cancel()

        loop = asyncio.get_running_loop()
        delay = self.settings_store.get().prompt_sync_debounce_seconds
        self._timers[event.path] = loop.call_later(delay, self._fire_debounced, event)

    def _fire_debounced(self, event: FileChangeEvent) -> None:
        self._timers.pop(event.path, None)
        self._spawn(self._handle_file_modify, event)

    def _spawn(self, handler: EventHandler, event: FileChangeEvent) -> None:
        task = asyncio.get_running_loop().create_task(self._run_serialized(handler, event))
        self._track(task)

    def _track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_serialized(self, handler: EventHandler, event: FileChangeEvent) -> None:
        path = event.path
        lock = self._path_locks.setdefault(path, asyncio.Lock())
        self._path_users[path] = self._path_users.get(path, 0) + 1
        try:
            async with lock:
                await handler(event)
        finally:
            # last user of the path drops its lock
            remaining = self._path_users.get(path, 1) - 1
            if remaining > 0:
                self._path_users[path] = remaining
            else:
                self._path_users.pop(path, None)
                if self._path_locks.get(path) is lock:
                    del self._path_locks[path]

    # Handlers

    async def _handle_file_creation(self, event: FileChangeEvent) -> None:
        try:
            self.chat_logger.log_prompt_sync("create", event.path)
            prompt = await parse_system_prompt_file(self.file_store, event.path)
            async with self.cache.pending_write(event.path):
                await ensure_prompt_frontmatter(self.file_store, event.path, prompt)
            updated = await parse_system_prompt_file(self.file_store, event.path)
            await self.cache.upsert_cached_system_prompt(updated)
        except Exception as e:
            logger.error("Error processing system prompt creation", path=event.path, error=str(e))

    async def _handle_file_modify(self, event: FileChangeEvent) -> None:
        try:
            self.chat_logger.log_prompt_sync("modify", event.path)
            prompt = await parse_system_prompt_file(self.file_store, event.path)
            await self.cache.upsert_cached_system_prompt(prompt)
        except Exception as e:
            logger.error("Error processing system prompt modification", path=event.path, error=str(e))

    async def _handle_file_deletion(self, event: FileChangeEvent) -> None:
        try:
            self.chat_logger.log_prompt_sync("delete", event.path)
            title = basename(event.path)
            await self.cache.delete_cached_system_prompt(title)

            if self.settings_store.get().default_system_prompt_title == title:
                self.settings_store.update(default_system_prompt_title="")
                logger.info("Cleared default system prompt title", deleted=title)
        except Exception as e:
            logger.error("Error processing system prompt deletion", path=event.path, error=str(e))

    async def _handle_file_rename(self, event: FileChangeEvent) -> None:
        old_path = event.old_path or ""
        is_prompt = is_system_prompt_file(event.path, self.folder)

        try:
            self.chat_logger.log_prompt_sync("rename", event.path, old_path=old_path)

            if is_system_prompt_file(old_path, self.folder):
                old_title = basename(old_path)
                await self.cache.delete_cached_system_prompt(old_title)

                if self.settings_store.get().default_system_prompt_title == old_title:
                    new_title = basename(event.path) if is_prompt else ""
                    self.settings_store.update(default_system_prompt_title=new_title)
                    logger.info(
                        "Updated default system prompt title after rename",
                        old_title=old_title,
                        new_title=new_title
                    )

            if is_prompt:
                prompt = await parse_system_prompt_file(self.file_store, event.path)
                async with self.cache.pending_write(event.path):
                    await ensure_prompt_frontmatter(self.file_store, event.path, prompt)
                updated = await parse_system_prompt_file(self.file_store, event.path)
                await self.cache.upsert_cached_system_prompt(updated)
        except Exception as e:
            logger.error("Error processing system prompt rename", path=event.path, old_path=old_path, error=str(e))

    async def _handle_folder_change(self, previous_folder: str, next_folder: str) -> None:
        try:
            logger.info("System prompts folder changed", previous_folder=previous_folder, next_folder=next_folder)
            await self.cache.update_cached_system_prompts([])
            await self.manager.reload_prompts()
        except Exception as e:
            logger.error(
                "Error reloading system prompts after folder change",
                previous_folder=previous_folder,
                next_folder=next_folder,
                error=str(e)
            )
