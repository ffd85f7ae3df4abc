from typing import List, Optional
import re

import structlog

from notechat.domain.errors import NotFoundError, ValidationError
from notechat.domain.models.prompt import PromptRecord
from notechat.infrastructure.config.settings import SettingsStore
from notechat.infrastructure.storage.file_store import FileStore
from .prompt_cache import PromptCache
from .prompt_utils import (
    get_prompt_file_path,
    load_all_system_prompts,
    now_ms,
    write_prompt_file,
)

logger = structlog.get_logger(__name__)

_INVALID_TITLE_RE = re.compile(r'[\\/:*?"<>|]')


def validate_prompt_title(title: str) -> str:
    """Return the stripped title or raise ValidationError"""

    title = (title or "").strip()
    if not title:
        raise ValidationError("Prompt title cannot be empty")
    if _INVALID_TITLE_RE.search(title):
        raise ValidationError(f"Prompt title contains invalid characters: {title}")
    return title


class PromptManager:
    """Programmatic create/update/delete of prompt files, kept in step with the cache"""

    def __init__(self, file_store: FileStore, cache: PromptCache, settings_store: SettingsStore):
        self.file_store = file_store
        self.cache = cache
        self.settings_store = settings_store

    @property
    def folder(self) -> str:
        return self.settings_store.get().system_prompts_folder

    async def initialize(self) -> List[PromptRecord]:
        """Initial full scan of the prompts folder"""
        return await self.reload_prompts()

    async def reload_prompts(self) -> List[PromptRecord]:
        prompts = await load_all_system_prompts(self.file_store, self.folder)
        await self.cache.update_cached_system_prompts(prompts)
        logger.info("Loaded system prompts", count=len(prompts), folder=self.folder)
        return prompts

    async def create_prompt(self, title: str, content: str) -> PromptRecord:
        """Create a new prompt file; fails when the title is taken"""

        title = validate_prompt_title(title)
        path = get_prompt_file_path(title, self.folder)
        if await self.file_store.exists(path):
            raise ValidationError(f"A prompt named '{title}' already exists")

        now = now_ms()
        prompt = PromptRecord(title=title, content=content, created_ms=now, modified_ms=now)

        await self.file_store.ensure_folder(self.folder)
        async with self.cache.pending_write(path):
            await write_prompt_file(self.file_store, path, prompt)

        await self.cache.upsert_cached_system_prompt(prompt)
        logger.info("Created system prompt", title=title)
        return prompt

    async def update_prompt(
        self,
        title: str,
        content: Optional[str] = None,
        new_title: Optional[str] = None
    ) -> PromptRecord:
        """Update content and/or rename a prompt"""

        existing = self.cache.get_cached_system_prompt(title)
        if existing is None:
            raise NotFoundError(f"System prompt not found: {title}")

        target_title = validate_prompt_title(new_title) if new_title else title
        old_path = get_prompt_file_path(title, self.folder)
        new_path = get_prompt_file_path(target_title, self.folder)

        if target_title != title and await self.file_store.exists(new_path):
            raise ValidationError(f"A prompt named '{target_title}' already exists")

        updated = existing.model_copy(update={
            "title": target_title,
            "content": existing.content if content is None else content,
            "modified_ms": now_ms(),
        })

        async with self.cache.pending_write(old_path, new_path):
            if target_title != title:
                await self.file_store.rename(old_path, new_path)
            await write_prompt_file(self.file_store, new_path, updated)

        if target_title != title:
            await self.cache.delete_cached_system_prompt(title)
            if self.settings_store.get().default_system_prompt_title == title:
                self.settings_store.update(default_system_prompt_title=target_title)
            logger.info("Renamed system prompt", old_title=title, new_title=target_title)

        await self.cache.upsert_cached_system_prompt(updated)
        return updated

    async def delete_prompt(self, title: str) -> bool:
        """Delete a prompt file; False when no such prompt exists"""

        path = get_prompt_file_path(title, self.folder)
        if not await self.file_store.exists(path):
            return False

        async with self.cache.pending_write(path):
            await self.file_store.delete(path)

        await self.cache.delete_cached_system_prompt(title)
        if self.settings_store.get().default_system_prompt_title == title:
            self.settings_store.update(default_system_prompt_title="")

        logger.info("Deleted system prompt", title=title)
        return True

    async def touch_last_used(self, title: str) -> None:
        """Record that a prompt was just used to compose a request"""

        prompt = self.cache.get_cached_system_prompt(title)
        if prompt is None:
            return

        updated = prompt.model_copy(update={"last_used_ms": now_ms()})
        path = get_prompt_file_path(title, self.folder)
        try:
            async with self.cache.pending_write(path):
                await write_prompt_file(self.file_store, path, updated)
        except FileNotFoundError:
            logger.warning("Prompt file vanished before last-used update", title=title)
            return

        await self.cache.upsert_cached_system_prompt(updated)
