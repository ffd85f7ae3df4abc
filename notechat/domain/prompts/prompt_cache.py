from typing import AsyncIterator, Dict, List, Optional, Set
from contextlib import asynccontextmanager
import asyncio

import structlog

from notechat.domain.models.prompt import PromptRecord
from notechat.infrastructure.storage.file_store import normalize_path

logger = structlog.get_logger(__name__)


class PromptCache:
    """
    In-memory mirror of the prompt files, keyed by title.

    All mutations go through the lock so the conversation path and the
    file-sync path never interleave. Pending-write markers let the sync
    handlers skip change notifications caused by our own writes.
    """

    def __init__(self):
        self.prompts: Dict[str, PromptRecord] = {}
        self.session_prompt_title: Optional[str] = None
        self._pending_writes: Set[str] = set()
        self._lock = asyncio.Lock()

    async def update_cached_system_prompts(self, prompts: List[PromptRecord]) -> None:
        """Replace the whole cache"""

        async with self._lock:
            self.prompts = {prompt.title: prompt for prompt in prompts}

    async def upsert_cached_system_prompt(self, prompt: PromptRecord) -> None:
        """Insert or replace one prompt"""

        async with self._lock:
            self.prompts[prompt.title] = prompt

    async def delete_cached_system_prompt(self, title: str) -> bool:
        """Drop one prompt; False when it was not cached"""

        async with self._lock:
            if title == self.session_prompt_title:
                self.session_prompt_title = None
            return self.prompts.pop(title, None) is not None

    def get_cached_system_prompts(self) -> List[PromptRecord]:
        """All cached prompts, most recently modified first"""
        return sorted(self.prompts.values(), key=lambda p: p.modified_ms, reverse=True)

    def get_cached_system_prompt(self, title: str) -> Optional[PromptRecord]:
        return self.prompts.get(title)

    def set_session_prompt_title(self, title: Optional[str]) -> None:
        """Select a prompt for the current session only"""
        self.session_prompt_title = title or None

    def initialize_session_prompt_from_default(self, default_title: str) -> None:
        self.session_prompt_title = default_title if default_title in self.prompts else None

    def get_effective_system_prompt_title(self, default_title: str = "") -> Optional[str]:
        """Title of the session prompt, else the default prompt, else None"""

        for title in (self.session_prompt_title, default_title):
            if title and title in self.prompts:
                return title
        return None

    def get_effective_system_prompt_content(self, default_title: str = "") -> str:
        title = self.get_effective_system_prompt_title(default_title)
        return self.prompts[title].content if title else ""

    def is_pending_file_write(self, path: str) -> bool:
        return normalize_path(path) in self._pending_writes

    def add_pending_file_write(self, path: str) -> None:
        self._pending_writes.add(normalize_path(path))

    def remove_pending_file_write(self, path: str) -> None:
        self._pending_writes.discard(normalize_path(path))

    @asynccontextmanager
    async def pending_write(self, *paths: str) -> AsyncIterator[None]:
        """Mark paths as being written by us for the duration of the block"""

        for path in paths:
            self.add_pending_file_write(path)
        try:
            yield
        finally:
            for path in paths:
                self.remove_pending_file_write(path)
