"""Tests for user memory and the TTL cache."""

import pytest

from notechat.domain.context.memory.cache_memory_store import CacheMemoryStore
from notechat.domain.context.memory.user_memory import MAX_RECENT_CONVERSATIONS, UserMemoryManager

MEMORY_PATH = "notechat/memory/Recent Conversations.md"


@pytest.mark.asyncio
async def test_memory_prompt_absent_or_blank(file_store, settings_store):
    memory = UserMemoryManager(file_store, settings_store)
    assert await memory.get_user_memory_prompt() is None

    file_store.files[MEMORY_PATH] = "  \n"
    assert await memory.get_user_memory_prompt() is None

    settings_store.update(memory_file_path="")
    assert await memory.get_user_memory_prompt() is None


@pytest.mark.asyncio
async def test_recent_conversations_are_capped(file_store, settings_store):
    memory = UserMemoryManager(file_store, settings_store)
    for i in range(MAX_RECENT_CONVERSATIONS + 2):
        await memory.add_recent_conversation(f"Chat {i}", f"Summary {i}")

    content = file_store.files[MEMORY_PATH]
    assert content.count("## ") == MAX_RECENT_CONVERSATIONS
    assert "## Chat 0\n" not in content
    assert "## Chat 1\n" not in content
    assert content.rstrip().endswith(f"Summary {MAX_RECENT_CONVERSATIONS + 1}")

    prompt = await memory.get_user_memory_prompt()
    assert prompt.startswith("<user_memory>\n## Chat 2\n")
    assert prompt.endswith("</user_memory>")


@pytest.mark.asyncio
async def test_blank_summary_is_skipped(file_store, settings_store):
    memory = UserMemoryManager(file_store, settings_store)
    await memory.add_recent_conversation("Empty", "   ")
    assert MEMORY_PATH not in file_store.files


@pytest.mark.asyncio
async def test_cache_ttl_eviction_and_stats():
    cache = CacheMemoryStore(default_ttl=60, max_entries=2)
    await cache.set("a", 1)
    await cache.set("b", 2)
    await cache.set("c", 3)

    assert await cache.get("a") is None
    assert await cache.get("c") == 3

    assert await cache.delete("b") is True
    await cache.set("expired", 4, ttl=-1)
    assert await cache.clear_expired() == 1

    stats = await cache.get_stats()
    assert stats == {"total_keys": 1, "hits": 1, "misses": 1}
