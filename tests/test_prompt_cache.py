"""Tests for the prompt cache and prompt file helpers."""

import pytest

from notechat.domain.models.prompt import PromptRecord
from notechat.domain.prompts.prompt_utils import (
    CREATED_KEY,
    MODIFIED_KEY,
    ensure_prompt_frontmatter,
    get_prompt_file_path,
    is_system_prompt_file,
    load_all_system_prompts,
    parse_system_prompt_file,
    split_frontmatter,
)
from notechat.infrastructure.storage.memory_file_store import InMemoryFileStore

FOLDER = "notechat/system-prompts"


def _record(title, modified=0, content="body"):
    return PromptRecord(title=title, content=content, created_ms=1, modified_ms=modified)


@pytest.mark.asyncio
async def test_cache_orders_by_modified_desc(prompt_cache):
    await prompt_cache.update_cached_system_prompts([_record("old", 1), _record("new", 5), _record("mid", 3)])
    assert [p.title for p in prompt_cache.get_cached_system_prompts()] == ["new", "mid", "old"]


@pytest.mark.asyncio
async def test_upsert_and_delete(prompt_cache):
    await prompt_cache.upsert_cached_system_prompt(_record("a", content="first"))
    await prompt_cache.upsert_cached_system_prompt(_record("a", content="second"))
    assert prompt_cache.get_cached_system_prompt("a").content == "second"

    assert await prompt_cache.delete_cached_system_prompt("a") is True
    assert await prompt_cache.delete_cached_system_prompt("a") is False


@pytest.mark.asyncio
async def test_effective_prompt_prefers_session_then_default(prompt_cache):
    await prompt_cache.update_cached_system_prompts([_record("a", content="A"), _record("b", content="B")])

    assert prompt_cache.get_effective_system_prompt_content("") == ""
    assert prompt_cache.get_effective_system_prompt_content("b") == "B"
    assert prompt_cache.get_effective_system_prompt_content("missing") == ""

    prompt_cache.set_session_prompt_title("a")
    assert prompt_cache.get_effective_system_prompt_content("b") == "A"

    await prompt_cache.delete_cached_system_prompt("a")
    assert prompt_cache.session_prompt_title is None
    assert prompt_cache.get_effective_system_prompt_content("b") == "B"


@pytest.mark.asyncio
async def test_initialize_session_prompt_from_default(prompt_cache):
    await prompt_cache.update_cached_system_prompts([_record("a")])
    prompt_cache.initialize_session_prompt_from_default("a")
    assert prompt_cache.session_prompt_title == "a"
    prompt_cache.initialize_session_prompt_from_default("gone")
    assert prompt_cache.session_prompt_title is None


@pytest.mark.asyncio
async def test_pending_write_marks_only_inside_block(prompt_cache):
    path = f"{FOLDER}/a.md"
    async with prompt_cache.pending_write(path):
        assert prompt_cache.is_pending_file_write(path)
        assert prompt_cache.is_pending_file_write("/" + path + "/")
    assert not prompt_cache.is_pending_file_write(path)


def test_is_system_prompt_file():
    assert is_system_prompt_file(f"{FOLDER}/Writer.md", FOLDER)
    assert not is_system_prompt_file(f"{FOLDER}/unsupported/Writer.md", FOLDER)
    assert not is_system_prompt_file(f"{FOLDER}/Writer.txt", FOLDER)
    assert not is_system_prompt_file("notes/Writer.md", FOLDER)
    assert get_prompt_file_path("Writer", FOLDER + "/") == f"{FOLDER}/Writer.md"


def test_split_frontmatter_handles_missing_and_invalid_yaml():
    assert split_frontmatter("plain body") == ({}, "plain body")
    data, body = split_frontmatter(f"---\n{CREATED_KEY}: 5\n---\nHello")
    assert data == {CREATED_KEY: 5}
    assert body == "Hello"
    assert split_frontmatter("---\n: : :\n---\nbody")[1].endswith("body")


@pytest.mark.asyncio
async def test_parse_and_ensure_frontmatter(make_prompt_file):
    store = InMemoryFileStore({f"{FOLDER}/Writer.md": "Write well"})
    path = f"{FOLDER}/Writer.md"

    prompt = await parse_system_prompt_file(store, path)
    assert prompt.title == "Writer"
    assert prompt.content == "Write well"

    assert await ensure_prompt_frontmatter(store, path, prompt) is True
    data, body = split_frontmatter(store.files[path])
    assert data[CREATED_KEY] == prompt.created_ms
    assert body == "Write well"
    assert await ensure_prompt_frontmatter(store, path, prompt) is False

    store.files[path] = make_prompt_file("Kept", created=7, modified=9)
    reparsed = await parse_system_prompt_file(store, path)
    assert (reparsed.created_ms, reparsed.modified_ms, reparsed.content) == (7, 9, "Kept")


@pytest.mark.asyncio
async def test_load_all_skips_non_prompt_files(make_prompt_file):
    store = InMemoryFileStore({
        f"{FOLDER}/A.md": make_prompt_file("a"),
        f"{FOLDER}/notes.txt": "ignored",
        f"{FOLDER}/unsupported/B.md": make_prompt_file("b"),
    })
    prompts = await load_all_system_prompts(store, FOLDER)
    assert [p.title for p in prompts] == ["A"]
    assert prompts[0].modified_ms == 2000
    assert MODIFIED_KEY not in prompts[0].content
