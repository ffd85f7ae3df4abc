"""Shared test fixtures for notechat."""

from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

from notechat.application.container import NotechatServices
from notechat.domain.context.context_manager import ContextManager
from notechat.domain.context.file_parser import FileParserManager
from notechat.domain.context.mention import Mention, UrlContent, UrlListResult
from notechat.domain.orchestration.core.model_client import CancellationToken, ModelResponse
from notechat.domain.prompts.prompt_cache import PromptCache
from notechat.domain.prompts.prompt_utils import CREATED_KEY, LAST_USED_KEY, MODIFIED_KEY
from notechat.domain.tool.tool_registry import ToolRegistry
from notechat.infrastructure.config.settings import AppSettings, SettingsStore
from notechat.infrastructure.storage.memory_file_store import InMemoryFileStore

PROMPTS_FOLDER = "notechat/system-prompts"


def prompt_file(content: str, created: int = 1000, modified: int = 2000, last_used: int = 0) -> str:
    """A prompt file with complete frontmatter."""
    return (
        "---\n"
        f"{CREATED_KEY}: {created}\n"
        f"{MODIFIED_KEY}: {modified}\n"
        f"{LAST_USED_KEY}: {last_used}\n"
        "---\n"
        f"{content}"
    )


class ScriptedModelClient:
    """Model client that replays a list of responses and records every request."""

    def __init__(self, responses: Optional[List[Any]] = None):
        self.responses = list(responses or [])
        self.calls: List[Dict[str, Any]] = []

    async def invoke(self, system_prompt, messages, tools, cancellation: Optional[CancellationToken] = None):
        self.calls.append({
            "system_prompt": system_prompt,
            "messages": list(messages),
            "tools": list(tools),
        })
        if not self.responses:
            return ModelResponse(content="Default answer")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return await response(cancellation)
        return response


class StaticMention(Mention):
    """URL enrichment that returns canned content without network access."""

    def __init__(self, pages: Optional[Dict[str, str]] = None, failures: Optional[Dict[str, str]] = None):
        super().__init__()
        self.pages = pages or {}
        self.failures = failures or {}
        self.requested: List[str] = []

    async def process_url_list(self, urls):
        results = []
        for url in urls:
            self.requested.append(url)
            if url in self.failures:
                results.append(UrlContent(url=url, error=self.failures[url]))
            else:
                results.append(UrlContent(url=url, content=self.pages.get(url, "")))
        return UrlListResult(results=results)


@pytest.fixture
def settings_store():
    return SettingsStore(AppSettings(prompt_sync_debounce_seconds=0.01))


@pytest.fixture
def file_store():
    return InMemoryFileStore({
        "notes/Alpha.md": "Alpha body",
        "notes/Beta.md": "Beta body",
        "projects/plan/Roadmap.md": "Ship it",
    })


@pytest.fixture
def prompt_cache():
    return PromptCache()


@pytest.fixture
def file_parser():
    return FileParserManager()


@pytest.fixture
def mention():
    return StaticMention()


@pytest.fixture
def context_manager(mention):
    return ContextManager(mention)


@pytest.fixture
def tool_registry():
    return ToolRegistry()


@pytest.fixture
def model_client():
    return ScriptedModelClient()


@pytest_asyncio.fixture
async def services(file_store, model_client, settings_store, tool_registry, mention):
    services = NotechatServices(
        file_store=file_store,
        model_client=model_client,
        settings_store=settings_store,
        tool_registry=tool_registry,
        mention=mention,
    )
    await services.start()
    yield services
    await services.stop()


@pytest.fixture
def make_mention():
    return StaticMention


@pytest.fixture
def make_model_client():
    return ScriptedModelClient


@pytest.fixture
def make_prompt_file():
    return prompt_file
