"""Tests for file parsing and the rate-limit notice cooldown."""

import json
from unittest.mock import MagicMock

import pytest

from notechat.domain.context.file_parser import (
    FileParserManager,
    RateLimitNotifier,
    extract_retry_time,
)
from notechat.domain.errors import RateLimitError, ValidationError
from notechat.infrastructure.storage.memory_file_store import InMemoryFileStore


class ThrottledParser:
    supported_extensions = ["pdf"]

    async def parse_file(self, path, file_store):
        raise RateLimitError("Rate limited, retry after 20 seconds")


@pytest.mark.asyncio
async def test_routes_by_extension():
    store = InMemoryFileStore({
        "notes/a.md": "# A",
        "data/table.CSV": "x,y",
        "board.canvas": json.dumps({
            "nodes": [
                {"id": "1", "type": "text", "text": "Idea"},
                {"id": "2", "type": "file", "file": "notes/a.md"},
            ],
            "edges": [{"fromNode": "1", "toNode": "2", "label": "supports"}],
        }),
    })
    manager = FileParserManager()

    assert await manager.parse_file("notes/a.md", store) == "# A"
    assert await manager.parse_file("data/table.CSV", store) == "x,y"
    canvas = await manager.parse_file("board.canvas", store)
    assert "- (text) Idea" in canvas
    assert "- Idea -> [[notes/a.md]] (supports)" in canvas

    with pytest.raises(ValidationError):
        await manager.parse_file("image.png", store)
    assert manager.supports_extension(".MD")
    assert not manager.supports_extension("png")


@pytest.mark.asyncio
async def test_rate_limit_notice_is_throttled():
    listener = MagicMock()
    manager = FileParserManager(RateLimitNotifier(interval_seconds=60, listener=listener))
    manager.register_parser(ThrottledParser())
    store = InMemoryFileStore({"doc.pdf": "%PDF"})

    for _ in range(3):
        with pytest.raises(RateLimitError):
            await manager.parse_file("doc.pdf", store)

    listener.assert_called_once()
    assert "Please try again in 20 seconds." in listener.call_args.args[0]


def test_notifier_reset_and_zero_interval():
    notifier = RateLimitNotifier(interval_seconds=60)
    assert notifier.notify(RateLimitError("x")) is not None
    assert notifier.notify(RateLimitError("x")) is None
    notifier.reset()
    assert notifier.notify(RateLimitError("x")) is not None

    eager = RateLimitNotifier(interval_seconds=0)
    assert eager.notify(RateLimitError("x")) is not None
    assert eager.notify(RateLimitError("x")) is not None


def test_extract_retry_time():
    assert extract_retry_time(RateLimitError("x", retry_after=12.5)) == "12 seconds"
    assert extract_retry_time(Exception("Please try again in 2 minutes")) == "2 minutes"
    assert extract_retry_time(Exception("no hint")) == "a minute"
