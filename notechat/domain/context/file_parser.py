from typing import Callable, Dict, List, Optional, Protocol
import json
import posixpath
import re
import time

import structlog

from notechat.domain.errors import RateLimitError, ValidationError
from notechat.infrastructure.storage.file_store import FileStore

logger = structlog.get_logger(__name__)

NoticeListener = Callable[[str], None]

_RETRY_RE = re.compile(r"(?:retry|try again)\s+(?:after|in)\s+(\d+(?:\.\d+)?)\s*(s|sec|secs|seconds|m|min|mins|minutes)?", re.I)


class FileParser(Protocol):
    supported_extensions: List[str]

    async def parse_file(self, path: str, file_store: FileStore) -> str:
        ...


class MarkdownParser:
    supported_extensions = ["md"]

    async def parse_file(self, path: str, file_store: FileStore) -> str:
        return await file_store.read(path)


class PlainTextParser:
    supported_extensions = ["txt", "csv", "tsv", "json", "xml", "yaml", "yml"]

    async def parse_file(self, path: str, file_store: FileStore) -> str:
        return await file_store.read(path)


class CanvasParser:
    """Flattens a JSON canvas into its text nodes, file references and edges"""

    supported_extensions = ["canvas"]

    async def parse_file(self, path: str, file_store: FileStore) -> str:
        data = json.loads(await file_store.read(path))
        nodes = data.get("nodes", [])
        labels = {}

        lines = [f"Canvas: {path}", "", "Nodes:"]
        for node in nodes:
            node_id = node.get("id", "")
            node_type = node.get("type", "text")
            if node_type == "text":
                label = node.get("text", "")
            elif node_type == "file":
                label = f"[[{node.get('file', '')}]]"
            elif node_type == "link":
                label = node.get("url", "")
            else:
                label = node.get("label", "")
            labels[node_id] = label
            lines.append(f"- ({node_type}) {label}")

        edges = data.get("edges", [])
        if edges:
            lines.extend(["", "Connections:"])
            for edge in edges:
                source = labels.get(edge.get("fromNode"), edge.get("fromNode", "?"))
                target = labels.get(edge.get("toNode"), edge.get("toNode", "?"))
                suffix = f" ({edge['label']})" if edge.get("label") else ""
                lines.append(f"- {source} -> {target}{suffix}")

        return "\n".join(lines)


def extract_retry_time(error: Exception) -> str:
    """Human readable retry delay from a rate-limit error"""

    retry_after = getattr(error, "retry_after", None)
    if retry_after:
        return f"{int(retry_after)} seconds"

    match = _RETRY_RE.search(str(error))
    if match:
        amount, unit = match.group(1), (match.group(2) or "s").lower()
        return f"{amount} minutes" if unit.startswith("m") else f"{amount} seconds"

    return "a minute"


class RateLimitNotifier:
    """Emits at most one rate-limit notice per interval"""

    def __init__(self, interval_seconds: float = 60.0, listener: Optional[NoticeListener] = None):
        self.interval_seconds = interval_seconds
        self.listener = listener
        self._last_notice: Optional[float] = None

    def reset(self) -> None:
        self._last_notice = None

    def notify(self, error: Exception) -> Optional[str]:
        """Return the notice text when one was emitted, None while cooling down"""

        now = time.monotonic()
        if self._last_notice is not None and now - self._last_notice < self.interval_seconds:
            return None
        self._last_notice = now

        notice = (
            "Rate limit exceeded for document processing. "
            f"Please try again in {extract_retry_time(error)}. "
            "Having fewer non-markdown files in the context will help."
        )
        logger.warning("Rate limit notice", notice=notice)
        if self.listener is not None:
            self.listener(notice)
        return notice


class FileParserManager:
    """Routes a file to the parser registered for its extension"""

    def __init__(self, notifier: Optional[RateLimitNotifier] = None):
        self.parsers: Dict[str, FileParser] = {}
        self.notifier = notifier or RateLimitNotifier()

        self.register_parser(MarkdownParser())
        self.register_parser(PlainTextParser())
        self.register_parser(CanvasParser())

    def register_parser(self, parser: FileParser) -> None:
        for extension in parser.supported_extensions:
            self.parsers[extension.lower()] = parser

    def supports_extension(self, extension: str) -> bool:
        return extension.lower().lstrip(".") in self.parsers

    async def parse_file(self, path: str, file_store: FileStore) -> str:
        extension = posixpath.splitext(path)[1].lstrip(".").lower()
        parser = self.parsers.get(extension)
        if parser is None:
            raise ValidationError(f"No parser found for file type: {extension or path}")

        try:
            return await parser.parse_file(path, file_store)
        except RateLimitError as e:
            self.notifier.notify(e)
            raise
