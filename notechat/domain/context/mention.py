from typing import Awaitable, Callable, Dict, List, Literal, Optional
from html.parser import HTMLParser
from pydantic import BaseModel, Field
from urllib.parse import urlparse
import asyncio
import re
import time

import httpx
import structlog

from .memory.cache_memory_store import CacheMemoryStore

logger = structlog.get_logger(__name__)

TranscriptFetcher = Callable[[str], Awaitable[str]]

_URL_RE = re.compile(r"https?://[^\s\"'<>]+")
_YOUTUBE_HOSTS = {"youtube.com", "www.youtube.com", "m.youtube.com", "youtu.be", "music.youtube.com"}
_SKIPPED_TAGS = {"script", "style", "nav", "footer", "header", "noscript", "svg"}
_BLOCK_TAGS = {"p", "div", "br", "li", "h1", "h2", "h3", "h4", "h5", "h6", "tr", "section", "article"}


class UrlContent(BaseModel):
    """Result of enriching one URL"""
    url: str
    kind: Literal["url", "youtube"] = "url"
    content: str = ""
    error: Optional[str] = None
    elapsed_ms: float = 0

    def render(self) -> str:
        if not self.content:
            return ""
        if self.kind == "youtube":
            return (
                f"<youtube_transcript>\n<url>{self.url}</url>\n"
                f"<transcript>\n{self.content}\n</transcript>\n</youtube_transcript>"
            )
        return f"<url_content>\n<url>{self.url}</url>\n<content>\n{self.content}\n</content>\n</url_content>"


class UrlListResult(BaseModel):
    results: List[UrlContent] = Field(default_factory=list)

    @property
    def url_context(self) -> str:
        return "\n\n".join(block for block in (r.render() for r in self.results) if block)

    @property
    def errors(self) -> Dict[str, str]:
        return {r.url: r.error for r in self.results if r.error}


class _TextExtractor(HTMLParser):
    """Collects visible text, preferring <article> or <main> when present"""

    def __init__(self):
        super().__init__()
        self.parts: List[str] = []
        self.main_parts: List[str] = []
        self._skip_depth = 0
        self._main_depth = 0

    def handle_starttag(self, tag, attrs):
        if tag in _SKIPPED_TAGS:
            self._skip_depth += 1
        elif tag in ("article", "main"):
            self._main_depth += 1
        if tag in _BLOCK_TAGS:
            self._append("\n")

    def handle_endtag(self, tag):
        if tag in _SKIPPED_TAGS and self._skip_depth:
            self._skip_depth -= 1
        elif tag in ("article", "main") and self._main_depth:
            self._main_depth -= 1
        if tag in _BLOCK_TAGS:
            self._append("\n")

    def handle_data(self, data):
        if not self._skip_depth:
            self._append(data)

    def _append(self, text: str) -> None:
        self.parts.append(text)
        if self._main_depth:
            self.main_parts.append(text)

    def text(self) -> str:
        raw = "".join(self.main_parts) if "".join(self.main_parts).strip() else "".join(self.parts)
        lines = [re.sub(r"[ \t]+", " ", line).strip() for line in raw.splitlines()]
        return re.sub(r"\n{3,}", "\n\n", "\n".join(lines)).strip()


def html_to_text(html: str) -> str:
    extractor = _TextExtractor()
    extractor.feed(html)
    extractor.close()
    return extractor.text()


def extract_urls(text: str) -> List[str]:
    """Unique URLs in order of appearance, trailing commas removed"""

    urls: List[str] = []
    for match in _URL_RE.findall(text or ""):
        url = match.rstrip(",")
        if url not in urls:
            urls.append(url)
    return urls


def is_youtube_url(url: str) -> bool:
    try:
        return (urlparse(url).hostname or "").lower() in _YOUTUBE_HOSTS
    except ValueError:
        return False


class Mention:
    """
    URL enrichment: fetches web pages and YouTube transcripts for the URLs
    attached to a message. Results (including failures) are cached per URL.
    """

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        transcript_fetcher: Optional[TranscriptFetcher] = None,
        cache: Optional[CacheMemoryStore[UrlContent]] = None,
        timeout: float = 30.0
    ):
        self.http_client = http_client
        self.transcript_fetcher = transcript_fetcher
        self.cache = cache or CacheMemoryStore()
        self.timeout = timeout

    async def process_url(self, url: str) -> UrlContent:
        start = time.monotonic()
        try:
            if self.http_client is not None:
                response = await self.http_client.get(url, follow_redirects=True, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(follow_redirects=True, timeout=self.timeout) as client:
                    response = await client.get(url)
            response.raise_for_status()

            content_type = response.headers.get("content-type", "")
            text = html_to_text(response.text) if "html" in content_type or not content_type else response.text
            return UrlContent(url=url, content=text, elapsed_ms=(time.monotonic() - start) * 1000)
        except Exception as e:
            logger.error("Error processing URL", url=url, error=str(e))
            return UrlContent(url=url, error=str(e) or type(e).__name__)

    async def process_youtube_url(self, url: str) -> UrlContent:
        if self.transcript_fetcher is None:
            return UrlContent(url=url, kind="youtube", error="No YouTube transcript fetcher configured")

        try:
            transcript = await self.transcript_fetcher(url)
            return UrlContent(url=url, kind="youtube", content=transcript)
        except Exception as e:
            logger.error("Error processing YouTube URL", url=url, error=str(e))
            return UrlContent(url=url, kind="youtube", error=str(e) or type(e).__name__)

    async def _process_cached(self, url: str) -> UrlContent:
        cached = await self.cache.get(url)
        if cached is not None:
            return cached

        result = await (self.process_youtube_url(url) if is_youtube_url(url) else self.process_url(url))
        await self.cache.set(url, result)
        return result

    async def process_url_list(self, urls: List[str]) -> UrlListResult:
        """Enrich every URL concurrently; results keep the input order"""

        if not urls:
            return UrlListResult()

        results = await asyncio.gather(*(self._process_cached(url) for url in urls))
        return UrlListResult(results=list(results))

    async def process_urls(self, text: str) -> UrlListResult:
        return await self.process_url_list(extract_urls(text))

    async def clear(self) -> None:
        await self.cache.clear()
