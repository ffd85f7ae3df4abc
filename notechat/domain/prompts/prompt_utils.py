from typing import Any, Dict, List, Optional, Tuple
import re
import time

import structlog
import yaml

from notechat.domain.models.prompt import PromptRecord
from notechat.infrastructure.storage.file_store import FileStore, basename, normalize_path

logger = structlog.get_logger(__name__)

PROMPT_EXTENSION = ".md"

CREATED_KEY = "notechat-system-prompt-created"
MODIFIED_KEY = "notechat-system-prompt-modified"
LAST_USED_KEY = "notechat-system-prompt-last-used"

_FRONTMATTER_RE = re.compile(r"\A---\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)(.*)\Z", re.DOTALL)


def now_ms() -> int:
    return int(time.time() * 1000)


def get_prompt_file_path(title: str, folder: str) -> str:
    """Path of the file backing the prompt with this title"""
    return f"{normalize_path(folder)}/{title}{PROMPT_EXTENSION}"


def is_system_prompt_file(path: str, folder: str) -> bool:
    """
    A prompt file lies directly under the prompts folder and ends with .md.

    Files in subfolders (e.g. an "unsupported/" folder) are not prompts.
    """
    folder = normalize_path(folder)
    path = normalize_path(path)
    if not folder or not path.startswith(folder + "/"):
        return False
    relative = path[len(folder) + 1:]
    return relative != "" and "/" not in relative and relative.lower().endswith(PROMPT_EXTENSION)


def split_frontmatter(text: str) -> Tuple[Dict[str, Any], str]:
    """Split a markdown document into (frontmatter mapping, body)"""

    match = _FRONTMATTER_RE.match(text)
    if not match:
        return {}, text

    try:
        data = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError as e:
        logger.warning("Invalid frontmatter, treating as body", error=str(e))
        return {}, text

    if not isinstance(data, dict):
        return {}, text
    return data, match.group(2)


def render_frontmatter(data: Dict[str, Any], body: str) -> str:
    header = yaml.safe_dump(data, sort_keys=False, allow_unicode=True)
    return f"---\n{header}---\n{body}"


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


async def parse_system_prompt_file(file_store: FileStore, path: str) -> PromptRecord:
    """Read a prompt file into a PromptRecord; the body is the prompt content"""

    text = await file_store.read(path)
    frontmatter, body = split_frontmatter(text)
    fallback = now_ms()

    return PromptRecord(
        title=basename(path),
        content=body,
        created_ms=_as_int(frontmatter.get(CREATED_KEY)) or fallback,
        modified_ms=_as_int(frontmatter.get(MODIFIED_KEY)) or fallback,
        last_used_ms=_as_int(frontmatter.get(LAST_USED_KEY)) or 0,
    )


async def ensure_prompt_frontmatter(file_store: FileStore, path: str, prompt: PromptRecord) -> bool:
    """
    Make sure the prompt file carries its timestamp metadata.

    Existing keys win over the record's values, unknown keys are kept.
    Returns True when the file had to be rewritten.
    """
    text = await file_store.read(path)
    frontmatter, body = split_frontmatter(text)

    updated = dict(frontmatter)
    updated.setdefault(CREATED_KEY, prompt.created_ms)
    updated.setdefault(MODIFIED_KEY, prompt.modified_ms)
    updated.setdefault(LAST_USED_KEY, prompt.last_used_ms)

    if updated == frontmatter:
        return False

    await file_store.write(path, render_frontmatter(updated, body))
    return True


async def write_prompt_file(file_store: FileStore, path: str, prompt: PromptRecord) -> None:
    """Overwrite a prompt file with the record's content and metadata"""

    existing: Dict[str, Any] = {}
    if await file_store.exists(path):
        existing, _ = split_frontmatter(await file_store.read(path))

    existing[CREATED_KEY] = prompt.created_ms
    existing[MODIFIED_KEY] = prompt.modified_ms
    existing[LAST_USED_KEY] = prompt.last_used_ms
    rendered = render_frontmatter(existing, prompt.content)

    if await file_store.exists(path):
        await file_store.write(path, rendered)
    else:
        await file_store.create(path, rendered)


async def load_all_system_prompts(file_store: FileStore, folder: str) -> List[PromptRecord]:
    """Parse every prompt file in the folder; unreadable files are skipped"""

    prompts: List[PromptRecord] = []
    for path in await file_store.list_files(folder):
        if not is_system_prompt_file(path, folder):
            continue
        try:
            prompts.append(await parse_system_prompt_file(file_store, path))
        except Exception as e:
            logger.error("Error loading system prompt", path=path, error=str(e))

    return prompts
