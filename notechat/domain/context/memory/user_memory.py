from typing import List, Optional, Tuple
from datetime import datetime

import structlog

from notechat.domain.models.message import ChatMessage, Sender
from notechat.infrastructure.config.settings import SettingsStore
from notechat.infrastructure.storage.file_store import FileStore

logger = structlog.get_logger(__name__)

MAX_RECENT_CONVERSATIONS = 40
SUMMARY_TURNS = 10
SUMMARY_LINE_CHARS = 160


class UserMemoryManager:
    """
    User memory kept as a markdown note in the vault.

    The note holds one "## <title>" section per remembered conversation,
    newest last. Its content is prepended to the system prompt verbatim.
    """

    def __init__(self, file_store: FileStore, settings_store: SettingsStore):
        self.file_store = file_store
        self.settings_store = settings_store

    @property
    def memory_file_path(self) -> str:
        return self.settings_store.get().memory_file_path

    async def get_user_memory_prompt(self) -> Optional[str]:
        """The memory layer, or None when there is nothing remembered"""

        path = self.memory_file_path
        if not path:
            return None

        try:
            content = await self.file_store.read(path)
        except FileNotFoundError:
            return None
        except Exception as e:
            logger.error("Failed to read user memory", path=path, error=str(e))
            return None

        content = content.strip()
        if not content:
            return None
        return f"<user_memory>\n{content}\n</user_memory>"

    async def add_recent_conversation(self, title: str, summary: str) -> None:
        """Append a conversation summary, keeping the newest entries only"""

        path = self.memory_file_path
        if not path or not summary.strip():
            return

        timestamp = datetime.utcnow().strftime("%Y-%m-%d %H:%M")
        entry = f"## {title.strip() or 'Untitled'}\n**Time:** {timestamp}\n{summary.strip()}"

        existing = ""
        if await self.file_store.exists(path):
            existing = await self.file_store.read(path)

        sections = _split_sections(existing)
        sections.append(entry)
        sections = sections[-MAX_RECENT_CONVERSATIONS:]
        content = "\n\n".join(sections) + "\n"

        if await self.file_store.exists(path):
            await self.file_store.write(path, content)
        else:
            folder = path.rsplit("/", 1)[0] if "/" in path else ""
            if folder:
                await self.file_store.ensure_folder(folder)
            await self.file_store.create(path, content)

        logger.info("Recorded conversation in user memory", path=path, entries=len(sections))


def _split_sections(text: str) -> List[str]:
    sections: List[str] = []
    current: List[str] = []
    for line in text.splitlines():
        if line.startswith("## ") and current:
            sections.append("\n".join(current).strip())
            current = []
        current.append(line)
    if current and "\n".join(current).strip():
        sections.append("\n".join(current).strip())
    return sections


def _first_line(text: str, limit: int = SUMMARY_LINE_CHARS) -> str:
    line = next((part.strip() for part in (text or "").splitlines() if part.strip()), "")
    return line if len(line) <= limit else line[:limit - 3].rstrip() + "..."


def summarize_conversation(messages: List[ChatMessage]) -> Tuple[str, str]:
    """
    Title and summary of a conversation for the recent-conversations note.

    The title is the first user turn; the summary lists the last turns, one
    line each, read from the display text so attached note bodies stay out.
    """
    if not messages:
        return "", ""

    first_user = next((m for m in messages if m.sender == Sender.USER), None)
    title = _first_line(first_user.display_text, 60) if first_user else ""

    lines = []
    for message in messages[-SUMMARY_TURNS:]:
        text = _first_line(message.display_text)
        if text:
            speaker = "User" if message.sender == Sender.USER else "Assistant"
            lines.append(f"- {speaker}: {text}")
    return title, "\n".join(lines)
