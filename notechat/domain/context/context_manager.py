from typing import List, Optional, Tuple
from pydantic import BaseModel, Field
import asyncio

import structlog

from notechat.domain.conversation.message_repository import MessageRepository
from notechat.domain.models.message import (
    ChainType,
    ChatMessage,
    ContextEnvelope,
    SelectedTextContext,
)
from notechat.domain.prompts.templating import render_note_context
from notechat.infrastructure.observability.logging import ChatLogger
from notechat.infrastructure.storage.file_store import FileStore, basename
from .file_parser import FileParserManager
from .mention import Mention, UrlListResult

logger = structlog.get_logger(__name__)


class ContextProcessingResult(BaseModel):
    """Enriched text for the model plus the record of what went in"""
    processed_content: str
    context_envelope: ContextEnvelope = Field(default_factory=ContextEnvelope)


def render_selected_text(selection: SelectedTextContext) -> str:
    lines = ["<selected_text>", f"<title>{basename(selection.path)}</title>", f"<path>{selection.path}</path>"]
    if selection.start_line is not None:
        lines.append(f"<start_line>{selection.start_line}</start_line>")
    if selection.end_line is not None:
        lines.append(f"<end_line>{selection.end_line}</end_line>")
    lines.extend(["<content>", selection.content, "</content>", "</selected_text>"])
    return "\n".join(lines)


class ContextManager:
    """Assembles the model-facing text of a user message from its references"""

    def __init__(self, mention: Mention, chat_logger: Optional[ChatLogger] = None):
        self.mention = mention
        self.chat_logger = chat_logger or ChatLogger(__name__)

    async def process_message_context(
        self,
        message: ChatMessage,
        file_parser: FileParserManager,
        file_store: FileStore,
        chain_type: ChainType,
        include_active_note: bool = False,
        active_note: Optional[str] = None,
        repo: Optional[MessageRepository] = None,
        system_prompt: str = "",
        system_prompt_included_files: Optional[List[str]] = None
    ) -> ContextProcessingResult:
        """
        Fetch every referenced note and URL concurrently and append them, in
        reference order, to the raw message text.

        Notes already pulled into the system prompt by templating are not
        repeated. A failed reference is recorded in the envelope errors and
        does not stop the others.
        """
        if repo is not None:
            message = repo.get_message(message.id) or message

        included_in_prompt = list(system_prompt_included_files or [])
        notes = list(message.context.notes)
        if include_active_note and active_note and active_note not in notes:
            notes.append(active_note)
        notes = [path for path in notes if path not in included_in_prompt]
        urls = list(message.context.urls)

        gathered = await asyncio.gather(
            asyncio.gather(*(self._load_note(path, file_parser, file_store) for path in notes)),
            self.mention.process_url_list(urls)
        )
        note_results: List[Tuple[str, Optional[str], Optional[str]]] = list(gathered[0])
        url_results: UrlListResult = gathered[1]

        envelope = ContextEnvelope(
            system_prompt=system_prompt,
            included_in_system_prompt=included_in_prompt,
            selected_text_count=len(message.context.selected_text),
        )
        blocks: List[str] = []

        for path, content, error in note_results:
            if error is not None:
                envelope.errors[path] = error
                continue
            blocks.append(render_note_context(path, content))
            envelope.notes.append(path)

        for url_content in url_results.results:
            if url_content.error:
                envelope.errors[url_content.url] = url_content.error
            block = url_content.render()
            if block:
                blocks.append(block)
                envelope.urls.append(url_content.url)

        for selection in message.context.selected_text:
            blocks.append(render_selected_text(selection))

        processed = message.display_text
        if blocks:
            processed = f"{message.display_text}\n\n" + "\n\n".join(blocks)

        self.chat_logger.log_context_update(
            message.id,
            "processed",
            {
                "chain_type": chain_type.value,
                "notes": len(envelope.notes),
                "urls": len(envelope.urls),
                "selected_text": envelope.selected_text_count,
                "errors": len(envelope.errors),
            }
        )
        return ContextProcessingResult(processed_content=processed, context_envelope=envelope)

    async def reprocess_message_context(
        self,
        message_id: str,
        repo: MessageRepository,
        file_parser: FileParserManager,
        file_store: FileStore,
        chain_type: ChainType,
        include_active_note: bool = False,
        active_note: Optional[str] = None,
        system_prompt: str = "",
        system_prompt_included_files: Optional[List[str]] = None
    ) -> Optional[ContextProcessingResult]:
        """Rerun the pipeline for a stored message and save the new text"""

        message = repo.get_message(message_id)
        if message is None:
            logger.warning("Cannot reprocess unknown message", message_id=message_id)
            return None

        result = await self.process_message_context(
            message,
            file_parser,
            file_store,
            chain_type,
            include_active_note,
            active_note,
            repo,
            system_prompt,
            system_prompt_included_files
        )
        repo.update_processed_text(message_id, result.processed_content, result.context_envelope)
        return result

    async def _load_note(
        self,
        path: str,
        file_parser: FileParserManager,
        file_store: FileStore
    ) -> Tuple[str, Optional[str], Optional[str]]:
        try:
            return path, await file_parser.parse_file(path, file_store), None
        except FileNotFoundError:
            logger.warning("Referenced note not found", path=path)
            return path, None, f"Note not found: {path}"
        except Exception as e:
            logger.error("Error processing note", path=path, error=str(e))
            return path, None, str(e) or type(e).__name__
