from typing import List, Optional, Protocol
from pydantic import BaseModel, Field
import re

import structlog

from notechat.infrastructure.storage.file_store import FileStore, basename, normalize_path

logger = structlog.get_logger(__name__)

ACTIVE_NOTE_VARIABLE = "activeNote"
SELECTED_TEXT_VARIABLE = "selectedText"

_VARIABLE_RE = re.compile(r"\{([^{}]*)\}")
_WIKILINK_RE = re.compile(r"^\[\[(.+)\]\]$")


class ProcessedPrompt(BaseModel):
    """Template output: the prompt with variable blocks appended"""
    processed_prompt: str
    included_files: List[str] = Field(default_factory=list)


class TemplateEngine(Protocol):
    async def process_prompt(
        self,
        prompt: str,
        selected_text: str,
        file_store: FileStore,
        active_note: Optional[str],
        skip_empty_braces: bool = False
    ) -> ProcessedPrompt:
        ...


def render_note_context(path: str, content: str) -> str:
    return (
        "<note_context>\n"
        f"<title>{basename(path)}</title>\n"
        f"<path>{path}</path>\n"
        f"<content>\n{content}\n</content>\n"
        "</note_context>"
    )


class NoteTemplateEngine:
    """
    Expands note variables inside a prompt.

    Supported variables:
        {activeNote}        the active note
        {[[Note Title]]}    every markdown note with that title
        {folder/path}       every markdown note under that folder
        {}                  the selected text, or the active note when nothing
                            is selected; left literal with skip_empty_braces

    The prompt text itself is kept as written; each resolved variable is
    appended as a <variable name="..."> block. Bodies starting with a double
    quote are JSON, not variables, and unresolved variables stay literal.
    """

    async def process_prompt(
        self,
        prompt: str,
        selected_text: str,
        file_store: FileStore,
        active_note: Optional[str],
        skip_empty_braces: bool = False
    ) -> ProcessedPrompt:
        blocks: List[str] = []
        included: List[str] = []

        if not skip_empty_braces and "{}" in prompt:
            prompt = prompt.replace("{}", "{" + SELECTED_TEXT_VARIABLE + "}")
            if selected_text:
                blocks.append(
                    f'<variable name="{SELECTED_TEXT_VARIABLE}">\n{selected_text}\n</variable>'
                )
            elif active_note:
                block = await self._render_notes(SELECTED_TEXT_VARIABLE, [active_note], file_store, included)
                if block:
                    blocks.append(block)

        seen = set()
        for match in _VARIABLE_RE.finditer(prompt):
            name = match.group(1).strip()
            if not name or name in seen or name.startswith('"') or name == SELECTED_TEXT_VARIABLE:
                continue
            seen.add(name)

            paths = await self._resolve(name, file_store, active_note)
            if not paths:
                logger.debug("Template variable matched no notes", variable=name)
                continue

            block = await self._render_notes(name, paths, file_store, included)
            if block:
                blocks.append(block)

        if not blocks:
            return ProcessedPrompt(processed_prompt=prompt, included_files=included)

        processed = prompt + "\n\n" + "\n\n".join(blocks)
        return ProcessedPrompt(processed_prompt=processed, included_files=included)

    async def _resolve(self, name: str, file_store: FileStore, active_note: Optional[str]) -> List[str]:
        if name.lower() == ACTIVE_NOTE_VARIABLE.lower():
            return [normalize_path(active_note)] if active_note else []

        wikilink = _WIKILINK_RE.match(name)
        if wikilink:
            title = wikilink.group(1).strip()
            return [
                path for path in await file_store.list_all_files()
                if path.lower().endswith(".md") and basename(path) == title
            ]

        folder = normalize_path(name)
        if not folder:
            return []
        return [
            path for path in await file_store.list_all_files()
            if path.lower().endswith(".md") and path.startswith(folder + "/")
        ]

    async def _render_notes(
        self,
        name: str,
        paths: List[str],
        file_store: FileStore,
        included: List[str]
    ) -> str:
        rendered = []
        for path in paths:
            try:
                content = await file_store.read(path)
            except FileNotFoundError:
                logger.warning("Template note not found", variable=name, path=path)
                continue
            rendered.append(render_note_context(path, content))
            if path not in included:
                included.append(path)

        if not rendered:
            return ""
        return f'<variable name="{name}">\n' + "\n".join(rendered) + "\n</variable>"
