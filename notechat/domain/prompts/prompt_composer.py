from typing import List, Optional, Tuple
from pydantic import BaseModel, Field

import structlog

from notechat.domain.context.memory.user_memory import UserMemoryManager
from notechat.domain.models.message import ChainType, ProjectConfig
from notechat.infrastructure.config.settings import SettingsStore
from notechat.infrastructure.storage.file_store import FileStore
from .prompt_cache import PromptCache
from .templating import TemplateEngine, render_note_context

logger = structlog.get_logger(__name__)

DEFAULT_SYSTEM_PROMPT = """You are a helpful assistant working inside the user's personal knowledge vault of markdown notes.

1. Answer using the notes, web content and selected text provided in the conversation when they are relevant.
2. When you quote or use a note, refer to it by its title as [[Note Title]].
3. If the provided context does not contain the answer, say so and answer from general knowledge.
4. Use markdown for formatting. Use $...$ for inline math and $$...$$ for block math.
5. Be concise. Do not repeat the question back to the user.
6. Reply in the language of the user's latest message."""


class ComposedPrompt(BaseModel):
    """Instruction text for one request and the notes it already contains"""
    system_prompt: str
    included_files: List[str] = Field(default_factory=list)
    prompt_title: Optional[str] = Field(default=None, description="Custom prompt used for the user layer")


def has_template_tokens(text: str) -> bool:
    return "{" in text and "}" in text


def build_tool_guidance(tool_names: List[str]) -> str:
    """Instruction block appended when the model may call tools"""

    if not tool_names:
        return ""

    tools = ", ".join(tool_names)
    return (
        "<tool_guidance>\n"
        f"You can call these tools: {tools}.\n"
        "Call a tool only when the answer needs information or an action you cannot produce yourself.\n"
        "Prefer one well-formed call over several speculative ones and never repeat a call that already returned a result.\n"
        "If a tool fails, explain the failure instead of retrying with the same arguments.\n"
        "As soon as you have enough information, stop calling tools and give the final answer.\n"
        "</tool_guidance>"
    )


class PromptComposer:
    """
    Builds the system prompt from its layers.

    Order: user memory, builtin default, user custom instructions and, for
    project chains, the project layers. Only the user custom layer and the
    project system prompt go through the template engine; the memory layer
    is inserted as-is.
    """

    def __init__(
        self,
        settings_store: SettingsStore,
        cache: PromptCache,
        file_store: FileStore,
        template_engine: TemplateEngine,
        memory: Optional[UserMemoryManager] = None
    ):
        self.settings_store = settings_store
        self.cache = cache
        self.file_store = file_store
        self.template_engine = template_engine
        self.memory = memory

    def get_user_prompt_title(self) -> Optional[str]:
        return self.cache.get_effective_system_prompt_title(
            self.settings_store.get().default_system_prompt_title
        )

    def get_user_prompt(self) -> str:
        return self.cache.get_effective_system_prompt_content(
            self.settings_store.get().default_system_prompt_title
        )

    def build_system_prompt(self, user_prompt: str) -> str:
        """Combine the builtin default with the given user layer"""

        if self.settings_store.get().disable_builtin_system_prompt:
            return user_prompt or ""
        if not user_prompt:
            return DEFAULT_SYSTEM_PROMPT
        return (
            f"{DEFAULT_SYSTEM_PROMPT}\n"
            f"<user_custom_instructions>\n{user_prompt}\n</user_custom_instructions>"
        )

    def get_system_prompt(self) -> str:
        return self.build_system_prompt(self.get_user_prompt())

    async def get_system_prompt_with_memory(self) -> str:
        base = self.get_system_prompt()
        if self.memory is None:
            return base

        memory_prompt = await self.memory.get_user_memory_prompt()
        if not memory_prompt:
            return base
        return f"{memory_prompt}\n{base}"

    async def compose(
        self,
        chain_type: ChainType,
        active_note: Optional[str] = None,
        project: Optional[ProjectConfig] = None
    ) -> ComposedPrompt:
        """Final system prompt for a request, with substituted templates"""

        with_memory = await self.get_system_prompt_with_memory()
        system_prompt, included = await self._process_user_layer(with_memory, active_note)

        if chain_type == ChainType.PROJECT_CHAIN and project is not None:
            project_text, project_files = await self._project_layers(project, active_note)
            if project_text:
                system_prompt = f"{system_prompt}\n\n{project_text}" if system_prompt else project_text
            for path in project_files:
                if path not in included:
                    included.append(path)

        return ComposedPrompt(
            system_prompt=system_prompt,
            included_files=included,
            prompt_title=self.get_user_prompt_title()
        )

    async def _substitute(self, text: str, active_note: Optional[str]) -> Optional[Tuple[str, List[str]]]:
        """Templated text and included notes, or None when substitution is skipped or fails"""

        if not text or not self.settings_store.get().enable_custom_prompt_templating:
            return None
        if not has_template_tokens(text):
            return None

        try:
            result = await self.template_engine.process_prompt(
                text, "", self.file_store, active_note, skip_empty_braces=True
            )
        except Exception as e:
            logger.error("Template processing failed, using the prompt as written", error=str(e))
            return None

        return result.processed_prompt.rstrip(), list(result.included_files)

    async def _process_user_layer(self, with_memory: str, active_note: Optional[str]) -> Tuple[str, List[str]]:
        substituted = await self._substitute(self.get_user_prompt(), active_note)
        if substituted is None:
            return with_memory, []

        processed_user, included = substituted
        base = self.get_system_prompt()
        if not with_memory.endswith(base):
            logger.error(
                "Invariant violation: system prompt is not a suffix of the memory-decorated prompt, "
                "templates left unsubstituted",
                prompt_length=len(with_memory),
                base_length=len(base)
            )
            return with_memory, []

        prefix = with_memory[:len(with_memory) - len(base)]
        return prefix + self.build_system_prompt(processed_user), included

    async def _project_layers(self, project: ProjectConfig, active_note: Optional[str]) -> Tuple[str, List[str]]:
        sections: List[str] = []
        included: List[str] = []

        if project.system_prompt:
            project_prompt = project.system_prompt
            substituted = await self._substitute(project_prompt, active_note)
            if substituted is not None:
                project_prompt, included = substituted
            sections.append(f"<project_system_prompt>\n{project_prompt}\n</project_system_prompt>")

        notes = []
        for path in project.context_notes:
            try:
                content = await self.file_store.read(path)
            except FileNotFoundError:
                logger.warning("Project context note not found", project_id=project.id, path=path)
                continue
            notes.append(render_note_context(path, content))
            if path not in included:
                included.append(path)

        if notes:
            sections.append("<project_context>\n" + "\n".join(notes) + "\n</project_context>")

        return "\n\n".join(sections), included
