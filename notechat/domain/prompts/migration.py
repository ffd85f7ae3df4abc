import structlog

from notechat.domain.errors import VerificationError
from notechat.domain.models.prompt import MigrationResult, PromptRecord
from notechat.infrastructure.config.settings import SettingsStore
from notechat.infrastructure.storage.file_store import FileStore
from .prompt_cache import PromptCache
from .prompt_utils import (
    ensure_prompt_frontmatter,
    get_prompt_file_path,
    load_all_system_prompts,
    now_ms,
    parse_system_prompt_file,
)

logger = structlog.get_logger(__name__)

MIGRATED_PROMPT_NAME = "Migrated Custom System Prompt"


async def generate_unique_prompt_name(file_store: FileStore, base_name: str, folder: str) -> str:
    """base_name, or base_name followed by 2, 3, ... when taken"""

    name = base_name
    counter = 1
    while await file_store.exists(get_prompt_file_path(name, folder)):
        counter += 1
        name = f"{base_name} {counter}"
    return name


def normalize_line_endings(content: str) -> str:
    return content.replace("\r\n", "\n").replace("\r", "\n")


async def verify_migrated_content(file_store: FileStore, path: str, original: str) -> None:
    """Raise VerificationError unless the saved prompt body matches original"""

    saved = await parse_system_prompt_file(file_store, path)
    saved_normalized = normalize_line_endings(saved.content).strip()
    original_normalized = normalize_line_endings(original).strip()

    if saved_normalized != original_normalized:
        raise VerificationError(
            f"Migrated content mismatch: expected {len(original_normalized)} chars, "
            f"got {len(saved_normalized)} chars"
        )


async def migrate_legacy_prompt(
    file_store: FileStore,
    cache: PromptCache,
    settings_store: SettingsStore
) -> MigrationResult:
    """
    Move the legacy single-string custom prompt into a prompt file.

    The new file never overwrites an existing one. The legacy setting is
    cleared, and the migrated prompt made the default, only after the file
    has been read back and its body matches the legacy text. On any failure
    the legacy text stays in the settings and the error is reported in the
    result.
    """
    settings = settings_store.get()
    legacy_prompt = settings.user_system_prompt

    if not legacy_prompt or not legacy_prompt.strip():
        logger.info("No legacy user system prompt to migrate")
        return MigrationResult(migrated=False)

    folder = settings.system_prompts_folder
    try:
        logger.info("Migrating legacy user system prompt to a prompt file", folder=folder)
        await file_store.ensure_folder(folder)

        title = await generate_unique_prompt_name(file_store, MIGRATED_PROMPT_NAME, folder)
        path = get_prompt_file_path(title, folder)
        if title != MIGRATED_PROMPT_NAME:
            logger.info("Default migration name taken, using unique name", title=title)

        now = now_ms()
        prompt = PromptRecord(title=title, content=legacy_prompt.strip(), created_ms=now, modified_ms=now)

        async with cache.pending_write(path):
            await file_store.create(path, legacy_prompt.strip())
            await ensure_prompt_frontmatter(file_store, path, prompt)

        await verify_migrated_content(file_store, path, legacy_prompt)
    except Exception as e:
        logger.error(
            "Failed to migrate legacy user system prompt, legacy prompt preserved",
            error=str(e)
        )
        return MigrationResult(migrated=False, error=str(e))

    settings_store.update(user_system_prompt="", default_system_prompt_title=title)
    await cache.update_cached_system_prompts(await load_all_system_prompts(file_store, folder))

    logger.info("Migrated legacy user system prompt", title=title)
    return MigrationResult(migrated=True, title=title)
