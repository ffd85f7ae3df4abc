from typing import Any, Callable, Dict, List, Optional
from pydantic import BaseModel, Field
import pathlib
import os

import structlog
import yaml

logger = structlog.get_logger(__name__)

SettingsListener = Callable[["AppSettings", "AppSettings"], None]


class AppSettings(BaseModel):
    """User-editable settings of the conversation core"""
    # Legacy single-string custom prompt, migrated to a prompt file once
    user_system_prompt: str = ""
    default_system_prompt_title: str = ""
    system_prompts_folder: str = "notechat/system-prompts"
    disable_builtin_system_prompt: bool = False
    enable_custom_prompt_templating: bool = True

    max_tool_iterations: int = Field(default=4, ge=1)
    tool_timeout_seconds: float = Field(default=120.0, gt=0)
    prompt_sync_debounce_seconds: float = Field(default=1.0, ge=0)
    rate_limit_notice_interval_seconds: float = Field(default=60.0, ge=0)

    memory_file_path: str = "notechat/memory/Recent Conversations.md"
    remember_recent_conversations: bool = True
    model: str = "openai:gpt-4o-mini"
    log_level: str = "INFO"
    log_format: str = "json"


class SettingsStore:
    """Holds the current settings and notifies subscribers on change"""

    def __init__(self, settings: Optional[AppSettings] = None):
        self._settings = settings or AppSettings()
        self._listeners: List[SettingsListener] = []

    def get(self) -> AppSettings:
        """Get the current settings snapshot"""
        return self._settings

    def update(self, **changes: Any) -> AppSettings:
        """Apply changes and notify subscribers with (previous, next)"""

        previous = self._settings
        self._settings = previous.model_copy(update=changes)

        for listener in list(self._listeners):
            try:
                listener(previous, self._settings)
            except Exception as e:
                logger.error("Error in settings listener", error=str(e))

        return self._settings

    def subscribe(self, listener: SettingsListener) -> Callable[[], None]:
        """Register a change listener; returns the unsubscribe callable"""

        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe


ENV_OVERRIDES = {
    "NOTECHAT_LOG_LEVEL": "log_level",
    "NOTECHAT_LOG_FORMAT": "log_format",
    "NOTECHAT_MODEL": "model",
}


def load_settings(path: Optional[pathlib.Path] = None) -> AppSettings:
    """
    Load settings from a YAML mapping, then apply environment overrides.

    Missing, unreadable or non-mapping files yield the defaults; this
    function never raises.
    """
    data: Dict[str, Any] = {}
    if path is not None:
        try:
            p = pathlib.Path(path)
            if p.exists() and p.is_file():
                loaded = yaml.safe_load(p.read_text(encoding="utf-8"))
                if isinstance(loaded, dict):
                    data = loaded
        except Exception as e:
            logger.warning("Could not read settings file", path=str(path), error=str(e))

    for env_name, key in ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            data[key] = value

    try:
        return AppSettings(**data)
    except Exception as e:
        logger.warning("Invalid settings, using defaults", error=str(e))
        return AppSettings()


def save_settings(path: pathlib.Path, settings: AppSettings) -> None:
    """Persist settings as YAML"""
    path = pathlib.Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(settings.model_dump(), sort_keys=True), encoding="utf-8")


def persist_settings(store: SettingsStore, path: pathlib.Path) -> Callable[[], None]:
    """Write every settings change back to path; returns the unsubscribe callable"""

    path = pathlib.Path(path)

    def save(previous: AppSettings, current: AppSettings) -> None:
        save_settings(path, current)
        logger.debug("Saved settings", path=str(path))

    return store.subscribe(save)


def load_settings_store(path: Optional[pathlib.Path] = None) -> SettingsStore:
    """Settings store loaded from path and saved back to it on every change"""

    store = SettingsStore(load_settings(path))
    if path is not None:
        persist_settings(store, path)
    return store
