"""Tests for settings loading and change notification."""

import pytest

from notechat.application.container import NotechatServices
from notechat.infrastructure.config.settings import (
    AppSettings,
    SettingsStore,
    load_settings,
    load_settings_store,
    save_settings,
)
from notechat.infrastructure.storage.memory_file_store import InMemoryFileStore


def test_defaults_when_file_missing(tmp_path):
    settings = load_settings(tmp_path / "missing.yaml")
    assert settings == AppSettings()
    assert settings.max_tool_iterations == 4
    assert settings.system_prompts_folder == "notechat/system-prompts"


def test_yaml_values_and_env_overrides(tmp_path, monkeypatch):
    path = tmp_path / "settings.yaml"
    path.write_text("max_tool_iterations: 6\nlog_level: DEBUG\n", encoding="utf-8")
    monkeypatch.setenv("NOTECHAT_LOG_LEVEL", "WARNING")

    settings = load_settings(path)

    assert settings.max_tool_iterations == 6
    assert settings.log_level == "WARNING"


def test_invalid_content_falls_back_to_defaults(tmp_path):
    not_a_mapping = tmp_path / "list.yaml"
    not_a_mapping.write_text("- a\n- b\n", encoding="utf-8")
    assert load_settings(not_a_mapping) == AppSettings()

    out_of_range = tmp_path / "range.yaml"
    out_of_range.write_text("max_tool_iterations: 0\n", encoding="utf-8")
    assert load_settings(out_of_range).max_tool_iterations == 4

    broken = tmp_path / "broken.yaml"
    broken.write_text("key: [unclosed\n", encoding="utf-8")
    assert load_settings(broken) == AppSettings()


def test_save_then_load(tmp_path):
    path = tmp_path / "nested" / "settings.yaml"
    save_settings(path, AppSettings(default_system_prompt_title="Writer"))
    assert load_settings(path).default_system_prompt_title == "Writer"


def test_store_notifies_with_previous_and_next():
    store = SettingsStore()
    seen = []
    unsubscribe = store.subscribe(lambda previous, current: seen.append((previous.model, current.model)))

    store.update(model="anthropic:claude-sonnet")
    unsubscribe()
    store.update(model="openai:gpt-4o")

    assert seen == [("openai:gpt-4o-mini", "anthropic:claude-sonnet")]
    assert store.get().model == "openai:gpt-4o"


def test_failing_listener_does_not_block_others():
    store = SettingsStore()
    seen = []

    def broken(previous, current):
        raise RuntimeError("listener bug")

    store.subscribe(broken)
    store.subscribe(lambda previous, current: seen.append(current.log_format))
    store.update(log_format="console")

    assert seen == ["console"]


def test_settings_store_saves_changes_to_file(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text("default_system_prompt_title: Writer\n", encoding="utf-8")

    store = load_settings_store(path)
    store.update(default_system_prompt_title="Editor")

    assert load_settings(path).default_system_prompt_title == "Editor"
    assert load_settings_store(None).get() == AppSettings()


@pytest.mark.asyncio
async def test_legacy_prompt_migrates_once_across_restarts(tmp_path, make_model_client):
    path = tmp_path / "settings.yaml"
    path.write_text("user_system_prompt: Be kind\n", encoding="utf-8")
    file_store = InMemoryFileStore()

    for _ in range(2):
        services = NotechatServices(file_store, make_model_client(), load_settings_store(path))
        await services.start()
        await services.stop()

    assert await file_store.list_files("notechat/system-prompts") == [
        "notechat/system-prompts/Migrated Custom System Prompt.md"
    ]
    saved = load_settings(path)
    assert saved.user_system_prompt == ""
    assert saved.default_system_prompt_title == "Migrated Custom System Prompt"
