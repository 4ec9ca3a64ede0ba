import pytest
from pydantic import ValidationError

from chat_core.config.settings import Settings
from chat_core.domain.app_settings import AppSettings, validate_settings


def test_settings_read_yaml_config(tmp_path, monkeypatch):
    config = tmp_path / "custom.yaml"
    config.write_text("retry_max_retries: 5\nstorage_key: from-yaml\n", encoding="utf-8")
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("CHAT_CORE_CONFIG_FILE", str(config))
    monkeypatch.delenv("RETRY_MAX_RETRIES", raising=False)
    monkeypatch.delenv("STORAGE_KEY", raising=False)

    cfg = Settings()
    assert cfg.retry_max_retries == 5
    assert cfg.storage_key == "from-yaml"


def test_env_overrides_yaml(tmp_path, monkeypatch):
    config = tmp_path / "config.yaml"
    config.write_text("retry_max_retries: 5\n", encoding="utf-8")
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("CHAT_CORE_CONFIG_FILE", raising=False)
    monkeypatch.setenv("RETRY_MAX_RETRIES", "1")
    assert Settings().retry_max_retries == 1


def test_short_api_key_is_rejected():
    with pytest.raises(ValidationError):
        Settings(openai_api_key="short")


def test_provider_lookups():
    cfg = Settings(anthropic_api_key="sk-ant-1234567890")
    assert cfg.api_key_for("Anthropic") == "sk-ant-1234567890"
    assert cfg.base_url_for("local") == cfg.local_base_url
    assert cfg.api_key_for("local") is None


def test_app_settings_merge_and_validation():
    merged = AppSettings().merged({"voice_settings": {"pitch": 5}, "ai_model": {"model": {"max_tokens": 0}}})
    assert merged.voice_settings.rate == 1.0
    assert merged.ai_model.model.model_name == "gpt-3.5-turbo"
    errors = validate_settings(merged)
    assert set(errors) == {"pitch", "max_tokens"}
    assert validate_settings(AppSettings()) == {}
