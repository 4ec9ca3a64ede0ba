"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置。
优先级：显式参数 > 环境变量 > .env > config.yaml > 默认值。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("CHAT_CORE_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class Settings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- Provider 相关配置 ----
    default_provider: str = Field(
        default="openai",
        description="默认使用的 Provider 名称，例如 openai、anthropic、local",
    )
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API 密钥")
    openai_base_url: str = Field(default="https://api.openai.com/v1", description="OpenAI API 基础URL")
    anthropic_api_key: Optional[str] = Field(default=None, description="Anthropic API 密钥")
    anthropic_base_url: str = Field(
        default="https://api.anthropic.com/v1",
        description="Anthropic OpenAI 兼容接口基础URL",
    )
    local_base_url: str = Field(
        default="http://localhost:11434/v1",
        description="本地 OpenAI 兼容服务（如 Ollama）基础URL",
    )

    # ---- 网络与重试 ----
    http_timeout: float = Field(default=30.0, ge=1.0, description="单次 HTTP 读写超时（秒）")
    request_timeout: float = Field(default=30.0, gt=0, description="非流式调用的整体超时（秒）")
    retry_max_retries: int = Field(default=2, ge=0, le=10, description="最大重试次数（不含首次）")
    retry_base_delay: float = Field(default=2.0, ge=0, description="退避基础延迟（秒）")
    retry_max_delay: float = Field(default=10.0, ge=0, description="退避延迟上限（秒）")
    retry_backoff_multiplier: float = Field(default=2.0, ge=1.0, description="退避倍数")
    retry_max_jitter: float = Field(default=1.0, ge=0, description="随机抖动上限（秒）")

    # ---- 存储与日志 ----
    storage_root: str = Field(default=".storage", description="存储根目录")
    storage_key: str = Field(default="chat-core-state", description="会话状态的持久化键")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    streaming_enabled: bool = Field(default=True, description="默认是否使用流式输出")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("openai_api_key", "anthropic_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )

    def api_key_for(self, provider: str) -> Optional[str]:
        return getattr(self, f"{provider.lower()}_api_key", None)

    def base_url_for(self, provider: str) -> Optional[str]:
        return getattr(self, f"{provider.lower()}_base_url", None)


settings = Settings()
