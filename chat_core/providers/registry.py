"""Provider 端点配置。

三类后端都走 OpenAI 兼容的 chat/completions 协议，只有基础 URL 与是否需要密钥不同：

- openai: 官方接口。
- anthropic: Anthropic 提供的 OpenAI 兼容端点。
- local: 本地服务（如 Ollama），无需密钥。

实际 base_url / api_key 由 Settings 提供，这里只保存默认值与约束。"""

from dataclasses import dataclass
from typing import Mapping


@dataclass
class ProviderConfig:
    """某个 Provider 的整体配置。"""

    name: str
    base_url: str
    requires_api_key: bool = True


OPENAI_CONFIG = ProviderConfig(name="openai", base_url="https://api.openai.com/v1")

ANTHROPIC_CONFIG = ProviderConfig(name="anthropic", base_url="https://api.anthropic.com/v1")

LOCAL_CONFIG = ProviderConfig(name="local", base_url="http://localhost:11434/v1", requires_api_key=False)


PROVIDER_REGISTRY: Mapping[str, ProviderConfig] = {
    "openai": OPENAI_CONFIG,
    "anthropic": ANTHROPIC_CONFIG,
    "local": LOCAL_CONFIG,
}


def get_provider_config(name: str) -> ProviderConfig:
    """根据名称获取 ProviderConfig，名称不区分大小写。"""

    key = name.lower()
    for k, cfg in PROVIDER_REGISTRY.items():
        if k.lower() == key:
            return cfg
    raise KeyError(f"Unknown provider: {name!r}")
