"""用户可调的应用设置（界面开关、语音参数、AI 模型配置）。

这些设置随会话一起持久化。校验规则只产生警告，不阻止设置生效，
由外部的设置表单负责展示错误。
"""

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class ModelProvider(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    LOCAL = "local"


class MemoryType(str, Enum):
    BUFFER = "buffer"
    SUMMARY = "summary"
    VECTOR = "vector"


class ChainType(str, Enum):
    CONVERSATION = "conversation"
    RETRIEVAL_QA = "retrieval_qa"


class ModelConfig(BaseModel):
    """发给 Gateway 的模型配置，变化时会单向同步到 Gateway。"""

    model_config = ConfigDict(protected_namespaces=())

    provider: ModelProvider = ModelProvider.OPENAI
    model_name: str = "gpt-3.5-turbo"
    temperature: float = 0.7
    max_tokens: int = 1000

    @property
    def qualified_name(self) -> str:
        return f"{self.provider.value}:{self.model_name}"


class MemoryConfig(BaseModel):
    type: MemoryType = MemoryType.BUFFER
    max_token_limit: Optional[int] = 2000
    return_messages: bool = True


class ChainConfig(BaseModel):
    type: ChainType = ChainType.CONVERSATION
    verbose: bool = False
    streaming: bool = True


class AIModelConfig(BaseModel):
    model: ModelConfig = Field(default_factory=ModelConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    chain: ChainConfig = Field(default_factory=ChainConfig)


class VoiceSettings(BaseModel):
    rate: float = 1.0
    pitch: float = 1.0
    voice: Optional[str] = None


class AppSettings(BaseModel):
    auto_scroll: bool = True
    audio_enabled: bool = True
    voice_settings: VoiceSettings = Field(default_factory=VoiceSettings)
    ai_model: AIModelConfig = Field(default_factory=AIModelConfig)

    def merged(self, updates: Dict[str, Any]) -> "AppSettings":
        """把（可嵌套的）部分更新合并进当前设置，返回新对象。"""

        data = _deep_merge(self.model_dump(mode="json"), _to_plain(updates))
        return AppSettings.model_validate(data)


def validate_settings(settings: AppSettings) -> Dict[str, str]:
    """返回 {字段: 错误说明}，为空表示全部合法。"""

    errors: Dict[str, str] = {}
    voice = settings.voice_settings
    if voice.rate < 0.1 or voice.rate > 10:
        errors["rate"] = "Speech rate must be between 0.1 and 10"
    if voice.pitch < 0 or voice.pitch > 2:
        errors["pitch"] = "Speech pitch must be between 0 and 2"

    model = settings.ai_model.model
    if model.temperature < 0 or model.temperature > 2:
        errors["temperature"] = "Temperature must be between 0 and 2"
    if model.max_tokens < 1 or model.max_tokens > 4000:
        errors["max_tokens"] = "Max tokens must be between 1 and 4000"
    if not model.model_name.strip():
        errors["model_name"] = "Model name is required"

    limit = settings.ai_model.memory.max_token_limit
    if limit and (limit < 100 or limit > 10000):
        errors["max_token_limit"] = "Memory token limit must be between 100 and 10000"
    return errors


def _to_plain(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, dict):
        return {k: _to_plain(v) for k, v in value.items()}
    if isinstance(value, Enum):
        return value.value
    return value


def _deep_merge(base: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged
