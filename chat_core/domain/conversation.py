from dataclasses import dataclass, field
from typing import List, Optional, Protocol

from .app_settings import AppSettings
from .models import AIState, Message


# 持久化的字段子集；isLoading / currentInput / error 等临时状态不落盘
PERSISTED_FIELDS = ("messages", "settings")


@dataclass
class ConversationState:
    messages: List[Message] = field(default_factory=list)
    current_input: str = ""
    is_loading: bool = False
    error: Optional[str] = None
    ai_state: AIState = field(default_factory=AIState)
    settings: AppSettings = field(default_factory=AppSettings)


class PersistenceAdapter(Protocol):
    """持久化键值存储。save/clear 允许失败，由调用方记录日志后忽略。"""

    def load(self, key: str) -> Optional[str]:
        ...

    def save(self, key: str, value: str) -> None:
        ...

    def clear(self, key: str) -> None:
        ...
