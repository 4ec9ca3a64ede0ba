"""Chat Core 顶层包。

该包提供对话客户端的核心状态控制：会话状态存储与持久化、
流式消息组装、带重试/退避/取消的 Model Gateway 调用，
以及配置加载与结构化日志等基础能力。
"""

from chat_core.api.service import ChatService, open_chat_service
from chat_core.infrastructure.network.cancellation import CancellationToken
from chat_core.infrastructure.network.retry import RetryPolicy, execute_with_retry
from chat_core.state.store import ConversationStore

__all__ = [
    "CancellationToken",
    "ChatService",
    "ConversationStore",
    "RetryPolicy",
    "execute_with_retry",
    "open_chat_service",
]
