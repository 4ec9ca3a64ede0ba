"""会话层共享的数据模型。

- Message: 一条对话消息（用户或助手），状态只允许 sending → sent|error。
- AIState: 与 AI 会话相关的元数据（当前模型、token 统计、流式状态）。
- GatewaySessionInfo: Model Gateway 对外暴露的会话视图，交换成功后同步进 AIState。

持久化时 Message 通过 message_to_dict / message_from_dict 与 JSON 互转，
时间统一使用带时区的 UTC。
"""

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Literal, Optional


# 消息发送方；历史数据中的 "ai" 在加载时归一为 "assistant"
Sender = Literal["user", "assistant"]


class MessageStatus(str, Enum):
    SENDING = "sending"
    SENT = "sent"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self is not MessageStatus.SENDING


@dataclass
class Message:
    """一条对话消息。

    - is_streaming: 正在逐 token 组装中（同一时刻最多一条）。
    - streaming_complete: 流式输出已正常结束。
    - error: 出错时的错误摘要，仅在 status=error 时有值。
    """

    id: str
    text: str
    sender: Sender
    timestamp: datetime
    status: MessageStatus = MessageStatus.SENT
    is_streaming: bool = False
    streaming_complete: bool = False
    error: Optional[str] = None


@dataclass
class AIState:
    is_initialized: bool = False
    current_model: str = ""
    conversation_id: str = ""
    token_count: int = 0
    memory_size: int = 0
    is_streaming: bool = False
    streaming_message_id: Optional[str] = None


@dataclass
class GatewaySessionInfo:
    """Gateway 侧的会话统计，字段与 AIState 的非流式部分一一对应。"""

    is_initialized: bool
    current_model: str
    conversation_id: str
    token_count: int = 0
    memory_size: int = 0


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        ts = raw
    elif isinstance(raw, (int, float)):
        # 兼容毫秒时间戳
        ts = datetime.fromtimestamp(raw / 1000.0, tz=timezone.utc)
    else:
        ts = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def message_to_dict(message: Message) -> Dict[str, Any]:
    payload = asdict(message)
    payload["status"] = message.status.value
    payload["timestamp"] = message.timestamp.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
    return payload


def message_from_dict(data: Dict[str, Any]) -> Message:
    sender = data.get("sender") or "user"
    if sender == "ai":
        sender = "assistant"
    return Message(
        id=str(data["id"]),
        text=data.get("text") or "",
        sender=sender,
        timestamp=_parse_timestamp(data["timestamp"]),
        status=MessageStatus(data.get("status") or MessageStatus.SENT.value),
        is_streaming=bool(data.get("is_streaming", False)),
        streaming_complete=bool(data.get("streaming_complete", False)),
        error=data.get("error"),
    )
