"""Model Gateway 抽象接口。

会话状态层（ConversationStore / StreamingCoordinator）不直接依赖具体厂商的 HTTP 细节，
而是依赖此协议：

- 每种后端实现一个 ModelGateway（如 HttpModelGateway）。
- 负责：发送消息、流式回调、返回会话历史、接收模型配置更新。
- 错误必须在这里分类为 chat_core.domain.exceptions 中的具体类型。
"""

from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol

from chat_core.domain.app_settings import ModelConfig
from chat_core.domain.models import GatewaySessionInfo, Message
from chat_core.infrastructure.network.cancellation import CancellationToken


@dataclass
class StreamCallbacks:
    """流式调用的回调集合。

    - on_token: 每收到一段增量文本调用一次，按到达顺序。
    - on_complete: 正常结束，参数为完整文本。
    - on_error: 出错时调用，随后 Gateway 仍会抛出同一个异常。
    """

    on_token: Callable[[str], None]
    on_complete: Optional[Callable[[str], None]] = None
    on_error: Optional[Callable[[BaseException], None]] = None


class ModelGateway(Protocol):
    """远端对话模型的调用面。"""

    def is_ready(self) -> bool:
        ...

    async def send_message(
        self,
        text: str,
        *,
        cancellation_token: Optional[CancellationToken] = None,
    ) -> str:
        ...

    async def send_message_streaming(
        self,
        text: str,
        callbacks: StreamCallbacks,
        *,
        cancellation_token: Optional[CancellationToken] = None,
    ) -> str:
        """执行一次流式调用，逐步回调增量，返回完整文本。"""

        ...

    async def get_conversation_history(self) -> List[Message]:
        ...

    async def update_model_config(self, config: ModelConfig) -> None:
        ...

    def session_info(self) -> GatewaySessionInfo:
        ...
