"""对外装配入口。

显式构造持久化适配器、Gateway 与 ConversationStore，并负责它们的启动与释放：

    async with open_chat_service() as service:
        service.store.subscribe(render)
        await service.store.send_message_with_streaming("你好")
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import httpx

from chat_core.config.settings import Settings, settings
from chat_core.domain.conversation import PersistenceAdapter
from chat_core.infrastructure.logging.logger import logger
from chat_core.infrastructure.storage.json_store import JsonFileStorageAdapter
from chat_core.providers.http_gateway import HttpModelGateway
from chat_core.state.store import ConversationStore


class ChatService:
    """一次客户端会话所需的全部组件。"""

    def __init__(
        self,
        cfg: Settings = settings,
        *,
        storage: Optional[PersistenceAdapter] = None,
        gateway: Optional[HttpModelGateway] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = cfg
        self.storage = storage or JsonFileStorageAdapter(cfg.storage_root)
        self.gateway = gateway or HttpModelGateway(cfg, transport=transport)
        self.store = ConversationStore(self.gateway, self.storage, storage_key=cfg.storage_key)

    async def start(self) -> None:
        """初始化 Gateway 并合并历史。Gateway 配置非法时仍可离线使用会话。"""

        try:
            await self.gateway.initialize(self.store.get_state().settings.ai_model)
        except Exception as e:
            logger.error("Gateway initialization failed", extra={"extra": {"error": str(e)}})
            self.store.update_error(f"Failed to initialize AI model: {e}")
            return
        self.store.sync_ai_state()
        await self.store.load_conversation_history()

    async def send(self, text: str, streaming: Optional[bool] = None):
        enabled = self.settings.streaming_enabled if streaming is None else streaming
        return await self.store.send_message_with_streaming(text, streaming_enabled=enabled)

    async def close(self) -> None:
        await self.store.flush_pending()
        self.store.dispose()
        await self.gateway.aclose()


@asynccontextmanager
async def open_chat_service(cfg: Settings = settings, **kwargs) -> AsyncIterator[ChatService]:
    service = ChatService(cfg, **kwargs)
    await service.start()
    try:
        yield service
    finally:
        await service.close()
