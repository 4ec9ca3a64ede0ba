import asyncio
from typing import List, Optional

import pytest

from chat_core.domain.models import GatewaySessionInfo, Message
from chat_core.infrastructure.storage.json_store import MemoryStorageAdapter
from chat_core.state.store import ConversationStore


class FakeGateway:
    """可编排的 Gateway 替身：固定回复、逐个 token、或在取消前一直挂起。"""

    def __init__(self, ready: bool = True, reply: str = "ok", tokens: Optional[List[str]] = None):
        self.ready = ready
        self.reply = reply
        self.tokens = tokens or []
        self.error: Optional[BaseException] = None
        self.config_error: Optional[BaseException] = None
        self.history: List[Message] = []
        self.history_error: Optional[BaseException] = None
        self.wait_for_cancel = False
        self.sent: List[str] = []
        self.model_configs = []
        self.token_count = 0

    def is_ready(self) -> bool:
        return self.ready

    async def send_message(self, text, *, cancellation_token=None):
        self.sent.append(text)
        await self._maybe_wait(cancellation_token)
        if self.error is not None:
            raise self.error
        self.token_count += 1
        return self.reply

    async def send_message_streaming(self, text, callbacks, *, cancellation_token=None):
        self.sent.append(text)
        for chunk in self.tokens:
            callbacks.on_token(chunk)
            await asyncio.sleep(0)
        await self._maybe_wait(cancellation_token)
        if self.error is not None:
            if callbacks.on_error is not None:
                callbacks.on_error(self.error)
            raise self.error
        full = "".join(self.tokens)
        if callbacks.on_complete is not None:
            callbacks.on_complete(full)
        self.token_count += 1
        return full

    async def get_conversation_history(self):
        if self.history_error is not None:
            raise self.history_error
        return list(self.history)

    async def update_model_config(self, config):
        if self.config_error is not None:
            raise self.config_error
        self.model_configs.append(config)

    def session_info(self) -> GatewaySessionInfo:
        return GatewaySessionInfo(
            is_initialized=self.ready,
            current_model="openai:gpt-3.5-turbo",
            conversation_id="conv-test",
            token_count=self.token_count,
            memory_size=0,
        )

    async def _maybe_wait(self, token):
        if self.wait_for_cancel and token is not None:
            await token.wait()
            token.raise_if_cancelled()


class FailingStorage(MemoryStorageAdapter):
    def save(self, key, value):
        raise OSError("disk full")


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def storage():
    return MemoryStorageAdapter()


@pytest.fixture
def store(gateway, storage):
    s = ConversationStore(gateway, storage, storage_key="test-state")
    yield s
    s.dispose()
