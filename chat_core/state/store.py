"""会话状态存储。

ConversationStore 是会话的唯一权威状态：消息列表、输入框内容、加载/错误状态、
AI 会话元数据与用户设置。所有修改都在调用方的同一轮事件循环内同步完成，
每次提交后依次：持久化 {messages, settings}、同步通知订阅者、
在模型配置变化时把新配置单向推送给 Gateway。

Gateway 与持久化适配器都由构造函数注入，不存在模块级单例；
用完后调用 dispose() 释放订阅并做最后一次持久化。
"""

import asyncio
import copy
import itertools
import json
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Set
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.app_settings import AppSettings, ModelConfig, validate_settings
from chat_core.domain.conversation import PERSISTED_FIELDS, ConversationState, PersistenceAdapter
from chat_core.domain.models import (
    AIState,
    Message,
    MessageStatus,
    Sender,
    message_from_dict,
    message_to_dict,
    utcnow,
)
from chat_core.infrastructure.logging.logger import logger
from chat_core.infrastructure.network.cancellation import CancellationToken
from chat_core.providers.base import ModelGateway
from chat_core.state.streaming import StreamingCoordinator

StateListener = Callable[[ConversationState], None]

_ENCODERS: Dict[str, Callable[[Any], Any]] = {
    "messages": lambda messages: [message_to_dict(m) for m in messages],
    "settings": lambda app_settings: app_settings.model_dump(mode="json"),
}


def new_message_id() -> str:
    return f"msg-{uuid4().hex}"


def merge_message_histories(local: Sequence[Message], remote: Sequence[Message]) -> List[Message]:
    """合并本地与 Gateway 的历史。

    去重键为 (text, sender, timestamp)：本地消息全部保留，Gateway 中键已存在的视为重复丢弃，
    其余追加，最后按时间戳稳定升序排序。两条不同消息三者完全相同时会被误判为重复。
    """

    seen = {_dedup_key(m) for m in local}
    merged = list(local)
    for msg in remote:
        key = _dedup_key(msg)
        if key in seen:
            continue
        seen.add(key)
        merged.append(msg)
    return sorted(merged, key=lambda m: m.timestamp)


def _dedup_key(message: Message):
    return (message.text, message.sender, message.timestamp)


class ConversationStore:
    def __init__(
        self,
        gateway: ModelGateway,
        storage: PersistenceAdapter,
        *,
        storage_key: Optional[str] = None,
        app_settings: Optional[AppSettings] = None,
    ):
        self._gateway = gateway
        self._storage = storage
        self._storage_key = storage_key or settings.storage_key
        self._default_settings = app_settings or AppSettings()
        self._state = self._initial_state()
        self._listeners: Dict[int, StateListener] = {}
        self._listener_ids = itertools.count(1)
        self._sync_tasks: Set[asyncio.Task] = set()
        self._pending_model_config: Optional[ModelConfig] = None
        self._disposed = False
        self._load_persisted_state()
        self.streaming = StreamingCoordinator(self, gateway)

    def _initial_state(self) -> ConversationState:
        return ConversationState(settings=self._default_settings.model_copy(deep=True))

    # ---- 读取 ----

    def get_state(self) -> ConversationState:
        """返回当前状态的深拷贝，修改它不会影响存储。"""

        return copy.deepcopy(self._state)

    def get_message(self, message_id: str) -> Optional[Message]:
        for msg in self._state.messages:
            if msg.id == message_id:
                return replace(msg)
        return None

    @property
    def ai_state(self) -> AIState:
        return replace(self._state.ai_state)

    @property
    def streaming_message_id(self) -> Optional[str]:
        return self._state.ai_state.streaming_message_id

    # ---- 提交 ----

    def set_state(self, **updates: Any) -> None:
        """合并部分更新并提交。未知字段会抛出 TypeError。"""

        previous = self._state
        self._state = replace(self._state, **updates)
        self._persist_state()
        self._notify()
        self._sync_model_config(previous)

    def subscribe(self, callback: StateListener) -> Callable[[], None]:
        """注册状态监听，返回取消订阅函数（重复调用无副作用）。"""

        handle = next(self._listener_ids)
        self._listeners[handle] = callback

        def unsubscribe() -> None:
            self._listeners.pop(handle, None)

        return unsubscribe

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.get_state()
        for handle, callback in list(self._listeners.items()):
            try:
                callback(snapshot)
            except Exception:  # noqa: BLE001 - 单个监听器失败不影响其他监听器
                logger.exception("Error in state listener", extra={"extra": {"listener": handle}})

    # ---- 消息 ----

    def add_message(
        self,
        text: str,
        sender: Sender = "user",
        *,
        status: MessageStatus = MessageStatus.SENT,
        **fields: Any,
    ) -> Message:
        """追加一条消息，自动分配 id 与 UTC 时间戳。"""

        message = Message(
            id=new_message_id(),
            text=text,
            sender=sender,
            timestamp=utcnow(),
            status=MessageStatus(status),
            **fields,
        )
        self.set_state(messages=[*self._state.messages, message])
        return replace(message)

    def update_message(self, message_id: str, **updates: Any) -> bool:
        """按 id 合并更新；id 不存在时什么也不做并返回 False。"""

        return self.commit_message_update(message_id, updates)

    def commit_message_update(self, message_id: str, updates: Dict[str, Any], **state_updates: Any) -> bool:
        """在同一次提交里更新一条消息和其他状态字段。"""

        if "id" in updates or "timestamp" in updates:
            raise ValueError("Message id and timestamp are immutable")
        found = False
        messages: List[Message] = []
        for msg in self._state.messages:
            if msg.id == message_id:
                found = True
                msg = replace(msg, **self._guard_status(msg, updates))
            messages.append(msg)
        if not found:
            return False
        self.set_state(messages=messages, **state_updates)
        return True

    @staticmethod
    def _guard_status(message: Message, updates: Dict[str, Any]) -> Dict[str, Any]:
        if "status" not in updates:
            return updates
        new_status = MessageStatus(updates["status"])
        if message.status.is_terminal and new_status is not message.status:
            logger.warning(
                "Ignored message status change",
                extra={"extra": {
                    "message_id": message.id,
                    "from": message.status.value,
                    "to": new_status.value,
                }},
            )
            return {k: v for k, v in updates.items() if k != "status"}
        return {**updates, "status": new_status}

    def clear_messages(self) -> None:
        self.set_state(messages=[])

    # ---- 便捷更新 ----

    def update_current_input(self, current_input: str) -> None:
        self.set_state(current_input=current_input)

    def update_loading_state(self, is_loading: bool) -> None:
        self.set_state(is_loading=is_loading)

    def update_error(self, error: Optional[str]) -> None:
        self.set_state(error=error)

    def update_ai_state(self, **fields: Any) -> None:
        self.set_state(ai_state=replace(self._state.ai_state, **fields))

    def update_settings(self, updates: Optional[Dict[str, Any]] = None, **fields: Any) -> None:
        """合并部分设置（支持嵌套 dict）。校验失败只记录警告，设置照常生效。"""

        new_settings = self._state.settings.merged({**(updates or {}), **fields})
        errors = validate_settings(new_settings)
        if errors:
            logger.warning("Settings validation failed", extra={"extra": {"errors": errors}})
        self.set_state(settings=new_settings)

    def reset_settings(self) -> None:
        self.set_state(settings=self._default_settings.model_copy(deep=True))

    def reset_state(self) -> None:
        """回到初始状态并清除持久化数据。"""

        previous = self._state
        self._state = self._initial_state()
        self.clear_persisted_state()
        self._notify()
        self._sync_model_config(previous)

    # ---- 发送 ----

    async def send_message_with_streaming(
        self,
        text: str,
        streaming_enabled: bool = True,
        cancellation_token: Optional[CancellationToken] = None,
    ) -> Message:
        return await self.streaming.send_message_with_streaming(
            text,
            streaming_enabled=streaming_enabled,
            cancellation_token=cancellation_token,
        )

    # ---- Gateway 同步 ----

    def sync_ai_state(self) -> None:
        """把 Gateway 的会话统计复制进 ai_state，保留流式字段。"""

        info = self._gateway.session_info()
        current = self._state.ai_state
        self.set_state(ai_state=AIState(
            is_initialized=info.is_initialized,
            current_model=info.current_model,
            conversation_id=info.conversation_id,
            token_count=info.token_count,
            memory_size=info.memory_size,
            is_streaming=current.is_streaming,
            streaming_message_id=current.streaming_message_id,
        ))

    async def load_conversation_history(self) -> None:
        """拉取 Gateway 历史并与本地消息合并。"""

        if not self._gateway.is_ready():
            return
        try:
            history = await self._gateway.get_conversation_history()
        except Exception as exc:  # noqa: BLE001 - 历史加载失败只提示，不中断会话
            logger.error(
                "Failed to load conversation history",
                extra={"extra": {"error": str(exc), "error_type": type(exc).__name__}},
            )
            self.set_state(error="Failed to load conversation history")
            return
        self.set_state(messages=merge_message_histories(self._state.messages, history))

    def _sync_model_config(self, previous: ConversationState) -> None:
        new_model = self._state.settings.ai_model.model
        if previous.settings.ai_model.model == new_model or not self._gateway.is_ready():
            return
        config = new_model.model_copy()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # 没有运行中的事件循环，等 flush_pending() 再推送
            self._pending_model_config = config
            return
        self._pending_model_config = None
        task = loop.create_task(self._push_model_config(config))
        self._sync_tasks.add(task)
        task.add_done_callback(self._sync_tasks.discard)

    async def _push_model_config(self, config: ModelConfig) -> None:
        try:
            await self._gateway.update_model_config(config)
        except Exception as exc:  # noqa: BLE001 - 同步失败以错误提示呈现
            logger.error(
                "Failed to update model config",
                extra={"extra": {"model": config.qualified_name, "error": str(exc)}},
            )
            self.set_state(error="Failed to update AI model configuration")
            return
        self.update_ai_state(current_model=config.qualified_name)

    async def flush_pending(self) -> None:
        """推送积压的模型配置，并等待进行中的同步任务结束。"""

        if self._pending_model_config is not None and self._gateway.is_ready():
            config, self._pending_model_config = self._pending_model_config, None
            await self._push_model_config(config)
        if self._sync_tasks:
            await asyncio.gather(*list(self._sync_tasks))

    # ---- 持久化 ----

    def _persistable_payload(self) -> Dict[str, Any]:
        return {name: _ENCODERS[name](getattr(self._state, name)) for name in PERSISTED_FIELDS}

    def _persist_state(self) -> None:
        try:
            self._storage.save(self._storage_key, json.dumps(self._persistable_payload(), ensure_ascii=False))
        except Exception as exc:  # noqa: BLE001 - 持久化尽力而为，不能阻断状态提交
            logger.error(
                "Failed to persist state",
                extra={"extra": {"storage_key": self._storage_key, "error": str(exc)}},
            )

    def _load_persisted_state(self) -> None:
        try:
            raw = self._storage.load(self._storage_key)
            if not raw:
                return
            parsed = json.loads(raw)
            messages = self._state.messages
            if isinstance(parsed.get("messages"), list):
                messages = [_recover_interrupted(message_from_dict(m)) for m in parsed["messages"]]
            app_settings = self._state.settings
            if isinstance(parsed.get("settings"), dict):
                app_settings = app_settings.merged(parsed["settings"])
        except Exception as exc:  # noqa: BLE001 - 数据损坏时使用默认状态
            logger.error(
                "Failed to load persisted state",
                extra={"extra": {"storage_key": self._storage_key, "error": str(exc)}},
            )
            return
        self._state = replace(self._state, messages=messages, settings=app_settings)

    def clear_persisted_state(self) -> None:
        try:
            self._storage.clear(self._storage_key)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "Failed to clear persisted state",
                extra={"extra": {"storage_key": self._storage_key, "error": str(exc)}},
            )

    # ---- 调试与释放 ----

    def get_debug_info(self) -> Dict[str, Any]:
        try:
            persisted = self._storage.load(self._storage_key) is not None
        except Exception:  # noqa: BLE001
            persisted = False
        return {
            "state_size": len(json.dumps(self._persistable_payload(), ensure_ascii=False)),
            "message_count": len(self._state.messages),
            "subscriber_count": len(self._listeners),
            "gateway_ready": self._gateway.is_ready(),
            "persisted_state_exists": persisted,
        }

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        for task in list(self._sync_tasks):
            task.cancel()
        self._listeners.clear()
        self._persist_state()


def _recover_interrupted(message: Message) -> Message:
    # 上次进程退出时仍在发送/流式中的消息不可能再完成
    if message.status is MessageStatus.SENDING or message.is_streaming:
        return replace(
            message,
            status=MessageStatus.ERROR,
            is_streaming=False,
            streaming_complete=False,
            error=message.error or "Interrupted",
        )
    return message
