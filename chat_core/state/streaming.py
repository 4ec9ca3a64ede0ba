"""流式消息生命周期：Created → Streaming → Completed | Errored。

同一时刻只有 ai_state.streaming_message_id 指向的那条消息处于 Streaming；
针对其他 id 的 token / complete 事件一律丢弃，用来屏蔽已取消或被替换的旧流的迟到回调。
"""

from typing import TYPE_CHECKING, Optional, Union

from chat_core.domain.exceptions import AbortedError, BusinessError, StreamingError
from chat_core.domain.models import Message, MessageStatus
from chat_core.infrastructure.logging.logger import logger
from chat_core.infrastructure.network.cancellation import CancellationToken
from chat_core.providers.base import ModelGateway, StreamCallbacks

if TYPE_CHECKING:
    from chat_core.state.store import ConversationStore


class StreamingCoordinator:
    def __init__(self, store: "ConversationStore", gateway: ModelGateway):
        self._store = store
        self._gateway = gateway
        self._in_flight = 0

    # ---- 状态迁移 ----

    def start_streaming(self, message_id: str) -> None:
        active = self._store.streaming_message_id
        if active is not None and active != message_id:
            raise StreamingError(
                code="STREAM_ALREADY_ACTIVE",
                message=f"Message {active} is already streaming",
                message_id=message_id,
            )
        message = self._store.get_message(message_id)
        if message is None:
            raise StreamingError(code="MESSAGE_NOT_FOUND", message=message_id, message_id=message_id)
        if message.status.is_terminal:
            raise StreamingError(
                code="MESSAGE_FINISHED",
                message=f"Message {message_id} is already {message.status.value}",
                message_id=message_id,
            )
        ai_state = self._store.ai_state
        ai_state.is_streaming = True
        ai_state.streaming_message_id = message_id
        self._store.commit_message_update(
            message_id,
            {"is_streaming": True, "streaming_complete": False},
            ai_state=ai_state,
        )

    def append_token(self, message_id: str, chunk: str) -> bool:
        """把 chunk 追加到正在流式的消息末尾；非当前流的 token 直接丢弃。"""

        if not chunk or self._store.streaming_message_id != message_id:
            return False
        message = self._store.get_message(message_id)
        if message is None or not message.is_streaming:
            return False
        return self._store.commit_message_update(message_id, {"text": message.text + chunk})

    def complete_streaming(self, message_id: str, final_text: Optional[str] = None) -> bool:
        if self._store.streaming_message_id != message_id:
            return False
        updates = {"is_streaming": False, "streaming_complete": True, "status": MessageStatus.SENT}
        if final_text is not None:
            updates["text"] = final_text
        if self._store.get_message(message_id) is None:
            # 消息已被清掉，只释放流
            self._store.set_state(ai_state=self._released_ai_state())
            return False
        return self._store.commit_message_update(message_id, updates, ai_state=self._released_ai_state())

    def fail_streaming(self, message_id: str, error: Union[str, BaseException]) -> bool:
        """标记消息出错并保留已收到的部分文本。"""

        active = self._store.streaming_message_id
        if active is not None and active != message_id:
            return False
        message = self._store.get_message(message_id)
        if message is None or message.status.is_terminal:
            # 终态消息不再改动，但仍要释放它占用的流
            if active != message_id:
                return False
            if message is None:
                self._store.set_state(ai_state=self._released_ai_state())
                return True
            return self._store.commit_message_update(
                message_id, {"is_streaming": False}, ai_state=self._released_ai_state()
            )
        summary = error if isinstance(error, str) else (str(error) or type(error).__name__)
        state_updates = {"error": summary}
        if active == message_id:
            state_updates["ai_state"] = self._released_ai_state()
        logger.warning(
            "Message failed",
            extra={"extra": {"message_id": message_id, "error": summary, "partial_length": len(message.text)}},
        )
        return self._store.commit_message_update(
            message_id,
            {
                "is_streaming": False,
                "streaming_complete": False,
                "status": MessageStatus.ERROR,
                "error": summary,
            },
            **state_updates,
        )

    def _released_ai_state(self):
        ai_state = self._store.ai_state
        ai_state.is_streaming = False
        ai_state.streaming_message_id = None
        return ai_state

    # ---- 发送流程 ----

    async def send_message_with_streaming(
        self,
        text: str,
        streaming_enabled: bool = True,
        cancellation_token: Optional[CancellationToken] = None,
    ) -> Message:
        """追加用户消息与助手占位消息，调用 Gateway 并驱动占位消息的状态迁移。

        Gateway 抛出的已分类异常（BusinessError 子类）原样抛出；
        其他异常转换为 StreamingError 后抛出。所有进行中的发送都结束后 is_loading 才回到 False。
        """

        if self._store.streaming_message_id is not None:
            raise StreamingError(
                code="STREAM_ALREADY_ACTIVE",
                message=f"Message {self._store.streaming_message_id} is already streaming",
            )
        token = cancellation_token
        if token is not None:
            token.raise_if_cancelled()
        # 占位消息创建与 start_streaming 之间没有 await，不会出现两条 is_streaming 消息
        use_streaming = streaming_enabled and self._gateway.is_ready()
        self._in_flight += 1

        self._store.add_message(text, "user", status=MessageStatus.SENT)
        self._store.set_state(is_loading=True, current_input="", error=None)
        placeholder = self._store.add_message(
            "",
            "assistant",
            status=MessageStatus.SENDING,
            is_streaming=use_streaming,
            streaming_complete=False,
        )
        message_id = placeholder.id
        remove_cancel_hook = None
        if token is not None:
            # 取消时立刻结束本条消息，之后旧流的任何回调都不再生效
            remove_cancel_hook = token.add_callback(
                lambda: self.fail_streaming(message_id, AbortedError(message=token.reason or "Request was aborted"))
            )

        def is_cancelled() -> bool:
            return token is not None and token.cancelled

        def on_token(chunk: str) -> None:
            if not is_cancelled():
                self.append_token(message_id, chunk)

        def on_complete(full_text: str) -> None:
            if not is_cancelled():
                self.complete_streaming(message_id, full_text)

        def on_error(err: BaseException) -> None:
            if not is_cancelled():
                self.fail_streaming(message_id, err)

        try:
            if use_streaming:
                self.start_streaming(message_id)
                full_text = await self._gateway.send_message_streaming(
                    text,
                    StreamCallbacks(on_token=on_token, on_complete=on_complete, on_error=on_error),
                    cancellation_token=token,
                )
                if token is not None:
                    token.raise_if_cancelled()
                # Gateway 未回调 on_complete 时以返回值收尾
                self.complete_streaming(message_id, full_text)
            else:
                response = await self._gateway.send_message(text, cancellation_token=token)
                if token is not None:
                    token.raise_if_cancelled()
                self._store.update_message(
                    message_id,
                    text=response,
                    status=MessageStatus.SENT,
                    is_streaming=False,
                )
            self._store.sync_ai_state()
        except BusinessError as exc:
            self.fail_streaming(message_id, exc)
            raise
        except Exception as exc:
            err = StreamingError(message=str(exc) or "Failed to send message", message_id=message_id)
            self.fail_streaming(message_id, err)
            raise err from exc
        finally:
            if remove_cancel_hook is not None:
                remove_cancel_hook()
            self._in_flight -= 1
            if self._in_flight == 0:
                self._store.update_loading_state(False)
        return self._store.get_message(message_id)
