"""Cooperative cancellation token shared between a caller and downstream async work."""

from __future__ import annotations

import asyncio
from typing import Callable, List, Optional

from chat_core.domain.exceptions import AbortedError


class CancellationToken:
    """调用方持有并触发，下游异步任务轮询或等待。

    触发后不可恢复；同一个 token 可以被多个调用共享。
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: Optional[str] = None
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "Request was aborted") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            cb()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise AbortedError(message=self._reason or "Request was aborted")

    async def wait(self) -> None:
        await self._event.wait()

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """注册取消回调；已取消时立即执行。返回用于注销的函数。"""

        if self.cancelled:
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return remove
