"""带超时、指数退避（含抖动）与协作式取消的重试执行器。

每次尝试都重新调用 operation()：

    result = await execute_with_retry(
        lambda: client.post(...),
        timeout=30.0,
        retry_policy=RetryPolicy(max_retries=2, base_delay=2.0),
        cancellation_token=token,
    )

是否重试只看错误类型（由 Gateway 在错误产生处分类），不解析错误文本。
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from chat_core.domain.exceptions import (
    AbortedError,
    BusinessError,
    ConnectionFailedError,
    RequestTimeoutError,
    ServerUnavailableError,
)
from chat_core.infrastructure.logging.logger import logger
from chat_core.infrastructure.network.cancellation import CancellationToken

T = TypeVar("T")

RETRYABLE_ERRORS = (
    ConnectionFailedError,
    RequestTimeoutError,
    ServerUnavailableError,
)


def is_retryable(error: BaseException) -> bool:
    """默认重试判定：连接失败、超时、5xx。认证、限流、4xx、配置错误一律不重试。"""

    return isinstance(error, RETRYABLE_ERRORS)


@dataclass
class RetryPolicy:
    """重试策略。

    Attributes:
        max_retries: 首次之外最多再试几次（总调用次数 <= max_retries + 1）。
        base_delay: 第一次重试前的基础延迟（秒）。
        max_delay: 退避延迟上限（秒），不含抖动。
        backoff_multiplier: 每次重试延迟的放大倍数。
        max_jitter: 额外随机抖动的上限（秒），取值 [0, max_jitter)。
        retry_predicate: 判断某个错误是否值得重试。
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0
    max_jitter: float = 1.0
    retry_predicate: Callable[[BaseException], bool] = is_retryable

    def compute_delay(self, attempt: int) -> float:
        """第 attempt 次（从 0 开始）失败后的退避延迟，不含抖动。"""

        return min(self.base_delay * (self.backoff_multiplier ** attempt), self.max_delay)

    @classmethod
    def from_settings(cls, cfg: Any) -> "RetryPolicy":
        return cls(
            max_retries=cfg.retry_max_retries,
            base_delay=cfg.retry_base_delay,
            max_delay=cfg.retry_max_delay,
            backoff_multiplier=cfg.retry_backoff_multiplier,
            max_jitter=cfg.retry_max_jitter,
        )


@dataclass
class RetryEvent:
    """每次重试前发出的观测事件。attempt 为刚失败的那次尝试序号（从 1 开始）。"""

    attempt: int
    delay: float
    error: BaseException


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    timeout: Optional[float] = None,
    retry_policy: Optional[RetryPolicy] = None,
    cancellation_token: Optional[CancellationToken] = None,
    on_retry: Optional[Callable[[RetryEvent], None]] = None,
) -> T:
    """执行 operation，按策略重试。

    Raises:
        AbortedError: token 在开始前、退避等待中或调用进行中被触发。
        RequestTimeoutError: 单次调用超过 timeout 且已无重试机会。
        Exception: 最后一次的错误；BusinessError 会附带 attempts。
    """

    policy = retry_policy or RetryPolicy()
    attempt = 0
    while True:
        if cancellation_token is not None:
            cancellation_token.raise_if_cancelled()
        try:
            return await _run_attempt(operation, timeout, cancellation_token)
        except AbortedError:
            raise
        except Exception as exc:
            if attempt >= policy.max_retries or not policy.retry_predicate(exc):
                if isinstance(exc, BusinessError):
                    exc.with_attempts(attempt + 1)
                raise
            delay = policy.compute_delay(attempt) + random.random() * policy.max_jitter
            logger.warning(
                "Request failed, retrying",
                extra={"extra": {
                    "attempt": attempt + 1,
                    "max_attempts": policy.max_retries + 1,
                    "delay_seconds": round(delay, 3),
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                }},
            )
            if on_retry is not None:
                _emit(on_retry, RetryEvent(attempt=attempt + 1, delay=delay, error=exc))
            await _sleep(delay, cancellation_token)
            attempt += 1


async def _run_attempt(
    operation: Callable[[], Awaitable[T]],
    timeout: Optional[float],
    token: Optional[CancellationToken],
) -> T:
    task = asyncio.ensure_future(operation())
    waiters = {task}
    cancel_waiter = None
    if token is not None:
        cancel_waiter = asyncio.ensure_future(token.wait())
        waiters.add(cancel_waiter)
    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    except BaseException:
        _discard(task)
        raise
    finally:
        if cancel_waiter is not None and not cancel_waiter.done():
            cancel_waiter.cancel()

    if cancel_waiter is not None and cancel_waiter in done:
        _discard(task)
        raise AbortedError(message=token.reason or "Request was aborted")
    if task in done:
        return task.result()
    _discard(task)
    raise RequestTimeoutError(message=f"Request timed out after {timeout:g}s")


async def _sleep(delay: float, token: Optional[CancellationToken]) -> None:
    """可取消的等待：token 触发时立即抛出 AbortedError。"""

    if token is None:
        await asyncio.sleep(delay)
        return
    try:
        await asyncio.wait_for(token.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return
    raise AbortedError(message=token.reason or "Request was aborted")


def _discard(task: "asyncio.Future[Any]") -> None:
    if task.done():
        _consume(task)
        return
    task.cancel()
    task.add_done_callback(_consume)


def _consume(task: "asyncio.Future[Any]") -> None:
    # 读取一次异常，避免 "exception was never retrieved" 警告
    if not task.cancelled():
        task.exception()


def _emit(on_retry: Callable[[RetryEvent], None], event: RetryEvent) -> None:
    try:
        on_retry(event)
    except Exception:  # noqa: BLE001 - 观测回调不能影响重试本身
        logger.exception("Retry observer failed")
