"""OpenAI 兼容的 HTTP Model Gateway。

接口风格与 OpenAI 一致，使用 chat/completions 端点：
- URL: {base_url}/chat/completions
- 认证: Authorization: Bearer <api_key>（local 后端可省略）

本模块负责：

1. 把用户输入与缓冲记忆拼成请求 payload。
2. 通过 execute_with_retry 发送请求（超时、退避、取消）。
3. 在边界处把 httpx 异常与 HTTP 状态码分类为具体的业务异常。
4. 解析普通响应与 SSE 流式响应（data: {...} / data: [DONE]）。
"""

import json
import math
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple
from uuid import uuid4

import httpx

from chat_core.config.settings import settings
from chat_core.domain.app_settings import AIModelConfig, MemoryType, ModelConfig
from chat_core.domain.exceptions import (
    ApiError,
    AuthError,
    ConfigurationError,
    ConnectionFailedError,
    RateLimitedError,
    RequestTimeoutError,
    ServerUnavailableError,
)
from chat_core.domain.models import GatewaySessionInfo, Message, MessageStatus, utcnow
from chat_core.infrastructure.logging.logger import logger
from chat_core.infrastructure.network.cancellation import CancellationToken
from chat_core.infrastructure.network.retry import RetryPolicy, execute_with_retry
from chat_core.providers.base import StreamCallbacks
from chat_core.providers.registry import get_provider_config


@dataclass
class _MemoryEntry:
    role: str
    content: str
    timestamp: datetime = field(default_factory=utcnow)


def estimate_tokens(text: str) -> int:
    """粗略估算：约 4 个字符一个 token。"""

    return math.ceil(len(text) / 4)


class HttpModelGateway:
    """基于 httpx.AsyncClient 的 Gateway 实现，带缓冲记忆。"""

    name = "http"

    def __init__(
        self,
        cfg=settings,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._settings = cfg
        self._retry_policy = retry_policy or RetryPolicy.from_settings(cfg)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._config: Optional[AIModelConfig] = None
        self._memory: List[_MemoryEntry] = []
        self._conversation_id = f"conv-{uuid4().hex}"
        self._token_count = 0
        self._memory_size = 0

    # ---- 生命周期 ----

    async def initialize(self, config: AIModelConfig) -> None:
        self._validate_model(config.model)
        if config.memory.type is not MemoryType.BUFFER:
            raise ConfigurationError(message=f"Memory type {config.memory.type.value!r} not yet implemented")
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self._settings.http_timeout,
                trust_env=False,
                transport=self._transport,
            )
        self._config = config.model_copy(deep=True)
        logger.info(
            "Gateway initialized",
            extra={"extra": {"model": config.model.qualified_name, "conversation_id": self._conversation_id}},
        )

    def is_ready(self) -> bool:
        return self._config is not None and self._client is not None and not self._client.is_closed

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
        self._client = None

    # ---- 非流式 ----

    async def send_message(
        self,
        text: str,
        *,
        cancellation_token: Optional[CancellationToken] = None,
    ) -> str:
        self._ensure_ready()
        payload = self._build_payload(text, stream=False)
        self._log_call(payload)
        data = await execute_with_retry(
            lambda: self._post(payload),
            timeout=self._settings.request_timeout,
            retry_policy=self._retry_policy,
            cancellation_token=cancellation_token,
        )
        content, usage_total = self._parse_response(data)
        self._record_exchange(text, content, usage_total)
        return content

    # ---- 流式 ----

    async def send_message_streaming(
        self,
        text: str,
        callbacks: StreamCallbacks,
        *,
        cancellation_token: Optional[CancellationToken] = None,
    ) -> str:
        self._ensure_ready()
        payload = self._build_payload(text, stream=True)
        self._log_call(payload)

        emitted: List[str] = []
        base_predicate = self._retry_policy.retry_predicate
        # 已经回调过 token 后再重试会导致文本重复，只允许在首个 token 前重试
        policy = replace(self._retry_policy, retry_predicate=lambda e: not emitted and base_predicate(e))

        async def attempt() -> str:
            parts: List[str] = []
            with _classify_transport_errors():
                async with self._client.stream(
                    "POST",
                    self._endpoint(),
                    json=payload,
                    headers=self._headers(),
                ) as resp:
                    if resp.status_code >= 400:
                        body = (await resp.aread()).decode("utf-8", errors="replace")
                        _raise_for_status(resp.status_code, body)
                    async for line in resp.aiter_lines():
                        if cancellation_token is not None:
                            cancellation_token.raise_if_cancelled()
                        done, chunk = _parse_stream_line(line)
                        if done:
                            break
                        if not chunk:
                            continue
                        parts.append(chunk)
                        emitted.append(chunk)
                        callbacks.on_token(chunk)
            return "".join(parts)

        try:
            full_text = await execute_with_retry(
                attempt,
                retry_policy=policy,
                cancellation_token=cancellation_token,
            )
        except Exception as exc:
            if callbacks.on_error is not None:
                callbacks.on_error(exc)
            raise
        self._record_exchange(text, full_text, None)
        if callbacks.on_complete is not None:
            callbacks.on_complete(full_text)
        return full_text

    # ---- 记忆与配置 ----

    async def get_conversation_history(self) -> List[Message]:
        return [
            Message(
                id=f"history-{i}",
                text=entry.content,
                sender="user" if entry.role == "user" else "assistant",
                timestamp=entry.timestamp,
                status=MessageStatus.SENT,
            )
            for i, entry in enumerate(self._memory)
        ]

    async def update_model_config(self, config: ModelConfig) -> None:
        if self._config is None:
            raise ConfigurationError(message="Service not initialized")
        self._validate_model(config)
        self._config = self._config.model_copy(update={"model": config.model_copy()})
        logger.info("Model config updated", extra={"extra": {"model": config.qualified_name}})

    async def clear_memory(self) -> None:
        self._memory.clear()
        self._token_count = 0
        self._memory_size = 0

    def session_info(self) -> GatewaySessionInfo:
        return GatewaySessionInfo(
            is_initialized=self.is_ready(),
            current_model=self._config.model.qualified_name if self._config else "",
            conversation_id=self._conversation_id,
            token_count=self._token_count,
            memory_size=self._memory_size,
        )

    # ---- 辅助方法 ----

    def _ensure_ready(self) -> None:
        if not self.is_ready():
            raise ConfigurationError(code="NOT_INITIALIZED", message="Model gateway not initialized")

    def _validate_model(self, model: ModelConfig) -> None:
        try:
            provider_cfg = get_provider_config(model.provider.value)
        except KeyError as exc:
            raise ConfigurationError(message=f"Unsupported model provider: {model.provider}") from exc
        if not model.model_name.strip():
            raise ConfigurationError(message="Model provider and name are required")
        if model.temperature < 0 or model.temperature > 2:
            raise ConfigurationError(message="Temperature must be between 0 and 2")
        if model.max_tokens <= 0:
            raise ConfigurationError(message="Max tokens must be greater than 0")
        if provider_cfg.requires_api_key and not self._settings.api_key_for(provider_cfg.name):
            raise ConfigurationError(
                code="MISSING_API_KEY",
                message=f"{provider_cfg.name.upper()}_API_KEY not set",
            )

    def _endpoint(self) -> str:
        provider = self._config.model.provider.value
        base = self._settings.base_url_for(provider) or get_provider_config(provider).base_url
        return f"{base.rstrip('/')}/chat/completions"

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        api_key = self._settings.api_key_for(self._config.model.provider.value)
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    def _build_payload(self, text: str, stream: bool) -> dict:
        model = self._config.model
        msgs = [{"role": e.role, "content": e.content} for e in self._memory]
        msgs.append({"role": "user", "content": text})
        return {
            "model": model.model_name,
            "messages": msgs,
            "temperature": model.temperature,
            "max_tokens": model.max_tokens,
            "stream": stream,
        }

    async def _post(self, payload: dict) -> dict:
        with _classify_transport_errors():
            resp = await self._client.post(self._endpoint(), json=payload, headers=self._headers())
        _raise_for_status(resp.status_code, resp.text)
        return resp.json()

    @staticmethod
    def _parse_response(data: dict) -> Tuple[str, Optional[int]]:
        choices = data.get("choices") or []
        content = ""
        if choices:
            msg = choices[0].get("message") or {}
            content = msg.get("content") or ""
        usage = data.get("usage") or {}
        return content, usage.get("total_tokens")

    def _record_exchange(self, text: str, reply: str, usage_total: Optional[int]) -> None:
        self._memory.append(_MemoryEntry(role="user", content=text))
        self._memory.append(_MemoryEntry(role="assistant", content=reply))
        self._trim_memory()
        self._token_count += usage_total if usage_total is not None else estimate_tokens(text + reply)
        self._memory_size = len(
            json.dumps([{"role": e.role, "content": e.content} for e in self._memory], ensure_ascii=False)
        )

    def _trim_memory(self) -> None:
        limit = self._config.memory.max_token_limit if self._config else None
        if not limit:
            return
        # 至少保留最近一轮
        while len(self._memory) > 2 and sum(estimate_tokens(e.content) for e in self._memory) > limit:
            self._memory.pop(0)

    def _log_call(self, payload: dict) -> None:
        logger.info(
            "Calling provider",
            extra={"extra": {
                "model": payload["model"],
                "stream": payload["stream"],
                "message_count": len(payload["messages"]),
                "conversation_id": self._conversation_id,
            }},
        )


@contextmanager
def _classify_transport_errors() -> Iterator[None]:
    try:
        yield
    except httpx.TimeoutException as e:
        raise RequestTimeoutError(message=str(e) or "Request timed out") from e
    except httpx.RequestError as e:
        raise ConnectionFailedError(message=str(e) or "Connection failed") from e


def _raise_for_status(status_code: int, body: str) -> None:
    if status_code in (401, 403):
        raise AuthError(
            message="Unauthorized: Invalid credentials or session expired",
            http_status=status_code,
        )
    if status_code == 429:
        raise RateLimitedError(message="Rate limited: Too many requests", http_status=status_code)
    if status_code >= 500:
        raise ServerUnavailableError(message=f"Server error: {status_code}", http_status=status_code)
    if status_code >= 400:
        raise ApiError(message=body or f"HTTP error: {status_code}", http_status=status_code)


def _parse_stream_line(line: str) -> Tuple[bool, Optional[str]]:
    """解析一行 SSE，返回 (是否结束, 增量文本)。"""

    data_str = line.strip()
    if not data_str or data_str.startswith(":"):
        return False, None
    if data_str.startswith("data:"):
        data_str = data_str[5:].strip()
    if data_str == "[DONE]":
        return True, None
    try:
        payload: Dict[str, Any] = json.loads(data_str)
    except json.JSONDecodeError:
        return False, None
    choices = payload.get("choices") or []
    if not choices:
        return False, None
    delta = choices[0].get("delta") or {}
    return False, delta.get("content") or None
