"""Model Gateway 集成层。

该包下的模块负责：
- 定义 Gateway 抽象接口 (base)。
- 维护 Provider 端点配置 (registry)。
- 提供 OpenAI 兼容的 HTTP 实现 (http_gateway)。
"""

from typing import Optional

import httpx

from chat_core.config.settings import settings
from chat_core.providers.base import ModelGateway, StreamCallbacks
from chat_core.providers.http_gateway import HttpModelGateway


def create_gateway(cfg=None, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> HttpModelGateway:
    """根据配置创建 Gateway 实例（尚未 initialize）。"""

    return HttpModelGateway(cfg or settings, transport=transport)


__all__ = ["ModelGateway", "StreamCallbacks", "HttpModelGateway", "create_gateway"]
