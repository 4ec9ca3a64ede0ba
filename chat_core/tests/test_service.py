import json

import httpx
import pytest

from chat_core.api.service import open_chat_service
from chat_core.config.settings import Settings
from chat_core.domain.models import MessageStatus


def completion(content):
    return {"choices": [{"message": {"role": "assistant", "content": content}}], "usage": {"total_tokens": 4}}


def make_settings(tmp_path, **kw):
    params = dict(
        openai_api_key="sk-test-1234567890",
        storage_root=str(tmp_path / ".storage"),
        storage_key="svc",
        retry_max_retries=0,
        streaming_enabled=False,
    )
    params.update(kw)
    return Settings(**params)


@pytest.mark.asyncio
async def test_service_round_trip_persists_conversation(tmp_path):
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json=completion("Hi")))
    cfg = make_settings(tmp_path)

    async with open_chat_service(cfg, transport=transport) as service:
        assert service.gateway.is_ready()
        assert service.store.get_state().ai_state.is_initialized is True
        reply = await service.send("Hello")
        assert reply.text == "Hi"

    saved = json.loads((tmp_path / ".storage" / "svc.json").read_text(encoding="utf-8"))
    assert [m["text"] for m in saved["messages"]] == ["Hello", "Hi"]
    assert service.gateway.is_ready() is False

    async with open_chat_service(cfg, transport=transport) as service:
        messages = service.store.get_state().messages
        assert [(m.text, m.status) for m in messages] == [
            ("Hello", MessageStatus.SENT),
            ("Hi", MessageStatus.SENT),
        ]


@pytest.mark.asyncio
async def test_service_starts_offline_when_gateway_misconfigured(tmp_path):
    cfg = make_settings(tmp_path, openai_api_key=None)
    async with open_chat_service(cfg) as service:
        state = service.store.get_state()
        assert service.gateway.is_ready() is False
        assert state.error.startswith("Failed to initialize AI model")
