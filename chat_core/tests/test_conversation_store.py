import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest

from chat_core.domain.conversation import PERSISTED_FIELDS
from chat_core.domain.exceptions import ApiError
from chat_core.domain.models import Message, MessageStatus
from chat_core.infrastructure.storage.json_store import MemoryStorageAdapter
from chat_core.state.store import ConversationStore, merge_message_histories

from conftest import FailingStorage, FakeGateway


def _msg(mid, text, sender, ts, **kw):
    return Message(id=mid, text=text, sender=sender, timestamp=ts, **kw)


def test_add_message_keeps_order_and_unique_ids(store):
    first = store.add_message("one")
    second = store.add_message("two", "assistant")
    messages = store.get_state().messages
    assert [m.text for m in messages] == ["one", "two"]
    assert first.id != second.id
    assert messages[1].sender == "assistant"
    assert messages[0].timestamp.tzinfo is not None


def test_update_message_unknown_id_is_noop(store):
    store.add_message("hello")
    seen = []
    store.subscribe(seen.append)
    assert store.update_message("missing", text="x") is False
    assert seen == []
    assert store.get_state().messages[0].text == "hello"


def test_update_message_rejects_identity_changes(store):
    msg = store.add_message("hello")
    with pytest.raises(ValueError):
        store.update_message(msg.id, id="other")


def test_terminal_status_never_reverts(store):
    msg = store.add_message("hi", status=MessageStatus.SENDING)
    store.update_message(msg.id, status=MessageStatus.SENT)
    store.update_message(msg.id, status=MessageStatus.SENDING, text="edited")
    updated = store.get_message(msg.id)
    assert updated.status is MessageStatus.SENT
    assert updated.text == "edited"


def test_subscribe_and_unsubscribe(store):
    seen = []
    unsubscribe = store.subscribe(seen.append)
    store.update_current_input("draft")
    unsubscribe()
    unsubscribe()
    store.update_current_input("draft 2")
    assert len(seen) == 1
    assert seen[0].current_input == "draft"


def test_failing_listener_does_not_block_others(store):
    def broken(_state):
        raise RuntimeError("listener bug")

    seen = []
    store.subscribe(broken)
    store.subscribe(seen.append)
    store.update_loading_state(True)
    assert len(seen) == 1
    assert seen[0].is_loading is True


def test_get_state_returns_copy(store):
    store.add_message("original")
    snapshot = store.get_state()
    snapshot.messages[0].text = "mutated"
    snapshot.messages.append(snapshot.messages[0])
    snapshot.settings.auto_scroll = False
    state = store.get_state()
    assert [m.text for m in state.messages] == ["original"]
    assert state.settings.auto_scroll is True


def test_persisted_payload_excludes_transient_fields(store, storage):
    store.add_message("hi")
    store.update_current_input("typing")
    store.update_error("boom")
    store.update_settings(auto_scroll=False)
    payload = json.loads(storage.data["test-state"])
    assert set(payload) == set(PERSISTED_FIELDS) == {"messages", "settings"}
    assert payload["settings"]["auto_scroll"] is False
    assert payload["messages"][0]["text"] == "hi"


def test_save_failure_does_not_break_commit():
    s = ConversationStore(FakeGateway(), FailingStorage(), storage_key="k")
    seen = []
    s.subscribe(seen.append)
    s.add_message("still works")
    assert [m.text for m in s.get_state().messages] == ["still works"]
    assert len(seen) == 1


def test_state_is_restored_on_construction(gateway):
    storage = MemoryStorageAdapter()
    first = ConversationStore(gateway, storage, storage_key="k")
    first.add_message("persisted")
    first.update_settings({"voice_settings": {"rate": 1.5}})
    first.dispose()

    second = ConversationStore(gateway, storage, storage_key="k")
    state = second.get_state()
    assert [m.text for m in state.messages] == ["persisted"]
    assert state.settings.voice_settings.rate == 1.5
    assert state.is_loading is False


def test_interrupted_messages_become_errors_on_load(gateway):
    storage = MemoryStorageAdapter()
    first = ConversationStore(gateway, storage, storage_key="k")
    first.add_message("partial", "assistant", status=MessageStatus.SENDING, is_streaming=True)

    second = ConversationStore(gateway, storage, storage_key="k")
    msg = second.get_state().messages[0]
    assert msg.status is MessageStatus.ERROR
    assert msg.is_streaming is False
    assert msg.text == "partial"
    assert msg.error == "Interrupted"


def test_corrupted_storage_falls_back_to_defaults(gateway):
    storage = MemoryStorageAdapter({"k": "{not json"})
    s = ConversationStore(gateway, storage, storage_key="k")
    assert s.get_state().messages == []


def test_legacy_ai_sender_is_normalized(gateway):
    raw = json.dumps({"messages": [{"id": "1", "text": "hey", "sender": "ai", "timestamp": 1700000000000}]})
    s = ConversationStore(gateway, MemoryStorageAdapter({"k": raw}), storage_key="k")
    msg = s.get_state().messages[0]
    assert msg.sender == "assistant"
    assert msg.timestamp.tzinfo is timezone.utc


def test_update_settings_with_invalid_values_still_applies(store):
    store.update_settings({"voice_settings": {"rate": 50}})
    assert store.get_state().settings.voice_settings.rate == 50


def test_reset_settings_and_reset_state(store, storage):
    store.update_settings(audio_enabled=False)
    store.reset_settings()
    assert store.get_state().settings.audio_enabled is True

    store.add_message("gone")
    store.update_error("boom")
    store.reset_state()
    state = store.get_state()
    assert state.messages == []
    assert state.error is None
    assert "test-state" not in storage.data


def test_clear_messages(store):
    store.add_message("a")
    store.clear_messages()
    assert store.get_state().messages == []


def test_merge_histories_dedups_and_sorts():
    t0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
    local_a = _msg("local-a", "A", "user", t0)
    remote_a = _msg("history-0", "A", "user", t0)
    remote_b = _msg("history-1", "B", "assistant", t0 + timedelta(seconds=1))
    merged = merge_message_histories([local_a], [remote_b, remote_a])
    assert [m.id for m in merged] == ["local-a", "history-1"]


@pytest.mark.asyncio
async def test_load_conversation_history_merges(store, gateway):
    local = store.add_message("A")
    gateway.history = [
        _msg("history-0", "A", "user", local.timestamp),
        _msg("history-1", "B", "assistant", local.timestamp + timedelta(seconds=1)),
    ]
    await store.load_conversation_history()
    assert [m.text for m in store.get_state().messages] == ["A", "B"]


@pytest.mark.asyncio
async def test_load_conversation_history_failure_sets_error(store, gateway):
    gateway.history_error = ApiError("nope")
    store.add_message("kept")
    await store.load_conversation_history()
    state = store.get_state()
    assert state.error == "Failed to load conversation history"
    assert [m.text for m in state.messages] == ["kept"]


@pytest.mark.asyncio
async def test_model_change_is_pushed_to_gateway(store, gateway):
    store.update_settings({"ai_model": {"model": {"model_name": "gpt-4"}}})
    await store.flush_pending()
    assert [c.model_name for c in gateway.model_configs] == ["gpt-4"]
    assert store.get_state().ai_state.current_model == "openai:gpt-4"


@pytest.mark.asyncio
async def test_unrelated_settings_do_not_touch_gateway(store, gateway):
    store.update_settings(auto_scroll=False)
    await store.flush_pending()
    assert gateway.model_configs == []


@pytest.mark.asyncio
async def test_model_sync_failure_sets_error(store, gateway):
    gateway.config_error = ApiError("rejected")
    store.update_settings({"ai_model": {"model": {"temperature": 0.2}}})
    await store.flush_pending()
    assert store.get_state().error == "Failed to update AI model configuration"


def test_model_change_without_loop_waits_for_flush(store, gateway):
    store.update_settings({"ai_model": {"model": {"model_name": "gpt-4o"}}})
    assert gateway.model_configs == []
    asyncio.run(store.flush_pending())
    assert [c.model_name for c in gateway.model_configs] == ["gpt-4o"]


def test_model_change_skipped_when_gateway_not_ready(storage):
    gw = FakeGateway(ready=False)
    s = ConversationStore(gw, storage, storage_key="k")
    s.update_settings({"ai_model": {"model": {"model_name": "gpt-4o"}}})
    asyncio.run(s.flush_pending())
    assert gw.model_configs == []


def test_sync_ai_state_copies_session_info(store, gateway):
    gateway.token_count = 42
    store.sync_ai_state()
    ai = store.get_state().ai_state
    assert ai.token_count == 42
    assert ai.conversation_id == "conv-test"
    assert ai.is_initialized is True


def test_debug_info(store):
    store.add_message("x")
    store.subscribe(lambda s: None)
    info = store.get_debug_info()
    assert info["message_count"] == 1
    assert info["subscriber_count"] == 1
    assert info["persisted_state_exists"] is True
    assert info["state_size"] > 0


def test_dispose_clears_listeners_and_persists(gateway, storage):
    s = ConversationStore(gateway, storage, storage_key="k")
    seen = []
    s.subscribe(seen.append)
    s.dispose()
    s.add_message("after dispose")
    assert seen == []
    assert "k" in storage.data
