import tempfile
from pathlib import Path

import pytest

from chat_core.domain.exceptions import BusinessError
from chat_core.infrastructure.storage.json_store import JsonFileStorageAdapter


def test_json_store_save_load_and_clear():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d) / ".storage"
        store = JsonFileStorageAdapter(root=root)
        assert store.load("chat-core-state") is None

        store.save("chat-core-state", '{"messages": []}')
        assert store.load("chat-core-state") == '{"messages": []}'
        assert (root / "chat-core-state.json").exists()

        store.save("chat-core-state", '{"messages": [1]}')
        assert store.load("chat-core-state") == '{"messages": [1]}'
        # 原子写入后不留下临时文件
        assert [p.name for p in root.iterdir()] == ["chat-core-state.json"]

        store.clear("chat-core-state")
        assert store.load("chat-core-state") is None
        store.clear("chat-core-state")


def test_json_store_sanitizes_keys():
    with tempfile.TemporaryDirectory() as d:
        store = JsonFileStorageAdapter(root=d)
        store.save("../escape/key", "x")
        assert (Path(d) / ".._escape_key.json").exists()
        assert store.load("../escape/key") == "x"


def test_json_store_wraps_write_errors():
    with tempfile.TemporaryDirectory() as d:
        store = JsonFileStorageAdapter(root=d)
        # 目标路径是目录时 os.replace 会失败
        (Path(d) / "blocked.json").mkdir()
        with pytest.raises(BusinessError) as info:
            store.save("blocked", "x")
        assert info.value.code == "STORE_WRITE_ERROR"
        assert [p.name for p in Path(d).iterdir()] == ["blocked.json"]
