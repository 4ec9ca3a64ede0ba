import os
import re
from pathlib import Path
from typing import Dict, Optional
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.conversation import PersistenceAdapter
from chat_core.domain.exceptions import BusinessError


class MemoryStorageAdapter(PersistenceAdapter):
    """进程内存储，用于测试或不需要落盘的场景。"""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self.data: Dict[str, str] = dict(initial or {})

    def load(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def save(self, key: str, value: str) -> None:
        self.data[key] = value

    def clear(self, key: str) -> None:
        self.data.pop(key, None)


class JsonFileStorageAdapter(PersistenceAdapter):
    """每个 key 对应 <root>/<key>.json，写入使用临时文件 + os.replace 保证原子性。"""

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)

    def load(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e))

    def save(self, key: str, value: str) -> None:
        path = self._path(key)
        tmp_path = self._root / f"{path.stem}.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(value, encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))

    def clear(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as e:
            raise BusinessError(code="STORE_DELETE_ERROR", message=str(e))

    def _path(self, key: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9._-]", "_", key)
        if not safe:
            raise BusinessError(code="INVALID_STORE_KEY", message=repr(key))
        return self._root / f"{safe}.json"
