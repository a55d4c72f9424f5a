import json
import os
import threading
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from helix_core.config.settings import settings
from helix_core.domain.conversation import StateStore
from helix_core.domain.exceptions import BusinessError


class JsonStateStore(StateStore):
    """以 JSON 文件保存的键值状态存储，每个键一个文件：{root}/state/{key}.json。"""

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._state_root = self._root / "state"
        self._state_root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except Exception as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e), key=key)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._write(key, value)

    def append(self, key: str, value: Dict[str, Any]) -> Dict[str, Any]:
        """在 key 对应的映射下新增一条记录，返回写入后的完整映射。

        value 需包含 "id" 字段作为映射中的键。
        """

        if "id" not in value:
            raise BusinessError(code="STORE_WRITE_ERROR", message="record without id", key=key)
        with self._lock:
            current = self.get(key) or {}
            if not isinstance(current, dict):
                raise BusinessError(code="STORE_WRITE_ERROR", message=f"{key} is not a mapping", key=key)
            current[str(value["id"])] = value
            self._write(key, current)
            return current

    def delete(self, key: str) -> None:
        path = self._path(key)
        with self._lock:
            try:
                path.unlink(missing_ok=True)
            except Exception as e:
                raise BusinessError(code="STORE_DELETE_ERROR", message=str(e), key=key)

    def keys(self) -> List[str]:
        return sorted(p.stem for p in self._state_root.glob("*.json"))

    def _path(self, key: str) -> Path:
        if not key or "/" in key or "\\" in key or key.startswith("."):
            raise BusinessError(code="STORE_KEY_ERROR", message=f"invalid key: {key!r}")
        return self._state_root / f"{key}.json"

    def _write(self, key: str, value: Any) -> None:
        path = self._path(key)
        tmp_path = self._state_root / f"{key}.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(json.dumps(value, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, path)
        except Exception as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e), key=key)


class MemoryStateStore(StateStore):
    """进程内的状态存储，读写都返回副本。"""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = deepcopy(initial or {})

    def get(self, key: str) -> Optional[Any]:
        value = self._data.get(key)
        return deepcopy(value) if value is not None else None

    def set(self, key: str, value: Any) -> None:
        self._data[key] = deepcopy(value)

    def append(self, key: str, value: Dict[str, Any]) -> Dict[str, Any]:
        if "id" not in value:
            raise BusinessError(code="STORE_WRITE_ERROR", message="record without id", key=key)
        current = self._data.setdefault(key, {})
        current[str(value["id"])] = deepcopy(value)
        return deepcopy(current)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> List[str]:
        return sorted(self._data)
