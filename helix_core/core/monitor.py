"""模型下载进度记录。

记录只用于观测（例如在 UI 上显示下载百分比），不是后端可用性的权威来源；
是否可用始终以 BackendCapability.availability() 为准。
"""

import time
from typing import List, Optional

from helix_core.domain.conversation import StateStore
from helix_core.domain.models import DownloadProgressRecord
from helix_core.infrastructure.logging.logger import logger

DOWNLOAD_STATUS_KEY = "downloadStatus"


class DownloadMonitor:
    def __init__(self, store: StateStore, max_entries: int = 10, language: str = "en"):
        self._store = store
        self._max_entries = max_entries
        self._language = language

    def record(self, source: str, loaded: float) -> DownloadProgressRecord:
        rec = DownloadProgressRecord(source=source, loaded=loaded, created_at=time.time())
        entry = {"id": self._entry_id(source), **rec.to_dict()}
        try:
            current = self._store.append(DOWNLOAD_STATUS_KEY, entry)
            if len(current) > self._max_entries:
                ordered = sorted(current.items(), key=lambda kv: kv[1].get("createdAt") or 0.0)
                self._store.set(DOWNLOAD_STATUS_KEY, dict(ordered[-self._max_entries:]))
        except Exception:
            # 进度记录失败不影响下载本身
            logger.warning("download progress not recorded", exc_info=True, extra={"extra": {"source": source}})
        return rec

    def latest(self, source: str) -> Optional[DownloadProgressRecord]:
        data = self._store.get(DOWNLOAD_STATUS_KEY) or {}
        raw = data.get(self._entry_id(source))
        return DownloadProgressRecord.from_dict(raw) if raw else None

    def all(self) -> List[DownloadProgressRecord]:
        data = self._store.get(DOWNLOAD_STATUS_KEY) or {}
        records = [DownloadProgressRecord.from_dict(v) for v in data.values()]
        records.sort(key=lambda r: r.created_at)
        return records

    def _entry_id(self, source: str) -> str:
        return f"{source}-{self._language}"
