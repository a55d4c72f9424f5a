import tempfile
from pathlib import Path

import pytest

from helix_core.core.monitor import DOWNLOAD_STATUS_KEY, DownloadMonitor
from helix_core.domain.exceptions import BusinessError
from helix_core.infrastructure.storage.json_store import JsonStateStore, MemoryStateStore


def test_json_store_set_get_and_keys():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d) / ".storage"
        store = JsonStateStore(root=root)
        store.set("pageMarkdown", {"1": {"content": "héllo", "url": "https://a.example"}})

        reopened = JsonStateStore(root=root)
        assert reopened.get("pageMarkdown")["1"]["content"] == "héllo"
        assert reopened.keys() == ["pageMarkdown"]
        assert reopened.get("missing") is None
        # 原子写入不留下临时文件
        assert list((root / "state").glob("*.tmp")) == []


def test_json_store_append_and_delete():
    with tempfile.TemporaryDirectory() as d:
        store = JsonStateStore(root=Path(d))
        store.append("downloadStatus", {"id": "a", "loaded": 0.1})
        current = store.append("downloadStatus", {"id": "b", "loaded": 0.2})
        assert sorted(current) == ["a", "b"]

        store.delete("downloadStatus")
        assert store.get("downloadStatus") is None
        store.delete("downloadStatus")


@pytest.mark.parametrize("key", ["", "../escape", "a/b", ".hidden"])
def test_json_store_rejects_invalid_keys(key):
    with tempfile.TemporaryDirectory() as d:
        store = JsonStateStore(root=Path(d))
        with pytest.raises(BusinessError) as info:
            store.set(key, 1)
        assert info.value.code == "STORE_KEY_ERROR"


def test_json_store_append_requires_id():
    with tempfile.TemporaryDirectory() as d:
        with pytest.raises(BusinessError):
            JsonStateStore(root=Path(d)).append("downloadStatus", {"loaded": 1})


def test_memory_store_returns_copies():
    store = MemoryStateStore({"k": {"a": 1}})
    value = store.get("k")
    value["a"] = 2
    assert store.get("k") == {"a": 1}


def test_download_monitor_keeps_latest_entries():
    store = MemoryStateStore()
    monitor = DownloadMonitor(store, max_entries=10)
    for i in range(12):
        monitor.record(f"model-{i}", i / 12)

    assert len(store.get(DOWNLOAD_STATUS_KEY)) == 10
    assert monitor.latest("model-0") is None
    latest = monitor.latest("model-11")
    assert latest is not None
    assert latest.is_downloading
    assert [r.source for r in monitor.all()][-1] == "model-11"


def test_download_monitor_clamps_progress():
    monitor = DownloadMonitor(MemoryStateStore())
    assert monitor.record("llama3.2", 1.7).loaded == 1.0
    assert monitor.record("llama3.2", -1).loaded == 0.0
    assert monitor.latest("llama3.2").loaded == 0.0


def test_download_monitor_survives_store_failure():
    class BrokenStore(MemoryStateStore):
        def append(self, key, value):
            raise BusinessError(code="STORE_WRITE_ERROR", message="disk full")

    record = DownloadMonitor(BrokenStore()).record("llama3.2", 0.5)
    assert record.loaded == 0.5
