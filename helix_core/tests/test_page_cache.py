import asyncio
import tempfile
from pathlib import Path

import pytest

from helix_core.config.settings import DEFAULT_RESTRICTED_SCHEMES
from helix_core.core.page_cache import (
    PAGE_MARKDOWN_KEY,
    TRUNCATION_MARKER,
    PageContextCache,
    format_snapshot,
    truncate_utf8,
)
from helix_core.infrastructure.storage.json_store import JsonStateStore, MemoryStateStore


def make_cache(**kw):
    kw.setdefault("restricted_schemes", DEFAULT_RESTRICTED_SCHEMES)
    return PageContextCache(store=MemoryStateStore(), **kw)


@pytest.mark.parametrize("scheme", DEFAULT_RESTRICTED_SCHEMES)
async def test_restricted_urls_are_never_cached(scheme):
    cache = make_cache()
    await cache.put("7", f"{scheme}settings", "secret internal page")
    assert await cache.get("7") is None


async def test_restricted_check_is_case_insensitive():
    cache = make_cache()
    await cache.put("7", "CHROME://flags", "flags")
    assert await cache.get("7") is None


@pytest.mark.parametrize("url,text", [(None, "text"), ("", "text"), ("https://a.example", ""), ("https://a.example", None)])
async def test_put_ignores_missing_url_or_text(url, text):
    cache = make_cache()
    await cache.put("1", url, text)
    assert await cache.get("1") is None


async def test_put_is_last_write_wins():
    cache = make_cache()
    await cache.put("1", "https://a.example", "first")
    await cache.put("1", "https://a.example", "second")
    assert await cache.get("1") == "second"


async def test_truncated_content_round_trips():
    cache = make_cache(max_bytes=59_999)
    text = "é" * 40_000
    await cache.put("1", "https://a.example", text)
    stored = await cache.get("1")
    assert stored.endswith(TRUNCATION_MARKER)
    body = stored[: -len(TRUNCATION_MARKER)]
    assert len(body.encode("utf-8")) <= 59_999
    assert body == "é" * 29_999
    assert await cache.get("1") == stored


def test_truncate_keeps_short_text():
    assert truncate_utf8("short", 100) == "short"


async def test_get_entry_checks_expected_url():
    cache = make_cache()
    content = format_snapshot("Title", "https://a.example/post", "body")
    await cache.put("1", "https://a.example/post", content)
    assert await cache.get_entry("1", expected_url="https://a.example/post/") is not None
    assert await cache.get_entry("1", expected_url="https://b.example/") is None


async def test_get_entry_rejects_embedded_url_mismatch():
    cache = make_cache()
    content = format_snapshot("Title", "https://other.example/", "body")
    await cache.put("1", "https://a.example/", content)
    assert await cache.get_entry("1") is not None
    assert await cache.get_entry("1", expected_url="https://a.example") is None


async def test_navigation_to_restricted_page_invalidates():
    cache = make_cache()
    await cache.put("1", "https://a.example/", "body")
    await cache.on_navigation("1", "https://a.example")
    assert await cache.get("1") == "body"
    await cache.on_navigation("1", "chrome://newtab")
    assert await cache.get("1") is None


async def test_navigation_to_other_page_drops_stale_entry():
    cache = make_cache()
    await cache.put("1", "https://a.example/", "body")
    await cache.on_navigation("1", "https://b.example/")
    assert await cache.get("1") is None


async def test_sweep_removes_dead_contexts_and_is_idempotent():
    cache = make_cache()
    for cid in ("1", "2", "3"):
        await cache.put(cid, f"https://{cid}.example", f"page {cid}")
    removed = await cache.sweep(["2"])
    assert sorted(removed) == ["1", "3"]
    assert await cache.get("2") == "page 2"
    assert await cache.sweep(["2"]) == []


async def test_sweep_continues_after_single_failure():
    class FlakyCache(PageContextCache):
        async def invalidate(self, context_id):
            if context_id == "1":
                raise RuntimeError("boom")
            await super().invalidate(context_id)

    cache = FlakyCache(store=MemoryStateStore())
    for cid in ("1", "2", "3"):
        await cache.put(cid, f"https://{cid}.example", f"page {cid}")
    removed = await cache.sweep([])
    assert removed == ["2", "3"]
    assert await cache.get("1") == "page 1"


async def test_oldest_entries_are_evicted():
    cache = make_cache(max_entries=2)
    for cid in ("1", "2", "3"):
        await cache.put(cid, f"https://{cid}.example", f"page {cid}")
    assert await cache.get("1") is None
    assert await cache.get("3") == "page 3"


async def test_entries_persist_in_json_store():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d) / ".storage"
        await PageContextCache(store=JsonStateStore(root=root)).put(42, "https://a.example", "persisted")
        store = JsonStateStore(root=root)
        assert store.get(PAGE_MARKDOWN_KEY)["42"]["url"] == "https://a.example"
        assert await PageContextCache(store=store).get(42) == "persisted"


async def test_background_sweeper():
    cache = make_cache(sweep_interval=0.01)
    await cache.put("1", "https://a.example", "body")

    async def alive():
        return []

    cache.start_sweeper(alive)
    for _ in range(100):
        if await cache.get("1") is None:
            break
        await asyncio.sleep(0.01)
    await cache.stop_sweeper()
    assert await cache.get("1") is None
