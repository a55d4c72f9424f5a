"""页面上下文缓存。

浏览上下文 ID → 最近一次抽取的页面内容（{content, url, createdAt}），持久化在
StateStore 的 pageMarkdown 键下。

约束：
- 内部页面（chrome://、about: 等）永远不会被缓存。
- 内容按 UTF-8 字节数截断，截断后追加固定标记；读取时原样返回截断结果。
- 同一个键的 put 以最后一次写入为准。
- 上下文销毁、跳转到内部页面以及周期性清理时删除条目；单个条目删除失败不影响其他条目。
"""

import asyncio
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from helix_core.domain.conversation import StateStore
from helix_core.domain.models import CacheEntry
from helix_core.infrastructure.logging.logger import logger
from helix_core.infrastructure.storage.json_store import MemoryStateStore

PAGE_MARKDOWN_KEY = "pageMarkdown"
TRUNCATION_MARKER = "\n\n... [Content truncated for AI context]"
URL_LINE_PREFIX = "**URL:**"

AliveProvider = Callable[[], Awaitable[Iterable[str]]]


def normalize_url(url: str) -> str:
    return (url or "").strip().rstrip("/")


def format_snapshot(title: str, url: str, text: str) -> str:
    """把抽取结果 {title, url, text} 拼成带元信息头的文本。"""

    header = f"# {title.strip()}\n\n" if title and title.strip() else ""
    return f"{header}{URL_LINE_PREFIX} {url}\n\n---\n\n{text}"


def truncate_utf8(text: str, max_bytes: int, marker: str = TRUNCATION_MARKER) -> str:
    raw = text.encode("utf-8")
    if len(raw) <= max_bytes:
        return text
    # 截断处可能落在多字节字符中间，丢弃残缺的尾部
    return raw[:max_bytes].decode("utf-8", errors="ignore") + marker


class PageContextCache:
    def __init__(
        self,
        store: Optional[StateStore] = None,
        max_bytes: int = 60_000,
        max_entries: int = 100,
        restricted_schemes: Optional[Iterable[str]] = None,
        sweep_interval: float = 300.0,
    ):
        self._store = store if store is not None else MemoryStateStore()
        self._max_bytes = max_bytes
        self._max_entries = max_entries
        self._restricted = tuple(s.lower() for s in (restricted_schemes or ("chrome://", "chrome-extension://", "about:")))
        self._sweep_interval = sweep_interval
        self._sweeper: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, settings, store: Optional[StateStore] = None) -> "PageContextCache":
        return cls(
            store=store,
            max_bytes=settings.cache_max_bytes,
            max_entries=settings.cache_max_entries,
            restricted_schemes=settings.cache_restricted_schemes,
            sweep_interval=settings.cache_sweep_interval,
        )

    def is_restricted(self, url: Optional[str]) -> bool:
        return bool(url) and url.strip().lower().startswith(self._restricted)

    def _entries(self) -> Dict[str, dict]:
        data = self._store.get(PAGE_MARKDOWN_KEY)
        return data if isinstance(data, dict) else {}

    async def get(self, context_id: str) -> Optional[str]:
        entry = await self.get_entry(context_id)
        return entry.content if entry else None

    async def get_entry(self, context_id: str, expected_url: Optional[str] = None) -> Optional[CacheEntry]:
        """读取缓存条目；传入 expected_url 时，与条目 URL 或内容中的 URL 不一致则视为未命中。"""

        raw = self._entries().get(str(context_id))
        if not raw:
            return None
        entry = CacheEntry.from_dict(raw)
        if expected_url is None:
            return entry
        expected = normalize_url(expected_url)
        if normalize_url(entry.source_url) != expected:
            logger.info("page cache url mismatch", extra={"extra": {"context_id": str(context_id)}})
            return None
        embedded = _embedded_url(entry.content)
        if embedded is not None and normalize_url(embedded) != expected:
            logger.info("page cache content mismatch", extra={"extra": {"context_id": str(context_id)}})
            return None
        return entry

    async def put(self, context_id: str, url: Optional[str], text: Optional[str]) -> None:
        if not url or not text or self.is_restricted(url):
            return
        entry = CacheEntry(content=truncate_utf8(text, self._max_bytes), source_url=url)
        entries = self._entries()
        entries[str(context_id)] = entry.to_dict()
        if len(entries) > self._max_entries:
            ordered = sorted(entries.items(), key=lambda kv: kv[1].get("createdAt") or 0.0)
            entries = dict(ordered[-self._max_entries:])
        self._store.set(PAGE_MARKDOWN_KEY, entries)

    async def invalidate(self, context_id: str) -> None:
        entries = self._entries()
        if entries.pop(str(context_id), None) is not None:
            self._store.set(PAGE_MARKDOWN_KEY, entries)

    async def on_navigation(self, context_id: str, url: Optional[str]) -> None:
        """上下文跳转：目标是内部页面或与缓存 URL 不同则删除旧条目。"""

        if self.is_restricted(url):
            await self.invalidate(context_id)
            return
        raw = self._entries().get(str(context_id))
        if raw and normalize_url(raw.get("url") or "") != normalize_url(url or ""):
            await self.invalidate(context_id)

    async def sweep(self, alive_ids: Iterable[str]) -> List[str]:
        """删除不再存在的上下文的条目，返回删除成功的 ID 列表。可重复执行。"""

        alive = {str(i) for i in alive_ids}
        removed: List[str] = []
        for context_id in list(self._entries()):
            if context_id in alive:
                continue
            try:
                await self.invalidate(context_id)
                removed.append(context_id)
            except Exception:
                logger.warning(
                    "page cache sweep failed", exc_info=True, extra={"extra": {"context_id": context_id}}
                )
        if removed:
            logger.info("page cache sweep", extra={"extra": {"removed": len(removed)}})
        return removed

    def start_sweeper(self, alive_provider: AliveProvider) -> asyncio.Task:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop(alive_provider))
        return self._sweeper

    async def stop_sweeper(self) -> None:
        task, self._sweeper = self._sweeper, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _sweep_loop(self, alive_provider: AliveProvider) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                await self.sweep(await alive_provider())
            except Exception:
                logger.warning("page cache sweep round failed", exc_info=True)


def _embedded_url(content: str) -> Optional[str]:
    for line in content.splitlines()[:10]:
        stripped = line.strip()
        if stripped.startswith(URL_LINE_PREFIX):
            return stripped[len(URL_LINE_PREFIX):].strip()
    return None
