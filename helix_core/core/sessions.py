"""会话管理：对话 ID → 本地后端会话句柄。

- 每个对话最多保留一个活跃会话，首次使用时惰性创建。
- 创建时若带可选输入能力（图片/音频）被后端拒绝，按 RETRY_POLICY 去掉可选能力重试。
- destroy 尽力而为：失败只记日志，句柄总会被清除。
- ephemeral() 为多后端对比创建一次性会话，退出上下文即销毁。
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, List, Mapping, Optional, Type, Union

from helix_core.domain.exceptions import RETRY_POLICY, BusinessError, retries_for
from helix_core.domain.models import BackendConfig, MediaPart
from helix_core.infrastructure.logging.logger import logger
from helix_core.providers.base import BackendCapability, SessionHandle, SessionOptions

BackendFactory = Callable[[str], BackendCapability]


class SessionManager:
    def __init__(
        self,
        backend_factory: BackendFactory,
        retry_policy: Optional[Mapping[Type[BusinessError], int]] = None,
    ):
        self._factory = backend_factory
        self._retry_policy = dict(RETRY_POLICY if retry_policy is None else retry_policy)
        self._backends: Dict[str, BackendCapability] = {}
        self._sessions: Dict[str, SessionHandle] = {}
        self._owners: Dict[str, BackendCapability] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def backend_for(self, provider_id: str) -> BackendCapability:
        key = (provider_id or "local").lower()
        backend = self._backends.get(key)
        if backend is None:
            backend = self._factory(key)
            self._backends[key] = backend
        return backend

    def has_session(self, conversation_id: str = "default") -> bool:
        handle = self._sessions.get(conversation_id)
        return handle is not None and not handle.destroyed

    def session_for(self, conversation_id: str = "default") -> Optional[SessionHandle]:
        return self._sessions.get(conversation_id)

    async def get_or_create(
        self,
        config: BackendConfig,
        options: Optional[SessionOptions] = None,
        conversation_id: str = "default",
    ) -> SessionHandle:
        lock = self._locks.setdefault(conversation_id, asyncio.Lock())
        async with lock:
            handle = self._sessions.get(conversation_id)
            if handle is not None and self._reusable(handle, config, options):
                return handle
            if handle is not None:
                await self.destroy(conversation_id)
            handle = await self._create(config, options)
            self._sessions[conversation_id] = handle
            logger.info(
                "session created",
                extra={"extra": {"conversation_id": conversation_id, "backend": handle.backend, "model": handle.model}},
            )
            return handle

    @staticmethod
    def _reusable(handle: SessionHandle, config: BackendConfig, options: Optional[SessionOptions]) -> bool:
        if handle.destroyed or handle.backend != (config.provider_id or "local").lower():
            return False
        if config.model_id and handle.model != config.model_id:
            return False
        # 降级过的会话不会因为同样的可选输入再次重建
        requested = set(handle.meta.get("requested_inputs", handle.options.expected_inputs))
        return set(options.expected_inputs if options else []) <= requested

    async def _create(self, config: BackendConfig, options: Optional[SessionOptions]) -> SessionHandle:
        backend = self.backend_for(config.provider_id)
        options = options or SessionOptions()
        requested = list(options.expected_inputs)
        remaining: Optional[int] = None
        while True:
            try:
                handle = await backend.create(config, options)
                break
            except BusinessError as exc:
                if remaining is None:
                    remaining = retries_for(exc, self._retry_policy)
                if remaining <= 0 or not options.expected_inputs:
                    raise
                remaining -= 1
                logger.info(
                    "session capability retry",
                    extra={"extra": {"backend": config.provider_id, "dropped": list(options.expected_inputs)}},
                )
                options = options.without_optional_inputs()
        handle.meta["requested_inputs"] = requested
        self._owners[handle.id] = backend
        return handle

    async def destroy(self, target: Union[SessionHandle, str]) -> None:
        """销毁会话。失败只记录日志，不抛出。"""

        if isinstance(target, SessionHandle):
            handle: Optional[SessionHandle] = target
            for cid, h in list(self._sessions.items()):
                if h is target:
                    del self._sessions[cid]
        else:
            handle = self._sessions.pop(target, None)
        if handle is None:
            return
        backend = self._owners.pop(handle.id, None)
        try:
            if backend is not None:
                await backend.destroy(handle)
        except Exception:
            logger.warning(
                "session destroy failed", exc_info=True, extra={"extra": {"session": handle.id, "backend": handle.backend}}
            )
        finally:
            handle.destroyed = True

    async def destroy_all(self) -> None:
        for cid in list(self._sessions):
            await self.destroy(cid)

    async def append(self, handle: SessionHandle, parts: List[MediaPart]) -> None:
        await self._owner(handle).append(handle, parts)

    def prompt_streaming(self, handle: SessionHandle, text: str) -> AsyncIterator[str]:
        return self._owner(handle).prompt_streaming(handle, text)

    def _owner(self, handle: SessionHandle) -> BackendCapability:
        backend = self._owners.get(handle.id)
        if backend is None:
            raise BusinessError(code="SESSION_NOT_FOUND", message=f"Unknown session {handle.id}")
        return backend

    @asynccontextmanager
    async def ephemeral(
        self, config: BackendConfig, options: Optional[SessionOptions] = None
    ) -> AsyncIterator[SessionHandle]:
        handle = await self._create(config, options)
        try:
            yield handle
        finally:
            await self.destroy(handle)

    async def stream_ephemeral(
        self,
        config: BackendConfig,
        text: str,
        options: Optional[SessionOptions] = None,
        media: Optional[List[MediaPart]] = None,
    ) -> AsyncIterator[str]:
        """在一次性会话中流式执行一次请求，流结束或被关闭时销毁会话。"""

        async with self.ephemeral(config, options) as handle:
            await self.append_supported(handle, media or [])
            async for piece in self.prompt_streaming(handle, text):
                yield piece

    async def append_supported(self, handle: SessionHandle, media: List[MediaPart]) -> List[MediaPart]:
        """只追加会话协商成功的媒体类型，返回实际追加的部分。"""

        accepted = [p for p in media if p.kind in handle.options.expected_inputs]
        if len(accepted) < len(media):
            logger.info(
                "media omitted for session",
                extra={"extra": {"backend": handle.backend, "omitted": len(media) - len(accepted)}},
            )
        if accepted:
            await self.append(handle, accepted)
        return accepted
