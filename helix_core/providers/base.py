"""后端能力（BackendCapability）抽象接口。

编排层不直接依赖具体厂商的 HTTP 接口，而是依赖此协议：

- 每种后端实现一个 BackendCapability（本地模型、OpenAI 兼容接口、Anthropic、Gemini）。
- 负责：创建会话、流式输出文本增量、追加图片/音频、销毁会话。

远程 Provider 对每次调用都是无状态的：create 只记录系统提示词与凭据；
本地模型会在 SessionHandle 中维护多轮历史。
"""

import json
from dataclasses import dataclass, field, replace
from typing import Any, AsyncIterator, Dict, List, Literal, Optional, Protocol
from uuid import uuid4

import httpx

from helix_core.domain.exceptions import (
    ApiError,
    BusinessError,
    CapabilityError,
    MissingCredentialError,
    NetworkError,
    RateLimitError,
)
from helix_core.domain.models import BackendConfig, BackendKind, MediaKind, MediaPart
from helix_core.infrastructure.logging.logger import logger

Availability = Literal["ready", "downloading", "unavailable"]


@dataclass
class SessionOptions:
    """创建会话时的配置。

    expected_inputs 是可选能力（image / audio）；后端拒绝时 SessionManager
    会去掉它们重试一次。
    """

    system_prompt: Optional[str] = None
    temperature: Optional[float] = None
    top_k: Optional[int] = None
    expected_inputs: List[MediaKind] = field(default_factory=list)
    language: Optional[str] = None

    def without_optional_inputs(self) -> "SessionOptions":
        return replace(self, expected_inputs=[])


@dataclass
class SessionHandle:
    id: str
    backend: str
    model: str
    options: SessionOptions = field(default_factory=SessionOptions)
    credential: Optional[str] = field(default=None, repr=False)
    history: List[Dict[str, Any]] = field(default_factory=list)
    pending_media: List[MediaPart] = field(default_factory=list)
    destroyed: bool = False
    meta: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def new(cls, backend: str, model: str, options: SessionOptions, credential: Optional[str] = None) -> "SessionHandle":
        return cls(id=f"s-{uuid4().hex}", backend=backend, model=model, options=options, credential=credential)

    def take_media(self) -> List[MediaPart]:
        parts, self.pending_media = self.pending_media, []
        return parts


class BackendCapability(Protocol):
    """文本生成后端协议。

    实现者需要提供：
    - name / kind: 后端名称与类型（local / remote）。
    - availability(): ready / downloading / unavailable。
    - create(config, options): 创建会话句柄；能力协商失败时抛 CapabilityError。
    - prompt_streaming(handle, text): 逐段产出文本增量的异步迭代器。
    - prompt(handle, text): 收集完整输出。
    - append(handle, parts): 追加图片/音频，随下一次 prompt 发送。
    - destroy(handle): 释放会话。
    """

    name: str
    kind: BackendKind

    async def availability(self) -> Availability:
        ...

    async def create(self, config: BackendConfig, options: Optional[SessionOptions] = None) -> SessionHandle:
        ...

    def prompt_streaming(self, handle: SessionHandle, text: str) -> AsyncIterator[str]:
        ...

    async def prompt(self, handle: SessionHandle, text: str) -> str:
        ...

    async def append(self, handle: SessionHandle, parts: List[MediaPart]) -> None:
        ...

    async def destroy(self, handle: SessionHandle) -> None:
        ...


_CAPABILITY_HINTS = ("image", "audio", "modalit", "not supported", "unsupported")


def http_error(provider: str, status: int, body: str) -> BusinessError:
    """把 HTTP 错误响应映射为业务异常。"""

    if status == 429:
        return RateLimitError(code="RATE_LIMIT", message=f"{provider} rate limit", http_status=429, provider=provider)
    lowered = body.lower()
    if status in (400, 415, 422) and any(hint in lowered for hint in _CAPABILITY_HINTS):
        return CapabilityError(code="CAPABILITY_UNAVAILABLE", message=body[:500], http_status=status, provider=provider)
    return ApiError(code="API_ERROR", message=body[:500] or f"HTTP {status}", http_status=status, provider=provider)


class RemoteBackend:
    """远程 Provider 的公共实现：会话无状态，流式接口走 SSE。

    子类实现 _stream(handle, text, media) 即可。
    """

    name = "remote"
    kind: BackendKind = "remote"

    def __init__(self, settings, base_url: Optional[str] = None, media: tuple = ()):
        self._settings = settings
        self._base_url = (base_url or "").rstrip("/")
        self._media = tuple(media)

    async def availability(self) -> Availability:
        return "ready"

    async def create(self, config: BackendConfig, options: Optional[SessionOptions] = None) -> SessionHandle:
        if not config.credential:
            raise MissingCredentialError(
                code="MISSING_API_KEY",
                message=f"Missing provider credentials for {self.name}",
                provider=self.name,
            )
        options = options or SessionOptions()
        unsupported = [kind for kind in options.expected_inputs if kind not in self._media]
        if unsupported:
            raise CapabilityError(
                code="CAPABILITY_UNAVAILABLE",
                message=f"{self.name}/{config.model_id} does not accept {', '.join(unsupported)} input",
                provider=self.name,
            )
        return SessionHandle.new(self.name, config.model_id, options, credential=config.credential)

    async def prompt_streaming(self, handle: SessionHandle, text: str) -> AsyncIterator[str]:
        if handle.destroyed:
            raise ApiError(code="SESSION_DESTROYED", message="session has been destroyed", provider=self.name)
        media = handle.take_media()
        async for piece in self._stream(handle, text, media):
            if piece:
                yield piece

    async def prompt(self, handle: SessionHandle, text: str) -> str:
        parts: List[str] = []
        async for piece in self.prompt_streaming(handle, text):
            parts.append(piece)
        return "".join(parts)

    async def append(self, handle: SessionHandle, parts: List[MediaPart]) -> None:
        handle.pending_media.extend(parts)

    async def destroy(self, handle: SessionHandle) -> None:
        handle.destroyed = True
        handle.pending_media = []

    def _stream(self, handle: SessionHandle, text: str, media: List[MediaPart]) -> AsyncIterator[str]:
        raise NotImplementedError

    async def _sse_events(self, url: str, payload: Dict[str, Any], headers: Dict[str, str]) -> AsyncIterator[Dict[str, Any]]:
        """POST 并逐条解析 SSE 中的 data: JSON 事件。"""

        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                async with client.stream("POST", url, json=payload, headers=headers) as resp:
                    if resp.status_code >= 400:
                        body = (await resp.aread()).decode("utf-8", errors="replace")
                        logger.warning(
                            "provider http error",
                            extra={"extra": {"provider": self.name, "status": resp.status_code}},
                        )
                        raise http_error(self.name, resp.status_code, body)
                    async for line in resp.aiter_lines():
                        if not line or line.startswith((":", "event:")):
                            continue
                        data_str = line[5:].strip() if line.startswith("data:") else line.strip()
                        if not data_str or data_str == "[DONE]":
                            continue
                        try:
                            event = json.loads(data_str)
                        except json.JSONDecodeError:
                            continue
                        if isinstance(event, dict):
                            yield event
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e) or e.__class__.__name__, provider=self.name)
