"""Anthropic Messages API 适配器。

流式响应是带 event: 行的 SSE，只有 content_block_delta / text_delta
携带文本；error 事件会被转换为 ApiError。
"""

from typing import Any, AsyncIterator, Dict, List

from helix_core.domain.exceptions import ApiError
from helix_core.domain.models import MediaPart
from helix_core.providers.base import RemoteBackend, SessionHandle
from helix_core.providers.registry import ANTHROPIC_CONFIG

ANTHROPIC_VERSION = "2023-06-01"


class AnthropicBackend(RemoteBackend):
    name = "anthropic"

    def __init__(self, settings, max_tokens: int = 4096):
        base = getattr(settings, "anthropic_base_url", None) or ANTHROPIC_CONFIG.base_url
        super().__init__(settings, base_url=base, media=ANTHROPIC_CONFIG.media)
        self._max_tokens = max_tokens

    async def _stream(self, handle: SessionHandle, text: str, media: List[MediaPart]) -> AsyncIterator[str]:
        headers = {
            "x-api-key": handle.credential or "",
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }
        payload = self._build_payload(handle, text, media)
        async for event in self._sse_events(f"{self._base_url}/v1/messages", payload, headers):
            kind = event.get("type")
            if kind == "content_block_delta":
                delta = event.get("delta") or {}
                if delta.get("type") == "text_delta" and delta.get("text"):
                    yield delta["text"]
            elif kind == "error":
                err = event.get("error") or {}
                raise ApiError(code="API_ERROR", message=err.get("message") or "anthropic stream error", provider=self.name)

    def _build_payload(self, handle: SessionHandle, text: str, media: List[MediaPart]) -> Dict[str, Any]:
        content: List[Dict[str, Any]] = []
        for part in media:
            # Messages API 只接受图片
            if part.kind == "image":
                content.append(
                    {
                        "type": "image",
                        "source": {"type": "base64", "media_type": part.media_type, "data": part.base64_data},
                    }
                )
        content.append({"type": "text", "text": text})
        messages: List[Dict[str, Any]] = [{"role": "user", "content": content}]
        payload: Dict[str, Any] = {
            "model": handle.model,
            "max_tokens": self._max_tokens,
            "messages": messages,
            "stream": True,
        }
        if handle.options.system_prompt:
            payload["system"] = handle.options.system_prompt
        if handle.options.temperature is not None:
            payload["temperature"] = min(handle.options.temperature, 1.0)
        return payload
