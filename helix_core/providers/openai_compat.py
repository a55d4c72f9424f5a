"""OpenAI 兼容接口的 Provider 适配器（openai / glm / kimi）。

本模块负责：

1. 把系统提示词、用户文本与附件转换为 chat/completions 的 messages 格式。
2. 以 stream=True 调用接口，逐条解析 SSE 增量。
3. 只把 choices[].delta.content 中的文本交给编排层。

图片以 image_url（data URL）发送，音频以 input_audio 发送。
"""

from typing import Any, AsyncIterator, Dict, List

from helix_core.domain.models import MediaPart
from helix_core.providers.base import RemoteBackend, SessionHandle
from helix_core.providers.registry import get_provider_config


class OpenAICompatibleBackend(RemoteBackend):
    """OpenAI chat/completions 协议的客户端实现。"""

    def __init__(self, settings, provider: str = "openai"):
        cfg = get_provider_config(provider)
        base = settings.base_url_for(provider) if hasattr(settings, "base_url_for") else None
        super().__init__(settings, base_url=base or cfg.base_url, media=cfg.media)
        self.name = cfg.name

    async def _stream(self, handle: SessionHandle, text: str, media: List[MediaPart]) -> AsyncIterator[str]:
        payload = self._build_payload(handle, text, media)
        headers = {
            "Authorization": f"Bearer {handle.credential}",
            "Content-Type": "application/json",
        }
        async for event in self._sse_events(f"{self._base_url}/chat/completions", payload, headers):
            for choice in event.get("choices") or []:
                delta = choice.get("delta") or {}
                content = delta.get("content")
                if isinstance(content, str) and content:
                    yield content

    def _build_payload(self, handle: SessionHandle, text: str, media: List[MediaPart]) -> Dict[str, Any]:
        messages: List[Dict[str, Any]] = []
        if handle.options.system_prompt:
            messages.append({"role": "system", "content": handle.options.system_prompt})
        messages.append({"role": "user", "content": self._user_content(text, media)})
        payload: Dict[str, Any] = {
            "model": handle.model,
            "messages": messages,
            "stream": True,
        }
        if handle.options.temperature is not None:
            payload["temperature"] = handle.options.temperature
        return payload

    @staticmethod
    def _user_content(text: str, media: List[MediaPart]) -> Any:
        if not media:
            return text
        parts: List[Dict[str, Any]] = [{"type": "text", "text": text}]
        for part in media:
            if part.kind == "image":
                parts.append({"type": "image_url", "image_url": {"url": part.as_data_url()}})
            else:
                fmt = part.media_type.split("/", 1)[-1]
                parts.append({"type": "input_audio", "input_audio": {"data": part.base64_data, "format": fmt}})
        return parts
