"""Gemini generateContent 流式适配器（streamGenerateContent?alt=sse）。"""

from typing import Any, AsyncIterator, Dict, List

from helix_core.domain.models import MediaPart
from helix_core.providers.base import RemoteBackend, SessionHandle
from helix_core.providers.registry import GEMINI_CONFIG


class GeminiBackend(RemoteBackend):
    name = "gemini"

    def __init__(self, settings):
        base = getattr(settings, "gemini_base_url", None) or GEMINI_CONFIG.base_url
        super().__init__(settings, base_url=base, media=GEMINI_CONFIG.media)

    async def _stream(self, handle: SessionHandle, text: str, media: List[MediaPart]) -> AsyncIterator[str]:
        url = f"{self._base_url}/v1beta/models/{handle.model}:streamGenerateContent?alt=sse"
        headers = {
            "x-goog-api-key": handle.credential or "",
            "Content-Type": "application/json",
        }
        async for event in self._sse_events(url, self._build_payload(handle, text, media), headers):
            for candidate in event.get("candidates") or []:
                for part in (candidate.get("content") or {}).get("parts") or []:
                    if part.get("text"):
                        yield part["text"]

    def _build_payload(self, handle: SessionHandle, text: str, media: List[MediaPart]) -> Dict[str, Any]:
        parts: List[Dict[str, Any]] = [{"text": text}]
        for part in media:
            parts.append({"inlineData": {"mimeType": part.media_type, "data": part.base64_data}})
        contents: List[Dict[str, Any]] = [{"role": "user", "parts": parts}]
        payload: Dict[str, Any] = {"contents": contents}
        if handle.options.system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": handle.options.system_prompt}]}
        config: Dict[str, Any] = {}
        if handle.options.temperature is not None:
            config["temperature"] = handle.options.temperature
        if handle.options.top_k is not None:
            config["topK"] = handle.options.top_k
        if config:
            payload["generationConfig"] = config
        return payload
