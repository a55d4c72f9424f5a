"""本地模型适配器（Ollama 兼容 HTTP 接口）。

与远程 Provider 不同，本地会话是有状态的：SessionHandle.history 保存多轮对话，
每次 prompt 结束后（包括被取消或中途出错、但已收到内容的回合）追加用户与助手消息。

- availability(): /api/tags 中存在模型 → ready；服务在线但模型缺失 → 触发后台
  下载并返回 downloading；服务不可达 → unavailable。
- create(): 通过 /api/show 探测 capabilities，请求的图片/音频输入不被支持时抛
  CapabilityError，由 SessionManager 决定是否降级重试。
- pull(): 流式读取 /api/pull 的下载进度并写入 DownloadMonitor。
"""

import asyncio
import json
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from helix_core.domain.exceptions import ApiError, BackendUnavailableError, CapabilityError, NetworkError
from helix_core.domain.models import BackendConfig, BackendKind, MediaPart
from helix_core.infrastructure.logging.logger import logger
from helix_core.providers.base import Availability, SessionHandle, SessionOptions, http_error

# 请求的输入类型 → 模型需要声明的 capability
_REQUIRED_CAPABILITY = {"image": "vision", "audio": "audio"}


class LocalBackend:
    name = "local"
    kind: BackendKind = "local"

    def __init__(self, settings, monitor=None):
        self._settings = settings
        self._base_url = (getattr(settings, "local_base_url", None) or "http://127.0.0.1:11434").rstrip("/")
        self._default_model = getattr(settings, "local_model", None) or "llama3.2"
        self._monitor = monitor
        self._pull_tasks: Dict[str, asyncio.Task] = {}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False)

    async def availability(self, model: Optional[str] = None) -> Availability:
        model = model or self._default_model
        try:
            async with self._client() as client:
                resp = await client.get(f"{self._base_url}/api/tags")
        except httpx.RequestError:
            return "unavailable"
        if resp.status_code >= 400:
            return "unavailable"
        names = {m.get("name") or m.get("model") for m in (resp.json().get("models") or [])}
        if model in names or f"{model}:latest" in names:
            return "ready"
        self.start_pull(model)
        return "downloading"

    def start_pull(self, model: Optional[str] = None) -> asyncio.Task:
        """在后台下载模型；同一模型只会有一个下载任务。"""

        model = model or self._default_model
        task = self._pull_tasks.get(model)
        if task is None or task.done():
            task = asyncio.get_running_loop().create_task(self._pull_quietly(model))
            self._pull_tasks[model] = task
        return task

    async def _pull_quietly(self, model: str) -> None:
        try:
            await self.pull(model)
        except Exception:
            logger.warning("local model pull failed", exc_info=True, extra={"extra": {"model": model}})

    async def pull(self, model: Optional[str] = None) -> None:
        model = model or self._default_model
        logger.info("local model pull", extra={"extra": {"model": model}})
        async for event in self._ndjson("/api/pull", {"model": model, "stream": True}):
            total = event.get("total")
            completed = event.get("completed")
            if self._monitor is not None and total:
                self._monitor.record(model, (completed or 0) / total)
            if event.get("status") == "success" and self._monitor is not None:
                self._monitor.record(model, 1.0)

    async def capabilities(self, model: str) -> List[str]:
        try:
            async with self._client() as client:
                resp = await client.post(f"{self._base_url}/api/show", json={"model": model})
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e) or e.__class__.__name__, provider=self.name)
        if resp.status_code >= 400:
            raise http_error(self.name, resp.status_code, resp.text)
        return list(resp.json().get("capabilities") or [])

    async def create(self, config: BackendConfig, options: Optional[SessionOptions] = None) -> SessionHandle:
        options = options or SessionOptions()
        model = config.model_id or self._default_model
        state = await self.availability(model)
        if state == "unavailable":
            raise BackendUnavailableError(
                code="BACKEND_UNAVAILABLE", message="Local model service is not reachable", provider=self.name
            )
        if state == "downloading":
            raise BackendUnavailableError(
                code="MODEL_DOWNLOADING",
                message=f"Local model {model} is still downloading, please try again shortly",
                provider=self.name,
            )
        if options.expected_inputs:
            caps = await self.capabilities(model)
            missing = [k for k in options.expected_inputs if _REQUIRED_CAPABILITY.get(k) not in caps]
            if missing:
                raise CapabilityError(
                    code="CAPABILITY_UNAVAILABLE",
                    message=f"Local model {model} does not accept {', '.join(missing)} input",
                    provider=self.name,
                )
        handle = SessionHandle.new(self.name, model, options)
        if options.system_prompt:
            handle.history.append({"role": "system", "content": options.system_prompt})
        return handle

    async def prompt_streaming(self, handle: SessionHandle, text: str) -> AsyncIterator[str]:
        if handle.destroyed:
            raise ApiError(code="SESSION_DESTROYED", message="session has been destroyed", provider=self.name)
        user_msg = self._user_message(text, handle.take_media())
        payload: Dict[str, Any] = {
            "model": handle.model,
            "messages": [*handle.history, user_msg],
            "stream": True,
        }
        options: Dict[str, Any] = {}
        if handle.options.temperature is not None:
            options["temperature"] = handle.options.temperature
        if handle.options.top_k is not None:
            options["top_k"] = handle.options.top_k
        if options:
            payload["options"] = options
        pieces: List[str] = []
        try:
            async for event in self._ndjson("/api/chat", payload):
                content = (event.get("message") or {}).get("content")
                if content:
                    pieces.append(content)
                    yield content
        finally:
            # 被取消或中途出错的回合也记入历史，只要已经收到内容
            if pieces and not handle.destroyed:
                handle.history.append(user_msg)
                handle.history.append({"role": "assistant", "content": "".join(pieces)})

    async def prompt(self, handle: SessionHandle, text: str) -> str:
        parts: List[str] = []
        async for piece in self.prompt_streaming(handle, text):
            parts.append(piece)
        return "".join(parts)

    async def append(self, handle: SessionHandle, parts: List[MediaPart]) -> None:
        handle.pending_media.extend(parts)

    async def destroy(self, handle: SessionHandle) -> None:
        handle.destroyed = True
        handle.history = []
        handle.pending_media = []

    @staticmethod
    def _user_message(text: str, media: List[MediaPart]) -> Dict[str, Any]:
        msg: Dict[str, Any] = {"role": "user", "content": text}
        images = [p.base64_data for p in media if p.kind == "image"]
        audio = [p.base64_data for p in media if p.kind == "audio"]
        if images:
            msg["images"] = images
        if audio:
            msg["audio"] = audio
        return msg

    async def _ndjson(self, path: str, payload: Dict[str, Any]) -> AsyncIterator[Dict[str, Any]]:
        """POST 并逐行解析 NDJSON 响应。"""

        try:
            async with self._client() as client:
                async with client.stream("POST", f"{self._base_url}{path}", json=payload) as resp:
                    if resp.status_code >= 400:
                        body = (await resp.aread()).decode("utf-8", errors="replace")
                        raise http_error(self.name, resp.status_code, body)
                    async for line in resp.aiter_lines():
                        if not line.strip():
                            continue
                        try:
                            event = json.loads(line)
                        except json.JSONDecodeError:
                            continue
                        if event.get("error"):
                            raise ApiError(code="API_ERROR", message=str(event["error"]), provider=self.name)
                        yield event
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e) or e.__class__.__name__, provider=self.name)
