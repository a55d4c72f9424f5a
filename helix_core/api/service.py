"""宿主消息接口。

宿主（浏览器扩展的后台页 / 侧边栏）通过请求-响应消息调用核心：
请求类型是一个封闭枚举，响应统一为 {success, error, code, data}。
handle() 永远不会抛出异常，所有失败都编码在响应里；控制类请求有单次调用超时。
"""

import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from helix_core.agents.chat_agent import AssistantReply, ChatAssistant
from helix_core.config.settings import settings
from helix_core.core.credentials import ChainedCredentialVault, MemoryCredentialVault, SettingsCredentialVault
from helix_core.core.fanout import FanoutCoordinator, FanoutRequest
from helix_core.core.monitor import DownloadMonitor
from helix_core.core.page_cache import AliveProvider, PageContextCache, format_snapshot
from helix_core.core.resolver import BackendResolver
from helix_core.core.sessions import SessionManager
from helix_core.core.suggestions import SuggestionGenerator
from helix_core.domain.exceptions import BusinessError, ValidationError
from helix_core.domain.models import Intent, MediaPart, UserConfig, WritingOptions
from helix_core.infrastructure.logging.logger import logger
from helix_core.infrastructure.storage.json_store import JsonStateStore
from helix_core.prompts import load_system_prompt, render_prompt
from helix_core.providers import create_backend


class RequestKind(str, Enum):
    SUBMIT_PROMPT = "submit-prompt"
    SUMMARIZE = "summarize"
    TRANSLATE = "translate"
    WRITE = "write"
    REWRITE = "rewrite"
    PROOFREAD = "proofread"
    STOP = "stop"
    CLEAR = "clear"
    FANOUT = "fanout"
    STATUS = "status"


# 这些请求会驱动一次完整的流式调用，由编排层自己的活性超时约束
STREAMING_KINDS = {
    RequestKind.SUBMIT_PROMPT,
    RequestKind.SUMMARIZE,
    RequestKind.TRANSLATE,
    RequestKind.WRITE,
    RequestKind.REWRITE,
    RequestKind.PROOFREAD,
    RequestKind.FANOUT,
}

_INTENT_KINDS = {
    RequestKind.SUMMARIZE: Intent.SUMMARIZE,
    RequestKind.TRANSLATE: Intent.TRANSLATE,
    RequestKind.WRITE: Intent.WRITE,
    RequestKind.REWRITE: Intent.REWRITE,
    RequestKind.PROOFREAD: Intent.PROOFREAD,
}


class Attachment(BaseModel):
    kind: str
    data: str
    mime_type: Optional[str] = None

    def to_part(self) -> MediaPart:
        if self.kind not in ("image", "audio"):
            raise ValidationError(code="INVALID_ATTACHMENT", message=f"Unsupported attachment kind: {self.kind}")
        return MediaPart(kind=self.kind, data=self.data, mime_type=self.mime_type)


class HostRequest(BaseModel):
    kind: str
    text: str = ""
    intent: Optional[str] = None
    attachments: List[Attachment] = Field(default_factory=list)
    target_language: Optional[str] = None
    source_language: Optional[str] = None
    options: Dict[str, Any] = Field(default_factory=dict)
    backend_ids: Optional[List[str]] = None
    context_id: Optional[str] = None
    url: Optional[str] = None
    timeout: Optional[float] = Field(default=None, gt=0)


class HostResponse(BaseModel):
    success: bool
    error: Optional[str] = None
    code: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def failure(cls, message: str, code: str, **data: Any) -> "HostResponse":
        return cls(success=False, error=message, code=code, data=data)

    @classmethod
    def from_reply(cls, reply: AssistantReply) -> "HostResponse":
        return cls(
            success=reply.success,
            error=None if reply.success else reply.outcome.error,
            code=None if reply.success else reply.outcome.error_code,
            data=reply.to_dict(),
        )


Handler = Callable[[HostRequest], Awaitable[HostResponse]]


class AssistantService:
    def __init__(
        self,
        assistant: ChatAssistant,
        fanout: FanoutCoordinator,
        cache: PageContextCache,
        app_settings=None,
        vault: Optional[MemoryCredentialVault] = None,
    ):
        self.assistant = assistant
        self.fanout = fanout
        self.cache = cache
        self._settings = app_settings or settings
        self._vault = vault
        self._handlers: Dict[RequestKind, Handler] = {
            RequestKind.SUBMIT_PROMPT: self._submit_prompt,
            RequestKind.SUMMARIZE: self._run_intent,
            RequestKind.TRANSLATE: self._run_intent,
            RequestKind.WRITE: self._run_intent,
            RequestKind.REWRITE: self._run_intent,
            RequestKind.PROOFREAD: self._run_intent,
            RequestKind.STOP: self._stop,
            RequestKind.CLEAR: self._clear,
            RequestKind.FANOUT: self._fanout,
            RequestKind.STATUS: self._status,
        }

    async def handle(self, request: Union[HostRequest, Mapping[str, Any]]) -> HostResponse:
        """处理一条宿主消息，永不抛出。"""

        try:
            req = request if isinstance(request, HostRequest) else HostRequest.model_validate(request)
        except PydanticValidationError as e:
            return HostResponse.failure(f"Invalid request: {e.error_count()} validation error(s)", "INVALID_REQUEST")
        try:
            kind = RequestKind(req.kind)
        except ValueError:
            return HostResponse.failure(f"Unknown request kind: {req.kind}", "UNKNOWN_REQUEST")

        timeout = req.timeout
        if timeout is None and kind not in STREAMING_KINDS:
            timeout = self._settings.host_call_timeout
        try:
            if req.context_id is not None:
                self.assistant.set_page_context(req.context_id, req.url)
            call = self._handlers[kind](req)
            if timeout:
                return await asyncio.wait_for(call, timeout)
            return await call
        except asyncio.TimeoutError:
            logger.warning("host call timed out", extra={"extra": {"kind": kind.value, "timeout": timeout}})
            return HostResponse.failure(f"Request timed out after {timeout:g}s", "HOST_TIMEOUT")
        except BusinessError as e:
            logger.warning("host call failed", extra={"extra": {"kind": kind.value, "code": e.code}})
            return HostResponse.failure(e.message, e.code, **e.extra)
        except Exception as e:
            logger.error("host call crashed", exc_info=True, extra={"extra": {"kind": kind.value}})
            return HostResponse.failure(str(e) or e.__class__.__name__, "INTERNAL_ERROR")

    # ---- 生命周期 ----

    def start(self, alive_provider: AliveProvider) -> None:
        """启动后台任务：按 cache_sweep_interval 周期清理已关闭上下文的页面缓存。

        alive_provider 由宿主提供，返回当前仍然存在的浏览上下文 ID。
        """

        self.cache.start_sweeper(alive_provider)
        logger.info("assistant service started")

    async def aclose(self) -> None:
        await self.cache.stop_sweeper()
        self.fanout.cancel()
        await self.assistant.close()
        logger.info("assistant service closed")

    # ---- 宿主回调（非消息协议） ----

    def set_user_config(self, data: Optional[Mapping[str, Any]]) -> None:
        self.assistant.user_config = UserConfig.from_storage(dict(data or {}))

    def store_credential(self, provider_id: str, secret: Optional[str]) -> None:
        if self._vault is None:
            raise BusinessError(code="VAULT_READONLY", message="No writable credential vault configured")
        self._vault.store(provider_id, secret)

    async def on_page_extracted(self, context_id: str, title: str, url: str, text: str) -> None:
        await self.cache.put(context_id, url, format_snapshot(title, url, text))

    async def on_navigation(self, context_id: str, url: Optional[str]) -> None:
        await self.cache.on_navigation(context_id, url)

    async def on_context_closed(self, context_id: str) -> None:
        await self.cache.invalidate(context_id)

    # ---- 处理函数 ----

    def _attachments(self, req: HostRequest) -> List[MediaPart]:
        return [a.to_part() for a in req.attachments]

    async def _submit_prompt(self, req: HostRequest) -> HostResponse:
        intent = Intent.PROMPT
        if req.intent:
            try:
                intent = Intent.parse(req.intent)
            except ValueError:
                logger.warning("invalid intent, falling back to prompt", extra={"extra": {"intent": req.intent}})
        if intent == Intent.PROMPT:
            reply = await self.assistant.send_prompt(req.text, self._attachments(req))
        else:
            reply = await self._dispatch_intent(intent, req)
        return HostResponse.from_reply(reply)

    async def _run_intent(self, req: HostRequest) -> HostResponse:
        intent = _INTENT_KINDS[RequestKind(req.kind)]
        return HostResponse.from_reply(await self._dispatch_intent(intent, req))

    async def _dispatch_intent(self, intent: Intent, req: HostRequest) -> AssistantReply:
        opts = req.options
        if intent == Intent.SUMMARIZE:
            return await self.assistant.summarize(
                req.text,
                summary_type=opts.get("type") or "key points",
                length=opts.get("length") or "medium",
                output_language=opts.get("outputLanguage") or "English",
                shared_context=opts.get("sharedContext"),
            )
        if intent == Intent.TRANSLATE:
            if not req.target_language:
                raise ValidationError(code="INVALID_REQUEST", message="target_language is required for translate")
            return await self.assistant.translate(req.text, req.target_language, req.source_language)
        if intent == Intent.WRITE:
            return await self.assistant.write(req.text, WritingOptions.from_mapping(opts))
        if intent == Intent.REWRITE:
            return await self.assistant.rewrite(req.text, WritingOptions.from_mapping(opts))
        return await self.assistant.proofread(req.text)

    async def _stop(self, req: HostRequest) -> HostResponse:
        stopped = self.assistant.stop()
        backend_id = req.options.get("backend_id") or None
        if backend_id is not None or req.options.get("fanout"):
            self.fanout.cancel(backend_id)
        return HostResponse(success=True, data={"stopped": stopped})

    async def _clear(self, req: HostRequest) -> HostResponse:
        await self.assistant.clear()
        self.fanout.clear()
        return HostResponse(success=True, data={"cleared": True})

    async def _fanout(self, req: HostRequest) -> HostResponse:
        prompt_text = req.text
        context = await self.assistant.page_context()
        if context:
            prompt_text = f"{render_prompt('page_context', page_context=context)}\n\n{req.text}"
        result = await self.fanout.run(
            FanoutRequest(
                text=prompt_text,
                attachments=self._attachments(req),
                system_prompt=load_system_prompt("assistant"),
                user_text=req.text,
            ),
            req.backend_ids,
        )
        return HostResponse(success=result.representative is not None, data=result.to_dict())

    async def _status(self, req: HostRequest) -> HostResponse:
        return HostResponse(success=True, data=await self.assistant.status())


_service: Optional[AssistantService] = None


def build_service(app_settings=None) -> AssistantService:
    cfg = app_settings or settings
    store = JsonStateStore(root=cfg.storage_root)
    monitor = DownloadMonitor(store)
    cache = PageContextCache.from_settings(cfg, store)
    host_vault = MemoryCredentialVault()
    vault = ChainedCredentialVault(host_vault, SettingsCredentialVault(cfg))
    sessions = SessionManager(lambda provider: create_backend(provider, cfg, monitor))
    suggestions = SuggestionGenerator()
    assistant = ChatAssistant(
        resolver=BackendResolver(vault, cfg),
        sessions=sessions,
        cache=cache,
        settings=cfg,
        suggestions=suggestions,
        monitor=monitor,
    )
    fanout = FanoutCoordinator(sessions, vault, cfg, suggestions=suggestions)
    return AssistantService(assistant, fanout, cache, app_settings=cfg, vault=host_vault)


def get_default_service() -> AssistantService:
    """获取默认的宿主消息服务实例（单例）。"""

    global _service
    if _service is None:
        _service = build_service(settings)
    return _service
