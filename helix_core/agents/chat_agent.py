"""浏览器助手的单对话流程。

ChatAssistant 持有一个 ConversationState，并为每个意图串起：
BackendResolver（选后端与凭据）→ PageContextCache（按需附带页面内容）
→ SessionManager（本地会话复用 / 一次性会话）→ StreamOrchestrator（流式写入对话）
→ SuggestionGenerator（自由提问的追问建议）。

同一时间只有一条流：新请求会先取消仍在进行的流。
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from helix_core.core.monitor import DownloadMonitor
from helix_core.core.orchestrator import StreamOrchestrator, StreamOutcome
from helix_core.core.page_cache import PageContextCache
from helix_core.core.resolver import BackendResolver, ContextHeuristic
from helix_core.core.sessions import SessionManager
from helix_core.core.suggestions import SuggestionGenerator
from helix_core.domain.conversation import ConversationState, Message, StreamStatus
from helix_core.domain.exceptions import BusinessError, MissingCredentialError
from helix_core.domain.models import (
    BackendConfig,
    Intent,
    MediaPart,
    ResolvedBackend,
    UserConfig,
    WritingOptions,
)
from helix_core.infrastructure.logging.logger import logger
from helix_core.prompts import load_system_prompt, render_prompt
from helix_core.providers.base import SessionOptions


@dataclass
class AssistantReply:
    outcome: StreamOutcome
    intent: Intent
    user_message_id: Optional[int] = None
    backend: Optional[ResolvedBackend] = None
    suggestions: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.outcome.status != StreamStatus.FAILED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "intent": self.intent.value,
            "status": self.outcome.status.value,
            "content": self.outcome.content,
            "partial": self.outcome.partial,
            "error": self.outcome.error,
            "message_id": self.outcome.message_id,
            "user_message_id": self.user_message_id,
            "backend": self.backend.backend_kind if self.backend else None,
            "provider": self.backend.provider_id if self.backend else None,
            "model": self.backend.model_id if self.backend else None,
            "suggestions": list(self.suggestions),
        }


async def _single(text: str) -> AsyncIterator[str]:
    yield text


class ChatAssistant:
    def __init__(
        self,
        resolver: BackendResolver,
        sessions: SessionManager,
        cache: PageContextCache,
        settings,
        suggestions: Optional[SuggestionGenerator] = None,
        heuristic: Optional[ContextHeuristic] = None,
        monitor: Optional[DownloadMonitor] = None,
        user_config: Optional[UserConfig] = None,
        conversation_id: str = "default",
        locale: str = "en",
        timeout: Optional[float] = None,
    ):
        self._resolver = resolver
        self._sessions = sessions
        self._cache = cache
        self._settings = settings
        self._suggestions = suggestions or SuggestionGenerator()
        self._heuristic = heuristic or ContextHeuristic()
        self._monitor = monitor
        self.user_config = user_config or UserConfig()
        self._conversation_id = conversation_id
        self._locale = locale
        self._timeout = timeout if timeout is not None else settings.stream_timeout
        self.state = ConversationState()
        self._current: Optional[StreamOrchestrator] = None
        self._lock = asyncio.Lock()
        self._context_id: Optional[str] = None
        self._context_url: Optional[str] = None

    # ---- 页面上下文 ----

    def set_page_context(self, context_id: Optional[str], url: Optional[str] = None) -> None:
        """设置当前对话关联的浏览上下文（标签页）。"""

        self._context_id = str(context_id) if context_id is not None else None
        self._context_url = url

    async def page_context(self) -> Optional[str]:
        if self._context_id is None:
            return None
        entry = await self._cache.get_entry(self._context_id, expected_url=self._context_url)
        if entry is None:
            return None
        limit = getattr(self._settings, "context_prompt_chars", 2000)
        return entry.content[:limit]

    # ---- 意图入口 ----

    async def send_prompt(self, text: str, attachments: Optional[Sequence[MediaPart]] = None) -> AssistantReply:
        media = list(attachments or [])
        prompt_text = text
        if self._heuristic.should_attach_context(Intent.PROMPT, text):
            context = await self.page_context()
            if context:
                prompt_text = f"{render_prompt('page_context', self._locale, page_context=context)}\n\n{text}"
        return await self._dispatch(Intent.PROMPT, text, prompt_text, media)

    async def summarize(
        self,
        text: str,
        summary_type: str = "key points",
        length: str = "medium",
        output_language: str = "English",
        shared_context: Optional[str] = None,
    ) -> AssistantReply:
        prompt_text = render_prompt(
            "summarize",
            self._locale,
            text=text,
            summary_type=summary_type,
            length=length,
            output_language=output_language,
            shared_context=_context_line(shared_context),
        )
        return await self._dispatch(Intent.SUMMARIZE, text, prompt_text)

    async def translate(self, text: str, target_language: str, source_language: Optional[str] = None) -> AssistantReply:
        if source_language and source_language.strip().casefold() == target_language.strip().casefold():
            return await self._short_circuit(
                Intent.TRANSLATE,
                text,
                f"ℹ️ The text is already in {target_language}. No translation needed.",
            )
        prompt_text = render_prompt(
            "translate",
            self._locale,
            text=text,
            source_language=source_language or "the detected language",
            target_language=target_language,
        )
        return await self._dispatch(Intent.TRANSLATE, text, prompt_text)

    async def write(self, text: str, options: Optional[WritingOptions] = None) -> AssistantReply:
        options = options or WritingOptions()
        prompt_text = render_prompt(
            "write",
            self._locale,
            text=text,
            shared_context=_context_line(options.shared_context),
            **options.for_writer(),
        )
        return await self._dispatch(Intent.WRITE, text, prompt_text, language=options.output_language)

    async def rewrite(self, text: str, options: Optional[WritingOptions] = None) -> AssistantReply:
        options = options or WritingOptions()
        prompt_text = render_prompt(
            "rewrite",
            self._locale,
            text=text,
            shared_context=_context_line(options.shared_context),
            **options.for_rewriter(),
        )
        return await self._dispatch(Intent.REWRITE, text, prompt_text, language=options.output_language)

    async def proofread(self, text: str) -> AssistantReply:
        prompt_text = render_prompt("proofread", self._locale, text=text)
        return await self._dispatch(Intent.PROOFREAD, text, prompt_text)

    async def run_intent(self, intent: Intent, text: str, **kwargs: Any) -> AssistantReply:
        if intent == Intent.PROMPT:
            return await self.send_prompt(text, kwargs.get("attachments"))
        if intent == Intent.SUMMARIZE:
            return await self.summarize(text, **kwargs)
        if intent == Intent.TRANSLATE:
            return await self.translate(text, **kwargs)
        if intent == Intent.WRITE:
            return await self.write(text, kwargs.get("options"))
        if intent == Intent.REWRITE:
            return await self.rewrite(text, kwargs.get("options"))
        return await self.proofread(text)

    # ---- 控制 ----

    def stop(self) -> bool:
        """取消正在进行的流；没有活跃流时返回 False。"""

        orch = self._current
        if orch is None or orch.finished or orch.token.cancelled:
            return False
        orch.cancel()
        return True

    async def clear(self) -> None:
        """原子地清空对话并释放本地会话。"""

        self.stop()
        self.state.clear()
        self._suggestions.clear()
        await self._sessions.destroy(self._conversation_id)

    async def close(self) -> None:
        """停止进行中的流并释放所有会话（进程退出时调用）。"""

        self.stop()
        await self._sessions.destroy_all()

    async def status(self) -> Dict[str, Any]:
        """当前默认后端的可用性说明。"""

        try:
            resolved = await self._resolver.resolve(Intent.PROMPT, self.user_config)
        except BusinessError as exc:
            return {"available": False, "message": f"❌ {exc.message}", "backend": None}
        info: Dict[str, Any] = {
            "backend": resolved.backend_kind,
            "provider": resolved.provider_id,
            "model": resolved.model_id,
            "streaming": self.state.is_streaming,
        }
        if resolved.is_remote:
            if resolved.missing_credential:
                info.update(available=False, message=f"❌ Missing API key for {resolved.provider_id}")
            else:
                info.update(available=True, message=f"✅ {resolved.provider_id} is ready!")
            return info
        backend = self._sessions.backend_for("local")
        try:
            availability = await backend.availability()
        except Exception:
            logger.warning("availability check failed", exc_info=True)
            availability = "unavailable"
        messages = {
            "ready": "✅ Local model is ready!",
            "downloading": "⏬ Downloading AI model...",
            "unavailable": "❌ Local model service is not reachable",
        }
        info.update(available=availability == "ready", availability=availability, message=messages[availability])
        if self._monitor is not None and resolved.model_id:
            progress = self._monitor.latest(resolved.model_id)
            if progress is not None:
                info["download"] = progress.to_dict()
        return info

    # ---- 内部 ----

    async def _short_circuit(self, intent: Intent, display_text: str, notice: str) -> AssistantReply:
        self.stop()
        async with self._lock:
            user_msg = self.state.append(Message.create("user", display_text, intent=intent.value))
            orch = StreamOrchestrator(self.state, timeout=self._timeout)
            outcome = await orch.run(_single(notice), intent)
            return AssistantReply(outcome=outcome, intent=intent, user_message_id=user_msg.id)

    async def _dispatch(
        self,
        intent: Intent,
        display_text: str,
        prompt_text: str,
        attachments: Optional[List[MediaPart]] = None,
        language: Optional[str] = None,
    ) -> AssistantReply:
        media = list(attachments or [])
        self.stop()
        async with self._lock:
            user_msg = self.state.append(Message.create("user", display_text, media, intent=intent.value))
            # 先登记编排器：解析后端（读取凭据）期间到达的 stop 同样生效
            orch = StreamOrchestrator(self.state, timeout=self._timeout)
            self._current = orch
            try:
                resolved = await self._resolver.resolve(intent, self.user_config)
            except BusinessError as exc:
                return AssistantReply(outcome=orch.reject(exc, intent), intent=intent, user_message_id=user_msg.id)

            orch.backend_id = resolved.provider_id
            if resolved.missing_credential and not orch.token.cancelled:
                exc = MissingCredentialError(
                    code="MISSING_API_KEY",
                    message=f"Missing provider credentials for {resolved.provider_id}",
                    provider=resolved.provider_id,
                )
                return AssistantReply(
                    outcome=orch.reject(exc, intent), intent=intent, user_message_id=user_msg.id, backend=resolved
                )

            options = SessionOptions(
                system_prompt=load_system_prompt("assistant", self._locale) if intent == Intent.PROMPT else None,
                temperature=None if resolved.is_remote else getattr(self._settings, "local_temperature", None),
                top_k=None if resolved.is_remote else getattr(self._settings, "local_top_k", None),
                expected_inputs=sorted({p.kind for p in media}),
                language=language,
            )
            config = resolved.to_config()
            persistent = not resolved.is_remote and intent == Intent.PROMPT
            if persistent:
                outcome = await orch.run(lambda: self._session_stream(config, options, prompt_text, media), intent)
                if outcome.status == StreamStatus.FAILED:
                    # 零输出失败（含超时）后丢弃会话，下次请求重新创建
                    await self._sessions.destroy(self._conversation_id)
            else:
                outcome = await orch.run(
                    lambda: self._sessions.stream_ephemeral(config, prompt_text, options=options, media=media),
                    intent,
                )

            suggestions: List[str] = []
            if outcome.status == StreamStatus.COMPLETED and not outcome.partial:
                suggestions = self._suggestions.suggest(
                    display_text, outcome.content, message_id=outcome.message_id, intent=intent
                )
            return AssistantReply(
                outcome=outcome,
                intent=intent,
                user_message_id=user_msg.id,
                backend=resolved,
                suggestions=suggestions,
            )

    async def _session_stream(
        self, config: BackendConfig, options: SessionOptions, text: str, media: List[MediaPart]
    ) -> AsyncIterator[str]:
        handle = await self._sessions.get_or_create(config, options, conversation_id=self._conversation_id)
        await self._sessions.append_supported(handle, media)
        async for piece in self._sessions.prompt_streaming(handle, text):
            yield piece


def _context_line(shared_context: Optional[str]) -> Optional[str]:
    if not shared_context:
        return None
    return f"\nContext: {shared_context.strip()}\n"
