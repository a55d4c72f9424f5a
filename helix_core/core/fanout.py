"""多后端并发对比。

同一个请求被复制到 N 个后端并发执行：
- 每个后端 ID 有独立的 ConversationState、StreamOrchestrator 与取消句柄，互不影响。
- 不支持的图片/音频按静态能力表静默剔除（只记日志）。
- 所有后端都进入终态后，才挑选代表性回答（按后端顺序第一个成功且非空的回答）
  并生成追问建议。
"""

import asyncio
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from helix_core.core.credentials import CredentialVault
from helix_core.core.orchestrator import StreamOrchestrator, StreamOutcome
from helix_core.core.sessions import SessionManager
from helix_core.core.suggestions import SuggestionGenerator
from helix_core.domain.conversation import ConversationState, Message, StreamStatus
from helix_core.domain.exceptions import MissingCredentialError, ResolutionError
from helix_core.domain.models import BackendConfig, Intent, MediaPart
from helix_core.infrastructure.logging.logger import logger
from helix_core.providers.base import SessionOptions
from helix_core.providers.registry import AVAILABLE_MODELS, FanoutModel, get_fanout_model, supports_media


@dataclass
class FanoutRequest:
    text: str
    intent: Intent = Intent.PROMPT
    attachments: List[MediaPart] = field(default_factory=list)
    system_prompt: Optional[str] = None
    # 用于建议去重的原始问题；text 可能已经拼接了页面上下文
    user_text: Optional[str] = None


@dataclass
class FanoutResult:
    outcomes: Dict[str, StreamOutcome]
    representative: Optional[str] = None
    suggestions: List[str] = field(default_factory=list)
    omitted_media: Dict[str, List[str]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, object]:
        return {
            "backends": {
                bid: {
                    "status": o.status.value,
                    "content": o.content,
                    "partial": o.partial,
                    "error": o.error,
                    "message_id": o.message_id,
                }
                for bid, o in self.outcomes.items()
            },
            "representative": self.representative,
            "suggestions": list(self.suggestions),
            "omitted_media": {k: list(v) for k, v in self.omitted_media.items()},
        }


class FanoutCoordinator:
    def __init__(
        self,
        sessions: SessionManager,
        vault: CredentialVault,
        settings,
        suggestions: Optional[SuggestionGenerator] = None,
        timeout: Optional[float] = None,
    ):
        self._sessions = sessions
        self._vault = vault
        self._settings = settings
        self._suggestions = suggestions or SuggestionGenerator()
        self._timeout = timeout if timeout is not None else settings.fanout_stream_timeout
        self._states: Dict[str, ConversationState] = {}
        self._active: Dict[str, StreamOrchestrator] = {}
        self._lock = asyncio.Lock()

    def state_for(self, backend_id: str) -> ConversationState:
        state = self._states.get(backend_id)
        if state is None:
            state = ConversationState()
            self._states[backend_id] = state
        return state

    @property
    def states(self) -> Dict[str, ConversationState]:
        return dict(self._states)

    def enabled_backends(self) -> List[str]:
        configured = list(getattr(self._settings, "fanout_backends", None) or [])
        return configured or [m.id for m in AVAILABLE_MODELS]

    def cancel(self, backend_id: Optional[str] = None) -> None:
        """取消某一个后端，或全部后端（backend_id 为空）。"""

        for bid, orch in list(self._active.items()):
            if backend_id is None or bid == backend_id:
                orch.cancel()

    def clear(self) -> None:
        self.cancel()
        for state in self._states.values():
            state.clear()

    @staticmethod
    def filter_media(backend_id: str, media: Iterable[MediaPart]) -> Tuple[List[MediaPart], List[str]]:
        kept: List[MediaPart] = []
        omitted: List[str] = []
        for part in media:
            if supports_media(backend_id, part.kind):
                kept.append(part)
            else:
                omitted.append(part.kind)
        return kept, omitted

    async def run(self, request: FanoutRequest, backend_ids: Optional[Iterable[str]] = None) -> FanoutResult:
        ids = list(dict.fromkeys(backend_ids or self.enabled_backends()))
        # 新一轮对比开始前终止上一轮
        self.cancel()
        async with self._lock:
            omitted: Dict[str, List[str]] = {}
            results = await asyncio.gather(
                *(self._run_one(bid, request, omitted) for bid in ids), return_exceptions=True
            )
            outcomes: Dict[str, StreamOutcome] = {}
            for bid, res in zip(ids, results):
                if isinstance(res, BaseException):
                    logger.error(
                        "fanout backend crashed", exc_info=res, extra={"extra": {"backend": bid}}
                    )
                    outcomes[bid] = self._settle_crash(bid, res)
                else:
                    outcomes[bid] = res

            answered = [
                bid for bid in ids if outcomes[bid].status == StreamStatus.COMPLETED and outcomes[bid].content.strip()
            ]
            # 完整回答优先；只有中断的回答时仍选出代表，但不生成追问
            representative = next((bid for bid in answered if not outcomes[bid].partial), None)
            if representative is None and answered:
                representative = answered[0]
            suggestions: List[str] = []
            if representative is not None and not outcomes[representative].partial:
                chosen = outcomes[representative]
                suggestions = self._suggestions.suggest(
                    request.user_text or request.text,
                    chosen.content,
                    message_id=chosen.message_id,
                    intent=request.intent,
                )
            logger.info(
                "fanout settled",
                extra={
                    "extra": {
                        "backends": {bid: o.status.value for bid, o in outcomes.items()},
                        "representative": representative,
                    }
                },
            )
            return FanoutResult(
                outcomes=outcomes, representative=representative, suggestions=suggestions, omitted_media=omitted
            )

    async def _run_one(self, backend_id: str, request: FanoutRequest, omitted: Dict[str, List[str]]) -> StreamOutcome:
        state = self.state_for(backend_id)
        orch = StreamOrchestrator(state, timeout=self._timeout, backend_id=backend_id)
        self._active[backend_id] = orch
        state.append(Message.create("user", request.user_text or request.text, request.attachments))
        try:
            model = get_fanout_model(backend_id)
            if model is None:
                return orch.reject(
                    ResolutionError(code="UNKNOWN_BACKEND", message=f"Unknown backend: {backend_id}"), request.intent
                )
            media, dropped = self.filter_media(backend_id, request.attachments)
            if dropped:
                omitted[backend_id] = dropped
                logger.info(
                    "fanout media omitted", extra={"extra": {"backend": backend_id, "omitted": dropped}}
                )
            config = await self._config_for(model)
            if model.provider != "local" and not config.credential:
                return orch.reject(
                    MissingCredentialError(
                        code="MISSING_API_KEY",
                        message=f"Missing provider credentials for {model.provider}",
                        provider=model.provider,
                    ),
                    request.intent,
                )
            options = SessionOptions(
                system_prompt=request.system_prompt,
                expected_inputs=sorted({p.kind for p in media}),
            )
            orch.begin(request.intent)
            return await orch.run(
                lambda: self._sessions.stream_ephemeral(config, request.text, options=options, media=media),
                request.intent,
            )
        finally:
            self._active.pop(backend_id, None)

    async def _config_for(self, model: FanoutModel) -> BackendConfig:
        if model.provider == "local":
            return BackendConfig(provider_id="local", model_id=model.model or self._settings.local_model)
        try:
            credential = await self._vault.load(model.provider)
        except Exception:
            logger.warning("credential lookup failed", exc_info=True, extra={"extra": {"provider": model.provider}})
            credential = None
        return BackendConfig(provider_id=model.provider, model_id=model.model, credential=credential or None)

    def _settle_crash(self, backend_id: str, exc: BaseException) -> StreamOutcome:
        state = self.state_for(backend_id)
        if state.is_streaming:
            state.finish_streaming(StreamStatus.FAILED, str(exc))
        msg = state.last_assistant()
        return StreamOutcome(
            message_id=msg.id if msg else 0,
            status=StreamStatus.FAILED,
            content=msg.content if msg else "",
            error=str(exc) or exc.__class__.__name__,
            exception=exc,
        )
