"""后端解析：意图 + 用户配置 → 本次请求使用的后端、模型与凭据。

优先级：意图级覆盖 > 用户全局默认 > 配置文件默认 > local。
远程后端缺少凭据时解析仍然成功（credential 为 None），由调用方在请求时报错。
"""

from dataclasses import dataclass, field
from typing import Optional, Tuple

from helix_core.core.credentials import CredentialVault
from helix_core.domain.exceptions import ResolutionError
from helix_core.domain.models import BackendPreference, Intent, ResolvedBackend, UserConfig
from helix_core.infrastructure.logging.logger import logger
from helix_core.providers.registry import PROVIDER_REGISTRY, default_models


class BackendResolver:
    def __init__(self, vault: CredentialVault, settings):
        self._vault = vault
        self._settings = settings

    def _settings_default(self) -> BackendPreference:
        if getattr(self._settings, "default_backend", "local") == "remote":
            return BackendPreference(
                kind="remote",
                provider_id=self._settings.default_provider,
                model_id=getattr(self._settings, "default_model", None),
            )
        return BackendPreference(kind="local", provider_id="local", model_id=None)

    def choose(self, intent: Intent, user_config: Optional[UserConfig] = None) -> BackendPreference:
        user_config = user_config or UserConfig()
        override = user_config.overrides.get(intent)
        if override is not None:
            return override
        if user_config.default is not None:
            return user_config.default
        return self._settings_default()

    async def resolve(self, intent: Intent, user_config: Optional[UserConfig] = None) -> ResolvedBackend:
        pref = self.choose(intent, user_config)
        if pref.kind == "local":
            model = pref.model_id or getattr(self._settings, "local_model", None)
            return ResolvedBackend(backend_kind="local", provider_id="local", model_id=model)

        provider = (pref.provider_id or "").lower()
        if provider not in PROVIDER_REGISTRY or provider == "local":
            raise ResolutionError(
                code="UNKNOWN_PROVIDER", message=f"Unknown provider: {pref.provider_id!r}", provider=pref.provider_id
            )
        model = pref.model_id or default_models(provider)[0]
        credential = await self._load_credential(provider)
        return ResolvedBackend(backend_kind="remote", provider_id=provider, model_id=model, credential=credential)

    async def _load_credential(self, provider: str) -> Optional[str]:
        try:
            return await self._vault.load(provider) or None
        except Exception:
            logger.warning("credential lookup failed", exc_info=True, extra={"extra": {"provider": provider}})
            return None


_DEFAULT_KEYWORDS: Tuple[str, ...] = (
    "page",
    "article",
    "this",
    "above",
    "summar",
    "site",
    "website",
    "document",
    "here",
    "author",
    "section",
    "post",
)


@dataclass
class ContextHeuristic:
    """决定是否把页面内容注入提示词。

    摘要/翻译等操作本身就作用于给定文本，不需要页面上下文；自由提问时
    若出现指代页面的关键词，或问题较短（通常是在追问当前页面），则附带上下文。
    """

    keywords: Tuple[str, ...] = field(default=_DEFAULT_KEYWORDS)
    short_question_chars: int = 200
    intents: Tuple[Intent, ...] = (Intent.PROMPT,)

    def should_attach_context(self, intent: Intent, text: str) -> bool:
        if intent not in self.intents:
            return False
        lowered = (text or "").lower()
        if any(k in lowered for k in self.keywords):
            return True
        return 0 < len(lowered.strip()) <= self.short_question_chars
