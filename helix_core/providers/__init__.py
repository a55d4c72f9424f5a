"""后端集成层。

该包下的模块负责：
- 定义 BackendCapability 抽象接口 (base)。
- 维护 Provider、模型与媒体能力表 (registry)。
- 提供各后端的具体实现 (local_client、openai_compat、anthropic_client、gemini_client)。
"""

from typing import Literal, Optional

from helix_core.config.settings import settings
from helix_core.domain.exceptions import ResolutionError
from helix_core.providers.anthropic_client import AnthropicBackend
from helix_core.providers.base import BackendCapability
from helix_core.providers.gemini_client import GeminiBackend
from helix_core.providers.local_client import LocalBackend
from helix_core.providers.openai_compat import OpenAICompatibleBackend


def create_backend(provider: Optional[str] = None, app_settings=None, monitor=None) -> BackendCapability:
    """根据 Provider 名称创建后端实例，不探测运行环境，未知名称直接报错。"""

    cfg = app_settings or settings
    name = (provider or "local").lower()
    if name == "local":
        return LocalBackend(cfg, monitor=monitor)
    if name in ("openai", "glm", "kimi"):
        return OpenAICompatibleBackend(cfg, provider=name)
    if name == "anthropic":
        return AnthropicBackend(cfg)
    if name == "gemini":
        return GeminiBackend(cfg)
    raise ResolutionError(code="UNKNOWN_PROVIDER", message=f"Unknown provider: {provider!r}", provider=provider)


BackendName = Literal["local", "openai", "anthropic", "gemini", "glm", "kimi"]
