"""Provider 与模型配置。

本模块集中维护：

- 各 Provider 的默认地址、可选模型与默认模型（default_models）。
- 静态媒体能力表：某个后端是否接受图片/音频输入（supports_media）。
- 多后端对比时可选的模型目录 AVAILABLE_MODELS（后端 ID → Provider/模型）。

本地模型的真实能力在创建会话时再探测，这里只给出保守的默认值。"""

from dataclasses import dataclass, field
from typing import List, Mapping, Optional, Tuple

from helix_core.domain.models import BackendKind, MediaKind


@dataclass
class ProviderConfig:
    """某个 Provider 的整体配置。"""

    name: str
    base_url: str
    kind: BackendKind = "remote"
    default_model: str = ""
    models: List[str] = field(default_factory=list)
    media: Tuple[MediaKind, ...] = ()


@dataclass
class FanoutModel:
    """多后端对比中的一个候选后端。"""

    id: str
    provider: str
    model: str
    label: str
    media: Tuple[MediaKind, ...] = ()


OPENAI_CONFIG = ProviderConfig(
    name="openai",
    base_url="https://api.openai.com/v1",
    default_model="gpt-4o-mini",
    models=["gpt-4o", "gpt-4o-mini", "o3-mini"],
    media=("image",),
)

ANTHROPIC_CONFIG = ProviderConfig(
    name="anthropic",
    base_url="https://api.anthropic.com",
    default_model="claude-3-5-sonnet-latest",
    models=["claude-3-5-sonnet-latest", "claude-3-5-haiku-latest", "claude-3-opus-latest"],
    media=("image",),
)

GEMINI_CONFIG = ProviderConfig(
    name="gemini",
    base_url="https://generativelanguage.googleapis.com",
    default_model="gemini-2.5-flash",
    models=["gemini-2.5-pro", "gemini-2.5-flash", "gemini-2.5-flash-lite"],
    media=("image", "audio"),
)

GLM_CONFIG = ProviderConfig(
    name="glm",
    base_url="https://open.bigmodel.cn/api/paas/v4",
    default_model="glm-4.6",
    models=["glm-4.6"],
)

KIMI_CONFIG = ProviderConfig(
    name="kimi",
    base_url="https://api.moonshot.cn/v1",
    default_model="kimi-k2-turbo-preview",
    models=["kimi-k2-turbo-preview"],
)

LOCAL_CONFIG = ProviderConfig(
    name="local",
    base_url="http://127.0.0.1:11434",
    kind="local",
    default_model="llama3.2",
    models=["llama3.2"],
)


PROVIDER_REGISTRY: Mapping[str, ProviderConfig] = {
    "openai": OPENAI_CONFIG,
    "anthropic": ANTHROPIC_CONFIG,
    "gemini": GEMINI_CONFIG,
    "glm": GLM_CONFIG,
    "kimi": KIMI_CONFIG,
    "local": LOCAL_CONFIG,
}


AVAILABLE_MODELS: List[FanoutModel] = [
    FanoutModel(id="gpt-4o", provider="openai", model="gpt-4o", label="GPT-4o", media=("image",)),
    FanoutModel(id="gpt-4o-mini", provider="openai", model="gpt-4o-mini", label="GPT-4o mini", media=("image",)),
    FanoutModel(id="o3-mini", provider="openai", model="o3-mini", label="o3-mini"),
    FanoutModel(
        id="gemini-2.5-pro", provider="gemini", model="gemini-2.5-pro", label="Gemini 2.5 Pro", media=("image", "audio")
    ),
    FanoutModel(
        id="gemini-2.5-flash",
        provider="gemini",
        model="gemini-2.5-flash",
        label="Gemini 2.5 Flash",
        media=("image", "audio"),
    ),
    FanoutModel(
        id="gemini-2.5-flash-lite",
        provider="gemini",
        model="gemini-2.5-flash-lite",
        label="Gemini 2.5 Flash Lite",
        media=("image", "audio"),
    ),
    FanoutModel(
        id="claude-3-5-haiku",
        provider="anthropic",
        model="claude-3-5-haiku-latest",
        label="Claude 3.5 Haiku",
        media=("image",),
    ),
    FanoutModel(id="local", provider="local", model="", label="Local model"),
]


def get_provider_config(name: str) -> ProviderConfig:
    """根据名称获取 ProviderConfig，名称不区分大小写。"""

    key = name.lower()
    for k, cfg in PROVIDER_REGISTRY.items():
        if k.lower() == key:
            return cfg
    raise KeyError(f"Unknown provider: {name!r}")


def default_models(provider: str) -> List[str]:
    """某个 Provider 可选的模型列表，默认模型排在第一位。"""

    cfg = get_provider_config(provider)
    ordered = [cfg.default_model] if cfg.default_model else []
    ordered.extend(m for m in cfg.models if m not in ordered)
    return ordered


def get_fanout_model(backend_id: str) -> Optional[FanoutModel]:
    for model in AVAILABLE_MODELS:
        if model.id == backend_id:
            return model
    return None


def supports_media(backend_id: str, kind: MediaKind) -> bool:
    """查询静态能力表：backend_id 可以是对比目录中的 ID，也可以是 Provider 名称。"""

    model = get_fanout_model(backend_id)
    if model is not None:
        return kind in model.media
    try:
        return kind in get_provider_config(backend_id).media
    except KeyError:
        return False
