"""统一的请求与后端配置数据模型。

本模块定义了编排层在不同后端之间共享的标准数据结构：

- Intent: 用户请求意图（自由提问、摘要、翻译、写作、改写、校对）。
- MediaPart: 附带的图片/音频片段。
- BackendPreference / UserConfig: 用户在设置里选择的后端偏好。
- BackendConfig / ResolvedBackend: 每次请求解析出来的后端、模型与凭据。
- CacheEntry / DownloadProgressRecord: 页面上下文缓存与模型下载进度记录。

所有后端适配器（providers 包）都只依赖这些模型。
"""

import base64
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Literal, Optional, Tuple


BackendKind = Literal["local", "remote"]
MediaKind = Literal["image", "audio"]


class Intent(str, Enum):
    """用户请求意图。"""

    PROMPT = "prompt"
    SUMMARIZE = "summarize"
    TRANSLATE = "translate"
    WRITE = "write"
    REWRITE = "rewrite"
    PROOFREAD = "proofread"

    @classmethod
    def parse(cls, value: "Intent | str") -> "Intent":
        """解析意图名称，兼容历史写法（summarise、translator、writer 等）。"""

        if isinstance(value, Intent):
            return value
        key = str(value or "").strip().lower()
        key = _INTENT_ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            raise ValueError(f"Unknown intent: {value!r}") from None


_INTENT_ALIASES = {
    "summarise": "summarize",
    "summarizer": "summarize",
    "translator": "translate",
    "writer": "write",
    "rewriter": "rewrite",
    "proofreader": "proofread",
    "ask": "prompt",
}


@dataclass
class MediaPart:
    """一段图片或音频附件。

    data 可以是 data URL（data:image/png;base64,...）或纯 base64 字符串。
    """

    kind: MediaKind
    data: str
    mime_type: Optional[str] = None

    def split(self) -> Tuple[str, str]:
        """返回 (mime_type, base64 数据)。"""

        if self.data.startswith("data:") and "," in self.data:
            header, payload = self.data.split(",", 1)
            mime = header[5:].split(";", 1)[0] or self.default_mime()
            return self.mime_type or mime, payload
        return self.mime_type or self.default_mime(), self.data

    @property
    def base64_data(self) -> str:
        return self.split()[1]

    @property
    def media_type(self) -> str:
        return self.split()[0]

    def as_data_url(self) -> str:
        mime, payload = self.split()
        return f"data:{mime};base64,{payload}"

    def default_mime(self) -> str:
        return "image/png" if self.kind == "image" else "audio/wav"

    @classmethod
    def from_bytes(cls, kind: MediaKind, raw: bytes, mime_type: Optional[str] = None) -> "MediaPart":
        return cls(kind=kind, data=base64.b64encode(raw).decode("ascii"), mime_type=mime_type)


@dataclass
class BackendPreference:
    """用户在设置中为某个意图（或全局）选择的后端。"""

    kind: BackendKind = "local"
    provider_id: Optional[str] = None
    model_id: Optional[str] = None


@dataclass
class UserConfig:
    """用户级后端配置。

    - default: 全局默认后端，为空时回落到 settings。
    - overrides: 按意图覆盖的后端选择。
    """

    default: Optional[BackendPreference] = None
    overrides: Dict[Intent, BackendPreference] = field(default_factory=dict)

    @classmethod
    def from_storage(cls, data: Optional[Dict[str, Any]]) -> "UserConfig":
        """从持久化配置（aiProvider / aiModel / intentOverrides）构造。

        aiProvider 为 "builtin" 时表示本地模型。
        """

        if not data:
            return cls()
        default = _preference_from(data.get("aiProvider"), data.get("aiModel"))
        overrides: Dict[Intent, BackendPreference] = {}
        for name, raw in (data.get("intentOverrides") or {}).items():
            try:
                intent = Intent.parse(name)
            except ValueError:
                continue
            if isinstance(raw, dict):
                pref = _preference_from(raw.get("aiProvider"), raw.get("aiModel"))
            else:
                pref = _preference_from(raw, None)
            if pref is not None:
                overrides[intent] = pref
        return cls(default=default, overrides=overrides)


def _preference_from(provider: Optional[str], model: Optional[str]) -> Optional[BackendPreference]:
    if not provider:
        return None
    provider = str(provider).lower()
    if provider in ("builtin", "local"):
        return BackendPreference(kind="local", provider_id="local", model_id=model or None)
    return BackendPreference(kind="remote", provider_id=provider, model_id=model or None)


@dataclass
class BackendConfig:
    """一次调用使用的后端配置，仅在本次调用内有效，不落盘。"""

    provider_id: str
    model_id: str
    credential: Optional[str] = None

    def __repr__(self) -> str:
        masked = "***" if self.credential else None
        return f"BackendConfig(provider_id={self.provider_id!r}, model_id={self.model_id!r}, credential={masked!r})"


@dataclass
class ResolvedBackend:
    """BackendResolver 的解析结果。

    credential 为 None 且 backend_kind 为 remote 时，调用方应在请求时报
    “缺少密钥”，而不是在解析阶段报错。
    """

    backend_kind: BackendKind
    provider_id: Optional[str] = None
    model_id: Optional[str] = None
    credential: Optional[str] = None

    @property
    def is_remote(self) -> bool:
        return self.backend_kind == "remote"

    @property
    def missing_credential(self) -> bool:
        return self.is_remote and not self.credential

    def to_config(self) -> BackendConfig:
        return BackendConfig(
            provider_id=self.provider_id or "local",
            model_id=self.model_id or "",
            credential=self.credential,
        )

    def __repr__(self) -> str:
        masked = "***" if self.credential else None
        return (
            f"ResolvedBackend(backend_kind={self.backend_kind!r}, provider_id={self.provider_id!r}, "
            f"model_id={self.model_id!r}, credential={masked!r})"
        )


@dataclass
class CacheEntry:
    """页面上下文缓存条目，持久化格式为 {content, url, createdAt}。"""

    content: str
    source_url: str
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {"content": self.content, "url": self.source_url, "createdAt": self.created_at}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        return cls(
            content=str(data.get("content") or ""),
            source_url=str(data.get("url") or ""),
            created_at=float(data.get("createdAt") or 0.0),
        )


@dataclass
class DownloadProgressRecord:
    """模型下载进度，仅供观测，不作为权威状态。"""

    source: str
    loaded: float
    created_at: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        self.loaded = min(max(float(self.loaded), 0.0), 1.0)

    @property
    def is_downloading(self) -> bool:
        return 0.0 < self.loaded < 1.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "loaded": self.loaded,
            "isDownloading": self.is_downloading,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DownloadProgressRecord":
        return cls(
            source=str(data.get("source") or ""),
            loaded=float(data.get("loaded") or 0.0),
            created_at=float(data.get("createdAt") or 0.0),
        )


WriterTone = Literal["formal", "neutral", "casual"]
WriterFormat = Literal["markdown", "plain-text"]
WriterLength = Literal["short", "medium", "long"]

# 改写接口使用相对描述；兼容写作接口的旧取值
_REWRITE_TONES = {
    "as-is": "as-is",
    "more-formal": "more-formal",
    "more-casual": "more-casual",
    "formal": "more-formal",
    "neutral": "as-is",
    "casual": "more-casual",
}
_REWRITE_LENGTHS = {
    "as-is": "as-is",
    "shorter": "shorter",
    "longer": "longer",
    "short": "shorter",
    "medium": "as-is",
    "long": "longer",
}
_REWRITE_FORMATS = {"as-is": "as-is", "markdown": "markdown", "plain-text": "plain-text"}


@dataclass
class WritingOptions:
    """写作/改写请求的可选参数。"""

    tone: Optional[str] = None
    format: Optional[str] = None
    length: Optional[str] = None
    shared_context: Optional[str] = None
    output_language: Optional[str] = None

    def for_writer(self) -> Dict[str, str]:
        return {
            "tone": self.tone or "neutral",
            "format": self.format or "plain-text",
            "length": self.length or "medium",
        }

    def for_rewriter(self) -> Dict[str, str]:
        """映射到改写语义（as-is / more-formal / shorter ...），未知取值回落为 as-is。"""

        return {
            "tone": _REWRITE_TONES.get(self.tone or "", "as-is"),
            "format": _REWRITE_FORMATS.get(self.format or "", "as-is"),
            "length": _REWRITE_LENGTHS.get(self.length or "", "as-is"),
        }

    @classmethod
    def from_mapping(cls, data: Optional[Dict[str, Any]]) -> "WritingOptions":
        data = data or {}
        return cls(
            tone=data.get("tone"),
            format=data.get("format"),
            length=data.get("length"),
            shared_context=data.get("sharedContext") or data.get("shared_context"),
            output_language=data.get("outputLanguage") or data.get("output_language"),
        )
