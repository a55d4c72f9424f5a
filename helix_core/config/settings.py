"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置。

优先级（高 → 低）：初始化参数 > 环境变量 > .env > config.yaml > secrets 目录。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("HELIX_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
        Path(__file__).resolve().parents[1] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except Exception as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


DEFAULT_RESTRICTED_SCHEMES = [
    "chrome://",
    "chrome-extension://",
    "edge://",
    "about:",
    "moz-extension://",
    "devtools://",
    "view-source:",
]


class HelixSettings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- 后端选择 ----
    default_backend: Literal["local", "remote"] = Field(
        default="local",
        description="全局默认后端类型：local（本地模型）或 remote（远程 Provider）",
    )
    default_provider: str = Field(
        default="openai",
        description="remote 模式下默认使用的 Provider，例如 openai、anthropic、gemini",
    )
    default_model: Optional[str] = Field(
        default=None,
        description="默认模型 ID，为空时使用 registry 中该 Provider 的默认模型",
    )

    # ---- 远程 Provider ----
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API 密钥")
    openai_base_url: str = Field(default="https://api.openai.com/v1", description="OpenAI API 基础URL")
    anthropic_api_key: Optional[str] = Field(default=None, description="Anthropic API 密钥")
    anthropic_base_url: str = Field(default="https://api.anthropic.com", description="Anthropic API 基础URL")
    gemini_api_key: Optional[str] = Field(default=None, description="Gemini API 密钥")
    gemini_base_url: str = Field(
        default="https://generativelanguage.googleapis.com",
        description="Gemini API 基础URL",
    )
    glm_api_key: Optional[str] = Field(default=None, description="GLM API 密钥")
    glm_base_url: str = Field(
        default="https://open.bigmodel.cn/api/paas/v4",
        description="GLM API 基础URL",
    )
    kimi_api_key: Optional[str] = Field(default=None, description="Kimi API 密钥")
    kimi_base_url: str = Field(default="https://api.moonshot.cn/v1", description="Kimi API 基础URL")

    # ---- 本地模型 ----
    local_base_url: str = Field(
        default="http://127.0.0.1:11434",
        description="本地模型服务地址（Ollama 兼容接口）",
    )
    local_model: str = Field(default="llama3.2", description="本地模型名称")
    local_temperature: float = Field(default=0.4, ge=0.0, le=2.0, description="本地会话默认温度")
    local_top_k: int = Field(default=4, ge=1, description="本地会话默认 top_k")

    # ---- 超时 ----
    http_timeout: float = Field(default=30.0, ge=1.0, description="HTTP 超时时间（秒）")
    stream_timeout: float = Field(default=30.0, gt=0.0, description="单后端流式输出的活性超时（秒）")
    fanout_stream_timeout: float = Field(default=60.0, gt=0.0, description="多后端并发时的活性超时（秒）")
    host_call_timeout: float = Field(default=5.0, gt=0.0, description="宿主消息调用的默认超时（秒）")

    # ---- 页面上下文缓存 ----
    cache_max_bytes: int = Field(default=60_000, ge=256, description="单条页面内容的字节上限")
    cache_max_entries: int = Field(default=100, ge=1, description="缓存最多保留的浏览上下文数量")
    cache_sweep_interval: float = Field(default=300.0, gt=0.0, description="失效上下文清理周期（秒）")
    cache_restricted_schemes: List[str] = Field(
        default_factory=lambda: list(DEFAULT_RESTRICTED_SCHEMES),
        description="禁止缓存的内部页面 URL 前缀",
    )
    context_prompt_chars: int = Field(default=2000, ge=0, description="注入提示词的页面内容字符数")

    # ---- 多后端 ----
    fanout_backends: List[str] = Field(
        default_factory=list,
        description="并发对比时启用的后端 ID 列表，为空表示全部可用模型",
    )

    # ---- 存储与日志 ----
    storage_root: str = Field(default=".storage", description="存储根目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator(
        "openai_api_key",
        "anthropic_api_key",
        "gemini_api_key",
        "glm_api_key",
        "kimi_api_key",
    )
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            v = v.strip() or None
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )

    def api_key_for(self, provider: str) -> Optional[str]:
        """返回某个 Provider 的 API 密钥（未配置时为 None）。"""

        return getattr(self, f"{provider.lower()}_api_key", None)

    def base_url_for(self, provider: str) -> Optional[str]:
        return getattr(self, f"{provider.lower()}_base_url", None)


settings = HelixSettings()

# 类型别名，让外部代码可以使用 Settings 类型
Settings = HelixSettings
