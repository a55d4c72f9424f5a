"""提示词模板加载工具。

按语言(locale) 从 prompts/<locale> 目录读取模板：
- assistant_system.md: 自由提问的系统提示词。
- page_context.md: 注入页面内容的片段。
- <intent>.md: 摘要、翻译、写作、改写、校对的请求模板。

模板使用 {name} 占位符，缺失的字段渲染为空字符串。
"""

from pathlib import Path
from typing import Any

PROMPTS_DIR = Path(__file__).resolve().parent


class _Blank(dict):
    def __missing__(self, key: str) -> str:
        return ""


def load_prompt(name: str, locale: str = "en") -> str:
    fname = PROMPTS_DIR / locale / f"{name}.md"
    return fname.read_text(encoding="utf-8")


def load_system_prompt(agent_type: str = "assistant", locale: str = "en") -> str:
    """根据 Agent 类型和语言加载系统提示词文本。"""

    return load_prompt(f"{agent_type}_system", locale).strip()


def render_prompt(name: str, locale: str = "en", **fields: Any) -> str:
    values = _Blank({k: v for k, v in fields.items() if v is not None})
    return load_prompt(name, locale).format_map(values).strip()
