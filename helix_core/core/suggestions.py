"""追问建议生成（启发式，不额外调用模型）。

从助手回答中抽取候选话题：列表项，或长度在阈值范围内、看起来不像标题/URL 的句子；
按大小写不敏感去重，剔除与用户原始问题重叠的候选，再套用问题模板。
候选不足时用通用问题补齐。所有阈值都在 SuggestionHeuristics 中，可按需调整。

同一条助手消息只生成一次建议（按 message_id 幂等），且只对自由提问意图生效。
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from helix_core.domain.models import Intent

_BULLET_RE = re.compile(r"^\s*(?:[-*•+]|\d+[.)])\s+(.*\S)\s*$")
_HEADING_RE = re.compile(r"^\s*(?:#{1,6}\s|={3,}|-{3,})")
_URL_RE = re.compile(r"(https?://|www\.)\S+", re.IGNORECASE)
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")
_WORD_RE = re.compile(r"[\w']+")


@dataclass
class SuggestionHeuristics:
    min_sentence_chars: int = 20
    max_sentence_chars: int = 140
    max_suggestions: int = 3
    overlap_threshold: float = 0.6
    templates: Tuple[str, ...] = (
        "Can you explain more about {topic}?",
        "What are the implications of {topic}?",
        "Can you give an example of {topic}?",
    )
    fallbacks: Tuple[str, ...] = (
        "Can you explain this in simpler terms?",
        "What are the key takeaways?",
        "Can you give me a concrete example?",
    )


def _words(text: str) -> set:
    return {w.casefold() for w in _WORD_RE.findall(text or "")}


def _clean(candidate: str) -> str:
    text = re.sub(r"[*_`]+", "", candidate).strip()
    return text.rstrip(".!?:;,").strip()


class SuggestionGenerator:
    def __init__(self, heuristics: Optional[SuggestionHeuristics] = None, max_stored: int = 200):
        self.heuristics = heuristics or SuggestionHeuristics()
        self._max_stored = max_stored
        self._stored: Dict[int, List[str]] = {}

    def get(self, message_id: int) -> Optional[List[str]]:
        stored = self._stored.get(message_id)
        return list(stored) if stored is not None else None

    def clear(self) -> None:
        self._stored.clear()

    def suggest(
        self,
        user_text: str,
        assistant_text: str,
        message_id: Optional[int] = None,
        intent: Intent = Intent.PROMPT,
    ) -> List[str]:
        """返回 0..3 条追问。已为 message_id 生成过时直接返回已保存的结果。"""

        if intent != Intent.PROMPT:
            return []
        if message_id is not None and message_id in self._stored:
            return list(self._stored[message_id])
        if not (assistant_text or "").strip():
            return []
        questions = self._build(user_text or "", assistant_text)
        if message_id is not None:
            self._stored[message_id] = list(questions)
            # 只保留最近的若干条，最早写入的先淘汰
            while len(self._stored) > self._max_stored:
                del self._stored[next(iter(self._stored))]
        return questions

    def _build(self, user_text: str, assistant_text: str) -> List[str]:
        h = self.heuristics
        topics: List[str] = []
        seen = set()
        user_words = _words(user_text)
        user_folded = user_text.casefold().strip()
        for candidate in self.candidates(assistant_text):
            key = candidate.casefold()
            if key in seen:
                continue
            seen.add(key)
            if self._overlaps(key, user_folded, user_words):
                continue
            topics.append(candidate)
            if len(topics) >= h.max_suggestions:
                break

        questions = [h.templates[i % len(h.templates)].format(topic=_lower_first(t)) for i, t in enumerate(topics)]
        for fallback in h.fallbacks:
            if len(questions) >= h.max_suggestions:
                break
            if fallback not in questions:
                questions.append(fallback)
        return questions[: h.max_suggestions]

    def candidates(self, assistant_text: str) -> List[str]:
        h = self.heuristics
        bullets: List[str] = []
        sentences: List[str] = []
        for line in assistant_text.splitlines():
            if not line.strip() or _HEADING_RE.match(line):
                continue
            match = _BULLET_RE.match(line)
            if match:
                item = _clean(match.group(1))
                if item and not _URL_RE.search(item) and len(item) <= h.max_sentence_chars:
                    bullets.append(item)
                continue
            for raw in _SENTENCE_SPLIT_RE.split(line.strip()):
                # 以冒号结尾的通常是小标题
                if raw.rstrip().endswith(":"):
                    continue
                sentence = _clean(raw)
                if not (h.min_sentence_chars <= len(sentence) <= h.max_sentence_chars):
                    continue
                if _URL_RE.search(sentence) or sentence.isupper():
                    continue
                sentences.append(sentence)
        return bullets or sentences

    def _overlaps(self, candidate: str, user_folded: str, user_words: set) -> bool:
        if not user_folded:
            return False
        if candidate in user_folded or user_folded in candidate:
            return True
        words = _words(candidate)
        if not words or not user_words:
            return False
        jaccard = len(words & user_words) / len(words | user_words)
        return jaccard >= self.heuristics.overlap_threshold


def _lower_first(text: str) -> str:
    if len(text) > 1 and text[0].isupper() and not text[1].isupper():
        return text[0].lower() + text[1:]
    return text
