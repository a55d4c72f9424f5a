import asyncio
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Protocol

from .models import Intent, MediaPart

Role = Literal["user", "assistant"]


class StreamStatus(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (StreamStatus.COMPLETED, StreamStatus.CANCELLED, StreamStatus.FAILED)


_id_lock = threading.Lock()
_last_message_id = 0


def new_message_id() -> int:
    """生成基于毫秒时间戳、严格单调递增的消息 ID。"""

    global _last_message_id
    with _id_lock:
        candidate = int(time.time() * 1000)
        if candidate <= _last_message_id:
            candidate = _last_message_id + 1
        _last_message_id = candidate
        return candidate


@dataclass
class Message:
    id: int
    role: Role
    content: str = ""
    attachments: List[MediaPart] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    meta: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(cls, role: Role, content: str = "", attachments: Optional[List[MediaPart]] = None, **meta) -> "Message":
        return cls(id=new_message_id(), role=role, content=content, attachments=list(attachments or []), meta=meta)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "attachments": [{"kind": p.kind, "mime_type": p.media_type} for p in self.attachments],
            "created_at": self.created_at.isoformat(),
            "meta": dict(self.meta),
        }


class CancellationToken:
    """协作式取消句柄，每个流独占一个。"""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "user") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class ConversationState:
    """一段对话的状态。

    单后端流程只有一个实例；多后端并发时每个后端 ID 各一个实例。
    不变式：is_streaming 为真 ⇔ streaming_message_id 非空 ⇔ active_cancellation 非空。
    """

    messages: List[Message] = field(default_factory=list)
    is_streaming: bool = False
    streaming_message_id: Optional[int] = None
    active_cancellation: Optional[CancellationToken] = None
    current_intent: Optional[Intent] = None
    status: StreamStatus = StreamStatus.IDLE
    error: Optional[str] = None

    def append(self, message: Message) -> Message:
        self.messages.append(message)
        return message

    def find(self, message_id: int) -> Optional[Message]:
        for msg in reversed(self.messages):
            if msg.id == message_id:
                return msg
        return None

    def last_assistant(self) -> Optional[Message]:
        for msg in reversed(self.messages):
            if msg.role == "assistant":
                return msg
        return None

    def start_streaming(self, message_id: int, token: CancellationToken, intent: Optional[Intent]) -> None:
        if self.is_streaming:
            raise RuntimeError("conversation already has an active stream")
        self.is_streaming = True
        self.streaming_message_id = message_id
        self.active_cancellation = token
        self.current_intent = intent
        self.status = StreamStatus.STREAMING
        self.error = None

    def finish_streaming(self, status: StreamStatus, error: Optional[str] = None) -> None:
        self.is_streaming = False
        self.streaming_message_id = None
        self.active_cancellation = None
        self.status = status
        self.error = error

    def invariant_holds(self) -> bool:
        flags = {self.is_streaming, self.streaming_message_id is not None, self.active_cancellation is not None}
        return len(flags) == 1

    def clear(self) -> None:
        """原子地清空整段对话（不支持单条删除）。"""

        if self.active_cancellation is not None:
            self.active_cancellation.cancel("clear")
        self.messages = []
        self.is_streaming = False
        self.streaming_message_id = None
        self.active_cancellation = None
        self.current_intent = None
        self.status = StreamStatus.IDLE
        self.error = None

    def snapshot(self) -> Dict[str, Any]:
        return {
            "messages": [m.to_dict() for m in self.messages],
            "is_streaming": self.is_streaming,
            "streaming_message_id": self.streaming_message_id,
            "status": self.status.value,
            "current_intent": self.current_intent.value if self.current_intent else None,
            "error": self.error,
        }


class StateStore(Protocol):
    """键值状态存储（页面缓存、下载进度等共用）。"""

    def get(self, key: str) -> Optional[Any]:
        ...

    def set(self, key: str, value: Any) -> None:
        ...

    def append(self, key: str, value: Dict[str, Any]) -> Dict[str, Any]:
        ...

    def delete(self, key: str) -> None:
        ...

    def keys(self) -> List[str]:
        ...
