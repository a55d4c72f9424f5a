"""单次后端调用的流式编排。

状态机：Idle → Streaming → {Completed | Cancelled | Failed}，终态不可重入，
一个 StreamOrchestrator 实例只驱动一条流。

- 每收到一个增量就追加到助手消息，并重置活性计时器。
- 取消在应用每个增量之前检查；已追加的内容保留，状态为 Cancelled，不写错误信息。
- 零输出时超时或后端报错 → Failed，消息内容替换为错误提示。
- 至少一个增量之后超时或报错 → 保留已有内容并追加中断注记（部分成功）。
- 所有后端异常都在这里被转换为用户可见的消息，不会继续向上抛出。
"""

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import AsyncIterable, AsyncIterator, Awaitable, Callable, Optional, Union

from helix_core.domain.conversation import CancellationToken, ConversationState, Message, StreamStatus
from helix_core.domain.exceptions import (
    BusinessError,
    StreamTimeoutError,
    error_message,
    render_error_notice,
    render_interruption,
)
from helix_core.domain.models import Intent
from helix_core.infrastructure.logging.logger import logger

ChunkSource = Union[AsyncIterable[str], Callable[[], Awaitable[AsyncIterable[str]]]]

_END = object()


class _Interrupted(Exception):
    """内部信号：取消句柄被触发。"""


@dataclass
class StreamOutcome:
    message_id: int
    status: StreamStatus
    content: str
    chunks: int = 0
    partial: bool = False
    error: Optional[str] = None
    error_code: Optional[str] = None
    exception: Optional[BaseException] = field(default=None, repr=False)

    @property
    def timed_out(self) -> bool:
        return isinstance(self.exception, StreamTimeoutError)


def _discard(task: "asyncio.Future") -> None:
    if not task.cancelled():
        task.exception()


async def _next_chunk(iterator: AsyncIterator[str]):
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _END


async def _open(source: ChunkSource) -> AsyncIterator[str]:
    if callable(source) and not hasattr(source, "__aiter__"):
        source = source()
        if inspect.isawaitable(source):
            source = await source
    return source.__aiter__()


class StreamOrchestrator:
    def __init__(
        self,
        state: ConversationState,
        timeout: float = 30.0,
        backend_id: Optional[str] = None,
        close_timeout: float = 1.0,
    ):
        self._state = state
        self._timeout = timeout
        self._close_timeout = close_timeout
        self.backend_id = backend_id
        self._message: Optional[Message] = None
        # 取消句柄在构造时就存在：begin 之前收到的取消会在 run 开始时生效
        self._token = CancellationToken()
        self._pending: Optional[asyncio.Future] = None
        self._chunks = 0
        self.outcome: Optional[StreamOutcome] = None

    @property
    def message(self) -> Optional[Message]:
        return self._message

    @property
    def token(self) -> CancellationToken:
        return self._token

    @property
    def finished(self) -> bool:
        return self.outcome is not None

    def begin(self, intent: Optional[Intent] = None) -> Message:
        """Idle → Streaming：分配空的助手消息，挂上取消句柄。"""

        if self._message is not None:
            raise RuntimeError("stream orchestrator is single-use")
        self._message = self._state.append(Message.create("assistant", backend=self.backend_id))
        self._state.start_streaming(self._message.id, self._token, intent)
        return self._message

    def cancel(self, reason: str = "user") -> None:
        self._token.cancel(reason)

    def reject(self, exc: BaseException, intent: Optional[Intent] = None) -> StreamOutcome:
        """流开始之前就失败（解析错误、缺少凭据）：直接写入错误提示，不进入 Streaming。"""

        if self._message is not None:
            raise RuntimeError("stream orchestrator is single-use")
        self._message = self._state.append(
            Message.create("assistant", render_error_notice(exc), backend=self.backend_id, status="failed")
        )
        self._state.current_intent = intent
        self._state.status = StreamStatus.FAILED
        self._state.error = error_message(exc)
        self.outcome = StreamOutcome(
            message_id=self._message.id,
            status=StreamStatus.FAILED,
            content=self._message.content,
            error=self._state.error,
            error_code=getattr(exc, "code", None),
            exception=exc,
        )
        logger.info(
            "stream rejected",
            extra={"extra": {"backend": self.backend_id, "code": getattr(exc, "code", None)}},
        )
        return self.outcome

    async def run(self, source: ChunkSource, intent: Optional[Intent] = None) -> StreamOutcome:
        """消费增量序列直到终态，返回 StreamOutcome，不抛出后端异常。

        source 可以是异步可迭代对象，也可以是返回它的协程函数（打开流本身也受超时与取消约束）。
        """

        if self.outcome is not None:
            raise RuntimeError("stream already finished")
        if self._message is None:
            self.begin(intent)
        iterator: Optional[AsyncIterator[str]] = None
        try:
            if self._token.cancelled:
                return self._finish(StreamStatus.CANCELLED)
            iterator = await self._race(_open(source))
            while True:
                piece = await self._race(_next_chunk(iterator))
                if piece is _END:
                    break
                # 取消之后到达的增量直接丢弃
                if self._token.cancelled:
                    return self._finish(StreamStatus.CANCELLED)
                if not piece:
                    continue
                self._message.content += piece
                self._chunks += 1
            if self._chunks == 0:
                return self._fail(
                    BusinessError(code="EMPTY_STREAM", message="No output received from the model.")
                )
            return self._finish(StreamStatus.COMPLETED)
        except _Interrupted:
            return self._finish(StreamStatus.CANCELLED)
        except asyncio.CancelledError:
            self._finish(StreamStatus.CANCELLED)
            raise
        except Exception as exc:
            return self._fail(exc)
        finally:
            await self._close(iterator)

    async def _race(self, aw: Awaitable):
        """等待 aw、取消信号或超时中最先发生的一个。"""

        step = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._token.wait())
        self._pending = step
        try:
            done, _ = await asyncio.wait({step, waiter}, timeout=self._timeout, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            step.cancel()
            step.add_done_callback(_discard)
            raise
        finally:
            waiter.cancel()
        if step in done:
            self._pending = None
            return step.result()
        # 给被取消的步骤一个短暂的收尾时间（生成器的 finally 会销毁一次性会话）；
        # 期间产出的内容被丢弃
        step.cancel()
        await self._settle(step)
        if waiter in done:
            raise _Interrupted()
        raise StreamTimeoutError(
            code="STREAM_TIMEOUT",
            message=f"No output received from the model within {self._timeout:g}s.",
            http_status=504,
            backend=self.backend_id,
        )

    async def _settle(self, step: "asyncio.Future") -> None:
        try:
            await asyncio.wait({step}, timeout=self._close_timeout)
        finally:
            if step.done():
                _discard(step)
            else:
                logger.warning(
                    "stream step did not settle after cancel",
                    extra={"extra": {"backend": self.backend_id, "timeout": self._close_timeout}},
                )
                step.add_done_callback(_discard)

    async def _close(self, iterator: Optional[AsyncIterator[str]]) -> None:
        if iterator is None or not hasattr(iterator, "aclose"):
            return
        if self._pending is not None and not self._pending.done():
            # 挂起的 __anext__ 被取消时生成器会自行结束
            return
        try:
            await iterator.aclose()
        except Exception:
            logger.debug("stream close failed", exc_info=True, extra={"extra": {"backend": self.backend_id}})

    def _fail(self, exc: BaseException) -> StreamOutcome:
        if self._chunks > 0:
            self._message.content += render_interruption(exc)
            return self._finish(StreamStatus.COMPLETED, exc, partial=True)
        self._message.content = render_error_notice(exc)
        return self._finish(StreamStatus.FAILED, exc)

    def _finish(
        self, status: StreamStatus, exc: Optional[BaseException] = None, partial: bool = False
    ) -> StreamOutcome:
        error = error_message(exc) if exc is not None else None
        # 对话在流结束前被清空（或已开始新的流）时不再改写对话状态
        if self._state.streaming_message_id == self._message.id:
            self._state.finish_streaming(status, error)
        self._message.meta["status"] = status.value
        if partial:
            self._message.meta["partial"] = True
        self.outcome = StreamOutcome(
            message_id=self._message.id,
            status=status,
            content=self._message.content,
            chunks=self._chunks,
            partial=partial,
            error=error,
            error_code=getattr(exc, "code", None),
            exception=exc,
        )
        log = logger.warning if exc is not None else logger.info
        log(
            "stream finished",
            extra={
                "extra": {
                    "backend": self.backend_id,
                    "status": status.value,
                    "chunks": self._chunks,
                    "code": self.outcome.error_code,
                }
            },
        )
        return self.outcome
