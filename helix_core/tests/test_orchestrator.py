import asyncio
import itertools
import string

import pytest

from helix_core.core.orchestrator import StreamOrchestrator
from helix_core.domain.conversation import ConversationState, StreamStatus
from helix_core.domain.exceptions import (
    CapabilityError,
    MissingCredentialError,
    NetworkError,
    render_error_notice,
)
from helix_core.domain.models import Intent


async def test_partial_content_preserved_on_fault():
    state = ConversationState()
    orch = StreamOrchestrator(state, timeout=1.0)

    async def chunks():
        yield "Hello, "
        yield "world"
        raise NetworkError(code="NETWORK_ERROR", message="connection reset")

    outcome = await orch.run(chunks(), Intent.PROMPT)
    msg = state.find(outcome.message_id)
    assert msg.content.startswith("Hello, world")
    assert msg.content != "Hello, world"
    assert msg.content.endswith("⚠️ Stream interrupted: connection reset")
    assert outcome.partial is True
    assert outcome.status == StreamStatus.COMPLETED
    assert state.error == "connection reset"
    assert not state.is_streaming
    assert state.invariant_holds()


async def test_cancellation_preserves_prefix():
    state = ConversationState()
    orch = StreamOrchestrator(state, timeout=1.0)

    async def letters():
        for i, letter in enumerate(itertools.cycle(string.ascii_uppercase)):
            if i == 2:
                orch.cancel()
            yield letter

    outcome = await orch.run(letters())
    assert outcome.status == StreamStatus.CANCELLED
    assert state.find(outcome.message_id).content == "AB"
    assert state.status == StreamStatus.CANCELLED
    assert state.error is None
    assert state.invariant_holds()


async def test_cancel_interrupts_pending_chunk():
    state = ConversationState()
    orch = StreamOrchestrator(state, timeout=5.0)

    async def stalls_after_two():
        yield "A"
        yield "B"
        await asyncio.Event().wait()
        yield "C"

    task = asyncio.create_task(orch.run(stalls_after_two()))
    while orch.message is None or orch.message.content != "AB":
        await asyncio.sleep(0.005)
    orch.cancel()
    outcome = await asyncio.wait_for(task, 1.0)
    assert outcome.status == StreamStatus.CANCELLED
    assert outcome.content == "AB"


async def test_streaming_triple_is_set_while_streaming():
    state = ConversationState()
    orch = StreamOrchestrator(state, timeout=1.0)
    seen = []

    async def chunks():
        seen.append(
            (state.is_streaming, state.streaming_message_id == orch.message.id, state.active_cancellation is orch.token)
        )
        yield "x"

    await orch.run(chunks())
    assert seen == [(True, True, True)]
    assert state.streaming_message_id is None
    assert state.active_cancellation is None


async def test_timer_rearms_on_every_chunk():
    state = ConversationState()
    orch = StreamOrchestrator(state, timeout=0.2)

    async def steady():
        for i in range(6):
            await asyncio.sleep(0.05)
            yield str(i)

    outcome = await orch.run(steady())
    assert outcome.status == StreamStatus.COMPLETED
    assert outcome.content == "012345"
    assert outcome.error is None


async def test_silent_stream_times_out_once():
    state = ConversationState()
    orch = StreamOrchestrator(state, timeout=0.05)

    async def silent():
        await asyncio.sleep(10)
        yield "late"

    outcome = await orch.run(silent())
    assert outcome.status == StreamStatus.FAILED
    assert outcome.timed_out
    assert outcome.error_code == "STREAM_TIMEOUT"
    assistant = [m for m in state.messages if m.role == "assistant"]
    assert len(assistant) == 1
    assert assistant[0].content.startswith("❌ Error: No output received")


async def test_timeout_after_chunks_keeps_content():
    state = ConversationState()
    orch = StreamOrchestrator(state, timeout=0.05)

    async def stalls():
        yield "partial answer"
        await asyncio.sleep(10)
        yield "never"

    outcome = await orch.run(stalls())
    assert outcome.status == StreamStatus.COMPLETED
    assert outcome.partial is True
    assert outcome.content.startswith("partial answer\n\n⚠️ Stream interrupted:")


async def test_fault_before_first_chunk_replaces_content():
    state = ConversationState()
    orch = StreamOrchestrator(state, timeout=1.0)
    exc = CapabilityError(code="CAPABILITY_UNAVAILABLE", message="audio input not supported")

    async def broken():
        raise exc
        yield  # pragma: no cover

    outcome = await orch.run(broken())
    assert outcome.status == StreamStatus.FAILED
    assert outcome.content == render_error_notice(exc)
    assert state.find(outcome.message_id) is not None


async def test_empty_stream_fails():
    state = ConversationState()
    orch = StreamOrchestrator(state, timeout=1.0)

    async def nothing():
        return
        yield  # pragma: no cover

    outcome = await orch.run(nothing())
    assert outcome.status == StreamStatus.FAILED
    assert outcome.error_code == "EMPTY_STREAM"


async def test_opening_the_stream_counts_as_zero_chunk_fault():
    state = ConversationState()
    orch = StreamOrchestrator(state, timeout=1.0)

    async def open_stream():
        raise NetworkError(code="NETWORK_ERROR", message="refused")

    outcome = await orch.run(open_stream)
    assert outcome.status == StreamStatus.FAILED
    assert outcome.content == "❌ Error: refused"


async def test_reject_does_not_start_streaming():
    state = ConversationState()
    orch = StreamOrchestrator(state)
    exc = MissingCredentialError(code="MISSING_API_KEY", message="missing", provider="openai")
    outcome = orch.reject(exc, Intent.PROMPT)
    assert outcome.status == StreamStatus.FAILED
    assert "Missing provider credentials for openai" in outcome.content
    assert not state.is_streaming
    assert state.invariant_holds()


async def test_orchestrator_is_single_use():
    state = ConversationState()
    orch = StreamOrchestrator(state, timeout=1.0)

    async def one():
        yield "done"

    await orch.run(one())
    with pytest.raises(RuntimeError):
        await orch.run(one())


async def test_external_task_cancellation_marks_cancelled():
    state = ConversationState()
    orch = StreamOrchestrator(state, timeout=5.0)

    async def slow():
        yield "A"
        await asyncio.sleep(10)
        yield "B"

    task = asyncio.create_task(orch.run(slow()))
    while orch.message is None or orch.message.content != "A":
        await asyncio.sleep(0.005)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert state.status == StreamStatus.CANCELLED
    assert orch.message.content == "A"
    assert state.invariant_holds()


async def test_cancel_before_run_never_opens_the_stream():
    state = ConversationState()
    orch = StreamOrchestrator(state, timeout=1.0)
    opened = []

    def source():
        opened.append(True)
        return iter_chunks()

    async def iter_chunks():
        yield "never"

    orch.cancel()
    outcome = await orch.run(source, Intent.PROMPT)
    assert outcome.status == StreamStatus.CANCELLED
    assert opened == []
    assert state.invariant_holds()


async def test_finish_after_clear_keeps_conversation_idle():
    state = ConversationState()
    orch = StreamOrchestrator(state, timeout=5.0)

    async def slow():
        yield "A"
        await asyncio.sleep(10)
        yield "B"

    task = asyncio.create_task(orch.run(slow()))
    while orch.message is None or orch.message.content != "A":
        await asyncio.sleep(0.005)
    state.clear()
    outcome = await asyncio.wait_for(task, 1.0)
    assert outcome.status == StreamStatus.CANCELLED
    assert state.status == StreamStatus.IDLE
    assert state.messages == []
    assert state.invariant_holds()


async def test_timed_out_stream_is_cleaned_up_before_returning():
    state = ConversationState()
    orch = StreamOrchestrator(state, timeout=0.05)
    released = []

    async def hangs():
        try:
            await asyncio.sleep(10)
            yield "late"
        finally:
            await asyncio.sleep(0.01)
            released.append(True)

    outcome = await orch.run(hangs())
    assert outcome.timed_out
    assert released == [True]
