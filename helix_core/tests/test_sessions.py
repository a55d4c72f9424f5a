import pytest

from helix_core.core.sessions import SessionManager
from helix_core.domain.exceptions import ApiError, CapabilityError
from helix_core.domain.models import BackendConfig, MediaPart
from helix_core.providers.base import SessionHandle, SessionOptions


class FakeBackend:
    """按脚本决定 create 成败的假后端。"""

    kind = "local"

    def __init__(self, name="local", reject_inputs=False, fail_with=None, destroy_fails=False):
        self.name = name
        self.reject_inputs = reject_inputs
        self.fail_with = fail_with
        self.destroy_fails = destroy_fails
        self.create_calls = []
        self.destroyed = []
        self.appended = []

    async def availability(self):
        return "ready"

    async def create(self, config, options=None):
        options = options or SessionOptions()
        self.create_calls.append(list(options.expected_inputs))
        if self.fail_with is not None:
            raise self.fail_with
        if self.reject_inputs and options.expected_inputs:
            raise CapabilityError(code="CAPABILITY_UNAVAILABLE", message="image input not supported")
        return SessionHandle.new(self.name, config.model_id, options)

    async def prompt_streaming(self, handle, text):
        for piece in ("echo: ", text):
            yield piece

    async def prompt(self, handle, text):
        return "echo: " + text

    async def append(self, handle, parts):
        self.appended.extend(parts)

    async def destroy(self, handle):
        self.destroyed.append(handle.id)
        if self.destroy_fails:
            raise RuntimeError("session already gone")


def manager(backend):
    return SessionManager(lambda provider: backend)


LOCAL = BackendConfig(provider_id="local", model_id="llama3.2")


async def test_capability_failure_retries_once_without_optional_inputs():
    backend = FakeBackend(reject_inputs=True)
    sessions = manager(backend)

    handle = await sessions.get_or_create(LOCAL, SessionOptions(expected_inputs=["image"]))

    assert backend.create_calls == [["image"], []]
    assert handle.options.expected_inputs == []
    assert handle.meta["requested_inputs"] == ["image"]


async def test_other_failures_are_not_retried():
    backend = FakeBackend(fail_with=ApiError(code="API_ERROR", message="boom"))
    sessions = manager(backend)

    with pytest.raises(ApiError):
        await sessions.get_or_create(LOCAL, SessionOptions(expected_inputs=["image"]))
    assert len(backend.create_calls) == 1
    assert not sessions.has_session()


async def test_capability_failure_without_optional_inputs_is_raised():
    backend = FakeBackend(fail_with=CapabilityError(code="CAPABILITY_UNAVAILABLE", message="no"))
    with pytest.raises(CapabilityError):
        await manager(backend).get_or_create(LOCAL)
    assert backend.create_calls == [[]]


async def test_session_is_reused():
    backend = FakeBackend()
    sessions = manager(backend)

    first = await sessions.get_or_create(LOCAL)
    second = await sessions.get_or_create(LOCAL)

    assert first is second
    assert len(backend.create_calls) == 1


async def test_downgraded_session_is_reused_for_same_inputs():
    backend = FakeBackend(reject_inputs=True)
    sessions = manager(backend)
    opts = SessionOptions(expected_inputs=["image"])

    first = await sessions.get_or_create(LOCAL, opts)
    second = await sessions.get_or_create(LOCAL, opts)

    assert first is second
    assert len(backend.create_calls) == 2


async def test_model_change_recreates_session():
    backend = FakeBackend()
    sessions = manager(backend)

    first = await sessions.get_or_create(LOCAL)
    second = await sessions.get_or_create(BackendConfig(provider_id="local", model_id="qwen2.5"))

    assert first is not second
    assert first.destroyed
    assert backend.destroyed == [first.id]


async def test_destroy_is_best_effort():
    backend = FakeBackend(destroy_fails=True)
    sessions = manager(backend)
    handle = await sessions.get_or_create(LOCAL)

    await sessions.destroy("default")

    assert handle.destroyed
    assert not sessions.has_session()
    # 重复销毁不报错
    await sessions.destroy("default")
    await sessions.destroy(handle)


async def test_ephemeral_session_is_destroyed_after_use():
    backend = FakeBackend()
    sessions = manager(backend)

    async with sessions.ephemeral(LOCAL) as handle:
        assert not handle.destroyed
    assert handle.destroyed
    assert backend.destroyed == [handle.id]


async def test_stream_ephemeral_appends_supported_media_only():
    backend = FakeBackend()
    sessions = manager(backend)
    image = MediaPart(kind="image", data="AAAA")
    audio = MediaPart(kind="audio", data="UklGRg==")

    pieces = [
        p
        async for p in sessions.stream_ephemeral(
            LOCAL, "hi", SessionOptions(expected_inputs=["image"]), media=[image, audio]
        )
    ]

    assert "".join(pieces) == "echo: hi"
    assert backend.appended == [image]
    assert len(backend.destroyed) == 1


async def test_backends_are_cached_per_provider():
    made = []

    def factory(provider):
        made.append(provider)
        return FakeBackend(name=provider)

    sessions = SessionManager(factory)
    assert sessions.backend_for("OpenAI") is sessions.backend_for("openai")
    assert made == ["openai"]
