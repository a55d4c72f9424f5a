import asyncio

import pytest

from helix_core.agents.chat_agent import ChatAssistant
from helix_core.api.service import AssistantService, Attachment, HostRequest, HostResponse, RequestKind
from helix_core.core.credentials import ChainedCredentialVault, MemoryCredentialVault
from helix_core.core.fanout import FanoutCoordinator
from helix_core.core.page_cache import PageContextCache
from helix_core.core.resolver import BackendResolver
from helix_core.core.sessions import SessionManager
from helix_core.domain.exceptions import ValidationError
from helix_core.infrastructure.storage.json_store import MemoryStateStore
from helix_core.providers.base import SessionHandle, SessionOptions


class SettingsStub:
    stream_timeout = 1.0
    fanout_stream_timeout = 1.0
    fanout_backends = []
    host_call_timeout = 0.05
    context_prompt_chars = 2000
    default_backend = "local"
    default_provider = "openai"
    default_model = None
    local_model = "llama3.2"
    local_temperature = None
    local_top_k = None


class EchoBackend:
    def __init__(self, name, availability_delay=0.0):
        self.name = name
        self._delay = availability_delay
        self.prompts = []

    async def availability(self):
        await asyncio.sleep(self._delay)
        return "ready"

    async def create(self, config, options=None):
        return SessionHandle.new(self.name, config.model_id, options or SessionOptions(), credential=config.credential)

    async def prompt_streaming(self, handle, text):
        self.prompts.append(text)
        yield "echo: "
        yield text

    async def prompt(self, handle, text):
        return "".join([p async for p in self.prompt_streaming(handle, text)])

    async def append(self, handle, parts):
        handle.pending_media.extend(parts)

    async def destroy(self, handle):
        pass


def build(availability_delay=0.0, sweep_interval=300.0):
    settings = SettingsStub()
    backends = {
        "local": EchoBackend("local", availability_delay),
        "openai": EchoBackend("openai"),
    }
    sessions = SessionManager(lambda provider: backends[provider])
    host_vault = MemoryCredentialVault()
    vault = ChainedCredentialVault(host_vault)
    cache = PageContextCache(store=MemoryStateStore(), sweep_interval=sweep_interval)
    assistant = ChatAssistant(BackendResolver(vault, settings), sessions, cache, settings)
    fanout = FanoutCoordinator(sessions, vault, settings)
    service = AssistantService(assistant, fanout, cache, app_settings=settings, vault=host_vault)
    return service, backends


async def test_submit_prompt():
    service, backends = build()
    resp = await service.handle({"kind": "submit-prompt", "text": "hello"})
    assert isinstance(resp, HostResponse)
    assert resp.success
    assert resp.data["content"] == "echo: hello"
    assert resp.data["status"] == "completed"
    assert resp.data["intent"] == "prompt"


async def test_unknown_kind():
    service, _ = build()
    resp = await service.handle({"kind": "dance"})
    assert not resp.success
    assert resp.code == "UNKNOWN_REQUEST"


async def test_invalid_payload():
    service, _ = build()
    resp = await service.handle({"text": "no kind"})
    assert resp.code == "INVALID_REQUEST"
    resp = await service.handle({"kind": "status", "timeout": -1})
    assert resp.code == "INVALID_REQUEST"


async def test_invalid_intent_falls_back_to_prompt():
    service, backends = build()
    resp = await service.handle(HostRequest(kind="submit-prompt", text="hi", intent="dance"))
    assert resp.success
    assert resp.data["intent"] == "prompt"
    assert backends["local"].prompts == ["hi"]


async def test_submit_prompt_with_intent_alias():
    service, backends = build()
    resp = await service.handle({"kind": "submit-prompt", "text": "teh text", "intent": "proofreader"})
    assert resp.data["intent"] == "proofread"
    assert "teh text" in backends["local"].prompts[0]


async def test_translate_requires_target_language():
    service, _ = build()
    resp = await service.handle({"kind": "translate", "text": "hola"})
    assert not resp.success
    assert resp.code == "INVALID_REQUEST"


async def test_translate_same_language():
    service, _ = build()
    resp = await service.handle(
        {"kind": "translate", "text": "hello", "target_language": "English", "source_language": "english"}
    )
    assert resp.success
    assert "No translation needed" in resp.data["content"]


async def test_missing_credential_is_reported():
    service, _ = build()
    service.set_user_config({"aiProvider": "openai"})
    resp = await service.handle({"kind": "submit-prompt", "text": "hello"})
    assert not resp.success
    assert resp.code == "MISSING_API_KEY"

    service.store_credential("openai", "sk-host-0000000000")
    resp = await service.handle({"kind": "submit-prompt", "text": "hello"})
    assert resp.success


async def test_status_call_times_out():
    service, _ = build(availability_delay=1.0)
    resp = await service.handle({"kind": "status"})
    assert not resp.success
    assert resp.code == "HOST_TIMEOUT"


async def test_unexpected_errors_are_encoded():
    service, _ = build()

    async def boom(req):
        raise KeyError("kaput")

    service._handlers[RequestKind.SUBMIT_PROMPT] = boom
    resp = await service.handle({"kind": "submit-prompt", "text": "x"})
    assert not resp.success
    assert resp.code == "INTERNAL_ERROR"


async def test_unsupported_attachment_kind():
    service, _ = build()
    resp = await service.handle(
        {"kind": "submit-prompt", "text": "x", "attachments": [{"kind": "video", "data": "AAAA"}]}
    )
    assert resp.code == "INVALID_ATTACHMENT"
    with pytest.raises(ValidationError):
        Attachment(kind="video", data="AAAA").to_part()


async def test_stop_and_clear():
    service, _ = build()
    resp = await service.handle({"kind": "stop"})
    assert resp.success
    assert resp.data == {"stopped": False}

    await service.handle({"kind": "submit-prompt", "text": "hello"})
    resp = await service.handle({"kind": "clear"})
    assert resp.success
    assert service.assistant.state.messages == []


async def test_fanout_request():
    service, _ = build()
    service.store_credential("openai", "sk-host-0000000000")
    resp = await service.handle({"kind": "fanout", "text": "hi", "backend_ids": ["gpt-4o", "o3-mini"]})
    assert resp.success
    assert resp.data["representative"] == "gpt-4o"
    assert set(resp.data["backends"]) == {"gpt-4o", "o3-mini"}


async def test_page_callbacks_feed_context():
    service, backends = build()
    url = "https://news.example/story"
    await service.on_page_extracted("tab-9", "Story", url, "The mayor opened a new bridge.")

    await service.handle({"kind": "submit-prompt", "text": "What is this page about?", "context_id": "tab-9", "url": url})
    assert "The mayor opened a new bridge." in backends["local"].prompts[0]

    await service.on_navigation("tab-9", "chrome://newtab")
    assert await service.cache.get("tab-9") is None


async def test_service_lifecycle_runs_cache_sweeper():
    service, _ = build(sweep_interval=0.01)
    await service.on_page_extracted("tab-1", "Kept", "https://a.example", "still open")
    await service.on_page_extracted("tab-2", "Gone", "https://b.example", "closed tab")

    async def alive():
        return ["tab-1"]

    service.start(alive)
    for _ in range(100):
        if await service.cache.get("tab-2") is None:
            break
        await asyncio.sleep(0.01)

    assert await service.cache.get("tab-2") is None
    assert await service.cache.get("tab-1") is not None

    await service.handle({"kind": "submit-prompt", "text": "hello"})
    await service.aclose()
    assert service.cache._sweeper is None
    resp = await service.handle({"kind": "stop"})
    assert resp.data == {"stopped": False}
