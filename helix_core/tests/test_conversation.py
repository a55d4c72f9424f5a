import pytest

from helix_core.domain.conversation import (
    CancellationToken,
    ConversationState,
    Message,
    StreamStatus,
    new_message_id,
)
from helix_core.domain.exceptions import (
    CapabilityError,
    MissingCredentialError,
    NetworkError,
    render_error_notice,
    retries_for,
)
from helix_core.domain.models import (
    BackendConfig,
    Intent,
    MediaPart,
    UserConfig,
    WritingOptions,
)


def test_message_ids_are_strictly_increasing():
    ids = [new_message_id() for _ in range(50)]
    assert ids == sorted(set(ids))


def test_message_create_and_dict():
    msg = Message.create("user", "hi", [MediaPart(kind="image", data="data:image/jpeg;base64,AAAA")], intent="prompt")
    data = msg.to_dict()
    assert data["role"] == "user"
    assert data["attachments"] == [{"kind": "image", "mime_type": "image/jpeg"}]
    assert data["meta"] == {"intent": "prompt"}


async def test_conversation_streaming_lifecycle():
    state = ConversationState()
    msg = state.append(Message.create("assistant"))
    token = CancellationToken()

    state.start_streaming(msg.id, token, Intent.PROMPT)
    assert state.invariant_holds()
    assert state.status == StreamStatus.STREAMING
    with pytest.raises(RuntimeError):
        state.start_streaming(msg.id, CancellationToken(), Intent.PROMPT)

    state.finish_streaming(StreamStatus.COMPLETED)
    assert state.invariant_holds()
    assert state.status.is_terminal
    assert state.last_assistant() is msg


async def test_clear_cancels_active_stream():
    state = ConversationState()
    msg = state.append(Message.create("assistant"))
    token = CancellationToken()
    state.start_streaming(msg.id, token, Intent.SUMMARIZE)

    state.clear()

    assert token.cancelled
    assert token.reason == "clear"
    assert state.messages == []
    assert state.status == StreamStatus.IDLE
    assert state.invariant_holds()
    assert state.snapshot()["messages"] == []


@pytest.mark.parametrize(
    "name,intent",
    [
        ("prompt", Intent.PROMPT),
        ("Summarise", Intent.SUMMARIZE),
        ("translator", Intent.TRANSLATE),
        ("writer", Intent.WRITE),
        ("rewriter", Intent.REWRITE),
        ("proofreader", Intent.PROOFREAD),
    ],
)
def test_intent_parse_aliases(name, intent):
    assert Intent.parse(name) is intent


def test_intent_parse_rejects_unknown():
    with pytest.raises(ValueError):
        Intent.parse("dance")


def test_user_config_from_storage():
    config = UserConfig.from_storage(
        {
            "aiProvider": "OpenAI",
            "aiModel": "gpt-4o",
            "intentOverrides": {
                "translator": {"aiProvider": "gemini", "aiModel": "gemini-2.5-pro"},
                "unknown-intent": "openai",
            },
        }
    )
    assert config.default.kind == "remote"
    assert config.default.provider_id == "openai"
    assert config.overrides[Intent.TRANSLATE].model_id == "gemini-2.5-pro"
    assert list(config.overrides) == [Intent.TRANSLATE]
    assert UserConfig.from_storage(None).default is None


def test_media_part_data_url_handling():
    part = MediaPart(kind="image", data="data:image/webp;base64,QUJD")
    assert part.split() == ("image/webp", "QUJD")
    assert MediaPart(kind="audio", data="QUJD").as_data_url() == "data:audio/wav;base64,QUJD"
    assert MediaPart.from_bytes("image", b"ABC").base64_data == "QUJD"


def test_rewriter_options_map_writer_values():
    opts = WritingOptions.from_mapping({"tone": "formal", "length": "short", "format": "weird"})
    assert opts.for_rewriter() == {"tone": "more-formal", "format": "as-is", "length": "shorter"}
    assert WritingOptions().for_writer() == {"tone": "neutral", "format": "plain-text", "length": "medium"}


def test_backend_config_masks_credential():
    assert "sk-secret" not in repr(BackendConfig(provider_id="openai", model_id="gpt-4o", credential="sk-secret"))


def test_error_notices():
    assert render_error_notice(NetworkError(code="NETWORK_ERROR", message="timed out")) == "❌ Error: timed out"
    gesture = render_error_notice(RuntimeError("Requires a user gesture"))
    assert gesture.endswith("Please click here and try again.")
    missing = render_error_notice(MissingCredentialError(code="MISSING_API_KEY", message="x", provider="gemini"))
    assert "Missing provider credentials for gemini" in missing


def test_retry_policy_covers_capability_errors_only():
    assert retries_for(CapabilityError(code="CAPABILITY_UNAVAILABLE", message="no")) == 1
    assert retries_for(NetworkError(code="NETWORK_ERROR", message="no")) == 0
    assert retries_for(NetworkError(code="NETWORK_ERROR", message="no"), {NetworkError: 2}) == 2
    assert retries_for(CapabilityError(code="CAPABILITY_UNAVAILABLE", message="no"), {}) == 0
