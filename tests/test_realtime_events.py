import json

import pytest

from src.voice_assistant.realtime_events import (
    ChatMessage,
    ChatSender,
    RealtimeEventType,
    chat_message_from_event,
    create_response_request,
    create_user_message,
    parse_realtime_message,
)


def test_parse_known_event():
    event_type, event = parse_realtime_message('{"type": "session.created", "session": {"id": "s"}}')

    assert event_type == RealtimeEventType.SESSION_CREATED
    assert event["session"]["id"] == "s"


def test_parse_unknown_event_type_returns_none():
    event_type, event = parse_realtime_message(b'{"type": "response.audio.delta", "delta": "AAAA"}')

    assert event_type is None
    assert event["delta"] == "AAAA"


@pytest.mark.parametrize("raw", ["not json", "[1, 2]"])
def test_parse_rejects_non_objects(raw):
    with pytest.raises(ValueError):
        parse_realtime_message(raw)


def test_assistant_transcript_becomes_chat_line():
    raw = json.dumps({"type": "response.audio_transcript.done", "transcript": " Hello there "})

    assert chat_message_from_event(raw) == ChatMessage(ChatSender.ASSISTANT, "Hello there")


def test_text_response_becomes_chat_line():
    raw = json.dumps({"type": "response.text.done", "text": "Sure."})

    assert chat_message_from_event(raw) == ChatMessage(ChatSender.ASSISTANT, "Sure.")


def test_input_transcription_is_attributed_to_user():
    raw = json.dumps({
        "type": "conversation.item.input_audio_transcription.completed",
        "transcript": "what time is it",
    })

    assert chat_message_from_event(raw) == ChatMessage(ChatSender.USER, "what time is it")


def test_plain_text_payload_passes_through_verbatim():
    assert chat_message_from_event("hello from the model") == ChatMessage(
        ChatSender.ASSISTANT, "hello from the model"
    )


@pytest.mark.parametrize(
    "event",
    [
        {"type": "session.updated"},
        {"type": "response.audio.delta", "delta": "AAAA"},
        {"type": "response.text.done", "text": ""},
        {"type": "error", "error": {"code": "invalid_value", "message": "bad"}},
    ],
)
def test_events_without_finished_text_yield_nothing(event):
    assert chat_message_from_event(json.dumps(event)) is None


def test_user_message_and_response_request_shapes():
    item = json.loads(create_user_message("hi there"))
    request = json.loads(create_response_request())

    assert item["type"] == "conversation.item.create"
    assert item["item"]["role"] == "user"
    assert item["item"]["content"] == [{"type": "input_text", "text": "hi there"}]
    assert request["type"] == "response.create"
