"""
Realtime data-channel message codec.

The realtime endpoint speaks JSON events over the "chat" data channel:

Inbound (selected):
- response.text.done: final assistant text
- response.audio_transcript.done / response.output_audio_transcript.done: what the assistant said
- conversation.item.input_audio_transcription.completed: what the user said
- error: provider-side error

Outbound:
- conversation.item.create: add a user text message to the conversation
- response.create: ask the assistant to respond
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

import msgspec
import structlog

logger = structlog.get_logger(__name__)

# Create global msgspec encoder/decoder
decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()


class RealtimeEventType(str, Enum):
    """Realtime data-channel event types this client understands."""
    SESSION_CREATED = "session.created"
    SESSION_UPDATED = "session.updated"
    RESPONSE_TEXT_DONE = "response.text.done"
    RESPONSE_AUDIO_TRANSCRIPT_DONE = "response.audio_transcript.done"
    RESPONSE_OUTPUT_AUDIO_TRANSCRIPT_DONE = "response.output_audio_transcript.done"
    INPUT_TRANSCRIPTION_COMPLETED = "conversation.item.input_audio_transcription.completed"
    RESPONSE_DONE = "response.done"
    ERROR = "error"


class ChatSender(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class ChatMessage:
    """A chat line surfaced to the UI layer."""
    sender: ChatSender
    text: str


_ASSISTANT_TEXT_FIELDS: Dict[RealtimeEventType, str] = {
    RealtimeEventType.RESPONSE_TEXT_DONE: "text",
    RealtimeEventType.RESPONSE_AUDIO_TRANSCRIPT_DONE: "transcript",
    RealtimeEventType.RESPONSE_OUTPUT_AUDIO_TRANSCRIPT_DONE: "transcript",
}


def parse_realtime_message(raw_message: Union[str, bytes]) -> tuple[Optional[RealtimeEventType], Dict[str, Any]]:
    """
    Parse a raw data-channel message.

    Returns:
        Tuple of (event_type or None if unknown, decoded event dict)

    Raises:
        ValueError: If the message is not a JSON object
    """
    try:
        message = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
    except msgspec.DecodeError as e:
        raise ValueError(f"Invalid JSON: {e}")

    if not isinstance(message, dict):
        raise ValueError("Realtime event must be a JSON object")

    try:
        event_type: Optional[RealtimeEventType] = RealtimeEventType(message.get("type", ""))
    except ValueError:
        event_type = None

    return event_type, message


def chat_message_from_event(raw_message: Union[str, bytes]) -> Optional[ChatMessage]:
    """
    Extract a chat line from an inbound data-channel message.

    Non-JSON payloads are surfaced verbatim as assistant text. JSON events
    that carry no finished text (deltas, session updates) return None.
    """
    try:
        event_type, event = parse_realtime_message(raw_message)
    except ValueError:
        text = raw_message.decode("utf-8", errors="replace") if isinstance(raw_message, bytes) else raw_message
        text = text.strip()
        return ChatMessage(sender=ChatSender.ASSISTANT, text=text) if text else None

    if event_type is None:
        return None

    if event_type == RealtimeEventType.ERROR:
        error = event.get("error") or {}
        logger.warning(
            "Realtime provider error",
            code=error.get("code") if isinstance(error, dict) else None,
            message=error.get("message") if isinstance(error, dict) else str(error),
        )
        return None

    if event_type == RealtimeEventType.INPUT_TRANSCRIPTION_COMPLETED:
        transcript = str(event.get("transcript") or "").strip()
        return ChatMessage(sender=ChatSender.USER, text=transcript) if transcript else None

    field_name = _ASSISTANT_TEXT_FIELDS.get(event_type)
    if field_name is None:
        return None

    text = str(event.get(field_name) or "").strip()
    return ChatMessage(sender=ChatSender.ASSISTANT, text=text) if text else None


def encode_event(event: Dict[str, Any]) -> str:
    return encoder.encode(event).decode("utf-8")


def create_user_message(text: str) -> str:
    """
    Create a conversation.item.create event carrying user text.

    Args:
        text: The user's chat message

    Returns:
        JSON string to send on the data channel
    """
    message = {
        "type": "conversation.item.create",
        "item": {
            "type": "message",
            "role": "user",
            "content": [{"type": "input_text", "text": text}],
        },
    }

    return encode_event(message)


def create_response_request() -> str:
    """Create a response.create event asking for an audio+text reply."""
    message = {
        "type": "response.create",
        "response": {"modalities": ["audio", "text"]},
    }

    return encode_event(message)
