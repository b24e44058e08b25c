"""
Lifecycle tests for the session coordinator.

Wake/stop recognition, the broker and the peer connection are all faked; the
coordinator, listeners, credential cache and session factory are real.
"""

import asyncio
import json
from dataclasses import replace
from typing import List, Tuple
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from src.voice_assistant.backend import SessionGrant, SpeechToken
from src.voice_assistant.config import get_config
from src.voice_assistant.coordinator import (
    STATUS_CHANNEL_CLOSED,
    STATUS_STOP_DETECTED,
    STATUS_WAKE_DETECTED,
    STATUS_WAKE_UNAVAILABLE,
    CoordinatorState,
    SessionCoordinator,
    listening_status,
)
from src.voice_assistant.credentials import CredentialCache
from src.voice_assistant.errors import (
    ChannelNotOpenError,
    CredentialFetchError,
    CredentialRejectedError,
    ListenerStartError,
    NegotiationError,
)
from src.voice_assistant.listener import PhraseListener
from src.voice_assistant.observer import CallbackObserver
from src.voice_assistant.realtime import RealtimeSessionFactory
from src.voice_assistant.realtime_events import ChatSender
from tests.fakes import (
    FakeAudioSink,
    FakeCapture,
    FakePeerConnection,
    FakeRecognitionEngine,
    FakeTrack,
)

LISTENING = listening_status(("assistant", "hey assistant"))


class Harness:
    def __init__(self, **config_overrides):
        self.config = replace(get_config(), **config_overrides)
        self.wake_engine = FakeRecognitionEngine()
        self.stop_engine = FakeRecognitionEngine()
        self.pcs: List[FakePeerConnection] = []
        self.captures: List[FakeCapture] = []
        self.logs: List[str] = []
        self.chats: List[Tuple[ChatSender, str]] = []
        self.observer = CallbackObserver(
            on_log=self.logs.append,
            on_chat=lambda sender, text: self.chats.append((sender, text)),
        )
        self.sink = FakeAudioSink()
        self.pc_type = FakePeerConnection

        self.fetch_token = AsyncMock(
            return_value=SpeechToken(token="speech-token", region="eastus", expires_in=540)
        )
        self.credentials = CredentialCache(self.fetch_token, config=self.config)

        self.backend = AsyncMock()
        self.backend.fetch_session_grant.return_value = SessionGrant(
            ephemeral_secret="ek_test", session_id="sess_1"
        )
        self.backend.negotiate.return_value = "v=0\r\no=- answer"

        engines = {"wake": self.wake_engine, "stop": self.stop_engine}
        self.coordinator = SessionCoordinator(
            credentials=self.credentials,
            listener_factory=lambda name, phrases: PhraseListener(engines[name], phrases, name=name),
            sessions=RealtimeSessionFactory(
                self.backend,
                config=self.config,
                peer_factory=self._new_pc,
                capture_factory=self._new_capture,
            ),
            observer=self.observer,
            audio_sink=self.sink,
            config=self.config,
        )

    def _new_pc(self) -> FakePeerConnection:
        self.pcs.append(self.pc_type())
        return self.pcs[-1]

    def _new_capture(self) -> FakeCapture:
        self.captures.append(FakeCapture())
        return self.captures[-1]

    @property
    def state(self) -> CoordinatorState:
        return self.coordinator.state

    async def enabled(self) -> "Harness":
        await self.coordinator.start()
        self.coordinator.enable()
        await self.settle()
        return self

    async def settle(self) -> None:
        await self.coordinator.drain()
        self.assert_exclusive()

    async def say_wake(self, text: str = "hey assistant") -> None:
        self.wake_engine.current.say(text)
        await self.settle()

    async def say_stop(self, text: str = "stop") -> None:
        self.stop_engine.current.say(text)
        await self.settle()

    def assert_exclusive(self) -> None:
        snapshot = self.coordinator.snapshot()
        assert not (snapshot.wake_listening and snapshot.has_session)
        assert not (snapshot.wake_listening and snapshot.stop_listening)
        assert len(self.wake_engine.live_sessions) <= 1
        assert len(self.stop_engine.live_sessions) <= 1

    async def close(self) -> None:
        await self.coordinator.shutdown()


@pytest_asyncio.fixture
async def harness():
    h = Harness()
    yield h
    await h.close()


@pytest.mark.asyncio
async def test_starts_idle_until_enabled():
    h = Harness()
    await h.coordinator.start()
    await h.settle()

    assert h.state is CoordinatorState.IDLE
    assert h.observer.status == "Click 'Enable Assistant' to start listening."
    assert h.wake_engine.sessions == []
    await h.close()


@pytest.mark.asyncio
async def test_enable_starts_wake_listener(harness):
    await harness.enabled()

    assert harness.state is CoordinatorState.AWAITING_WAKE
    assert harness.coordinator.snapshot().wake_listening
    assert harness.observer.status == LISTENING
    assert harness.wake_engine.credentials[0].token == "speech-token"


@pytest.mark.asyncio
async def test_wake_phrase_opens_session(harness):
    await harness.enabled()
    await harness.say_wake("Hey Assistant, are you there?")

    snapshot = harness.coordinator.snapshot()
    assert harness.state is CoordinatorState.SESSION_ACTIVE
    assert snapshot.has_session
    assert snapshot.stop_listening
    assert not snapshot.wake_listening
    assert STATUS_WAKE_DETECTED in harness.observer.statuses
    harness.backend.fetch_session_grant.assert_awaited_once_with("gpt-4o-mini-realtime-preview", "verse")
    assert len(harness.pcs) == 1
    # Both listeners share the cached credential.
    assert harness.fetch_token.await_count == 1
    assert harness.stop_engine.credentials[0].token == "speech-token"


@pytest.mark.asyncio
async def test_channel_open_announces_chat_ready(harness):
    await harness.enabled()
    await harness.say_wake()

    harness.pcs[0].channels[0].remote_open()
    await harness.settle()

    assert harness.observer.status == "Session active! You can chat now. Say 'stop' to end."


@pytest.mark.asyncio
async def test_stop_phrase_tears_down_and_resumes_wake_listening(harness):
    await harness.enabled()
    await harness.say_wake()
    handle = harness.coordinator.session

    await harness.say_stop("ok please stop now")

    assert harness.state is CoordinatorState.AWAITING_WAKE
    assert STATUS_STOP_DETECTED in harness.observer.statuses
    assert harness.observer.status == LISTENING
    assert "Session ended. Returning to wake word listening." in harness.logs
    assert handle.teardown_count == 1
    assert harness.pcs[0].closed
    assert harness.captures[0].stop_count == 1
    assert harness.stop_engine.live_sessions == []
    assert len(harness.wake_engine.live_sessions) == 1
    assert len(harness.wake_engine.sessions) == 2


@pytest.mark.asyncio
async def test_wake_after_stop_opens_a_second_session(harness):
    await harness.enabled()
    await harness.say_wake()
    await harness.say_stop()
    await harness.say_wake()

    assert harness.state is CoordinatorState.SESSION_ACTIVE
    assert len(harness.pcs) == 2
    assert harness.pcs[0].close_count == 1
    assert not harness.pcs[1].closed


@pytest.mark.asyncio
async def test_grant_failure_returns_to_wake_listening(harness):
    harness.backend.fetch_session_grant.side_effect = CredentialFetchError(
        "Session grant request rejected: HTTP 500"
    )
    await harness.enabled()
    await harness.say_wake()

    snapshot = harness.coordinator.snapshot()
    assert harness.state is CoordinatorState.AWAITING_WAKE
    assert snapshot.wake_listening
    assert not snapshot.has_session
    assert harness.pcs == []
    assert harness.captures == []
    assert any("Failed to start session" in line for line in harness.logs)
    assert harness.observer.status == LISTENING


@pytest.mark.asyncio
async def test_signalling_failure_releases_media_and_returns_to_wake(harness):
    harness.backend.negotiate.side_effect = NegotiationError("Failed to establish session: HTTP 401")
    await harness.enabled()
    await harness.say_wake()

    assert harness.state is CoordinatorState.AWAITING_WAKE
    assert harness.pcs[0].close_count == 1
    assert harness.captures[0].stop_count == 1
    assert harness.stop_engine.sessions == []


@pytest.mark.asyncio
async def test_session_times_out():
    h = Harness(session_timeout_seconds=0.05)
    await h.enabled()
    await h.say_wake()

    await asyncio.sleep(0.1)
    await h.settle()

    assert h.state is CoordinatorState.AWAITING_WAKE
    assert "Session ended (auto timeout)" in h.logs
    assert h.pcs[0].closed
    await h.close()


@pytest.mark.asyncio
async def test_stop_phrase_cancels_timeout():
    h = Harness(session_timeout_seconds=0.1)
    await h.enabled()
    await h.say_wake()
    await h.say_stop()

    await asyncio.sleep(0.15)
    await h.settle()

    assert "Session ended (auto timeout)" not in h.logs
    assert h.state is CoordinatorState.AWAITING_WAKE
    assert len(h.wake_engine.sessions) == 2
    await h.close()


@pytest.mark.asyncio
async def test_remote_channel_close_ends_session(harness):
    await harness.enabled()
    await harness.say_wake()

    harness.pcs[0].channels[0].remote_open()
    harness.pcs[0].channels[0].remote_close()
    await harness.settle()

    assert harness.state is CoordinatorState.AWAITING_WAKE
    assert STATUS_CHANNEL_CLOSED in harness.observer.statuses
    assert harness.pcs[0].close_count == 1


@pytest.mark.asyncio
async def test_connection_failure_ends_session(harness):
    await harness.enabled()
    await harness.say_wake()

    harness.pcs[0].fail_connection()
    await harness.settle()

    assert harness.state is CoordinatorState.AWAITING_WAKE
    assert "Peer connection closed." in harness.logs
    assert harness.pcs[0].close_count == 1


class FailsAfterAnswer(FakePeerConnection):
    """Drops the connection right after the answer is applied."""

    async def setRemoteDescription(self, description):
        await super().setRemoteDescription(description)
        asyncio.get_running_loop().call_soon(self.fail_connection)


@pytest.mark.asyncio
async def test_connection_lost_before_session_is_adopted_still_ends_it():
    h = Harness(session_timeout_seconds=30)
    h.pc_type = FailsAfterAnswer
    await h.enabled()
    await h.say_wake()
    await h.settle()

    assert h.state is CoordinatorState.AWAITING_WAKE
    assert "Peer connection closed." in h.logs
    assert "Session ended (auto timeout)" not in h.logs
    assert h.pcs[0].close_count == 1
    assert h.captures[0].stop_count == 1
    assert h.stop_engine.live_sessions == []
    assert len(h.wake_engine.live_sessions) == 1
    await h.close()


@pytest.mark.asyncio
async def test_messages_before_session_is_adopted_are_delivered(harness):
    class GreetsOnAnswer(FakePeerConnection):
        async def setRemoteDescription(self, description):
            await super().setRemoteDescription(description)
            self.channels[0].emit(
                "message",
                json.dumps({"type": "response.audio_transcript.done", "transcript": "Hello there."}),
            )

    harness.pc_type = GreetsOnAnswer
    await harness.enabled()
    await harness.say_wake()

    assert harness.state is CoordinatorState.SESSION_ACTIVE
    assert harness.chats == [(ChatSender.ASSISTANT, "Hello there.")]


@pytest.mark.asyncio
async def test_simultaneous_triggers_tear_down_once(harness):
    await harness.enabled()
    await harness.say_wake()
    handle = harness.coordinator.session

    harness.stop_engine.current.say("stop")
    harness.pcs[0].channels[0].remote_close()
    harness.coordinator.end_session()
    await harness.settle()

    assert handle.teardown_count == 1
    assert harness.pcs[0].close_count == 1
    assert harness.state is CoordinatorState.AWAITING_WAKE
    assert len(harness.wake_engine.live_sessions) == 1


@pytest.mark.asyncio
async def test_manual_start_without_wake_phrase(harness):
    await harness.enabled()

    harness.coordinator.request_session()
    await harness.settle()

    assert harness.state is CoordinatorState.SESSION_ACTIVE
    assert "Manual session start requested." in harness.logs


@pytest.mark.asyncio
async def test_manual_start_rejected_while_session_exists(harness):
    await harness.enabled()
    await harness.say_wake()

    harness.coordinator.request_session()
    await harness.settle()

    assert len(harness.pcs) == 1
    assert harness.backend.fetch_session_grant.await_count == 1
    assert "Session already active; manual start ignored." in harness.logs


@pytest.mark.asyncio
async def test_manual_end_without_session_is_a_no_op(harness):
    await harness.enabled()

    harness.coordinator.end_session()
    await harness.settle()

    assert harness.state is CoordinatorState.AWAITING_WAKE
    assert len(harness.wake_engine.sessions) == 1


@pytest.mark.asyncio
async def test_manual_end_during_negotiation_discards_session(harness):
    gate = asyncio.Event()

    async def slow_negotiate(offer, grant):
        await gate.wait()
        return "v=0\r\no=- answer"

    harness.backend.negotiate.side_effect = slow_negotiate
    await harness.enabled()
    harness.wake_engine.current.say("assistant")
    for _ in range(20):
        await asyncio.sleep(0)
        if harness.pcs and harness.backend.negotiate.await_count:
            break
    assert harness.state is CoordinatorState.NEGOTIATING

    gate.set()
    harness.coordinator.end_session()
    await harness.settle()

    assert harness.state is CoordinatorState.AWAITING_WAKE
    assert harness.coordinator.session is None
    assert harness.pcs[0].close_count == 1
    assert harness.captures[0].stop_count == 1
    assert harness.stop_engine.sessions == []


@pytest.mark.asyncio
async def test_wake_listener_failure_is_retried():
    h = Harness(listener_retry_seconds=0.05)
    h.wake_engine.start_error = ListenerStartError("microphone busy")
    await h.enabled()

    assert h.observer.status == "Wake word error. Retrying..."
    assert not h.coordinator.snapshot().wake_listening

    h.wake_engine.start_error = None
    await asyncio.sleep(0.1)
    await h.settle()

    assert h.coordinator.snapshot().wake_listening
    assert h.observer.status == LISTENING
    await h.close()


@pytest.mark.asyncio
async def test_credential_failure_reports_wake_unavailable(harness):
    harness.fetch_token.side_effect = CredentialFetchError("broker down")
    await harness.enabled()

    assert harness.state is CoordinatorState.AWAITING_WAKE
    assert harness.observer.status == STATUS_WAKE_UNAVAILABLE
    assert harness.wake_engine.credentials == []


@pytest.mark.asyncio
async def test_rejected_credential_is_invalidated():
    h = Harness(listener_retry_seconds=0.05)
    await h.enabled()

    h.wake_engine.current.fail(CredentialRejectedError("401 authentication failure"))
    await h.settle()
    assert h.credentials.cached is None

    await asyncio.sleep(0.1)
    await h.settle()

    assert h.fetch_token.await_count == 2
    assert h.coordinator.snapshot().wake_listening
    await h.close()


@pytest.mark.asyncio
async def test_stop_listener_failure_keeps_session(harness):
    harness.stop_engine.start_error = ListenerStartError("recognizer unavailable")
    await harness.enabled()
    await harness.say_wake()

    snapshot = harness.coordinator.snapshot()
    assert harness.state is CoordinatorState.SESSION_ACTIVE
    assert snapshot.has_session
    assert not snapshot.stop_listening
    assert any("stop word detection error" in line for line in harness.logs)


@pytest.mark.asyncio
async def test_chat_round_trip(harness):
    await harness.enabled()
    await harness.say_wake()
    channel = harness.pcs[0].channels[0]
    channel.remote_open()
    await harness.settle()

    harness.coordinator.send_chat("  what's the weather?  ")
    channel.emit("message", json.dumps({"type": "response.audio_transcript.done", "transcript": "Sunny."}))
    await harness.settle()

    sent = [json.loads(m) for m in channel.sent]
    assert [m["type"] for m in sent] == ["conversation.item.create", "response.create"]
    assert sent[0]["item"]["content"][0]["text"] == "what's the weather?"
    assert harness.chats == [
        (ChatSender.USER, "what's the weather?"),
        (ChatSender.ASSISTANT, "Sunny."),
    ]


@pytest.mark.asyncio
async def test_send_chat_without_session_raises(harness):
    await harness.enabled()

    with pytest.raises(ChannelNotOpenError):
        harness.coordinator.send_chat("hello")


@pytest.mark.asyncio
async def test_remote_audio_reaches_sink(harness):
    await harness.enabled()
    await harness.say_wake()
    track = FakeTrack("audio")

    harness.pcs[0].emit("track", track)
    await asyncio.sleep(0)

    assert harness.sink.attached == [track]


@pytest.mark.asyncio
async def test_added_phrases_take_effect(harness):
    harness.coordinator.add_wake_phrase("Computer")
    harness.coordinator.add_stop_phrase("That's all")
    await harness.enabled()

    await harness.say_wake("computer, are you awake")
    assert harness.state is CoordinatorState.SESSION_ACTIVE

    await harness.say_stop("that's all for today")
    assert harness.state is CoordinatorState.AWAITING_WAKE


@pytest.mark.asyncio
async def test_shutdown_releases_everything():
    h = Harness()
    await h.enabled()
    await h.say_wake()

    await h.coordinator.shutdown()

    snapshot = h.coordinator.snapshot()
    assert h.state is CoordinatorState.IDLE
    assert not snapshot.wake_listening
    assert not snapshot.stop_listening
    assert not snapshot.has_session
    assert h.pcs[0].close_count == 1
    assert h.wake_engine.live_sessions == []
    assert h.stop_engine.live_sessions == []
