"""
Realtime voice session over WebRTC.

Negotiation (one complete offer, no trickle ICE):

microphone -> RTCPeerConnection(audio sendrecv + "chat" data channel)
-> createOffer -> setLocalDescription -> wait for ICE gathering "complete"
-> POST offer SDP + ephemeral grant to the signalling URL -> apply SDP answer

The signalling endpoint only accepts a single complete offer, so the offer is
sent once every candidate has been gathered.

A `SessionHandle` owns every resource acquired for the session. `close()`
releases all of them exactly once, even when one release step fails.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import structlog
from aiortc import RTCPeerConnection, RTCSessionDescription

from src.voice_assistant.audio import AudioSink, CaptureStream, open_microphone
from src.voice_assistant.backend import BackendClient, SessionGrant
from src.voice_assistant.config import Config, get_config
from src.voice_assistant.errors import ChannelNotOpenError, MediaError, NegotiationError
from src.voice_assistant.realtime_events import encode_event

logger = structlog.get_logger(__name__)

DATA_CHANNEL_LABEL = "chat"


class SessionStatus(str, Enum):
    NEGOTIATING = "negotiating"
    OPEN = "open"
    CLOSED = "closed"


class CloseReason(str, Enum):
    CHANNEL_CLOSED = "channel_closed"
    CONNECTION_CLOSED = "connection_closed"


MessageCallback = Callable[[Union[str, bytes]], None]
OpenCallback = Callable[[], None]
CloseCallback = Callable[[CloseReason], None]


class SessionHandle:
    """
    A negotiated (or negotiating) realtime session.

    Interface:
    - `send(message)`
    - `on_message(cb)`, `on_open(cb)`, `on_close(cb)`, `on_remote_audio(sink)`

    Subscribing late loses nothing: buffered messages go to the first
    message subscriber, and an open or remote close that already happened
    is replayed to each new subscriber.
    - `close()`
    """

    def __init__(
        self,
        *,
        peer_connection: Any,
        channel: Any,
        capture: CaptureStream,
        grant: SessionGrant,
    ):
        self.grant = grant
        self.status = SessionStatus.NEGOTIATING
        self.teardown_count = 0

        self._pc = peer_connection
        self._channel = channel
        self._capture = capture
        self._sink: Optional[AudioSink] = None
        self._remote_track: Optional[Any] = None

        self._message_callbacks: List[MessageCallback] = []
        self._open_callbacks: List[OpenCallback] = []
        self._close_callbacks: List[CloseCallback] = []
        self._close_reason: Optional[CloseReason] = None
        self._pending_messages: List[Union[str, bytes]] = []
        self._closed = False
        self._tasks: set[asyncio.Task] = set()

        channel.on("open", self._handle_channel_open)
        channel.on("close", self._handle_channel_close)
        channel.on("message", self._handle_channel_message)
        peer_connection.on("track", self._handle_track)
        peer_connection.on("connectionstatechange", self._handle_connection_state)

    @property
    def session_id(self) -> Optional[str]:
        return self.grant.session_id

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def channel_open(self) -> bool:
        return not self._closed and self._channel.readyState == "open"

    # Outbound

    def send(self, message: Union[str, Dict[str, Any]]) -> None:
        if not self.channel_open:
            raise ChannelNotOpenError("Data channel is not open")
        payload = message if isinstance(message, str) else encode_event(message)
        self._channel.send(payload)

    # Observers

    def on_message(self, callback: MessageCallback) -> None:
        self._message_callbacks.append(callback)
        # Messages that arrived before anyone subscribed go to the first subscriber.
        pending, self._pending_messages = self._pending_messages, []
        for data in pending:
            callback(data)

    def on_open(self, callback: OpenCallback) -> None:
        self._open_callbacks.append(callback)
        if self.status is SessionStatus.OPEN:
            callback()

    def on_close(self, callback: CloseCallback) -> None:
        self._close_callbacks.append(callback)
        if self._close_reason is not None and not self._closed:
            callback(self._close_reason)

    def on_remote_audio(self, sink: AudioSink) -> None:
        self._sink = sink
        if self._remote_track is not None and not self._closed:
            self._spawn(sink.attach(self._remote_track))

    # Transport events

    def _handle_channel_open(self) -> None:
        if self._closed:
            return
        self.status = SessionStatus.OPEN
        logger.info("Data channel open", session_id=self.session_id)
        for callback in list(self._open_callbacks):
            callback()

    def _handle_channel_close(self) -> None:
        logger.info("Data channel closed", session_id=self.session_id)
        self._notify_closed(CloseReason.CHANNEL_CLOSED)

    def _handle_channel_message(self, data: Union[str, bytes]) -> None:
        if self._closed:
            return
        if not self._message_callbacks:
            self._pending_messages.append(data)
            return
        for callback in list(self._message_callbacks):
            callback(data)

    def _handle_track(self, track: Any) -> None:
        if self._closed or getattr(track, "kind", None) != "audio":
            return
        self._remote_track = track
        logger.info("Remote audio track received", session_id=self.session_id)
        if self._sink is not None:
            self._spawn(self._sink.attach(track))

    def _handle_connection_state(self) -> None:
        state = self._pc.connectionState
        logger.debug("Peer connection state changed", state=state, session_id=self.session_id)
        if state in ("failed", "closed"):
            self._notify_closed(CloseReason.CONNECTION_CLOSED)

    def _notify_closed(self, reason: CloseReason) -> None:
        # Local close() never reports back; only remote-initiated closes do.
        if self._closed or self._close_reason is not None:
            return
        self._close_reason = reason
        for callback in list(self._close_callbacks):
            callback(reason)

    # Teardown

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Session background task failed", error=str(task.exception()))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.status = SessionStatus.CLOSED
        self.teardown_count += 1

        for task in list(self._tasks):
            task.cancel()

        if self._sink is not None:
            try:
                await self._sink.detach()
            except Exception as e:
                logger.warning("Error detaching remote audio", error=str(e))

        try:
            self._channel.close()
        except Exception as e:
            logger.warning("Error closing data channel", error=str(e))

        try:
            self._capture.stop()
        except Exception as e:
            logger.warning("Error releasing microphone", error=str(e))

        try:
            await self._pc.close()
        except Exception as e:
            logger.warning("Error closing peer connection", error=str(e))

        self._remote_track = None
        self._sink = None
        self._pending_messages = []
        logger.info("Realtime session closed", session_id=self.session_id)


class RealtimeSessionFactory:
    """
    Opens realtime sessions against the configured signalling endpoint.

    `peer_factory` and `capture_factory` default to aiortc's RTCPeerConnection
    and the configured microphone; tests replace both.
    """

    def __init__(
        self,
        backend: BackendClient,
        *,
        config: Optional[Config] = None,
        peer_factory: Optional[Callable[[], Any]] = None,
        capture_factory: Optional[Callable[[], CaptureStream]] = None,
    ):
        self.config = config or get_config()
        self._backend = backend
        self._peer_factory = peer_factory or RTCPeerConnection
        self._capture_factory = capture_factory or (lambda: open_microphone(self.config))

    async def request_grant(self) -> SessionGrant:
        """Fetch a fresh one-time grant for the next session."""
        return await self._backend.fetch_session_grant(
            self.config.realtime_deployment,
            self.config.realtime_voice,
        )

    async def open(self, grant: SessionGrant) -> SessionHandle:
        """
        Negotiate a new session.

        Raises:
            MediaError: microphone unavailable
            NegotiationError: peer connection or signalling failure
        """
        capture = self._capture_factory()

        pc: Optional[Any] = None
        handle: Optional[SessionHandle] = None
        try:
            pc = self._peer_factory()
            pc.addTrack(capture.track)
            channel = pc.createDataChannel(DATA_CHANNEL_LABEL)
            handle = SessionHandle(peer_connection=pc, channel=channel, capture=capture, grant=grant)

            offer = await pc.createOffer()
            await pc.setLocalDescription(offer)
            await self._wait_for_ice_gathering(pc)

            logger.info("Sending offer to realtime endpoint", session_id=grant.session_id)
            answer_sdp = await self._backend.negotiate(pc.localDescription.sdp, grant)

            logger.info("Received answer, setting remote description", session_id=grant.session_id)
            await pc.setRemoteDescription(RTCSessionDescription(sdp=answer_sdp, type="answer"))
        except asyncio.CancelledError:
            await self._release(handle, pc, capture)
            raise
        except (NegotiationError, MediaError):
            await self._release(handle, pc, capture)
            raise
        except Exception as e:
            await self._release(handle, pc, capture)
            raise NegotiationError(f"Peer connection setup failed: {e}") from e

        logger.info("WebRTC connection established", session_id=grant.session_id)
        return handle

    async def _wait_for_ice_gathering(self, pc: Any) -> None:
        if pc.iceGatheringState == "complete":
            return

        gathered = asyncio.Event()

        def _on_change() -> None:
            if pc.iceGatheringState == "complete":
                gathered.set()

        pc.on("icegatheringstatechange", _on_change)
        try:
            await asyncio.wait_for(gathered.wait(), timeout=self.config.ice_gathering_timeout_seconds)
        except asyncio.TimeoutError:
            raise NegotiationError("ICE candidate gathering did not complete")
        finally:
            pc.remove_listener("icegatheringstatechange", _on_change)

    @staticmethod
    async def _release(handle: Optional[SessionHandle], pc: Optional[Any], capture: CaptureStream) -> None:
        if handle is not None:
            await handle.close()
            return
        try:
            capture.stop()
        except Exception as e:
            logger.warning("Error releasing microphone", error=str(e))
        if pc is not None:
            try:
                await pc.close()
            except Exception as e:
                logger.warning("Error closing peer connection", error=str(e))
