"""
Session lifecycle coordinator.

Arbitrates between the wake-phrase listener, the stop-phrase listener and the
realtime session so they never run in conflicting combinations:

IDLE --enable--> AWAITING_WAKE --wake phrase / manual start--> NEGOTIATING
NEGOTIATING --success--> SESSION_ACTIVE
NEGOTIATING --failure--> AWAITING_WAKE
SESSION_ACTIVE --stop phrase | channel closed | connection closed | timeout | manual end--> AWAITING_WAKE

Every trigger (listener callback, transport callback, timer, UI control) is
posted to a single queue and handled one at a time by one worker task, so a
transition always finishes before the next one is evaluated. Callbacks carry
the epoch that was current when they were registered; an event whose epoch no
longer matches targets resources that have already been released and is
dropped. Every exit from NEGOTIATING/SESSION_ACTIVE runs the same teardown.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional

import structlog

from src.voice_assistant.audio import AudioSink
from src.voice_assistant.config import Config, get_config
from src.voice_assistant.credentials import CredentialCache
from src.voice_assistant.errors import (
    ChannelNotOpenError,
    CredentialFetchError,
    CredentialRejectedError,
    MediaError,
    NegotiationError,
)
from src.voice_assistant.listener import ListenerMatch, PhraseListener
from src.voice_assistant.observer import LoggingObserver, SessionObserver
from src.voice_assistant.realtime import CloseReason, RealtimeSessionFactory, SessionHandle
from src.voice_assistant.realtime_events import (
    ChatSender,
    chat_message_from_event,
    create_response_request,
    create_user_message,
)

logger = structlog.get_logger(__name__)

ListenerFactory = Callable[[str, Iterable[str]], PhraseListener]

STATUS_DISABLED = "Click 'Enable Assistant' to start listening."
STATUS_WAKE_UNAVAILABLE = "Could not start wake word detection."
STATUS_WAKE_DETECTED = "Wake word detected! Starting session..."
STATUS_STOP_DETECTED = "Stop word detected! Ending session..."
STATUS_CHANNEL_CLOSED = "Data channel closed. Session ended. Listening for wake word."
STATUS_SHUT_DOWN = "Assistant disabled."


def listening_status(phrases: Iterable[str]) -> str:
    shown = [f"'{p}'" for p in list(phrases)[:2]]
    if not shown:
        return "Listening for wake word"
    return f"Listening for wake word (say {' or '.join(shown)})"


class CoordinatorState(str, Enum):
    IDLE = "idle"
    AWAITING_WAKE = "awaiting_wake"
    NEGOTIATING = "negotiating"
    SESSION_ACTIVE = "session_active"


class EventType(str, Enum):
    ENABLE = "enable"
    MANUAL_START = "manual_start"
    MANUAL_END = "manual_end"
    SHUTDOWN = "shutdown"
    WAKE_MATCHED = "wake_matched"
    WAKE_LISTENER_ERROR = "wake_listener_error"
    RETRY_WAKE = "retry_wake"
    NEGOTIATION_SUCCEEDED = "negotiation_succeeded"
    NEGOTIATION_FAILED = "negotiation_failed"
    CHANNEL_OPENED = "channel_opened"
    CHANNEL_CLOSED = "channel_closed"
    CONNECTION_CLOSED = "connection_closed"
    MESSAGE_RECEIVED = "message_received"
    STOP_MATCHED = "stop_matched"
    STOP_LISTENER_ERROR = "stop_listener_error"
    SESSION_TIMEOUT = "session_timeout"


@dataclass(frozen=True)
class CoordinatorEvent:
    type: EventType
    # None for UI controls, which are never stale.
    epoch: Optional[int] = None
    payload: Any = None


@dataclass(frozen=True)
class CoordinatorSnapshot:
    state: CoordinatorState
    wake_listening: bool
    stop_listening: bool
    has_session: bool
    negotiating: bool
    epoch: int


class SessionCoordinator:
    """
    Owns at most one wake listener, one stop listener and one realtime session.

    Controls for the UI layer:
    - `enable()`: start listening for the wake phrase
    - `request_session()`: manual start (ignored while a session exists)
    - `end_session()`: manual end
    - `send_chat(text)`: send a user message on the open data channel
    - `shutdown()`: release everything and return to IDLE
    """

    def __init__(
        self,
        *,
        credentials: CredentialCache,
        listener_factory: ListenerFactory,
        sessions: RealtimeSessionFactory,
        observer: Optional[SessionObserver] = None,
        audio_sink: Optional[AudioSink] = None,
        config: Optional[Config] = None,
    ):
        self.config = config or get_config()
        self._credentials = credentials
        self._sessions = sessions
        self._observer = observer or LoggingObserver()
        self._audio_sink = audio_sink

        self._wake = listener_factory("wake", self.config.wake_phrases)
        self._stop = listener_factory("stop", self.config.stop_phrases)

        self._state = CoordinatorState.IDLE
        self._epoch = 0
        self._session: Optional[SessionHandle] = None
        self._negotiation: Optional[asyncio.Task] = None
        self._timeout_handle: Optional[asyncio.TimerHandle] = None
        self._retry_handle: Optional[asyncio.TimerHandle] = None

        self._events: asyncio.Queue[CoordinatorEvent] = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._shut_down = False

        self._handlers: Dict[EventType, Callable[[CoordinatorEvent], Any]] = {
            EventType.ENABLE: self._on_enable,
            EventType.MANUAL_START: self._on_manual_start,
            EventType.MANUAL_END: self._on_manual_end,
            EventType.SHUTDOWN: self._on_shutdown,
            EventType.WAKE_MATCHED: self._on_wake_matched,
            EventType.WAKE_LISTENER_ERROR: self._on_wake_listener_error,
            EventType.RETRY_WAKE: self._on_retry_wake,
            EventType.NEGOTIATION_SUCCEEDED: self._on_negotiation_succeeded,
            EventType.NEGOTIATION_FAILED: self._on_negotiation_failed,
            EventType.CHANNEL_OPENED: self._on_channel_opened,
            EventType.CHANNEL_CLOSED: self._on_channel_closed,
            EventType.CONNECTION_CLOSED: self._on_connection_closed,
            EventType.MESSAGE_RECEIVED: self._on_message_received,
            EventType.STOP_MATCHED: self._on_stop_matched,
            EventType.STOP_LISTENER_ERROR: self._on_stop_listener_error,
            EventType.SESSION_TIMEOUT: self._on_session_timeout,
        }

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    @property
    def state(self) -> CoordinatorState:
        return self._state

    @property
    def wake_listener(self) -> PhraseListener:
        return self._wake

    @property
    def stop_listener(self) -> PhraseListener:
        return self._stop

    @property
    def session(self) -> Optional[SessionHandle]:
        return self._session

    def snapshot(self) -> CoordinatorSnapshot:
        return CoordinatorSnapshot(
            state=self._state,
            wake_listening=self._wake.is_active(),
            stop_listening=self._stop.is_active(),
            has_session=self._session is not None,
            negotiating=self._negotiation is not None and not self._negotiation.done(),
            epoch=self._epoch,
        )

    async def start(self) -> None:
        """Start the event worker. Idempotent."""
        if self._worker is not None and not self._worker.done():
            return
        self._shut_down = False
        self._worker = asyncio.create_task(self._run())
        self._observer.on_status(STATUS_DISABLED)
        logger.info("Session coordinator started")

    def enable(self) -> None:
        self._post(EventType.ENABLE)

    def request_session(self) -> None:
        self._post(EventType.MANUAL_START)

    def end_session(self) -> None:
        self._post(EventType.MANUAL_END)

    def add_wake_phrase(self, word: str) -> None:
        self._wake.add_phrase(word)

    def add_stop_phrase(self, word: str) -> None:
        self._stop.add_phrase(word)

    def send_chat(self, text: str) -> None:
        """
        Send a user chat message to the assistant.

        Raises:
            ChannelNotOpenError: if no session has an open data channel
        """
        text = (text or "").strip()
        if not text:
            return
        session = self._session
        if session is None:
            raise ChannelNotOpenError("No active session")
        session.send(create_user_message(text))
        session.send(create_response_request())
        self._observer.on_chat(ChatSender.USER, text)

    async def drain(self) -> None:
        """Wait until every queued event (and any in-flight negotiation) has been handled."""
        while True:
            await self._events.join()
            task = self._negotiation
            if task is not None and not task.done():
                await asyncio.wait({task})
                continue
            if self._events.empty():
                return

    async def shutdown(self) -> None:
        """Tear everything down and stop the worker."""
        if self._shut_down:
            return
        worker = self._worker
        if worker is None or worker.done():
            await self._on_shutdown(CoordinatorEvent(EventType.SHUTDOWN))
            return
        self._post(EventType.SHUTDOWN)
        await worker

    # ------------------------------------------------------------------
    # Event loop
    # ------------------------------------------------------------------

    def _post(self, event_type: EventType, epoch: Optional[int] = None, payload: Any = None) -> None:
        if self._shut_down:
            if event_type is EventType.NEGOTIATION_SUCCEEDED:
                self._discard_handle(payload)
            return
        self._events.put_nowait(CoordinatorEvent(type=event_type, epoch=epoch, payload=payload))

    async def _run(self) -> None:
        while True:
            event = await self._events.get()
            try:
                await self._dispatch(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "Coordinator transition failed",
                    event_type=event.type.value,
                    state=self._state.value,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                await self._recover()
            finally:
                self._events.task_done()

            if event.type is EventType.SHUTDOWN:
                self._drain_after_shutdown()
                return

    async def _dispatch(self, event: CoordinatorEvent) -> None:
        if event.epoch is not None and event.epoch != self._epoch:
            logger.debug(
                "Dropping stale event",
                event_type=event.type.value,
                event_epoch=event.epoch,
                epoch=self._epoch,
            )
            if event.type is EventType.NEGOTIATION_SUCCEEDED:
                await self._close_stale_handle(event.payload)
            return

        await self._handlers[event.type](event)
        self._check_invariants()

    def _check_invariants(self) -> None:
        wake = self._wake.is_active()
        if wake and (self._session is not None or self._stop.is_active()):
            logger.error("Wake listener running alongside a session", state=self._state.value)
        if self._state in (CoordinatorState.IDLE, CoordinatorState.AWAITING_WAKE) and self._session is not None:
            logger.error("Session handle outside an active state", state=self._state.value)

    async def _recover(self) -> None:
        if self._state not in (CoordinatorState.NEGOTIATING, CoordinatorState.SESSION_ACTIVE):
            return
        try:
            await self._end_session("recovery")
        except Exception as e:
            logger.error("Coordinator recovery failed", error=str(e))

    # ------------------------------------------------------------------
    # Controls
    # ------------------------------------------------------------------

    async def _on_enable(self, event: CoordinatorEvent) -> None:
        if self._state is not CoordinatorState.IDLE:
            logger.debug("Assistant already enabled", state=self._state.value)
            return
        await self._enter_awaiting_wake()

    async def _on_manual_start(self, event: CoordinatorEvent) -> None:
        if self._session is not None or self._state in (
            CoordinatorState.NEGOTIATING,
            CoordinatorState.SESSION_ACTIVE,
        ):
            self._observer.on_log("Session already active; manual start ignored.")
            return
        self._observer.on_log("Manual session start requested.")
        await self._begin_session()

    async def _on_manual_end(self, event: CoordinatorEvent) -> None:
        if self._state not in (CoordinatorState.NEGOTIATING, CoordinatorState.SESSION_ACTIVE):
            logger.debug("No session to end", state=self._state.value)
            return
        self._observer.on_log("Manual session end requested.")
        await self._end_session("manual_end")

    async def _on_shutdown(self, event: CoordinatorEvent) -> None:
        await self._teardown_session("shutdown")
        self._cancel_retry()
        self._epoch += 1
        try:
            await self._wake.stop()
        except Exception as e:
            logger.warning("Error stopping wake listener", error=str(e))
        self._state = CoordinatorState.IDLE
        self._shut_down = True
        self._observer.on_status(STATUS_SHUT_DOWN)
        logger.info("Session coordinator shut down")

    def _drain_after_shutdown(self) -> None:
        while not self._events.empty():
            event = self._events.get_nowait()
            if event.type is EventType.NEGOTIATION_SUCCEEDED:
                self._discard_handle(event.payload)
            self._events.task_done()

    # ------------------------------------------------------------------
    # Wake listening
    # ------------------------------------------------------------------

    async def _enter_awaiting_wake(self) -> None:
        self._cancel_retry()
        self._epoch += 1
        epoch = self._epoch
        self._state = CoordinatorState.AWAITING_WAKE
        self._observer.on_status(listening_status(self._wake.phrases))
        self._observer.on_log("Initializing speech recognition for wake word detection...")

        try:
            credential = await self._credentials.get_credential()
        except CredentialFetchError as e:
            self._observer.on_log(f"Failed to get speech credentials: {e}")
            self._observer.on_status(STATUS_WAKE_UNAVAILABLE)
            self._schedule_retry(epoch)
            return

        self._wake.configure(credential)
        await self._wake.start(
            on_match=lambda match: self._post(EventType.WAKE_MATCHED, epoch, match),
            on_error=lambda error: self._post(EventType.WAKE_LISTENER_ERROR, epoch, error),
        )

    async def _on_wake_matched(self, event: CoordinatorEvent) -> None:
        if self._state is not CoordinatorState.AWAITING_WAKE:
            return
        match: ListenerMatch = event.payload
        self._observer.on_log(f"Wake word detected: {match.text}")
        self._observer.on_status(STATUS_WAKE_DETECTED)
        await self._begin_session()

    async def _on_wake_listener_error(self, event: CoordinatorEvent) -> None:
        error: Exception = event.payload
        if isinstance(error, CredentialRejectedError):
            self._credentials.invalidate()
        self._observer.on_log(f"Wake word detection error: {error}")
        if self.config.listener_retry_seconds > 0:
            self._observer.on_status("Wake word error. Retrying...")
        else:
            self._observer.on_status("Wake word error. Try reloading.")
        self._schedule_retry(self._epoch)

    async def _on_retry_wake(self, event: CoordinatorEvent) -> None:
        if self._state is not CoordinatorState.AWAITING_WAKE or self._wake.is_active():
            return
        self._observer.on_log("Retrying wake word detection...")
        await self._enter_awaiting_wake()

    def _schedule_retry(self, epoch: int) -> None:
        delay = self.config.listener_retry_seconds
        if delay <= 0:
            return
        self._cancel_retry()
        loop = asyncio.get_running_loop()
        self._retry_handle = loop.call_later(delay, self._post, EventType.RETRY_WAKE, epoch)

    def _cancel_retry(self) -> None:
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

    # ------------------------------------------------------------------
    # Session start
    # ------------------------------------------------------------------

    async def _begin_session(self) -> None:
        self._cancel_retry()
        await self._wake.stop()

        self._epoch += 1
        epoch = self._epoch
        self._state = CoordinatorState.NEGOTIATING
        stop_word = next(iter(self._stop.phrases), "stop")
        self._observer.on_status(f"Session starting! Say '{stop_word}' to end the session.")
        self._observer.on_log("Connecting to realtime session...")
        self._negotiation = asyncio.create_task(self._negotiate(epoch))

    async def _negotiate(self, epoch: int) -> None:
        try:
            grant = await self._sessions.request_grant()
            self._observer.on_log("Received session grant, creating WebRTC connection...")
            handle = await self._sessions.open(grant)
        except asyncio.CancelledError:
            logger.info("Session negotiation cancelled", epoch=epoch)
            raise
        except (CredentialFetchError, NegotiationError, MediaError) as e:
            self._post(EventType.NEGOTIATION_FAILED, epoch, e)
            return
        except Exception as e:
            logger.error("Unexpected negotiation failure", error_type=type(e).__name__, error=str(e))
            self._post(EventType.NEGOTIATION_FAILED, epoch, e)
            return

        self._post(EventType.NEGOTIATION_SUCCEEDED, epoch, handle)

    async def _on_negotiation_succeeded(self, event: CoordinatorEvent) -> None:
        handle: SessionHandle = event.payload
        epoch = self._epoch
        self._negotiation = None
        self._session = handle
        self._state = CoordinatorState.SESSION_ACTIVE

        # Transport events raised before these subscriptions are replayed into
        # the queue.
        handle.on_message(lambda data: self._post(EventType.MESSAGE_RECEIVED, epoch, data))
        handle.on_open(lambda: self._post(EventType.CHANNEL_OPENED, epoch))
        handle.on_close(lambda reason: self._post(
            EventType.CHANNEL_CLOSED if reason is CloseReason.CHANNEL_CLOSED else EventType.CONNECTION_CLOSED,
            epoch,
            reason,
        ))
        if self._audio_sink is not None:
            handle.on_remote_audio(self._audio_sink)

        self._observer.on_log("WebRTC connection established!")
        self._arm_timeout(epoch)
        await self._start_stop_listener(epoch)

    async def _on_negotiation_failed(self, event: CoordinatorEvent) -> None:
        error: Exception = event.payload
        self._negotiation = None
        self._observer.on_log(f"Failed to start session: {error}")
        await self._end_session("negotiation_failed")

    async def _start_stop_listener(self, epoch: int) -> None:
        # Independent of the session grant: the stop listener uses its own
        # recognition credential.
        try:
            credential = await self._credentials.get_credential()
        except CredentialFetchError as e:
            self._observer.on_log(f"In-session stop word detection unavailable: {e}")
            return

        self._stop.configure(credential)
        await self._stop.start(
            on_match=lambda match: self._post(EventType.STOP_MATCHED, epoch, match),
            on_error=lambda error: self._post(EventType.STOP_LISTENER_ERROR, epoch, error),
        )

    # ------------------------------------------------------------------
    # Active session
    # ------------------------------------------------------------------

    async def _on_channel_opened(self, event: CoordinatorEvent) -> None:
        stop_word = next(iter(self._stop.phrases), "stop")
        self._observer.on_log("DataChannel open. You can now send messages.")
        self._observer.on_status(f"Session active! You can chat now. Say '{stop_word}' to end.")

    async def _on_message_received(self, event: CoordinatorEvent) -> None:
        data = event.payload
        preview = data if isinstance(data, str) else f"<{len(data)} bytes>"
        self._observer.on_log(f"Received message from realtime endpoint: {preview[:200]}")
        chat = chat_message_from_event(data)
        if chat is not None:
            self._observer.on_chat(chat.sender, chat.text)

    async def _on_stop_matched(self, event: CoordinatorEvent) -> None:
        match: ListenerMatch = event.payload
        self._observer.on_log(f"Stop word detected (in-session): {match.text}")
        self._observer.on_status(STATUS_STOP_DETECTED)
        await self._end_session("stop_phrase")

    async def _on_stop_listener_error(self, event: CoordinatorEvent) -> None:
        error: Exception = event.payload
        if isinstance(error, CredentialRejectedError):
            self._credentials.invalidate()
        self._observer.on_log(f"In-session stop word detection error: {error}")

    async def _on_channel_closed(self, event: CoordinatorEvent) -> None:
        self._observer.on_log("DataChannel closed.")
        self._observer.on_status(STATUS_CHANNEL_CLOSED)
        await self._end_session("channel_closed")

    async def _on_connection_closed(self, event: CoordinatorEvent) -> None:
        self._observer.on_log("Peer connection closed.")
        await self._end_session("connection_closed")

    async def _on_session_timeout(self, event: CoordinatorEvent) -> None:
        self._timeout_handle = None
        self._observer.on_log("Session ended (auto timeout)")
        await self._end_session("timeout")

    def _arm_timeout(self, epoch: int) -> None:
        self._cancel_timeout()
        loop = asyncio.get_running_loop()
        self._timeout_handle = loop.call_later(
            self.config.session_timeout_seconds,
            self._post,
            EventType.SESSION_TIMEOUT,
            epoch,
        )

    def _cancel_timeout(self) -> None:
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def _end_session(self, reason: str) -> None:
        await self._teardown_session(reason)
        self._observer.on_log("Session ended. Returning to wake word listening.")
        await self._enter_awaiting_wake()

    async def _teardown_session(self, reason: str) -> None:
        """Release everything acquired for NEGOTIATING/SESSION_ACTIVE, exactly once."""
        self._epoch += 1
        self._cancel_timeout()

        task, self._negotiation = self._negotiation, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("Negotiation task failed during teardown", error=str(e))

        session, self._session = self._session, None

        try:
            await self._stop.stop()
        except Exception as e:
            logger.warning("Error stopping stop listener", error=str(e))

        if session is not None:
            try:
                await session.close()
            except Exception as e:
                logger.warning("Error closing realtime session", error=str(e))

        if reason != "shutdown" or session is not None:
            logger.info("Session torn down", reason=reason, had_session=session is not None)

    async def _close_stale_handle(self, handle: Optional[SessionHandle]) -> None:
        if handle is None:
            return
        logger.info("Closing superseded realtime session", session_id=handle.session_id)
        try:
            await handle.close()
        except Exception as e:
            logger.warning("Error closing superseded session", error=str(e))

    def _discard_handle(self, handle: Optional[SessionHandle]) -> None:
        if handle is None:
            return
        task = asyncio.ensure_future(self._close_stale_handle(handle))
        task.add_done_callback(lambda t: t.exception() if not t.cancelled() else None)


__all__ = [
    "CoordinatorEvent",
    "CoordinatorSnapshot",
    "CoordinatorState",
    "EventType",
    "SessionCoordinator",
    "listening_status",
]
