from __future__ import annotations

import asyncio
from typing import Any, Optional

import azure.cognitiveservices.speech as speechsdk
import structlog

from src.voice_assistant.config import Config, get_config
from src.voice_assistant.credentials import Credential
from src.voice_assistant.errors import CredentialRejectedError, ListenerStartError
from src.voice_assistant.recognition import (
    ErrorCallback,
    RecognitionEngine,
    RecognitionResult,
    RecognitionSession,
    ResultCallback,
)

logger = structlog.get_logger(__name__)


class AzureRecognitionSession(RecognitionSession):
    """
    Continuous recognition on the default microphone via the Azure Speech SDK.

    The SDK fires events from its own threads; every event is handed to the
    event loop before any callback runs.
    """

    def __init__(
        self,
        recognizer: Any,
        loop: asyncio.AbstractEventLoop,
        *,
        on_result: ResultCallback,
        on_error: ErrorCallback,
    ):
        self._recognizer = recognizer
        self._loop = loop
        self._on_result = on_result
        self._on_error = on_error
        self._stopped = False

        recognizer.recognizing.connect(self._handle_recognizing)
        recognizer.recognized.connect(self._handle_recognized)
        recognizer.canceled.connect(self._handle_canceled)

    def _dispatch(self, fn: Any, arg: Any) -> None:
        if self._stopped or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(fn, arg)

    def _handle_recognizing(self, evt: Any) -> None:
        text = getattr(evt.result, "text", "") or ""
        if text:
            self._dispatch(self._on_result, RecognitionResult(text=text, is_final=False))

    def _handle_recognized(self, evt: Any) -> None:
        result = evt.result
        if result.reason == speechsdk.ResultReason.RecognizedSpeech:
            self._dispatch(self._on_result, RecognitionResult(text=result.text or "", is_final=True))
        # NoMatch results carry no text; nothing to report.

    def _handle_canceled(self, evt: Any) -> None:
        details = evt.cancellation_details
        if details.reason != speechsdk.CancellationReason.Error:
            return
        message = details.error_details or "speech recognition canceled"
        if details.code == speechsdk.CancellationErrorCode.AuthenticationFailure:
            error: Exception = CredentialRejectedError(message)
        else:
            error = ListenerStartError(message)
        logger.error("Speech recognition error", error=message, code=str(details.code))
        self._dispatch(self._on_error, error)

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True

        recognizer = self._recognizer
        try:
            await asyncio.to_thread(lambda: recognizer.stop_continuous_recognition_async().get())
        except Exception as e:
            logger.warning("Error stopping speech recognition", error=str(e))
        finally:
            recognizer.recognizing.disconnect_all()
            recognizer.recognized.disconnect_all()
            recognizer.canceled.disconnect_all()


class AzureRecognitionEngine(RecognitionEngine):
    """Recognition engine authenticated with a broker-issued authorization token."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()

    def _build_recognizer(self, credential: Credential) -> Any:
        # Authorization token from the broker, never the subscription key.
        speech_config = speechsdk.SpeechConfig(auth_token=credential.token, region=credential.region)
        speech_config.speech_recognition_language = self.config.speech_language
        audio_config = speechsdk.audio.AudioConfig(use_default_microphone=True)
        return speechsdk.SpeechRecognizer(speech_config=speech_config, audio_config=audio_config)

    async def start(
        self,
        credential: Credential,
        *,
        on_result: ResultCallback,
        on_error: ErrorCallback,
    ) -> RecognitionSession:
        loop = asyncio.get_running_loop()
        try:
            recognizer = self._build_recognizer(credential)
        except Exception as e:
            raise ListenerStartError(f"Speech recognizer unavailable: {e}") from e

        session = AzureRecognitionSession(recognizer, loop, on_result=on_result, on_error=on_error)
        try:
            await asyncio.to_thread(lambda: recognizer.start_continuous_recognition_async().get())
        except Exception as e:
            await session.stop()
            raise ListenerStartError(f"Error starting speech recognition: {e}") from e

        logger.info("Continuous speech recognition started", region=credential.region)
        return session
