"""
Speech recognition engine seam.

A recognition engine runs one continuous recognition session against the
microphone and reports every result (interim and final) plus fatal errors
through callbacks. Phrase matching lives in the listener, not here.

Callbacks are always invoked on the asyncio event loop thread; engines backed
by SDKs that call back from worker threads must marshal with
`loop.call_soon_threadsafe`.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable

from src.voice_assistant.credentials import Credential


@dataclass
class RecognitionResult:
    """Result from a recognition engine."""
    text: str
    is_final: bool
    timestamp: float = field(default_factory=time.time)


ResultCallback = Callable[[RecognitionResult], None]
ErrorCallback = Callable[[Exception], None]


class RecognitionSession(ABC):
    """One live native continuous-recognition session."""

    @abstractmethod
    async def stop(self) -> None:
        """Stop recognition and release the native session. Idempotent."""
        raise NotImplementedError


class RecognitionEngine(ABC):
    @abstractmethod
    async def start(
        self,
        credential: Credential,
        *,
        on_result: ResultCallback,
        on_error: ErrorCallback,
    ) -> RecognitionSession:
        """
        Start continuous recognition.

        Raises:
            ListenerStartError: if the engine or microphone is unavailable
        """
        raise NotImplementedError
