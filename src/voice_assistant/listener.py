"""
Phrase listener: continuous recognition that fires on trigger phrases.

A `PhraseListener` owns a mutable `PhraseSet` and at most one live
`ListenerHandle`. Each handle is backed by exactly one native recognition
session while Starting/Active. Starts and stops may overlap; a per-listener
generation counter makes a late start completion from a superseded attempt
release its native session instead of resurrecting the handle.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Iterator, List, Optional

import structlog

from src.voice_assistant.credentials import Credential
from src.voice_assistant.errors import ListenerStartError
from src.voice_assistant.recognition import RecognitionEngine, RecognitionResult, RecognitionSession

logger = structlog.get_logger(__name__)


class ListenerStatus(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    ACTIVE = "active"
    STOPPING = "stopping"


@dataclass(frozen=True)
class ListenerMatch:
    """A final utterance that contained a trigger phrase."""
    text: str
    phrase: str


MatchCallback = Callable[[ListenerMatch], None]
ListenerErrorCallback = Callable[[Exception], None]


def normalize_utterance(text: str) -> str:
    return (text or "").strip().lower()


class PhraseSet:
    """Ordered, de-duplicated, lower-cased trigger phrases."""

    def __init__(self, phrases: Iterable[str] = ()):
        self._phrases: List[str] = []
        for phrase in phrases:
            self.add(phrase)

    def add(self, phrase: str) -> bool:
        normalized = normalize_utterance(phrase)
        if not normalized or normalized in self._phrases:
            return False
        self._phrases.append(normalized)
        return True

    def match(self, text: str) -> Optional[str]:
        """Return the first phrase contained in `text` (already normalized)."""
        for phrase in self._phrases:
            if phrase in text:
                return phrase
        return None

    def __contains__(self, phrase: object) -> bool:
        return isinstance(phrase, str) and normalize_utterance(phrase) in self._phrases

    def __iter__(self) -> Iterator[str]:
        return iter(tuple(self._phrases))

    def __len__(self) -> int:
        return len(self._phrases)

    def __repr__(self) -> str:
        return f"PhraseSet({self._phrases!r})"


class ListenerHandle:
    """A single start of a phrase listener."""

    def __init__(
        self,
        *,
        phrases: PhraseSet,
        on_match: Optional[MatchCallback],
        on_error: Optional[ListenerErrorCallback],
        generation: int,
        status: ListenerStatus = ListenerStatus.STOPPED,
    ):
        self.phrases = phrases
        self.on_match = on_match
        self.on_error = on_error
        self.generation = generation
        self.status = status
        self.session: Optional[RecognitionSession] = None

    def is_active(self) -> bool:
        return self.status in (ListenerStatus.STARTING, ListenerStatus.ACTIVE)

    def __repr__(self) -> str:
        return f"ListenerHandle(generation={self.generation}, status={self.status.value})"


class PhraseListener:
    """
    Continuous recognition configured with a mutable set of trigger phrases.

    Interface:
    - `configure(credential)`
    - `start(on_match, on_error)` -> ListenerHandle
    - `stop()`
    - `is_active()`
    - `add_phrase(word)`
    """

    def __init__(
        self,
        engine: RecognitionEngine,
        phrases: Iterable[str],
        *,
        name: str = "listener",
    ):
        self.name = name
        self._engine = engine
        self._phrases = PhraseSet(phrases)
        self._credential: Optional[Credential] = None
        self._handle: Optional[ListenerHandle] = None
        self._generation = 0
        self._pending_stops: set[asyncio.Task] = set()

    @property
    def phrases(self) -> PhraseSet:
        return self._phrases

    @property
    def handle(self) -> Optional[ListenerHandle]:
        return self._handle

    def configure(self, credential: Credential) -> None:
        self._credential = credential

    def add_phrase(self, word: str) -> None:
        if self._phrases.add(word):
            logger.info("Trigger phrase added", listener=self.name, phrase=normalize_utterance(word))

    def is_active(self) -> bool:
        return self._handle is not None and self._handle.is_active()

    async def start(
        self,
        on_match: Optional[MatchCallback],
        on_error: Optional[ListenerErrorCallback],
    ) -> ListenerHandle:
        if self._handle is not None and self._handle.is_active():
            return self._handle

        if self._credential is None:
            inert = ListenerHandle(
                phrases=self._phrases,
                on_match=on_match,
                on_error=on_error,
                generation=self._generation,
            )
            _report(on_error, ListenerStartError(
                f"{self.name} listener not configured; a recognition credential is required"
            ))
            return inert

        self._generation += 1
        handle = ListenerHandle(
            phrases=self._phrases,
            on_match=on_match,
            on_error=on_error,
            generation=self._generation,
            status=ListenerStatus.STARTING,
        )
        self._handle = handle

        try:
            session = await self._engine.start(
                self._credential,
                on_result=lambda result: self._on_result(handle, result),
                on_error=lambda error: self._on_engine_error(handle, error),
            )
        except ListenerStartError as e:
            if self._handle is handle:
                self._handle = None
            handle.status = ListenerStatus.STOPPED
            logger.warning("Listener start failed", listener=self.name, error=str(e))
            _report(on_error, e)
            return handle

        if handle.generation != self._generation or handle.status is not ListenerStatus.STARTING:
            # Stopped (or superseded) while the engine was starting.
            logger.debug("Discarding superseded listener start", listener=self.name, generation=handle.generation)
            await session.stop()
            handle.status = ListenerStatus.STOPPED
            return handle

        handle.session = session
        handle.status = ListenerStatus.ACTIVE
        logger.info("Listener active", listener=self.name, phrases=list(self._phrases))
        return handle

    async def stop(self) -> None:
        handle = self._handle
        if handle is None or not handle.is_active():
            return

        self._generation += 1
        self._handle = None

        if handle.status is ListenerStatus.STARTING:
            # The in-flight start sees the generation bump and releases its session.
            handle.status = ListenerStatus.STOPPED
            return

        handle.status = ListenerStatus.STOPPING
        session, handle.session = handle.session, None
        try:
            if session is not None:
                await session.stop()
        finally:
            handle.status = ListenerStatus.STOPPED
            logger.info("Listener stopped", listener=self.name)

    def _is_current(self, handle: ListenerHandle) -> bool:
        return self._handle is handle and handle.generation == self._generation

    def _on_result(self, handle: ListenerHandle, result: RecognitionResult) -> None:
        if not self._is_current(handle) or handle.status is not ListenerStatus.ACTIVE:
            return
        if not result.is_final:
            return

        text = normalize_utterance(result.text)
        if not text:
            return

        phrase = self._phrases.match(text)
        if phrase is None:
            return

        logger.info("Trigger phrase detected", listener=self.name, phrase=phrase)
        if handle.on_match is not None:
            handle.on_match(ListenerMatch(text=text, phrase=phrase))

    def _on_engine_error(self, handle: ListenerHandle, error: Exception) -> None:
        if not self._is_current(handle) or not handle.is_active():
            return

        self._generation += 1
        self._handle = None
        handle.status = ListenerStatus.STOPPED
        session, handle.session = handle.session, None
        if session is not None:
            task = asyncio.ensure_future(session.stop())
            self._pending_stops.add(task)
            task.add_done_callback(self._pending_stops.discard)

        logger.warning("Listener failed", listener=self.name, error=str(error))
        _report(handle.on_error, error)


def _report(callback: Optional[ListenerErrorCallback], error: Exception) -> None:
    if callback is not None:
        callback(error)
