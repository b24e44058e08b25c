"""
Notifications from the coordinator to whatever UI sits on top of it.

Three streams, mirroring what the web client rendered:
- status: one-line description of what the assistant is doing now
- log: chronological diagnostic lines
- chat: conversation lines tagged with their sender
"""

from __future__ import annotations

from typing import Callable, List, Optional

import structlog

from src.voice_assistant.realtime_events import ChatSender

logger = structlog.get_logger(__name__)


class SessionObserver:
    """Base observer; every hook is a no-op."""

    def on_status(self, status: str) -> None:
        return None

    def on_log(self, line: str) -> None:
        return None

    def on_chat(self, sender: ChatSender, text: str) -> None:
        return None


class LoggingObserver(SessionObserver):
    """Routes every notification to structlog."""

    def on_status(self, status: str) -> None:
        logger.info("Status changed", status=status)

    def on_log(self, line: str) -> None:
        logger.info(line)

    def on_chat(self, sender: ChatSender, text: str) -> None:
        logger.info("Chat message", sender=sender.value, text=text[:200])


class CallbackObserver(SessionObserver):
    """Forwards notifications to plain callables; records status history."""

    def __init__(
        self,
        *,
        on_status: Optional[Callable[[str], None]] = None,
        on_log: Optional[Callable[[str], None]] = None,
        on_chat: Optional[Callable[[ChatSender, str], None]] = None,
    ):
        self._on_status = on_status
        self._on_log = on_log
        self._on_chat = on_chat
        self.statuses: List[str] = []

    @property
    def status(self) -> str:
        return self.statuses[-1] if self.statuses else ""

    def on_status(self, status: str) -> None:
        self.statuses.append(status)
        if self._on_status is not None:
            self._on_status(status)

    def on_log(self, line: str) -> None:
        if self._on_log is not None:
            self._on_log(line)

    def on_chat(self, sender: ChatSender, text: str) -> None:
        if self._on_chat is not None:
            self._on_chat(sender, text)
