"""
Terminal front end for the voice assistant.

Wires the backend client, credential cache, Azure recognizers, realtime
session factory and playback sink into a `SessionCoordinator`, prints its
status/log/chat notifications and reads control commands from stdin:

  /enable            start listening for the wake phrase
  /start             start a session now
  /end               end the current session
  /wake <phrase>     add a wake phrase
  /stop-word <phrase> add a stop phrase
  /status            print the coordinator state
  /quit              shut down and exit
  anything else      sent to the assistant as a chat message
"""

import argparse
import asyncio
import sys
from typing import List, Optional, TextIO

import structlog

from src.voice_assistant.audio import RemoteAudioPlayer
from src.voice_assistant.backend import BackendClient
from src.voice_assistant.config import Config, ConfigError, init_config
from src.voice_assistant.coordinator import SessionCoordinator
from src.voice_assistant.credentials import CredentialCache
from src.voice_assistant.errors import ChannelNotOpenError
from src.voice_assistant.listener import PhraseListener
from src.voice_assistant.logging_config import configure_logging
from src.voice_assistant.observer import SessionObserver
from src.voice_assistant.realtime import RealtimeSessionFactory
from src.voice_assistant.realtime_events import ChatSender
from src.voice_assistant.recognizers.azure import AzureRecognitionEngine

logger = structlog.get_logger(__name__)

_CHAT_LABELS = {ChatSender.USER: "You", ChatSender.ASSISTANT: "Assistant"}


class ConsoleObserver(SessionObserver):
    """Prints coordinator notifications to a text stream."""

    def __init__(self, out: TextIO = sys.stdout, *, show_log: bool = True):
        self._out = out
        self._show_log = show_log

    def _write(self, line: str) -> None:
        self._out.write(line + "\n")
        self._out.flush()

    def on_status(self, status: str) -> None:
        self._write(f"[status] {status}")

    def on_log(self, line: str) -> None:
        if self._show_log:
            self._write(f"[log] {line}")

    def on_chat(self, sender: ChatSender, text: str) -> None:
        self._write(f"{_CHAT_LABELS[sender]}: {text}")


def build_coordinator(config: Config, observer: SessionObserver, backend: BackendClient) -> SessionCoordinator:
    engine = AzureRecognitionEngine(config)

    return SessionCoordinator(
        credentials=CredentialCache(backend.fetch_speech_credential, config=config),
        listener_factory=lambda name, phrases: PhraseListener(engine, phrases, name=name),
        sessions=RealtimeSessionFactory(backend, config=config),
        observer=observer,
        audio_sink=RemoteAudioPlayer(config),
        config=config,
    )


async def handle_command(coordinator: SessionCoordinator, line: str, observer: SessionObserver) -> bool:
    """
    Apply one line of console input.

    Returns:
        False when the console should exit
    """
    line = line.strip()
    if not line:
        return True

    command, _, argument = line.partition(" ")
    argument = argument.strip()

    if command == "/quit":
        return False
    if command == "/enable":
        coordinator.enable()
    elif command == "/start":
        coordinator.request_session()
    elif command == "/end":
        coordinator.end_session()
    elif command == "/wake":
        if argument:
            coordinator.add_wake_phrase(argument)
            observer.on_log(f"Wake phrase added: {argument.lower()}")
    elif command == "/stop-word":
        if argument:
            coordinator.add_stop_phrase(argument)
            observer.on_log(f"Stop phrase added: {argument.lower()}")
    elif command == "/status":
        snapshot = coordinator.snapshot()
        observer.on_log(
            f"state={snapshot.state.value} wake_listening={snapshot.wake_listening} "
            f"stop_listening={snapshot.stop_listening} session={snapshot.has_session}"
        )
    else:
        try:
            coordinator.send_chat(line)
        except ChannelNotOpenError:
            observer.on_log("No active session; say the wake phrase or type /start first.")
    return True


async def run_console(config: Config, *, enable: bool, show_log: bool = True) -> None:
    observer = ConsoleObserver(show_log=show_log)
    backend = BackendClient(config)
    coordinator = build_coordinator(config, observer, backend)
    await coordinator.start()
    if enable:
        coordinator.enable()

    try:
        while True:
            line = await asyncio.to_thread(sys.stdin.readline)
            if line == "":
                break
            if not await handle_command(coordinator, line, observer):
                break
    finally:
        await coordinator.shutdown()
        await backend.close()
        logger.info("Console exited")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Wake-phrase realtime voice assistant")
    parser.add_argument(
        "--enable",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Start listening for the wake phrase immediately",
    )
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    parser.add_argument("--quiet", action="store_true", help="Hide diagnostic log lines")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    try:
        config = init_config()
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    configure_logging((args.log_level or config.log_level).upper())

    try:
        asyncio.run(run_console(config, enable=args.enable, show_log=not args.quiet))
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
