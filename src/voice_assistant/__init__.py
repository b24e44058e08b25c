"""
Wake-phrase realtime voice assistant package.

The package root only exposes configuration, loaded on first access, so the
broker server can import it without pulling in the WebRTC and speech
recognition modules.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from src.voice_assistant.config import Config

__all__ = ["Config", "get_config"]


def __getattr__(name: str) -> Any:
    if name in __all__:
        from src.voice_assistant.config import Config, get_config

        return {"Config": Config, "get_config": get_config}[name]
    raise AttributeError(name)
