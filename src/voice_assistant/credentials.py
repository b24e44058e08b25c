"""
Short-lived speech recognition credentials.

The broker hands out tokens that expire after a few minutes. The cache keeps the
last one and only goes back to the network once the token is inside the safety
margin of its expiry, so a token never expires in the middle of a listener start.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import structlog

from src.voice_assistant.backend import SpeechToken
from src.voice_assistant.config import Config, get_config
from src.voice_assistant.errors import CredentialFetchError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Credential:
    """An issued recognition credential. Replaced, never mutated."""

    token: str
    region: str
    issued_at: float
    ttl_seconds: float

    @property
    def expires_at(self) -> float:
        return self.issued_at + self.ttl_seconds

    def is_fresh(self, now: float, safety_margin: float) -> bool:
        return now + safety_margin < self.expires_at


class CredentialCache:
    """
    Caches the last recognition credential and refreshes it before expiry.

    A failed refresh never falls back to the stale credential: the
    `CredentialFetchError` reaches the caller.
    """

    def __init__(
        self,
        fetch: Callable[[], Awaitable[SpeechToken]],
        *,
        config: Optional[Config] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or get_config()
        self._fetch = fetch
        self._clock = clock
        self._credential: Optional[Credential] = None
        self._lock = asyncio.Lock()
        self.fetch_count = 0

    @property
    def cached(self) -> Optional[Credential]:
        return self._credential

    def invalidate(self) -> None:
        """Forget the cached credential (e.g. after the engine rejected it)."""
        if self._credential is not None:
            logger.info("Speech credential invalidated", region=self._credential.region)
        self._credential = None

    async def get_credential(self) -> Credential:
        margin = self.config.credential_safety_margin_seconds

        credential = self._credential
        if credential is not None and credential.is_fresh(self._clock(), margin):
            return credential

        # Coalesce concurrent misses into a single outbound call.
        async with self._lock:
            credential = self._credential
            if credential is not None and credential.is_fresh(self._clock(), margin):
                return credential
            return await self._refresh()

    async def _refresh(self) -> Credential:
        issued_at = self._clock()
        self.fetch_count += 1
        try:
            token = await self._fetch()
        except CredentialFetchError:
            self._credential = None
            raise
        except Exception as e:
            self._credential = None
            raise CredentialFetchError(f"Speech credential fetch failed: {e}") from e

        ttl = token.expires_in or self.config.credential_default_ttl_seconds
        credential = Credential(
            token=token.token,
            region=token.region,
            issued_at=issued_at,
            ttl_seconds=float(ttl),
        )
        self._credential = credential
        logger.info("Speech credential refreshed", region=credential.region, ttl_seconds=credential.ttl_seconds)
        return credential
