"""
HTTP client for the credential broker and the realtime signalling endpoint.

Three calls leave the process:
- GET  {backend}/api/get-speech-token  -> short-lived speech recognition token
- POST {backend}/api/sessions          -> one-time realtime session grant
- POST {signalling_url}                -> complete SDP offer in, SDP answer out

Transport and payload failures are converted into the assistant error taxonomy
here so callers never see httpx or pydantic exceptions.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx
import structlog
from pydantic import BaseModel, Field, ValidationError

from src.voice_assistant.config import Config, get_config
from src.voice_assistant.errors import CredentialFetchError, NegotiationError

logger = structlog.get_logger(__name__)


class SpeechToken(BaseModel):
    """Body of /api/get-speech-token."""

    token: str = Field(..., min_length=1)
    region: str = Field(..., min_length=1)
    expires_in: Optional[float] = Field(default=None, gt=0)


class ClientSecret(BaseModel):
    value: str = Field(..., min_length=1)


class SessionGrantResponse(BaseModel):
    """Body of /api/sessions (passed through from the realtime provider)."""

    id: Optional[str] = None
    client_secret: ClientSecret


@dataclass(frozen=True)
class SessionGrant:
    """One-time credential consumed by a single realtime session."""

    ephemeral_secret: str
    session_id: Optional[str] = None


def _describe(response: httpx.Response) -> str:
    return f"HTTP {response.status_code}: {response.text[:200]}"


class BackendClient:
    """
    Async client for the broker backend and the signalling URL.

    A single `httpx.AsyncClient` is reused for every call; pass one in to
    share a connection pool or to inject a mock transport.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config or get_config()
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.config.http_timeout_seconds)
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def fetch_speech_credential(self) -> SpeechToken:
        """Fetch a speech recognition token from the broker."""
        url = self.config.speech_token_endpoint
        started = time.time()
        try:
            response = await self._client.get(url)
        except httpx.HTTPError as e:
            logger.warning("Speech token request failed", url=url, error=str(e))
            raise CredentialFetchError(f"Speech token request failed: {e}") from e

        if response.status_code != 200:
            logger.warning("Speech token request rejected", url=url, status_code=response.status_code)
            raise CredentialFetchError(f"Speech token request rejected: {_describe(response)}")

        try:
            token = SpeechToken.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.warning("Malformed speech token response", url=url, error=str(e))
            raise CredentialFetchError(f"Malformed speech token response: {e}") from e

        logger.debug(
            "Speech token fetched",
            region=token.region,
            expires_in=token.expires_in,
            elapsed_ms=round((time.time() - started) * 1000, 2),
        )
        return token

    async def fetch_session_grant(self, model: str, voice: str) -> SessionGrant:
        """Ask the broker for an ephemeral realtime session grant."""
        url = self.config.sessions_endpoint
        payload: dict[str, Any] = {"model": model, "voice": voice}
        try:
            response = await self._client.post(url, json=payload)
        except httpx.HTTPError as e:
            logger.warning("Session grant request failed", url=url, error=str(e))
            raise CredentialFetchError(f"Session grant request failed: {e}") from e

        if response.status_code != 200:
            logger.warning("Session grant request rejected", url=url, status_code=response.status_code)
            raise CredentialFetchError(f"Session grant request rejected: {_describe(response)}")

        try:
            body = SessionGrantResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.warning("Session grant missing ephemeral key", url=url, error=str(e))
            raise CredentialFetchError("Failed to create session: missing ephemeral key") from e

        logger.info("Session grant received", session_id=body.id, model=model, voice=voice)
        return SessionGrant(ephemeral_secret=body.client_secret.value, session_id=body.id)

    async def negotiate(self, sdp_offer: str, grant: SessionGrant) -> str:
        """Submit a complete SDP offer and return the remote SDP answer."""
        url = self.config.realtime_signalling_url
        headers = {
            "Authorization": f"Bearer {grant.ephemeral_secret}",
            "Session-Id": grant.session_id or "",
            "Content-Type": "application/sdp",
        }
        try:
            response = await self._client.post(url, content=sdp_offer.encode("utf-8"), headers=headers)
        except httpx.HTTPError as e:
            logger.warning("Signalling request failed", url=url, error=str(e))
            raise NegotiationError(f"Signalling request failed: {e}") from e

        if not response.is_success:
            logger.warning("Signalling request rejected", url=url, status_code=response.status_code)
            raise NegotiationError(f"Failed to establish session: {_describe(response)}")

        answer = response.text
        if not answer.strip():
            raise NegotiationError("Failed to establish session: empty SDP answer")
        return answer
