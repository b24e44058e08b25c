"""
FastAPI credential broker for the voice assistant.

Keeps the long-lived provider keys on the server and hands clients only
short-lived credentials.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- GET /api/get-speech-token: Short-lived speech recognition token
- POST /api/sessions: One-time realtime session grant
"""

import asyncio
import sys

# Use uvloop for faster asyncio where available (Linux/macOS)
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass  # uvloop not available on Windows

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx
import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from src.voice_assistant.config import ConfigError, get_config
from src.voice_assistant.logging_config import configure_logging

logger = structlog.get_logger(__name__)

# Speech tokens are valid for 10 minutes; advertise 9 so clients refresh early.
SPEECH_TOKEN_TTL_SECONDS = 540
DEFAULT_VOICE = "verse"


@dataclass
class ServerMetrics:
    """Server-wide metrics."""
    start_time: float = field(default_factory=time.time)
    speech_tokens_issued: int = 0
    sessions_created: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "speech_tokens_issued": self.speech_tokens_issued,
            "sessions_created": self.sessions_created,
            "errors": self.errors,
        }


metrics = ServerMetrics()


class SessionRequest(BaseModel):
    """Body of POST /api/sessions."""
    model: str
    voice: Optional[str] = None


def speech_token_url(region: str) -> str:
    return f"https://{region}.api.cognitive.microsoft.com/sts/v1.0/issueToken"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting credential broker...")

    try:
        config = get_config()
        configure_logging(config.log_level)
        try:
            config.validate_server()
        except ConfigError as e:
            logger.warning("Realtime session settings incomplete; session requests will fail", error=str(e))
        if not config.azure_speech_key:
            logger.warning("AZURE_SPEECH_KEY not set; speech tokens will be refused")

        app.state.http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(config.http_timeout_seconds)
        )

        logger.info(
            "Server ready",
            port=config.port,
            speech_region=config.azure_speech_region,
            azure_openai_key_set=bool(config.azure_openai_api_key),
            azure_speech_key_set=bool(config.azure_speech_key),
        )

    except Exception as e:
        logger.error("Startup failed", error=str(e))
        sys.exit(1)

    yield

    logger.info("Shutting down server...")
    await app.state.http_client.aclose()


app = FastAPI(
    title="Voice Assistant Broker",
    description="Issues speech recognition tokens and realtime session grants",
    version="1.0.0",
    lifespan=lifespan,
)


def _http_client(request: Request) -> httpx.AsyncClient:
    return request.app.state.http_client


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Metrics endpoint."""
    return JSONResponse(content=metrics.to_dict())


@app.get("/api/get-speech-token")
async def get_speech_token(request: Request) -> JSONResponse:
    """
    Exchange the speech subscription key for a short-lived token.

    Returns {token, region, expires_in}. The upstream status code is passed
    through when the token service refuses the request.
    """
    config = get_config()

    if not config.azure_speech_key:
        return JSONResponse(
            status_code=400,
            content={"error": "Azure Speech Service key is not configured"},
        )

    try:
        response = await _http_client(request).post(
            speech_token_url(config.azure_speech_region),
            headers={
                "Ocp-Apim-Subscription-Key": config.azure_speech_key,
                "Content-Type": "application/json",
            },
        )
    except httpx.HTTPError as e:
        logger.error("Speech token request failed", error=str(e))
        metrics.errors += 1
        return JSONResponse(
            status_code=500,
            content={"error": "Error retrieving token", "details": str(e)},
        )

    if response.status_code != 200:
        logger.error(
            "Speech token service error",
            status=response.status_code,
            body=response.text[:200],
        )
        metrics.errors += 1
        return JSONResponse(
            status_code=response.status_code,
            content={
                "error": "Error retrieving token",
                "details": f"Token service returned {response.status_code}",
            },
        )

    metrics.speech_tokens_issued += 1
    logger.info("Speech token issued", region=config.azure_speech_region)

    return JSONResponse(
        content={
            "token": response.text,
            "region": config.azure_speech_region,
            "expires_in": SPEECH_TOKEN_TTL_SECONDS,
        }
    )


@app.post("/api/sessions")
async def create_session(body: SessionRequest, request: Request) -> JSONResponse:
    """
    Create a realtime session and return the provider's response, which
    carries the session id and the ephemeral client secret.
    """
    config = get_config()
    voice = body.voice or DEFAULT_VOICE

    try:
        config.validate_server()
    except ConfigError as e:
        logger.error("Cannot create session", error=str(e))
        metrics.errors += 1
        return JSONResponse(status_code=500, content={"error": str(e)})

    logger.info("Creating realtime session", model=body.model, voice=voice)

    try:
        response = await _http_client(request).post(
            config.azure_openai_sessions_url,
            headers={
                "api-key": config.azure_openai_api_key,
                "Content-Type": "application/json",
            },
            json={"model": body.model, "voice": voice},
        )
        if response.status_code >= 400:
            raise RuntimeError(
                f"Azure OpenAI API returned {response.status_code}: {response.text[:200]}"
            )
        data = response.json()
    except (httpx.HTTPError, RuntimeError, ValueError) as e:
        logger.error("Error creating session", error=str(e))
        metrics.errors += 1
        return JSONResponse(status_code=500, content={"error": str(e)})

    metrics.sessions_created += 1
    logger.info("Realtime session created", session_id=data.get("id") if isinstance(data, dict) else None)
    return JSONResponse(content=data)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler."""
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        error=str(exc),
    )
    metrics.errors += 1

    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )


def main() -> None:
    """Run the server."""
    config = get_config()
    configure_logging(config.log_level)

    logger.info("Starting server", port=config.port)

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=config.port,
        log_level=config.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
