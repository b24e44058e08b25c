"""
Pytest configuration and fixtures.
"""

import pytest
import os
from unittest.mock import patch


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "BACKEND_URL": "http://broker.test",
        "REALTIME_SIGNALLING_URL": "https://realtime.test/v1/realtimertc",
        "REALTIME_DEPLOYMENT": "gpt-4o-mini-realtime-preview",
        "REALTIME_VOICE": "verse",
        "LOG_LEVEL": "DEBUG",
        "LISTENER_RETRY_SECONDS": "0",  # Retries are opted into per test
        "PORT": "3000",
        "AZURE_OPENAI_SESSIONS_URL": "https://openai.test/openai/realtimeapi/sessions",
        "AZURE_OPENAI_API_KEY": "test_openai_key",
        "AZURE_SPEECH_KEY": "test_speech_key",
        "AZURE_SPEECH_REGION": "eastus",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.voice_assistant.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


@pytest.fixture
def speech_token():
    from src.voice_assistant.backend import SpeechToken
    return SpeechToken(token="speech-token-1", region="eastus", expires_in=540)
