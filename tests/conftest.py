"""Shared fixtures for the gateway tests."""
import sys
import time
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add project root to path so we can import zoomgate / verify_audit
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from zoomgate.config import Settings
from zoomgate.context import encrypt_context
from zoomgate.zoom_api import ZoomApiClient

CLIENT_SECRET = "test-client-secret"
REDIRECT_URL = "https://gateway.example.com/auth"
DEEPLINK = "https://zoom.us/launch/chatapp?deeplink=abc123"


def future_ms(seconds: int = 3600) -> int:
    return int((time.time() + seconds) * 1000)


def make_claims(**overrides):
    claims = {
        "typ": "meeting",
        "uid": "user-1",
        "mid": "meeting-1",
        "ts": int(time.time() * 1000),
        "exp": future_ms(),
    }
    claims.update(overrides)
    return claims


def make_header(secret: str = CLIENT_SECRET, **overrides) -> str:
    return encrypt_context(make_claims(**overrides), secret)


@pytest.fixture
def make_settings(tmp_path):
    def _make(**overrides) -> Settings:
        values = {
            "ZM_REDIRECT_URL": REDIRECT_URL,
            "ZM_CLIENT_ID": "test-client-id",
            "ZM_CLIENT_SECRET": CLIENT_SECRET,
            "AUDIT_ENABLED": True,
            "AUDIT_DIR": str(tmp_path / "audit"),
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make


@pytest.fixture
def settings(make_settings):
    return make_settings()


@pytest.fixture
def fake_zoom_api():
    api = MagicMock(spec=ZoomApiClient)
    api.install_deep_link = AsyncMock(return_value=DEEPLINK)
    api.close = AsyncMock()
    return api
