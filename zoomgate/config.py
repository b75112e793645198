from functools import lru_cache
from typing import Optional
from urllib.parse import urlparse, urlunparse

from pydantic import field_validator
from pydantic_settings import BaseSettings

from .context import ENCODINGS


def _normalize_origin(v: str, name: str) -> str:
    """
    Absolute http(s) origin, lowercase host, optional port, no path.
    """
    v = (v or "").strip().rstrip("/")
    p = urlparse(v)

    if p.scheme not in ("http", "https"):
        raise ValueError(f"{name} must start with http:// or https://")

    if not p.hostname:
        raise ValueError(f"{name} must include a hostname")

    netloc = p.hostname.lower()
    if p.port:
        netloc = f"{netloc}:{p.port}"

    return urlunparse((p.scheme, netloc, "", "", "", ""))


class Settings(BaseSettings):
    # listener
    ZOOM_APP_HOST: str = "127.0.0.1"
    ZOOM_APP_PORT: int = 3000

    # OAuth app credentials (Zoom Marketplace)
    ZM_REDIRECT_URL: str
    ZM_HOST: str = "https://zoom.us"
    ZM_CLIENT_ID: str
    ZM_CLIENT_SECRET: str

    # secret used to derive the x-zoom-app-context key; Zoom uses the
    # client secret, so this only needs setting for unusual deployments
    ZM_CONTEXT_SECRET: Optional[str] = None
    ZM_CONTEXT_ENCODING: str = "auto"
    ZM_CONTEXT_CHECK_EXPIRY: bool = True

    # PKCE compatibility switches
    ZM_SEND_CODE_VERIFIER: bool = False
    ZM_PKCE_CHALLENGE_ENCODING: str = "standard"

    # deep link issued after install
    ZM_DEEPLINK_URL: str = "/"
    ZM_DEEPLINK_ROLE: str = "Owner"

    # optional upstream for unmatched paths
    PROXY_TARGET: Optional[str] = None

    HTTP_TIMEOUT_SECONDS: float = 10.0
    COOKIE_MAX_AGE_SECONDS: int = 600

    LOG_LEVEL: str = "INFO"
    # opt-in security telemetry; the gateway itself keeps no on-disk state
    AUDIT_ENABLED: bool = False
    AUDIT_DIR: str = "audit"

    class Config:
        env_file = ".env"
        frozen = True

    @field_validator("ZM_HOST")
    @classmethod
    def normalize_host(cls, v: str) -> str:
        return _normalize_origin(v, "ZM_HOST")

    @field_validator("PROXY_TARGET")
    @classmethod
    def normalize_proxy_target(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return _normalize_origin(v, "PROXY_TARGET")

    @field_validator("ZM_REDIRECT_URL")
    @classmethod
    def check_redirect_url(cls, v: str) -> str:
        """
        Must be the exact URL registered on the Marketplace; we only check
        that it is absolute http(s). The path is kept as is.
        """
        v = (v or "").strip()
        p = urlparse(v)
        if p.scheme not in ("http", "https") or not p.hostname:
            raise ValueError("ZM_REDIRECT_URL must be an absolute http(s) URL")
        return v

    @field_validator("ZM_CLIENT_ID", "ZM_CLIENT_SECRET")
    @classmethod
    def require_non_empty(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("client credentials cannot be empty")
        return v

    @field_validator("ZM_CONTEXT_ENCODING")
    @classmethod
    def check_context_encoding(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if v not in ENCODINGS:
            raise ValueError(f"ZM_CONTEXT_ENCODING must be one of {', '.join(ENCODINGS)}")
        return v

    @field_validator("ZM_PKCE_CHALLENGE_ENCODING")
    @classmethod
    def check_challenge_encoding(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if v not in ("standard", "urlsafe"):
            raise ValueError("ZM_PKCE_CHALLENGE_ENCODING must be standard or urlsafe")
        return v

    @field_validator("HTTP_TIMEOUT_SECONDS")
    @classmethod
    def check_timeout(cls, v: float) -> float:
        # an unresponsive upstream must never hang a handler
        if v <= 0:
            raise ValueError("HTTP_TIMEOUT_SECONDS must be > 0")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return (v or "").strip().upper() or "INFO"

    # -------------------------------------------------------------------------
    # Derived values
    # -------------------------------------------------------------------------
    @property
    def context_secret(self) -> str:
        return self.ZM_CONTEXT_SECRET or self.ZM_CLIENT_SECRET

    @property
    def redirect_origin(self) -> str:
        return _normalize_origin(self.ZM_REDIRECT_URL, "ZM_REDIRECT_URL")

    @property
    def redirect_hostname(self) -> str:
        p = urlparse(self.ZM_REDIRECT_URL)
        host = (p.hostname or "").lower()
        return f"{host}:{p.port}" if p.port else host

    @property
    def cookie_secure(self) -> bool:
        return urlparse(self.ZM_REDIRECT_URL).scheme == "https"


@lru_cache()
def get_settings() -> Settings:
    # Fail fast at startup if the environment is incomplete.
    return Settings()
