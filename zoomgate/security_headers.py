# zoomgate/security_headers.py
#
# Response hardening headers for pages embedded in the Zoom client.
#
# The CSP header is built from an explicitly ORDERED list of directives so
# the output is byte-identical run to run.

from __future__ import annotations

from typing import Awaitable, Callable, List, Sequence, Tuple

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

ZOOM_APPS_SDK_URL = "https://appssdk.zoom.us/sdk.min.js"

Directive = Tuple[str, str]


def default_directives(redirect_origin: str, redirect_host: str) -> List[Directive]:
    return [
        ("default-src", "'self' 'unsafe-inline' 'unsafe-eval'"),
        ("style-src", "'self' 'unsafe-inline' 'unsafe-eval'"),
        ("script-src", f"{ZOOM_APPS_SDK_URL} 'self' 'unsafe-inline' 'unsafe-eval'"),
        ("img-src", f"'self' data: {redirect_origin}"),
        ("connect-src", f"'self' wss://{redirect_host}"),
        ("base-uri", "'self'"),
        ("form-action", "'self'"),
        ("font-src", "'self' https: data:"),
        ("frame-ancestors", "'self'"),
        ("object-src", "'none'"),
        ("script-src-attr", "'none'"),
        ("upgrade-insecure-requests", ""),
    ]


def build_content_security_policy(directives: Sequence[Directive]) -> str:
    """
    [(name, value), ...] -> "name value; name2 value2; flag"

    An empty value emits the bare directive name.
    """
    parts = []
    for name, value in directives:
        value = value.strip()
        parts.append(f"{name} {value}" if value else name)
    return "; ".join(parts)


def security_headers(csp: str) -> List[Tuple[str, str]]:
    return [
        ("Content-Security-Policy", csp),
        ("Strict-Transport-Security", "max-age=31536000; includeSubDomains"),  # 1 year
        ("Referrer-Policy", "same-origin"),
        ("X-Frame-Options", "SAMEORIGIN"),
        ("X-Content-Type-Options", "nosniff"),
    ]


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Sets the hardening headers on every response, errors included."""

    def __init__(self, app: ASGIApp, csp: str) -> None:
        super().__init__(app)
        self.headers = security_headers(csp)

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        response = await call_next(request)
        for name, value in self.headers:
            response.headers[name] = value
        return response
