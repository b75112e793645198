# zoomgate/middleware.py
#
# -----------------------------------------------------------------------------
# Architectural notes
# -----------------------------------------------------------------------------
# Gate in front of every route except the install/callback pair.
#
#   no x-zoom-app-context     -> fallback HTML page with an install link
#                                (app opened in a plain browser, not an error)
#   header > MAX_CONTEXT_LEN  -> 400, decryption never attempted
#   header fails verification -> error response (400/401), never a pass-through
#   header verifies           -> claims on request.state.zoom_context, continue
#
# There is no "best effort" branch: a request either carries a context that
# authenticated under the shared secret, or it never reaches a route.
# -----------------------------------------------------------------------------

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Iterable

from fastapi.templating import Jinja2Templates
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response
from starlette.types import ASGIApp

from .audit import AuditTrail, build_common
from .config import Settings
from .context import verify_context
from .errors import ContextError

logger = logging.getLogger(__name__)

CONTEXT_HEADER = "x-zoom-app-context"
MAX_CONTEXT_LEN = 512

FALLBACK_TEMPLATE = "home.html"


def _client_ip(request: Request):
    return request.client.host if request.client else None


class ZoomContextMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app: ASGIApp,
        settings: Settings,
        templates: Jinja2Templates,
        audit: AuditTrail,
        exempt_paths: Iterable[str] = (),
    ) -> None:
        super().__init__(app)
        self.secret = settings.context_secret
        self.encoding = settings.ZM_CONTEXT_ENCODING
        self.check_expiry = settings.ZM_CONTEXT_CHECK_EXPIRY
        self.templates = templates
        self.audit = audit
        self.exempt_paths = frozenset(exempt_paths)

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        if request.url.path in self.exempt_paths:
            return await call_next(request)

        head = request.headers.get(CONTEXT_HEADER)

        if head is None:
            return self.templates.TemplateResponse(
                request, FALLBACK_TEMPLATE, {"install_url": "/install"}
            )

        if len(head) > MAX_CONTEXT_LEN:
            await self._deny(request, "header_too_long", head_len=len(head))
            return PlainTextResponse(
                f"Zoom App Context Header must be at most {MAX_CONTEXT_LEN} characters",
                status_code=400,
            )

        try:
            claims = verify_context(
                head,
                self.secret,
                encoding=self.encoding,
                check_expiry=self.check_expiry,
            )
        except ContextError as e:
            logger.warning("app context rejected path=%s reason=%s: %s", request.url.path, e.reason, e)
            await self._deny(request, e.reason, header_value=head)
            return PlainTextResponse(f"invalid app context: {e.reason}", status_code=e.status_code)

        request.state.zoom_context = claims
        logger.debug("app context verified uid=%s mid=%s", claims.uid, claims.mid)
        return await call_next(request)

    async def _deny(self, request: Request, reason: str, header_value=None, **extra) -> None:
        common = build_common(
            path=request.url.path,
            request_ip=_client_ip(request),
            user_agent=request.headers.get("user-agent"),
            header_value=header_value,
        )
        await self.audit.arecord("context_denied", "denied", common, reason=reason, **extra)
