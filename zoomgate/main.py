# zoomgate/main.py
#
# -----------------------------------------------------------------------------
# Architectural notes (high level)
# -----------------------------------------------------------------------------
# This file is intentionally "thin" orchestration glue:
#   - It wires HTTP endpoints to the primitives implemented elsewhere.
#   - It MUST NOT implement crypto itself (crypto lives in context.py).
#   - It keeps NO server-side state: the install round-trip is bound only by
#     the two cookies set on /install and consumed on /auth.
#
# Key modules / responsibilities:
#   - config.py           : environment-driven settings (immutable)
#   - envelope.py         : binary envelope codec for the context header
#   - context.py          : context decryption + claims model
#   - middleware.py       : context verification gate
#   - pkce.py             : install redirect (state / verifier / challenge)
#   - callback.py         : /auth query + cookie validation
#   - zoom_api.py         : token exchange + deep link (outbound HTTP)
#   - security_headers.py : CSP and friends on every response
#   - proxy.py            : optional passthrough to an upstream origin
#   - audit.py            : append-only audit log (security telemetry)
#
# Request lanes:
#   - GET /install : 302 to {ZM_HOST}/oauth/authorize, sets state + verifier
#   - GET /auth    : validate -> token -> deep link -> 302 to the deep link
#   - everything else passes the context middleware first
# -----------------------------------------------------------------------------

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse
from fastapi.templating import Jinja2Templates
from starlette.middleware.gzip import GZipMiddleware
from starlette.responses import PlainTextResponse, RedirectResponse, Response

from . import __version__
from .audit import AuditTrail, build_common
from .callback import COOKIE_STATE, COOKIE_VERIFIER, validate_callback
from .config import Settings, get_settings
from .errors import UpstreamError, ValidationFailedError
from .middleware import ZoomContextMiddleware
from .pkce import build_install_redirect
from .proxy import UpstreamProxy
from .security_headers import (
    SecurityHeadersMiddleware,
    build_content_security_policy,
    default_directives,
)
from .zoom_api import ZoomApiClient

logger = logging.getLogger(__name__)

INSTALL_PATH = "/install"
CALLBACK_PATH = "/auth"

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

BASE_DIR = Path(__file__).resolve().parent
templates = Jinja2Templates(directory=str(BASE_DIR / "templates"))


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _common(request: Request) -> dict:
    return build_common(
        path=request.url.path,
        request_ip=(request.client.host if request.client else None),
        user_agent=request.headers.get("user-agent"),
    )


def _set_install_cookie(response: Response, settings: Settings, key: str, value: str) -> None:
    response.set_cookie(
        key,
        value,
        max_age=settings.COOKIE_MAX_AGE_SECONDS,
        path=CALLBACK_PATH,
        secure=settings.cookie_secure,
        httponly=True,
        samesite="lax",
    )


def _clear_install_cookies(response: Response, settings: Settings) -> None:
    # path/flags must match the ones used when setting, or browsers keep them
    for key in (COOKIE_STATE, COOKIE_VERIFIER):
        response.delete_cookie(
            key,
            path=CALLBACK_PATH,
            secure=settings.cookie_secure,
            httponly=True,
            samesite="lax",
        )


# -----------------------------------------------------------------------------
# Application factory
# -----------------------------------------------------------------------------
def create_app(
    settings: Optional[Settings] = None,
    zoom_api: Optional[ZoomApiClient] = None,
    proxy: Optional[UpstreamProxy] = None,
    audit: Optional[AuditTrail] = None,
) -> FastAPI:
    settings = settings or get_settings()
    zoom_api = zoom_api or ZoomApiClient(settings)
    if proxy is None and settings.PROXY_TARGET:
        proxy = UpstreamProxy(settings.PROXY_TARGET, timeout=settings.HTTP_TIMEOUT_SECONDS)
    audit = audit or AuditTrail(Path(settings.AUDIT_DIR), enabled=settings.AUDIT_ENABLED)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await zoom_api.close()
        if proxy is not None:
            await proxy.close()

    app = FastAPI(
        title="Zoom App Gateway",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.zoom_api = zoom_api
    app.state.audit = audit

    # add_middleware wraps: last added runs first.
    app.add_middleware(
        ZoomContextMiddleware,
        settings=settings,
        templates=templates,
        audit=audit,
        exempt_paths=(INSTALL_PATH, CALLBACK_PATH),
    )
    app.add_middleware(GZipMiddleware, minimum_size=0)
    app.add_middleware(
        SecurityHeadersMiddleware,
        csp=build_content_security_policy(
            default_directives(settings.redirect_origin, settings.redirect_hostname)
        ),
    )

    # -------------------------------------------------------------------------
    # Install (PKCE state generation)
    # -------------------------------------------------------------------------
    @app.get(INSTALL_PATH)
    def install(request: Request):
        redirect = build_install_redirect(
            settings.ZM_HOST,
            settings.ZM_CLIENT_ID,
            settings.ZM_REDIRECT_URL,
            challenge_encoding=settings.ZM_PKCE_CHALLENGE_ENCODING,
        )

        response = RedirectResponse(redirect.authorize_url, status_code=302)
        _set_install_cookie(response, settings, COOKIE_STATE, redirect.state)
        _set_install_cookie(response, settings, COOKIE_VERIFIER, redirect.verifier)

        audit.record("install_issued", "issued", _common(request))
        logger.info("install redirect issued to %s", settings.ZM_HOST)
        return response

    # -------------------------------------------------------------------------
    # OAuth callback
    # -------------------------------------------------------------------------
    @app.get(CALLBACK_PATH)
    async def auth_callback(request: Request):
        response: Response
        try:
            auth_param = validate_callback(request.query_params, request.cookies)
        except ValidationFailedError as e:
            await audit.arecord("callback_denied", "denied", _common(request), reason=e.reason)
            logger.info("callback rejected: %s", e.reason)
            response = PlainTextResponse(f"invalid callback: {e.reason}", status_code=e.status_code)
            _clear_install_cookies(response, settings)
            return response

        try:
            deeplink = await zoom_api.install_deep_link(auth_param)
        except UpstreamError as e:
            await audit.arecord("callback_upstream_error", "error", _common(request), detail=str(e)[:200])
            logger.error("install callback failed upstream: %s", e)
            response = PlainTextResponse(f"server error: {e}", status_code=e.status_code)
        else:
            await audit.arecord("callback_redirected", "approved", _common(request))
            response = RedirectResponse(deeplink, status_code=302)

        _clear_install_cookies(response, settings)
        return response

    # -------------------------------------------------------------------------
    # In-app routes (only reachable with a verified context)
    # -------------------------------------------------------------------------
    @app.get("/api/context")
    def app_context(request: Request):
        return JSONResponse(request.state.zoom_context.model_dump(exclude_none=True))

    if proxy is None:
        @app.get("/", response_class=HTMLResponse)
        def home(request: Request):
            return templates.TemplateResponse(
                request, "app.html", {"context": request.state.zoom_context}
            )
    else:
        @app.api_route("/{path:path}", methods=PROXY_METHODS)
        async def passthrough(request: Request, path: str):
            return await proxy.forward(request)

    return app
