"""
zoomgate/proxy.py

Passthrough for paths the gateway does not serve itself.

Only reached AFTER the context middleware accepted the request, so the
upstream origin only ever sees requests carrying a verified context header.
Bodies are buffered; this is for app pages and small API calls, not
streaming.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response

logger = logging.getLogger(__name__)

# RFC 7230 section 6.1 plus headers httpx / the server recompute
HOP_BY_HOP = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
        "host",
        "content-length",
        "content-encoding",
    }
)


def _end_to_end(request: Request) -> list:
    return [(k, v) for k, v in request.headers.items() if k.lower() not in HOP_BY_HOP]


class UpstreamProxy:
    def __init__(
        self,
        target: str,
        timeout: float,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.target = target.rstrip("/")
        self._http_client = httpx.AsyncClient(
            base_url=self.target,
            timeout=timeout,
            transport=transport,
            follow_redirects=False,
        )

    async def forward(self, request: Request) -> Response:
        url = request.url.path
        if request.url.query:
            url = f"{url}?{request.url.query}"

        try:
            upstream = await self._http_client.request(
                request.method,
                url,
                headers=_end_to_end(request),
                content=await request.body(),
            )
        except httpx.HTTPError as e:
            logger.warning("proxy %s %s failed: %s", request.method, request.url.path, e.__class__.__name__)
            return PlainTextResponse("bad gateway", status_code=502)

        response = Response(content=upstream.content, status_code=upstream.status_code)
        # multi_items keeps repeated headers such as set-cookie apart
        for k, v in upstream.headers.multi_items():
            if k.lower() not in HOP_BY_HOP:
                response.headers.append(k, v)
        return response

    async def close(self) -> None:
        await self._http_client.aclose()
