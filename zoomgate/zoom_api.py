"""Zoom REST client used once per install callback.

Two calls, both single-shot (authorization codes are single use, so a
retry would fail identically or worse):
  - POST {host}/oauth/token          code -> access token (HTTP Basic auth)
  - POST {host}/v2/zoomapp/deeplink  access token -> one-time deep link

The access token is never persisted and never logged.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx
from pydantic import ValidationError

from .callback import AuthParam
from .config import Settings
from .errors import UpstreamError
from .models import DeepLinkAction, DeepLinkRequest, DeepLinkResponse, TokenResponse

logger = logging.getLogger(__name__)


class ZoomApiClient:
    """Token exchange + deep link requester.

    One instance per application; it owns an httpx.AsyncClient that must be
    closed with `close()` on shutdown.
    """

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            settings: Application settings (host, credentials, timeout)
            transport: Optional httpx transport, used by tests
        """
        self.host = settings.ZM_HOST
        self.client_id = settings.ZM_CLIENT_ID
        self.client_secret = settings.ZM_CLIENT_SECRET
        self.redirect_url = settings.ZM_REDIRECT_URL
        self.send_code_verifier = settings.ZM_SEND_CODE_VERIFIER
        self.deeplink_action = DeepLinkAction(
            url=settings.ZM_DEEPLINK_URL,
            role_name=settings.ZM_DEEPLINK_ROLE,
        )
        self._http_client = httpx.AsyncClient(
            timeout=settings.HTTP_TIMEOUT_SECONDS,
            transport=transport,
        )

    # https://developers.zoom.us/docs/integrations/oauth/
    async def request_access_token(self, auth_param: AuthParam) -> TokenResponse:
        """Exchange an authorization code for an access token.

        Raises:
            UpstreamError: network failure, timeout, non-2xx, or a body
                without access_token
        """
        form = {
            "code": auth_param.code,
            "redirect_uri": self.redirect_url,
            "grant_type": "authorization_code",
        }
        if self.send_code_verifier:
            form["code_verifier"] = auth_param.verifier

        url = f"{self.host}/oauth/token"
        logger.debug("Token request: url=%s send_verifier=%s", url, self.send_code_verifier)

        try:
            response = await self._http_client.post(
                url,
                data=form,
                auth=(self.client_id, self.client_secret),
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise UpstreamError(f"token request failed: {e.__class__.__name__}") from e

        return self._parse(response, TokenResponse, "token")

    # https://developers.zoom.us/docs/zoom-apps/architecture/#deep-link-generation
    async def get_deep_link(self, token: TokenResponse) -> str:
        """Request a one-time deep link into the app.

        Raises:
            UpstreamError: network failure, timeout, non-2xx, or a body
                without deeplink
        """
        body = DeepLinkRequest.for_action(self.deeplink_action)
        url = f"{self.host}/v2/zoomapp/deeplink"

        try:
            response = await self._http_client.post(
                url,
                json=body.model_dump(),
                headers={
                    "Authorization": f"Bearer {token.access_token}",
                    "Accept": "application/json",
                },
            )
        except httpx.HTTPError as e:
            raise UpstreamError(f"deep link request failed: {e.__class__.__name__}") from e

        return self._parse(response, DeepLinkResponse, "deep link").deeplink

    async def install_deep_link(self, auth_param: AuthParam) -> str:
        """Code -> token -> deep link. The token does not outlive this call."""
        token = await self.request_access_token(auth_param)
        return await self.get_deep_link(token)

    @staticmethod
    def _parse(response: httpx.Response, model, what: str):
        if not response.is_success:
            # body may echo request data; keep only the status
            logger.warning("Zoom %s request failed with %s", what, response.status_code)
            raise UpstreamError(f"{what} request returned HTTP {response.status_code}")

        try:
            return model.model_validate_json(response.content)
        except ValidationError as e:
            raise UpstreamError(f"invalid {what} response format") from e

    async def close(self) -> None:
        """Close the HTTP client and clean up resources."""
        await self._http_client.aclose()
