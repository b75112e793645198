"""
zoomgate/pkce.py

Install redirect for the OAuth Authorization Code + PKCE flow.

Per install attempt we create:
  - state     : 32 random bytes, base64url without padding (CSRF binding)
  - verifier  : 32 random bytes, base64url without padding
                (43 chars, RFC 7636 unreserved alphabet, always ASCII)
  - challenge : base64(SHA-256(ascii(verifier)))

state + verifier travel to the browser as cookies; the challenge goes to
the authorize endpoint only. Nothing is stored server side.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
from dataclasses import dataclass
from urllib.parse import urlencode


STATE_BYTES = 32
VERIFIER_BYTES = 32

CHALLENGE_STANDARD = "standard"
CHALLENGE_URLSAFE = "urlsafe"


def b64url_token(nbytes: int) -> str:
    # token_urlsafe is base64url of nbytes random bytes without padding
    return secrets.token_urlsafe(nbytes)


def code_challenge(verifier: str, encoding: str = CHALLENGE_STANDARD) -> str:
    """
    S256 challenge for a verifier.

    The platform revision this gateway targets uses standard base64 (with
    padding); RFC 7636 uses base64url without padding. Both are available.
    """
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    if encoding == CHALLENGE_URLSAFE:
        return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
    return base64.b64encode(digest).decode("ascii")


@dataclass(frozen=True)
class InstallState:
    state: str
    verifier: str
    challenge: str

    @classmethod
    def generate(cls, challenge_encoding: str = CHALLENGE_STANDARD) -> "InstallState":
        state = b64url_token(STATE_BYTES)
        verifier = b64url_token(VERIFIER_BYTES)
        return cls(
            state=state,
            verifier=verifier,
            challenge=code_challenge(verifier, challenge_encoding),
        )


@dataclass(frozen=True)
class InstallRedirect:
    authorize_url: str
    state: str
    verifier: str


def authorize_url(
    platform_host: str,
    client_id: str,
    redirect_uri: str,
    install: InstallState,
) -> str:
    params = {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "code_challenge": install.challenge,
        "code_challenge_method": "S256",
        "state": install.state,
    }
    return f"{platform_host.rstrip('/')}/oauth/authorize?" + urlencode(params)


def build_install_redirect(
    platform_host: str,
    client_id: str,
    redirect_uri: str,
    challenge_encoding: str = CHALLENGE_STANDARD,
) -> InstallRedirect:
    """
    Returns (authorize_url, state cookie value, verifier cookie value).
    """
    install = InstallState.generate(challenge_encoding)
    return InstallRedirect(
        authorize_url=authorize_url(platform_host, client_id, redirect_uri, install),
        state=install.state,
        verifier=install.verifier,
    )
