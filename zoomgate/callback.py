# zoomgate/callback.py
#
# Validates the OAuth redirect back to /auth BEFORE any network call.
#
# The only binding between /install and /auth is the pair of cookies set at
# install time, so every check here runs on request data alone. Checks run in
# a fixed order and the first failure wins; each has its own reason string
# because the reason is shown to the user.

from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Mapping, Optional

from .errors import ValidationFailedError


COOKIE_STATE = "state"
COOKIE_VERIFIER = "verifier"

MIN_CODE_LEN = 32
MAX_CODE_LEN = 64


@dataclass(frozen=True)
class AuthParam:
    code: str
    verifier: str


def _get(m: Mapping[str, str], key: str) -> Optional[str]:
    v = m.get(key)
    return v if v else None


def validate_callback(query: Mapping[str, str], cookies: Mapping[str, str]) -> AuthParam:
    """
    Check callback query params against the install cookies.

    Order:
      1. code present, MIN_CODE_LEN <= len(code) <= MAX_CODE_LEN
      2. state present
      3. state cookie present
      4. state == state cookie (exact, constant time)
      5. verifier cookie present

    Raises ValidationFailedError(reason) on the first violation.
    """
    code = _get(query, "code")
    if code is None:
        raise ValidationFailedError("code must be a valid string")

    if not MIN_CODE_LEN <= len(code) <= MAX_CODE_LEN:
        raise ValidationFailedError("code does not fit size requirements")

    state = _get(query, "state")
    if state is None:
        raise ValidationFailedError("state must be a string")

    cookie_state = _get(cookies, COOKIE_STATE)
    if cookie_state is None:
        raise ValidationFailedError(f"Cookie {COOKIE_STATE} must be defined")

    if not hmac.compare_digest(state.encode("utf-8"), cookie_state.encode("utf-8")):
        raise ValidationFailedError("invalid state parameter")

    verifier = _get(cookies, COOKIE_VERIFIER)
    if verifier is None:
        raise ValidationFailedError(f"Cookie {COOKIE_VERIFIER} must be defined")

    return AuthParam(code=code, verifier=verifier)
