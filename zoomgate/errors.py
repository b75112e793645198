"""
zoomgate/errors.py

Exception hierarchy for the gateway.

Two families:
  - ContextError: the x-zoom-app-context header could not be turned into
    trusted claims. Each subclass carries the HTTP status the middleware
    answers with.
  - ValidationFailedError / UpstreamError: the install callback flow.

Nothing here retries. Every input handled by the gateway (context header,
authorization code, state, verifier) is consumed at most once.
"""

from __future__ import annotations


class GatewayError(Exception):
    """Base exception for all gateway errors."""

    status_code: int = 500


# -----------------------------------------------------------------------------
# App context (header) errors
# -----------------------------------------------------------------------------
class ContextError(GatewayError):
    """Raised when the app context header cannot be trusted."""

    status_code = 400
    reason = "context_error"


class MalformedEnvelopeError(ContextError):
    """Envelope bytes do not follow the length-prefixed layout."""

    reason = "malformed_envelope"


class ContextDecodeError(ContextError):
    """Header value is not valid base64 in the accepted variant(s)."""

    reason = "decode_error"


class AuthenticationFailedError(ContextError):
    """AES-GCM tag verification failed. Always treated as hostile input."""

    status_code = 401
    reason = "authentication_failed"


class DeserializationFailedError(ContextError):
    """Plaintext authenticated fine but is not the expected claims object."""

    reason = "deserialization_failed"


class ContextExpiredError(ContextError):
    """Claims authenticated and parsed, but their exp is in the past."""

    status_code = 401
    reason = "context_expired"


# -----------------------------------------------------------------------------
# Install / callback errors
# -----------------------------------------------------------------------------
class ValidationFailedError(GatewayError):
    """Callback query/cookies do not match the install round-trip.

    `reason` is a short human readable string returned to the browser.
    """

    status_code = 400

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class UpstreamError(GatewayError):
    """Token exchange or deep-link request against the Zoom API failed."""

    status_code = 500
