# zoomgate/context.py
#
# -----------------------------------------------------------------------------
# Architectural notes
# -----------------------------------------------------------------------------
# Decrypts the x-zoom-app-context header into trusted claims.
#
# Steps (order matters, nothing is skipped):
#   1. base64 decode the header value (standard or URL-safe, see below)
#   2. structural parse via envelope.decode_envelope
#   3. key = SHA-256(shared secret)
#   4. AES-256-GCM decrypt with the envelope's iv / aad / tag
#   5. parse plaintext as UTF-8 JSON into AppContextClaims
#
# Claims are trusted ONLY if step 4 succeeded. A forged but well formed
# envelope fails at the tag check, never later at JSON parsing.
#
# Base64 variant:
#   Older platform revisions send standard base64, newer ones URL-safe
#   without padding. "auto" picks the variant from the alphabet actually
#   used; mixing both alphabets is rejected.
# -----------------------------------------------------------------------------

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import os
import time
from typing import Any, Dict, Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from pydantic import BaseModel, ConfigDict, ValidationError

from .envelope import AppContextEnvelope, decode_envelope, encode_envelope
from .errors import (
    AuthenticationFailedError,
    ContextDecodeError,
    ContextExpiredError,
    DeserializationFailedError,
    MalformedEnvelopeError,
)


ENCODING_AUTO = "auto"
ENCODING_STANDARD = "standard"
ENCODING_URLSAFE = "urlsafe"
ENCODINGS = (ENCODING_AUTO, ENCODING_STANDARD, ENCODING_URLSAFE)

GCM_TAG_LEN = 16
GCM_IV_LEN = 12

# AESGCM accepts nonces in this range only
MIN_IV_LEN = 8
MAX_IV_LEN = 128


class AppContextClaims(BaseModel):
    """
    Decrypted context payload.

    The claim set is versioned by the platform; unknown fields are kept
    (extra="allow") and never cause a decode failure. Only uid, mid, ts and
    exp are required. ts / exp are epoch milliseconds.
    """

    model_config = ConfigDict(extra="allow")

    uid: str
    mid: str
    ts: int
    exp: int

    typ: Optional[str] = None
    act: Optional[str] = None
    aud: Optional[str] = None
    iss: Optional[str] = None
    theme: Optional[str] = None
    bmid: Optional[str] = None
    attendrole: Optional[str] = None

    def is_expired(self, now_ms: Optional[int] = None) -> bool:
        now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
        return self.exp < now_ms


# -----------------------------------------------------------------------------
# Base64 helpers
# -----------------------------------------------------------------------------
def _pad(s: str) -> str:
    return s + "=" * (-len(s) % 4)


def decode_header_value(value: str, encoding: str = ENCODING_AUTO) -> bytes:
    """
    Decode the header value to raw envelope bytes.

    Both variants are decoded with validate=True so stray characters are
    rejected instead of silently dropped.
    """
    if encoding not in ENCODINGS:
        raise ValueError(f"unknown context encoding: {encoding!r}")

    s = str(value).strip()
    if not s:
        raise ContextDecodeError("empty context header")

    if encoding == ENCODING_AUTO:
        urlsafe = "-" in s or "_" in s
        encoding = ENCODING_URLSAFE if urlsafe else ENCODING_STANDARD

    try:
        if encoding == ENCODING_URLSAFE:
            # altchars translation would otherwise let "+" and "/" through
            if "+" in s or "/" in s:
                raise ValueError("standard base64 characters in URL-safe value")
            return base64.b64decode(_pad(s), altchars=b"-_", validate=True)
        return base64.b64decode(_pad(s), validate=True)
    except (binascii.Error, ValueError) as e:
        raise ContextDecodeError(f"invalid base64 ({encoding}): {e}") from e


def encode_header_value(raw: bytes, encoding: str = ENCODING_STANDARD) -> str:
    if encoding == ENCODING_URLSAFE:
        return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")
    return base64.b64encode(raw).decode("ascii")


# -----------------------------------------------------------------------------
# Key derivation
# -----------------------------------------------------------------------------
def derive_key(shared_secret: str) -> bytes:
    """AES-256 key = SHA-256(utf8(shared_secret))."""
    return hashlib.sha256(shared_secret.encode("utf-8")).digest()


# -----------------------------------------------------------------------------
# Decrypt / encrypt
# -----------------------------------------------------------------------------
def decrypt_envelope(envelope: AppContextEnvelope, shared_secret: str) -> bytes:
    """
    AES-256-GCM open. Returns plaintext only if the tag verified.

    Any failure raises; no partial plaintext is ever returned.
    """
    if not MIN_IV_LEN <= len(envelope.iv) <= MAX_IV_LEN:
        raise MalformedEnvelopeError(f"unsupported iv length {len(envelope.iv)}")

    # AESGCM only verifies full 16-byte tags; a short tag cannot authenticate
    if len(envelope.tag) != GCM_TAG_LEN:
        raise AuthenticationFailedError(
            f"tag must be {GCM_TAG_LEN} bytes, got {len(envelope.tag)}"
        )

    aesgcm = AESGCM(derive_key(shared_secret))
    try:
        return aesgcm.decrypt(envelope.iv, envelope.ciphertext + envelope.tag, envelope.aad)
    except InvalidTag as e:
        raise AuthenticationFailedError("context tag verification failed") from e


def parse_claims(plaintext: bytes) -> AppContextClaims:
    try:
        return AppContextClaims.model_validate_json(plaintext)
    except ValidationError as e:
        raise DeserializationFailedError(
            f"unexpected context payload ({e.error_count()} error(s))"
        ) from e


def decrypt_context(
    header_value: str,
    shared_secret: str,
    encoding: str = ENCODING_AUTO,
) -> AppContextClaims:
    """
    Full header -> claims pipeline.

    Raises:
      - ContextDecodeError        bad base64
      - MalformedEnvelopeError    bad layout
      - AuthenticationFailedError tag mismatch (forged / wrong secret)
      - DeserializationFailedError authenticated but not a claims object
    """
    raw = decode_header_value(header_value, encoding)
    envelope = decode_envelope(raw)
    plaintext = decrypt_envelope(envelope, shared_secret)
    return parse_claims(plaintext)


def verify_context(
    header_value: str,
    shared_secret: str,
    encoding: str = ENCODING_AUTO,
    check_expiry: bool = True,
    now_ms: Optional[int] = None,
) -> AppContextClaims:
    """decrypt_context plus the exp check used by the middleware."""
    claims = decrypt_context(header_value, shared_secret, encoding)
    if check_expiry and claims.is_expired(now_ms):
        raise ContextExpiredError("app context expired")
    return claims


def encrypt_context(
    claims: Union[AppContextClaims, Dict[str, Any]],
    shared_secret: str,
    *,
    aad: bytes = b"",
    iv: Optional[bytes] = None,
    encoding: str = ENCODING_STANDARD,
) -> str:
    """
    Produce a header value the way the platform does.

    Used by tests and local tooling to forge *valid* headers for a known
    secret; the gateway itself never encrypts.
    """
    if isinstance(claims, AppContextClaims):
        payload = claims.model_dump(exclude_none=True)
    else:
        payload = dict(claims)

    plaintext = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    iv = iv if iv is not None else os.urandom(GCM_IV_LEN)

    sealed = AESGCM(derive_key(shared_secret)).encrypt(iv, plaintext, aad)
    envelope = AppContextEnvelope(
        iv=iv,
        aad=aad,
        ciphertext=sealed[:-GCM_TAG_LEN],
        tag=sealed[-GCM_TAG_LEN:],
    )
    return encode_header_value(encode_envelope(envelope), encoding)
