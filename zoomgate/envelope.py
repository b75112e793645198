# zoomgate/envelope.py
#
# -----------------------------------------------------------------------------
# Architectural notes
# -----------------------------------------------------------------------------
# Structural codec for the binary envelope carried (base64 encoded) in the
# x-zoom-app-context header.
#
# What this module is:
#   - A pure length-prefixed parser / builder
#
# What this module is NOT:
#   - Not crypto. It never looks at key material and never decrypts.
#
# Wire layout (little-endian, no padding):
#
#     [1 byte  ] iv length     (unsigned)
#     [iv len  ] iv
#     [2 bytes ] aad length    (unsigned)
#     [aad len ] aad
#     [4 bytes ] cipher length (SIGNED 32-bit, negative is malformed)
#     [ct len  ] ciphertext
#     [rest    ] authentication tag
#
# Every declared length is checked against the remaining buffer BEFORE the
# slice is taken, so attacker-controlled lengths never reach the decryptor.
# -----------------------------------------------------------------------------

from __future__ import annotations

import struct
from dataclasses import dataclass

from .errors import MalformedEnvelopeError


IV_LEN_FMT = "<B"
AAD_LEN_FMT = "<H"
CIPHER_LEN_FMT = "<i"

MAX_IV_LEN = 0xFF
MAX_AAD_LEN = 0xFFFF
MAX_CIPHER_LEN = 0x7FFFFFFF


@dataclass(frozen=True)
class AppContextEnvelope:
    iv: bytes
    aad: bytes
    ciphertext: bytes
    tag: bytes


class _Reader:
    """Bounds-checked cursor over the raw envelope bytes."""

    def __init__(self, buf: bytes):
        self.buf = buf
        self.offset = 0

    @property
    def remaining(self) -> int:
        return len(self.buf) - self.offset

    def take(self, n: int, field: str) -> bytes:
        if n < 0:
            raise MalformedEnvelopeError(f"negative {field} length")
        if n > self.remaining:
            raise MalformedEnvelopeError(
                f"{field} needs {n} bytes, only {self.remaining} remaining"
            )
        out = self.buf[self.offset:self.offset + n]
        self.offset += n
        return out

    def unpack(self, fmt: str, field: str) -> int:
        raw = self.take(struct.calcsize(fmt), field)
        return struct.unpack(fmt, raw)[0]

    def rest(self) -> bytes:
        out = self.buf[self.offset:]
        self.offset = len(self.buf)
        return out


def decode_envelope(raw: bytes) -> AppContextEnvelope:
    """
    Parse raw envelope bytes into their four fields.

    Raises MalformedEnvelopeError if the buffer runs out mid-field, or a
    declared length exceeds what remains.
    """
    r = _Reader(bytes(raw))

    iv_len = r.unpack(IV_LEN_FMT, "iv length")
    iv = r.take(iv_len, "iv")

    aad_len = r.unpack(AAD_LEN_FMT, "aad length")
    aad = r.take(aad_len, "aad")

    cipher_len = r.unpack(CIPHER_LEN_FMT, "ciphertext length")
    ciphertext = r.take(cipher_len, "ciphertext")

    # tag is whatever is left; no length prefix
    tag = r.rest()

    return AppContextEnvelope(iv=iv, aad=aad, ciphertext=ciphertext, tag=tag)


def encode_envelope(envelope: AppContextEnvelope) -> bytes:
    """
    Assemble envelope bytes. Inverse of decode_envelope.

    Production only decodes; this exists so fixtures and local tooling can
    produce headers the same way the platform does.
    """
    if len(envelope.iv) > MAX_IV_LEN:
        raise ValueError(f"iv longer than {MAX_IV_LEN} bytes")
    if len(envelope.aad) > MAX_AAD_LEN:
        raise ValueError(f"aad longer than {MAX_AAD_LEN} bytes")
    if len(envelope.ciphertext) > MAX_CIPHER_LEN:
        raise ValueError("ciphertext too long")

    return b"".join(
        (
            struct.pack(IV_LEN_FMT, len(envelope.iv)),
            envelope.iv,
            struct.pack(AAD_LEN_FMT, len(envelope.aad)),
            envelope.aad,
            struct.pack(CIPHER_LEN_FMT, len(envelope.ciphertext)),
            envelope.ciphertext,
            envelope.tag,
        )
    )
