"""Summary: Encoding for OAuth tokens kept in the credential store.

Importance: Keeps access and refresh tokens from sitting in SQLite as plain text.
Alternatives: Use a dedicated secrets manager or strong encryption library.
"""

from __future__ import annotations

import base64
import hashlib


class TokenCodec:
    """Summary: Reversible token encoder keyed by the deployment secret.

    Importance: Credential rows are written on every refresh and must round-trip.
    Alternatives: Use a proper encryption library with key management.
    """

    def __init__(self, secret: str) -> None:
        self._secret = secret.encode("utf-8")

    def encode(self, plaintext: str | None) -> str | None:
        """Summary: Encode a token, passing None through.

        Importance: Cleared credentials are stored as NULL, not as encoded empty strings.
        Alternatives: Store empty strings for missing tokens.
        """

        if plaintext is None:
            return None
        raw = plaintext.encode("utf-8")
        return base64.urlsafe_b64encode(_xor(raw, self._secret)).decode("utf-8")

    def decode(self, payload: str | None) -> str | None:
        """Decode a stored token, passing None through."""

        if payload is None:
            return None
        raw = base64.urlsafe_b64decode(payload.encode("utf-8"))
        return _xor(raw, self._secret).decode("utf-8")


def _xor(data: bytes, secret: bytes) -> bytes:
    key = _keystream(secret, len(data))
    return bytes(b ^ k for b, k in zip(data, key))


def _keystream(secret: bytes, length: int) -> bytes:
    """Summary: Derive a deterministic keystream from a secret.

    Importance: Keeps encoding reversible without external dependencies.
    Alternatives: Use a proper stream cipher.
    """

    output = b""
    counter = 0
    while len(output) < length:
        output += hashlib.sha256(secret + counter.to_bytes(4, "big")).digest()
        counter += 1
    return output[:length]
