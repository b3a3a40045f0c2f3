"""
TesseraSessions - Crypto primitives.

- generate_opaque_token: CSPRNG token, 32 URL-safe base64 characters
- hash_token / tokens_equal: SHA-256 digest and constant-time comparison
- TokenSigner: compact signed tokens (``header.payload.signature``),
  HMAC-SHA256 keyed by the process secret
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from typing import Any

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import hmac as crypto_hmac

from tessera.config import MIN_SECRET_LENGTH, ConfigFault

from .faults import InvalidTokenFault


TOKEN_LENGTH = 32
TOKEN_ISSUER = "tessera"
TOKEN_AUDIENCE = "tessera"
SIGNING_ALGORITHM = "HS256"


# ============================================================================
# Opaque Tokens & Hashing
# ============================================================================

def generate_opaque_token() -> str:
    """
    Generate a random opaque token.

    24 random bytes encode to exactly 32 URL-safe base64 characters
    (alphabet ``A-Z a-z 0-9 - _``, 192 bits of entropy).
    """
    return secrets.token_urlsafe(24)


def hash_token(token: str) -> str:
    """SHA-256 hex digest of ``token``, used for storage."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def tokens_equal(a: str | None, b: str | None) -> bool:
    """Constant-time string comparison; None never matches."""
    if a is None or b is None:
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def b64encode(data: bytes) -> str:
    """URL-safe base64 encode without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def b64decode(data: str) -> bytes:
    """URL-safe base64 decode, restoring padding."""
    padding = 4 - (len(data) % 4)
    if padding != 4:
        data += "=" * padding
    return base64.urlsafe_b64decode(data)


def b64encode_json(data: Any) -> str:
    return b64encode(json.dumps(data, separators=(",", ":")).encode())


def b64decode_json(data: str) -> Any:
    return json.loads(b64decode(data))


SIGNED_HEADER = b64encode_json({"alg": SIGNING_ALGORITHM, "typ": "JWT"})


# ============================================================================
# TokenSigner - Signed Self-Contained Tokens
# ============================================================================

class TokenSigner:
    """
    Signs and verifies self-contained tokens with HMAC-SHA256.

    Format: header.payload.signature
    - header: {"alg": "HS256", "typ": "JWT"}
    - payload: claims plus ``iss``, ``aud``, ``iat`` and optional ``exp``
    - signature: HMAC-SHA256(header + "." + payload, secret)

    Example:
        >>> signer = TokenSigner("x" * 32)
        >>> token = signer.sign({"sub": "anonymous"}, expires_in=60)
        >>> signer.verify(token)["sub"]
        'anonymous'
    """

    def __init__(
        self,
        secret: str,
        issuer: str = TOKEN_ISSUER,
        audience: str = TOKEN_AUDIENCE,
    ):
        if not secret or len(secret) < MIN_SECRET_LENGTH:
            raise ConfigFault(f"signing secret must be at least {MIN_SECRET_LENGTH} characters")

        self._key = secret.encode("utf-8")
        self.issuer = issuer
        self.audience = audience

    def sign(self, claims: dict[str, Any], expires_in: int | None = None) -> str:
        """
        Sign ``claims``.

        Args:
            claims: JSON-serializable claims
            expires_in: Lifetime in seconds (None = no ``exp`` claim)

        Returns:
            Compact signed token
        """
        now = int(time.time())
        payload = dict(claims)
        payload.update({"iss": self.issuer, "aud": self.audience, "iat": now})
        if expires_in is not None:
            payload["exp"] = now + expires_in

        header_b64 = SIGNED_HEADER
        payload_b64 = b64encode_json(payload)
        message = f"{header_b64}.{payload_b64}".encode()

        return f"{header_b64}.{payload_b64}.{b64encode(self._mac(message))}"

    def verify(self, token: str) -> dict[str, Any]:
        """
        Verify and decode a signed token.

        Checks:
        1. Format (3 parts)
        2. Header (only the fixed HS256 header is accepted)
        3. Signature
        4. Issuer and audience
        5. Expiration

        Nothing client-supplied is JSON-decoded before the signature checks
        out.

        Raises:
            InvalidTokenFault: On any failure
        """
        try:
            header_b64, payload_b64, signature_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise InvalidTokenFault("malformed")

        if header_b64 != SIGNED_HEADER:
            raise InvalidTokenFault("unsupported algorithm")

        try:
            signature = b64decode(signature_b64)
        except ValueError:
            raise InvalidTokenFault("undecodable")

        h = crypto_hmac.HMAC(self._key, hashes.SHA256())
        h.update(f"{header_b64}.{payload_b64}".encode())
        try:
            h.verify(signature)
        except InvalidSignature:
            raise InvalidTokenFault("bad signature")

        try:
            payload = b64decode_json(payload_b64)
        except (ValueError, TypeError, RecursionError):
            raise InvalidTokenFault("undecodable")

        if not isinstance(payload, dict):
            raise InvalidTokenFault("payload is not an object")

        if payload.get("iss") != self.issuer or payload.get("aud") != self.audience:
            raise InvalidTokenFault("wrong issuer or audience")

        exp = payload.get("exp")
        if exp is not None and (not isinstance(exp, int) or exp <= int(time.time())):
            raise InvalidTokenFault("expired")

        return payload

    def parse(self, token: str | None) -> dict[str, Any] | None:
        """Like ``verify`` but fails closed: returns None instead of raising."""
        if not token:
            return None
        try:
            return self.verify(token)
        except InvalidTokenFault:
            return None

    def _mac(self, message: bytes) -> bytes:
        h = crypto_hmac.HMAC(self._key, hashes.SHA256())
        h.update(message)
        return h.finalize()
