"""
TesseraSessions - Token issuer.

Creates authenticated sessions:
- generates handle, raw opaque token and anti-CSRF token
- persists the record with only the token digest
- retries handle collisions
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Mapping

from .core import PublicData, SessionKind, SessionRecord, ensure_serializable, make_handle, utcnow
from .crypto import b64decode, b64encode, generate_opaque_token, hash_token
from .faults import (
    AuthenticationFault,
    SessionConflictFault,
    SessionPolicyViolationFault,
    fingerprint,
)
from .store import SessionStore


SESSION_TOKEN_VERSION = "v0"
TOKEN_FIELD_SEPARATOR = ";"
MAX_CREATE_ATTEMPTS = 3


# ============================================================================
# Session Token Wire Format
# ============================================================================

def hash_public_data(public_data: Mapping[str, Any]) -> str:
    """Stable SHA-256 digest of public data (sorted keys)."""
    encoded = json.dumps(public_data, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def encode_session_token(handle: str, token: str, public_data: Mapping[str, Any]) -> str:
    """
    Build the raw session token sent to the client.

    Format: base64url("handle;token;publicDataHash;v0")
    """
    parts = (handle, token, hash_public_data(public_data), SESSION_TOKEN_VERSION)
    return b64encode(TOKEN_FIELD_SEPARATOR.join(parts).encode("utf-8"))


@dataclass(frozen=True)
class SessionTokenParts:
    handle: str
    token: str
    public_data_hash: str
    version: str


def decode_session_token(raw_token: str) -> SessionTokenParts:
    """
    Split a raw session token into its parts.

    Raises:
        AuthenticationFault: Token cannot be decoded or has the wrong shape
    """
    try:
        decoded = b64decode(raw_token).decode("utf-8")
    except (ValueError, UnicodeDecodeError):
        raise AuthenticationFault("malformed session token")

    parts = decoded.split(TOKEN_FIELD_SEPARATOR)
    if len(parts) != 4 or parts[3] != SESSION_TOKEN_VERSION:
        raise AuthenticationFault("malformed session token")

    handle, token, public_data_hash, version = parts
    if not handle.endswith(f":{SessionKind.OPAQUE.value}"):
        raise AuthenticationFault("malformed session token")

    return SessionTokenParts(handle, token, public_data_hash, version)


# ============================================================================
# IssuedSession & TokenIssuer
# ============================================================================

@dataclass(frozen=True)
class IssuedSession:
    """
    Result of creating an authenticated session.

    ``raw_token`` is given to the client once and never stored.
    """

    raw_token: str
    anti_csrf_token: str
    record: SessionRecord

    @property
    def handle(self) -> str:
        return self.record.handle

    @property
    def public_data(self) -> dict[str, Any]:
        return self.record.public_data


class TokenIssuer:
    """
    Creates authenticated session records.

    Example:
        >>> issuer = TokenIssuer(store, session_expiry_minutes=60)
        >>> issued = await issuer.create({"userId": 1, "roles": ["user"]})
        >>> issued.record.hashed_session_token == hash_token(issued.raw_token)
        True
    """

    def __init__(
        self,
        store: SessionStore,
        session_expiry_minutes: int,
        logger: logging.Logger | None = None,
    ):
        self.store = store
        self.session_expiry = timedelta(minutes=session_expiry_minutes)
        self.logger = logger or logging.getLogger("tessera.sessions.issuer")

    async def create(
        self,
        public_data: Mapping[str, Any],
        private_data: Mapping[str, Any] | None = None,
        *,
        carry_over: SessionRecord | Mapping[str, Any] | None = None,
    ) -> IssuedSession:
        """
        Create and persist an authenticated session.

        Args:
            public_data: Must contain a non-null ``userId``
            private_data: Server-only data
            carry_over: Anonymous session data to merge underneath the new
                data (record, or mapping with ``public_data``/``private_data``)

        Returns:
            IssuedSession with the raw token and anti-CSRF token

        Raises:
            SessionPolicyViolationFault: Missing ``userId`` or invalid data
            SessionConflictFault: Handle collided on every attempt
        """
        carried_public, carried_private = _carried_data(carry_over)

        merged_public = PublicData.normalize({**carried_public, **dict(public_data)})
        if merged_public[PublicData.USER_ID] is None:
            raise SessionPolicyViolationFault("creating a session requires publicData.userId")

        merged_private = {**carried_private, **dict(private_data or {})}
        ensure_serializable(merged_private, "privateData")

        anti_csrf_token = generate_opaque_token()

        for attempt in range(1, MAX_CREATE_ATTEMPTS + 1):
            handle = make_handle(generate_opaque_token(), SessionKind.OPAQUE)
            raw_token = encode_session_token(handle, generate_opaque_token(), merged_public)
            now = utcnow()

            record = SessionRecord(
                handle=handle,
                user_id=merged_public[PublicData.USER_ID],
                hashed_session_token=hash_token(raw_token),
                anti_csrf_token=anti_csrf_token,
                expires_at=now + self.session_expiry,
                public_data=merged_public,
                private_data=merged_private,
                created_at=now,
            )

            try:
                stored = await self.store.create_session(record)
            except SessionConflictFault:
                self.logger.warning(
                    "Session handle collision (attempt %d/%d)", attempt, MAX_CREATE_ATTEMPTS
                )
                if attempt == MAX_CREATE_ATTEMPTS:
                    raise
                continue

            self.logger.info(
                "Created session %s for user %s", fingerprint(handle), stored.user_id
            )
            return IssuedSession(raw_token=raw_token, anti_csrf_token=anti_csrf_token, record=stored)

        # Loop always returns or raises
        raise SessionConflictFault()

    async def materialize(
        self,
        handle: str,
        public_data: Mapping[str, Any],
        anti_csrf_token: str,
        private_data: Mapping[str, Any] | None = None,
    ) -> SessionRecord:
        """
        Persist an anonymous session keyed by its existing handle.

        The record has no hashed token and no expiry; the signed anonymous
        token stays the credential.

        Raises:
            SessionConflictFault: Record for this handle already exists
        """
        normalized = PublicData.normalize(public_data)
        private = dict(private_data or {})
        ensure_serializable(private, "privateData")

        record = SessionRecord(
            handle=handle,
            user_id=None,
            hashed_session_token=None,
            anti_csrf_token=anti_csrf_token,
            expires_at=None,
            public_data=normalized,
            private_data=private,
        )
        stored = await self.store.create_session(record)
        self.logger.debug("Materialized anonymous session %s", fingerprint(handle))
        return stored


def _carried_data(
    carry_over: SessionRecord | Mapping[str, Any] | None,
) -> tuple[dict[str, Any], dict[str, Any]]:
    if carry_over is None:
        return {}, {}
    if isinstance(carry_over, SessionRecord):
        public, private = carry_over.public_data, carry_over.private_data
    else:
        public = carry_over.get("public_data") or {}
        private = carry_over.get("private_data") or {}

    # Anonymous identity never carries forward
    public = {k: v for k, v in public.items() if k != PublicData.USER_ID}
    return public, dict(private)
