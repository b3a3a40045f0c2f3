"""
TesseraSessions - Session verifier.

Turns the credentials presented on a request into a resolved session:
1. Opaque session token (authenticated)
2. Signed anonymous token (persisted record preferred)
3. Fresh anonymous session (nothing usable presented)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from .anonymous import AnonymousSession, AnonymousSessionManager
from .core import SessionKind, SessionRecord, utcnow
from .crypto import generate_opaque_token, hash_token, tokens_equal
from .faults import (
    AuthenticationFault,
    SessionNotFoundFault,
    SessionStoreCorruptedFault,
    SessionStoreUnavailableFault,
    fingerprint,
)
from .issuer import (
    SessionTokenParts,
    decode_session_token,
    encode_session_token,
    hash_public_data,
)
from .store import SessionStore


@dataclass(frozen=True)
class SessionCredentials:
    """
    Credentials presented by a request.

    Attributes:
        session_token: Raw opaque session token (cookie)
        anonymous_token: Signed anonymous token (cookie)
        anti_csrf_token: Value of the ``anti-csrf`` request header
    """

    session_token: str | None = None
    anonymous_token: str | None = None
    anti_csrf_token: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.session_token and not self.anonymous_token


@dataclass
class ResolvedSession:
    """
    Outcome of session resolution for one request.

    Attributes:
        kind: OPAQUE (authenticated) or ANONYMOUS
        handle: Session handle
        public_data: Client-visible data
        anti_csrf_token: Expected ``anti-csrf`` header value
        record: Persisted record (authenticated, or materialized anonymous)
        anonymous: Decoded anonymous token (anonymous sessions only)
        raw_token: Opaque token to hand back to the client (authenticated only)
        from_credentials: Session came from client-held credentials
        session_token_rejected: An opaque token was presented but rejected
        public_data_stale: Public data changed since the token was issued;
            raw_token is then a freshly re-issued token
    """

    kind: SessionKind
    handle: str
    public_data: dict[str, Any]
    anti_csrf_token: str
    record: SessionRecord | None = None
    anonymous: AnonymousSession | None = None
    raw_token: str | None = None
    from_credentials: bool = True
    session_token_rejected: bool = False
    public_data_stale: bool = False

    @property
    def is_anonymous(self) -> bool:
        return self.kind == SessionKind.ANONYMOUS

    @property
    def is_new(self) -> bool:
        """Freshly synthesized: the client must be sent the new anonymous token."""
        return not self.from_credentials


class SessionVerifier:
    """
    Verifies opaque session tokens and resolves request sessions.

    Successful verification slides the expiry forward. Expired records are
    ignored: never refreshed and never deleted.

    Example:
        >>> verifier = SessionVerifier(store, anonymous, session_expiry_minutes=60)
        >>> resolved = await verifier.resolve(SessionCredentials(session_token=raw))
        >>> resolved.kind
        <SessionKind.OPAQUE: 'ots'>
    """

    def __init__(
        self,
        store: SessionStore,
        anonymous: AnonymousSessionManager,
        session_expiry_minutes: int,
        logger: logging.Logger | None = None,
    ):
        self.store = store
        self.anonymous = anonymous
        self.session_expiry = timedelta(minutes=session_expiry_minutes)
        self.logger = logger or logging.getLogger("tessera.sessions.verifier")

    async def verify_token(self, raw_token: str) -> SessionRecord:
        """
        Verify a raw opaque session token and refresh its expiry.

        Raises:
            AuthenticationFault: Malformed, unknown, mismatched, expired or
                revoked token
        """
        record, _ = await self._verify(raw_token)
        return record

    async def _verify(self, raw_token: str) -> tuple[SessionRecord, SessionTokenParts]:
        parts = decode_session_token(raw_token)

        record = await self.store.get_session(parts.handle)
        if record is None:
            raise AuthenticationFault("unknown session")

        if not tokens_equal(record.hashed_session_token, hash_token(raw_token)):
            raise AuthenticationFault("session token mismatch")

        now = utcnow()
        if record.is_expired(now):
            raise AuthenticationFault("session expired")

        try:
            record = await self.store.update_session(
                parts.handle, expires_at=now + self.session_expiry
            )
        except SessionNotFoundFault:
            # Revoked between lookup and refresh
            raise AuthenticationFault("session revoked")

        return record, parts

    async def resolve(self, credentials: SessionCredentials) -> ResolvedSession:
        """
        Resolve the session for a request.

        Never raises on the anonymous path. Store faults from the opaque path
        propagate.
        """
        rejected = False

        if credentials.session_token:
            try:
                record, parts = await self._verify(credentials.session_token)
                raw_token = credentials.session_token
                stale = parts.public_data_hash != hash_public_data(record.public_data)
                if stale:
                    record, raw_token = await self._reissue(record)
            except AuthenticationFault as e:
                rejected = True
                self.logger.debug("Session token rejected: %s", e.reason)
            else:
                return ResolvedSession(
                    kind=SessionKind.OPAQUE,
                    handle=record.handle,
                    public_data=dict(record.public_data),
                    anti_csrf_token=record.anti_csrf_token,
                    record=record,
                    raw_token=raw_token,
                    public_data_stale=stale,
                )

        anonymous = self.anonymous.parse(credentials.anonymous_token)
        if anonymous is not None:
            record = await self._load_materialized(anonymous)
            return ResolvedSession(
                kind=SessionKind.ANONYMOUS,
                handle=anonymous.handle,
                public_data=dict(record.public_data if record else anonymous.public_data),
                anti_csrf_token=record.anti_csrf_token if record else anonymous.anti_csrf_token,
                record=record,
                anonymous=anonymous,
                session_token_rejected=rejected,
            )

        if credentials.anonymous_token:
            self.logger.debug("Anonymous token rejected")

        anonymous = self.anonymous.issue()
        return ResolvedSession(
            kind=SessionKind.ANONYMOUS,
            handle=anonymous.handle,
            public_data=dict(anonymous.public_data),
            anti_csrf_token=anonymous.anti_csrf_token,
            anonymous=anonymous,
            from_credentials=False,
            session_token_rejected=rejected,
        )

    async def _reissue(self, record: SessionRecord) -> tuple[SessionRecord, str]:
        """
        Replace the raw token of a session whose public data changed
        elsewhere, so the new token embeds the current public data hash.
        """
        raw_token = encode_session_token(record.handle, generate_opaque_token(), record.public_data)
        try:
            record = await self.store.update_session(
                record.handle, hashed_session_token=hash_token(raw_token)
            )
        except SessionNotFoundFault:
            raise AuthenticationFault("session revoked")

        self.logger.debug("Re-issued session token %s after public data change", fingerprint(record.handle))
        return record, raw_token

    async def _load_materialized(self, anonymous: AnonymousSession) -> SessionRecord | None:
        try:
            record = await self.store.get_session(anonymous.handle)
        except (SessionStoreUnavailableFault, SessionStoreCorruptedFault) as e:
            self.logger.warning(
                "Could not load anonymous session %s, using token data: %s",
                fingerprint(anonymous.handle), e,
            )
            return None

        if record is not None and not record.is_anonymous:
            return None
        return record
