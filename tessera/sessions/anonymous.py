"""
TesseraSessions - Anonymous sessions.

Anonymous sessions live entirely in a signed token held by the client until
the first private-data write, which materializes a backing SessionRecord
keyed by the same handle.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from .core import PublicData, SessionKind, SessionRecord, handle_kind, make_handle
from .crypto import TokenSigner, generate_opaque_token
from .faults import SessionPolicyViolationFault, fingerprint
from .issuer import TokenIssuer


ANONYMOUS_SUBJECT = "anonymous"
TOKEN_NAMESPACE = "tessera/anonymous"


@dataclass(frozen=True)
class AnonymousSession:
    """
    Decoded anonymous session token.

    Attributes:
        token: Signed token string (cookie value)
        handle: ``<token>:ajwt`` handle, stable across re-issues
        public_data: Client-visible data (``userId`` is always None)
        anti_csrf_token: Value required in the ``anti-csrf`` header
    """

    token: str
    handle: str
    public_data: dict[str, Any] = field(default_factory=PublicData.empty)
    anti_csrf_token: str = ""


class AnonymousSessionManager:
    """
    Issues, parses and materializes anonymous sessions.

    Example:
        >>> manager = AnonymousSessionManager(signer, issuer, anon_session_expiry_minutes=60)
        >>> session = manager.issue()
        >>> manager.parse(session.token).handle == session.handle
        True
    """

    def __init__(
        self,
        signer: TokenSigner,
        issuer: TokenIssuer,
        anon_session_expiry_minutes: int,
        logger: logging.Logger | None = None,
    ):
        self.signer = signer
        self.issuer = issuer
        self.expires_in = anon_session_expiry_minutes * 60
        self.logger = logger or logging.getLogger("tessera.sessions.anonymous")

    def issue(
        self,
        public_data: Mapping[str, Any] | None = None,
        *,
        handle: str | None = None,
        anti_csrf_token: str | None = None,
    ) -> AnonymousSession:
        """
        Sign a new anonymous token.

        Passing ``handle`` and ``anti_csrf_token`` re-issues the token of an
        existing anonymous session (e.g. after its public data changed).
        """
        normalized = PublicData.normalize(public_data)
        if normalized[PublicData.USER_ID] is not None:
            raise SessionPolicyViolationFault("anonymous sessions cannot carry a userId")

        handle = handle or make_handle(generate_opaque_token(), SessionKind.ANONYMOUS)
        anti_csrf_token = anti_csrf_token or generate_opaque_token()

        token = self.signer.sign(
            {
                "sub": ANONYMOUS_SUBJECT,
                TOKEN_NAMESPACE: {
                    "isAnonymous": True,
                    "handle": handle,
                    "publicData": normalized,
                    "antiCSRFToken": anti_csrf_token,
                },
            },
            expires_in=self.expires_in,
        )
        return AnonymousSession(
            token=token,
            handle=handle,
            public_data=normalized,
            anti_csrf_token=anti_csrf_token,
        )

    def parse(self, token: str | None) -> AnonymousSession | None:
        """
        Verify and decode an anonymous token.

        Fails closed: any decoding, signature, expiry or shape problem
        returns None.
        """
        claims = self.signer.parse(token)
        if claims is None or claims.get("sub") != ANONYMOUS_SUBJECT:
            return None

        data = claims.get(TOKEN_NAMESPACE)
        if not isinstance(data, dict) or data.get("isAnonymous") is not True:
            return None

        handle = data.get("handle")
        anti_csrf_token = data.get("antiCSRFToken")
        public_data = data.get("publicData")

        if not isinstance(handle, str) or handle_kind(handle) != SessionKind.ANONYMOUS:
            return None
        if not isinstance(anti_csrf_token, str) or not anti_csrf_token:
            return None
        if not isinstance(public_data, dict) or public_data.get(PublicData.USER_ID) is not None:
            return None

        return AnonymousSession(
            token=token,
            handle=handle,
            public_data=public_data,
            anti_csrf_token=anti_csrf_token,
        )

    async def materialize(
        self,
        session: AnonymousSession,
        private_data: Mapping[str, Any],
    ) -> SessionRecord:
        """
        Persist ``session`` as a SessionRecord keyed by its handle.

        The token keeps carrying the same handle, so later requests find the
        persisted record through it.

        Raises:
            SessionConflictFault: Session was already materialized
        """
        record = await self.issuer.materialize(
            handle=session.handle,
            public_data=session.public_data,
            anti_csrf_token=session.anti_csrf_token,
            private_data=private_data,
        )
        self.logger.info("Anonymous session %s persisted", fingerprint(session.handle))
        return record
