"""
TesseraSessions - CSRF guard.

Mutating requests carrying session credentials must echo the session's
anti-CSRF token in the ``anti-csrf`` header. The token reaches the client
in a JS-readable cookie, which a cross-site page cannot read.
"""

from __future__ import annotations

import logging
from typing import FrozenSet, Optional

from .crypto import tokens_equal
from .faults import CSRFValidationFault, fingerprint
from .verifier import ResolvedSession


ANTI_CSRF_HEADER = "anti-csrf"
DEFAULT_SAFE_METHODS: FrozenSet[str] = frozenset({"GET", "HEAD", "OPTIONS"})


class CSRFGuard:
    """
    Validates the ``anti-csrf`` header on mutating requests.

    Exempt:
    - Safe methods (GET, HEAD, OPTIONS by default)
    - Freshly synthesized sessions (no credentials were presented, so
      nothing can be forged)
    - Everything, when constructed with ``enabled=False``

    Example:
        >>> guard = CSRFGuard()
        >>> guard.check("POST", request_header_value, resolved)
    """

    def __init__(
        self,
        enabled: bool = True,
        safe_methods: Optional[FrozenSet[str]] = None,
        logger: logging.Logger | None = None,
    ):
        self.enabled = enabled
        self.safe_methods = frozenset(
            m.upper() for m in (safe_methods or DEFAULT_SAFE_METHODS)
        )
        self.logger = logger or logging.getLogger("tessera.sessions.csrf")

    def is_mutating(self, method: str) -> bool:
        return method.upper() not in self.safe_methods

    def check(self, method: str, header_value: str | None, session: ResolvedSession) -> None:
        """
        Validate a request.

        Raises:
            CSRFValidationFault: Header missing or not matching
        """
        if not self.enabled or not self.is_mutating(method):
            return

        if not session.from_credentials:
            return

        if not header_value:
            self.logger.warning(
                "Missing anti-CSRF header on %s for session %s",
                method.upper(), fingerprint(session.handle),
            )
            raise CSRFValidationFault(missing=True)

        if not tokens_equal(header_value, session.anti_csrf_token):
            self.logger.warning(
                "Anti-CSRF mismatch on %s for session %s",
                method.upper(), fingerprint(session.handle),
            )
            raise CSRFValidationFault()
