"""
TesseraSessions - Session Engine.

The SessionEngine wires the session components together and runs the
per-request lifecycle:
1. Detection - Extract credentials from the transport
2. Resolution - Verify opaque token, parse anonymous token, or synthesize
3. Protection - CSRF check for mutating requests
4. Binding - Hand a SessionContext to business logic
5. Emission - Transport writes cookies and headers

SessionEngine is app-scoped (one per process); SessionContext instances
are request-scoped.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

from tessera.auth.authz import AuthorizationEngine
from tessera.config import SessionConfig

from .anonymous import AnonymousSessionManager
from .context import SessionContext
from .crypto import TokenSigner
from .csrf import CSRFGuard
from .issuer import TokenIssuer
from .store import CallableStore, MemoryStore, SessionStore
from .transport import CookieTransport
from .verifier import SessionCredentials, SessionVerifier


class SessionEngine:
    """
    Session lifecycle orchestrator and composition root.

    Construction validates the configuration: a missing or short secret in
    production raises ConfigFault, which is fatal at startup.

    Example:
        >>> engine = SessionEngine(SessionConfig(secret_key=secret, store=MemoryStore()))
        >>> ctx = await engine.resolve_headers({"cookie": cookie}, method="POST")
        >>> # ... handler uses ctx ...
        >>> response_headers = engine.commit(ctx)
    """

    def __init__(
        self,
        config: SessionConfig,
        store: SessionStore | None = None,
        logger: logging.Logger | None = None,
    ):
        """
        Initialize session engine.

        Args:
            config: Session configuration
            store: Session store (overrides ``config.store`` and callables)
            logger: Optional logger
        """
        self.config = config
        self.logger = logger or logging.getLogger("tessera.sessions")

        secret = config.resolve_secret()
        self.store = store or self._build_store(config)

        self.signer = TokenSigner(secret)
        self.issuer = TokenIssuer(
            self.store,
            config.session_expiry_minutes,
            logger=self.logger.getChild("issuer"),
        )
        self.anonymous = AnonymousSessionManager(
            self.signer,
            self.issuer,
            config.anon_session_expiry_minutes,
            logger=self.logger.getChild("anonymous"),
        )
        self.verifier = SessionVerifier(
            self.store,
            self.anonymous,
            config.session_expiry_minutes,
            logger=self.logger.getChild("verifier"),
        )
        self.csrf = CSRFGuard(
            enabled=config.csrf_protection,
            safe_methods=config.safe_methods,
            logger=self.logger.getChild("csrf"),
        )
        self.authz = AuthorizationEngine(config.is_authorized)
        self.transport = CookieTransport(config)

    def _build_store(self, config: SessionConfig) -> SessionStore:
        if config.store is not None:
            return config.store

        if config.has_store_callables:
            return CallableStore(**config.store_callables())

        if config.is_production:
            self.logger.warning(
                "No session store configured; using MemoryStore. "
                "Sessions will not be shared across processes or survive restarts."
            )
        return MemoryStore()

    # ========================================================================
    # Resolution
    # ========================================================================

    async def resolve(
        self,
        credentials: SessionCredentials,
        method: str | None = None,
    ) -> SessionContext:
        """
        Resolve the session for a request.

        Args:
            credentials: Credentials presented by the request
            method: HTTP method; when given the CSRF guard runs

        Returns:
            SessionContext for business logic

        Raises:
            CSRFValidationFault: Mutating request without a matching
                ``anti-csrf`` header
        """
        resolved = await self.verifier.resolve(credentials)

        if method is not None:
            self.csrf.check(method, credentials.anti_csrf_token, resolved)

        return SessionContext(self, resolved)

    async def resolve_headers(
        self,
        headers: Mapping[str, str],
        method: str | None = None,
    ) -> SessionContext:
        """Resolve from raw request headers (lower-case names)."""
        return await self.resolve(self.transport.extract(headers), method=method)

    # ========================================================================
    # Emission
    # ========================================================================

    def commit(self, context: SessionContext) -> list[tuple[str, str]]:
        """
        Render the context's pending effects as response headers.
        """
        return self.transport.render(context.effects)
