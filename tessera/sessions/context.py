"""
TesseraSessions - Session context.

Per-request facade handed to business logic:
- identity accessors (user_id, roles, handle, public_data, ...)
- authorization (authorize / is_authorized)
- lifecycle (create / revoke / revoke_all)
- data accessors (private and public data)

Every change that must reach the client is recorded on ``ResponseEffects``
and written out by the transport at commit time.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .core import PublicData, SessionKind, SessionRecord, ensure_serializable
from .crypto import generate_opaque_token, hash_token
from .faults import (
    SessionConflictFault,
    SessionNotFoundFault,
    SessionPolicyViolationFault,
    fingerprint,
)
from .issuer import encode_session_token
from .verifier import ResolvedSession

if TYPE_CHECKING:
    from tessera.auth.authz import RoleRequirement
    from .engine import SessionEngine
    from .store import SessionStore


logger = logging.getLogger("tessera.sessions.context")


# ============================================================================
# ResponseEffects - Pending Client Updates
# ============================================================================

@dataclass
class ResponseEffects:
    """
    Cookies and headers the transport must emit for this request.

    Attributes:
        session_token: Opaque session token to set
        anonymous_token: Anonymous token to set
        anti_csrf_token: Anti-CSRF token to send (cookie and header)
        public_data: Public data to send (cookie and header)
        clear_session_token: Expire the opaque session cookie
        clear_anonymous_token: Expire the anonymous session cookie
        session_created: Emit ``session-created: true``
    """

    session_token: str | None = None
    anonymous_token: str | None = None
    anti_csrf_token: str | None = None
    public_data: dict[str, Any] | None = None
    clear_session_token: bool = False
    clear_anonymous_token: bool = False
    session_created: bool = False

    @property
    def is_empty(self) -> bool:
        return (
            self.session_token is None
            and self.anonymous_token is None
            and self.anti_csrf_token is None
            and self.public_data is None
            and not self.clear_session_token
            and not self.clear_anonymous_token
            and not self.session_created
        )

    def set_authenticated(
        self,
        raw_token: str,
        anti_csrf_token: str,
        public_data: Mapping[str, Any],
        created: bool = False,
    ) -> None:
        self.session_token = raw_token
        self.clear_session_token = False
        self.anonymous_token = None
        self.clear_anonymous_token = True
        self.anti_csrf_token = anti_csrf_token
        self.public_data = dict(public_data)
        self.session_created = self.session_created or created

    def refresh_authenticated(self, raw_token: str, anti_csrf_token: str) -> None:
        """Re-send the session cookie so its lifetime follows the sliding expiry."""
        self.session_token = raw_token
        self.clear_session_token = False
        self.anti_csrf_token = anti_csrf_token

    def set_anonymous(
        self,
        token: str,
        anti_csrf_token: str,
        public_data: Mapping[str, Any],
        clear_session: bool = False,
    ) -> None:
        self.anonymous_token = token
        self.clear_anonymous_token = False
        if clear_session:
            self.session_token = None
            self.clear_session_token = True
        self.anti_csrf_token = anti_csrf_token
        self.public_data = dict(public_data)


# ============================================================================
# SessionContext
# ============================================================================

class SessionContext:
    """
    Request-scoped view of the current session.

    Example:
        >>> ctx = await engine.resolve(credentials)
        >>> ctx.authorize("admin")
        >>> await ctx.set_private_data({"cart": [1, 2]})
        >>> await ctx.revoke()
        >>> ctx.is_anonymous
        True
    """

    def __init__(self, engine: SessionEngine, resolved: ResolvedSession):
        self._engine = engine
        self._kind = resolved.kind
        self._handle = resolved.handle
        self._public_data = dict(resolved.public_data)
        self._anti_csrf_token = resolved.anti_csrf_token
        self._record = resolved.record
        self._anonymous = resolved.anonymous
        self.effects = ResponseEffects()

        if resolved.is_new:
            self.effects.set_anonymous(
                resolved.anonymous.token,
                resolved.anti_csrf_token,
                resolved.public_data,
            )
        elif resolved.raw_token is not None:
            self.effects.refresh_authenticated(resolved.raw_token, resolved.anti_csrf_token)
            if resolved.public_data_stale:
                self.effects.public_data = dict(self._public_data)

        if resolved.session_token_rejected:
            self.effects.clear_session_token = True

    @property
    def store(self) -> SessionStore:
        return self._engine.store

    # ========================================================================
    # Identity
    # ========================================================================

    @property
    def user_id(self) -> Any:
        return self._public_data.get(PublicData.USER_ID)

    @property
    def roles(self) -> list[str]:
        return list(self._public_data.get(PublicData.ROLES) or [])

    @property
    def handle(self) -> str:
        return self._handle

    @property
    def public_data(self) -> dict[str, Any]:
        return dict(self._public_data)

    @property
    def anti_csrf_token(self) -> str:
        return self._anti_csrf_token

    @property
    def is_anonymous(self) -> bool:
        return self._kind == SessionKind.ANONYMOUS

    # ========================================================================
    # Authorization
    # ========================================================================

    def authorize(self, required: RoleRequirement = None) -> None:
        """
        Assert the session may proceed.

        Raises:
            AuthenticationFault: Anonymous session
            AuthorizationFault: None of ``required`` held
        """
        self._engine.authz.authorize(self.user_id, self.roles, required)

    def is_authorized(self, required: RoleRequirement = None) -> bool:
        return self._engine.authz.is_authorized(self.user_id, self.roles, required)

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def create(
        self,
        public_data: Mapping[str, Any],
        private_data: Mapping[str, Any] | None = None,
    ) -> None:
        """
        Log in: create an authenticated session for ``public_data["userId"]``.

        Anonymous data is carried forward underneath the new data and the
        persisted anonymous record, if any, is deleted. Other sessions of
        the same user are left alone.
        """
        carry_over: SessionRecord | dict[str, Any] | None = None
        anonymous_record: SessionRecord | None = None

        if self.is_anonymous:
            anonymous_record = await self._load_anonymous_record()
            carry_over = anonymous_record or {"public_data": self._public_data}

        issued = await self._engine.issuer.create(public_data, private_data, carry_over=carry_over)

        if anonymous_record is not None:
            try:
                await self.store.delete_session(anonymous_record.handle)
            except SessionNotFoundFault:
                logger.debug(
                    "Anonymous session %s already gone at login",
                    fingerprint(anonymous_record.handle),
                )

        self._kind = SessionKind.OPAQUE
        self._handle = issued.handle
        self._public_data = dict(issued.public_data)
        self._anti_csrf_token = issued.anti_csrf_token
        self._record = issued.record
        self._anonymous = None
        self.effects.set_authenticated(
            issued.raw_token, issued.anti_csrf_token, issued.public_data, created=True
        )

    async def revoke(self) -> None:
        """
        Log out this session.

        Raises:
            SessionNotFoundFault: Authenticated record already gone
        """
        if not self.is_anonymous:
            await self.store.delete_session(self._handle)
            logger.info("Revoked session %s", fingerprint(self._handle))
        else:
            record = await self._load_anonymous_record()
            if record is not None:
                await self.store.delete_session(record.handle)

        self._become_anonymous()

    async def revoke_all(self) -> int:
        """
        Log out every session of the current user, this one included.

        Returns:
            Number of records removed (0 for anonymous sessions)
        """
        if self.is_anonymous:
            return 0

        user_id = self.user_id
        removed = 0
        for record in await self.store.get_sessions(user_id):
            try:
                await self.store.delete_session(record.handle)
            except SessionNotFoundFault:
                logger.debug("Session %s revoked concurrently", fingerprint(record.handle))
                continue
            removed += 1

        logger.info("Revoked %d sessions for user %s", removed, user_id)
        self._become_anonymous()
        return removed

    def _become_anonymous(self) -> None:
        anonymous = self._engine.anonymous.issue()
        self._kind = SessionKind.ANONYMOUS
        self._handle = anonymous.handle
        self._public_data = dict(anonymous.public_data)
        self._anti_csrf_token = anonymous.anti_csrf_token
        self._record = None
        self._anonymous = anonymous
        self.effects.set_anonymous(
            anonymous.token, anonymous.anti_csrf_token, anonymous.public_data, clear_session=True
        )

    async def _load_anonymous_record(self) -> SessionRecord | None:
        record = await self.store.get_session(self._handle)
        if record is None or not record.is_anonymous:
            return None
        return record

    # ========================================================================
    # Data Accessors
    # ========================================================================

    async def get_private_data(self) -> dict[str, Any]:
        """Load private data from the store; empty until first written."""
        record = await self.store.get_session(self._handle)
        if record is None:
            return {}
        return dict(record.private_data)

    async def set_private_data(self, data: Mapping[str, Any]) -> None:
        """
        Merge ``data`` into private data (``{**old, **new}``).

        The first write on an anonymous session persists it.
        """
        data = _validated(data, "privateData")

        record = await self.store.get_session(self._handle)

        if record is None and self.is_anonymous:
            try:
                self._record = await self._engine.anonymous.materialize(self._anonymous, data)
            except SessionConflictFault:
                # Materialized by a concurrent request
                record = await self.store.get_session(self._handle)
            else:
                self.effects.set_anonymous(
                    self._anonymous.token, self._anti_csrf_token, self._public_data
                )
                return

        if record is None:
            raise SessionNotFoundFault(self._handle)

        self._record = await self.store.update_session(
            self._handle, private_data={**record.private_data, **data}
        )

    async def set_public_data(self, data: Mapping[str, Any]) -> None:
        """
        Merge ``data`` into public data (``{**old, **new}``).

        ``userId`` cannot be changed here. On authenticated sessions the
        keys in ``public_data_keys_to_sync`` are copied to every other
        session of the same user.

        Raises:
            SessionPolicyViolationFault: ``userId`` change or invalid data
        """
        data = _validated(data, "publicData")
        if PublicData.USER_ID in data and data[PublicData.USER_ID] != self.user_id:
            raise SessionPolicyViolationFault("userId cannot be changed with set_public_data")

        public_data = PublicData.normalize({**self._public_data, **data})

        if self.is_anonymous:
            self._anonymous = self._engine.anonymous.issue(
                public_data, handle=self._handle, anti_csrf_token=self._anti_csrf_token
            )
            if self._record is not None:
                self._record = await self.store.update_session(self._handle, public_data=public_data)
            self._public_data = public_data
            self.effects.set_anonymous(self._anonymous.token, self._anti_csrf_token, public_data)
            return

        # New token so the embedded public data hash matches again
        raw_token = encode_session_token(self._handle, generate_opaque_token(), public_data)
        self._record = await self.store.update_session(
            self._handle,
            public_data=public_data,
            hashed_session_token=hash_token(raw_token),
        )
        self._public_data = public_data
        self.effects.set_authenticated(raw_token, self._anti_csrf_token, public_data)

        synced = {
            key: public_data[key]
            for key in self._engine.config.public_data_keys_to_sync
            if key in data
        }
        if synced:
            await set_public_data_for_user(self.store, self.user_id, synced, exclude=self._handle)

    def __repr__(self) -> str:
        return (
            f"SessionContext(kind={self._kind.value}, user_id={self.user_id!r}, "
            f"handle={fingerprint(self._handle)})"
        )


# ============================================================================
# Helpers
# ============================================================================

async def set_public_data_for_user(
    store: SessionStore,
    user_id: Any,
    data: Mapping[str, Any],
    *,
    exclude: str | None = None,
) -> int:
    """
    Merge ``data`` into the public data of every session of ``user_id``.

    Used for administrative changes (e.g. granting a role) that must reach
    sessions other than the current one. Clients pick the change up on
    their next request.

    Returns:
        Number of sessions updated
    """
    data = _validated(data, "publicData")
    if PublicData.USER_ID in data and data[PublicData.USER_ID] != user_id:
        raise SessionPolicyViolationFault("userId cannot be changed with set_public_data")

    updated = 0
    for record in await store.get_sessions(user_id):
        if record.handle == exclude:
            continue
        try:
            await store.update_session(
                record.handle,
                public_data=PublicData.normalize({**record.public_data, **data}),
            )
        except SessionNotFoundFault:
            logger.debug("Session %s revoked during public data sync", fingerprint(record.handle))
            continue
        updated += 1

    return updated


def _validated(data: Mapping[str, Any], label: str) -> dict[str, Any]:
    if not isinstance(data, Mapping):
        raise SessionPolicyViolationFault(f"{label} must be a mapping, got {type(data).__name__}")
    data = dict(data)
    ensure_serializable(data, label)
    return data
