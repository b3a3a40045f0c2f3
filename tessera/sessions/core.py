"""
TesseraSessions - Core types.

Defines fundamental session data structures:
- SessionRecord: Persisted session row
- PublicData: Client-visible session data with reserved keys
- SessionKind: Opaque (authenticated) vs anonymous sessions
- Handle helpers: build and parse session handles
"""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from collections.abc import Iterable, Mapping
from typing import Any

from .faults import SessionPolicyViolationFault


def utcnow() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


# ============================================================================
# SessionKind - Handle Suffixes
# ============================================================================

class SessionKind(str, Enum):
    """
    Kind of session a handle belongs to.

    The kind is encoded as the handle suffix:
    - OPAQUE: ``<token>:ots`` - authenticated, opaque token session
    - ANONYMOUS: ``<token>:ajwt`` - anonymous, signed token session
    """

    OPAQUE = "ots"
    ANONYMOUS = "ajwt"


HANDLE_SEPARATOR = ":"


def make_handle(token: str, kind: SessionKind) -> str:
    """Build a handle from a random token and a session kind."""
    return f"{token}{HANDLE_SEPARATOR}{kind.value}"


def handle_kind(handle: str) -> SessionKind | None:
    """Return the session kind encoded in ``handle`` or None if malformed."""
    _, sep, suffix = handle.rpartition(HANDLE_SEPARATOR)
    if not sep:
        return None
    try:
        return SessionKind(suffix)
    except ValueError:
        return None


# ============================================================================
# PublicData - Client-Visible Data
# ============================================================================

class PublicData:
    """
    Helpers for public data maps.

    Public data is a plain dict sent to the client. Two keys are reserved:
    - ``userId``: identity reference or None
    - ``roles``: list of role strings

    Every other key is an application extension field.

    Example:
        >>> PublicData.normalize({"userId": 5, "roles": "user"})
        {'userId': 5, 'roles': ['user']}
    """

    USER_ID = "userId"
    ROLES = "roles"
    RESERVED = (USER_ID, ROLES)

    @staticmethod
    def empty() -> dict[str, Any]:
        return {PublicData.USER_ID: None, PublicData.ROLES: []}

    @staticmethod
    def normalize_roles(roles: Any) -> list[str]:
        """Normalize roles to an ordered, de-duplicated list of strings."""
        if roles is None:
            return []
        if isinstance(roles, str):
            roles = [roles]
        if not isinstance(roles, Iterable) or isinstance(roles, Mapping):
            raise SessionPolicyViolationFault(f"roles must be a string or a list, got {type(roles).__name__}")

        normalized: list[str] = []
        for role in roles:
            if not isinstance(role, str):
                raise SessionPolicyViolationFault(f"role must be a string, got {role!r}")
            if role not in normalized:
                normalized.append(role)
        return normalized

    @staticmethod
    def validate(data: Mapping[str, Any]) -> None:
        """Raise SessionPolicyViolationFault unless ``data`` is a valid public data map."""
        if not isinstance(data, Mapping):
            raise SessionPolicyViolationFault(f"publicData must be a mapping, got {type(data).__name__}")
        PublicData.normalize_roles(data.get(PublicData.ROLES))
        ensure_serializable(data, "publicData")

    @staticmethod
    def normalize(data: Mapping[str, Any] | None) -> dict[str, Any]:
        """
        Return a validated copy of ``data`` with reserved keys filled in.

        Raises:
            SessionPolicyViolationFault: Invalid roles or non-JSON values
        """
        if data is not None and not isinstance(data, Mapping):
            raise SessionPolicyViolationFault(f"publicData must be a mapping, got {type(data).__name__}")

        result = PublicData.empty()
        if data:
            result.update(data)
        result[PublicData.ROLES] = PublicData.normalize_roles(result.get(PublicData.ROLES))
        ensure_serializable(result, "publicData")
        return result


def ensure_serializable(data: Mapping[str, Any], label: str) -> None:
    """Raise SessionPolicyViolationFault if ``data`` is not JSON serializable."""
    try:
        json.dumps(data)
    except (TypeError, ValueError) as e:
        raise SessionPolicyViolationFault(f"{label} must be JSON serializable: {e}")


# ============================================================================
# SessionRecord - Persisted Row
# ============================================================================

@dataclass
class SessionRecord:
    """
    Persisted session row, owned by the SessionStore.

    Only the SHA-256 digest of the raw session token is stored. Materialized
    anonymous records have neither a hashed token nor an expiry.

    Attributes:
        handle: Primary key (``<token>:ots`` or ``<token>:ajwt``)
        user_id: Identity reference (None for anonymous)
        hashed_session_token: SHA-256 hex digest of the raw session token
        anti_csrf_token: Value required in the ``anti-csrf`` header
        expires_at: Sliding expiry timestamp
        public_data: Client-visible data
        private_data: Server-only data
        created_at: When the record was created

    Example:
        >>> record = SessionRecord(handle="abc:ots", user_id=5, anti_csrf_token="x")
        >>> record.kind
        <SessionKind.OPAQUE: 'ots'>
    """

    handle: str
    user_id: Any = None
    hashed_session_token: str | None = None
    anti_csrf_token: str = ""
    expires_at: datetime | None = None
    public_data: dict[str, Any] = field(default_factory=PublicData.empty)
    private_data: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def kind(self) -> SessionKind | None:
        return handle_kind(self.handle)

    @property
    def is_anonymous(self) -> bool:
        return self.kind == SessionKind.ANONYMOUS

    def is_expired(self, now: datetime | None = None) -> bool:
        """
        Check if record has passed expiry.

        Records without expiry (anonymous) never expire server-side.
        """
        if self.expires_at is None:
            return False

        if now is None:
            now = utcnow()

        return now >= self.expires_at

    def copy(self) -> SessionRecord:
        """Deep copy, so store and caller never share mutable data."""
        return copy.deepcopy(self)

    # ========================================================================
    # Serialization
    # ========================================================================

    def to_dict(self) -> dict[str, Any]:
        """
        Serialize record to dictionary (for storage).

        Returns:
            Dictionary representation
        """
        return {
            "handle": self.handle,
            "userId": self.user_id,
            "hashedSessionToken": self.hashed_session_token,
            "antiCSRFToken": self.anti_csrf_token,
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
            "publicData": self.public_data,
            "privateData": self.private_data,
            "createdAt": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SessionRecord:
        """
        Deserialize record from dictionary.

        Args:
            data: Dictionary representation

        Returns:
            SessionRecord instance
        """
        expires_at = (
            datetime.fromisoformat(data["expiresAt"])
            if data.get("expiresAt")
            else None
        )
        created_at = (
            datetime.fromisoformat(data["createdAt"])
            if data.get("createdAt")
            else utcnow()
        )

        return cls(
            handle=data["handle"],
            user_id=data.get("userId"),
            hashed_session_token=data.get("hashedSessionToken"),
            anti_csrf_token=data.get("antiCSRFToken", ""),
            expires_at=expires_at,
            public_data=dict(data.get("publicData") or PublicData.empty()),
            private_data=dict(data.get("privateData") or {}),
            created_at=created_at,
        )
