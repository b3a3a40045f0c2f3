"""
TesseraAuth - Authorization Engine

Role-based authorization over the roles stored in session public data.
The predicate is pluggable; the default passes when the identity holds at
least one of the required roles.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from tessera.sessions.faults import AuthenticationFault, AuthorizationFault


RoleRequirement = str | Iterable[str] | None
IsAuthorized = Callable[[list[str], list[str]], bool]


# ============================================================================
# Authorization Types
# ============================================================================


class Decision(str, Enum):
    """Authorization decision."""

    ALLOW = "allow"
    DENY = "deny"
    UNAUTHENTICATED = "unauthenticated"


@dataclass
class AuthzResult:
    """Authorization result."""

    decision: Decision
    reason: str | None = None
    required: list[str] = field(default_factory=list)

    @property
    def allowed(self) -> bool:
        return self.decision == Decision.ALLOW


def normalize_required(required: RoleRequirement) -> list[str]:
    """Normalize a role requirement to a list (a bare string is one role)."""
    if required is None:
        return []
    if isinstance(required, str):
        return [required]
    return [role for role in required]


def simple_roles_is_authorized(user_roles: Iterable[str], required: RoleRequirement) -> bool:
    """
    Default predicate: at least one required role is held.

    An empty requirement is satisfied.

    Example:
        >>> simple_roles_is_authorized(["user"], ["admin", "user"])
        True
        >>> simple_roles_is_authorized(["user"], "admin")
        False
    """
    wanted = normalize_required(required)
    if not wanted:
        return True
    held = set(user_roles or ())
    return any(role in held for role in wanted)


# ============================================================================
# AuthorizationEngine
# ============================================================================


class AuthorizationEngine:
    """
    Evaluates role requirements for a session identity.

    Pure: no state, no side effects.

    Example:
        >>> engine = AuthorizationEngine()
        >>> engine.authorize(user_id=1, roles=["admin"], required="admin")
    """

    def __init__(self, is_authorized: IsAuthorized | None = None):
        """
        Args:
            is_authorized: Custom predicate ``(user_roles, required) -> bool``
        """
        self._predicate = is_authorized or simple_roles_is_authorized

    def check(self, user_id: Any, roles: Iterable[str], required: RoleRequirement = None) -> AuthzResult:
        """
        Evaluate without raising.

        Args:
            user_id: Identity reference (None = anonymous)
            roles: Roles held by the identity
            required: Required role(s); None or empty = any identity

        Returns:
            Authorization result
        """
        wanted = normalize_required(required)

        if user_id is None:
            return AuthzResult(
                decision=Decision.UNAUTHENTICATED,
                reason="No authenticated identity",
                required=wanted,
            )

        if not wanted:
            return AuthzResult(decision=Decision.ALLOW, reason="Authenticated")

        if self._predicate(list(roles or ()), wanted):
            return AuthzResult(decision=Decision.ALLOW, reason="Role requirement met", required=wanted)

        return AuthzResult(
            decision=Decision.DENY,
            reason=f"None of the required roles held: {', '.join(wanted)}",
            required=wanted,
        )

    def is_authorized(self, user_id: Any, roles: Iterable[str], required: RoleRequirement = None) -> bool:
        """Boolean form of ``authorize``."""
        return self.check(user_id, roles, required).allowed

    def authorize(self, user_id: Any, roles: Iterable[str], required: RoleRequirement = None) -> None:
        """
        Assert authorization.

        Raises:
            AuthenticationFault: No identity
            AuthorizationFault: Identity lacks every required role
        """
        result = self.check(user_id, roles, required)

        if result.decision == Decision.UNAUTHENTICATED:
            raise AuthenticationFault("not logged in")

        if result.decision == Decision.DENY:
            raise AuthorizationFault(required=result.required)
