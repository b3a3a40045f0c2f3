"""
TesseraAuth - Authorization and identity-provider handoff.

- AuthorizationEngine: role checks over session public data
- complete_handoff: turns an identity-provider result into a session and a
  redirect URL
"""

from .authz import (
    AuthorizationEngine,
    AuthzResult,
    Decision,
    simple_roles_is_authorized,
)

from .handoff import (
    HandoffConfig,
    HandoffFailure,
    HandoffSuccess,
    complete_handoff,
)

__all__ = [
    "AuthorizationEngine",
    "AuthzResult",
    "Decision",
    "simple_roles_is_authorized",
    "HandoffConfig",
    "HandoffFailure",
    "HandoffSuccess",
    "complete_handoff",
]
