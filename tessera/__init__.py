"""
Tessera - Session management and authorization core for Python web apps

Complete integration of:
- Sessions: Opaque session tokens, anonymous signed sessions, sliding expiry
- CSRF: Anti-CSRF header validation for mutating requests
- Auth: Role-based authorization and identity-provider handoff
- Faults: Structured error handling with fault domains
- Middleware: ASGI boundary binding a SessionContext to each request
"""

__version__ = "0.1.0"

# ============================================================================
# Faults & Configuration
# ============================================================================

from .faults import Fault, FaultDomain, Severity
from .config import ConfigFault, SessionConfig

# ============================================================================
# Sessions
# ============================================================================

from .sessions import (
    SessionEngine,
    SessionContext,
    SessionRecord,
    SessionStore,
    MemoryStore,
    FileStore,
    CallableStore,
    AuthenticationFault,
    AuthorizationFault,
    CSRFValidationFault,
    SessionPolicyViolationFault,
    SessionNotFoundFault,
    SessionConflictFault,
)

# ============================================================================
# Auth
# ============================================================================

from .auth import (
    AuthorizationEngine,
    HandoffConfig,
    HandoffFailure,
    HandoffSuccess,
    complete_handoff,
)

# ============================================================================
# ASGI
# ============================================================================

from .middleware import SessionMiddleware

__all__ = [
    "__version__",
    # Faults & config
    "Fault",
    "FaultDomain",
    "Severity",
    "ConfigFault",
    "SessionConfig",
    # Sessions
    "SessionEngine",
    "SessionContext",
    "SessionRecord",
    "SessionStore",
    "MemoryStore",
    "FileStore",
    "CallableStore",
    "AuthenticationFault",
    "AuthorizationFault",
    "CSRFValidationFault",
    "SessionPolicyViolationFault",
    "SessionNotFoundFault",
    "SessionConflictFault",
    # Auth
    "AuthorizationEngine",
    "HandoffConfig",
    "HandoffFailure",
    "HandoffSuccess",
    "complete_handoff",
    # ASGI
    "SessionMiddleware",
]
