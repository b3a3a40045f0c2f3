"""
TesseraSessions - Session management for Tessera.

This package provides:
- Opaque session tokens (only their SHA-256 digest is stored)
- Anonymous sessions in signed tokens, persisted on first private write
- Sliding expiry, revocation of one or all sessions of a user
- Anti-CSRF protection for mutating requests
- Pluggable persistence (memory, file, application callables)

Philosophy:
- Sessions are explicit (a SessionContext per request, no hidden globals)
- Storage is a contract (SessionStore protocol)
- Errors are structured faults with stable codes
"""

from .core import (
    PublicData,
    SessionKind,
    SessionRecord,
    handle_kind,
    make_handle,
)

from .crypto import (
    TokenSigner,
    generate_opaque_token,
    hash_token,
    tokens_equal,
)

from .store import (
    SessionStore,
    MemoryStore,
    FileStore,
    CallableStore,
    cleanup_expired,
)

from .issuer import (
    IssuedSession,
    TokenIssuer,
    decode_session_token,
    encode_session_token,
)

from .anonymous import (
    AnonymousSession,
    AnonymousSessionManager,
)

from .verifier import (
    ResolvedSession,
    SessionCredentials,
    SessionVerifier,
)

from .csrf import CSRFGuard

from .context import (
    ResponseEffects,
    SessionContext,
    set_public_data_for_user,
)

from .transport import CookieTransport

from .engine import SessionEngine

from .faults import (
    SessionFault,
    AuthenticationFault,
    AuthorizationFault,
    CSRFValidationFault,
    InvalidTokenFault,
    SessionPolicyViolationFault,
    SessionNotFoundFault,
    SessionConflictFault,
    SessionStoreUnavailableFault,
    SessionStoreCorruptedFault,
)

__all__ = [
    # Core types
    "PublicData",
    "SessionKind",
    "SessionRecord",
    "handle_kind",
    "make_handle",
    # Crypto
    "TokenSigner",
    "generate_opaque_token",
    "hash_token",
    "tokens_equal",
    # Storage
    "SessionStore",
    "MemoryStore",
    "FileStore",
    "CallableStore",
    "cleanup_expired",
    # Issuing & verification
    "IssuedSession",
    "TokenIssuer",
    "decode_session_token",
    "encode_session_token",
    "AnonymousSession",
    "AnonymousSessionManager",
    "ResolvedSession",
    "SessionCredentials",
    "SessionVerifier",
    "CSRFGuard",
    # Request context
    "ResponseEffects",
    "SessionContext",
    "set_public_data_for_user",
    # Transport & engine
    "CookieTransport",
    "SessionEngine",
    # Faults
    "SessionFault",
    "AuthenticationFault",
    "AuthorizationFault",
    "CSRFValidationFault",
    "InvalidTokenFault",
    "SessionPolicyViolationFault",
    "SessionNotFoundFault",
    "SessionConflictFault",
    "SessionStoreUnavailableFault",
    "SessionStoreCorruptedFault",
]
