"""
TesseraSessions - Fault definitions.

Defines the closed set of session faults the boundary layer switches on.
All session errors are structured Faults, not bare exceptions.
"""

from __future__ import annotations

import hashlib

from tessera.faults.core import Fault, FaultDomain, Severity


def fingerprint(value: str) -> str:
    """Short SHA-256 fingerprint of a handle or token, safe for logs."""
    return f"sha256:{hashlib.sha256(value.encode()).hexdigest()[:16]}"


# ============================================================================
# Session Fault Base
# ============================================================================

class SessionFault(Fault):
    """
    Base class for session-related faults.

    Access-control faults use FaultDomain.SECURITY, store contract faults
    use FaultDomain.SESSION.
    """

    domain = FaultDomain.SECURITY


# ============================================================================
# Access Control Faults
# ============================================================================

class AuthenticationFault(SessionFault):
    """
    No valid authenticated identity is present where one is required.

    Raised by ``authorize()`` for anonymous sessions and by the verifier for
    malformed, unknown, mismatched, expired or revoked session tokens.
    """

    code = "SESSION_AUTHENTICATION"
    message = "You must be logged in to access this"
    severity = Severity.WARN
    public = True
    retryable = False
    http_status = 401

    def __init__(self, reason: str | None = None, **kwargs):
        super().__init__(**kwargs)
        self.reason = reason
        if reason:
            self.metadata["reason"] = reason


class AuthorizationFault(SessionFault):
    """
    Identity is present but lacks the required role.
    """

    code = "SESSION_AUTHORIZATION"
    message = "You are not authorized to access this"
    severity = Severity.WARN
    public = True
    retryable = False
    http_status = 403

    def __init__(self, required: list[str] | None = None, **kwargs):
        super().__init__(**kwargs)
        self.required = list(required or [])
        self.metadata["required"] = self.required


class CSRFValidationFault(SessionFault):
    """
    Anti-CSRF header missing or not matching the session's value.

    Raised before any business logic runs.
    """

    code = "SESSION_CSRF_MISMATCH"
    message = "Anti-CSRF token missing or invalid"
    severity = Severity.WARN
    public = True
    retryable = False
    http_status = 403

    def __init__(self, missing: bool = False, **kwargs):
        super().__init__(**kwargs)
        self.missing = missing
        self.metadata["missing"] = missing


class InvalidTokenFault(SessionFault):
    """
    Anonymous token failed decoding, signature or expiry checks.

    Absorbed by the verifier and treated as "no session".
    """

    code = "SESSION_TOKEN_INVALID"
    message = "Invalid session token"
    severity = Severity.INFO
    public = False
    retryable = False
    http_status = 401

    def __init__(self, reason: str = "invalid", **kwargs):
        super().__init__(**kwargs)
        self.reason = reason
        self.message = f"Invalid session token: {reason}"


class SessionPolicyViolationFault(SessionFault):
    """
    Operation violates session rules.

    Examples:
    - Changing ``userId`` through ``set_public_data``
    - Creating a session without a ``userId``
    - Data that is not JSON serializable
    """

    code = "SESSION_POLICY_VIOLATION"
    message = "Session violates policy constraints"
    severity = Severity.ERROR
    public = False
    retryable = False
    http_status = 400

    def __init__(self, violation: str, **kwargs):
        super().__init__(**kwargs)
        self.violation = violation
        self.message = f"Session policy violation: {violation}"


# ============================================================================
# Store Contract Faults
# ============================================================================

class SessionNotFoundFault(SessionFault):
    """
    Handle not found in store.

    Session may have been revoked or never persisted.
    """

    domain = FaultDomain.SESSION
    code = "SESSION_NOT_FOUND"
    message = "Session not found"
    severity = Severity.WARN
    public = True
    retryable = False
    http_status = 404

    def __init__(self, handle: str | None = None, **kwargs):
        super().__init__(**kwargs)
        self.handle_hash = fingerprint(handle) if handle else None


class SessionConflictFault(SessionFault):
    """
    Handle already exists in store.

    Expected to be astronomically rare; the issuer retries with a new handle.
    """

    domain = FaultDomain.SESSION
    code = "SESSION_CONFLICT"
    message = "Session handle already exists"
    severity = Severity.WARN
    public = False
    retryable = True
    http_status = 409

    def __init__(self, handle: str | None = None, **kwargs):
        super().__init__(**kwargs)
        self.handle_hash = fingerprint(handle) if handle else None


class SessionStoreUnavailableFault(SessionFault):
    """
    Session store is unavailable.

    This is a transient error - retry may succeed.
    Examples: file system error, lost database connection.
    """

    domain = FaultDomain.IO
    code = "SESSION_STORE_UNAVAILABLE"
    message = "Session storage unavailable"
    severity = Severity.ERROR
    public = False
    retryable = True
    http_status = 503

    def __init__(self, store_name: str, cause: str | None = None, **kwargs):
        super().__init__(**kwargs)
        self.store_name = store_name
        self.cause = cause
        if cause:
            self.message = f"Session store '{store_name}' unavailable: {cause}"
        else:
            self.message = f"Session store '{store_name}' unavailable"


class SessionStoreCorruptedFault(SessionFault):
    """
    Session data in store is corrupted.

    Data cannot be deserialized or is structurally invalid.
    """

    domain = FaultDomain.IO
    code = "SESSION_STORE_CORRUPTED"
    message = "Session data corrupted"
    severity = Severity.ERROR
    public = False
    retryable = False
    http_status = 500

