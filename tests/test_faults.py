"""
Test 1: Faults (faults/, sessions/faults.py)

Tests Fault base class, domains, and the session fault taxonomy.
"""

import pytest

from tessera.config import ConfigFault
from tessera.faults import DOMAIN_DEFAULTS, Fault, FaultDomain, Severity
from tessera.sessions.faults import (
    AuthenticationFault,
    AuthorizationFault,
    CSRFValidationFault,
    InvalidTokenFault,
    SessionConflictFault,
    SessionNotFoundFault,
    SessionPolicyViolationFault,
    SessionStoreCorruptedFault,
    SessionStoreUnavailableFault,
    fingerprint,
)


# ============================================================================
# Fault Base
# ============================================================================

class TestFault:

    def test_explicit_fields(self):
        fault = Fault(code="X_FAILED", message="x failed", domain=FaultDomain.IO)
        assert fault.code == "X_FAILED"
        assert fault.message == "x failed"
        assert fault.domain == FaultDomain.IO

    def test_domain_defaults_apply(self):
        fault = Fault(code="X", message="x", domain=FaultDomain.IO)
        assert fault.severity == DOMAIN_DEFAULTS[FaultDomain.IO]["severity"]
        assert fault.retryable is True

    def test_missing_code_raises(self):
        with pytest.raises(TypeError):
            Fault(message="no code", domain=FaultDomain.IO)

    def test_str(self):
        fault = Fault(code="X", message="broken", domain=FaultDomain.SECURITY)
        assert str(fault) == "[X] broken"

    def test_to_dict(self):
        fault = Fault(
            code="X", message="m", domain=FaultDomain.SESSION, metadata={"k": 1}
        )
        data = fault.to_dict()
        assert data["code"] == "X"
        assert data["domain"] == "session"
        assert data["severity"] == "error"
        assert data["metadata"] == {"k": 1}

    def test_is_exception(self):
        with pytest.raises(Fault):
            raise Fault(code="X", message="m", domain=FaultDomain.IO)

    def test_domain_equality(self):
        assert FaultDomain.SECURITY == FaultDomain("security")
        assert FaultDomain.SECURITY == "security"
        assert hash(FaultDomain.SECURITY) == hash(FaultDomain("security"))


# ============================================================================
# Session Fault Taxonomy
# ============================================================================

class TestSessionFaults:

    @pytest.mark.parametrize("fault, code, status", [
        (AuthenticationFault(), "SESSION_AUTHENTICATION", 401),
        (AuthorizationFault(["admin"]), "SESSION_AUTHORIZATION", 403),
        (CSRFValidationFault(), "SESSION_CSRF_MISMATCH", 403),
        (SessionNotFoundFault("h:ots"), "SESSION_NOT_FOUND", 404),
        (SessionConflictFault("h:ots"), "SESSION_CONFLICT", 409),
        (InvalidTokenFault("bad signature"), "SESSION_TOKEN_INVALID", 401),
        (SessionPolicyViolationFault("nope"), "SESSION_POLICY_VIOLATION", 400),
        (SessionStoreUnavailableFault("file"), "SESSION_STORE_UNAVAILABLE", 503),
        (SessionStoreCorruptedFault(), "SESSION_STORE_CORRUPTED", 500),
        (ConfigFault("bad"), "CONFIG_INVALID", 500),
    ])
    def test_codes_and_status(self, fault, code, status):
        assert fault.code == code
        assert fault.http_status == status
        assert isinstance(fault, Fault)

    def test_access_faults_are_public(self):
        assert AuthenticationFault().public is True
        assert AuthorizationFault().public is True
        assert CSRFValidationFault().public is True

    def test_internal_faults_are_not_public(self):
        assert SessionPolicyViolationFault("x").public is False
        assert SessionStoreUnavailableFault("memory").public is False
        assert ConfigFault("x").public is False

    def test_authorization_fault_carries_required(self):
        fault = AuthorizationFault(required=["admin", "manager"])
        assert fault.required == ["admin", "manager"]
        assert fault.metadata["required"] == ["admin", "manager"]

    def test_authentication_fault_reason(self):
        fault = AuthenticationFault("session expired")
        assert fault.reason == "session expired"
        assert fault.metadata["reason"] == "session expired"

    def test_csrf_fault_missing_flag(self):
        assert CSRFValidationFault(missing=True).metadata["missing"] is True

    def test_conflict_is_retryable(self):
        assert SessionConflictFault().retryable is True
        assert SessionNotFoundFault().retryable is False

    def test_not_found_hides_handle(self):
        fault = SessionNotFoundFault("secret-handle:ots")
        assert "secret-handle" not in fault.handle_hash
        assert fault.handle_hash == fingerprint("secret-handle:ots")

    def test_store_unavailable_message(self):
        fault = SessionStoreUnavailableFault("file", cause="disk full")
        assert "file" in fault.message
        assert "disk full" in fault.message

    def test_config_fault_is_fatal(self):
        fault = ConfigFault("secret too short")
        assert fault.severity == Severity.FATAL
        assert fault.domain == FaultDomain.CONFIG
        assert "secret too short" in fault.message


class TestFingerprint:

    def test_stable(self):
        assert fingerprint("abc") == fingerprint("abc")

    def test_prefix_and_length(self):
        value = fingerprint("abc")
        assert value.startswith("sha256:")
        assert len(value) == len("sha256:") + 16
