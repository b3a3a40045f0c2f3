"""
Test 7: Session verifier (sessions/verifier.py)

Tests opaque token verification, sliding expiry and request resolution.
"""

from datetime import timedelta

import pytest

from tessera.sessions.core import SessionKind, SessionRecord, make_handle, utcnow
from tessera.sessions.crypto import b64encode, generate_opaque_token, hash_token
from tessera.sessions.faults import (
    AuthenticationFault,
    SessionNotFoundFault,
    SessionStoreUnavailableFault,
)
from tessera.sessions.issuer import encode_session_token
from tessera.sessions.store import MemoryStore
from tessera.sessions.verifier import SessionCredentials, SessionVerifier


async def make_session(store, minutes=60, user_id=1):
    """Persist an authenticated record directly; returns (raw_token, record)."""
    public_data = {"userId": user_id, "roles": ["user"]}
    handle = make_handle(generate_opaque_token(), SessionKind.OPAQUE)
    raw_token = encode_session_token(handle, generate_opaque_token(), public_data)
    record = SessionRecord(
        handle=handle,
        user_id=user_id,
        hashed_session_token=hash_token(raw_token),
        anti_csrf_token="csrf-token",
        expires_at=utcnow() + timedelta(minutes=minutes),
        public_data=public_data,
    )
    await store.create_session(record)
    return raw_token, record


class RevokingStore(MemoryStore):
    """Deletes the record right before the expiry refresh lands."""

    async def update_session(self, handle, **changes):
        await self.delete_session(handle)
        raise SessionNotFoundFault(handle)


class UnavailableStore(MemoryStore):

    async def get_session(self, handle):
        raise SessionStoreUnavailableFault("unavailable", "connection refused")


@pytest.fixture
def verifier(engine):
    return engine.verifier


# ============================================================================
# verify_token
# ============================================================================

class TestVerifyToken:

    @pytest.mark.asyncio
    async def test_valid_token_slides_expiry(self, verifier, store):
        raw_token, record = await make_session(store, minutes=5)
        before = utcnow()

        verified = await verifier.verify_token(raw_token)

        assert verified.handle == record.handle
        assert verified.expires_at >= before + timedelta(minutes=60)
        assert (await store.get_session(record.handle)).expires_at == verified.expires_at

    @pytest.mark.asyncio
    async def test_unknown_session(self, verifier):
        handle = make_handle(generate_opaque_token(), SessionKind.OPAQUE)
        raw_token = encode_session_token(handle, "tok", {})
        with pytest.raises(AuthenticationFault) as exc_info:
            await verifier.verify_token(raw_token)
        assert exc_info.value.reason == "unknown session"

    @pytest.mark.asyncio
    async def test_token_mismatch(self, verifier, store):
        _, record = await make_session(store)
        forged = encode_session_token(record.handle, generate_opaque_token(), record.public_data)
        with pytest.raises(AuthenticationFault) as exc_info:
            await verifier.verify_token(forged)
        assert exc_info.value.reason == "session token mismatch"

    @pytest.mark.asyncio
    async def test_expired_is_not_refreshed(self, verifier, store):
        raw_token, record = await make_session(store, minutes=-1)

        with pytest.raises(AuthenticationFault) as exc_info:
            await verifier.verify_token(raw_token)
        assert exc_info.value.reason == "session expired"

        # Ignored, not refreshed and not deleted
        stored = await store.get_session(record.handle)
        assert stored is not None
        assert stored.expires_at == record.expires_at

    @pytest.mark.asyncio
    async def test_malformed(self, verifier):
        with pytest.raises(AuthenticationFault):
            await verifier.verify_token("garbage")

    @pytest.mark.asyncio
    async def test_revoked_during_refresh(self, engine):
        store = RevokingStore()
        raw_token, _ = await make_session(store)
        verifier = SessionVerifier(store, engine.anonymous, 60)

        with pytest.raises(AuthenticationFault) as exc_info:
            await verifier.verify_token(raw_token)
        assert exc_info.value.reason == "session revoked"


# ============================================================================
# resolve
# ============================================================================

class TestResolve:

    @pytest.mark.asyncio
    async def test_opaque_session(self, verifier, store):
        raw_token, record = await make_session(store)
        resolved = await verifier.resolve(SessionCredentials(session_token=raw_token))

        assert resolved.kind == SessionKind.OPAQUE
        assert resolved.handle == record.handle
        assert resolved.anti_csrf_token == "csrf-token"
        assert resolved.raw_token == raw_token
        assert resolved.from_credentials
        assert not resolved.public_data_stale

    @pytest.mark.asyncio
    async def test_no_credentials_synthesizes(self, verifier, store):
        resolved = await verifier.resolve(SessionCredentials())

        assert resolved.is_anonymous
        assert resolved.is_new
        assert resolved.public_data == {"userId": None, "roles": []}
        assert resolved.anonymous is not None
        assert store.get_stats()["total_sessions"] == 0

    @pytest.mark.asyncio
    async def test_anonymous_token(self, verifier, engine):
        anonymous = engine.anonymous.issue({"theme": "dark"})
        resolved = await verifier.resolve(SessionCredentials(anonymous_token=anonymous.token))

        assert resolved.is_anonymous
        assert not resolved.is_new
        assert resolved.handle == anonymous.handle
        assert resolved.public_data["theme"] == "dark"
        assert resolved.record is None

    @pytest.mark.asyncio
    async def test_materialized_anonymous_record_preferred(self, verifier, engine):
        anonymous = engine.anonymous.issue({"theme": "dark"})
        await engine.anonymous.materialize(anonymous, {"cart": [1]})
        await engine.store.update_session(
            anonymous.handle, public_data={"userId": None, "roles": [], "theme": "light"}
        )

        resolved = await verifier.resolve(SessionCredentials(anonymous_token=anonymous.token))
        assert resolved.record is not None
        assert resolved.public_data["theme"] == "light"

    @pytest.mark.asyncio
    async def test_rejected_token_falls_back(self, verifier, engine):
        anonymous = engine.anonymous.issue()
        resolved = await verifier.resolve(
            SessionCredentials(session_token="garbage", anonymous_token=anonymous.token)
        )
        assert resolved.is_anonymous
        assert resolved.handle == anonymous.handle
        assert resolved.session_token_rejected

    @pytest.mark.asyncio
    async def test_rejected_token_without_anonymous(self, verifier):
        resolved = await verifier.resolve(SessionCredentials(session_token="garbage"))
        assert resolved.is_new
        assert resolved.session_token_rejected

    @pytest.mark.asyncio
    async def test_invalid_anonymous_token(self, verifier):
        resolved = await verifier.resolve(SessionCredentials(anonymous_token="not.a.token"))
        assert resolved.is_new
        assert not resolved.session_token_rejected

    @pytest.mark.asyncio
    async def test_store_failure_on_opaque_path_propagates(self, engine):
        verifier = SessionVerifier(UnavailableStore(), engine.anonymous, 60)
        handle = make_handle(generate_opaque_token(), SessionKind.OPAQUE)
        raw_token = encode_session_token(handle, "tok", {})
        with pytest.raises(SessionStoreUnavailableFault):
            await verifier.resolve(SessionCredentials(session_token=raw_token))

    @pytest.mark.asyncio
    async def test_store_failure_on_anonymous_path_uses_token(self, engine):
        verifier = SessionVerifier(UnavailableStore(), engine.anonymous, 60)
        anonymous = engine.anonymous.issue({"theme": "dark"})

        resolved = await verifier.resolve(SessionCredentials(anonymous_token=anonymous.token))
        assert resolved.handle == anonymous.handle
        assert resolved.public_data["theme"] == "dark"

    @pytest.mark.asyncio
    async def test_stale_public_data_flagged(self, verifier, store):
        raw_token, record = await make_session(store)
        await store.update_session(
            record.handle, public_data={"userId": 1, "roles": ["user", "admin"]}
        )

        resolved = await verifier.resolve(SessionCredentials(session_token=raw_token))
        assert resolved.public_data_stale
        assert resolved.public_data["roles"] == ["user", "admin"]

        # The stale token is replaced, so the next request is up to date
        assert resolved.raw_token != raw_token
        stored = await store.get_session(record.handle)
        assert stored.hashed_session_token == hash_token(resolved.raw_token)

        settled = await verifier.resolve(SessionCredentials(session_token=resolved.raw_token))
        assert not settled.public_data_stale
        assert settled.raw_token == resolved.raw_token

    @pytest.mark.asyncio
    async def test_deeply_nested_anonymous_token(self, verifier):
        token = b64encode(b"[" * 100000) + ".e30.AAAA"
        resolved = await verifier.resolve(SessionCredentials(anonymous_token=token))
        assert resolved.is_new
