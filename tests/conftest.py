"""
Shared test fixtures and helpers for Tessera test suite.
"""

from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

from tessera.config import SessionConfig
from tessera.sessions.context import ResponseEffects, SessionContext
from tessera.sessions.engine import SessionEngine
from tessera.sessions.store import MemoryStore
from tessera.sessions.verifier import SessionCredentials


TEST_SECRET = "test-secret-key-that-is-long-enough-for-hmac"


# ============================================================================
# Configuration & Engine
# ============================================================================


@pytest.fixture
def session_config() -> SessionConfig:
    """Config with short lifetimes, suitable for tests."""
    return SessionConfig(
        secret_key=TEST_SECRET,
        session_expiry_minutes=60,
        anon_session_expiry_minutes=120,
    )


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def engine(session_config, store) -> SessionEngine:
    return SessionEngine(session_config, store=store)


# ============================================================================
# Request Helpers
# ============================================================================


def next_request(
    effects: ResponseEffects,
    previous: Optional[SessionCredentials] = None,
    anti_csrf: Optional[str] = None,
) -> SessionCredentials:
    """
    Build the credentials a browser would present after receiving ``effects``.
    """
    session_token = previous.session_token if previous else None
    anonymous_token = previous.anonymous_token if previous else None

    if effects.session_token is not None:
        session_token = effects.session_token
    elif effects.clear_session_token:
        session_token = None

    if effects.anonymous_token is not None:
        anonymous_token = effects.anonymous_token
    elif effects.clear_anonymous_token:
        anonymous_token = None

    return SessionCredentials(
        session_token=session_token,
        anonymous_token=anonymous_token,
        anti_csrf_token=anti_csrf,
    )


@pytest.fixture
def login(engine):
    """Factory: log a user in from a fresh anonymous session."""

    async def _login(user_id: Any = 1, roles: Optional[List[str]] = None, **extra: Any) -> SessionContext:
        ctx = await engine.resolve(SessionCredentials())
        public_data: Dict[str, Any] = {"userId": user_id, "roles": roles or ["user"]}
        public_data.update(extra)
        await ctx.create(public_data)
        return ctx

    return _login


@pytest_asyncio.fixture
async def user_ctx(login) -> SessionContext:
    """Logged-in context for user 1 with role ``user``."""
    return await login(1, ["user"])


def parse_set_cookies(set_cookie_headers: List[str]) -> Dict[str, str]:
    """Cookie name -> value for cookies that are set (not cleared)."""
    cookies = {}
    for header in set_cookie_headers:
        name, _, value = header.split(";", 1)[0].partition("=")
        if value:
            cookies[name.strip()] = value.strip()
    return cookies
