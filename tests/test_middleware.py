"""
Test 13: ASGI middleware (middleware.py)

Drives SessionMiddleware through httpx's ASGI transport: cookies round-trip
between requests, CSRF rejection, login, logout and fault rendering.
"""

import json

import httpx
import pytest
import pytest_asyncio

from tessera.middleware import SessionMiddleware
from tessera.sessions.faults import SessionPolicyViolationFault

from conftest import parse_set_cookies


calls = []


async def demo_app(scope, receive, send):
    """Minimal ASGI app using the bound session context."""
    ctx = scope["state"]["session"]
    path = scope["path"]
    calls.append(path)

    if path == "/login":
        await ctx.create({"userId": 1, "roles": ["user"]})
    elif path == "/logout":
        await ctx.revoke()
    elif path == "/admin":
        ctx.authorize("admin")
    elif path == "/me":
        ctx.authorize()
    elif path == "/broken":
        await ctx.set_public_data({"userId": 99})

    body = json.dumps({"userId": ctx.user_id, "anonymous": ctx.is_anonymous}).encode()
    await send({
        "type": "http.response.start",
        "status": 200,
        "headers": [(b"content-type", b"application/json")],
    })
    await send({"type": "http.response.body", "body": body})


class Browser:
    """Keeps session cookies between requests, the way a browser would."""

    def __init__(self, client: httpx.AsyncClient):
        self.client = client
        self.cookies = {}
        self.anti_csrf = None

    async def request(self, method, path, csrf=True):
        headers = {}
        if self.cookies:
            headers["cookie"] = "; ".join(f"{k}={v}" for k, v in self.cookies.items())
        if csrf and self.anti_csrf:
            headers["anti-csrf"] = self.anti_csrf

        response = await self.client.request(method, path, headers=headers)

        for header in response.headers.get_list("set-cookie"):
            name, _, value = header.split(";", 1)[0].partition("=")
            if value:
                self.cookies[name] = value
            else:
                self.cookies.pop(name, None)
        if "anti-csrf" in response.headers:
            self.anti_csrf = response.headers["anti-csrf"]
        return response


@pytest_asyncio.fixture
async def client(engine):
    calls.clear()
    app = SessionMiddleware(demo_app, engine)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture
def browser(client):
    return Browser(client)


# ============================================================================
# Session Flow
# ============================================================================

class TestSessionFlow:

    @pytest.mark.asyncio
    async def test_first_visit_gets_anonymous_session(self, client):
        response = await client.get("/")

        assert response.status_code == 200
        assert response.json() == {"userId": None, "anonymous": True}
        cookies = parse_set_cookies(response.headers.get_list("set-cookie"))
        assert "tessera_sAnonymousSessionToken" in cookies
        assert "tessera_sAntiCsrfToken" in cookies
        assert response.headers["anti-csrf"] == cookies["tessera_sAntiCsrfToken"]
        assert response.headers["public-data-token"] == "updated"

    @pytest.mark.asyncio
    async def test_returning_visit_keeps_session(self, browser):
        await browser.request("GET", "/")
        response = await browser.request("GET", "/")

        assert response.status_code == 200
        assert response.headers.get_list("set-cookie") == []

    @pytest.mark.asyncio
    async def test_login_and_logout(self, browser, store):
        await browser.request("GET", "/")

        response = await browser.request("POST", "/login")
        assert response.status_code == 200
        assert response.json() == {"userId": 1, "anonymous": False}
        assert response.headers["session-created"] == "true"
        assert "tessera_sSessionToken" in browser.cookies
        assert "tessera_sAnonymousSessionToken" not in browser.cookies

        response = await browser.request("GET", "/me")
        assert response.json()["userId"] == 1

        response = await browser.request("POST", "/logout")
        assert response.json() == {"userId": None, "anonymous": True}
        assert "tessera_sSessionToken" not in browser.cookies
        assert store.get_stats()["total_sessions"] == 0

        response = await browser.request("GET", "/me")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_authenticated_visit_refreshes_cookie(self, browser):
        await browser.request("POST", "/login")
        token = browser.cookies["tessera_sSessionToken"]

        response = await browser.request("GET", "/me")
        cookies = parse_set_cookies(response.headers.get_list("set-cookie"))
        assert cookies["tessera_sSessionToken"] == token
        assert "anti-csrf" in response.headers
        assert "public-data-token" not in response.headers

    @pytest.mark.asyncio
    async def test_first_request_may_post(self, client):
        response = await client.post("/login")
        assert response.status_code == 200
        assert response.json()["userId"] == 1


# ============================================================================
# CSRF
# ============================================================================

class TestCSRF:

    @pytest.mark.asyncio
    async def test_missing_header_rejected(self, browser):
        await browser.request("GET", "/")
        calls.clear()

        response = await browser.request("POST", "/login", csrf=False)

        assert response.status_code == 403
        assert response.headers["csrf-error"] == "true"
        assert response.json()["error"]["code"] == "SESSION_CSRF_MISMATCH"
        assert calls == []

    @pytest.mark.asyncio
    async def test_wrong_header_rejected(self, browser):
        await browser.request("GET", "/")
        browser.anti_csrf = "forged"

        response = await browser.request("POST", "/login")
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_safe_method_without_header(self, browser):
        await browser.request("GET", "/")
        response = await browser.request("GET", "/", csrf=False)
        assert response.status_code == 200


# ============================================================================
# Fault Rendering
# ============================================================================

class TestFaults:

    @pytest.mark.asyncio
    async def test_anonymous_gets_401(self, client):
        response = await client.get("/admin")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "SESSION_AUTHENTICATION"
        # Session cookies still go out with the error
        cookies = parse_set_cookies(response.headers.get_list("set-cookie"))
        assert "tessera_sAnonymousSessionToken" in cookies

    @pytest.mark.asyncio
    async def test_missing_role_gets_403(self, browser):
        await browser.request("POST", "/login")
        response = await browser.request("GET", "/admin")

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "SESSION_AUTHORIZATION"

    @pytest.mark.asyncio
    async def test_internal_fault_propagates(self, browser):
        await browser.request("POST", "/login")
        with pytest.raises(SessionPolicyViolationFault):
            await browser.request("POST", "/broken")


# ============================================================================
# Other Scopes
# ============================================================================

class TestPassthrough:

    @pytest.mark.asyncio
    async def test_lifespan(self, engine):
        seen = []

        async def app(scope, receive, send):
            seen.append(scope)

        scope = {"type": "lifespan"}
        await SessionMiddleware(app, engine)(scope, None, None)

        assert seen == [scope]
        assert "state" not in scope
