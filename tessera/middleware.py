"""
Tessera ASGI middleware - session boundary for any ASGI application.

For HTTP requests:
1. Resolves the session from cookies
2. Runs the CSRF guard (403 + ``csrf-error: true`` on failure; the wrapped
   app is never invoked)
3. Binds the SessionContext to ``scope["state"]["session"]``
4. Appends session cookies/headers to the app's response start message
5. Renders public session faults raised by the app as JSON errors

Other scopes (websocket, lifespan) pass through untouched.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable, MutableMapping

from tessera.faults import Fault
from tessera.sessions.engine import SessionEngine
from tessera.sessions.faults import CSRFValidationFault
from tessera.sessions.transport import CSRF_ERROR_HEADER


Scope = MutableMapping[str, Any]
Message = MutableMapping[str, Any]
Receive = Callable[[], Awaitable[Message]]
Send = Callable[[Message], Awaitable[None]]
ASGIApp = Callable[[Scope, Receive, Send], Awaitable[None]]

SESSION_STATE_KEY = "session"


class SessionMiddleware:
    """
    ASGI middleware binding Tessera sessions to requests.

    Example:
        >>> engine = SessionEngine(SessionConfig.from_env())
        >>> app = SessionMiddleware(app, engine)

        Inside the app:
        >>> ctx = scope["state"]["session"]
        >>> ctx.authorize("admin")
    """

    def __init__(
        self,
        app: ASGIApp,
        engine: SessionEngine,
        logger: logging.Logger | None = None,
    ):
        self.app = app
        self.engine = engine
        self.logger = logger or logging.getLogger("tessera.middleware")

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = _decode_headers(scope.get("headers") or [])
        method = scope.get("method", "GET")

        try:
            context = await self.engine.resolve_headers(headers, method=method)
        except CSRFValidationFault as fault:
            self.logger.warning("Rejected %s %s: %s", method, scope.get("path", ""), fault.code)
            await _send_fault(send, fault, extra_headers=[(CSRF_ERROR_HEADER, "true")])
            return

        scope.setdefault("state", {})[SESSION_STATE_KEY] = context
        response_started = False

        async def send_wrapper(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
                message = dict(message)
                message["headers"] = list(message.get("headers") or []) + _encode_headers(
                    self.engine.commit(context)
                )
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except Fault as fault:
            if response_started or not fault.public:
                raise
            self.logger.info("Session fault in %s %s: %s", method, scope.get("path", ""), fault.code)
            await _send_fault(send, fault, extra_headers=self.engine.commit(context))


def _decode_headers(raw: list[tuple[bytes, bytes]]) -> dict[str, str]:
    headers: dict[str, str] = {}
    for name, value in raw:
        key = name.decode("latin-1").lower()
        decoded = value.decode("latin-1")
        # Repeated cookie headers are joined the way HTTP/2 splits them
        if key == "cookie" and key in headers:
            headers[key] = f"{headers[key]}; {decoded}"
        else:
            headers[key] = decoded
    return headers


def _encode_headers(headers: list[tuple[str, str]]) -> list[tuple[bytes, bytes]]:
    return [(name.encode("latin-1"), value.encode("latin-1")) for name, value in headers]


async def _send_fault(
    send: Send,
    fault: Fault,
    extra_headers: list[tuple[str, str]] | None = None,
) -> None:
    body = json.dumps({"error": {"code": fault.code, "message": fault.message}}).encode("utf-8")
    headers = [
        ("content-type", "application/json"),
        ("content-length", str(len(body))),
    ] + list(extra_headers or [])

    await send({
        "type": "http.response.start",
        "status": fault.http_status,
        "headers": _encode_headers(headers),
    })
    await send({"type": "http.response.body", "body": body})
