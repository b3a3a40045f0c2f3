"""
TesseraSessions - Cookie/header transport.

Handles credential extraction and response emission:
- extract: cookies and ``anti-csrf`` header -> SessionCredentials
- render: ResponseEffects -> Set-Cookie and session headers

Cookies (``<prefix>`` defaults to ``tessera``):
- <prefix>_sSessionToken: opaque session token (HttpOnly)
- <prefix>_sAnonymousSessionToken: signed anonymous token (HttpOnly)
- <prefix>_sAntiCsrfToken: anti-CSRF token (readable by JS)
- <prefix>_sPublicDataToken: base64url JSON public data (readable by JS)
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from .core import utcnow
from .crypto import b64decode, b64encode
from .csrf import ANTI_CSRF_HEADER
from .verifier import SessionCredentials

if TYPE_CHECKING:
    from tessera.config import SessionConfig
    from .context import ResponseEffects


PUBLIC_DATA_TOKEN_HEADER = "public-data-token"
SESSION_CREATED_HEADER = "session-created"
CSRF_ERROR_HEADER = "csrf-error"

EXPIRED_DATE = "Thu, 01 Jan 1970 00:00:00 GMT"


def encode_public_data_token(public_data: Mapping[str, Any]) -> str:
    """base64url(JSON) of public data, for the client."""
    return b64encode(json.dumps(public_data, separators=(",", ":")).encode("utf-8"))


def decode_public_data_token(token: str) -> dict[str, Any]:
    return json.loads(b64decode(token))


class CookieTransport:
    """
    Cookie-based session transport.

    Features:
    - HttpOnly flag on credential cookies (XSS protection)
    - Secure flag (HTTPS only)
    - SameSite policy
    - Configurable path and domain
    - JS-readable anti-CSRF and public data cookies

    Example:
        >>> transport = CookieTransport(config)
        >>> credentials = transport.extract({"cookie": "tessera_sSessionToken=..."})
        >>> headers = transport.render(context.effects)
    """

    def __init__(self, config: SessionConfig):
        """
        Initialize cookie transport.

        Args:
            config: Session configuration with cookie settings
        """
        self.config = config
        prefix = config.cookie_prefix
        self.session_cookie = f"{prefix}_sSessionToken"
        self.anonymous_cookie = f"{prefix}_sAnonymousSessionToken"
        self.anti_csrf_cookie = f"{prefix}_sAntiCsrfToken"
        self.public_data_cookie = f"{prefix}_sPublicDataToken"

    # ========================================================================
    # Extraction
    # ========================================================================

    def extract(self, headers: Mapping[str, str]) -> SessionCredentials:
        """
        Extract credentials from request headers.

        Args:
            headers: Request headers with lower-case names
        """
        cookies = self._parse_cookies(headers.get("cookie", ""))
        return SessionCredentials(
            session_token=cookies.get(self.session_cookie) or None,
            anonymous_token=cookies.get(self.anonymous_cookie) or None,
            anti_csrf_token=headers.get(ANTI_CSRF_HEADER) or None,
        )

    @staticmethod
    def _parse_cookies(cookie_header: str) -> dict[str, str]:
        """
        Parse cookie header into dict.

        Args:
            cookie_header: Cookie header value

        Returns:
            Dict of cookie name -> value
        """
        cookies = {}

        for part in cookie_header.split(";"):
            part = part.strip()
            if "=" in part:
                name, value = part.split("=", 1)
                cookies[name.strip()] = value.strip().strip('"')

        return cookies

    # ========================================================================
    # Emission
    # ========================================================================

    def render(self, effects: ResponseEffects) -> list[tuple[str, str]]:
        """
        Turn pending effects into response headers.

        Returns:
            List of (header name, value) pairs, Set-Cookie repeated per cookie
        """
        headers: list[tuple[str, str]] = []

        session_max_age = self.config.session_expiry_minutes * 60
        anon_max_age = self.config.anon_session_expiry_minutes * 60

        if effects.session_token is not None:
            headers.append(self._set_cookie(
                self.session_cookie, effects.session_token, session_max_age, http_only=True
            ))
        elif effects.clear_session_token:
            headers.append(self._clear_cookie(self.session_cookie))

        if effects.anonymous_token is not None:
            headers.append(self._set_cookie(
                self.anonymous_cookie, effects.anonymous_token, anon_max_age, http_only=True
            ))
        elif effects.clear_anonymous_token:
            headers.append(self._clear_cookie(self.anonymous_cookie))

        # Client-readable copies follow the lifetime of the active credential
        readable_max_age = anon_max_age if effects.anonymous_token is not None else session_max_age

        if effects.anti_csrf_token is not None:
            headers.append(self._set_cookie(
                self.anti_csrf_cookie, effects.anti_csrf_token, readable_max_age, http_only=False
            ))
            headers.append((ANTI_CSRF_HEADER, effects.anti_csrf_token))

        if effects.public_data is not None:
            token = encode_public_data_token(effects.public_data)
            headers.append(self._set_cookie(
                self.public_data_cookie, token, readable_max_age, http_only=False
            ))
            headers.append((PUBLIC_DATA_TOKEN_HEADER, "updated"))

        if effects.session_created:
            headers.append((SESSION_CREATED_HEADER, "true"))

        return headers

    def _set_cookie(self, name: str, value: str, max_age: int, http_only: bool) -> tuple[str, str]:
        expires = (utcnow() + timedelta(seconds=max_age)).strftime("%a, %d %b %Y %H:%M:%S GMT")

        cookie_parts = [
            f"{name}={value}",
            f"Path={self.config.cookie_path}",
        ]

        if self.config.cookie_domain:
            cookie_parts.append(f"Domain={self.config.cookie_domain}")

        cookie_parts.append(f"Max-Age={max_age}")
        cookie_parts.append(f"Expires={expires}")

        if http_only:
            cookie_parts.append("HttpOnly")

        if self.config.secure_cookies:
            cookie_parts.append("Secure")

        cookie_parts.append(f"SameSite={self.config.same_site.capitalize()}")

        return ("set-cookie", "; ".join(cookie_parts))

    def _clear_cookie(self, name: str) -> tuple[str, str]:
        # Max-Age=0 deletes the cookie
        cookie_parts = [
            f"{name}=",
            f"Path={self.config.cookie_path}",
        ]

        if self.config.cookie_domain:
            cookie_parts.append(f"Domain={self.config.cookie_domain}")

        cookie_parts.append("Max-Age=0")
        cookie_parts.append(f"Expires={EXPIRED_DATE}")

        return ("set-cookie", "; ".join(cookie_parts))
