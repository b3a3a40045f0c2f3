"""
TesseraAuth - Identity-provider handoff.

An identity-provider adapter (OAuth2/OIDC callback, SAML, ...) finishes its
own protocol work and hands the outcome to ``complete_handoff`` as a result
value. Success logs the user in; failure redirects with an ``authError``
query parameter.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Union
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

if TYPE_CHECKING:
    from tessera.sessions.context import SessionContext


logger = logging.getLogger("tessera.auth.handoff")

DEFAULT_REDIRECT_URL = "/"
AUTH_ERROR_PARAM = "authError"


# ============================================================================
# Handoff Results
# ============================================================================


@dataclass
class HandoffSuccess:
    """
    Identity verified by the provider.

    Attributes:
        public_data: Public data for the new session (must hold ``userId``)
        private_data: Server-only data for the new session
        redirect_url: Per-call redirect override
    """

    public_data: dict[str, Any]
    private_data: dict[str, Any] | None = None
    redirect_url: str | None = None


@dataclass
class HandoffFailure:
    """
    Identity could not be verified.

    Attributes:
        error: Message shown to the user via ``authError``
        redirect_url: Per-call redirect override
    """

    error: str
    redirect_url: str | None = None


HandoffResult = Union[HandoffSuccess, HandoffFailure]


@dataclass(frozen=True)
class HandoffConfig:
    """Static redirect targets for the handoff."""

    success_redirect_url: str | None = None
    error_redirect_url: str | None = None


# ============================================================================
# Dispatch
# ============================================================================


def resolve_redirect(
    override: str | None,
    query_redirect: str | None,
    configured: str | None,
) -> str:
    """Pick the redirect target: override, query parameter, config, then "/"."""
    for candidate in (override, query_redirect, configured):
        if candidate:
            return candidate
    return DEFAULT_REDIRECT_URL


def add_query_param(url: str, name: str, value: str) -> str:
    """Append ``name=value`` to ``url``, keeping existing query parameters."""
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.append((name, value))
    return urlunsplit(parts._replace(query=urlencode(query)))


async def complete_handoff(
    context: SessionContext,
    result: HandoffResult,
    *,
    query_redirect: str | None = None,
    config: HandoffConfig = HandoffConfig(),
) -> str:
    """
    Finish an identity-provider flow.

    Args:
        context: Session context of the callback request
        result: Outcome reported by the provider adapter
        query_redirect: Redirect target carried on the request
        config: Static redirect configuration

    Returns:
        URL to redirect the client to

    Raises:
        SessionPolicyViolationFault: Success without ``userId``
    """
    if isinstance(result, HandoffSuccess):
        await context.create(result.public_data, result.private_data)
        url = resolve_redirect(result.redirect_url, query_redirect, config.success_redirect_url)
        logger.info("Identity handoff succeeded for user %s", context.user_id)
        return url

    if isinstance(result, HandoffFailure):
        url = resolve_redirect(result.redirect_url, query_redirect, config.error_redirect_url)
        logger.info("Identity handoff failed: %s", result.error)
        return add_query_param(url, AUTH_ERROR_PARAM, result.error)

    raise TypeError(f"Unsupported handoff result: {type(result).__name__}")
