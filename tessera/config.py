"""
Config system - Typed session configuration with validation.

Precedence when loading: overrides > environment variables > .env file > defaults.
Both snake_case field names and the camelCase option names used by existing
deployments (``sessionExpiryMinutes``, ``getSession``, ``unstable_isAuthorized``,
...) are accepted by ``SessionConfig.from_dict``.
"""

from __future__ import annotations

import json
import logging
import os
import secrets
from dataclasses import dataclass, field, fields, replace
from typing import TYPE_CHECKING, Any, Callable, Literal, Optional

from dotenv import dotenv_values

from tessera.faults.core import Fault, FaultDomain, Severity

if TYPE_CHECKING:
    from tessera.sessions.store import SessionStore


logger = logging.getLogger("tessera.config")

MIN_SECRET_LENGTH = 32
DEFAULT_SESSION_EXPIRY_MINUTES = 30 * 24 * 60       # 30 days
DEFAULT_ANON_SESSION_EXPIRY_MINUTES = 5 * 365 * 24 * 60  # 5 years
NON_PRODUCTION_ENVIRONMENTS = frozenset({"development", "dev", "test"})

_CAMEL_ALIASES = {
    "sessionExpiryMinutes": "session_expiry_minutes",
    "anonSessionExpiryMinutes": "anon_session_expiry_minutes",
    "sameSite": "same_site",
    "secureCookies": "secure_cookies",
    "cookiePrefix": "cookie_prefix",
    "domain": "cookie_domain",
    "secretKey": "secret_key",
    "csrfProtection": "csrf_protection",
    "publicDataKeysToSyncAcrossSessions": "public_data_keys_to_sync",
    "getSession": "get_session",
    "getSessions": "get_sessions",
    "createSession": "create_session",
    "updateSession": "update_session",
    "deleteSession": "delete_session",
    "isAuthorized": "is_authorized",
    "unstable_isAuthorized": "is_authorized",
}

_STORE_CALLABLES = (
    "get_session",
    "get_sessions",
    "create_session",
    "update_session",
    "delete_session",
)

_ENV_FIELDS = frozenset({
    "secret_key",
    "session_expiry_minutes",
    "anon_session_expiry_minutes",
    "same_site",
    "secure_cookies",
    "cookie_prefix",
    "cookie_domain",
    "cookie_path",
    "csrf_protection",
    "safe_methods",
    "public_data_keys_to_sync",
    "environment",
})


class ConfigFault(Fault):
    """
    Invalid session configuration.

    A missing or short secret key is a fatal startup condition.
    """

    domain = FaultDomain.CONFIG
    code = "CONFIG_INVALID"
    message = "Invalid session configuration"
    severity = Severity.FATAL
    public = False
    retryable = False

    def __init__(self, problem: str, **kwargs):
        super().__init__(**kwargs)
        self.problem = problem
        self.message = f"Invalid session configuration: {problem}"


@dataclass(frozen=True)
class SessionConfig:
    """
    Process-wide session configuration.

    Immutable after construction; use ``with_overrides`` to derive a variant.

    Attributes:
        secret_key: Signing secret for anonymous tokens (>= 32 characters)
        session_expiry_minutes: Sliding lifetime of authenticated sessions
        anon_session_expiry_minutes: Lifetime of anonymous tokens and cookies
        same_site: SameSite cookie policy
        secure_cookies: Secure flag on session cookies
        cookie_prefix: Prefix for all session cookie names
        cookie_domain: Cookie domain (None = host only)
        cookie_path: Cookie path
        csrf_protection: Enforce anti-CSRF header on mutating requests
        safe_methods: HTTP methods that never mutate state
        public_data_keys_to_sync: Public data keys copied to every session
            of a user when one of them changes
        store: SessionStore implementation
        get_session..delete_session: Store contract as loose callables
            (used when ``store`` is not given)
        is_authorized: Authorization predicate ``(user_roles, required) -> bool``
        environment: Deployment environment name
    """

    secret_key: Optional[str] = field(default=None, repr=False)
    session_expiry_minutes: int = DEFAULT_SESSION_EXPIRY_MINUTES
    anon_session_expiry_minutes: int = DEFAULT_ANON_SESSION_EXPIRY_MINUTES
    same_site: Literal["strict", "lax", "none"] = "lax"
    secure_cookies: bool = True
    cookie_prefix: str = "tessera"
    cookie_domain: Optional[str] = None
    cookie_path: str = "/"
    csrf_protection: bool = True
    safe_methods: frozenset[str] = frozenset({"GET", "HEAD", "OPTIONS"})
    public_data_keys_to_sync: tuple[str, ...] = ("roles",)
    store: Optional["SessionStore"] = None
    get_session: Optional[Callable[..., Any]] = None
    get_sessions: Optional[Callable[..., Any]] = None
    create_session: Optional[Callable[..., Any]] = None
    update_session: Optional[Callable[..., Any]] = None
    delete_session: Optional[Callable[..., Any]] = None
    is_authorized: Optional[Callable[..., bool]] = None
    environment: str = "production"

    def __post_init__(self):
        same_site = str(self.same_site).lower()
        if same_site not in ("strict", "lax", "none"):
            raise ConfigFault(f"same_site must be strict, lax or none, got {self.same_site!r}")
        object.__setattr__(self, "same_site", same_site)

        for name in ("session_expiry_minutes", "anon_session_expiry_minutes"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise ConfigFault(f"{name} must be a positive integer, got {value!r}")

        object.__setattr__(
            self, "safe_methods", frozenset(m.upper() for m in self.safe_methods)
        )
        object.__setattr__(self, "public_data_keys_to_sync", tuple(self.public_data_keys_to_sync))

        if same_site == "none" and not self.secure_cookies:
            raise ConfigFault("same_site=none requires secure_cookies")

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def is_production(self) -> bool:
        return self.environment.lower() not in NON_PRODUCTION_ENVIRONMENTS

    @property
    def has_store_callables(self) -> bool:
        return any(getattr(self, name) is not None for name in _STORE_CALLABLES)

    def store_callables(self) -> dict[str, Callable[..., Any]]:
        """Return the five store callables, failing if any is missing."""
        missing = [name for name in _STORE_CALLABLES if getattr(self, name) is None]
        if missing:
            raise ConfigFault(f"missing session store callables: {', '.join(missing)}")
        return {name: getattr(self, name) for name in _STORE_CALLABLES}

    def resolve_secret(self) -> str:
        """
        Return the signing secret.

        Raises:
            ConfigFault: Secret missing or shorter than 32 characters. Outside
                production a missing secret is replaced by a random one.
        """
        if not self.secret_key:
            if self.is_production:
                raise ConfigFault(
                    "TESSERA_SECRET_KEY is required in production "
                    f"(at least {MIN_SECRET_LENGTH} characters)"
                )
            logger.warning(
                "No secret key configured; using a random per-process secret. "
                "Anonymous sessions will not survive a restart."
            )
            return secrets.token_urlsafe(MIN_SECRET_LENGTH)

        if len(self.secret_key) < MIN_SECRET_LENGTH:
            raise ConfigFault(
                f"secret key must be at least {MIN_SECRET_LENGTH} characters, "
                f"got {len(self.secret_key)}"
            )
        return self.secret_key

    def with_overrides(self, **changes: Any) -> SessionConfig:
        """Return a copy with ``changes`` applied (aliases accepted)."""
        return replace(self, **_normalize_keys(changes))

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionConfig:
        """
        Create config from a dictionary.

        Unknown keys raise ConfigFault so typos do not silently fall back to
        defaults.
        """
        return cls(**_normalize_keys(data))

    @classmethod
    def from_env(
        cls,
        env_file: Optional[str] = None,
        env_prefix: str = "TESSERA_",
        overrides: Optional[dict[str, Any]] = None,
        environ: Optional[dict[str, str]] = None,
    ) -> SessionConfig:
        """
        Load configuration from a .env file and environment variables.

        ``TESSERA_SECRET_KEY`` -> ``secret_key``,
        ``TESSERA_SESSION_EXPIRY_MINUTES`` -> ``session_expiry_minutes``,
        ``TESSERA_ENV`` -> ``environment``.

        Args:
            env_file: Path to .env file (read with python-dotenv)
            env_prefix: Prefix for environment variables
            overrides: Manual overrides (highest precedence)
            environ: Environment mapping (defaults to ``os.environ``)
        """
        data: dict[str, Any] = {}

        sources: list[dict[str, Optional[str]]] = []
        if env_file:
            sources.append(dotenv_values(env_file))
        sources.append(dict(os.environ if environ is None else environ))

        for source in sources:
            for key, value in source.items():
                if not key.startswith(env_prefix) or value is None:
                    continue
                name = key[len(env_prefix):].lower()
                if name == "env":
                    name = "environment"
                if name not in _ENV_FIELDS:
                    continue
                data[name] = _parse_value(name, value)

        if overrides:
            data.update(_normalize_keys(overrides))

        return cls(**data)


def _normalize_keys(data: dict[str, Any]) -> dict[str, Any]:
    known = {f.name for f in fields(SessionConfig)}
    normalized: dict[str, Any] = {}
    for key, value in data.items():
        name = _CAMEL_ALIASES.get(key, key)
        if name not in known:
            raise ConfigFault(f"unknown session option {key!r}")
        normalized[name] = value
    return normalized


def _parse_value(name: str, value: str) -> Any:
    """Parse string value to the type the field expects."""
    if name in ("secret_key", "same_site", "cookie_prefix", "cookie_domain",
                "cookie_path", "environment"):
        return value

    if name in ("secure_cookies", "csrf_protection"):
        if value.lower() in ("true", "yes", "1"):
            return True
        if value.lower() in ("false", "no", "0"):
            return False
        raise ConfigFault(f"{name} must be a boolean, got {value!r}")

    if name in ("safe_methods", "public_data_keys_to_sync"):
        if value.startswith("["):
            try:
                items = json.loads(value)
            except json.JSONDecodeError as e:
                raise ConfigFault(f"{name} is not valid JSON: {e}")
        else:
            items = [item.strip() for item in value.split(",") if item.strip()]
        return frozenset(items) if name == "safe_methods" else tuple(items)

    try:
        return int(value)
    except ValueError:
        raise ConfigFault(f"{name} must be an integer, got {value!r}")
