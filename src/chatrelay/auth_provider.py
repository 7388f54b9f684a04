"""Pluggable bearer-token verification for chatrelay.

The verifier is chosen from settings:
- CHATRELAY_AUTH_MODULE: Python module path for custom verification
  (e.g. 'myapp.chat_auth'); the module must expose
  ``verify_bearer_token(token: str) -> Identity``
- CHATRELAY_AUTH_URL: base URL of the verification service; the admin and
  user authorities are tried in that order and the first success wins

Verified identities are cached by token fingerprint for token_cache_ttl
seconds. Tests install a StaticTokenVerifier with set_verifier().
"""

from __future__ import annotations

import importlib
import logging
import os
from abc import ABC, abstractmethod

from .auth import Identity, normalize_identity, token_fingerprint
from .cache import TTLCache
from .config import Settings, get_settings
from .errors import AuthError, ConfigError
from .remote_auth import Authority, extract_bearer_token, verify_with_authority

logger = logging.getLogger(__name__)

__all__ = [
    "AuthorityChainVerifier",
    "ModuleVerifier",
    "TokenVerifier",
    "build_verifier",
    "extract_bearer_token",
    "get_verifier",
    "reset_verifier",
    "set_verifier",
]


class TokenVerifier(ABC):
    """Turns a bearer token into an Identity or raises AuthError."""

    name = "unknown"

    @abstractmethod
    def verify(self, token: str | None) -> Identity:
        """Resolve a token.

        Raises:
            AuthError: NO_TOKEN, INVALID_TOKEN or SERVICE_UNAVAILABLE
        """


class AuthorityChainVerifier(TokenVerifier):
    """Tries each authority in priority order and stops at the first success.

    A timeout or network failure counts as that authority saying no. Only when
    every authority was unreachable does verification fail with
    SERVICE_UNAVAILABLE instead of INVALID_TOKEN.
    """

    name = "authority-chain"

    def __init__(
        self,
        authorities: list[Authority],
        timeout: float = 3.0,
        cache_ttl: float = 300.0,
    ) -> None:
        if not authorities:
            raise ConfigError("At least one verification authority is required")
        self.authorities = list(authorities)
        self.timeout = timeout
        self.cache = TTLCache(name="token", default_ttl=cache_ttl, max_size=5000)

    def verify(self, token: str | None) -> Identity:
        if not token:
            raise AuthError("No token provided. Expected: Bearer <token>", AuthError.NO_TOKEN)

        cache_key = token_fingerprint(token)
        hit, cached = self.cache.get(cache_key)
        if hit:
            return cached

        unavailable = 0
        for authority in self.authorities:
            result = verify_with_authority(authority, token, timeout=self.timeout)
            if result.ok and result.payload is not None:
                identity = normalize_identity(result.payload, authority.kind)
                self.cache.set(cache_key, identity)
                logger.info(
                    f"Token verified by {authority.kind} authority "
                    f"for {identity.kind}:{identity.id}"
                )
                return identity
            if result.unavailable:
                unavailable += 1
            logger.debug(f"{authority.kind} authority did not verify token: {result.error}")

        if unavailable == len(self.authorities):
            raise AuthError("Authentication service unavailable", AuthError.SERVICE_UNAVAILABLE)
        raise AuthError("Invalid or expired token", AuthError.INVALID_TOKEN)


class ModuleVerifier(TokenVerifier):
    """Delegates to a user-supplied module's verify_bearer_token()."""

    def __init__(self, module_path: str) -> None:
        try:
            self.module = importlib.import_module(module_path)
        except ImportError as e:
            raise ImportError(f"Failed to import auth module '{module_path}': {e}") from e
        if not hasattr(self.module, "verify_bearer_token"):
            raise ConfigError(f"Auth module '{module_path}' has no verify_bearer_token()")
        self.name = f"custom:{module_path}"

    def verify(self, token: str | None) -> Identity:
        if not token:
            raise AuthError("No token provided. Expected: Bearer <token>", AuthError.NO_TOKEN)
        return self.module.verify_bearer_token(token)


def build_verifier(settings: Settings | None = None) -> TokenVerifier:
    """Create the verifier described by settings and the environment."""
    settings = settings or get_settings()

    custom_module = os.environ.get("CHATRELAY_AUTH_MODULE")
    if custom_module:
        return ModuleVerifier(custom_module)

    if not settings.auth_base_url:
        raise ConfigError("No auth configured. Set CHATRELAY_AUTH_URL or CHATRELAY_AUTH_MODULE")

    authorities = [
        Authority(kind="admin", url=settings.auth_base_url + settings.admin_verify_path),
        Authority(kind="user", url=settings.auth_base_url + settings.user_verify_path),
    ]
    return AuthorityChainVerifier(
        authorities,
        timeout=settings.auth_timeout,
        cache_ttl=settings.token_cache_ttl,
    )


# --- Global verifier ---

_verifier: TokenVerifier | None = None


def get_verifier() -> TokenVerifier:
    """Get the process verifier, building it from settings on first use."""
    global _verifier
    if _verifier is None:
        _verifier = build_verifier()
    return _verifier


def set_verifier(verifier: TokenVerifier) -> None:
    global _verifier
    _verifier = verifier


def reset_verifier() -> None:
    """Reset the global verifier (for testing)."""
    global _verifier
    _verifier = None
