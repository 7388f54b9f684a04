"""HTTP calls to a token verification authority.

An authority answers ``POST {base_url}{path}`` with the bearer token in the
Authorization header. A successful verification is a 200 response whose JSON
body looks like ``{"status": 1, "message": "...", "result": {...user...}}``.
"""

import logging
from dataclasses import dataclass

import httpx

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Authority:
    """One verification endpoint and the identity kind it vouches for."""

    kind: str
    url: str


@dataclass
class AuthorityResult:
    """Result of asking one authority about a token."""

    ok: bool
    payload: dict | None = None
    unavailable: bool = False
    error: str | None = None


def verify_with_authority(authority: Authority, token: str, timeout: float = 3.0) -> AuthorityResult:
    """
    Ask one authority to verify a bearer token.

    Timeouts and network errors are reported as ``unavailable`` rather than
    raised, so the caller can move on to the next authority.

    Args:
        authority: The authority to ask
        token: The bearer token
        timeout: Seconds before giving up on this authority

    Returns:
        AuthorityResult with the user payload when the token was accepted
    """
    try:
        response = httpx.post(
            authority.url,
            json={},
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/json",
            },
            timeout=timeout,
        )
    except httpx.RequestError as e:
        logger.info(f"{authority.kind} authority unavailable: {e.__class__.__name__}")
        return AuthorityResult(ok=False, unavailable=True, error=f"Auth service unavailable: {e}")

    if response.status_code != 200:
        return AuthorityResult(
            ok=False,
            error=f"{authority.kind} authority returned {response.status_code}",
        )

    try:
        data = response.json()
    except ValueError:
        return AuthorityResult(ok=False, error=f"{authority.kind} authority returned invalid JSON")

    if not isinstance(data, dict):
        return AuthorityResult(ok=False, error=f"{authority.kind} authority rejected token")

    result = data.get("result")
    if data.get("status") != 1 or not isinstance(result, dict):
        return AuthorityResult(ok=False, error=f"{authority.kind} authority rejected token")

    return AuthorityResult(ok=True, payload=result)


def extract_bearer_token(authorization: str | None) -> str | None:
    """
    Extract bearer token from Authorization header.

    Args:
        authorization: The full Authorization header value

    Returns:
        The token if valid Bearer format, None otherwise
    """
    if not authorization:
        return None

    parts = authorization.split(" ", 1)
    if len(parts) != 2:
        return None

    scheme, token = parts
    if scheme.lower() != "bearer":
        return None

    return token.strip() or None
