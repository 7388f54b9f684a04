"""Identity types and normalization.

Both verification authorities return loosely shaped user payloads. They are
turned into one canonical Identity by ``normalize_identity`` so the rest of
the system never looks at authority-specific fields.
"""

from __future__ import annotations

import hashlib
from dataclasses import asdict, dataclass
from typing import Any

from .errors import AuthError

IDENTITY_KINDS = ("admin", "user")

IdentityKey = tuple[str, str]


@dataclass(frozen=True)
class Identity:
    """A resolved, authenticated participant."""

    id: str
    kind: str
    name: str
    email: str
    profile: str | None = None
    role: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    source: str | None = None

    @property
    def key(self) -> IdentityKey:
        return identity_key(self)

    def as_participant(self) -> dict:
        """Participant/sender dict used by the storage layer."""
        return {
            "id": self.id,
            "kind": self.kind,
            "name": self.name,
            "email": self.email,
            "profile": self.profile,
            "role": self.role,
        }

    def to_dict(self) -> dict:
        return asdict(self)


def identity_key(identity: Identity) -> IdentityKey:
    """The (id, kind) pair that identifies a participant everywhere."""
    return (identity.id, identity.kind)


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def normalize_identity(payload: dict[str, Any], source_kind: str) -> Identity:
    """Map an authority's user payload to an Identity.

    Args:
        payload: The ``result`` object returned by the authority
        source_kind: Kind implied by the authority that accepted the token
                     ("admin" or "user"), used when the payload has no valid type

    Raises:
        AuthError: If the payload lacks an id or email.
    """
    user_id = _clean(payload.get("id"))
    email = _clean(payload.get("email"))
    if not user_id or not email:
        raise AuthError("Invalid user data received", AuthError.INVALID_TOKEN)

    kind = _clean(payload.get("type"))
    if kind not in IDENTITY_KINDS:
        kind = source_kind

    first_name = _clean(payload.get("first_name") or payload.get("firstName"))
    last_name = _clean(payload.get("last_name") or payload.get("lastName"))
    name = _clean(payload.get("name")) or _clean(f"{first_name or ''} {last_name or ''}")

    profile = _clean(
        payload.get("profile") or payload.get("profile_picture") or payload.get("avatar")
    )

    return Identity(
        id=user_id,
        kind=kind,
        name=name or email,
        email=email,
        profile=profile,
        role=_clean(payload.get("role")),
        first_name=first_name,
        last_name=last_name,
        source=source_kind,
    )


def token_fingerprint(token: str) -> str:
    """SHA-256 of a bearer token, used as a cache key."""
    return hashlib.sha256(token.encode()).hexdigest()
