"""Pytest fixtures for testing with chatrelay.

Usage in conftest.py:
    pytest_plugins = ["chatrelay.testing"]

Or import the helpers directly:
    from chatrelay.testing import FakeSocket, StaticTokenVerifier, make_identity

Available fixtures:
    - identities: alice (admin), bob, carol and dave (users)
    - static_verifier: StaticTokenVerifier installed as the process verifier,
      accepting "<name>-token" for each of the identities
    - chat_hub: Fresh ChatHub installed as the process hub
    - connect_identity: async factory that connects an identity to chat_hub
      over a FakeSocket
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Generator

import pytest

from .auth import Identity
from .auth_provider import TokenVerifier, reset_verifier, set_verifier
from .errors import AuthError
from .hub import ChatHub, reset_hub, set_hub
from .registry import Connection


class FakeSocket:
    """In-memory transport that records every frame sent to it.

    Args:
        fail: Raise ConnectionError on every send, like a dead peer
    """

    def __init__(self, fail: bool = False) -> None:
        self.sent: list[dict[str, Any]] = []
        self.fail = fail

    async def send_json(self, data: Any) -> None:
        if self.fail:
            raise ConnectionError("socket closed")
        self.sent.append(data)

    def events(self, name: str | None = None) -> list[dict[str, Any]]:
        """Payloads received, optionally only those of one event."""
        return [f["data"] for f in self.sent if name is None or f["event"] == name]

    def names(self) -> list[str]:
        return [f["event"] for f in self.sent]

    def last(self, name: str) -> dict[str, Any] | None:
        matching = self.events(name)
        return matching[-1] if matching else None

    def clear(self) -> None:
        self.sent.clear()


class StaticTokenVerifier(TokenVerifier):
    """Verifier backed by a fixed token -> Identity map."""

    name = "static"

    def __init__(self, tokens: dict[str, Identity] | None = None) -> None:
        self.tokens = dict(tokens or {})

    def add(self, token: str, identity: Identity) -> None:
        self.tokens[token] = identity

    def verify(self, token: str | None) -> Identity:
        if not token:
            raise AuthError("No token provided. Expected: Bearer <token>", AuthError.NO_TOKEN)
        identity = self.tokens.get(token)
        if identity is None:
            raise AuthError("Invalid or expired token", AuthError.INVALID_TOKEN)
        return identity


def make_identity(
    user_id: str,
    kind: str = "user",
    name: str | None = None,
    email: str | None = None,
) -> Identity:
    """Build an Identity with sensible defaults for tests."""
    name = name or user_id.capitalize()
    return Identity(
        id=user_id,
        kind=kind,
        name=name,
        email=email or f"{user_id}@example.com",
        source=kind,
    )


@pytest.fixture
def identities() -> dict[str, Identity]:
    """Four identities: one admin and three users.

    Example:
        def test_something(identities):
            alice, bob = identities["alice"], identities["bob"]
    """
    return {
        "alice": make_identity("alice", kind="admin"),
        "bob": make_identity("bob"),
        "carol": make_identity("carol"),
        "dave": make_identity("dave"),
    }


@pytest.fixture
def static_verifier(identities: dict[str, Identity]) -> Generator[StaticTokenVerifier, None, None]:
    """Install a verifier that accepts "<name>-token" for every identity."""
    verifier = StaticTokenVerifier({f"{name}-token": ident for name, ident in identities.items()})
    set_verifier(verifier)
    yield verifier
    reset_verifier()


@pytest.fixture
def chat_hub() -> Generator[ChatHub, None, None]:
    """Fresh hub, installed as the process hub for the duration of the test."""
    hub = ChatHub()
    set_hub(hub)
    yield hub
    reset_hub()


ConnectFactory = Callable[..., Awaitable[tuple[Connection, FakeSocket]]]


@pytest.fixture
def connect_identity(chat_hub: ChatHub) -> ConnectFactory:
    """Async factory connecting an identity to chat_hub.

    Example:
        @pytest.mark.asyncio
        async def test_online(connect_identity, identities):
            conn, socket = await connect_identity(identities["bob"], join=True)
            assert socket.last("conversations_joined") is not None
    """

    async def _connect(
        identity: Identity,
        join: bool = False,
        fail: bool = False,
    ) -> tuple[Connection, FakeSocket]:
        socket = FakeSocket(fail=fail)
        connection = Connection(socket, identity)
        await chat_hub.connect(connection)
        if join:
            await chat_hub.join_conversations(connection)
        return connection, socket

    return _connect
