"""chatrelay - Real-time chat delivery and presence.

Usage:
    # Run the server (FastAPI app at chatrelay.api:app)
    chatrelay serve --port 8000

    # Embed the delivery hub
    from chatrelay import ChatHub, Connection

    hub = ChatHub()
    conn = Connection(websocket, identity)
    await hub.connect(conn)
    await hub.handle(conn, {"event": "join_conversations", "data": {}})
    await hub.disconnect(conn)
"""

from chatrelay._version import __version__
from chatrelay.auth import Identity, normalize_identity
from chatrelay.config import Settings
from chatrelay.errors import (
    AuthError,
    ChatError,
    ConfigError,
    ForbiddenError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from chatrelay.hub import ChatHub
from chatrelay.registry import Connection

__all__ = [
    "__version__",
    "AuthError",
    "ChatError",
    "ChatHub",
    "ConfigError",
    "Connection",
    "ForbiddenError",
    "Identity",
    "NotFoundError",
    "Settings",
    "StorageError",
    "ValidationError",
    "normalize_identity",
]
