"""CLI for running and maintaining a chatrelay server.

Settings come from CHATRELAY_* environment variables and the optional YAML
file named by CHATRELAY_CONFIG (or --config).
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys

import cyclopts

from .config import get_settings, load_settings, reset_settings
from .errors import AuthError, ConfigError

app = cyclopts.App(
    name="chatrelay",
    help="Real-time chat delivery and presence server",
)


def _use_config(config: str | None) -> None:
    if config:
        os.environ["CHATRELAY_CONFIG"] = config
        reset_settings()


def _prepare_db() -> None:
    """Point the storage layer at the configured database and create the schema."""
    from . import db

    settings = get_settings()
    os.environ["CHATRELAY_DB"] = settings.db_path
    db.close_db()
    db.init_db()


# --- Server Command ---


@app.command
def serve(
    *,
    host: str = "0.0.0.0",
    port: int = 8000,
    reload: bool = False,
    config: str | None = None,
):
    """Run the chatrelay server.

    Token verification is configured with one of:
    - CHATRELAY_AUTH_URL: base URL of the verification service
    - CHATRELAY_AUTH_MODULE: module exposing verify_bearer_token(token)
    """
    import uvicorn

    _use_config(config)
    try:
        settings = get_settings()
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    if not settings.auth_base_url and not os.environ.get("CHATRELAY_AUTH_MODULE"):
        print("Error: No auth method configured.", file=sys.stderr)
        print("Options:", file=sys.stderr)
        print("  CHATRELAY_AUTH_URL=...     verification service base URL", file=sys.stderr)
        print("  CHATRELAY_AUTH_MODULE=...  custom verification module", file=sys.stderr)
        sys.exit(1)

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    os.environ["CHATRELAY_DB"] = settings.db_path

    uvicorn.run(
        "chatrelay.api:app",
        host=host,
        port=port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


# --- Maintenance Commands ---


@app.command(name="init-db")
def init_db(*, config: str | None = None):
    """Create the database schema and run pending migrations."""
    from . import db

    _use_config(config)
    _prepare_db()
    print(f"Database ready at {get_settings().db_path} (schema v{db.get_schema_version()})")


@app.command(name="sweep-presence")
def sweep_presence(*, config: str | None = None):
    """Delete presence records whose TTL has passed.

    Runs against the database directly, so identities connected to a running
    server are not refreshed first; their next presence write restores them.
    """
    from .presence import PresenceStore

    _use_config(config)
    _prepare_db()
    store = PresenceStore(ttl=get_settings().presence_ttl)
    removed = asyncio.run(store.sweep([]))
    print(f"Removed {removed} expired presence records")


@app.command(name="verify-token")
def verify_token(token: str, *, config: str | None = None):
    """Resolve a bearer token against the configured authorities.

    Prints the identity as JSON.
    """
    from .auth_provider import build_verifier

    _use_config(config)
    try:
        verifier = build_verifier(load_settings())
        identity = verifier.verify(token)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except AuthError as e:
        print(f"Error ({e.code}): {e.message}", file=sys.stderr)
        sys.exit(1)

    print(json.dumps(identity.to_dict(), indent=2))


@app.command(name="config")
def show_config(*, config: str | None = None):
    """Show the effective settings."""
    _use_config(config)
    try:
        settings = get_settings()
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    print(json.dumps(settings.to_dict(), indent=2))


def main() -> None:
    app()


if __name__ == "__main__":
    main()
