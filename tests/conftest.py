"""Shared pytest configuration and fixtures."""

import os

# Set environment variables before any imports
os.environ["CHATRELAY_DB"] = ":memory:"
os.environ["CHATRELAY_PRESENCE_SWEEP_INTERVAL"] = "0"
# Ensure no real verification service or config file is used in tests
os.environ.pop("CHATRELAY_AUTH_URL", None)
os.environ.pop("CHATRELAY_AUTH_MODULE", None)
os.environ.pop("CHATRELAY_CONFIG", None)


import pytest
from chatrelay import db
from chatrelay.auth_provider import reset_verifier
from chatrelay.config import reset_settings
from chatrelay.hub import reset_hub
from chatrelay.metrics import metrics


@pytest.fixture(autouse=True, scope="function")
def reset_database():
    """Reset database before each test function.

    For in-memory shared cache databases, we need to do a full reset_db()
    to clear all tables, since close_db() doesn't destroy the shared cache.
    """
    db.reset_db(db.get_connection())
    yield
    db.close_db()  # Cleanup after test


@pytest.fixture(autouse=True)
def reset_globals():
    """Forget the process hub, verifier, settings and metrics after each test."""
    yield
    reset_hub()
    reset_verifier()
    reset_settings()
    metrics.reset()
