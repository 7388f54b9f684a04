"""Tests for token verifiers."""

import sys
import types
from unittest.mock import patch

import pytest
from chatrelay.auth_provider import (
    AuthorityChainVerifier,
    ModuleVerifier,
    build_verifier,
    get_verifier,
    reset_verifier,
    set_verifier,
)
from chatrelay.config import Settings
from chatrelay.errors import AuthError, ConfigError
from chatrelay.metrics import metrics
from chatrelay.remote_auth import Authority, AuthorityResult
from chatrelay.testing import StaticTokenVerifier, make_identity

AUTHORITIES = [
    Authority(kind="admin", url="https://auth.example.com/admin/verify-token"),
    Authority(kind="user", url="https://auth.example.com/api/v2/verify-token"),
]

USER_PAYLOAD = {"id": "7", "email": "bob@example.com", "first_name": "Bob", "last_name": "Stone"}


def _results(*results):
    """Patch verify_with_authority to answer with `results` in order."""
    return patch("chatrelay.auth_provider.verify_with_authority", side_effect=list(results))


class TestAuthorityChainVerifier:
    def test_requires_authorities(self):
        with pytest.raises(ConfigError):
            AuthorityChainVerifier([])

    def test_missing_token(self):
        verifier = AuthorityChainVerifier(AUTHORITIES)

        with pytest.raises(AuthError) as exc_info:
            verifier.verify(None)

        assert exc_info.value.code == AuthError.NO_TOKEN

    def test_admin_authority_tried_first(self):
        verifier = AuthorityChainVerifier(AUTHORITIES)
        admin = {"id": "1", "email": "root@example.com", "name": "Root"}

        with _results(AuthorityResult(ok=True, payload=admin)) as mock_verify:
            identity = verifier.verify("tok")

        assert identity.kind == "admin"
        assert identity.id == "1"
        assert mock_verify.call_count == 1

    def test_falls_through_to_user_authority(self):
        verifier = AuthorityChainVerifier(AUTHORITIES)

        with _results(
            AuthorityResult(ok=False, error="rejected"),
            AuthorityResult(ok=True, payload=USER_PAYLOAD),
        ):
            identity = verifier.verify("tok")

        assert identity.kind == "user"
        assert identity.name == "Bob Stone"
        assert identity.source == "user"

    def test_unreachable_admin_does_not_block_user(self):
        verifier = AuthorityChainVerifier(AUTHORITIES)

        with _results(
            AuthorityResult(ok=False, unavailable=True, error="timeout"),
            AuthorityResult(ok=True, payload=USER_PAYLOAD),
        ):
            identity = verifier.verify("tok")

        assert identity.id == "7"

    def test_all_rejected_is_invalid(self):
        verifier = AuthorityChainVerifier(AUTHORITIES)

        with _results(AuthorityResult(ok=False), AuthorityResult(ok=False)):
            with pytest.raises(AuthError) as exc_info:
                verifier.verify("tok")

        assert exc_info.value.code == AuthError.INVALID_TOKEN
        assert exc_info.value.status_code == 401

    def test_all_unreachable_is_service_unavailable(self):
        verifier = AuthorityChainVerifier(AUTHORITIES)

        with _results(
            AuthorityResult(ok=False, unavailable=True),
            AuthorityResult(ok=False, unavailable=True),
        ):
            with pytest.raises(AuthError) as exc_info:
                verifier.verify("tok")

        assert exc_info.value.code == AuthError.SERVICE_UNAVAILABLE
        assert exc_info.value.status_code == 503

    def test_one_unreachable_one_rejected_is_invalid(self):
        verifier = AuthorityChainVerifier(AUTHORITIES)

        with _results(AuthorityResult(ok=False, unavailable=True), AuthorityResult(ok=False)):
            with pytest.raises(AuthError) as exc_info:
                verifier.verify("tok")

        assert exc_info.value.code == AuthError.INVALID_TOKEN

    def test_verified_tokens_are_cached(self):
        verifier = AuthorityChainVerifier(AUTHORITIES)

        with _results(
            AuthorityResult(ok=False),
            AuthorityResult(ok=True, payload=USER_PAYLOAD),
        ) as mock_verify:
            first = verifier.verify("tok")
            second = verifier.verify("tok")

        assert first == second
        assert mock_verify.call_count == 2
        assert metrics.cache_stats["token"].hits == 1

    def test_rejections_are_not_cached(self):
        verifier = AuthorityChainVerifier(AUTHORITIES)

        with _results(
            AuthorityResult(ok=False),
            AuthorityResult(ok=False),
            AuthorityResult(ok=True, payload=USER_PAYLOAD),
        ):
            with pytest.raises(AuthError):
                verifier.verify("tok")
            # The retry asks the authorities again
            assert verifier.verify("tok").id == "7"


class TestModuleVerifier:
    @pytest.fixture
    def auth_module(self):
        module = types.ModuleType("chat_auth_for_tests")

        def verify_bearer_token(token):
            if token != "good":
                raise AuthError("Invalid or expired token")
            return make_identity("custom")

        module.verify_bearer_token = verify_bearer_token
        sys.modules[module.__name__] = module
        yield module.__name__
        del sys.modules[module.__name__]

    def test_delegates_to_module(self, auth_module):
        verifier = ModuleVerifier(auth_module)

        assert verifier.verify("good").id == "custom"
        assert verifier.name == f"custom:{auth_module}"

    def test_module_rejection(self, auth_module):
        verifier = ModuleVerifier(auth_module)

        with pytest.raises(AuthError):
            verifier.verify("bad")

    def test_missing_token(self, auth_module):
        with pytest.raises(AuthError) as exc_info:
            ModuleVerifier(auth_module).verify("")

        assert exc_info.value.code == AuthError.NO_TOKEN

    def test_unknown_module(self):
        with pytest.raises(ImportError):
            ModuleVerifier("no_such_module_for_chatrelay")

    def test_module_without_hook(self):
        with pytest.raises(ConfigError):
            ModuleVerifier("json")


class TestBuildVerifier:
    def test_no_auth_configured(self):
        with pytest.raises(ConfigError):
            build_verifier(Settings())

    def test_authority_chain_from_settings(self):
        settings = Settings(auth_base_url="https://auth.example.com/", auth_timeout=1.5)

        verifier = build_verifier(settings)

        assert isinstance(verifier, AuthorityChainVerifier)
        assert [a.kind for a in verifier.authorities] == ["admin", "user"]
        assert verifier.authorities[0].url == "https://auth.example.com/admin/verify-token"
        assert verifier.authorities[1].url == "https://auth.example.com/api/v2/verify-token"
        assert verifier.timeout == 1.5

    def test_module_takes_precedence(self, monkeypatch):
        monkeypatch.setenv("CHATRELAY_AUTH_MODULE", "json")

        with pytest.raises(ConfigError, match="verify_bearer_token"):
            build_verifier(Settings(auth_base_url="https://auth.example.com"))


class TestGlobalVerifier:
    def test_set_and_reset(self):
        verifier = StaticTokenVerifier()
        set_verifier(verifier)

        assert get_verifier() is verifier

        reset_verifier()
        with pytest.raises(ConfigError):
            get_verifier()
