"""Identity resolution: credential extraction and the bearer/cookie/session chain."""

import os
from datetime import timedelta
from unittest.mock import Mock

import pytest

from happyjourney.service.identity import (
    SOURCE_BEARER,
    SOURCE_COOKIE,
    SOURCE_SESSION,
    Credentials,
    IdentityResolver,
    extract_credentials,
)
from happyjourney.service.sessions import SessionManager
from happyjourney.service.tokens import (
    PURPOSE_PASSWORD_RESET,
    IdentityClaim,
    TokenSigner,
)
from happyjourney.storage.memory import MemoryStore
from happyjourney.storage.models import Session, utcnow

TEST_SECRET = os.environ["AUTH_SECRET"]


@pytest.fixture
def memory():
    return MemoryStore()


@pytest.fixture
def store(memory):
    return Mock(wraps=memory)


@pytest.fixture
def signer():
    return TokenSigner(TEST_SECRET)


@pytest.fixture
def resolver(store, signer, settings):
    return IdentityResolver(signer, SessionManager(store, settings))


@pytest.fixture
def user(store):
    return store.create_user("member@example.com", name="Member")


def _token(signer, user_id, **kwargs):
    return signer.issue(IdentityClaim(subject_id=user_id, roles=["participant"]), **kwargs)


class TestExtractCredentials:
    def test_reads_bearer_and_cookies(self):
        creds = extract_credentials(
            {"authorization": "Bearer abc.def.ghi"},
            {"auth_token": "cookie-token", "session_id": "sess"},
        )
        assert creds == Credentials("abc.def.ghi", "cookie-token", "sess")

    def test_scheme_is_case_insensitive(self):
        assert extract_credentials({"authorization": "bearer tok"}, {}).bearer == "tok"

    @pytest.mark.parametrize("header", ["Basic dXNlcjpwYXNz", "Bearer", "Bearer   ", "tok"])
    def test_non_bearer_headers_are_ignored(self, header):
        assert extract_credentials({"authorization": header}, {}).bearer is None

    def test_empty_cookies_count_as_absent(self):
        creds = extract_credentials({}, {"auth_token": "", "session_id": ""})
        assert creds.empty


class TestResolverChain:
    def test_no_credentials_never_touches_store(self, resolver, store):
        store.reset_mock()
        assert resolver.resolve(Credentials()) is None
        assert resolver.resolve_bearer(Credentials()) is None
        assert store.method_calls == []

    def test_valid_bearer_wins_over_cookies(self, resolver, signer, store, user):
        other = store.create_user("other@example.com")
        sess = store.create_session(other.id)
        store.reset_mock()
        creds = Credentials(
            bearer=_token(signer, user.id),
            cookie_token=_token(signer, other.id),
            session_id=sess.id,
        )
        identity = resolver.resolve(creds)
        assert identity.user_id == user.id
        assert identity.source == SOURCE_BEARER
        assert identity.roles == ["participant"]
        store.get_active_session.assert_not_called()

    def test_invalid_bearer_falls_through_to_cookie(self, resolver, signer, user):
        creds = Credentials(bearer="garbage", cookie_token=_token(signer, user.id))
        identity = resolver.resolve(creds)
        assert identity.user_id == user.id
        assert identity.source == SOURCE_COOKIE

    def test_expired_tokens_fall_through_to_session(self, resolver, signer, store, user):
        expired = _token(signer, user.id, ttl_seconds=-1)
        sess = store.create_session(user.id)
        creds = Credentials(bearer=expired, cookie_token=expired, session_id=sess.id)
        identity = resolver.resolve(creds)
        assert identity.user_id == user.id
        assert identity.source == SOURCE_SESSION
        assert identity.session_id == sess.id

    def test_session_hit_records_last_seen(self, resolver, store, user):
        sess = store.create_session(user.id)
        assert resolver.resolve(Credentials(session_id=sess.id)).user_id == user.id
        store.touch_session.assert_called_once()
        assert store.get_active_session(sess.id, utcnow()).last_seen is not None

    def test_expired_session_record_is_rejected(self, resolver, memory, store, user):
        stale = Session.new(user.id, ttl=timedelta(days=30), now=utcnow() - timedelta(days=31))
        memory.sessions[stale.id] = stale
        assert resolver.resolve(Credentials(session_id=stale.id)) is None
        store.touch_session.assert_not_called()

    def test_unknown_session_is_unauthenticated(self, resolver):
        assert resolver.resolve(Credentials(session_id="f" * 64)) is None

    def test_reset_token_does_not_authenticate(self, resolver, signer, user):
        reset = _token(signer, user.id, ttl_seconds=900, purpose=PURPOSE_PASSWORD_RESET)
        assert resolver.resolve(Credentials(bearer=reset)) is None

    def test_non_ascii_bearer_falls_through_to_session(self, resolver, signer, store, user):
        sess = store.create_session(user.id)
        header, payload, _ = _token(signer, user.id).split(".")
        creds = Credentials(bearer=f"{header}.{payload}.\u00e9", session_id=sess.id)
        identity = resolver.resolve(creds)
        assert identity.user_id == user.id
        assert identity.source == SOURCE_SESSION
        assert resolver.resolve_bearer(creds) is None

    def test_store_failure_is_unauthenticated(self, resolver, store):
        store.get_active_session.side_effect = RuntimeError("database down")
        assert resolver.resolve(Credentials(session_id="abc")) is None


class TestStrictBearer:
    def test_accepts_valid_bearer(self, resolver, signer, user):
        identity = resolver.resolve_bearer(Credentials(bearer=_token(signer, user.id)))
        assert identity.user_id == user.id

    def test_ignores_cookies_and_sessions(self, resolver, signer, store, user):
        sess = store.create_session(user.id)
        creds = Credentials(cookie_token=_token(signer, user.id), session_id=sess.id)
        assert resolver.resolve_bearer(creds) is None
        creds = Credentials(bearer="bad", cookie_token=_token(signer, user.id), session_id=sess.id)
        assert resolver.resolve_bearer(creds) is None


@pytest.mark.parametrize("secret", [None, "", "too-short"])
def test_unusable_secret_resolves_nothing(store, settings, secret):
    user = store.create_user("member@example.com")
    sess = store.create_session(user.id)
    good = TokenSigner(TEST_SECRET).issue(IdentityClaim(subject_id=user.id))
    resolver = IdentityResolver(TokenSigner(secret), SessionManager(store, settings))
    store.reset_mock()
    creds = Credentials(bearer=good, cookie_token=good, session_id=sess.id)
    assert resolver.resolve(creds) is None
    assert resolver.resolve_bearer(creds) is None
    store.get_active_session.assert_not_called()


def test_explicit_empty_strategy_list_resolves_nothing(store, signer, settings, user):
    resolver = IdentityResolver(signer, SessionManager(store, settings), strategies=[])
    assert resolver.resolve(Credentials(bearer=_token(signer, user.id))) is None
