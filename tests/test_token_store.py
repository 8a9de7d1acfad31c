"""Tests for the Google OAuth credential cache (services.token_store)."""

import time
from datetime import timedelta

import pytest
from google.auth.exceptions import RefreshError
from google.oauth2.credentials import Credentials

from config import GoogleClientConfig
from models import User, utcnow
from services.token_store import OAuthTokenStore


@pytest.fixture()
def store(session, settings) -> OAuthTokenStore:
    return OAuthTokenStore(session, settings.google_client(), refresh_skew=timedelta(seconds=60))


def _fail_if_refreshed(self, request):
    raise AssertionError("refresh should not have been attempted")


async def _expire(session, user):
    user.oauth_token_expiry = utcnow() - timedelta(minutes=5)
    session.add(user)
    await session.commit()


class TestGetValidCredential:
    async def test_returns_cached_token_when_fresh(self, store, linked_user, monkeypatch) -> None:
        monkeypatch.setattr(Credentials, "refresh", _fail_if_refreshed)
        creds = await store.get_valid_credential(linked_user.id)
        assert creds is not None
        assert creds.token == "ya29.cached"
        assert creds.refresh_token == "1//refresh-abc"

    async def test_refreshes_and_persists_when_expired(self, store, session, linked_user, monkeypatch) -> None:
        new_expiry = utcnow() + timedelta(hours=1)

        def fake_refresh(self, request):
            self.token = "ya29.refreshed"
            self.expiry = new_expiry

        monkeypatch.setattr(Credentials, "refresh", fake_refresh)
        await _expire(session, linked_user)

        creds = await store.get_valid_credential(linked_user.id)
        assert creds.token == "ya29.refreshed"

        await session.refresh(linked_user)
        assert linked_user.oauth_access_token == "ya29.refreshed"
        assert linked_user.oauth_token_expiry == new_expiry
        assert linked_user.oauth_refresh_token == "1//refresh-abc"

    async def test_near_expiry_counts_as_expired(self, store, session, linked_user, monkeypatch) -> None:
        calls = []

        def fake_refresh(self, request):
            calls.append(self.refresh_token)
            self.token = "ya29.early"
            self.expiry = utcnow() + timedelta(hours=1)

        monkeypatch.setattr(Credentials, "refresh", fake_refresh)
        linked_user.oauth_token_expiry = utcnow() + timedelta(seconds=10)
        session.add(linked_user)
        await session.commit()

        creds = await store.get_valid_credential(linked_user.id)
        assert creds.token == "ya29.early"
        assert calls == ["1//refresh-abc"]

    async def test_provider_rejection_is_absent(self, store, session, linked_user, monkeypatch) -> None:
        def rejected(self, request):
            raise RefreshError("invalid_grant: Token has been expired or revoked.")

        monkeypatch.setattr(Credentials, "refresh", rejected)
        await _expire(session, linked_user)

        assert await store.get_valid_credential(linked_user.id) is None
        await session.refresh(linked_user)
        assert linked_user.oauth_access_token == "ya29.cached"

    async def test_refresh_timeout_is_absent_and_keeps_stored_token(self, session, settings, linked_user,
                                                                     monkeypatch) -> None:
        def slow_refresh(self, request):
            time.sleep(0.3)
            self.token = "ya29.too-late"

        monkeypatch.setattr(Credentials, "refresh", slow_refresh)
        await _expire(session, linked_user)
        store = OAuthTokenStore(session, settings.google_client(), timeout_seconds=0.05)

        assert await store.get_valid_credential(linked_user.id) is None
        await session.refresh(linked_user)
        assert linked_user.oauth_access_token == "ya29.cached"

    async def test_expiry_survives_a_fresh_session(self, session_maker, linked_user, monkeypatch) -> None:
        monkeypatch.setattr(Credentials, "refresh", _fail_if_refreshed)
        async with session_maker() as s:
            reloaded = await s.get(User, linked_user.id)
            assert reloaded.oauth_token_expiry.tzinfo is None
            assert reloaded.oauth_token_expiry == linked_user.oauth_token_expiry

            store = OAuthTokenStore(s, GoogleClientConfig(client_id="id", client_secret="secret"))
            creds = await store.get_valid_credential(linked_user.id)
            assert creds.token == "ya29.cached"

    async def test_unlinked_user_is_absent(self, store, user, monkeypatch) -> None:
        monkeypatch.setattr(Credentials, "refresh", _fail_if_refreshed)
        assert await store.get_valid_credential(user.id) is None

    async def test_unknown_user_is_absent(self, store) -> None:
        assert await store.get_valid_credential(9999) is None

    async def test_expired_without_client_config_is_absent(self, session, linked_user, monkeypatch) -> None:
        monkeypatch.setattr(Credentials, "refresh", _fail_if_refreshed)
        await _expire(session, linked_user)
        store = OAuthTokenStore(session, GoogleClientConfig(client_id="", client_secret=""))
        assert await store.get_valid_credential(linked_user.id) is None


class TestPersistConsent:
    async def test_stores_first_pair(self, store, session, user) -> None:
        expiry = utcnow() + timedelta(hours=1)
        assert await store.persist_consent(user.id, "ya29.first", "1//first", expiry)
        stored = await session.get(User, user.id)
        assert (stored.oauth_access_token, stored.oauth_refresh_token) == ("ya29.first", "1//first")
        assert stored.oauth_token_expiry == expiry
        assert stored.google_linked

    async def test_reconsent_without_refresh_token_keeps_old_one(self, store, session, linked_user) -> None:
        assert await store.persist_consent(linked_user.id, "ya29.second", None, None)
        await session.refresh(linked_user)
        assert linked_user.oauth_access_token == "ya29.second"
        assert linked_user.oauth_refresh_token == "1//refresh-abc"

    async def test_unknown_user(self, store) -> None:
        assert not await store.persist_consent(4242, "ya29.x", "1//x", None)
