"""Tests for POST /auth/google and provider-backed accounts."""

import pytest
from fastapi.testclient import TestClient

from conftest import STRONG_PASSWORD, bearer, register
from usersvc.app import create_app
from usersvc.service.errors import InvalidProviderTokenError
from usersvc.service.identity import ExternalIdentity
from usersvc.service.runtime import Runtime
from usersvc.storage.memory import MemoryStore


class FakeGoogleVerifier:
    """Accepts ``good-<email>`` tokens; anything else is rejected."""

    provider = "google"

    def __init__(self, *, email_verified=True, name="Gina Google"):
        self.email_verified = email_verified
        self.name = name
        self.seen = []

    async def verify(self, provider_token):
        self.seen.append(provider_token)
        if not provider_token.startswith("good-"):
            raise InvalidProviderTokenError("rejected by provider")
        email = provider_token[len("good-"):]
        return ExternalIdentity(
            provider="google",
            subject=f"sub-{email}",
            email=email,
            name=self.name,
            email_verified=self.email_verified,
            picture="https://example.com/pic.png",
        )


@pytest.fixture
def google():
    return FakeGoogleVerifier()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def oauth_client(settings, store, google):
    runtime = Runtime(settings, store=store, identity_verifier=google)
    with TestClient(create_app(runtime=runtime)) as client:
        yield client


def google_login(client, token):
    return client.post("/auth/google", json={"googleToken": token})


class TestGoogleLogin:
    def test_first_sign_in_creates_passwordless_account(self, oauth_client, store):
        response = google_login(oauth_client, "good-Gina@Test.com")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["isNew"] is True
        assert data["expiresIn"] == "24h"
        record = store.get_user_by_email("gina@test.com")
        assert record.auth_provider == "google"
        assert record.password_hash is None
        assert record.profile_picture_url == "https://example.com/pic.png"

        profile = oauth_client.get("/users/me", headers=bearer(data["accessToken"]))
        assert profile.json()["data"]["authProvider"] == "google"

    def test_second_sign_in_reuses_account(self, oauth_client, store):
        first = google_login(oauth_client, "good-gina@test.com").json()["data"]
        second = google_login(oauth_client, "good-gina@test.com")

        assert second.status_code == 200
        assert second.json()["data"]["isNew"] is False
        assert second.json()["message"] == "Connexion Google réussie"
        assert first["accessToken"] != second.json()["data"]["accessToken"]
        assert len(store.users) == 1

    def test_existing_password_account_keeps_its_password(self, oauth_client, store):
        register(oauth_client, email="alice@test.com")

        response = google_login(oauth_client, "good-alice@test.com")

        assert response.json()["data"]["isNew"] is False
        record = store.get_user_by_email("alice@test.com")
        assert record.auth_provider == "email"
        login = oauth_client.post(
            "/auth/login", json={"email": "alice@test.com", "password": STRONG_PASSWORD}
        )
        assert login.status_code == 200

    def test_refresh_works_for_google_tokens(self, oauth_client):
        tokens = google_login(oauth_client, "good-gina@test.com").json()["data"]

        response = oauth_client.post(
            "/auth/refresh-token", json={"refreshToken": tokens["refreshToken"]}
        )

        assert response.status_code == 200

    def test_rejected_provider_token(self, oauth_client):
        response = google_login(oauth_client, "forged")

        assert response.status_code == 401
        assert response.json()["errorName"] == "INVALID_TOKEN"

    def test_missing_provider_token(self, oauth_client, google):
        response = oauth_client.post("/auth/google", json={})

        assert response.status_code == 401
        assert response.json()["errorName"] == "MISSING_TOKEN"
        assert google.seen == []

    def test_unverified_email_is_rejected(self, settings, store):
        runtime = Runtime(
            settings, store=store, identity_verifier=FakeGoogleVerifier(email_verified=False)
        )
        with TestClient(create_app(runtime=runtime)) as client:
            response = google_login(client, "good-gina@test.com")

        assert response.status_code == 401
        assert response.json()["errorName"] == "INVALID_TOKEN"
        assert store.get_user_by_email("gina@test.com") is None

    def test_blank_provider_name_falls_back_to_email(self, settings, store):
        runtime = Runtime(settings, store=store, identity_verifier=FakeGoogleVerifier(name=" "))
        with TestClient(create_app(runtime=runtime)) as client:
            google_login(client, "good-gina@test.com")

        assert store.get_user_by_email("gina@test.com").name == "gina"

    def test_unconfigured_provider_is_unavailable(self, client):
        response = google_login(client, "good-gina@test.com")

        assert response.status_code == 503
        assert response.json()["errorName"] == "SERVICE_UNAVAILABLE"


class TestProviderAccounts:
    """Password operations on accounts that have no password."""

    def test_password_login_is_refused(self, oauth_client):
        google_login(oauth_client, "good-gina@test.com")

        response = oauth_client.post(
            "/auth/login", json={"email": "gina@test.com", "password": STRONG_PASSWORD}
        )

        assert response.status_code == 401
        assert response.json()["errorName"] == "EXTERNAL_AUTH_ACCOUNT"

    def test_password_change_is_refused(self, oauth_client):
        token = google_login(oauth_client, "good-gina@test.com").json()["data"]["accessToken"]

        response = oauth_client.patch(
            "/users/me/password",
            headers=bearer(token),
            json={"currentPassword": "Whatever1", "newPassword": STRONG_PASSWORD},
        )

        assert response.status_code == 401
        assert response.json()["errorName"] == "EXTERNAL_AUTH_ACCOUNT"

    def test_deletion_needs_no_password(self, oauth_client, store):
        token = google_login(oauth_client, "good-gina@test.com").json()["data"]["accessToken"]

        response = oauth_client.delete("/users/me", headers=bearer(token))

        assert response.status_code == 200
        assert store.get_user_by_email("gina@test.com") is None
