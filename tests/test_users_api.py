"""Integration tests for the /users/me endpoints."""

import pytest

from conftest import STRONG_PASSWORD, bearer, register


@pytest.fixture
def alice(client):
    tokens = register(client).json()["data"]
    return bearer(tokens["accessToken"])


class TestProfile:
    def test_empty_patch_is_rejected(self, client, alice):
        response = client.patch("/users/me", json={}, headers=alice)

        assert response.status_code == 400
        body = response.json()
        assert body["errorName"] == "VALIDATION_ERROR"
        assert body["errorMessage"] == "Au moins un champ doit être fourni pour la mise à jour"

    def test_empty_patch_in_english(self, client, alice):
        response = client.patch("/users/me?lang=en", json={}, headers=alice)

        assert response.json()["errorMessage"] == "At least one field must be provided for update"

    def test_update_name(self, client, alice):
        response = client.patch("/users/me", json={"name": "  Alice Martin "}, headers=alice)

        assert response.status_code == 200
        assert response.json()["data"]["name"] == "Alice Martin"
        assert client.get("/users/me", headers=alice).json()["data"]["name"] == "Alice Martin"

    def test_update_email_normalizes(self, client, alice):
        response = client.patch("/users/me", json={"email": "Alice.New@Test.com"}, headers=alice)

        assert response.status_code == 200
        assert response.json()["data"]["email"] == "alice.new@test.com"

    def test_update_email_taken(self, client, alice):
        register(client, name="Bob", email="bob@test.com")

        response = client.patch("/users/me", json={"email": "bob@test.com"}, headers=alice)

        assert response.status_code == 409

    def test_update_requires_auth(self, client):
        response = client.patch("/users/me", json={"name": "Alice"})

        assert response.status_code == 401
        assert response.json()["errorName"] == "MISSING_TOKEN"


class TestChangePassword:
    def test_change_password(self, client, alice):
        response = client.patch(
            "/users/me/password",
            json={"currentPassword": STRONG_PASSWORD, "newPassword": "Changed456"},
            headers=alice,
        )

        assert response.status_code == 200
        login = client.post("/auth/login", json={"email": "alice@test.com", "password": "Changed456"})
        assert login.status_code == 200

    def test_wrong_current_password(self, client, alice):
        response = client.patch(
            "/users/me/password",
            json={"currentPassword": "Wrong1234", "newPassword": "Changed456"},
            headers=alice,
        )

        assert response.status_code == 401
        assert response.json()["errorName"] == "INVALID_CREDENTIALS"

    def test_weak_new_password(self, client, alice):
        response = client.patch(
            "/users/me/password",
            json={"currentPassword": STRONG_PASSWORD, "newPassword": "weak"},
            headers=alice,
        )

        assert response.status_code == 400

    def test_same_password(self, client, alice):
        response = client.patch(
            "/users/me/password",
            json={"currentPassword": STRONG_PASSWORD, "newPassword": STRONG_PASSWORD},
            headers=alice,
        )

        assert response.status_code == 400
        assert response.json()["errorName"] == "VALIDATION_ERROR"

    def test_external_account(self, client, runtime):
        record = runtime.store.create_user("Gina", "gina@test.com", None, auth_provider="google")
        token = runtime.issuer.issue_tokens(record.id).access_token

        profile = client.get("/users/me", headers=bearer(token)).json()["data"]
        response = client.patch(
            "/users/me/password",
            json={"currentPassword": "Anything1", "newPassword": "Changed456"},
            headers=bearer(token),
        )

        assert profile["canChangePassword"] is False
        assert response.status_code == 401
        assert response.json()["errorName"] == "EXTERNAL_AUTH_ACCOUNT"


class TestDeleteAccount:
    def test_delete_with_password(self, client, alice):
        response = client.request(
            "DELETE", "/users/me", json={"password": STRONG_PASSWORD}, headers=alice
        )

        assert response.status_code == 200
        after = client.get("/users/me", headers=alice)
        assert after.status_code == 401
        assert after.json()["errorName"] == "TOKEN_REVOKED"
        login = client.post("/auth/login", json={"email": "alice@test.com", "password": STRONG_PASSWORD})
        assert login.json()["errorName"] == "INVALID_CREDENTIALS"

    def test_delete_without_password(self, client, alice):
        response = client.request("DELETE", "/users/me", headers=alice)

        assert response.status_code == 401
        assert response.json()["errorName"] == "INVALID_CREDENTIALS"
        assert client.get("/users/me", headers=alice).status_code == 200
