"""Integration tests for the user endpoints.

Covers signup, login/logout, the profile, account removal and avatars.
"""

import pytest
from fastapi.testclient import TestClient

from taskkeeper import app as app_module
from taskkeeper.service.runtime import get_runtime

JPEG = b"\xff\xd8\xff\xe0\x00\x10JFIF\x00" + b"\x01" * 256


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _signup(client, name, email, password):
    response = client.post("/users", json={"name": name, "email": email, "password": password})
    assert response.status_code == 201
    return response.json()["data"]


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def user_one(client):
    return _signup(client, "Mike", "mike@example.com", "56what!!")


class TestSignup:
    def test_signup_creates_user(self, client):
        response = client.post(
            "/users",
            json={"name": "Ben Lee", "email": "bennylee@example.com", "password": "Benpass123"},
        )

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        data = body["data"]
        assert data["user"]["name"] == "Ben Lee"
        assert data["user"]["email"] == "bennylee@example.com"
        assert "password" not in data["user"]
        assert "tokens" not in data["user"]

        stored = get_runtime().store.get_user(data["user"]["id"])
        assert stored is not None
        assert stored.tokens == [data["token"]]
        password_hash, _ = get_runtime().store.get_password_record(stored.id)
        assert password_hash != "Benpass123"

    @pytest.mark.parametrize(
        "payload",
        [
            {"email": "bennylee@example.com", "password": "Benpass123"},
            {"name": "Dan Lee", "email": "dannylee@.com", "password": "Danpass123"},
            {"name": "Ken Lee", "email": "kennylee@example.com", "password": "Kenpo"},
            {"name": "Ken Lee", "email": "kennylee@example.com", "password": "myPassword1"},
        ],
    )
    def test_signup_rejects_invalid_fields(self, client, payload):
        response = client.post("/users", json=payload)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_signup_reports_all_bad_fields(self, client):
        response = client.post("/users", json={"name": "", "email": "x", "password": "1"})

        fields = response.json()["error"]["details"]["fields"]
        assert set(fields) == {"name", "email", "password"}

    def test_signup_rejects_duplicate_email(self, client, user_one):
        response = client.post(
            "/users",
            json={"name": "Other", "email": "MIKE@example.com", "password": "another1"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "duplicate_email"


class TestLogin:
    def test_login_existing_user(self, client, user_one):
        response = client.post(
            "/users/login", json={"email": "mike@example.com", "password": "56what!!"}
        )

        assert response.status_code == 200
        token = response.json()["data"]["token"]
        stored = get_runtime().store.get_user(user_one["user"]["id"])
        assert stored.tokens[1] == token

        # both sessions stay valid
        assert client.get("/users/me", headers=_auth(token)).status_code == 200
        assert client.get("/users/me", headers=_auth(user_one["token"])).status_code == 200

    def test_login_nonexistent_user(self, client):
        response = client.post(
            "/users/login", json={"email": "Frank Stein", "password": "Frankystein123"}
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "authentication_failed"

    def test_login_wrong_password(self, client, user_one):
        response = client.post(
            "/users/login", json={"email": "mike@example.com", "password": "56what!?"}
        )

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "unable to login"


class TestLogout:
    def test_logout_revokes_current_session_only(self, client, user_one):
        second = client.post(
            "/users/login", json={"email": "mike@example.com", "password": "56what!!"}
        ).json()["data"]["token"]

        response = client.post("/users/logout", headers=_auth(user_one["token"]))

        assert response.status_code == 200
        stale = client.get("/users/me", headers=_auth(user_one["token"]))
        assert stale.status_code == 401
        assert stale.json()["error"]["code"] == "unknown_session"
        assert client.get("/users/me", headers=_auth(second)).status_code == 200

    def test_logout_all(self, client, user_one):
        second = client.post(
            "/users/login", json={"email": "mike@example.com", "password": "56what!!"}
        ).json()["data"]["token"]

        response = client.post("/users/logoutAll", headers=_auth(second))

        assert response.status_code == 200
        assert response.json()["data"]["revoked"] == 2
        for token in (user_one["token"], second):
            assert client.get("/users/me", headers=_auth(token)).status_code == 401


class TestProfile:
    def test_get_profile(self, client, user_one):
        response = client.get("/users/me", headers=_auth(user_one["token"]))

        assert response.status_code == 200
        assert response.json()["data"]["email"] == "mike@example.com"

    def test_unauthenticated(self, client):
        response = client.get("/users/me")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_garbage_token(self, client):
        response = client.get("/users/me", headers=_auth("not.a.token"))

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_token"

    def test_update_valid_fields(self, client, user_one):
        response = client.patch(
            "/users/me", headers=_auth(user_one["token"]), json={"name": "Jack Storm"}
        )

        assert response.status_code == 200
        assert get_runtime().store.get_user(user_one["user"]["id"]).name == "Jack Storm"

    @pytest.mark.parametrize(
        "payload",
        [
            {"location": "New York"},
            {"name": None},
            {"email": "brokenmail@.com"},
            {"password": "pass1"},
        ],
    )
    def test_update_rejects_invalid(self, client, user_one, payload):
        response = client.patch("/users/me", headers=_auth(user_one["token"]), json=payload)

        assert response.status_code == 400
        assert get_runtime().store.get_user(user_one["user"]["id"]).name == "Mike"

    def test_update_unauthenticated(self, client):
        response = client.patch("/users/me", json={"name": "Robert Knight"})

        assert response.status_code == 401

    def test_password_change_keeps_current_session(self, client, user_one):
        other = client.post(
            "/users/login", json={"email": "mike@example.com", "password": "56what!!"}
        ).json()["data"]["token"]

        response = client.patch(
            "/users/me", headers=_auth(user_one["token"]), json={"password": "fresh-start9"}
        )

        assert response.status_code == 200
        assert client.get("/users/me", headers=_auth(user_one["token"])).status_code == 200
        assert client.get("/users/me", headers=_auth(other)).status_code == 401
        relogin = client.post(
            "/users/login", json={"email": "mike@example.com", "password": "fresh-start9"}
        )
        assert relogin.status_code == 200


class TestDeleteAccount:
    def test_delete_account(self, client, user_one):
        headers = _auth(user_one["token"])
        client.post("/tasks", headers=headers, json={"description": "First task"})

        response = client.delete("/users/me", headers=headers)

        assert response.status_code == 200
        runtime = get_runtime()
        assert runtime.store.get_user(user_one["user"]["id"]) is None
        assert runtime.tasks.list(user_one["user"]["id"]) == []
        assert client.get("/users/me", headers=headers).status_code == 401

    def test_delete_unauthenticated(self, client):
        assert client.delete("/users/me").status_code == 401


class TestAvatar:
    def test_upload_avatar(self, client, user_one):
        response = client.post(
            "/users/me/avatar",
            headers=_auth(user_one["token"]),
            files={"avatar": ("profile-pic.jpg", JPEG, "image/jpeg")},
        )

        assert response.status_code == 200
        assert response.json()["data"] == {"media_type": "image/jpeg", "size": len(JPEG)}
        stored = get_runtime().store.get_avatar(user_one["user"]["id"])
        assert isinstance(stored, bytes)
        assert stored == JPEG

    def test_serve_avatar(self, client, user_one):
        client.post(
            "/users/me/avatar",
            headers=_auth(user_one["token"]),
            files={"avatar": ("profile-pic.jpg", JPEG, "image/jpeg")},
        )

        response = client.get(f"/users/{user_one['user']['id']}/avatar")

        assert response.status_code == 200
        assert response.headers["content-type"] == "image/jpeg"
        assert response.content == JPEG

    def test_reject_non_image(self, client, user_one):
        response = client.post(
            "/users/me/avatar",
            headers=_auth(user_one["token"]),
            files={"avatar": ("notes.txt", b"hello", "text/plain")},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_attachment"

    def test_reject_oversize(self, client, user_one):
        limit = get_runtime().settings.max_avatar_bytes
        response = client.post(
            "/users/me/avatar",
            headers=_auth(user_one["token"]),
            files={"avatar": ("big.jpg", JPEG + b"\x00" * limit, "image/jpeg")},
        )

        assert response.status_code == 400
        assert response.json()["error"]["details"]["reason"] == "too_large"

    def test_delete_avatar(self, client, user_one):
        headers = _auth(user_one["token"])
        client.post(
            "/users/me/avatar",
            headers=headers,
            files={"avatar": ("profile-pic.jpg", JPEG, "image/jpeg")},
        )

        assert client.delete("/users/me/avatar", headers=headers).status_code == 200
        assert client.get(f"/users/{user_one['user']['id']}/avatar").status_code == 404

    def test_missing_avatar(self, client, user_one):
        response = client.get(f"/users/{user_one['user']['id']}/avatar")

        assert response.status_code == 404
