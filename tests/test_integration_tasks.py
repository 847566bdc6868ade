"""Integration tests for the HTTP API.

Covers registration, sign-in, the task lifecycle and the DeleteTask claim
through the FastAPI app with the in-memory store.
"""

import pytest
from fastapi.testclient import TestClient

from taskmanager import app as app_module
from taskmanager.service.runtime import get_runtime


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _register(client, email="owner@example.com", password="secret1"):
    response = client.post(
        "/create-user",
        json={"email": email, "password": password, "confirmPassword": password},
    )
    assert response.status_code == 200, response.text
    return response.json()["data"]


def _login(client, email="owner@example.com", password="secret1"):
    return client.post("/auth", json={"email": email, "password": password})


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def owner_headers(client):
    return _bearer(_register(client)["access_token"])


@pytest.fixture
def deleter_headers(client):
    _register(client, "deleter@example.com")
    get_runtime().auth.grant_claim("deleter@example.com", "DeleteTask")
    response = _login(client, "deleter@example.com")
    return _bearer(response.json()["data"]["access_token"])


class TestAuthEndpoints:
    def test_register_returns_token(self, client):
        data = _register(client)
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 3600
        assert data["user"]["email"] == "owner@example.com"
        assert data["user"]["claims"] == []

    def test_register_accepts_snake_case_confirmation(self, client):
        response = client.post(
            "/create-user",
            json={"email": "snake@example.com", "password": "secret1", "confirm_password": "secret1"},
        )
        assert response.status_code == 200

    def test_short_password_rejected(self, client):
        response = client.post(
            "/create-user",
            json={"email": "a@b.co", "password": "abc", "confirmPassword": "abc"},
        )

        assert response.status_code == 400
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["message"] == "Invalid password."
        assert "access_token" not in response.text
        assert get_runtime().store.get_user_by_email("a@b.co") is None

    def test_overlong_email_gets_service_message(self, client):
        email = "a" * 300 + "@example.com"
        response = client.post(
            "/create-user",
            json={"email": email, "password": "secret1", "confirmPassword": "secret1"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"
        assert response.json()["error"]["message"] == "Invalid email."

        response = _login(client, email=email)
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Invalid email or password."

    def test_duplicate_registration_lists_errors(self, client):
        _register(client)
        response = client.post(
            "/create-user",
            json={"email": "owner@example.com", "password": "secret1", "confirmPassword": "secret1"},
        )

        assert response.status_code == 400
        details = response.json()["error"]["details"]
        assert details[0]["code"] == "DuplicateEmail"

    def test_login_wrong_password_message(self, client):
        _register(client)
        response = _login(client, password="nope-nope")

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Invalid email or password."
        assert response.json()["error"]["code"] == "invalid_credentials"

    def test_login_unknown_email(self, client):
        response = _login(client, email="ghost@example.com")
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Invalid email or password."

    def test_lockout_blocks_correct_password(self, client):
        _register(client)
        for _ in range(4):
            assert _login(client, password="nope-nope").status_code == 400
        fifth = _login(client, password="nope-nope")
        assert fifth.json()["error"]["message"] == "User blocked."

        response = _login(client)

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "User blocked."
        assert response.json()["error"]["code"] == "account_locked"


class TestAuthorization:
    def test_tasks_require_token(self, client):
        response = client.get("/tasks")

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"
        assert response.json()["error"]["code"] == "unauthorized"

    def test_bad_token_rejected(self, client):
        response = client.get("/tasks", headers=_bearer("abc.def.ghi"))
        assert response.status_code == 401

    def test_delete_without_claim_is_forbidden(self, client, owner_headers):
        task_id = client.post("/tasks", json={"title": "keep"}, headers=owner_headers).json()["data"]["id"]

        response = client.delete(f"/tasks/{task_id}", headers=owner_headers)

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"
        assert "DeleteTask" not in response.text
        assert client.get(f"/tasks/{task_id}", headers=owner_headers).status_code == 200

    def test_claim_takes_effect_after_new_token(self, client, owner_headers):
        task_id = client.post("/tasks", json={"title": "t"}, headers=owner_headers).json()["data"]["id"]
        get_runtime().auth.grant_claim("owner@example.com", "DeleteTask")

        # Old token still lacks the claim
        assert client.delete(f"/tasks/{task_id}", headers=owner_headers).status_code == 403

        fresh = _bearer(_login(client).json()["data"]["access_token"])
        assert client.delete(f"/tasks/{task_id}", headers=fresh).status_code == 204


class TestTaskLifecycle:
    def test_create_get_delete_get_put(self, client, deleter_headers):
        created = client.post("/tasks", json={"title": "Buy milk"}, headers=deleter_headers)

        assert created.status_code == 201
        task = created.json()["data"]
        assert created.headers["Location"] == f"/tasks/{task['id']}"
        assert task["status"] == "Created"
        assert set(task) == {"id", "title", "description", "status", "createdAt", "dueDate"}

        fetched = client.get(f"/tasks/{task['id']}", headers=deleter_headers)
        assert fetched.status_code == 200
        assert fetched.json()["data"] == task

        deleted = client.delete(f"/tasks/{task['id']}", headers=deleter_headers)
        assert deleted.status_code == 204

        assert client.get(f"/tasks/{task['id']}", headers=deleter_headers).status_code == 404

        updated = client.put(
            f"/tasks/{task['id']}",
            json={"title": "Buy oat milk", "status": "InProgress"},
            headers=deleter_headers,
        )
        assert updated.status_code == 400
        assert updated.json()["error"]["code"] == "conflict"
        assert updated.json()["error"]["message"] == "Task not available."

    def test_create_without_title(self, client, owner_headers):
        response = client.post("/tasks", json={"description": "no title"}, headers=owner_headers)

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Property Title cannot be null or empty."

    def test_update_replaces_fields(self, client, owner_headers):
        task = client.post("/tasks", json={"title": "draft"}, headers=owner_headers).json()["data"]

        response = client.put(
            f"/tasks/{task['id']}",
            json={
                "title": "final",
                "description": "details",
                "status": "Completed",
                "createdAt": "2024-03-01T08:00:00+00:00",
                "dueDate": "2024-03-10T08:00:00+00:00",
            },
            headers=owner_headers,
        )
        assert response.status_code == 204

        stored = client.get(f"/tasks/{task['id']}", headers=owner_headers).json()["data"]
        assert stored["title"] == "final"
        assert stored["status"] == "Completed"
        assert stored["createdAt"].startswith("2024-03-01T08:00:00")
        assert stored["dueDate"].startswith("2024-03-10T08:00:00")

    def test_update_unknown_status_rejected(self, client, owner_headers):
        task = client.post("/tasks", json={"title": "draft"}, headers=owner_headers).json()["data"]

        response = client.put(
            f"/tasks/{task['id']}",
            json={"title": "draft", "status": "Archived"},
            headers=owner_headers,
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_update_missing_task(self, client, owner_headers):
        response = client.put(
            "/tasks/999", json={"title": "x", "status": "Created"}, headers=owner_headers
        )
        assert response.status_code == 404

    def test_delete_missing_task(self, client, deleter_headers):
        assert client.delete("/tasks/999", headers=deleter_headers).status_code == 404

    def test_list_with_status_filter(self, client, owner_headers):
        first = client.post("/tasks", json={"title": "one"}, headers=owner_headers).json()["data"]
        second = client.post("/tasks", json={"title": "two"}, headers=owner_headers).json()["data"]
        client.put(
            f"/tasks/{second['id']}",
            json={"title": "two", "status": "InProgress"},
            headers=owner_headers,
        )

        everything = client.get("/tasks", headers=owner_headers).json()["data"]
        in_progress = client.get(
            "/tasks", params={"status": "InProgress"}, headers=owner_headers
        ).json()["data"]

        assert {t["id"] for t in everything} == {first["id"], second["id"]}
        assert [t["id"] for t in in_progress] == [second["id"]]

    def test_list_unknown_status_rejected(self, client, owner_headers):
        response = client.get("/tasks", params={"status": "Archived"}, headers=owner_headers)
        assert response.status_code == 400


def test_healthz(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["store"]["type"] == "memory"
