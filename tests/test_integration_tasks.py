"""Integration tests for the task endpoints."""

import pytest
from fastapi.testclient import TestClient

from taskkeeper import app as app_module
from taskkeeper.service.runtime import get_runtime


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


def _signup(client, name, email, password):
    response = client.post("/users", json={"name": name, "email": email, "password": password})
    assert response.status_code == 201
    data = response.json()["data"]
    return {"id": data["user"]["id"], "headers": _auth(data["token"])}


def _create(client, user, description, completed=False):
    response = client.post(
        "/tasks", headers=user["headers"], json={"description": description, "completed": completed}
    )
    assert response.status_code == 201
    return response.json()["data"]


@pytest.fixture
def seeded(client):
    user_one = _signup(client, "Mike", "mike@example.com", "56what!!")
    user_two = _signup(client, "Jess", "jess@example.com", "myhouse099@@")
    task_one = _create(client, user_one, "First task", False)
    task_two = _create(client, user_one, "Second task", True)
    task_three = _create(client, user_two, "Third task", True)
    return {
        "user_one": user_one,
        "user_two": user_two,
        "task_one": task_one,
        "task_two": task_two,
        "task_three": task_three,
    }


def _ids(response):
    return [task["id"] for task in response.json()["data"]]


class TestCreateTask:
    def test_create_task_for_user(self, client, seeded):
        response = client.post(
            "/tasks", headers=seeded["user_one"]["headers"], json={"description": "From my test"}
        )

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["completed"] is False
        assert data["owner"] == seeded["user_one"]["id"]
        stored = get_runtime().store.get_task(data["id"], seeded["user_one"]["id"])
        assert stored is not None

    @pytest.mark.parametrize(
        "payload",
        [
            {"description": None},
            {"description": "   "},
            {"completed": "Invalid completed value"},
            {"description": "ok", "completed": "true"},
        ],
    )
    def test_create_rejects_invalid(self, client, seeded, payload):
        response = client.post("/tasks", headers=seeded["user_one"]["headers"], json=payload)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_create_unauthenticated(self, client):
        assert client.post("/tasks", json={"description": "x"}).status_code == 401


class TestReadTasks:
    def test_get_all_tasks_for_user(self, client, seeded):
        response = client.get("/tasks", headers=seeded["user_one"]["headers"])

        assert response.status_code == 200
        assert _ids(response) == [seeded["task_one"]["id"], seeded["task_two"]["id"]]

    def test_fetch_task_by_id(self, client, seeded):
        task_two = seeded["task_two"]
        response = client.get(f"/tasks/{task_two['id']}", headers=seeded["user_one"]["headers"])

        assert response.status_code == 200
        assert response.json()["data"]["id"] == task_two["id"]
        assert response.json()["data"]["owner"] == seeded["user_one"]["id"]

    def test_fetch_unauthenticated(self, client, seeded):
        response = client.get(f"/tasks/{seeded['task_one']['id']}")

        assert response.status_code == 401

    def test_other_users_task_is_not_found(self, client, seeded):
        other = client.get(
            f"/tasks/{seeded['task_two']['id']}", headers=seeded["user_two"]["headers"]
        )
        missing = client.get("/tasks/does-not-exist", headers=seeded["user_two"]["headers"])

        assert other.status_code == 404
        assert missing.status_code == 404
        assert other.json()["error"]["message"] == missing.json()["error"]["message"]

    def test_only_completed(self, client, seeded):
        response = client.get(
            "/tasks", headers=seeded["user_one"]["headers"], params={"completed": "true"}
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert len(data) == 1
        assert data[0]["completed"] is True

    def test_only_incomplete(self, client, seeded):
        response = client.get(
            "/tasks", headers=seeded["user_two"]["headers"], params={"completed": "false"}
        )

        assert response.status_code == 200
        assert response.json()["data"] == []

    def test_bad_completed_filter(self, client, seeded):
        response = client.get(
            "/tasks", headers=seeded["user_one"]["headers"], params={"completed": "maybe"}
        )

        assert response.status_code == 400

    def test_sort_by_created_desc(self, client, seeded):
        response = client.get(
            "/tasks", headers=seeded["user_one"]["headers"], params={"sortBy": "createdAt:desc"}
        )

        assert response.status_code == 200
        assert _ids(response) == [seeded["task_two"]["id"], seeded["task_one"]["id"]]

    def test_malformed_sort_falls_back(self, client, seeded):
        response = client.get(
            "/tasks", headers=seeded["user_one"]["headers"], params={"sortBy": "owner"}
        )

        assert response.status_code == 200
        assert _ids(response) == [seeded["task_one"]["id"], seeded["task_two"]["id"]]

    def test_page_of_tasks(self, client, seeded):
        response = client.get(
            "/tasks", headers=seeded["user_one"]["headers"], params={"limit": 1, "skip": 1}
        )

        assert response.status_code == 200
        assert _ids(response) == [seeded["task_two"]["id"]]

    @pytest.mark.parametrize(
        "params",
        [{"limit": "-1"}, {"skip": "abc"}, {"limit": "²"}, {"skip": "99999999999999999999"}],
    )
    def test_bad_paging(self, client, seeded, params):
        response = client.get("/tasks", headers=seeded["user_one"]["headers"], params=params)

        assert response.status_code == 400


class TestUpdateTask:
    def test_update_own_task(self, client, seeded):
        task_one = seeded["task_one"]
        response = client.patch(
            f"/tasks/{task_one['id']}",
            headers=seeded["user_one"]["headers"],
            json={"completed": True},
        )

        assert response.status_code == 200
        assert response.json()["data"]["completed"] is True
        assert response.json()["data"]["description"] == "First task"

    def test_not_update_other_users_task(self, client, seeded):
        response = client.patch(
            f"/tasks/{seeded['task_three']['id']}",
            headers=seeded["user_one"]["headers"],
            json={"description": "Other users description"},
        )

        assert response.status_code == 404
        task = get_runtime().store.get_task(seeded["task_three"]["id"], seeded["user_two"]["id"])
        assert task.description == "Third task"

    @pytest.mark.parametrize(
        "payload",
        [
            {"description": None},
            {"completed": "Invalid completed value"},
            {"owner": "someone-else"},
        ],
    )
    def test_not_update_with_invalid(self, client, seeded, payload):
        response = client.patch(
            f"/tasks/{seeded['task_one']['id']}",
            headers=seeded["user_one"]["headers"],
            json=payload,
        )

        assert response.status_code == 400


class TestDeleteTask:
    def test_delete_user_task(self, client, seeded):
        task_two = seeded["task_two"]
        response = client.delete(f"/tasks/{task_two['id']}", headers=seeded["user_one"]["headers"])

        assert response.status_code == 200
        assert response.json()["data"]["id"] == task_two["id"]
        assert get_runtime().store.get_task(task_two["id"], seeded["user_one"]["id"]) is None

    def test_delete_unauthenticated(self, client, seeded):
        response = client.delete(f"/tasks/{seeded['task_two']['id']}")

        assert response.status_code == 401
        assert get_runtime().store.get_task(
            seeded["task_two"]["id"], seeded["user_one"]["id"]
        ) is not None

    def test_not_delete_other_user_task(self, client, seeded):
        response = client.delete(
            f"/tasks/{seeded['task_one']['id']}", headers=seeded["user_two"]["headers"]
        )

        assert response.status_code == 404
        assert get_runtime().store.get_task(
            seeded["task_one"]["id"], seeded["user_one"]["id"]
        ) is not None
