"""
Tests for board_server.py through Flask's test client.
"""
import json

import pytest

from board_server import create_app
from pkg.taskboard.config import BoardConfig
from pkg.taskboard.schema import EventKind, LiveUpdateEvent
from pkg.taskboard.transport import decode_frame, iter_sse_frames

SECRET = "test-secret"


@pytest.fixture
def cfg(tmp_path):
    return BoardConfig(
        db_path=str(tmp_path / "board.db"),
        api_secret=SECRET,
        rate_limit_max=1000,
        heartbeat_secs=0.05,
    )


@pytest.fixture
def app(cfg, store, broadcaster):
    app = create_app(cfg, store=store, broadcaster=broadcaster)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


def auth(user=None):
    headers = {"X-API-Key": SECRET}
    if user is not None:
        headers["X-User-Id"] = user.id
    return headers


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Auth
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_health_needs_no_auth(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.get_json()["status"] == "ok"


def test_missing_or_wrong_api_key(client, owner):
    assert client.get("/api/projects", headers={"X-User-Id": owner.id}).status_code == 401
    r = client.get("/api/projects", headers={"X-API-Key": "wrong", "X-User-Id": owner.id})
    assert r.status_code == 403


def test_missing_or_unknown_user(client):
    assert client.get("/api/projects", headers=auth()).status_code == 401
    r = client.get("/api/projects", headers={"X-API-Key": SECRET, "X-User-Id": "ghost"})
    assert r.status_code == 403


def test_no_secret_configured(store, broadcaster, tmp_path, owner):
    app = create_app(BoardConfig(db_path=str(tmp_path / "x.db")), store=store, broadcaster=broadcaster)
    r = app.test_client().get("/api/projects", headers=auth(owner))
    assert r.status_code == 503


def test_rate_limited(store, broadcaster, tmp_path, owner):
    cfg = BoardConfig(db_path=str(tmp_path / "x.db"), api_secret=SECRET, rate_limit_max=2)
    client = create_app(cfg, store=store, broadcaster=broadcaster).test_client()
    assert client.get("/api/projects", headers=auth(owner)).status_code == 200
    assert client.get("/api/projects", headers=auth(owner)).status_code == 200
    r = client.get("/api/projects", headers=auth(owner))
    assert r.status_code == 429
    assert int(r.headers["Retry-After"]) >= 1
    assert r.get_json()["kind"] == "RateLimited"


def test_unknown_user_ids_share_the_address_window(app, client):
    limiter = app.extensions["taskboard"]["limiter"]
    for i in range(5):
        r = client.get("/api/projects", headers={"X-API-Key": SECRET, "X-User-Id": f"ghost-{i}"})
        assert r.status_code == 403
    assert len(limiter) == 1


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Users & projects
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_register_and_search(client, owner):
    r = client.post("/api/users", json={"email": "New@Example.com"}, headers=auth())
    assert r.status_code == 201
    assert r.get_json()["email"] == "new@example.com"

    dup = client.post("/api/users", json={"email": "new@example.com"}, headers=auth())
    assert dup.status_code == 400

    r = client.get("/api/users/search?query=new", headers=auth(owner))
    assert [u["email"] for u in r.get_json()["users"]] == ["new@example.com"]


def test_project_lifecycle(client, owner, member):
    r = client.post("/api/projects", json={"name": "Roadmap"}, headers=auth(owner))
    assert r.status_code == 201
    project_id = r.get_json()["id"]

    r = client.post(f"/api/projects/{project_id}/invite",
                    json={"email": member.email}, headers=auth(owner))
    assert [m["email"] for m in r.get_json()["members"]] == [owner.email, member.email]

    r = client.patch(f"/api/projects/{project_id}", json={"name": "Nope"}, headers=auth(member))
    assert r.status_code == 403

    r = client.patch(f"/api/projects/{project_id}", json={"name": "Roadmap 2"}, headers=auth(owner))
    assert r.get_json()["name"] == "Roadmap 2"

    r = client.get("/api/projects", headers=auth(member))
    assert [p["id"] for p in r.get_json()["projects"]] == [project_id]

    r = client.delete(f"/api/projects/{project_id}", headers=auth(owner))
    assert r.status_code == 200
    assert client.get(f"/api/projects/{project_id}", headers=auth(owner)).status_code == 404


def test_project_delete_announces_task_deletions(client, store, broadcaster, owner, project):
    task = store.create_task(owner.id, project.id, "Doomed")
    seen = []
    broadcaster.subscribe(f"project:{project.id}", seen.append)

    r = client.delete(f"/api/projects/{project.id}", headers=auth(owner))
    assert r.get_json()["deleted_tasks"] == 1
    assert seen == [LiveUpdateEvent.deleted(project.id, task.id)]
    assert broadcaster.subscriber_count(f"project:{project.id}") == 0


def test_outsider_cannot_read_project(client, outsider, project):
    r = client.get(f"/api/projects/{project.id}/tasks", headers=auth(outsider))
    assert r.status_code == 403
    assert r.get_json()["kind"] == "Unauthorized"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Tasks
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_task_crud_publishes_after_commit(client, broadcaster, owner, member, project):
    seen = []
    broadcaster.subscribe(f"project:{project.id}", seen.append)

    r = client.post("/api/tasks", json={
        "project_id": project.id, "title": "Plan", "assignee_id": member.id,
    }, headers=auth(member))
    assert r.status_code == 201
    task = r.get_json()
    assert task["status"] == "todo"

    r = client.patch(f"/api/tasks/{task['id']}", json={"status": "in_progress"}, headers=auth(owner))
    assert r.get_json()["status"] == "in_progress"

    r = client.delete(f"/api/tasks/{task['id']}", headers=auth(owner))
    assert r.status_code == 200

    assert [e.kind for e in seen] == [EventKind.CREATED, EventKind.UPDATED, EventKind.DELETED]
    assert seen[1].payload.status.value == "in_progress"
    assert seen[2].payload == task["id"]


def test_invalid_task_requests_publish_nothing(client, broadcaster, owner, project):
    seen = []
    broadcaster.subscribe(f"project:{project.id}", seen.append)

    assert client.post("/api/tasks", json={"title": "No project"}, headers=auth(owner)).status_code == 400
    r = client.post("/api/tasks", json={"project_id": project.id, "title": " "}, headers=auth(owner))
    assert r.status_code == 400
    assert "Title" in r.get_json()["error"]
    assert client.patch("/api/tasks/missing", json={"status": "done"}, headers=auth(owner)).status_code == 404
    assert client.post("/api/tasks", data="[1, 2]", headers=auth(owner)).status_code == 400
    assert seen == []


@pytest.mark.parametrize("body", [
    {"task_id": "other", "status": "done"},
    {"user_id": "someone"},
    {"priority": "high"},
    {"project_id": "elsewhere"},
])
def test_update_rejects_reserved_and_unknown_fields(client, store, broadcaster, owner, project, body):
    task = store.create_task(owner.id, project.id, "Keep")
    seen = []
    broadcaster.subscribe(f"project:{project.id}", seen.append)

    r = client.patch(f"/api/tasks/{task.id}", json=body, headers=auth(owner))
    assert r.status_code == 400
    assert r.get_json()["kind"] == "ValidationFailed"
    assert store.get_task(owner.id, task.id) == task
    assert seen == []


def test_list_members_analytics_export(client, store, owner, member, project):
    store.create_task(owner.id, project.id, "A")
    store.create_task(owner.id, project.id, "B", status="done")

    r = client.get(f"/api/projects/{project.id}/tasks", headers=auth(member))
    assert [t["title"] for t in r.get_json()] == ["A", "B"]

    r = client.get(f"/api/projects/{project.id}/members", headers=auth(member))
    assert len(r.get_json()["members"]) == 2

    r = client.get(f"/api/projects/{project.id}/analytics", headers=auth(member))
    assert r.get_json()["counts"] == {"todo": 1, "in_progress": 0, "done": 1}
    assert r.get_json()["total"] == 2

    r = client.get(f"/api/projects/{project.id}/export", headers=auth(owner))
    assert len(r.get_json()["tasks"]) == 2


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Live channel
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_event_stream(client, store, broadcaster, owner, project):
    r = client.get(f"/api/projects/{project.id}/events", headers=auth(owner), buffered=False)
    assert r.status_code == 200
    assert r.mimetype == "text/event-stream"
    assert broadcaster.subscriber_count(f"project:{project.id}") == 1

    chunks = iter(r.response)
    assert next(chunks).startswith(b": connected")

    task = store.create_task(owner.id, project.id, "Live")
    broadcaster.publish(f"project:{project.id}", EventKind.CREATED, task)

    text = ""
    while "taskCreated" not in text:
        text += next(chunks).decode()
    frames = [f for f in iter_sse_frames(text.split("\n")) if f[0] == "taskCreated"]
    event = decode_frame(*frames[0])
    assert event == LiveUpdateEvent.created(task)
    assert json.loads(frames[0][1])["task"]["title"] == "Live"

    r.close()
    assert broadcaster.subscriber_count(f"project:{project.id}") == 0


def test_event_stream_requires_membership(client, outsider, project):
    r = client.get(f"/api/projects/{project.id}/events", headers=auth(outsider))
    assert r.status_code == 403
