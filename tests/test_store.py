"""
Tests for the SQLite store: users, projects, membership, tasks, reporting.
"""
import pytest

from pkg.taskboard.errors import NotFound, Unauthorized, ValidationFailed
from pkg.taskboard.schema import TaskStatus
from pkg.taskboard.store import TaskStore


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Users
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_create_user_normalizes_email(store):
    user = store.create_user("Dana@Example.com")
    assert user.email == "dana@example.com"
    assert store.get_user_by_email("DANA@example.com") == user
    assert store.get_user(user.id) == user


def test_duplicate_email_rejected(store, owner):
    with pytest.raises(ValidationFailed):
        store.create_user("OWNER@example.com")


def test_search_users(store, owner, member):
    found = store.search_users("MEMBER")
    assert [u.email for u in found] == ["member@example.com"]
    assert len(store.search_users("example.com")) == 2
    with pytest.raises(ValidationFailed):
        store.search_users("  ")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Projects & membership
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_owner_is_always_member(store, owner):
    project = store.create_project(owner.id, "  Solo ")
    assert project.name == "Solo"
    assert store.list_members(owner.id, project.id) == [owner]


def test_invite_and_list_projects(store, owner, member, project):
    assert [m.email for m in store.list_members(owner.id, project.id)] == [
        "owner@example.com", "member@example.com",
    ]
    assert [p.id for p in store.list_projects(member.id)] == [project.id]


def test_invite_is_idempotent(store, owner, member, project):
    members = store.invite_member(owner.id, project.id, member.email)
    assert len(members) == 2


def test_invite_unknown_email(store, owner, project):
    with pytest.raises(NotFound):
        store.invite_member(owner.id, project.id, "ghost@example.com")


def test_owner_only_operations(store, owner, member, outsider, project):
    with pytest.raises(Unauthorized):
        store.rename_project(member.id, project.id, "Hijacked")
    with pytest.raises(Unauthorized):
        store.delete_project(member.id, project.id)
    with pytest.raises(Unauthorized):
        store.invite_member(member.id, project.id, outsider.email)

    renamed = store.rename_project(owner.id, project.id, "Relaunch")
    assert renamed.name == "Relaunch"
    assert store.get_project(member.id, project.id).name == "Relaunch"


def test_non_member_is_unauthorized(store, outsider, project):
    with pytest.raises(Unauthorized):
        store.get_project(outsider.id, project.id)
    with pytest.raises(Unauthorized):
        store.list_tasks(outsider.id, project.id)


def test_missing_project_is_not_found(store, owner):
    with pytest.raises(NotFound):
        store.list_tasks(owner.id, "no-such-project")


def test_delete_project_cascades(store, owner, project):
    a = store.create_task(owner.id, project.id, "A")
    b = store.create_task(owner.id, project.id, "B")
    assert store.delete_project(owner.id, project.id) == [a.id, b.id]
    with pytest.raises(NotFound):
        store.get_task(owner.id, a.id)
    assert store.list_projects(owner.id) == []


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Tasks
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_create_task_defaults(store, member, project):
    task = store.create_task(member.id, project.id, "  Draft plan ")
    assert task.title == "Draft plan"
    assert task.status is TaskStatus.TODO
    assert task.project_id == project.id
    assert store.get_task(member.id, task.id) == task


def test_create_task_validation(store, owner, outsider, project):
    with pytest.raises(ValidationFailed):
        store.create_task(owner.id, project.id, "")
    with pytest.raises(ValidationFailed):
        store.create_task(owner.id, project.id, "ok", status="blocked")
    with pytest.raises(ValidationFailed):
        store.create_task(owner.id, project.id, "ok", assignee_id=outsider.id)
    assert store.list_tasks(owner.id, project.id) == []


def test_update_task_fields(store, owner, member, project):
    task = store.create_task(owner.id, project.id, "Write tests")
    updated = store.update_task(member.id, task.id, status="in_progress", assignee_id=member.id)
    assert updated.status is TaskStatus.IN_PROGRESS
    assert updated.assignee_id == member.id
    assert updated.created_at == task.created_at

    unassigned = store.update_task(owner.id, task.id, assignee_id=None)
    assert unassigned.assignee_id is None


def test_task_project_is_immutable(store, owner, project):
    task = store.create_task(owner.id, project.id, "Pinned")
    other = store.create_project(owner.id, "Other")
    with pytest.raises(ValidationFailed):
        store.update_task(owner.id, task.id, project_id=other.id)
    with pytest.raises(ValidationFailed):
        store.update_task(owner.id, task.id, priority="high")


def test_update_and_delete_missing_task(store, owner, project):
    with pytest.raises(NotFound):
        store.update_task(owner.id, "missing", status="done")
    with pytest.raises(NotFound):
        store.delete_task(owner.id, "missing")


def test_delete_task_returns_last_state(store, owner, outsider, project):
    task = store.create_task(owner.id, project.id, "Temp")
    with pytest.raises(Unauthorized):
        store.delete_task(outsider.id, task.id)
    deleted = store.delete_task(owner.id, task.id)
    assert deleted.id == task.id
    assert store.list_tasks(owner.id, project.id) == []


def test_list_tasks_in_creation_order(store, owner, project):
    ids = [store.create_task(owner.id, project.id, f"T{i}").id for i in range(3)]
    assert [t.id for t in store.list_tasks(owner.id, project.id)] == ids


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Reporting
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_analytics_counts_every_status(store, owner, project):
    store.create_task(owner.id, project.id, "A")
    store.create_task(owner.id, project.id, "B", status="done")
    assert store.task_analytics(owner.id, project.id) == {
        "todo": 1, "in_progress": 0, "done": 1,
    }


def test_export_project(store, owner, member, project):
    store.create_task(owner.id, project.id, "Exported", assignee_id=member.id)
    data = store.export_project(member.id, project.id)
    assert data["name"] == "Launch"
    assert data["owner"] == owner.to_dict()
    assert len(data["members"]) == 2
    assert [t["title"] for t in data["tasks"]] == ["Exported"]


def test_store_reopens_existing_db(tmp_path, owner, project, store):
    store.create_task(owner.id, project.id, "Persisted")
    reopened = TaskStore(store.db_path)
    assert [t.title for t in reopened.list_tasks(owner.id, project.id)] == ["Persisted"]
