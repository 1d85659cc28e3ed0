"""Shared test fixtures for the task board tests."""

import sys
from pathlib import Path

import pytest

# Ensure the repo root (pkg/ and board_server.py) is importable
sys.path.insert(0, str(Path(__file__).parent.parent))

from pkg.taskboard.broadcaster import LiveUpdateBroadcaster
from pkg.taskboard.schema import Task, TaskStatus
from pkg.taskboard.store import TaskStore

PROJECT_ID = "proj-1"


def make_task(task_id: str, status: TaskStatus = TaskStatus.TODO,
              project_id: str = PROJECT_ID, title: str = "") -> Task:
    return Task(
        id=task_id,
        title=title or f"Task {task_id}",
        project_id=project_id,
        status=status,
        created_at="2024-01-01T00:00:00+00:00",
        updated_at="2024-01-01T00:00:00+00:00",
    )


@pytest.fixture
def store(tmp_path):
    return TaskStore(str(tmp_path / "board.db"))


@pytest.fixture
def broadcaster():
    return LiveUpdateBroadcaster()


@pytest.fixture
def owner(store):
    return store.create_user("owner@example.com")


@pytest.fixture
def member(store):
    return store.create_user("member@example.com")


@pytest.fixture
def outsider(store):
    return store.create_user("outsider@example.com")


@pytest.fixture
def project(store, owner, member):
    """A project owned by `owner` with `member` invited."""
    project = store.create_project(owner.id, "Launch")
    store.invite_member(owner.id, project.id, member.email)
    return project
