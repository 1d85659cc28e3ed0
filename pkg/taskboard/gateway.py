"""
Persistence gateway: the authoritative read/write boundary the board client
depends on.

Two implementations:
    LocalGateway - in-process, over a TaskStore, publishing live updates
                   after each successful mutation (also used by the server)
    HttpGateway  - talks to board_server.py over HTTP with requests
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import requests

from .broadcaster import LiveUpdateBroadcaster, project_channel
from .errors import BoardError, NetworkFailure, RateLimited, ValidationFailed, error_for_status
from .schema import EventKind, Member, Task, TaskStatus
from .session import Session
from .store import TaskStore, check_update_fields

logger = logging.getLogger(__name__)


class Gateway(ABC):
    """Authoritative task operations, as seen by one user."""

    @abstractmethod
    def create_task(
        self,
        project_id: str,
        title: str,
        description: Optional[str] = None,
        status: Optional[str] = None,
        assignee_id: Optional[str] = None,
    ) -> Task:
        ...

    @abstractmethod
    def update_task(self, task_id: str, **fields: Any) -> Task:
        ...

    @abstractmethod
    def delete_task(self, task_id: str) -> None:
        ...

    @abstractmethod
    def list_tasks(self, project_id: str) -> List[Task]:
        ...

    @abstractmethod
    def list_members(self, project_id: str) -> List[Member]:
        ...


def _status_value(status: Any) -> Any:
    return status.value if isinstance(status, TaskStatus) else status


class LocalGateway(Gateway):
    """Store-backed gateway. Publishes on the project channel after every commit."""

    def __init__(self, store: TaskStore, broadcaster: LiveUpdateBroadcaster, user_id: str):
        self.store = store
        self.broadcaster = broadcaster
        self.user_id = user_id

    def create_task(self, project_id, title, description=None, status=None, assignee_id=None):
        task = self.store.create_task(
            self.user_id, project_id, title,
            description=description,
            status=_status_value(status),
            assignee_id=assignee_id,
        )
        self.broadcaster.publish(project_channel(task.project_id), EventKind.CREATED, task)
        return task

    def update_task(self, task_id, **fields):
        check_update_fields(fields)
        if "status" in fields:
            fields["status"] = _status_value(fields["status"])
        task = self.store.update_task(self.user_id, task_id, **fields)
        self.broadcaster.publish(project_channel(task.project_id), EventKind.UPDATED, task)
        return task

    def delete_task(self, task_id):
        task = self.store.delete_task(self.user_id, task_id)
        self.broadcaster.publish(project_channel(task.project_id), EventKind.DELETED, task.id)

    def list_tasks(self, project_id):
        return self.store.list_tasks(self.user_id, project_id)

    def list_members(self, project_id):
        return self.store.list_members(self.user_id, project_id)


def parse_tasks(rows: List[Dict[str, Any]]) -> List[Task]:
    """Deserialize tasks from the wire, dropping any with an unknown status."""
    tasks = []
    for row in rows:
        try:
            tasks.append(Task.from_dict(row))
        except (ValidationFailed, KeyError) as e:
            logger.warning(f"Dropping malformed task {row.get('id')!r}: {e}")
    return tasks


class HttpGateway(Gateway):
    """
    Gateway over the board server's JSON API.

    Maps HTTP failures onto the error taxonomy: 401/403 → Unauthorized,
    404 → NotFound, 400 → ValidationFailed, 429 → RateLimited, and
    connection errors, timeouts or 5xx → NetworkFailure.
    """

    def __init__(self, session: Session):
        self.session = session

    def _request(self, method: str, path: str, body: Optional[dict] = None) -> Any:
        url = self.session.url(path)
        logger.debug(f"API Request: {method} {path}")
        try:
            r = self.session.http.request(
                method,
                url,
                json=body,
                headers=self.session.headers(),
                timeout=self.session.request_timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise NetworkFailure(f"{method} {path}: {e}") from e

        if r.ok:
            if r.status_code == 204 or not r.content:
                return None
            return r.json()

        try:
            body = r.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            message = body.get("error", "")
        else:
            message = r.reason or "Request failed"
        error: BoardError = error_for_status(r.status_code, message)
        if isinstance(error, RateLimited):
            retry_after = r.headers.get("Retry-After")
            if retry_after:
                try:
                    error.retry_after = float(retry_after)
                except ValueError:
                    pass
        logger.warning(f"API Error: {method} {path} - {r.status_code} {error.message}")
        raise error

    def create_task(self, project_id, title, description=None, status=None, assignee_id=None):
        body: Dict[str, Any] = {"project_id": project_id, "title": title}
        if description is not None:
            body["description"] = description
        if status is not None:
            body["status"] = _status_value(status)
        if assignee_id is not None:
            body["assignee_id"] = assignee_id
        return Task.from_dict(self._request("POST", "/api/tasks", body))

    def update_task(self, task_id, **fields):
        if "status" in fields:
            fields["status"] = _status_value(fields["status"])
        return Task.from_dict(self._request("PATCH", f"/api/tasks/{task_id}", fields))

    def delete_task(self, task_id):
        self._request("DELETE", f"/api/tasks/{task_id}")

    def list_tasks(self, project_id):
        return parse_tasks(self._request("GET", f"/api/projects/{project_id}/tasks"))

    def list_members(self, project_id):
        data = self._request("GET", f"/api/projects/{project_id}/members")
        return [Member.from_dict(m) for m in data.get("members", [])]
