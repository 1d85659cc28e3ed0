"""
Task board schema.

Task lifecycle:
  todo ⇄ in_progress ⇄ done   (fully connected, no enforced workflow)

Tasks are owned by a project; the project reference never changes after
creation. Everything here serializes to snake_case JSON dicts.
"""
from enum import Enum
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Union
import re
import uuid

from .errors import ValidationFailed

TITLE_MAX = 100
DESCRIPTION_MAX = 500
LOCAL_ID_PREFIX = "local-"

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def utc_now() -> str:
    """ISO-8601 UTC timestamp."""
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


class TaskStatus(Enum):
    """Board columns, in display order."""
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    DONE = "done"

    @classmethod
    def parse(cls, value: Union[str, "TaskStatus"]) -> Optional["TaskStatus"]:
        """Return the matching status, or None for anything unrecognized."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value)
        except ValueError:
            return None


class EventKind(Enum):
    """Live update event kinds and their wire names."""
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"

    @property
    def wire_name(self) -> str:
        return "task" + self.value.capitalize()

    @classmethod
    def from_wire(cls, name: str) -> Optional["EventKind"]:
        for kind in cls:
            if name in (kind.wire_name, kind.value):
                return kind
        return None


# ── Validation ───────────────────────────────────────────────────────────────

def clean_title(title: Any) -> str:
    if not isinstance(title, str) or not title.strip():
        raise ValidationFailed("Title is required and must be <= 100 characters")
    title = title.strip()
    if len(title) > TITLE_MAX:
        raise ValidationFailed("Title is required and must be <= 100 characters")
    return title


def clean_description(description: Any) -> Optional[str]:
    if description is None:
        return None
    if not isinstance(description, str):
        raise ValidationFailed("Description must be a string")
    description = description.strip()
    if len(description) > DESCRIPTION_MAX:
        raise ValidationFailed("Description must be <= 500 characters")
    return description


def clean_status(status: Any) -> TaskStatus:
    parsed = TaskStatus.parse(status)
    if parsed is None:
        raise ValidationFailed(f"Invalid status: {status!r}")
    return parsed


def clean_email(email: Any) -> str:
    if not isinstance(email, str) or not _EMAIL_RE.match(email.strip()):
        raise ValidationFailed("Invalid email")
    return email.strip().lower()


# ── Data model ───────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Member:
    """A user associated with a project."""
    id: str
    email: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "email": self.email}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Member":
        return cls(id=str(data["id"]), email=data.get("email", ""))


@dataclass
class Project:
    id: str
    name: str
    owner_id: str
    created_at: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "owner_id": self.owner_id,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class Task:
    """
    A task card. Frozen: the board never edits a task in place, it swaps in
    a new value (see with_status()).
    """
    id: str
    title: str
    project_id: str
    status: TaskStatus = TaskStatus.TODO
    description: Optional[str] = None
    assignee_id: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    @property
    def is_local(self) -> bool:
        """True for optimistic placeholders not yet confirmed by the server."""
        return self.id.startswith(LOCAL_ID_PREFIX)

    def with_status(self, status: TaskStatus) -> "Task":
        if status == self.status:
            return self
        return replace(self, status=status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "assignee_id": self.assignee_id,
            "project_id": self.project_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        """
        Deserialize from dict.

        Raises ValidationFailed on an unrecognized status so callers can
        decide whether to drop the task or surface the error.
        """
        status = TaskStatus.parse(data.get("status", TaskStatus.TODO.value))
        if status is None:
            raise ValidationFailed(f"Unknown status: {data.get('status')!r}")
        return cls(
            id=str(data["id"]),
            title=data.get("title", ""),
            project_id=str(data.get("project_id", "")),
            status=status,
            description=data.get("description"),
            assignee_id=data.get("assignee_id"),
            created_at=data.get("created_at") or utc_now(),
            updated_at=data.get("updated_at") or utc_now(),
        )


@dataclass
class TaskDraft:
    """User input for a new task, before the server assigns an id."""
    title: str
    description: Optional[str] = None
    status: Union[TaskStatus, str] = TaskStatus.TODO
    assignee_id: Optional[str] = None

    def validated(self) -> "TaskDraft":
        return TaskDraft(
            title=clean_title(self.title),
            description=clean_description(self.description),
            status=clean_status(self.status),
            assignee_id=self.assignee_id or None,
        )


@dataclass(frozen=True)
class MoveIntent:
    """
    A requested relocation of one task.

    destination may be a raw string from the UI; it is validated by the
    move protocol before anything is applied. index and anchor_id are
    alternatives: an explicit position, or the task to drop onto.
    """
    task_id: str
    destination: Union[TaskStatus, str]
    source: Union[TaskStatus, str, None] = None
    index: Optional[int] = None
    anchor_id: Optional[str] = None


@dataclass(frozen=True)
class LiveUpdateEvent:
    """Fire-and-forget notification of an authoritative task mutation."""
    project_id: str
    kind: EventKind
    payload: Union[Task, str]

    @property
    def task_id(self) -> str:
        if isinstance(self.payload, Task):
            return self.payload.id
        return self.payload

    @classmethod
    def created(cls, task: Task) -> "LiveUpdateEvent":
        return cls(project_id=task.project_id, kind=EventKind.CREATED, payload=task)

    @classmethod
    def updated(cls, task: Task) -> "LiveUpdateEvent":
        return cls(project_id=task.project_id, kind=EventKind.UPDATED, payload=task)

    @classmethod
    def deleted(cls, project_id: str, task_id: str) -> "LiveUpdateEvent":
        return cls(project_id=project_id, kind=EventKind.DELETED, payload=task_id)

    def to_wire(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "project_id": self.project_id,
            "event": self.kind.wire_name,
        }
        if isinstance(self.payload, Task):
            data["task"] = self.payload.to_dict()
        else:
            data["task_id"] = self.payload
        return data

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "LiveUpdateEvent":
        kind = EventKind.from_wire(data.get("event", ""))
        if kind is None:
            raise ValidationFailed(f"Unknown event: {data.get('event')!r}")
        if kind == EventKind.DELETED:
            payload: Union[Task, str] = str(data["task_id"])
        else:
            payload = Task.from_dict(data["task"])
        return cls(project_id=str(data["project_id"]), kind=kind, payload=payload)

