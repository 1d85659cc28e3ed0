"""
Task board storage backend (SQLite).

The authoritative record of users, projects, memberships and tasks. Every
project-scoped call takes the acting user's id and checks owner-or-member
access before touching anything.
"""
import logging
import sqlite3
from contextlib import closing
from pathlib import Path
from typing import List, Optional, Dict, Any

from .errors import NotFound, Unauthorized, ValidationFailed
from .schema import (
    Member,
    Project,
    Task,
    TaskStatus,
    clean_description,
    clean_email,
    clean_status,
    clean_title,
    new_id,
    utc_now,
)

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("title", "description", "status", "assignee_id")


def check_update_fields(fields: Dict[str, Any]) -> None:
    """Reject keys a task update may not carry. The project reference is immutable."""
    if "project_id" in fields:
        raise ValidationFailed("A task cannot change project")
    unknown = set(fields) - set(UPDATABLE_FIELDS)
    if unknown:
        raise ValidationFailed(f"Unknown fields: {', '.join(sorted(unknown))}")


def _connect(db_path: str) -> sqlite3.Connection:
    """Open a connection with FK enforcement and WAL mode."""
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


class TaskStore:
    """SQLite-backed store for projects and tasks."""

    def __init__(self, db_path: Optional[str] = None):
        """Initialize store and create tables if needed."""
        if db_path is None:
            db_path = str(Path.home() / ".local" / "share" / "taskboard" / "board.db")
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _conn(self) -> sqlite3.Connection:
        return _connect(self.db_path)

    def _init_schema(self):
        """Create tables if they don't exist."""
        with closing(self._conn()) as conn, conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS projects (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    owner_id TEXT NOT NULL REFERENCES users(id),
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS project_members (
                    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
                    user_id TEXT NOT NULL REFERENCES users(id),
                    PRIMARY KEY (project_id, user_id)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
                    title TEXT NOT NULL,
                    description TEXT,
                    status TEXT NOT NULL DEFAULT 'todo',
                    assignee_id TEXT REFERENCES users(id),
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_project ON tasks(project_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_members_user ON project_members(user_id)")

    # ── Users ────────────────────────────────────────────────────────────────

    def create_user(self, email: str) -> Member:
        email = clean_email(email)
        user = Member(id=new_id(), email=email)
        try:
            with closing(self._conn()) as conn, conn:
                conn.execute(
                    "INSERT INTO users (id, email, created_at) VALUES (?, ?, ?)",
                    (user.id, user.email, utc_now()),
                )
        except sqlite3.IntegrityError:
            raise ValidationFailed("Email already registered")
        logger.info(f"User registered: {user.email}")
        return user

    def get_user(self, user_id: str) -> Optional[Member]:
        with closing(self._conn()) as conn:
            row = conn.execute(
                "SELECT id, email FROM users WHERE id = ?", (user_id,)
            ).fetchone()
        return Member(id=row["id"], email=row["email"]) if row else None

    def get_user_by_email(self, email: str) -> Optional[Member]:
        with closing(self._conn()) as conn:
            row = conn.execute(
                "SELECT id, email FROM users WHERE email = ?", (email.strip().lower(),)
            ).fetchone()
        return Member(id=row["id"], email=row["email"]) if row else None

    def search_users(self, query: str, limit: int = 20) -> List[Member]:
        """Case-insensitive email substring search."""
        if not query or not query.strip():
            raise ValidationFailed("Search query is required")
        pattern = f"%{query.strip().lower()}%"
        with closing(self._conn()) as conn:
            rows = conn.execute(
                "SELECT id, email FROM users WHERE lower(email) LIKE ? ORDER BY email LIMIT ?",
                (pattern, limit),
            ).fetchall()
        return [Member(id=r["id"], email=r["email"]) for r in rows]

    # ── Access checks ────────────────────────────────────────────────────────

    def _require_member(self, conn: sqlite3.Connection, user_id: str, project_id: str) -> Project:
        row = conn.execute(
            "SELECT * FROM projects WHERE id = ?", (project_id,)
        ).fetchone()
        if not row:
            raise NotFound("Project not found")
        if row["owner_id"] != user_id:
            member = conn.execute(
                "SELECT 1 FROM project_members WHERE project_id = ? AND user_id = ?",
                (project_id, user_id),
            ).fetchone()
            if not member:
                raise Unauthorized("Unauthorized")
        return Project(
            id=row["id"], name=row["name"],
            owner_id=row["owner_id"], created_at=row["created_at"],
        )

    def _require_owner(self, conn: sqlite3.Connection, user_id: str, project_id: str) -> Project:
        project = self._require_member(conn, user_id, project_id)
        if project.owner_id != user_id:
            raise Unauthorized("Only the project owner can do that")
        return project

    def _require_task(self, conn: sqlite3.Connection, user_id: str, task_id: str) -> Task:
        row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        if not row:
            raise NotFound("Task not found")
        self._require_member(conn, user_id, row["project_id"])
        return self._row_to_task(row)

    def _check_assignee(self, conn: sqlite3.Connection, project_id: str,
                        assignee_id: Optional[str]) -> None:
        if assignee_id is None:
            return
        row = conn.execute(
            "SELECT 1 FROM project_members WHERE project_id = ? AND user_id = ?",
            (project_id, assignee_id),
        ).fetchone()
        if not row:
            raise ValidationFailed("Assignee is not a member of this project")

    # ── Projects ─────────────────────────────────────────────────────────────

    def create_project(self, user_id: str, name: str) -> Project:
        if not isinstance(name, str) or not name.strip():
            raise ValidationFailed("Project name is required")
        if self.get_user(user_id) is None:
            raise Unauthorized("Unauthorized: User not authenticated")
        project = Project(id=new_id(), name=name.strip(), owner_id=user_id)
        with closing(self._conn()) as conn, conn:
            conn.execute(
                "INSERT INTO projects (id, name, owner_id, created_at) VALUES (?, ?, ?, ?)",
                (project.id, project.name, project.owner_id, project.created_at),
            )
            conn.execute(
                "INSERT INTO project_members (project_id, user_id) VALUES (?, ?)",
                (project.id, user_id),
            )
        return project

    def list_projects(self, user_id: str) -> List[Project]:
        with closing(self._conn()) as conn:
            rows = conn.execute("""
                SELECT DISTINCT p.* FROM projects p
                LEFT JOIN project_members m ON m.project_id = p.id
                WHERE p.owner_id = ? OR m.user_id = ?
                ORDER BY p.created_at
            """, (user_id, user_id)).fetchall()
        return [
            Project(id=r["id"], name=r["name"], owner_id=r["owner_id"], created_at=r["created_at"])
            for r in rows
        ]

    def get_project(self, user_id: str, project_id: str) -> Project:
        with closing(self._conn()) as conn:
            return self._require_member(conn, user_id, project_id)

    def rename_project(self, user_id: str, project_id: str, name: str) -> Project:
        if not isinstance(name, str) or not name.strip():
            raise ValidationFailed("Project name cannot be empty")
        with closing(self._conn()) as conn, conn:
            project = self._require_owner(conn, user_id, project_id)
            conn.execute("UPDATE projects SET name = ? WHERE id = ?", (name.strip(), project_id))
        project.name = name.strip()
        return project

    def delete_project(self, user_id: str, project_id: str) -> List[str]:
        """Delete a project and (by cascade) its tasks. Returns the removed task ids."""
        with closing(self._conn()) as conn, conn:
            self._require_owner(conn, user_id, project_id)
            task_ids = [
                r["id"] for r in conn.execute(
                    "SELECT id FROM tasks WHERE project_id = ? ORDER BY rowid", (project_id,)
                )
            ]
            conn.execute("DELETE FROM projects WHERE id = ?", (project_id,))
        logger.info(f"Project {project_id} deleted with {len(task_ids)} tasks")
        return task_ids

    def invite_member(self, user_id: str, project_id: str, email: str) -> List[Member]:
        email = clean_email(email)
        with closing(self._conn()) as conn, conn:
            self._require_owner(conn, user_id, project_id)
            row = conn.execute("SELECT id FROM users WHERE email = ?", (email,)).fetchone()
            if not row:
                raise NotFound("User not found")
            conn.execute(
                "INSERT OR IGNORE INTO project_members (project_id, user_id) VALUES (?, ?)",
                (project_id, row["id"]),
            )
        return self.list_members(user_id, project_id)

    def list_members(self, user_id: str, project_id: str) -> List[Member]:
        with closing(self._conn()) as conn:
            self._require_member(conn, user_id, project_id)
            rows = conn.execute("""
                SELECT u.id, u.email FROM project_members m
                JOIN users u ON u.id = m.user_id
                WHERE m.project_id = ?
                ORDER BY m.rowid
            """, (project_id,)).fetchall()
        return [Member(id=r["id"], email=r["email"]) for r in rows]

    # ── Tasks ────────────────────────────────────────────────────────────────

    def create_task(
        self,
        user_id: str,
        project_id: str,
        title: str,
        description: Optional[str] = None,
        status: Optional[str] = None,
        assignee_id: Optional[str] = None,
    ) -> Task:
        task = Task(
            id=new_id(),
            title=clean_title(title),
            project_id=project_id,
            status=clean_status(status) if status is not None else TaskStatus.TODO,
            description=clean_description(description),
            assignee_id=assignee_id or None,
        )
        with closing(self._conn()) as conn, conn:
            self._require_member(conn, user_id, project_id)
            self._check_assignee(conn, project_id, task.assignee_id)
            conn.execute("""
                INSERT INTO tasks
                (id, project_id, title, description, status, assignee_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                task.id, task.project_id, task.title, task.description,
                task.status.value, task.assignee_id, task.created_at, task.updated_at,
            ))
        return task

    def get_task(self, user_id: str, task_id: str) -> Task:
        with closing(self._conn()) as conn:
            return self._require_task(conn, user_id, task_id)

    def update_task(self, user_id: str, task_id: str, **fields: Any) -> Task:
        """
        Update any of title, description, status, assignee_id.

        Passing assignee_id=None unassigns. The project reference is
        immutable and rejected.
        """
        check_update_fields(fields)

        changes: Dict[str, Any] = {}
        if "title" in fields:
            changes["title"] = clean_title(fields["title"])
        if "description" in fields:
            changes["description"] = clean_description(fields["description"])
        if "status" in fields:
            changes["status"] = clean_status(fields["status"]).value
        if "assignee_id" in fields:
            changes["assignee_id"] = fields["assignee_id"] or None

        with closing(self._conn()) as conn, conn:
            task = self._require_task(conn, user_id, task_id)
            if "assignee_id" in changes:
                self._check_assignee(conn, task.project_id, changes["assignee_id"])
            changes["updated_at"] = utc_now()
            assignments = ", ".join(f"{col} = ?" for col in changes)
            conn.execute(
                f"UPDATE tasks SET {assignments} WHERE id = ?",
                (*changes.values(), task_id),
            )
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return self._row_to_task(row)

    def delete_task(self, user_id: str, task_id: str) -> Task:
        """Delete a task. Returns the task as it was, for the deletion event."""
        with closing(self._conn()) as conn, conn:
            task = self._require_task(conn, user_id, task_id)
            conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
        return task

    def list_tasks(self, user_id: str, project_id: str) -> List[Task]:
        with closing(self._conn()) as conn:
            self._require_member(conn, user_id, project_id)
            rows = conn.execute(
                "SELECT * FROM tasks WHERE project_id = ? ORDER BY rowid", (project_id,)
            ).fetchall()
        return [self._row_to_task(r) for r in rows]

    # ── Reporting ────────────────────────────────────────────────────────────

    def task_analytics(self, user_id: str, project_id: str) -> Dict[str, int]:
        """Task counts per status; every status is present, zero or not."""
        counts = {s.value: 0 for s in TaskStatus}
        with closing(self._conn()) as conn:
            self._require_member(conn, user_id, project_id)
            for row in conn.execute(
                "SELECT status, COUNT(*) FROM tasks WHERE project_id = ? GROUP BY status",
                (project_id,),
            ):
                counts[row[0]] = row[1]
        return counts

    def export_project(self, user_id: str, project_id: str) -> Dict[str, Any]:
        project = self.get_project(user_id, project_id)
        owner = self.get_user(project.owner_id)
        data = project.to_dict()
        data["owner"] = owner.to_dict() if owner else None
        data["members"] = [m.to_dict() for m in self.list_members(user_id, project_id)]
        data["tasks"] = [t.to_dict() for t in self.list_tasks(user_id, project_id)]
        return data

    def _row_to_task(self, row: sqlite3.Row) -> Task:
        """Convert a database row to a Task."""
        return Task.from_dict(dict(row))
