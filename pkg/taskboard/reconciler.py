"""
Board reconciliation engine.

Keeps one client's view of one project's board consistent while local
optimistic edits and remote live updates interleave.

Model:
    view     - what the UI renders right now (authoritative state plus every
               optimistic edit still in flight)
    pending  - in-flight optimistic mutations, oldest first. Each holds the
               board as it was just before it was applied (its snapshot) and
               knows how to replay itself onto another board.

On failure a mutation restores its snapshot and replays the mutations that
came after it. Remote events and confirmations are folded into every
retained snapshot as well as the view, so a rollback never resurrects state
the server has since replaced. With a single mutation in flight, rollback is
an exact restore of the pre-move board.
"""
import logging
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .protocol import MoveKind, MovePlan, plan_move
from .schema import (
    LOCAL_ID_PREFIX,
    EventKind,
    LiveUpdateEvent,
    MoveIntent,
    Task,
    TaskDraft,
    TaskStatus,
)

logger = logging.getLogger(__name__)

Listener = Callable[["BoardView"], None]


class BoardView:
    """Tasks grouped by status column, each column in display order."""

    def __init__(self, columns: Optional[Dict[TaskStatus, List[Task]]] = None):
        columns = columns or {}
        self._columns: Dict[TaskStatus, List[Task]] = {
            status: list(columns.get(status, [])) for status in TaskStatus
        }

    # ── Reads ────────────────────────────────────────────────────────────────

    def column(self, status: TaskStatus) -> List[Task]:
        return list(self._columns[status])

    def locate(self, task_id: str) -> Optional[Tuple[TaskStatus, int]]:
        for status, tasks in self._columns.items():
            for i, task in enumerate(tasks):
                if task.id == task_id:
                    return status, i
        return None

    def get(self, task_id: str) -> Optional[Task]:
        location = self.locate(task_id)
        if location is None:
            return None
        status, i = location
        return self._columns[status][i]

    def tasks(self) -> List[Task]:
        return [task for status in TaskStatus for task in self._columns[status]]

    def ids(self) -> Dict[str, List[str]]:
        """Task ids per column, keyed by status value."""
        return {status.value: [t.id for t in tasks] for status, tasks in self._columns.items()}

    def copy(self) -> "BoardView":
        return BoardView(self._columns)

    def __contains__(self, task_id: object) -> bool:
        return isinstance(task_id, str) and self.locate(task_id) is not None

    def __len__(self) -> int:
        return sum(len(tasks) for tasks in self._columns.values())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, BoardView):
            return NotImplemented
        return self._columns == other._columns

    def __repr__(self) -> str:
        return f"BoardView({self.ids()})"

    # ── Writes ───────────────────────────────────────────────────────────────

    def remove(self, task_id: str) -> Optional[Task]:
        location = self.locate(task_id)
        if location is None:
            return None
        status, i = location
        return self._columns[status].pop(i)

    def insert(self, task: Task, index: Optional[int] = None) -> None:
        """Insert into the task's status column. Any existing copy is removed first."""
        self.remove(task.id)
        column = self._columns[task.status]
        if index is None or index >= len(column):
            column.append(task)
        else:
            column.insert(max(0, index), task)

    def move(self, task_id: str, destination: TaskStatus, index: Optional[int] = None) -> bool:
        task = self.remove(task_id)
        if task is None:
            return False
        self.insert(task.with_status(destination), index)
        return True

    def merge(self, event: LiveUpdateEvent) -> bool:
        """
        Idempotently merge one live update. Returns True if the view changed.

        created - ignored if the id is already anywhere on the board
        updated - removed from wherever it sits and appended to its column;
                  a no-op when it is already last there and unchanged
        deleted - removed; absence is fine
        """
        if event.kind == EventKind.DELETED:
            return self.remove(event.task_id) is not None

        task = event.payload
        if event.kind == EventKind.CREATED:
            if task.id in self:
                return False
            self.insert(task)
            return True

        column = self._columns[task.status]
        if column and column[-1] == task:
            return False
        self.insert(task)
        return True

    def replace(self, task: Task) -> bool:
        """Swap in a newer copy, keeping its index when the column is unchanged."""
        location = self.locate(task.id)
        if location is None or location[0] != task.status:
            self.insert(task)
            return True
        status, i = location
        if self._columns[status][i] == task:
            return False
        self._columns[status][i] = task
        return True


class MutationKind(Enum):
    MOVE = "move"
    REORDER = "reorder"
    CREATE = "create"
    DELETE = "delete"


@dataclass(eq=False)
class PendingMutation:
    """
    One optimistic edit awaiting the server's verdict.

    key is the task id (a local- id for creates). undo is bound when the
    mutation is applied and rolls the board back uniformly.
    """
    key: str
    kind: MutationKind
    snapshot: BoardView
    plan: Optional[MovePlan] = None
    task: Optional[Task] = None
    undo: Callable[[], None] = field(default=lambda: None, repr=False)

    @property
    def requires_confirmation(self) -> bool:
        return self.kind != MutationKind.REORDER

    def replay(self, view: BoardView) -> None:
        """Re-apply this edit on top of another board."""
        if self.kind in (MutationKind.MOVE, MutationKind.REORDER) and self.plan:
            view.move(self.plan.task_id, self.plan.destination, self.plan.index)
        elif self.kind == MutationKind.CREATE and self.task:
            if self.task.id not in view:
                view.insert(self.task)
        elif self.kind == MutationKind.DELETE:
            view.remove(self.key)


class ReconciliationEngine:
    """Board view for one project as seen by one connected client."""

    def __init__(self, project_id: str):
        self.project_id = project_id
        self.view = BoardView()
        self._pending: List[PendingMutation] = []
        self._listeners: Dict[str, Listener] = {}

    # ── Observers ────────────────────────────────────────────────────────────

    def on_board_changed(self, callback: Listener) -> str:
        """Register a re-render callback. Returns a token for remove_listener()."""
        token = uuid.uuid4().hex
        self._listeners[token] = callback
        return token

    def remove_listener(self, token: str) -> bool:
        return self._listeners.pop(token, None) is not None

    def _notify(self) -> None:
        for callback in list(self._listeners.values()):
            try:
                callback(self.view)
            except Exception:
                logger.exception("Board listener failed")

    @property
    def pending(self) -> List[PendingMutation]:
        return list(self._pending)

    def has_pending(self, key: str) -> bool:
        """True while an edit of key still awaits the server's verdict."""
        return any(m.key == key and m.requires_confirmation for m in self._pending)

    # ── Helpers ──────────────────────────────────────────────────────────────

    def _accept(self, task: object, context: str) -> Optional[Task]:
        """Normalize a task from outside, or None if it must be dropped."""
        if not isinstance(task, Task):
            logger.warning(f"{context}: dropping non-task payload {task!r}")
            return None
        status = TaskStatus.parse(task.status)
        if status is None:
            logger.warning(f"{context}: dropping task {task.id} with unknown status {task.status!r}")
            return None
        if task.project_id != self.project_id:
            logger.debug(f"{context}: ignoring task {task.id} of project {task.project_id}")
            return None
        return task if status is task.status else replace(task, status=status)

    def _fold(self, event: LiveUpdateEvent) -> bool:
        """Merge into the view and into every retained snapshot."""
        for mutation in self._pending:
            mutation.snapshot.merge(event)
        return self.view.merge(event)

    def _register(self, mutation: PendingMutation) -> PendingMutation:
        mutation.undo = lambda: self._rollback(mutation)
        self._pending.append(mutation)
        return mutation

    def _take(self, key: str, kind: MutationKind) -> Optional[PendingMutation]:
        for mutation in self._pending:
            if mutation.key == key and mutation.kind == kind:
                return mutation
        return None

    def _release(self, mutation: PendingMutation) -> None:
        self._pending.remove(mutation)
        self._prune()

    def _prune(self) -> None:
        # Reorders are only kept for replay behind something still in flight
        if not any(m.requires_confirmation for m in self._pending):
            self._pending = []

    def _rollback(self, mutation: PendingMutation) -> None:
        """Restore the mutation's snapshot, then replay everything after it."""
        if mutation not in self._pending:
            return
        position = self._pending.index(mutation)
        base = mutation.snapshot.copy()
        for later in self._pending[position + 1:]:
            later.snapshot = base.copy()
            later.replay(base)
        self._release(mutation)
        self.view = base
        logger.info(f"Rolled back {mutation.kind.value} of {mutation.key}")

    # ── Initial load ─────────────────────────────────────────────────────────

    def load(self, tasks: Iterable[Task]) -> BoardView:
        """Rebuild the board from a full task listing. Drops all pending state."""
        view = BoardView()
        for task in tasks:
            accepted = self._accept(task, "load")
            if accepted is None:
                continue
            if accepted.id in view:
                logger.warning(f"load: duplicate task id {accepted.id}, keeping first")
                continue
            view.insert(accepted)
        self.view = view
        self._pending = []
        self._notify()
        return self.view

    # ── Moves ────────────────────────────────────────────────────────────────

    def apply_local_move(self, intent: MoveIntent) -> Optional[PendingMutation]:
        """
        Optimistically apply a move before the server confirms it.

        Raises ValidationFailed for an unknown destination, before anything
        changes. Otherwise never fails: returns None for a no-op, a
        reorder mutation (nothing to confirm), or a pending move.

        A reorder made while other edits are in flight is queued behind
        them so that rolling one of those back replays it.
        """
        plan = plan_move(self.view, intent)
        if plan.kind == MoveKind.NOOP:
            return None

        snapshot = self.view.copy()
        self.view.move(plan.task_id, plan.destination, plan.index)
        if plan.kind == MoveKind.REORDER:
            mutation = PendingMutation(plan.task_id, MutationKind.REORDER, snapshot, plan=plan)
            if self._pending:
                self._register(mutation)
        else:
            mutation = self._register(
                PendingMutation(plan.task_id, MutationKind.MOVE, snapshot, plan=plan)
            )
        self._notify()
        return mutation

    def confirm_move(self, task_id: str, success: bool,
                     authoritative: Optional[Task] = None,
                     mutation: Optional[PendingMutation] = None) -> BoardView:
        """
        Settle an in-flight move of task_id: the given mutation, or else the
        oldest one.

        Failure restores the pre-move board. Success swaps in the server's
        copy of the task, keeping its place when the column is unchanged.
        With nothing pending, a successful authoritative task is swapped in
        the same way.
        """
        if mutation is None:
            mutation = self._take(task_id, MutationKind.MOVE)
        elif mutation not in self._pending:
            mutation = None

        if not success:
            if mutation is not None:
                mutation.undo()
                self._notify()
            return self.view

        if mutation is not None:
            self._release(mutation)
        task = authoritative
        if task is None and mutation is not None:
            task = self.view.get(task_id)
        accepted = self._accept(task, "confirm_move") if task is not None else None
        if accepted is None:
            return self.view

        for later in self._pending:
            later.snapshot.replace(accepted)
        # A newer local move of the same task stays on screen until it settles
        if not self.has_pending(task_id) and self.view.replace(accepted):
            self._notify()
        return self.view

    # ── Creates ──────────────────────────────────────────────────────────────

    def apply_local_create(self, draft: TaskDraft) -> PendingMutation:
        """Show a placeholder task until the server assigns the real id."""
        draft = draft.validated()
        placeholder = Task(
            id=f"{LOCAL_ID_PREFIX}{uuid.uuid4().hex}",
            title=draft.title,
            project_id=self.project_id,
            status=draft.status,
            description=draft.description,
            assignee_id=draft.assignee_id,
        )
        snapshot = self.view.copy()
        self.view.insert(placeholder)
        mutation = self._register(
            PendingMutation(placeholder.id, MutationKind.CREATE, snapshot, task=placeholder)
        )
        self._notify()
        return mutation

    def confirm_create(self, local_id: str, success: bool,
                       authoritative: Optional[Task] = None) -> BoardView:
        """Replace the placeholder with the server's task, or drop it on failure."""
        mutation = self._take(local_id, MutationKind.CREATE)
        if mutation is None:
            if success and authoritative is not None:
                self.apply_remote_event(LiveUpdateEvent.created(authoritative))
            return self.view

        if not success:
            mutation.undo()
            self._notify()
            return self.view

        self._release(mutation)
        accepted = None
        if authoritative is not None:
            accepted = self._accept(authoritative, "confirm_create")
        for board in [self.view] + [m.snapshot for m in self._pending]:
            self._swap_placeholder(board, local_id, accepted)
        self._notify()
        return self.view

    @staticmethod
    def _swap_placeholder(board: BoardView, local_id: str, task: Optional[Task]) -> None:
        location = board.locate(local_id)
        board.remove(local_id)
        # Skip if the live update got here first
        if task is None or task.id in board:
            return
        board.insert(task, location[1] if location else None)

    # ── Deletes ──────────────────────────────────────────────────────────────

    def apply_local_delete(self, task_id: str) -> Optional[PendingMutation]:
        if task_id not in self.view:
            return None
        snapshot = self.view.copy()
        self.view.remove(task_id)
        mutation = self._register(PendingMutation(task_id, MutationKind.DELETE, snapshot))
        self._notify()
        return mutation

    def confirm_delete(self, task_id: str, success: bool) -> BoardView:
        mutation = self._take(task_id, MutationKind.DELETE)
        if mutation is None:
            return self.view
        if not success:
            mutation.undo()
        else:
            self._release(mutation)
            self._fold(LiveUpdateEvent.deleted(self.project_id, task_id))
        self._notify()
        return self.view

    def discard_task(self, task_id: str) -> BoardView:
        """Forget a task the server says no longer exists."""
        self._pending = [m for m in self._pending if m.key != task_id]
        self._prune()
        if self._fold(LiveUpdateEvent.deleted(self.project_id, task_id)):
            self._notify()
        return self.view

    # ── Remote events ────────────────────────────────────────────────────────

    def apply_remote_event(self, event: LiveUpdateEvent) -> BoardView:
        """
        Merge a live update. Applying the same event again changes nothing.

        Events for other projects, and tasks with an unknown status, are
        dropped without error.
        """
        if event.project_id != self.project_id:
            logger.debug(f"Ignoring {event.kind.wire_name} for project {event.project_id}")
            return self.view
        if event.kind != EventKind.DELETED:
            task = self._accept(event.payload, event.kind.wire_name)
            if task is None:
                return self.view
            event = replace(event, payload=task)
        if self._fold(event):
            self._notify()
        return self.view
