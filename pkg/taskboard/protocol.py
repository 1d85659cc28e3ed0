"""
Move/transition protocol.

Turns a drag-drop completion or a status-selector change into a validated
plan for the board:

    noop       - nothing to do (unknown task, or position unchanged)
    reorder    - same column, new position; purely client-local
    transition - different column; needs an authoritative status update

The three statuses are fully connected: any status may move to any other.
The only client-side check is that the destination is a known status, and
that check happens before anything is applied.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Tuple, Union

from .errors import ValidationFailed
from .schema import MoveIntent, Task, TaskStatus


class MoveKind(Enum):
    NOOP = "noop"
    REORDER = "reorder"
    TRANSITION = "transition"


class ColumnView(Protocol):
    """The slice of a board view the protocol reads."""

    def locate(self, task_id: str) -> Optional[Tuple[TaskStatus, int]]:
        ...

    def column(self, status: TaskStatus) -> List[Task]:
        ...


@dataclass(frozen=True)
class MovePlan:
    """
    A resolved move. index is the task's final position in the
    destination column.
    """
    task_id: str
    kind: MoveKind
    destination: TaskStatus
    source: Optional[TaskStatus] = None
    index: int = 0

    @property
    def requires_authoritative(self) -> bool:
        return self.kind == MoveKind.TRANSITION

    def request_fields(self) -> Dict[str, Any]:
        """Body of the authoritative update for a transition."""
        return {"status": self.destination.value}


def resolve_status(key: Union[TaskStatus, str, None]) -> TaskStatus:
    """Map a column key to a status, rejecting anything unknown."""
    status = TaskStatus.parse(key)
    if status is None:
        raise ValidationFailed(f"Unknown column: {key!r}")
    return status


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(value, high))


def plan_move(view: ColumnView, intent: MoveIntent) -> MovePlan:
    """
    Resolve a move intent against the current view.

    Raises ValidationFailed for an unknown destination. The intent's source
    is advisory; the task's actual column in the view wins.
    """
    destination = resolve_status(intent.destination)
    location = view.locate(intent.task_id)
    if location is None:
        return MovePlan(intent.task_id, MoveKind.NOOP, destination)

    source, old_index = location
    column = view.column(destination)

    if source == destination:
        if intent.anchor_id is not None:
            if intent.anchor_id == intent.task_id:
                return MovePlan(intent.task_id, MoveKind.NOOP, destination, source, old_index)
            anchor = view.locate(intent.anchor_id)
            if anchor is None or anchor[0] != destination:
                return MovePlan(intent.task_id, MoveKind.NOOP, destination, source, old_index)
            new_index = anchor[1]
        elif intent.index is not None:
            new_index = _clamp(intent.index, 0, len(column) - 1)
        else:
            return MovePlan(intent.task_id, MoveKind.NOOP, destination, source, old_index)

        if new_index == old_index:
            return MovePlan(intent.task_id, MoveKind.NOOP, destination, source, old_index)
        return MovePlan(intent.task_id, MoveKind.REORDER, destination, source, new_index)

    # Cross-column: drop before the anchor, at the index, or at the end
    new_index = len(column)
    if intent.anchor_id is not None:
        anchor = view.locate(intent.anchor_id)
        if anchor is not None and anchor[0] == destination:
            new_index = anchor[1]
    elif intent.index is not None:
        new_index = _clamp(intent.index, 0, len(column))
    return MovePlan(intent.task_id, MoveKind.TRANSITION, destination, source, new_index)


def status_change_intent(task_id: str, new_status: Union[TaskStatus, str]) -> MoveIntent:
    """A status-selector action is a move to the end of the new column."""
    return MoveIntent(task_id=task_id, destination=new_status)
