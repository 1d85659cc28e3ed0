"""Tests for move planning (drag-drop and status changes)."""
import pytest

from pkg.taskboard.errors import ValidationFailed
from pkg.taskboard.protocol import MoveKind, plan_move, resolve_status, status_change_intent
from pkg.taskboard.reconciler import BoardView
from pkg.taskboard.schema import MoveIntent, TaskStatus

from conftest import make_task

TODO, DOING, DONE = TaskStatus.TODO, TaskStatus.IN_PROGRESS, TaskStatus.DONE


@pytest.fixture
def view():
    board = BoardView()
    for task in [
        make_task("a", TODO), make_task("b", TODO), make_task("c", TODO),
        make_task("d", DONE), make_task("e", DONE),
    ]:
        board.insert(task)
    return board


class TestResolveStatus:

    def test_known(self):
        assert resolve_status("done") is DONE
        assert resolve_status(DOING) is DOING

    def test_unknown_fails_closed(self):
        with pytest.raises(ValidationFailed):
            resolve_status("archived")
        with pytest.raises(ValidationFailed):
            resolve_status(None)


class TestSameColumn:

    def test_drop_on_anchor(self, view):
        plan = plan_move(view, MoveIntent("a", "todo", anchor_id="c"))
        assert plan.kind == MoveKind.REORDER
        assert plan.index == 2
        assert not plan.requires_authoritative

    def test_explicit_index_is_clamped(self, view):
        plan = plan_move(view, MoveIntent("a", "todo", index=99))
        assert plan.kind == MoveKind.REORDER
        assert plan.index == 2

    def test_same_position_is_noop(self, view):
        assert plan_move(view, MoveIntent("b", "todo", index=1)).kind == MoveKind.NOOP
        assert plan_move(view, MoveIntent("b", "todo", anchor_id="b")).kind == MoveKind.NOOP
        assert plan_move(view, MoveIntent("b", "todo")).kind == MoveKind.NOOP

    def test_anchor_in_other_column_is_noop(self, view):
        assert plan_move(view, MoveIntent("a", "todo", anchor_id="d")).kind == MoveKind.NOOP


class TestCrossColumn:

    def test_append_by_default(self, view):
        plan = plan_move(view, MoveIntent("a", "done"))
        assert plan.kind == MoveKind.TRANSITION
        assert plan.source is TODO
        assert plan.destination is DONE
        assert plan.index == 2
        assert plan.request_fields() == {"status": "done"}

    def test_drop_on_anchor(self, view):
        plan = plan_move(view, MoveIntent("a", "done", anchor_id="e"))
        assert plan.index == 1

    def test_into_empty_column(self, view):
        plan = plan_move(view, MoveIntent("c", "in_progress", index=5))
        assert plan.kind == MoveKind.TRANSITION
        assert plan.index == 0

    def test_source_comes_from_the_view(self, view):
        plan = plan_move(view, MoveIntent("d", "todo", source="in_progress"))
        assert plan.source is DONE


def test_unknown_task_is_noop(view):
    assert plan_move(view, MoveIntent("zzz", "done")).kind == MoveKind.NOOP


def test_unknown_destination_raises(view):
    with pytest.raises(ValidationFailed):
        plan_move(view, MoveIntent("a", "blocked"))


def test_status_change_appends():
    intent = status_change_intent("a", "done")
    assert intent == MoveIntent(task_id="a", destination="done")
