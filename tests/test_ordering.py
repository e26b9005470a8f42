"""
Tests for position reassignment: dense positions after every move,
single location for the moved task, untouched items kept identical.
"""

import pytest

from taskboard.errors import ValidationError
from taskboard.ordering import (
    apply_task_move,
    insert_at,
    is_dense,
    move_between,
    move_within,
    remove_at,
    reindex,
    reorder_columns,
)
from taskboard.schema import Task

from conftest import build_columns


def _tasks(*titles):
    return tuple(Task(id=t.lower(), title=t, position=i) for i, t in enumerate(titles))


# ━━━ reindex / is_dense ━━━


def test_reindex_assigns_sequence_positions():
    """Positions become 0..n-1 in sequence order."""
    items = (Task(id="a", title="A", position=5), Task(id="b", title="B", position=2))
    result = reindex(items)
    assert [t.position for t in result] == [0, 1]
    assert [t.id for t in result] == ["a", "b"]


def test_reindex_keeps_unchanged_items_identical():
    """Items already at the right position are the same objects."""
    items = _tasks("A", "B")
    result = reindex(items)
    assert result[0] is items[0]
    assert result[1] is items[1]


def test_is_dense():
    assert is_dense(_tasks("A", "B", "C"))
    assert is_dense(())
    assert not is_dense((Task(id="a", title="A", position=1),))


# ━━━ move_within ━━━


def test_move_within_forward():
    """[A, B, C] moving A to index 2 gives [B, C, A]."""
    result = move_within(_tasks("A", "B", "C"), 0, 2)
    assert [t.title for t in result] == ["B", "C", "A"]
    assert is_dense(result)


def test_move_within_backward():
    result = move_within(_tasks("A", "B", "C"), 2, 0)
    assert [t.title for t in result] == ["C", "A", "B"]
    assert is_dense(result)


def test_move_within_rejects_out_of_range():
    with pytest.raises(ValidationError):
        move_within(_tasks("A", "B"), 0, 2)
    with pytest.raises(ValidationError):
        move_within(_tasks("A", "B"), 3, 0)


# ━━━ move_between ━━━


def test_move_between_inserts_and_compacts():
    """Source loses the task, destination gains it at the index."""
    source, destination = move_between(_tasks("A", "B", "C"), _tasks("D"), 1, 0)
    assert [t.title for t in source] == ["A", "C"]
    assert [t.title for t in destination] == ["B", "D"]
    assert is_dense(source) and is_dense(destination)


def test_move_between_allows_append():
    source, destination = move_between(_tasks("A"), _tasks("D", "E"), 0, 2)
    assert source == ()
    assert [t.title for t in destination] == ["D", "E", "A"]
    assert destination[2].position == 2


def test_move_between_rejects_index_past_end():
    with pytest.raises(ValidationError):
        move_between(_tasks("A"), _tasks("D"), 0, 2)


# ━━━ apply_task_move ━━━


def test_apply_task_move_across_columns():
    """Scenario: X[A, B] → Y[C] moving A to Y index 1."""
    columns = build_columns([("X", ["A", "B"]), ("Y", ["C"])])
    result = apply_task_move(columns, "a", "x", "y", 1)
    x, y = result
    assert [t.title for t in x.tasks] == ["B"]
    assert [t.title for t in y.tasks] == ["C", "A"]
    assert [t.position for t in x.tasks] == [0]
    assert [t.position for t in y.tasks] == [0, 1]


def test_apply_task_move_task_in_exactly_one_column():
    columns = build_columns([("X", ["A", "B"]), ("Y", ["C"]), ("Z", [])])
    result = apply_task_move(columns, "b", "x", "z", 0)
    locations = [c.id for c in result for t in c.tasks if t.id == "b"]
    assert locations == ["z"]


def test_apply_task_move_leaves_other_columns_identical():
    columns = build_columns([("X", ["A"]), ("Y", []), ("Z", ["C"])])
    result = apply_task_move(columns, "a", "x", "y", 0)
    assert result[2] is columns[2]


def test_apply_task_move_locates_task_by_id():
    """The source index is derived from the id, not trusted from the caller."""
    columns = build_columns([("X", ["A", "B", "C"])])
    result = apply_task_move(columns, "c", "x", "x", 0)
    assert [t.title for t in result[0].tasks] == ["C", "A", "B"]


def test_apply_task_move_unknown_task():
    columns = build_columns([("X", ["A"]), ("Y", [])])
    with pytest.raises(ValidationError, match="Task not found"):
        apply_task_move(columns, "nope", "x", "y", 0)


def test_apply_task_move_unknown_column():
    columns = build_columns([("X", ["A"])])
    with pytest.raises(ValidationError, match="Destination column not found"):
        apply_task_move(columns, "a", "x", "missing", 0)


# ━━━ columns / insert / remove ━━━


def test_reorder_columns_dense():
    columns = build_columns([("X", []), ("Y", []), ("Z", [])])
    result = reorder_columns(columns, 0, 2)
    assert [c.id for c in result] == ["y", "z", "x"]
    assert is_dense(result)


def test_remove_and_insert_roundtrip_positions():
    items = _tasks("A", "B", "C")
    removed = remove_at(items, 1)
    assert [t.title for t in removed] == ["A", "C"]
    assert is_dense(removed)
    restored = insert_at(removed, 1, items[1])
    assert [t.title for t in restored] == ["A", "B", "C"]
    assert is_dense(restored)


def test_insert_at_clamps_index():
    result = insert_at(_tasks("A"), 10, Task(id="z", title="Z"))
    assert [t.title for t in result] == ["A", "Z"]
    assert result[1].position == 1
