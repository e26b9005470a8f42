"""
Position reassignment for moves within and across columns.

Positions are always re-derived from the new sequence order (position =
index), never shifted arithmetically, so a completed move can't leave gaps
or duplicates.
"""
from dataclasses import replace
from typing import Sequence, Tuple, TypeVar

from .errors import ValidationError
from .schema import Column

T = TypeVar("T")


def reindex(items: Sequence[T]) -> Tuple[T, ...]:
    """Assign dense 0-based positions from sequence order.

    Items whose position already matches are kept as-is so unchanged
    entities stay referentially identical.
    """
    result = []
    for index, item in enumerate(items):
        if item.position != index:
            item = replace(item, position=index)
        result.append(item)
    return tuple(result)


def is_dense(items: Sequence) -> bool:
    """True if positions are exactly 0..n-1 in sequence order."""
    return [item.position for item in items] == list(range(len(items)))


def move_within(items: Sequence[T], source_index: int, destination_index: int) -> Tuple[T, ...]:
    """Move one item inside a sequence and re-derive positions."""
    if not 0 <= source_index < len(items):
        raise ValidationError(f"Source index {source_index} out of range")
    if not 0 <= destination_index < len(items):
        raise ValidationError(f"Destination index {destination_index} out of range")
    reordered = list(items)
    moved = reordered.pop(source_index)
    reordered.insert(destination_index, moved)
    return reindex(reordered)


def move_between(
    source: Sequence[T],
    destination: Sequence[T],
    source_index: int,
    destination_index: int,
) -> Tuple[Tuple[T, ...], Tuple[T, ...]]:
    """Move one item from one sequence into another.

    Returns (new_source, new_destination), both densely re-positioned.
    destination_index may equal len(destination) (append).
    """
    if not 0 <= source_index < len(source):
        raise ValidationError(f"Source index {source_index} out of range")
    if not 0 <= destination_index <= len(destination):
        raise ValidationError(f"Destination index {destination_index} out of range")
    remaining = list(source)
    moved = remaining.pop(source_index)
    inserted = list(destination)
    inserted.insert(destination_index, moved)
    return reindex(remaining), reindex(inserted)


def apply_task_move(
    columns: Sequence[Column],
    task_id: str,
    source_column_id: str,
    destination_column_id: str,
    destination_index: int,
) -> Tuple[Column, ...]:
    """Move a task between (or within) columns of a board.

    The task is located by id in the source column. Returns the full new
    column tuple: both affected columns change in one value, so no reader
    can see the task in neither or both columns.
    """
    by_id = {col.id: i for i, col in enumerate(columns)}
    if source_column_id not in by_id:
        raise ValidationError("Source column not found")
    if destination_column_id not in by_id:
        raise ValidationError("Destination column not found")

    src_pos = by_id[source_column_id]
    source = columns[src_pos]
    source_index = source.index_of(task_id)
    if source_index == -1:
        raise ValidationError("Task not found")

    result = list(columns)
    if source_column_id == destination_column_id:
        result[src_pos] = replace(
            source, tasks=move_within(source.tasks, source_index, destination_index)
        )
        return tuple(result)

    dst_pos = by_id[destination_column_id]
    new_source, new_destination = move_between(
        source.tasks, columns[dst_pos].tasks, source_index, destination_index
    )
    result[src_pos] = replace(source, tasks=new_source)
    result[dst_pos] = replace(columns[dst_pos], tasks=new_destination)
    return tuple(result)


def reorder_columns(columns: Sequence[Column], source_index: int, destination_index: int) -> Tuple[Column, ...]:
    """Move a column within its board."""
    return move_within(columns, source_index, destination_index)


def remove_at(items: Sequence[T], index: int) -> Tuple[T, ...]:
    """Drop one item and re-derive positions of the rest."""
    remaining = list(items)
    del remaining[index]
    return reindex(remaining)


def insert_at(items: Sequence[T], index: int, item: T) -> Tuple[T, ...]:
    """Insert one item (index clamped to the sequence) and re-derive positions."""
    inserted = list(items)
    inserted.insert(max(0, min(index, len(inserted))), item)
    return reindex(inserted)
