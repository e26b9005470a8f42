"""
In-memory state containers (the entity store).

Each container owns a fixed set of named slices. A write replaces one or
more slices in a single step and then notifies subscribers synchronously,
in write order. Containers are constructed explicitly and handed to
whoever needs them; nothing here is a module-level singleton.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from .schema import Board, Column, Tag, Task, new_id, utc_now

logger = logging.getLogger(__name__)

Subscriber = Callable[["StateContainer", Dict[str, Any]], None]


class StateContainer:
    """Base container: named slices, atomic writes, snapshot/restore."""

    SLICES: Tuple[str, ...] = ()

    def __init__(self, **initial):
        self._subscribers: List[Subscriber] = []
        for name in self.SLICES:
            object.__setattr__(self, name, initial.pop(name, None))
        if initial:
            raise TypeError(f"Unknown slices: {', '.join(sorted(initial))}")

    def __setattr__(self, name, value):
        if name in self.SLICES:
            raise AttributeError(f"Use set({name}=...) to write state")
        object.__setattr__(self, name, value)

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback for every write. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def set(self, **changes) -> None:
        """Replace one or more slices in a single write."""
        unknown = set(changes) - set(self.SLICES)
        if unknown:
            raise KeyError(f"Unknown slices: {', '.join(sorted(unknown))}")
        for name, value in changes.items():
            object.__setattr__(self, name, value)
        self._emit(changes)

    def snapshot(self, *names: str) -> Dict[str, Any]:
        """Capture the given slices (all slices if none are named)."""
        return {name: getattr(self, name) for name in (names or self.SLICES)}

    def restore(self, snapshot: Dict[str, Any]) -> None:
        """Write a snapshot back in one step."""
        self.set(**snapshot)

    def clear_error(self) -> None:
        self.set(error=None)

    def _emit(self, changes: Dict[str, Any]) -> None:
        for callback in list(self._subscribers):
            try:
                callback(self, changes)
            except Exception as e:
                logger.error(f"Error in {type(self).__name__} subscriber: {e}")


class BoardState(StateContainer):
    """Boards, the current board's ordered columns and their ordered tasks."""

    SLICES = ("board", "boards", "columns", "is_loading", "is_dragging", "error")

    def __init__(self, **initial):
        initial.setdefault("boards", ())
        initial.setdefault("columns", ())
        initial.setdefault("is_loading", False)
        initial.setdefault("is_dragging", False)
        super().__init__(**initial)

    def find_column(self, column_id: str) -> Optional[Column]:
        for column in self.columns:
            if column.id == column_id:
                return column
        return None

    def column_index(self, column_id: str) -> int:
        for i, column in enumerate(self.columns):
            if column.id == column_id:
                return i
        return -1

    def find_task(self, task_id: str) -> Optional[Tuple[Task, str]]:
        """Return (task, column_id) or None."""
        for column in self.columns:
            for task in column.tasks:
                if task.id == task_id:
                    return task, column.id
        return None

    def all_tasks(self) -> List[Tuple[Task, Column]]:
        """Every task with the column it currently sits in, in board order."""
        return [(task, column) for column in self.columns for task in column.tasks]


class TagState(StateContainer):
    """Tags of the current board."""

    SLICES = ("tags", "is_tags_loading", "error")

    def __init__(self, **initial):
        initial.setdefault("tags", ())
        initial.setdefault("is_tags_loading", False)
        super().__init__(**initial)

    def find_tag(self, tag_id: str) -> Optional[Tag]:
        for tag in self.tags:
            if tag.id == tag_id:
                return tag
        return None


@dataclass(frozen=True)
class ChatMessage:
    """One line of the assistant conversation."""
    role: str                                   # "user" | "assistant"
    content: str
    id: str = field(default_factory=new_id)
    timestamp: str = field(default_factory=utc_now)
    operation: Optional[Dict[str, Any]] = None  # result of the executed operation


class ChatState(StateContainer):
    """Assistant conversation history."""

    SLICES = ("messages", "is_processing", "error")

    def __init__(self, **initial):
        initial.setdefault("messages", ())
        initial.setdefault("is_processing", False)
        super().__init__(**initial)

    def append(self, message: ChatMessage) -> None:
        self.set(messages=self.messages + (message,))
