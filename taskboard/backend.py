"""
Persistence contract consumed by the mutation engine and the reconciler.

Every method is a coroutine: the engine applies its optimistic write,
then awaits one of these. Implementations raise the errors of
taskboard.errors (ConflictError, NotFoundError, ValidationError,
BackendError) and nothing else.
"""
import asyncio
import logging
import sqlite3
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .errors import BackendError
from .schema import Board, ChangeEvent, Column, Tag, Task, new_id
from .store import BoardStore

logger = logging.getLogger(__name__)


class BoardBackend(ABC):
    """Durable copy of boards, columns, tasks and tags."""

    client_id: str = ""

    # Boards
    @abstractmethod
    async def list_boards(self) -> List[Board]: ...

    @abstractmethod
    async def get_board(self, board_id: Optional[str] = None) -> Tuple[Board, List[Column]]: ...

    @abstractmethod
    async def create_board(self, title: str) -> Board: ...

    @abstractmethod
    async def delete_board(self, board_id: str) -> None: ...

    # Columns
    @abstractmethod
    async def create_column(self, board_id: str, title: str, position: int) -> Column: ...

    @abstractmethod
    async def delete_column(self, column_id: str) -> None: ...

    @abstractmethod
    async def reorder_columns(self, column_ids: List[str]) -> None: ...

    # Tasks
    @abstractmethod
    async def create_task(self, column_id: str, title: str, description: str = "",
                          position: Optional[int] = None) -> Task: ...

    @abstractmethod
    async def update_task(self, task_id: str, fields: Dict[str, Any]) -> Task: ...

    @abstractmethod
    async def delete_task(self, task_id: str) -> None: ...

    @abstractmethod
    async def move_task(self, task_id: str, source_column_id: str,
                        destination_column_id: str, destination_index: int) -> None: ...

    # Tags
    @abstractmethod
    async def list_tags(self, board_id: str) -> List[Tag]: ...

    @abstractmethod
    async def create_tag(self, board_id: str, name: str, color: str) -> Tag: ...

    @abstractmethod
    async def update_tag(self, tag_id: str, fields: Dict[str, Any]) -> Tag: ...

    @abstractmethod
    async def delete_tag(self, tag_id: str) -> None: ...

    @abstractmethod
    async def set_task_tags(self, task_id: str, tag_ids: Iterable[str]) -> Task:
        """Replace the task's tags with exactly tag_ids; returns the updated task."""

    # Change feed
    @abstractmethod
    async def get_changes(self, board_id: str, since: int = 0) -> List[ChangeEvent]:
        """Events after `since`, excluding those written by this client."""


class SqliteBackend(BoardBackend):
    """BoardBackend over a local BoardStore; calls run in a worker thread."""

    def __init__(self, db_path: str = None, client_id: Optional[str] = None):
        self.client_id = client_id or new_id()
        self.store = BoardStore(db_path, actor=self.client_id)

    async def _call(self, method: str, *args):
        func = getattr(self.store, method)
        try:
            return await asyncio.to_thread(func, *args)
        except sqlite3.Error as e:
            logger.error(f"SQLite error in {method}: {e}")
            raise BackendError(str(e))

    async def list_boards(self):
        return await self._call("list_boards")

    async def get_board(self, board_id=None):
        return await self._call("get_board", board_id)

    async def create_board(self, title):
        return await self._call("create_board", title)

    async def delete_board(self, board_id):
        await self._call("delete_board", board_id)

    async def create_column(self, board_id, title, position):
        return await self._call("create_column", board_id, title, position)

    async def delete_column(self, column_id):
        await self._call("delete_column", column_id)

    async def reorder_columns(self, column_ids):
        await self._call("reorder_columns", list(column_ids))

    async def create_task(self, column_id, title, description="", position=None):
        return await self._call("create_task", column_id, title, description, position)

    async def update_task(self, task_id, fields):
        return await self._call("update_task", task_id, dict(fields))

    async def delete_task(self, task_id):
        await self._call("delete_task", task_id)

    async def move_task(self, task_id, source_column_id, destination_column_id, destination_index):
        await self._call("move_task", task_id, source_column_id, destination_column_id, destination_index)

    async def list_tags(self, board_id):
        return await self._call("list_tags", board_id)

    async def create_tag(self, board_id, name, color):
        return await self._call("create_tag", board_id, name, color)

    async def update_tag(self, tag_id, fields):
        return await self._call("update_tag", tag_id, dict(fields))

    async def delete_tag(self, tag_id):
        await self._call("delete_tag", tag_id)

    async def set_task_tags(self, task_id, tag_ids):
        return await self._call("set_task_tags", task_id, list(tag_ids))

    async def get_changes(self, board_id, since=0):
        return await self._call("get_changes", board_id, since, self.client_id)
