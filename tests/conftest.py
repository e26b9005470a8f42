"""Shared fixtures: an in-memory backend with injectable failures and gates."""

import asyncio
import sys
from dataclasses import replace
from pathlib import Path

import pytest

from taskboard.backend import BoardBackend
from taskboard.errors import BackendError, ConflictError, NotFoundError
from taskboard.schema import Board, Column, Tag, Task, new_id, utc_now
from taskboard.state import BoardState, TagState

# Ensure the bots directory is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "bots"))


BOARD = Board(id="b1", title="Sprint")


def build_columns(layout):
    """[("To Do", ["T1", "T2"]), ...] → columns with ids "to-do", tasks "t1"…"""
    columns = []
    for position, (title, task_titles) in enumerate(layout):
        tasks = tuple(Task(id=t.lower(), title=t, position=i) for i, t in enumerate(task_titles))
        columns.append(Column(id=title.lower().replace(" ", "-"), title=title, position=position, tasks=tasks))
    return tuple(columns)


def titles(state, column_id):
    return [t.title for t in state.find_column(column_id).tasks]


def positions(state, column_id):
    return [t.position for t in state.find_column(column_id).tasks]


class FakeBackend(BoardBackend):
    """Answers like a server; failures and pauses are injected per method."""

    def __init__(self):
        self.client_id = "fake-client"
        self.calls = []
        self.failures = []     # [method, arg or None, error, times left or None]
        self.gates = {}        # method → asyncio.Event
        self.board = None
        self.columns = []
        self.boards = []
        self.tasks = {}
        self.tags = {}
        self.changes = []

    # ── test controls ──

    def seed(self, board, columns, tags=()):
        self.board = board
        self.boards = [board]
        self.columns = list(columns)
        self.tasks = {t.id: t for c in columns for t in c.tasks}
        self.tags = {t.id: t for t in tags}

    def fail(self, method, error=None, arg=None, times=None):
        """Make `method` raise (only when its first argument is `arg`, at most `times` times)."""
        error = error or BackendError("HTTP 500: Internal Server Error", status=500)
        self.failures.append([method, arg, error, times])

    def gate(self, method):
        """Hold `method` calls until the returned event is set."""
        event = asyncio.Event()
        self.gates[method] = event
        return event

    def called(self, method):
        return [args for name, args in self.calls if name == method]

    async def _enter(self, method, *args):
        self.calls.append((method, args))
        gate = self.gates.get(method)
        if gate is not None:
            await gate.wait()
        for failure in self.failures:
            name, arg, error, times = failure
            if name != method or times == 0:
                continue
            if arg is None or (args and args[0] == arg):
                if times is not None:
                    failure[3] = times - 1
                raise error

    # ── BoardBackend ──

    async def list_boards(self):
        await self._enter("list_boards")
        return list(self.boards)

    async def get_board(self, board_id=None):
        await self._enter("get_board", board_id)
        if self.board is None or (board_id and board_id != self.board.id):
            raise NotFoundError("Board not found")
        return self.board, list(self.columns)

    async def create_board(self, title):
        await self._enter("create_board", title)
        board = Board(id=new_id(), title=title)
        self.boards.insert(0, board)
        return board

    async def delete_board(self, board_id):
        await self._enter("delete_board", board_id)

    async def create_column(self, board_id, title, position):
        await self._enter("create_column", board_id, title, position)
        return Column(id=new_id(), title=title, position=position)

    async def delete_column(self, column_id):
        await self._enter("delete_column", column_id)

    async def reorder_columns(self, column_ids):
        await self._enter("reorder_columns", list(column_ids))

    async def create_task(self, column_id, title, description="", position=None):
        await self._enter("create_task", column_id, title, description, position)
        task = Task(id=new_id(), title=title, description=description, position=position or 0)
        self.tasks[task.id] = task
        return task

    async def update_task(self, task_id, fields):
        await self._enter("update_task", task_id, dict(fields))
        task = replace(self.tasks.get(task_id) or Task(id=task_id, title=""), updated_at=utc_now(), **fields)
        self.tasks[task_id] = task
        return task

    async def delete_task(self, task_id):
        await self._enter("delete_task", task_id)

    async def move_task(self, task_id, source_column_id, destination_column_id, destination_index):
        await self._enter("move_task", task_id, source_column_id, destination_column_id, destination_index)

    async def list_tags(self, board_id):
        await self._enter("list_tags", board_id)
        return sorted(self.tags.values(), key=lambda t: t.name)

    async def create_tag(self, board_id, name, color):
        await self._enter("create_tag", board_id, name, color)
        for tag in self.tags.values():
            if tag.board_id == board_id and tag.name == name:
                raise ConflictError("A tag with this name already exists on this board", field="name")
            if tag.board_id == board_id and tag.color == color:
                raise ConflictError("A tag with this color already exists on this board", field="color")
        tag = Tag(id=new_id(), board_id=board_id, name=name, color=color)
        self.tags[tag.id] = tag
        return tag

    async def update_tag(self, tag_id, fields):
        await self._enter("update_tag", tag_id, dict(fields))
        tag = replace(self.tags[tag_id], updated_at=utc_now(), **fields)
        self.tags[tag_id] = tag
        return tag

    async def delete_tag(self, tag_id):
        await self._enter("delete_tag", tag_id)
        self.tags.pop(tag_id, None)

    async def set_task_tags(self, task_id, tag_ids):
        await self._enter("set_task_tags", task_id, list(tag_ids))
        task = self.tasks.get(task_id) or Task(id=task_id, title="")
        task = replace(task, tags=tuple(sorted((self.tags[i] for i in tag_ids), key=lambda t: t.name)),
                       updated_at=utc_now())
        self.tasks[task_id] = task
        return task

    async def get_changes(self, board_id, since=0):
        await self._enter("get_changes", board_id, since)
        return [e for e in self.changes if e.seq > since]


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def board_state():
    return BoardState(
        board=BOARD,
        boards=(BOARD,),
        columns=build_columns([("To Do", ["T1", "T2", "T3"]), ("In Progress", []), ("Done", ["T4"])]),
    )


@pytest.fixture
def tag_state():
    return TagState()
