"""
Mutation engine: optimistic apply, remote call, commit or rollback.

Every mutating coroutine follows the same protocol:

    1. validate against the current state (no write, no remote call on failure)
    2. snapshot the minimal slice needed to undo the change
    3. write the optimistic state before the first await
    4. await the backend
    5. commit server-assigned ids and timestamps, or roll back

Failures never propagate to the caller. They are written to the owning
container's `error` slot and the coroutine returns None/False.

Each in-flight mutation takes a ticket on the entity ids it touches. A
response that arrives after a newer mutation of the same entity was
issued is "superseded": it reports its error but does not commit. On
failure it reverts only the fields no newer mutation has written since.
"""
import itertools
import logging
from dataclasses import replace
from typing import Any, Callable, Container, Dict, Iterable, List, Optional, Sequence

from .backend import BoardBackend
from .errors import ConflictError, NotFoundError, ValidationError
from .ordering import apply_task_move, insert_at, remove_at, reorder_columns
from .schema import Board, Column, EntityKind, Origin, Tag, Task, new_id, normalize_color, touch
from .state import BoardState, TagState

logger = logging.getLogger(__name__)

TASK_FIELDS = ("title", "description", "assignee")
TAG_FIELDS = ("name", "color")


def error_message(label: str, error: Exception) -> str:
    """User-visible message for a failed operation.

    Conflicts and validation failures carry their own wording (a conflict
    names the field that clashed); everything else gets the operation label.
    """
    if isinstance(error, (ConflictError, ValidationError)):
        return str(error)
    return f"{label}: {error}"


def confirm_matches(board: Optional[Board], text: str) -> bool:
    """Board deletion confirmation: the user re-typed the exact title."""
    return board is not None and (text or "").strip() == board.title.strip()


class PendingIds:
    """Locally generated ids whose create is still in flight."""

    def __init__(self):
        self._pending: Dict[str, EntityKind] = {}

    def add(self, temp_id: str, kind: EntityKind) -> None:
        self._pending[temp_id] = kind

    def discard(self, temp_id: str) -> None:
        self._pending.pop(temp_id, None)

    def kind_of(self, entity_id: str) -> Optional[EntityKind]:
        return self._pending.get(entity_id)

    def __contains__(self, entity_id) -> bool:
        return entity_id in self._pending

    def __len__(self) -> int:
        return len(self._pending)


class Tickets:
    """Per-entity ordering of in-flight mutations."""

    def __init__(self):
        self._counter = itertools.count(1)
        self._latest: Dict[str, int] = {}
        self._in_flight: Dict[str, int] = {}
        self._writers: Dict[str, Dict[str, int]] = {}
        self._listeners: List[Callable[[str], None]] = []

    def take(self, *entity_ids: str, fields: Iterable[str] = ()) -> int:
        ticket = next(self._counter)
        fields = tuple(fields)
        for entity_id in entity_ids:
            self._latest[entity_id] = ticket
            self._in_flight[entity_id] = self._in_flight.get(entity_id, 0) + 1
            writers = self._writers.setdefault(entity_id, {})
            for field in fields:
                writers[field] = ticket
        return ticket

    def is_current(self, ticket: int, *entity_ids: str) -> bool:
        return all(self._latest.get(entity_id) == ticket for entity_id in entity_ids)

    def owned_fields(self, ticket: int, entity_id: str, fields: Iterable[str]) -> List[str]:
        """Fields whose latest optimistic write on entity_id came from ticket."""
        writers = self._writers.get(entity_id, {})
        return [field for field in fields if writers.get(field) == ticket]

    def release(self, *entity_ids: str) -> None:
        settled = []
        for entity_id in entity_ids:
            remaining = self._in_flight.get(entity_id, 0) - 1
            if remaining > 0:
                self._in_flight[entity_id] = remaining
                continue
            self._in_flight.pop(entity_id, None)
            self._latest.pop(entity_id, None)
            self._writers.pop(entity_id, None)
            settled.append(entity_id)
        for entity_id in settled:
            for callback in list(self._listeners):
                try:
                    callback(entity_id)
                except Exception as e:
                    logger.error(f"Error in settlement listener for {entity_id}: {e}")

    def busy(self, entity_id: str) -> bool:
        return entity_id in self._in_flight

    def any_busy(self) -> bool:
        return bool(self._in_flight)

    def on_settled(self, callback: Callable[[str], None]) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe


class _Engine:
    """Shared plumbing: tickets, pending ids, error slot."""

    def __init__(self, state, backend: BoardBackend):
        self.state = state
        self.backend = backend
        self.pending = PendingIds()
        self.tickets = Tickets()

    def is_busy(self, entity_id: str) -> bool:
        return self.tickets.busy(entity_id)

    def has_in_flight(self) -> bool:
        return self.tickets.any_busy()

    def on_settled(self, callback: Callable[[str], None]) -> Callable[[], None]:
        """Call back with an entity id once it has no mutation in flight."""
        return self.tickets.on_settled(callback)

    def _invalid(self, message: str) -> None:
        logger.warning(f"Rejected: {message}")
        self.state.set(error=message)

    def _fail(self, label: str, error: Exception, **slices) -> None:
        message = error_message(label, error)
        logger.error(message)
        self.state.set(error=message, **slices)

    def _require_persisted(self, *entity_ids: str) -> None:
        for entity_id in entity_ids:
            if entity_id in self.pending:
                raise ValidationError(f"{self.pending.kind_of(entity_id).value.capitalize()} is still being saved")

    def _revert_fields(self, ticket: int, entity_id: str, original, fields: Iterable[str],
                       write: Callable[[str, Callable], bool]) -> None:
        """Undo a failed field edit, leaving fields a newer mutation has written since."""
        stale = {f: getattr(original, f) for f in self.tickets.owned_fields(ticket, entity_id, fields)}
        if self.tickets.is_current(ticket, entity_id):
            stale["updated_at"] = original.updated_at
        elif stale:
            logger.debug(f"Superseded edit of {entity_id}; reverting {sorted(stale)}")
        if stale:
            write(entity_id, lambda current: replace(current, **stale))


class BoardEngine(_Engine):
    """Mutations of boards, columns and tasks against a BoardState."""

    state: BoardState

    def __init__(self, state: BoardState, backend: BoardBackend):
        super().__init__(state, backend)

    # ── Reads ────────────────────────────────────────────────────────────────

    async def fetch_user_boards(self) -> Optional[List[Board]]:
        self.state.set(is_loading=True)
        try:
            boards = await self.backend.list_boards()
        except Exception as e:
            self._fail("Failed to fetch boards", e, is_loading=False)
            return None
        self.state.set(boards=tuple(boards), is_loading=False)
        return boards

    async def fetch_board(self, board_id: Optional[str] = None) -> Optional[Board]:
        """Load a board (the most recent one if no id) with its columns and tasks."""
        self.state.set(is_loading=True)
        try:
            board, columns = await self.backend.get_board(board_id)
        except Exception as e:
            self._fail("Failed to fetch board data", e, is_loading=False)
            return None
        columns = sorted(columns, key=lambda c: c.position)
        self.state.set(board=board, columns=tuple(columns), is_loading=False)
        return board

    # ── Boards ───────────────────────────────────────────────────────────────

    async def add_board(self, title: str) -> Optional[Board]:
        title = (title or "").strip()
        if not title:
            self._invalid("Board title is required")
            return None

        temp = Board(id=new_id(), title=title)
        self.pending.add(temp.id, EntityKind.BOARD)
        self.tickets.take(temp.id)
        # Board list is most-recent-first
        self.state.set(boards=(temp,) + tuple(self.state.boards))

        try:
            created = await self.backend.create_board(title)
        except Exception as e:
            self.state.set(boards=tuple(b for b in self.state.boards if b.id != temp.id))
            self._fail("Failed to create board", e)
            return None
        else:
            self.state.set(boards=tuple(created if b.id == temp.id else b for b in self.state.boards))
            return created
        finally:
            self.pending.discard(temp.id)
            self.tickets.release(temp.id)

    async def delete_board(self, board_id: str) -> bool:
        """Delete a board. The caller must already hold the user's confirmation."""
        boards = tuple(self.state.boards)
        index = next((i for i, b in enumerate(boards) if b.id == board_id), -1)
        current = self.state.board
        is_current = current is not None and current.id == board_id
        if index == -1 and not is_current:
            self._invalid("Board not found")
            return False
        try:
            self._require_persisted(board_id)
        except ValidationError as e:
            self._invalid(str(e))
            return False

        removed = boards[index] if index != -1 else current
        snapshot = self.state.snapshot("board", "columns") if is_current else None
        ticket = self.tickets.take(board_id)
        changes: Dict[str, Any] = {"boards": tuple(b for b in boards if b.id != board_id)}
        if is_current:
            changes.update(board=None, columns=())
        self.state.set(**changes)

        try:
            await self.backend.delete_board(board_id)
        except Exception as e:
            if self.tickets.is_current(ticket, board_id):
                restored: Dict[str, Any] = {}
                if index != -1 and all(b.id != board_id for b in self.state.boards):
                    remaining = list(self.state.boards)
                    remaining.insert(min(index, len(remaining)), removed)
                    restored["boards"] = tuple(remaining)
                # Only restore the open board if nothing else was opened meanwhile
                if snapshot is not None and self.state.board is None:
                    restored.update(snapshot)
                if restored:
                    self.state.set(**restored)
            self._fail("Failed to delete board", e)
            return False
        finally:
            self.tickets.release(board_id)
        logger.info(f"Deleted board {board_id}")
        return True

    # ── Columns ──────────────────────────────────────────────────────────────

    async def add_column(self, title: str) -> Optional[Column]:
        board = self.state.board
        title = (title or "").strip()
        if board is None:
            self._invalid("No board loaded")
            return None
        if not title:
            self._invalid("Column title is required")
            return None

        position = len(self.state.columns)
        temp = Column(id=new_id(), title=title, position=position)
        self.pending.add(temp.id, EntityKind.COLUMN)
        self.tickets.take(temp.id)
        self.state.set(columns=tuple(self.state.columns) + (temp,))

        try:
            created = await self.backend.create_column(board.id, title, position)
        except Exception as e:
            self._drop_column(temp.id)
            self._fail("Failed to add column", e)
            return None
        else:
            self._replace_column(
                temp.id, lambda local: replace(created, position=local.position, tasks=local.tasks)
            )
            return created
        finally:
            self.pending.discard(temp.id)
            self.tickets.release(temp.id)

    async def delete_column(self, column_id: str) -> bool:
        index = self.state.column_index(column_id)
        if index == -1:
            self._invalid("Column not found")
            return False
        try:
            self._require_persisted(column_id)
        except ValidationError as e:
            self._invalid(str(e))
            return False

        column = self.state.columns[index]
        ticket = self.tickets.take(column_id)
        self.state.set(columns=remove_at(self.state.columns, index))

        try:
            await self.backend.delete_column(column_id)
        except Exception as e:
            if self.tickets.is_current(ticket, column_id) and self.state.find_column(column_id) is None:
                self.state.set(columns=insert_at(self.state.columns, index, column))
            self._fail("Failed to delete column", e)
            return False
        finally:
            self.tickets.release(column_id)
        return True

    async def move_column(self, source_index: int, destination_index: int) -> bool:
        if source_index == destination_index:
            return True
        board = self.state.board
        if board is None:
            self._invalid("No board loaded")
            return False
        before = tuple(self.state.columns)
        try:
            self._require_persisted(*(c.id for c in before))
            after = reorder_columns(before, source_index, destination_index)
        except ValidationError as e:
            self._invalid(str(e))
            return False

        moved_id = before[source_index].id
        key = f"columns:{board.id}"
        ticket = self.tickets.take(key)
        self.state.set(columns=after)

        try:
            await self.backend.reorder_columns([c.id for c in after])
        except Exception as e:
            if self.tickets.is_current(ticket, key):
                if self.state.columns is after:
                    self.state.set(columns=before)
                else:
                    self._move_column_back(moved_id, source_index)
            self._fail("Failed to reorder columns", e)
            return False
        finally:
            self.tickets.release(key)
        return True

    # ── Tasks ────────────────────────────────────────────────────────────────

    async def add_task(self, column_id: str, title: str, description: str = "") -> Optional[Task]:
        column = self.state.find_column(column_id)
        title = (title or "").strip()
        if column is None:
            self._invalid("Column not found")
            return None
        if not title:
            self._invalid("Task title is required")
            return None
        try:
            self._require_persisted(column_id)
        except ValidationError as e:
            self._invalid(str(e))
            return None

        position = len(column.tasks)
        temp = Task(id=new_id(), title=title, description=description or "", position=position)
        self.pending.add(temp.id, EntityKind.TASK)
        self.tickets.take(temp.id)
        self._replace_column(column_id, lambda c: replace(c, tasks=c.tasks + (temp,)))

        try:
            created = await self.backend.create_task(column_id, title, description or "", position)
        except Exception as e:
            self._drop_task(temp.id)
            self._fail("Failed to add task", e)
            return None
        else:
            self._replace_task(temp.id, lambda local: replace(created, position=local.position))
            return created
        finally:
            self.pending.discard(temp.id)
            self.tickets.release(temp.id)

    async def update_task(self, task_id: str, updates: Dict[str, Any],
                          column_id: Optional[str] = None) -> Optional[Task]:
        found = self.state.find_task(task_id)
        try:
            if found is None or (column_id is not None and found[1] != column_id):
                raise ValidationError("Task not found")
            self._require_persisted(task_id)
            unknown = set(updates) - set(TASK_FIELDS)
            if unknown:
                raise ValidationError(f"Unknown task fields: {', '.join(sorted(unknown))}")
            if "title" in updates and not (updates["title"] or "").strip():
                raise ValidationError("Task title cannot be empty")
        except ValidationError as e:
            self._invalid(str(e))
            return None

        original = found[0]
        ticket = self.tickets.take(task_id, fields=updates)
        self._replace_task(task_id, lambda t: touch(t, **updates))

        try:
            saved = await self.backend.update_task(task_id, dict(updates))
        except Exception as e:
            self._revert_fields(ticket, task_id, original, updates, self._replace_task)
            self._fail("Failed to update task", e)
            return None
        else:
            if self.tickets.is_current(ticket, task_id):
                self._replace_task(task_id, lambda t: replace(saved, position=t.position))
            return saved
        finally:
            self.tickets.release(task_id)

    async def delete_task(self, column_id: str, task_id: str) -> bool:
        column = self.state.find_column(column_id)
        index = column.index_of(task_id) if column is not None else -1
        if index == -1:
            self._invalid("Task not found")
            return False
        try:
            self._require_persisted(task_id)
        except ValidationError as e:
            self._invalid(str(e))
            return False

        task = column.tasks[index]
        ticket = self.tickets.take(task_id)
        self._replace_column(column_id, lambda c: replace(c, tasks=remove_at(c.tasks, index)))

        try:
            await self.backend.delete_task(task_id)
        except Exception as e:
            if self.tickets.is_current(ticket, task_id) and self.state.find_task(task_id) is None:
                if not self._replace_column(
                    column_id, lambda c: replace(c, tasks=insert_at(c.tasks, index, task))
                ):
                    logger.warning(f"Column {column_id} vanished; deleted task {task_id} not restored")
            self._fail("Failed to delete task", e)
            return False
        finally:
            self.tickets.release(task_id)
        return True

    async def move_task(
        self,
        task_id: str,
        source_column_id: str,
        destination_column_id: str,
        source_index: int,
        destination_index: int,
        origin: Origin = Origin.LOCAL,
    ) -> bool:
        """Move a task within or across columns.

        Origin.REMOTE_ECHO only mirrors a move that is already durable: no
        remote call, no rollback. Validation errors still surface.
        """
        if source_column_id == destination_column_id and source_index == destination_index:
            return True

        source = self.state.find_column(source_column_id)
        actual_index = source.index_of(task_id) if source is not None else -1
        if source_column_id == destination_column_id and actual_index == destination_index:
            return True

        before = tuple(self.state.columns)
        try:
            if origin is not Origin.REMOTE_ECHO:
                self._require_persisted(task_id, source_column_id, destination_column_id)
            after = apply_task_move(before, task_id, source_column_id, destination_column_id, destination_index)
        except ValidationError as e:
            self._invalid(str(e))
            return False

        if origin is Origin.REMOTE_ECHO:
            self.state.set(columns=after)
            return True

        touched = {source_column_id, destination_column_id}
        originals = {c.id: c for c in before if c.id in touched}
        written = {c.id: c for c in after if c.id in touched}
        ticket = self.tickets.take(task_id, fields=("placement",))
        self.state.set(columns=after)
        logger.debug(f"Move {task_id} ({origin.value}) {source_column_id}[{actual_index}] -> "
                     f"{destination_column_id}[{destination_index}]")

        try:
            await self.backend.move_task(task_id, source_column_id, destination_column_id, destination_index)
        except Exception as e:
            if self.tickets.owned_fields(ticket, task_id, ("placement",)):
                self._undo_move(task_id, originals, written, source_column_id, actual_index)
            self._fail("Failed to move task", e)
            return False
        finally:
            self.tickets.release(task_id)
        return True

    async def update_task_tags(self, task_id: str, tag_ids: Iterable[str],
                               available_tags: Sequence[Tag],
                               pending_tags: Container[str] = ()) -> Optional[Task]:
        """Replace a task's tags with exactly tag_ids.

        available_tags is the board's tag list, passed in by the caller;
        pending_tags holds ids of tags whose create is still in flight.
        """
        wanted = list(dict.fromkeys(tag_ids))
        by_id = {tag.id: tag for tag in available_tags}
        found = self.state.find_task(task_id)
        try:
            if found is None:
                raise ValidationError("Task not found")
            self._require_persisted(task_id)
            missing = [tag_id for tag_id in wanted if tag_id not in by_id]
            if missing:
                raise ValidationError(f"Unknown tag: {missing[0]}")
            if any(tag_id in pending_tags for tag_id in wanted):
                raise ValidationError("Tag is still being saved")
        except ValidationError as e:
            self._invalid(str(e))
            return None

        original_tags = found[0].tags
        ticket = self.tickets.take(task_id, fields=("tags",))
        self._replace_task(task_id, lambda t: touch(t, tags=tuple(by_id[i] for i in wanted)))

        try:
            saved = await self.backend.set_task_tags(task_id, wanted)
        except Exception as e:
            if self.tickets.owned_fields(ticket, task_id, ("tags",)):
                self._replace_task(task_id, lambda t: replace(t, tags=original_tags))
            self._fail("Failed to update task tags", e)
            return None
        else:
            if self.tickets.is_current(ticket, task_id):
                self._replace_task(task_id, lambda t: replace(t, tags=saved.tags, updated_at=saved.updated_at))
            return saved
        finally:
            self.tickets.release(task_id)

    # ── Local-only transitions (collaborator data, already durable) ──────────

    def apply_remote_task(self, column_id: str, task: Task) -> bool:
        """Insert or merge a task written by someone else. Idempotent.

        Raises NotFoundError if the column isn't loaded locally.
        """
        column = self.state.find_column(column_id)
        if column is None:
            raise NotFoundError(f"Column {column_id} not found")
        found = self.state.find_task(task.id)
        if found is not None and found[1] == column_id:
            local = found[0]
            merged = replace(task, position=local.position)
            if merged == local:
                return False
            self._replace_task(task.id, lambda t: merged)
            return True
        columns = list(self.state.columns)
        if found is not None:
            old_index = self.state.column_index(found[1])
            old = columns[old_index]
            columns[old_index] = replace(old, tasks=remove_at(old.tasks, old.index_of(task.id)))
        target_index = self.state.column_index(column_id)
        target = columns[target_index]
        columns[target_index] = replace(target, tasks=insert_at(target.tasks, task.position, task))
        self.state.set(columns=tuple(columns))
        return True

    def remove_remote_task(self, task_id: str) -> bool:
        return self._drop_task(task_id)

    def apply_remote_column(self, column_id: str, title: str) -> bool:
        """Merge a column title change. Raises NotFoundError if unknown."""
        column = self.state.find_column(column_id)
        if column is None:
            raise NotFoundError(f"Column {column_id} not found")
        if column.title == title:
            return False
        return self._replace_column(column_id, lambda c: replace(c, title=title))

    def remove_remote_board(self, board_id: str) -> None:
        changes: Dict[str, Any] = {"boards": tuple(b for b in self.state.boards if b.id != board_id)}
        if self.state.board is not None and self.state.board.id == board_id:
            changes.update(board=None, columns=())
        self.state.set(**changes)

    def apply_tag_change(self, tag: Tag) -> bool:
        """Refresh the copies of a tag embedded in tasks."""
        return self._map_tasks(
            lambda t: replace(t, tags=tuple(tag if g.id == tag.id else g for g in t.tags))
            if any(g.id == tag.id and g != tag for g in t.tags) else t
        )

    def detach_tag(self, tag_id: str) -> bool:
        """Remove a deleted tag from every task."""
        return self._map_tasks(
            lambda t: replace(t, tags=tuple(g for g in t.tags if g.id != tag_id))
            if any(g.id == tag_id for g in t.tags) else t
        )

    # ── Helpers ──────────────────────────────────────────────────────────────

    def _replace_column(self, column_id: str, fn: Callable[[Column], Column]) -> bool:
        index = self.state.column_index(column_id)
        if index == -1:
            return False
        columns = list(self.state.columns)
        columns[index] = fn(columns[index])
        self.state.set(columns=tuple(columns))
        return True

    def _drop_column(self, column_id: str) -> bool:
        index = self.state.column_index(column_id)
        if index == -1:
            return False
        self.state.set(columns=remove_at(self.state.columns, index))
        return True

    def _replace_task(self, task_id: str, fn: Callable[[Task], Task]) -> bool:
        for ci, column in enumerate(self.state.columns):
            ti = column.index_of(task_id)
            if ti == -1:
                continue
            tasks = list(column.tasks)
            tasks[ti] = fn(tasks[ti])
            columns = list(self.state.columns)
            columns[ci] = replace(column, tasks=tuple(tasks))
            self.state.set(columns=tuple(columns))
            return True
        return False

    def _drop_task(self, task_id: str) -> bool:
        found = self.state.find_task(task_id)
        if found is None:
            return False
        return self._replace_column(
            found[1], lambda c: replace(c, tasks=remove_at(c.tasks, c.index_of(task_id)))
        )

    def _map_tasks(self, fn: Callable[[Task], Task]) -> bool:
        changed = False
        columns = []
        for column in self.state.columns:
            tasks = tuple(fn(t) for t in column.tasks)
            if any(a is not b for a, b in zip(tasks, column.tasks)):
                column = replace(column, tasks=tasks)
                changed = True
            columns.append(column)
        if changed:
            self.state.set(columns=tuple(columns))
        return changed

    def _move_column_back(self, column_id: str, index: int) -> None:
        current = self.state.column_index(column_id)
        if current == -1:
            return
        target = min(index, len(self.state.columns) - 1)
        if current != target:
            self.state.set(columns=reorder_columns(self.state.columns, current, target))

    def _undo_move(self, task_id: str, originals: Dict[str, Column], written: Dict[str, Column],
                   source_column_id: str, source_index: int) -> None:
        columns = list(self.state.columns)
        untouched = all(
            any(c is col for c in columns) for col in written.values()
        )
        if untouched:
            self.state.set(columns=tuple(originals.get(c.id, c) for c in columns))
            return

        # Someone wrote the affected columns since: put the task back by id
        found = self.state.find_task(task_id)
        source = self.state.find_column(source_column_id)
        if found is None or source is None:
            logger.warning(f"Cannot roll back move of {task_id}: task or column no longer loaded")
            return
        current_column_id = found[1]
        current_index = self.state.find_column(current_column_id).index_of(task_id)
        if current_column_id == source_column_id:
            target = min(source_index, len(source.tasks) - 1)
            if target == current_index:
                return
        else:
            target = min(source_index, len(source.tasks))
        self.state.set(columns=apply_task_move(
            self.state.columns, task_id, current_column_id, source_column_id, target
        ))


class TagEngine(_Engine):
    """Mutations of a board's tags against a TagState."""

    state: TagState

    def __init__(self, state: TagState, backend: BoardBackend):
        super().__init__(state, backend)

    async def fetch_tags(self, board_id: str) -> Optional[List[Tag]]:
        self.state.set(is_tags_loading=True)
        try:
            tags = await self.backend.list_tags(board_id)
        except Exception as e:
            self._fail("Failed to fetch tags", e, is_tags_loading=False)
            return None
        self.state.set(tags=tuple(tags), is_tags_loading=False)
        return tags

    async def create_tag(self, board_id: str, name: str, color: str) -> Optional[Tag]:
        name = (name or "").strip()
        try:
            if not board_id:
                raise ValidationError("Board id is required")
            if not name:
                raise ValidationError("Tag name is required")
            color = _color(color)
        except ValidationError as e:
            self._invalid(str(e))
            return None

        temp = Tag(id=new_id(), board_id=board_id, name=name, color=color)
        self.pending.add(temp.id, EntityKind.TAG)
        self.tickets.take(temp.id)
        self.state.set(tags=tuple(self.state.tags) + (temp,))

        try:
            created = await self.backend.create_tag(board_id, name, color)
        except Exception as e:
            self.state.set(tags=tuple(t for t in self.state.tags if t.id != temp.id))
            self._fail("Failed to create tag", e)
            return None
        else:
            self.state.set(tags=tuple(created if t.id == temp.id else t for t in self.state.tags))
            return created
        finally:
            self.pending.discard(temp.id)
            self.tickets.release(temp.id)

    async def update_tag(self, tag_id: str, updates: Dict[str, Any]) -> Optional[Tag]:
        original = self.state.find_tag(tag_id)
        changes = dict(updates)
        try:
            if original is None:
                raise ValidationError("Tag not found")
            self._require_persisted(tag_id)
            unknown = set(changes) - set(TAG_FIELDS)
            if unknown:
                raise ValidationError(f"Unknown tag fields: {', '.join(sorted(unknown))}")
            if not changes:
                raise ValidationError("At least one field (name or color) is required")
            if "name" in changes:
                changes["name"] = (changes["name"] or "").strip()
                if not changes["name"]:
                    raise ValidationError("Tag name cannot be empty")
            if "color" in changes:
                changes["color"] = _color(changes["color"])
        except ValidationError as e:
            self._invalid(str(e))
            return None

        ticket = self.tickets.take(tag_id, fields=changes)
        self._replace_tag(tag_id, lambda t: touch(t, **changes))

        try:
            saved = await self.backend.update_tag(tag_id, changes)
        except Exception as e:
            self._revert_fields(ticket, tag_id, original, changes, self._replace_tag)
            self._fail("Failed to update tag", e)
            return None
        else:
            if self.tickets.is_current(ticket, tag_id):
                self._replace_tag(tag_id, lambda t: saved)
            return saved
        finally:
            self.tickets.release(tag_id)

    async def delete_tag(self, tag_id: str) -> bool:
        tags = tuple(self.state.tags)
        index = next((i for i, t in enumerate(tags) if t.id == tag_id), -1)
        try:
            if index == -1:
                raise ValidationError("Tag not found")
            self._require_persisted(tag_id)
        except ValidationError as e:
            self._invalid(str(e))
            return False

        tag = tags[index]
        ticket = self.tickets.take(tag_id)
        self.state.set(tags=tags[:index] + tags[index + 1:])

        try:
            await self.backend.delete_tag(tag_id)
        except Exception as e:
            if self.tickets.is_current(ticket, tag_id) and self.state.find_tag(tag_id) is None:
                remaining = list(self.state.tags)
                remaining.insert(min(index, len(remaining)), tag)
                self.state.set(tags=tuple(remaining))
            self._fail("Failed to delete tag", e)
            return False
        finally:
            self.tickets.release(tag_id)
        return True

    # ── Local-only transitions ───────────────────────────────────────────────

    def merge_tag(self, tag: Tag) -> bool:
        """Insert or replace a tag written by someone else. Idempotent."""
        existing = self.state.find_tag(tag.id)
        if existing == tag:
            return False
        if existing is None:
            self.state.set(tags=tuple(self.state.tags) + (tag,))
        else:
            self._replace_tag(tag.id, lambda t: tag)
        return True

    def remove_tag(self, tag_id: str) -> bool:
        if self.state.find_tag(tag_id) is None:
            return False
        self.state.set(tags=tuple(t for t in self.state.tags if t.id != tag_id))
        return True

    def _replace_tag(self, tag_id: str, fn: Callable[[Tag], Tag]) -> bool:
        tags = list(self.state.tags)
        for i, tag in enumerate(tags):
            if tag.id == tag_id:
                tags[i] = fn(tag)
                self.state.set(tags=tuple(tags))
                return True
        return False


def _color(color: str) -> str:
    try:
        return normalize_color(color)
    except ValueError as e:
        raise ValidationError(str(e))
