"""
Board storage backend (SQLite).

Durable copy of boards, columns, tasks and tags, plus an append-only
change log that collaborators poll. Positions of columns within a board
and of tasks within a column are kept dense (0..n-1) after every write.
"""
import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .errors import ConflictError, NotFoundError, ValidationError
from .schema import (
    Board,
    ChangeEvent,
    Column,
    EntityKind,
    EventKind,
    Tag,
    Task,
    new_id,
    normalize_color,
    utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_COLUMNS = ("To Do", "In Progress", "Done")

# Parking slot for a task entering a column, above any valid position
TEMP_POSITION = 9999

TASK_FIELDS = ("title", "description", "assignee")
TAG_FIELDS = ("name", "color")


@contextmanager
def _connect(db_path: str):
    """Open a connection with FK enforcement; commit on success, always close."""
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        with conn:
            yield conn
    finally:
        conn.close()


class BoardStore:
    """SQLite-backed store for boards, columns, tasks and tags.

    `actor` is recorded on every change event so a client can skip the
    echoes of its own writes when polling the change log.
    """

    def __init__(self, db_path: str = None, actor: str = ""):
        if db_path is None:
            db_path = str(Path.home() / ".local" / "share" / "taskboard" / "taskboard.db")
        self.db_path = db_path
        self.actor = actor
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _init_schema(self):
        """Create tables if they don't exist."""
        with _connect(self.db_path) as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS boards (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS columns (
                    id TEXT PRIMARY KEY,
                    board_id TEXT NOT NULL REFERENCES boards(id) ON DELETE CASCADE,
                    title TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    column_id TEXT NOT NULL REFERENCES columns(id) ON DELETE CASCADE,
                    title TEXT NOT NULL,
                    description TEXT DEFAULT '',
                    assignee TEXT,
                    position INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tags (
                    id TEXT PRIMARY KEY,
                    board_id TEXT NOT NULL REFERENCES boards(id) ON DELETE CASCADE,
                    name TEXT NOT NULL,
                    color TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    CONSTRAINT tags_board_id_name_key UNIQUE (board_id, name),
                    CONSTRAINT tags_board_id_color_key UNIQUE (board_id, color)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS task_tags (
                    task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
                    tag_id TEXT NOT NULL REFERENCES tags(id) ON DELETE CASCADE,
                    PRIMARY KEY (task_id, tag_id)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS change_events (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    board_id TEXT NOT NULL,
                    entity_kind TEXT NOT NULL,
                    event_kind TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    old TEXT,
                    actor TEXT,
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_columns_board ON columns(board_id, position)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_column ON tasks(column_id, position)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tags_board ON tags(board_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_changes_board ON change_events(board_id, seq)")

    # ── Boards ───────────────────────────────────────────────────────────────

    def list_boards(self) -> List[Board]:
        """All boards, most recently updated first."""
        with _connect(self.db_path) as conn:
            rows = conn.execute("SELECT * FROM boards ORDER BY updated_at DESC").fetchall()
        return [self._row_to_board(row) for row in rows]

    def get_board(self, board_id: Optional[str] = None) -> Tuple[Board, List[Column]]:
        """A board with its columns and their tasks, ordered by position.

        With no board_id, the most recently updated board is returned.
        """
        with _connect(self.db_path) as conn:
            if board_id:
                row = conn.execute("SELECT * FROM boards WHERE id = ?", (board_id,)).fetchone()
            else:
                row = conn.execute(
                    "SELECT * FROM boards ORDER BY updated_at DESC LIMIT 1"
                ).fetchone()
            if not row:
                raise NotFoundError("Board not found")
            board = self._row_to_board(row)

            column_rows = conn.execute(
                "SELECT * FROM columns WHERE board_id = ? ORDER BY position", (board.id,)
            ).fetchall()
            task_rows = conn.execute("""
                SELECT t.* FROM tasks t JOIN columns c ON t.column_id = c.id
                WHERE c.board_id = ? ORDER BY t.position
            """, (board.id,)).fetchall()
            tags_by_task = self._tags_by_task(conn, [r["id"] for r in task_rows])

        tasks_by_column: Dict[str, List[Task]] = {}
        for row in task_rows:
            tasks_by_column.setdefault(row["column_id"], []).append(
                self._row_to_task(row, tags_by_task.get(row["id"], ()))
            )
        columns = [
            self._row_to_column(row, tasks_by_column.get(row["id"], []))
            for row in column_rows
        ]
        return board, columns

    def create_board(self, title: str) -> Board:
        """Create a board with the three default columns."""
        title = (title or "").strip()
        if not title:
            raise ValidationError("Board title is required")
        now = utc_now()
        board = Board(id=new_id(), title=title, created_at=now, updated_at=now)
        with _connect(self.db_path) as conn:
            conn.execute(
                "INSERT INTO boards (id, title, created_at, updated_at) VALUES (?, ?, ?, ?)",
                (board.id, board.title, now, now),
            )
            for position, column_title in enumerate(DEFAULT_COLUMNS):
                conn.execute(
                    "INSERT INTO columns (id, board_id, title, position, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (new_id(), board.id, column_title, position, now, now),
                )
            self._record(conn, board.id, EntityKind.BOARD, EventKind.CREATED, board.to_dict())
        logger.info(f"Created board {board.id} ({board.title})")
        return board

    def delete_board(self, board_id: str) -> None:
        """Delete a board; columns, tasks and tags cascade."""
        with _connect(self.db_path) as conn:
            cur = conn.execute("DELETE FROM boards WHERE id = ?", (board_id,))
            if cur.rowcount == 0:
                raise NotFoundError("Board not found")
            self._record(conn, board_id, EntityKind.BOARD, EventKind.DELETED, {"id": board_id})

    # ── Columns ──────────────────────────────────────────────────────────────

    def create_column(self, board_id: str, title: str, position: Optional[int] = None) -> Column:
        """Insert a column at position (appended when omitted or out of range)."""
        title = (title or "").strip()
        if not title:
            raise ValidationError("Column title is required")
        now = utc_now()
        with _connect(self.db_path) as conn:
            if not conn.execute("SELECT 1 FROM boards WHERE id = ?", (board_id,)).fetchone():
                raise NotFoundError("Board not found")
            ids = self._ordered_ids(conn, "columns", "board_id", board_id)
            if position is None or not 0 <= position <= len(ids):
                position = len(ids)
            column = Column(id=new_id(), title=title, position=position, created_at=now, updated_at=now)
            conn.execute(
                "INSERT INTO columns (id, board_id, title, position, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (column.id, board_id, title, TEMP_POSITION, now, now),
            )
            ids.insert(position, column.id)
            self._write_positions(conn, "columns", ids)
            self._touch_board(conn, board_id, now)
            self._record(conn, board_id, EntityKind.COLUMN, EventKind.CREATED, column.to_dict())
        return column

    def delete_column(self, column_id: str) -> None:
        """Delete a column (its tasks cascade) and compact sibling positions."""
        with _connect(self.db_path) as conn:
            board_id = self._board_of_column(conn, column_id)
            conn.execute("DELETE FROM columns WHERE id = ?", (column_id,))
            self._write_positions(conn, "columns", self._ordered_ids(conn, "columns", "board_id", board_id))
            self._touch_board(conn, board_id)
            self._record(conn, board_id, EntityKind.COLUMN, EventKind.DELETED, {"id": column_id})

    def reorder_columns(self, column_ids: List[str]) -> None:
        """Set column positions from list order. All ids must share one board."""
        if not column_ids:
            raise ValidationError("Columns are required")
        with _connect(self.db_path) as conn:
            marks = ",".join("?" * len(column_ids))
            rows = conn.execute(
                f"SELECT id, board_id FROM columns WHERE id IN ({marks})", list(column_ids)
            ).fetchall()
            if len(rows) != len(set(column_ids)):
                raise NotFoundError("Column not found")
            board_ids = {row["board_id"] for row in rows}
            if len(board_ids) != 1:
                raise ValidationError("Columns belong to different boards")
            board_id = board_ids.pop()
            if len(column_ids) != len(self._ordered_ids(conn, "columns", "board_id", board_id)):
                raise ValidationError("Column list is incomplete")
            self._write_positions(conn, "columns", column_ids)
            self._touch_board(conn, board_id)
            self._record(conn, board_id, EntityKind.COLUMN, EventKind.MOVED, {"columnIds": list(column_ids)})

    # ── Tasks ────────────────────────────────────────────────────────────────

    def create_task(
        self,
        column_id: str,
        title: str,
        description: str = "",
        position: Optional[int] = None,
        assignee: Optional[str] = None,
    ) -> Task:
        """Insert a task at position (appended when omitted or out of range)."""
        title = (title or "").strip()
        if not title:
            raise ValidationError("Task title is required")
        now = utc_now()
        with _connect(self.db_path) as conn:
            board_id = self._board_of_column(conn, column_id)
            ids = self._ordered_ids(conn, "tasks", "column_id", column_id)
            if position is None or not 0 <= position <= len(ids):
                position = len(ids)
            task = Task(
                id=new_id(),
                title=title,
                description=description or "",
                assignee=assignee,
                position=position,
                created_at=now,
                updated_at=now,
            )
            conn.execute(
                "INSERT INTO tasks (id, column_id, title, description, assignee, position, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (task.id, column_id, task.title, task.description, assignee, TEMP_POSITION, now, now),
            )
            ids.insert(position, task.id)
            self._write_positions(conn, "tasks", ids)
            self._touch_board(conn, board_id, now)
            self._record(conn, board_id, EntityKind.TASK, EventKind.CREATED,
                         dict(task.to_dict(), columnId=column_id))
        return task

    def update_task(self, task_id: str, fields: Dict[str, Any]) -> Task:
        """Update title/description/assignee. Unknown fields are rejected."""
        changes = self._pick(fields, TASK_FIELDS)
        if "title" in changes and not (changes["title"] or "").strip():
            raise ValidationError("Task title cannot be empty")
        now = utc_now()
        with _connect(self.db_path) as conn:
            row = self._task_row(conn, task_id)
            old = {k: row[k] for k in changes}
            if changes:
                sets = ", ".join(f"{k} = ?" for k in changes)
                conn.execute(
                    f"UPDATE tasks SET {sets}, updated_at = ? WHERE id = ?",
                    list(changes.values()) + [now, task_id],
                )
            task = self._load_task(conn, task_id)
            board_id = self._board_of_column(conn, row["column_id"])
            self._touch_board(conn, board_id, now)
            self._record(conn, board_id, EntityKind.TASK, EventKind.UPDATED,
                         dict(task.to_dict(), columnId=row["column_id"]), old)
        return task

    def delete_task(self, task_id: str) -> None:
        """Delete a task and compact the positions left behind."""
        with _connect(self.db_path) as conn:
            row = self._task_row(conn, task_id)
            column_id = row["column_id"]
            conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
            self._write_positions(conn, "tasks", self._ordered_ids(conn, "tasks", "column_id", column_id))
            board_id = self._board_of_column(conn, column_id)
            self._touch_board(conn, board_id)
            self._record(conn, board_id, EntityKind.TASK, EventKind.DELETED,
                         {"id": task_id, "columnId": column_id},
                         {"position": row["position"]})

    def move_task(
        self,
        task_id: str,
        source_column_id: str,
        destination_column_id: str,
        destination_index: int,
    ) -> None:
        """Move a task within or across columns; both columns end up dense.

        Cross-column moves park the task at TEMP_POSITION in the destination
        before positions of both columns are re-derived.
        """
        now = utc_now()
        with _connect(self.db_path) as conn:
            row = self._task_row(conn, task_id)
            if row["column_id"] != source_column_id:
                raise ValidationError("Task is not in the source column")
            board_id = self._board_of_column(conn, source_column_id)
            if self._board_of_column(conn, destination_column_id) != board_id:
                raise ValidationError("Columns belong to different boards")

            source_ids = self._ordered_ids(conn, "tasks", "column_id", source_column_id)
            source_index = source_ids.index(task_id)

            if source_column_id == destination_column_id:
                if not 0 <= destination_index < len(source_ids):
                    raise ValidationError(f"Destination index {destination_index} out of range")
                source_ids.pop(source_index)
                source_ids.insert(destination_index, task_id)
                self._write_positions(conn, "tasks", source_ids, now)
            else:
                dest_ids = self._ordered_ids(conn, "tasks", "column_id", destination_column_id)
                if not 0 <= destination_index <= len(dest_ids):
                    raise ValidationError(f"Destination index {destination_index} out of range")
                conn.execute(
                    "UPDATE tasks SET column_id = ?, position = ?, updated_at = ? WHERE id = ?",
                    (destination_column_id, TEMP_POSITION, now, task_id),
                )
                dest_ids.insert(destination_index, task_id)
                self._write_positions(conn, "tasks", dest_ids, now)
                self._write_positions(
                    conn, "tasks", self._ordered_ids(conn, "tasks", "column_id", source_column_id), now
                )
            self._touch_board(conn, board_id, now)
            self._record(conn, board_id, EntityKind.TASK, EventKind.MOVED, {
                "id": task_id,
                "sourceColumnId": source_column_id,
                "destinationColumnId": destination_column_id,
                "destinationIndex": destination_index,
            }, {"columnId": source_column_id, "position": source_index})

    # ── Tags ─────────────────────────────────────────────────────────────────

    def list_tags(self, board_id: str) -> List[Tag]:
        """Tags of a board, sorted by name."""
        with _connect(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM tags WHERE board_id = ? ORDER BY name", (board_id,)
            ).fetchall()
        return [self._row_to_tag(row) for row in rows]

    def create_tag(self, board_id: str, name: str, color: str) -> Tag:
        """Create a tag. Duplicate name or color on the board is a conflict."""
        name = (name or "").strip()
        if not name:
            raise ValidationError("Tag name is required")
        try:
            color = normalize_color(color)
        except ValueError as e:
            raise ValidationError(str(e))
        now = utc_now()
        tag = Tag(id=new_id(), board_id=board_id, name=name, color=color, created_at=now, updated_at=now)
        with _connect(self.db_path) as conn:
            if not conn.execute("SELECT 1 FROM boards WHERE id = ?", (board_id,)).fetchone():
                raise NotFoundError("Board not found")
            try:
                conn.execute(
                    "INSERT INTO tags (id, board_id, name, color, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (tag.id, board_id, name, color, now, now),
                )
            except sqlite3.IntegrityError as e:
                raise self._tag_conflict(e)
            self._record(conn, board_id, EntityKind.TAG, EventKind.CREATED, tag.to_dict())
        return tag

    def update_tag(self, tag_id: str, fields: Dict[str, Any]) -> Tag:
        """Rename and/or recolor a tag."""
        changes = self._pick(fields, TAG_FIELDS)
        if not changes:
            raise ValidationError("At least one field (name or color) is required")
        if "name" in changes:
            changes["name"] = (changes["name"] or "").strip()
            if not changes["name"]:
                raise ValidationError("Tag name cannot be empty")
        if "color" in changes:
            try:
                changes["color"] = normalize_color(changes["color"])
            except ValueError as e:
                raise ValidationError(str(e))
        now = utc_now()
        with _connect(self.db_path) as conn:
            row = conn.execute("SELECT * FROM tags WHERE id = ?", (tag_id,)).fetchone()
            if not row:
                raise NotFoundError("Tag not found")
            sets = ", ".join(f"{k} = ?" for k in changes)
            try:
                conn.execute(
                    f"UPDATE tags SET {sets}, updated_at = ? WHERE id = ?",
                    list(changes.values()) + [now, tag_id],
                )
            except sqlite3.IntegrityError as e:
                raise self._tag_conflict(e)
            tag = self._row_to_tag(conn.execute("SELECT * FROM tags WHERE id = ?", (tag_id,)).fetchone())
            self._record(conn, row["board_id"], EntityKind.TAG, EventKind.UPDATED, tag.to_dict(),
                         {k: row[k] for k in changes})
        return tag

    def delete_tag(self, tag_id: str) -> None:
        """Delete a tag; task associations cascade."""
        with _connect(self.db_path) as conn:
            row = conn.execute("SELECT board_id FROM tags WHERE id = ?", (tag_id,)).fetchone()
            if not row:
                raise NotFoundError("Tag not found")
            conn.execute("DELETE FROM tags WHERE id = ?", (tag_id,))
            self._record(conn, row["board_id"], EntityKind.TAG, EventKind.DELETED, {"id": tag_id})

    def set_task_tags(self, task_id: str, tag_ids: Iterable[str]) -> Task:
        """Replace a task's tags with exactly tag_ids."""
        wanted = list(dict.fromkeys(tag_ids))
        now = utc_now()
        with _connect(self.db_path) as conn:
            row = self._task_row(conn, task_id)
            board_id = self._board_of_column(conn, row["column_id"])
            if wanted:
                marks = ",".join("?" * len(wanted))
                found = conn.execute(
                    f"SELECT id FROM tags WHERE board_id = ? AND id IN ({marks})",
                    [board_id] + wanted,
                ).fetchall()
                if len(found) != len(wanted):
                    raise NotFoundError("Tag not found on this board")
            conn.execute("DELETE FROM task_tags WHERE task_id = ?", (task_id,))
            conn.executemany(
                "INSERT INTO task_tags (task_id, tag_id) VALUES (?, ?)",
                [(task_id, tag_id) for tag_id in wanted],
            )
            conn.execute("UPDATE tasks SET updated_at = ? WHERE id = ?", (now, task_id))
            task = self._load_task(conn, task_id)
            self._record(conn, board_id, EntityKind.TASK, EventKind.UPDATED,
                         dict(task.to_dict(), columnId=row["column_id"]))
        return task

    # ── Change log ───────────────────────────────────────────────────────────

    def get_changes(
        self,
        board_id: str,
        since: int = 0,
        exclude_actor: Optional[str] = None,
        limit: int = 500,
    ) -> List[ChangeEvent]:
        """Change events of a board after sequence number `since`, oldest first."""
        with _connect(self.db_path) as conn:
            if exclude_actor:
                rows = conn.execute("""
                    SELECT * FROM change_events
                    WHERE board_id = ? AND seq > ? AND COALESCE(actor, '') != ?
                    ORDER BY seq LIMIT ?
                """, (board_id, since, exclude_actor, limit)).fetchall()
            else:
                rows = conn.execute("""
                    SELECT * FROM change_events
                    WHERE board_id = ? AND seq > ?
                    ORDER BY seq LIMIT ?
                """, (board_id, since, limit)).fetchall()
        return [
            ChangeEvent(
                seq=row["seq"],
                entity_kind=EntityKind(row["entity_kind"]),
                event_kind=EventKind(row["event_kind"]),
                payload=json.loads(row["payload"]),
                old=json.loads(row["old"]) if row["old"] else {},
                board_id=row["board_id"],
            )
            for row in rows
        ]

    def latest_seq(self, board_id: str) -> int:
        """Sequence number of the newest change of a board (0 if none)."""
        with _connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT MAX(seq) FROM change_events WHERE board_id = ?", (board_id,)
            ).fetchone()
        return row[0] or 0

    # ── Helpers ──────────────────────────────────────────────────────────────

    def _record(self, conn, board_id: str, entity: EntityKind, event: EventKind,
                payload: Dict[str, Any], old: Optional[Dict[str, Any]] = None) -> None:
        conn.execute(
            "INSERT INTO change_events (board_id, entity_kind, event_kind, payload, old, actor, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (board_id, entity.value, event.value, json.dumps(payload),
             json.dumps(old) if old else None, self.actor, utc_now()),
        )

    @staticmethod
    def _pick(fields: Dict[str, Any], allowed: Tuple[str, ...]) -> Dict[str, Any]:
        unknown = set(fields) - set(allowed)
        if unknown:
            raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}")
        return {k: v for k, v in fields.items() if v is not None or k == "assignee"}

    @staticmethod
    def _tag_conflict(error: sqlite3.IntegrityError) -> ConflictError:
        message = str(error)
        if "tags.color" in message or "tags_board_id_color_key" in message:
            return ConflictError("A tag with this color already exists on this board", field="color")
        return ConflictError("A tag with this name already exists on this board", field="name")

    @staticmethod
    def _ordered_ids(conn, table: str, parent_column: str, parent_id: str) -> List[str]:
        rows = conn.execute(
            f"SELECT id FROM {table} WHERE {parent_column} = ? ORDER BY position, created_at",
            (parent_id,),
        ).fetchall()
        return [row["id"] for row in rows]

    @staticmethod
    def _write_positions(conn, table: str, ids: List[str], now: Optional[str] = None) -> None:
        if now:
            conn.executemany(
                f"UPDATE {table} SET position = ?, updated_at = ? WHERE id = ?",
                [(i, now, id_) for i, id_ in enumerate(ids)],
            )
        else:
            conn.executemany(
                f"UPDATE {table} SET position = ? WHERE id = ?",
                [(i, id_) for i, id_ in enumerate(ids)],
            )

    @staticmethod
    def _touch_board(conn, board_id: str, now: Optional[str] = None) -> None:
        conn.execute("UPDATE boards SET updated_at = ? WHERE id = ?", (now or utc_now(), board_id))

    @staticmethod
    def _board_of_column(conn, column_id: str) -> str:
        row = conn.execute("SELECT board_id FROM columns WHERE id = ?", (column_id,)).fetchone()
        if not row:
            raise NotFoundError("Column not found")
        return row["board_id"]

    @staticmethod
    def _task_row(conn, task_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        if not row:
            raise NotFoundError("Task not found")
        return row

    def _load_task(self, conn, task_id: str) -> Task:
        row = self._task_row(conn, task_id)
        return self._row_to_task(row, self._tags_by_task(conn, [task_id]).get(task_id, ()))

    def _tags_by_task(self, conn, task_ids: List[str]) -> Dict[str, Tuple[Tag, ...]]:
        if not task_ids:
            return {}
        marks = ",".join("?" * len(task_ids))
        rows = conn.execute(f"""
            SELECT tt.task_id AS task_id, g.* FROM task_tags tt
            JOIN tags g ON g.id = tt.tag_id
            WHERE tt.task_id IN ({marks}) ORDER BY g.name
        """, task_ids).fetchall()
        result: Dict[str, List[Tag]] = {}
        for row in rows:
            result.setdefault(row["task_id"], []).append(self._row_to_tag(row))
        return {k: tuple(v) for k, v in result.items()}

    @staticmethod
    def _row_to_board(row: sqlite3.Row) -> Board:
        return Board(id=row["id"], title=row["title"],
                     created_at=row["created_at"], updated_at=row["updated_at"])

    @staticmethod
    def _row_to_column(row: sqlite3.Row, tasks: List[Task]) -> Column:
        return Column(id=row["id"], title=row["title"], position=row["position"],
                      tasks=tuple(tasks), created_at=row["created_at"], updated_at=row["updated_at"])

    @staticmethod
    def _row_to_task(row: sqlite3.Row, tags: Tuple[Tag, ...]) -> Task:
        return Task(
            id=row["id"],
            title=row["title"],
            description=row["description"] or "",
            assignee=row["assignee"],
            position=row["position"],
            tags=tuple(tags),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_tag(row: sqlite3.Row) -> Tag:
        return Tag(id=row["id"], board_id=row["board_id"], name=row["name"], color=row["color"],
                   created_at=row["created_at"], updated_at=row["updated_at"])
