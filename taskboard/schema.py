"""
Taskboard entities and enums.

Board → Columns (ordered by position) → Tasks (ordered by position) ↔ Tags

Entities are frozen: every state transition builds new values with
dataclasses.replace, so a snapshot taken before a mutation is never
changed by the mutation itself.
"""
import re
import uuid
from enum import Enum
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Optional, Tuple, Dict, Any

HEX_COLOR_RE = re.compile(r"^#[0-9A-F]{6}$", re.IGNORECASE)


def new_id() -> str:
    """Unique id, same format the store assigns to persisted rows."""
    return str(uuid.uuid4())


def utc_now() -> str:
    """ISO-8601 UTC timestamp."""
    return datetime.now(timezone.utc).isoformat()


class EntityKind(Enum):
    BOARD = "board"
    COLUMN = "column"
    TASK = "task"
    TAG = "tag"


class EventKind(Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    MOVED = "moved"


class Origin(Enum):
    """Who initiated a mutation."""
    LOCAL = "local"              # UI action: full optimistic protocol
    REMOTE_ECHO = "remote_echo"  # Already durable server-side: local mirror only
    ASSISTANT = "assistant"      # Intent bridge: full optimistic protocol


@dataclass(frozen=True)
class Tag:
    id: str
    board_id: str
    name: str
    color: str
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "boardId": self.board_id,
            "name": self.name,
            "color": self.color,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Tag":
        return cls(
            id=data["id"],
            board_id=data.get("boardId", ""),
            name=data.get("name", ""),
            color=data.get("color", ""),
            created_at=data.get("createdAt") or utc_now(),
            updated_at=data.get("updatedAt") or utc_now(),
        )


@dataclass(frozen=True)
class Task:
    """A unit of work. Called "card" by older API routes; same entity."""
    id: str
    title: str
    description: str = ""
    assignee: Optional[str] = None
    position: int = 0
    tags: Tuple[Tag, ...] = ()
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "assignee": self.assignee,
            "position": self.position,
            "tags": [t.to_dict() for t in self.tags],
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            description=data.get("description") or "",
            assignee=data.get("assignee"),
            position=int(data.get("position", 0)),
            tags=tuple(Tag.from_dict(t) for t in data.get("tags") or []),
            created_at=data.get("createdAt") or utc_now(),
            updated_at=data.get("updatedAt") or utc_now(),
        )


@dataclass(frozen=True)
class Column:
    id: str
    title: str
    position: int = 0
    tasks: Tuple[Task, ...] = ()
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    def index_of(self, task_id: str) -> int:
        """Index of a task in this column, or -1."""
        for i, task in enumerate(self.tasks):
            if task.id == task_id:
                return i
        return -1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "position": self.position,
            "tasks": [t.to_dict() for t in self.tasks],
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Column":
        # Older routes call the task list "cards"
        raw_tasks = data.get("tasks")
        if raw_tasks is None:
            raw_tasks = data.get("cards") or []
        tasks = sorted((Task.from_dict(t) for t in raw_tasks), key=lambda t: t.position)
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            position=int(data.get("position", 0)),
            tasks=tuple(tasks),
            created_at=data.get("createdAt") or utc_now(),
            updated_at=data.get("updatedAt") or utc_now(),
        )


@dataclass(frozen=True)
class Board:
    id: str
    title: str
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Board":
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            created_at=data.get("createdAt") or utc_now(),
            updated_at=data.get("updatedAt") or utc_now(),
        )


@dataclass(frozen=True)
class ChangeEvent:
    """One entry of the collaborator change feed."""
    seq: int
    entity_kind: EntityKind
    event_kind: EventKind
    payload: Dict[str, Any] = field(default_factory=dict)
    old: Dict[str, Any] = field(default_factory=dict)
    board_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seq": self.seq,
            "entityKind": self.entity_kind.value,
            "eventKind": self.event_kind.value,
            "payload": self.payload,
            "old": self.old,
            "boardId": self.board_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChangeEvent":
        return cls(
            seq=int(data.get("seq", 0)),
            entity_kind=EntityKind(data["entityKind"]),
            event_kind=EventKind(data["eventKind"]),
            payload=data.get("payload") or {},
            old=data.get("old") or {},
            board_id=data.get("boardId", ""),
        )


def normalize_color(color: str) -> str:
    """Upper-case a #RRGGBB color. Raises ValueError on anything else."""
    value = (color or "").strip()
    if not HEX_COLOR_RE.match(value):
        raise ValueError("Color must be a valid hex color code (e.g., #FF5733)")
    return value.upper()


def touch(entity, **changes):
    """Copy of an entity with changes applied and a fresh updated_at."""
    return replace(entity, updated_at=utc_now(), **changes)
