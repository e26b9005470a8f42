"""
External change reconciler: merges collaborators' edits into local state.

Change events come from a feed (PollingChangeFeed over the backend's
change log). Every event describes something that is already durable
server-side, so it is mirrored locally without any remote call or
rollback. When local state can't place an event (unknown task or column),
the cache is presumed stale and the board is refetched.

Events touching an entity with a local mutation in flight are held back
and replayed once that entity settles; moves are also held while a drag
is in progress.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from .backend import BoardBackend
from .engine import BoardEngine, TagEngine
from .errors import NotFoundError
from .schema import ChangeEvent, EntityKind, EventKind, Origin, Tag, Task

logger = logging.getLogger(__name__)

APPLIED = "applied"
IGNORED = "ignored"
DEFERRED = "deferred"
REFETCHED = "refetched"

DRAG_KEY = "__drag__"


class PollingChangeFeed:
    """Pollable view over a board's change log."""

    def __init__(self, backend: BoardBackend, board_id: str, interval: float = 2.0, since: int = 0):
        self.backend = backend
        self.board_id = board_id
        self.interval = interval
        self.since = since

    async def poll(self) -> List[ChangeEvent]:
        """Events newer than the last one seen."""
        events = await self.backend.get_changes(self.board_id, self.since)
        if events:
            self.since = max(self.since, max(e.seq for e in events))
        return events

    async def prime(self) -> int:
        """Skip history: advance past every event that exists right now."""
        while await self.poll():
            pass
        return self.since

    async def stream(self, stop: Optional[asyncio.Event] = None):
        """Yield events as they arrive until `stop` is set."""
        while stop is None or not stop.is_set():
            try:
                events = await self.poll()
            except Exception as e:
                logger.warning(f"Change poll failed for board {self.board_id}: {e}")
                events = []
            for event in events:
                yield event
            if stop is None:
                await asyncio.sleep(self.interval)
                continue
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass


class ChangeReconciler:
    """Applies change events to the board and tag state through their engines."""

    def __init__(
        self,
        board_engine: BoardEngine,
        tag_engine: TagEngine,
        refetch: Optional[Callable[[], Awaitable]] = None,
    ):
        self.board_engine = board_engine
        self.tag_engine = tag_engine
        self.board_state = board_engine.state
        self._refetch = refetch or self._refetch_current_board
        self._deferred: Dict[str, List[ChangeEvent]] = {}
        self._refetch_wanted = False
        self._background = set()

        board_engine.on_settled(self._on_settled)
        tag_engine.on_settled(self._on_settled)
        self.board_state.subscribe(self._on_board_state)

    # ── Entry points ─────────────────────────────────────────────────────────

    async def consume(self, feed: PollingChangeFeed, stop: Optional[asyncio.Event] = None) -> None:
        async for event in feed.stream(stop):
            await self.handle(event)

    async def handle(self, event: ChangeEvent) -> str:
        """Apply one event. Returns what happened to it."""
        current = self.board_state.board
        if event.entity_kind is not EntityKind.BOARD and current is not None \
                and event.board_id and event.board_id != current.id:
            return IGNORED

        key = self._defer_key(event)
        if key is not None:
            self._deferred.setdefault(key, []).append(event)
            logger.info(f"Deferred {event.entity_kind.value} {event.event_kind.value} (seq {event.seq})")
            return DEFERRED

        try:
            outcome = await self._apply(event)
        except NotFoundError as e:
            logger.warning(f"Reconcile seq {event.seq}: {e}; refetching board")
            outcome = REFETCHED
        if outcome == REFETCHED:
            await self.refetch()
        return outcome

    async def refetch(self) -> None:
        """Reload the board, postponed while local mutations are in flight."""
        if self.board_engine.has_in_flight():
            self._refetch_wanted = True
            return
        self._refetch_wanted = False
        await self._refetch()

    @property
    def pending_count(self) -> int:
        return sum(len(events) for events in self._deferred.values())

    # ── Dispatch ─────────────────────────────────────────────────────────────

    def _defer_key(self, event: ChangeEvent) -> Optional[str]:
        entity_id = event.payload.get("id")
        if event.entity_kind is EntityKind.TASK:
            if event.event_kind is EventKind.MOVED and self.board_state.is_dragging:
                return DRAG_KEY
            if entity_id and self.board_engine.is_busy(entity_id):
                return entity_id
        elif event.entity_kind is EntityKind.TAG:
            if entity_id and self.tag_engine.is_busy(entity_id):
                return entity_id
        return None

    async def _apply(self, event: ChangeEvent) -> str:
        handler = {
            EntityKind.TASK: self._apply_task,
            EntityKind.COLUMN: self._apply_column,
            EntityKind.TAG: self._apply_tag,
            EntityKind.BOARD: self._apply_board,
        }[event.entity_kind]
        return await handler(event)

    async def _apply_task(self, event: ChangeEvent) -> str:
        payload = event.payload
        if event.event_kind is EventKind.MOVED:
            return await self._apply_move(payload)
        if event.event_kind is EventKind.DELETED:
            return APPLIED if self.board_engine.remove_remote_task(payload["id"]) else IGNORED
        task = Task.from_dict(payload)
        changed = self.board_engine.apply_remote_task(payload["columnId"], task)
        return APPLIED if changed else IGNORED

    async def _apply_move(self, payload: Dict) -> str:
        task_id = payload["id"]
        destination_id = payload["destinationColumnId"]
        destination_index = int(payload["destinationIndex"])

        found = self.board_state.find_task(task_id)
        if found is None:
            raise NotFoundError(f"Task {task_id} not found")
        destination = self.board_state.find_column(destination_id)
        if destination is None:
            raise NotFoundError(f"Column {destination_id} not found")

        source_id = found[1]
        source_index = self.board_state.find_column(source_id).index_of(task_id)
        if source_id == destination_id:
            limit = len(destination.tasks) - 1
            if source_index == destination_index:
                return IGNORED
        else:
            limit = len(destination.tasks)
        if destination_index > limit:
            raise NotFoundError(f"Index {destination_index} out of range in column {destination_id}")

        await self.board_engine.move_task(
            task_id, source_id, destination_id, source_index, destination_index,
            origin=Origin.REMOTE_ECHO,
        )
        return APPLIED

    async def _apply_column(self, event: ChangeEvent) -> str:
        if event.event_kind is EventKind.UPDATED:
            changed = self.board_engine.apply_remote_column(event.payload["id"], event.payload.get("title", ""))
            return APPLIED if changed else IGNORED
        # Structural column changes: full refetch
        return REFETCHED

    async def _apply_tag(self, event: ChangeEvent) -> str:
        if event.event_kind is EventKind.DELETED:
            tag_id = event.payload["id"]
            removed = self.tag_engine.remove_tag(tag_id)
            detached = self.board_engine.detach_tag(tag_id)
            return APPLIED if removed or detached else IGNORED
        tag = Tag.from_dict(event.payload)
        merged = self.tag_engine.merge_tag(tag)
        refreshed = self.board_engine.apply_tag_change(tag)
        return APPLIED if merged or refreshed else IGNORED

    async def _apply_board(self, event: ChangeEvent) -> str:
        if event.event_kind is EventKind.DELETED:
            current = self.board_state.board
            self.board_engine.remove_remote_board(event.payload["id"])
            if current is not None and current.id == event.payload["id"]:
                self.tag_engine.state.set(tags=())
            return APPLIED
        await self.board_engine.fetch_user_boards()
        return APPLIED

    async def _refetch_current_board(self) -> None:
        board = self.board_state.board
        await self.board_engine.fetch_board(board.id if board else None)

    # ── Replay ───────────────────────────────────────────────────────────────

    async def flush(self) -> None:
        """Replay whatever is no longer blocked and wait for background work."""
        for key in list(self._deferred):
            if not self._blocked(key):
                await self._replay(key)
        await self._refetch_if_wanted()
        while self._background:
            await asyncio.gather(*list(self._background))

    def _blocked(self, key: str) -> bool:
        if key == DRAG_KEY:
            return bool(self.board_state.is_dragging)
        return self.board_engine.is_busy(key) or self.tag_engine.is_busy(key)

    def _on_settled(self, entity_id: str) -> None:
        if entity_id in self._deferred:
            self._schedule(self._replay, entity_id)
        if self._refetch_wanted and not self.board_engine.has_in_flight():
            self._schedule(self._refetch_if_wanted)

    def _on_board_state(self, state, changes) -> None:
        if changes.get("is_dragging") is False and DRAG_KEY in self._deferred:
            self._schedule(self._replay, DRAG_KEY)

    async def _replay(self, key: str) -> None:
        for event in self._deferred.pop(key, []):
            await self.handle(event)

    async def _refetch_if_wanted(self) -> None:
        if self._refetch_wanted:
            await self.refetch()

    def _schedule(self, func, *args) -> None:
        # Without a running loop the work stays queued for flush()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(func(*args))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
