"""
One client's view of the board: state containers, engines, change feed
and chat bridge wired together. Containers are created here and passed
by reference; nothing is shared through module globals.
"""
import asyncio
import logging
from typing import Any, Dict, Optional

from .backend import BoardBackend, SqliteBackend
from .bridge import BridgeResult, IntentBridge
from .config import TaskboardConfig
from .engine import BoardEngine, TagEngine, confirm_matches, error_message
from .errors import ConfigError
from .http_backend import HttpBackend
from .intent import IntentService, LLMIntentService
from .reconciler import ChangeReconciler, PollingChangeFeed
from .schema import Board, Tag
from .state import BoardState, ChatState, TagState

logger = logging.getLogger(__name__)


class BoardSession:
    """Everything a UI or chat surface needs to edit one board at a time."""

    def __init__(self, backend: BoardBackend, intent_service: Optional[IntentService] = None,
                 poll_interval: float = 2.0):
        self.backend = backend
        self.poll_interval = poll_interval

        self.board_state = BoardState()
        self.tag_state = TagState()
        self.chat_state = ChatState()

        self.board_engine = BoardEngine(self.board_state, backend)
        self.tag_engine = TagEngine(self.tag_state, backend)
        self.reconciler = ChangeReconciler(self.board_engine, self.tag_engine)
        self.bridge = (
            IntentBridge(self.board_engine, self.board_state, intent_service, self.chat_state)
            if intent_service else None
        )

        self._stop: Optional[asyncio.Event] = None
        self._watcher: Optional[asyncio.Task] = None

    @classmethod
    def from_config(cls, cfg: TaskboardConfig) -> "BoardSession":
        if cfg.api_url:
            backend = HttpBackend(cfg.api_url, cfg.api_key, cfg.client_id or None, cfg.request_timeout)
        else:
            backend = SqliteBackend(cfg.db_path, cfg.client_id or None)
        intent = None
        if cfg.intent_api_key:
            intent = LLMIntentService(cfg.intent_api_url, cfg.intent_api_key, cfg.intent_model,
                                      cfg.intent_timeout)
        return cls(backend, intent, cfg.poll_interval)

    @property
    def board(self) -> Optional[Board]:
        return self.board_state.board

    # ── Board lifecycle ──────────────────────────────────────────────────────

    async def open_board(self, board_id: Optional[str] = None, watch: bool = True) -> Optional[Board]:
        """Load a board and its tags, then follow collaborators' changes.

        The change feed is primed before the load, so writes that land while
        the board is being read still arrive through the feed.
        """
        await self.stop_watching()
        feed = None
        if watch:
            if board_id is None:
                # Most recent board: learn its id, then load it again after priming
                resolved = await self.board_engine.fetch_board()
                if resolved is None:
                    return None
                board_id = resolved.id
            feed = PollingChangeFeed(self.backend, board_id, self.poll_interval)
            try:
                await feed.prime()
            except Exception as e:
                message = error_message("Failed to fetch board data", e)
                logger.error(message)
                self.board_state.set(error=message)
                return None

        board = await self.board_engine.fetch_board(board_id)
        if board is None:
            return None
        await self.tag_engine.fetch_tags(board.id)
        if feed is not None:
            self._stop = asyncio.Event()
            self._watcher = asyncio.get_running_loop().create_task(
                self.reconciler.consume(feed, self._stop)
            )
        return board

    async def stop_watching(self) -> None:
        if self._watcher is None:
            return
        self._stop.set()
        try:
            await self._watcher
        except Exception as e:
            logger.error(f"Change watcher ended with error: {e}")
        self._watcher = None
        self._stop = None

    async def close(self) -> None:
        await self.stop_watching()
        await self.reconciler.flush()

    async def delete_board(self, board_id: str, confirmation: str) -> bool:
        """Delete a board only if `confirmation` is its exact title."""
        board = next((b for b in self.board_state.boards if b.id == board_id), None)
        if board is None and self.board is not None and self.board.id == board_id:
            board = self.board
        if not confirm_matches(board, confirmation):
            self.board_state.set(error="Board title does not match")
            return False
        was_current = self.board is not None and self.board.id == board_id
        if was_current:
            await self.stop_watching()
        ok = await self.board_engine.delete_board(board_id)
        if ok and was_current:
            self.tag_state.set(tags=())
        return ok

    # ── Tags (keep task-embedded copies in step) ─────────────────────────────

    async def update_tag(self, tag_id: str, updates: Dict[str, Any]) -> Optional[Tag]:
        saved = await self.tag_engine.update_tag(tag_id, updates)
        if saved is not None:
            self.board_engine.apply_tag_change(saved)
        return saved

    async def delete_tag(self, tag_id: str) -> bool:
        ok = await self.tag_engine.delete_tag(tag_id)
        if ok:
            self.board_engine.detach_tag(tag_id)
        return ok

    async def set_task_tags(self, task_id: str, tag_ids) -> bool:
        task = await self.board_engine.update_task_tags(
            task_id, tag_ids, self.tag_state.tags, self.tag_engine.pending
        )
        return task is not None

    # ── Chat ─────────────────────────────────────────────────────────────────

    async def chat(self, text: str) -> BridgeResult:
        if self.bridge is None:
            raise ConfigError("No intent service configured (set TASKBOARD_INTENT_API_KEY)")
        return await self.bridge.handle_message(text)
