"""
Intent-to-operation bridge.

Turns one chat message into at most one mutation engine call. The bridge
has no fast path of its own: every write goes through BoardEngine exactly
as a UI action would, tagged Origin.ASSISTANT. It never guesses between
ambiguous tasks; anything it can't resolve to concrete ids is answered
with the intent service's own response text and no mutation.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .engine import BoardEngine
from .errors import ValidationError
from .intent import (
    CreateOperation,
    DeleteOperation,
    IntentService,
    MoveOperation,
    QueryOperation,
    UpdateOperation,
    summarize_board,
)
from .schema import Column, Origin, Task
from .state import BoardState, ChatMessage, ChatState

logger = logging.getLogger(__name__)


@dataclass
class BridgeResult:
    """Outcome of one chat turn."""
    response: str
    operation: Optional[Dict[str, Any]] = None
    suggestions: List[str] = field(default_factory=list)
    clarification: bool = False


def find_tasks(state: BoardState, query: str) -> List[Tuple[Task, Column]]:
    """Case-insensitive substring match over title, description and assignee."""
    needle = query.lower()
    return [
        (task, column)
        for task, column in state.all_tasks()
        if needle in task.title.lower()
        or needle in (task.description or "").lower()
        or needle in (task.assignee or "").lower()
    ]


class IntentBridge:
    """Routes intent service answers to BoardEngine calls and records the chat."""

    def __init__(self, engine: BoardEngine, state: BoardState, intent_service: IntentService,
                 chat: ChatState):
        self.engine = engine
        self.state = state
        self.intent_service = intent_service
        self.chat = chat

    async def handle_message(self, text: str) -> BridgeResult:
        """Interpret and execute one message.

        Intent service failures are recorded in ChatState.error and
        re-raised; engine failures stay in BoardState.error.
        """
        text = (text or "").strip()
        if not text:
            raise ValidationError("Message is required")

        self.chat.append(ChatMessage(role="user", content=text))
        self.chat.set(is_processing=True)
        columns_summary, tasks_summary = summarize_board(self.state.columns)
        try:
            intent = await self.intent_service.interpret(text, columns_summary, tasks_summary)
        except Exception as e:
            logger.error(f"Intent service failed: {e}")
            self.chat.set(error=f"Failed to process AI request: {e}", is_processing=False)
            raise

        operation = None
        clarification = intent.clarification
        if intent.operation is not None and not clarification:
            operation = await self._execute(intent.operation)
            clarification = operation is None

        self.chat.append(ChatMessage(role="assistant", content=intent.response, operation=operation))
        self.chat.set(is_processing=False)
        return BridgeResult(
            response=intent.response,
            operation=operation,
            suggestions=list(intent.suggestions),
            clarification=clarification,
        )

    async def _execute(self, op) -> Optional[Dict[str, Any]]:
        """Run exactly one engine call. None means the ids didn't resolve."""
        if isinstance(op, QueryOperation):
            matches = find_tasks(self.state, op.query)
            return {
                "type": "query",
                "success": True,
                "details": {"query": op.query},
                "results": [
                    dict(task.to_dict(), columnId=column.id, columnTitle=column.title)
                    for task, column in matches
                ],
            }

        if isinstance(op, CreateOperation):
            column = self.state.find_column(op.column_id)
            if column is None:
                logger.info(f"Create skipped: unknown column {op.column_id}")
                return None
            task = await self.engine.add_task(column.id, op.title, op.description)
            return {
                "type": "create",
                "success": task is not None,
                "details": {"title": op.title, "columnTitle": column.title},
            }

        found = self.state.find_task(op.task_id)
        if found is None:
            logger.info(f"{op.type} skipped: unknown task {op.task_id}")
            return None
        task, column_id = found

        if isinstance(op, UpdateOperation):
            updates = op.updates.changes()
            saved = await self.engine.update_task(task.id, updates)
            return {
                "type": "update",
                "success": saved is not None,
                "details": {"taskId": task.id, "taskTitle": task.title, "updates": updates},
            }

        if isinstance(op, DeleteOperation):
            ok = await self.engine.delete_task(column_id, task.id)
            return {"type": "delete", "success": ok, "details": {"taskTitle": task.title}}

        if isinstance(op, MoveOperation):
            source = self.state.find_column(op.source_column_id)
            target = self.state.find_column(op.target_column_id)
            if source is None or target is None or source.id != column_id:
                logger.info(f"Move skipped: columns don't match task {task.id}")
                return None
            source_index = source.index_of(task.id)
            # Append to the end of the target column
            if source.id == target.id:
                destination_index = len(target.tasks) - 1
            else:
                destination_index = len(target.tasks)
            ok = await self.engine.move_task(
                task.id, source.id, target.id, source_index, destination_index,
                origin=Origin.ASSISTANT,
            )
            return {
                "type": "move",
                "success": ok,
                "details": {"taskTitle": task.title, "sourceColumn": source.title, "targetColumn": target.title},
            }

        return None
