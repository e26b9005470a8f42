"""
Natural-language intent service: free text + board summary -> one operation.

The service's reply is untrusted JSON. Each operation kind is its own
pydantic model, discriminated on `type`, so required fields are enforced
per kind at the boundary:

    create  title, columnId
    query   query           ("read" is accepted as the same kind)
    update  taskId, updates
    delete  taskId
    move    taskId, sourceColumnId, targetColumnId

An operation that fails validation is dropped and the turn becomes a
clarification: the service's response text is shown as-is and nothing
is executed.
"""
import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Annotated, Any, Dict, List, Literal, Optional, Sequence, Tuple, Union

import pydantic
import requests
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator
from pydantic.alias_generators import to_camel

from .errors import IntentError
from .schema import Column

logger = logging.getLogger(__name__)

# Only this many tasks are described to the service
MAX_PROMPT_TASKS = 20


INTENT_PROMPT = """You are an AI assistant that helps users manage tasks on their kanban board through natural language.

Available columns: {columns_info}
Current tasks: {tasks_info}

Decide which single operation the user wants:

- create: keywords "create", "add", "new task". Needs title and columnId.
- query: keywords "show", "find", "list", "which", "search". Needs query (text to match).
- update: keywords "update", "change", "assign", "rename". Needs taskId and updates
  (any of title, description, assignee).
- delete: keywords "delete", "remove", "drop". Needs taskId and columnId.
- move: keywords "move", "put", "transfer". Needs taskId, sourceColumnId and targetColumnId.

Identify tasks and columns by the ids listed above. If the message is unclear or matches
several tasks, do not guess: omit "operation" and ask for clarification in "response".

Respond with ONLY a JSON object, no markdown, no explanation:
{{"operation": {{"type": "...", "details": {{...}}, "query": "..."}},
  "response": "message to the user",
  "suggestions": ["optional follow-up", "..."]}}"""


class _OperationModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class TaskUpdates(_OperationModel):
    title: Optional[str] = None
    description: Optional[str] = None
    assignee: Optional[str] = None

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class CreateOperation(_OperationModel):
    type: Literal["create"]
    title: str = Field(min_length=1)
    column_id: str = Field(min_length=1)
    description: str = ""


class QueryOperation(_OperationModel):
    type: Literal["query", "read"]
    query: str = Field(min_length=1)


class UpdateOperation(_OperationModel):
    type: Literal["update"]
    task_id: str = Field(min_length=1)
    updates: TaskUpdates
    column_id: Optional[str] = None

    @model_validator(mode="after")
    def _has_changes(self):
        if not self.updates.changes():
            raise ValueError("updates must change at least one field")
        return self


class DeleteOperation(_OperationModel):
    type: Literal["delete"]
    task_id: str = Field(min_length=1)
    column_id: Optional[str] = None
    task_title: Optional[str] = None


class MoveOperation(_OperationModel):
    type: Literal["move"]
    task_id: str = Field(min_length=1)
    source_column_id: str = Field(min_length=1)
    target_column_id: str = Field(min_length=1)
    task_title: Optional[str] = None


Operation = Annotated[
    Union[CreateOperation, QueryOperation, UpdateOperation, DeleteOperation, MoveOperation],
    Field(discriminator="type"),
]

_operation_adapter = TypeAdapter(Operation)


class IntentResponse(BaseModel):
    """What the intent service decided for one user message."""
    operation: Optional[Operation] = None
    response: str = ""
    suggestions: List[str] = Field(default_factory=list)
    clarification: bool = False


def summarize_board(columns: Sequence[Column]) -> Tuple[List[Dict[str, str]], List[Dict[str, Any]]]:
    """Column and task summaries sent to the intent service (tasks bounded)."""
    columns_summary = [{"id": c.id, "title": c.title} for c in columns]
    tasks_summary = [
        {"id": t.id, "title": t.title, "columnId": c.id, "columnTitle": c.title, "assignee": t.assignee}
        for c in columns for t in c.tasks
    ][:MAX_PROMPT_TASKS]
    return columns_summary, tasks_summary


def build_prompt(columns_summary: Sequence[Dict[str, Any]], tasks_summary: Sequence[Dict[str, Any]]) -> str:
    """System prompt describing the board."""
    columns_info = ", ".join(f"{c['id']}: {c['title']}" for c in columns_summary)
    tasks_info = ", ".join(
        f"{t['id']}: \"{t['title']}\" (in {t.get('columnTitle', '')}, "
        f"assigned to {t.get('assignee') or 'unassigned'})"
        for t in list(tasks_summary)[:MAX_PROMPT_TASKS]
    )
    return INTENT_PROMPT.format(columns_info=columns_info, tasks_info=tasks_info)


def _flatten_operation(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Merge the wire shape {type, details: {...}, query} into one mapping."""
    flat = dict(raw.get("details") or {})
    for key, value in raw.items():
        if key != "details" and value is not None:
            flat[key] = value
    return flat


def parse_intent_response(text: str) -> IntentResponse:
    """Parse the service's JSON reply. Raises IntentError if it isn't JSON."""
    text = (text or "").strip()
    if text.startswith("```"):
        text = re.sub(r'^```(?:json)?\s*', '', text)
        text = re.sub(r'\s*```$', '', text)

    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        match = re.search(r'\{.*\}', text, re.DOTALL)
        if not match:
            raise IntentError("Intent service returned no JSON")
        try:
            data = json.loads(match.group())
        except json.JSONDecodeError:
            raise IntentError("Intent service returned invalid JSON")
    if not isinstance(data, dict):
        raise IntentError("Intent service returned invalid JSON")

    response = data.get("response")
    suggestions = data.get("suggestions")
    result = IntentResponse(
        response=response if isinstance(response, str) else "",
        suggestions=[str(s) for s in suggestions] if isinstance(suggestions, list) else [],
    )

    raw = data.get("operation")
    if not raw:
        return result
    if not isinstance(raw, dict):
        result.clarification = True
        return result
    try:
        result.operation = _operation_adapter.validate_python(_flatten_operation(raw))
    except pydantic.ValidationError as e:
        logger.info(f"Operation rejected, asking for clarification: {e.error_count()} error(s)")
        result.clarification = True
    return result


class IntentService(ABC):
    """Black box: message + board summary -> IntentResponse."""

    @abstractmethod
    async def interpret(self, message: str, columns_summary: Sequence[Dict[str, Any]],
                        tasks_summary: Sequence[Dict[str, Any]]) -> IntentResponse:
        """Raise IntentError when no usable answer could be obtained."""


class LLMIntentService(IntentService):
    """Intent service over an OpenAI-compatible chat completions endpoint."""

    def __init__(self, api_url: str, api_key: str = "", model: str = "gpt-4o-mini", timeout: float = 30.0):
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout = timeout

    def _complete(self, system: str, message: str) -> str:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        body = {
            "model": self.model,
            "temperature": 0,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": message},
            ],
        }
        try:
            r = requests.post(f"{self.api_url}/chat/completions", json=body, headers=headers,
                              timeout=self.timeout)
        except requests.RequestException as e:
            raise IntentError(str(e))
        if not r.ok:
            raise IntentError(f"Intent service returned HTTP {r.status_code}")
        try:
            return r.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError):
            raise IntentError("Unexpected intent service reply")

    async def interpret(self, message, columns_summary, tasks_summary):
        system = build_prompt(columns_summary, tasks_summary)
        content = await asyncio.to_thread(self._complete, system, message)
        return parse_intent_response(content)
