"""Tests for intent parsing, prompt building and the LLM intent service."""

import asyncio
import json
from unittest.mock import MagicMock, patch

import pytest
import requests

from taskboard.errors import IntentError
from taskboard.intent import (
    MAX_PROMPT_TASKS,
    CreateOperation,
    DeleteOperation,
    LLMIntentService,
    MoveOperation,
    QueryOperation,
    UpdateOperation,
    build_prompt,
    parse_intent_response,
    summarize_board,
)
from taskboard.schema import Column, Task

from conftest import build_columns


def _reply(operation=None, response="ok", suggestions=None):
    data = {"response": response, "suggestions": suggestions or []}
    if operation is not None:
        data["operation"] = operation
    return json.dumps(data)


# ━━━ Parsing ━━━


def test_parse_create():
    result = parse_intent_response(_reply(
        {"type": "create", "details": {"title": "Fix login", "columnId": "to-do"}}
    ))
    assert isinstance(result.operation, CreateOperation)
    assert result.operation.title == "Fix login"
    assert result.operation.column_id == "to-do"
    assert result.clarification is False


def test_parse_query_top_level_field():
    result = parse_intent_response(_reply({"type": "query", "query": "login"}))
    assert isinstance(result.operation, QueryOperation)
    assert result.operation.query == "login"


def test_parse_read_is_a_query():
    result = parse_intent_response(_reply({"type": "read", "details": {}, "query": "ana"}))
    assert isinstance(result.operation, QueryOperation)


def test_parse_update_requires_a_change():
    result = parse_intent_response(_reply(
        {"type": "update", "details": {"taskId": "t1", "updates": {}}}, response="What should change?"
    ))
    assert result.operation is None
    assert result.clarification is True
    assert result.response == "What should change?"


def test_parse_update():
    result = parse_intent_response(_reply(
        {"type": "update", "details": {"taskId": "t1", "updates": {"assignee": "ana"}}}
    ))
    assert isinstance(result.operation, UpdateOperation)
    assert result.operation.updates.changes() == {"assignee": "ana"}


def test_parse_move_and_delete():
    move = parse_intent_response(_reply({"type": "move", "details": {
        "taskId": "t1", "sourceColumnId": "to-do", "targetColumnId": "done"}}))
    assert isinstance(move.operation, MoveOperation)
    assert move.operation.target_column_id == "done"
    delete = parse_intent_response(_reply({"type": "delete", "details": {"taskId": "t1"}}))
    assert isinstance(delete.operation, DeleteOperation)


def test_parse_missing_required_field_asks_for_clarification():
    result = parse_intent_response(_reply({"type": "move", "details": {"taskId": "t1"}}))
    assert result.operation is None
    assert result.clarification is True


def test_parse_unknown_type_asks_for_clarification():
    result = parse_intent_response(_reply({"type": "archive", "details": {"taskId": "t1"}}))
    assert result.clarification is True


def test_parse_without_operation():
    result = parse_intent_response(_reply(response="Which task do you mean?", suggestions=["Fix login"]))
    assert result.operation is None
    assert result.clarification is False
    assert result.suggestions == ["Fix login"]


def test_parse_strips_code_fences():
    text = "```json\n" + _reply({"type": "query", "query": "x"}) + "\n```"
    assert isinstance(parse_intent_response(text).operation, QueryOperation)


def test_parse_finds_embedded_json():
    text = "Sure! " + _reply({"type": "query", "query": "x"}) + " Hope that helps."
    assert isinstance(parse_intent_response(text).operation, QueryOperation)


def test_parse_rejects_non_json():
    with pytest.raises(IntentError):
        parse_intent_response("I can't help with that")


# ━━━ Prompt ━━━


def test_summarize_board_bounds_tasks():
    many = [f"Task {i}" for i in range(MAX_PROMPT_TASKS + 5)]
    columns = build_columns([("To Do", many), ("Done", ["Last"])])
    columns_summary, tasks_summary = summarize_board(columns)
    assert columns_summary == [{"id": "to-do", "title": "To Do"}, {"id": "done", "title": "Done"}]
    assert len(tasks_summary) == MAX_PROMPT_TASKS
    assert tasks_summary[0] == {"id": "task 0", "title": "Task 0", "columnId": "to-do",
                                "columnTitle": "To Do", "assignee": None}


def test_build_prompt_lists_columns_and_tasks():
    columns = (Column(id="c1", title="To Do", tasks=(Task(id="t1", title="Fix login", assignee="ana"),)),)
    prompt = build_prompt(*summarize_board(columns))
    assert "c1: To Do" in prompt
    assert 't1: "Fix login" (in To Do, assigned to ana)' in prompt


# ━━━ LLMIntentService ━━━


def _http_response(content, status=200):
    response = MagicMock()
    response.ok = status < 400
    response.status_code = status
    response.json.return_value = {"choices": [{"message": {"content": content}}]}
    return response


def test_llm_service_posts_chat_completion():
    service = LLMIntentService("https://llm.example/v1/", api_key="sk-test", model="m1")
    reply = _reply({"type": "query", "query": "login"}, response="Here you go")
    with patch("taskboard.intent.requests.post", return_value=_http_response(reply)) as post:
        result = asyncio.run(service.interpret("find login", [], []))
    assert isinstance(result.operation, QueryOperation)
    assert result.response == "Here you go"
    url = post.call_args.args[0]
    kwargs = post.call_args.kwargs
    assert url == "https://llm.example/v1/chat/completions"
    assert kwargs["headers"]["Authorization"] == "Bearer sk-test"
    assert kwargs["json"]["model"] == "m1"
    assert kwargs["json"]["messages"][1] == {"role": "user", "content": "find login"}


def test_llm_service_http_error():
    service = LLMIntentService("https://llm.example/v1")
    with patch("taskboard.intent.requests.post", return_value=_http_response("", status=502)):
        with pytest.raises(IntentError, match="HTTP 502"):
            asyncio.run(service.interpret("hi", [], []))


def test_llm_service_network_error():
    service = LLMIntentService("https://llm.example/v1")
    with patch("taskboard.intent.requests.post", side_effect=requests.ConnectionError("refused")):
        with pytest.raises(IntentError, match="refused"):
            asyncio.run(service.interpret("hi", [], []))
