"""
Tests for the board server API, using Flask's test client.
"""

import pytest

import board_server

SECRET = "s3cret"


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("TASKBOARD_DB", str(tmp_path / "server.db"))
    monkeypatch.setenv("TASKBOARD_API_SECRET", SECRET)
    board_server.app.config["TESTING"] = True
    with board_server.app.test_client() as c:
        yield c


def _headers(client_id="web"):
    return {"X-API-Key": SECRET, "X-Client-Id": client_id}


def _board(client):
    r = client.post("/api/boards", json={"title": "Sprint"}, headers=_headers())
    assert r.status_code == 201
    board = r.get_json()["board"]
    columns = client.get(f"/api/board?boardId={board['id']}").get_json()["columns"]
    return board, columns


# ━━━ Auth ━━━


def test_missing_key(client):
    assert client.post("/api/boards", json={"title": "x"}).status_code == 401


def test_wrong_key(client):
    r = client.post("/api/boards", json={"title": "x"}, headers={"X-API-Key": "nope"})
    assert r.status_code == 403


def test_secret_not_configured(client, monkeypatch):
    monkeypatch.delenv("TASKBOARD_API_SECRET")
    r = client.post("/api/boards", json={"title": "x"}, headers=_headers())
    assert r.status_code == 503


def test_reads_are_open(client):
    assert client.get("/api/boards").status_code == 200
    assert client.get("/health").get_json()["status"] == "ok"


# ━━━ Boards / tasks ━━━


def test_board_has_default_columns(client):
    _, columns = _board(client)
    assert [c["title"] for c in columns] == ["To Do", "In Progress", "Done"]
    assert columns[0]["tasks"] == []


def test_task_lifecycle(client):
    board, columns = _board(client)
    todo, doing = columns[0]["id"], columns[1]["id"]
    r = client.post("/api/tasks", json={"columnId": todo, "title": "Fix login"}, headers=_headers())
    assert r.status_code == 201
    task = r.get_json()["task"]

    r = client.patch(f"/api/tasks/{task['id']}", json={"assignee": "ana"}, headers=_headers())
    assert r.get_json()["task"]["assignee"] == "ana"

    r = client.post("/api/tasks/move", json={"taskId": task["id"], "sourceColumnId": todo,
                                             "destinationColumnId": doing, "destinationIndex": 0},
                    headers=_headers())
    assert r.get_json() == {"success": True}
    columns = client.get(f"/api/board?boardId={board['id']}").get_json()["columns"]
    assert [t["title"] for t in columns[1]["tasks"]] == ["Fix login"]

    assert client.delete(f"/api/tasks/{task['id']}", headers=_headers()).status_code == 200
    assert client.delete(f"/api/tasks/{task['id']}", headers=_headers()).status_code == 404


def test_move_requires_fields(client):
    r = client.post("/api/tasks/move", json={"taskId": "x"}, headers=_headers())
    assert r.status_code == 400
    assert "destinationIndex" in r.get_json()["error"]


def test_unknown_board(client):
    assert client.get("/api/board?boardId=nope").status_code == 404


# ━━━ Tags ━━━


def test_tag_conflict_names_field(client):
    board, _ = _board(client)
    body = {"boardId": board["id"], "name": "Bug", "color": "#FF0000"}
    assert client.post("/api/tags", json=body, headers=_headers()).status_code == 201
    r = client.post("/api/tags", json=dict(body, color="#00FF00"), headers=_headers())
    assert r.status_code == 409
    assert r.get_json() == {"error": "A tag with this name already exists on this board", "field": "name"}


def test_invalid_color(client):
    board, _ = _board(client)
    r = client.post("/api/tags", json={"boardId": board["id"], "name": "Bug", "color": "red"},
                    headers=_headers())
    assert r.status_code == 400


def test_task_tags(client):
    board, columns = _board(client)
    task = client.post("/api/tasks", json={"columnId": columns[0]["id"], "title": "A"},
                       headers=_headers()).get_json()["task"]
    tag = client.post("/api/tags", json={"boardId": board["id"], "name": "Bug", "color": "#FF0000"},
                      headers=_headers()).get_json()["tag"]
    r = client.put(f"/api/tasks/{task['id']}/tags", json={"tagIds": [tag["id"]]}, headers=_headers())
    assert [t["name"] for t in r.get_json()["task"]["tags"]] == ["Bug"]
    r = client.put(f"/api/tasks/{task['id']}/tags", json={"tagIds": "nope"}, headers=_headers())
    assert r.status_code == 400


# ━━━ Change feed ━━━


def test_changes_exclude_own_writes(client):
    board, columns = _board(client)
    client.post("/api/tasks", json={"columnId": columns[0]["id"], "title": "From web"},
                headers=_headers("web"))
    own = client.get(f"/api/boards/{board['id']}/changes?since=0", headers={"X-Client-Id": "web"})
    assert own.get_json()["changes"] == []
    other = client.get(f"/api/boards/{board['id']}/changes?since=0", headers={"X-Client-Id": "bot"})
    kinds = [(c["entityKind"], c["eventKind"]) for c in other.get_json()["changes"]]
    assert kinds == [("board", "created"), ("task", "created")]


def test_changes_since_must_be_integer(client):
    board, _ = _board(client)
    assert client.get(f"/api/boards/{board['id']}/changes?since=abc").status_code == 400


# ━━━ Command line ━━━


def test_cli_defaults_come_from_config():
    cfg = board_server.TaskboardConfig(server_host="0.0.0.0", server_port=8123, log_level="DEBUG")
    args = board_server.build_arg_parser(cfg).parse_args([])
    assert (args.host, args.port, args.log_level) == ("0.0.0.0", 8123, "DEBUG")
    args = board_server.build_arg_parser(cfg).parse_args(["--port", "9000"])
    assert args.port == 9000
