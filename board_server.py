#!/usr/bin/env python3
"""
Taskboard Server
----------------
JSON API over the SQLite board store. This is the persistence backend the
HttpBackend client talks to; every mutation is appended to the change log
that collaborators poll.

Usage:
    python board_server.py --port 3000 --db /var/lib/taskboard/taskboard.db

API (mutating routes need X-API-Key; X-Client-Id tags change events):
    GET    /api/boards                     → { boards }
    POST   /api/boards                     → { board }           body: { title }
    DELETE /api/boards/<id>                → { success }
    GET    /api/board?boardId=             → { board, columns }
    GET    /api/boards/<id>/changes?since= → { changes }
    POST   /api/columns                    → { column }          body: { boardId, title, position }
    PUT    /api/columns                    → { success }         body: { columns: [ids] }
    DELETE /api/columns/<id>               → { success }
    POST   /api/tasks                      → { task }            body: { columnId, title, description, position }
    PATCH  /api/tasks/<id>                 → { task }            body: { title?, description?, assignee? }
    DELETE /api/tasks/<id>                 → { success }
    POST   /api/tasks/move                 → { success }         body: { taskId, sourceColumnId, destinationColumnId, destinationIndex }
    PUT    /api/tasks/<id>/tags            → { success, task }   body: { tagIds }
    GET    /api/tags?boardId=              → { tags }
    POST   /api/tags                       → { tag }             body: { boardId, name, color }
    PATCH  /api/tags/<id>                  → { tag }             body: { name?, color? }
    DELETE /api/tags/<id>                  → { success }
    GET    /health

Dependencies:
    pip install flask
"""

import argparse
import hmac
import logging
import os
import sqlite3
from functools import wraps
from pathlib import Path

from flask import Flask, jsonify, request

from taskboard.config import TaskboardConfig, setup_logging
from taskboard.errors import ConflictError, NotFoundError, ValidationError
from taskboard.store import BoardStore

DEFAULT_DB = Path("~/.local/share/taskboard/taskboard.db").expanduser()

app = Flask(__name__)
logger = logging.getLogger(__name__)

# ── Auth ─────────────────────────────────────────────────────────────────────


def require_api_key(f):
    """Decorator: reject requests without a valid X-API-Key header."""
    @wraps(f)
    def decorated(*args, **kwargs):
        secret = os.environ.get("TASKBOARD_API_SECRET", "")
        if not secret:
            return jsonify({"error": "API_SECRET not set"}), 503
        provided = request.headers.get("X-API-Key", "").strip()
        if not hmac.compare_digest(provided, secret):
            code = 401 if not provided else 403
            return jsonify({"error": "Unauthorized"}), code
        return f(*args, **kwargs)
    return decorated


# ── Config ───────────────────────────────────────────────────────────────────

def get_db_path() -> Path:
    env = os.environ.get("TASKBOARD_DB")
    return Path(env) if env else DEFAULT_DB


def get_store() -> BoardStore:
    """Store for this request, attributing writes to the calling client."""
    return BoardStore(str(get_db_path()), actor=request.headers.get("X-Client-Id", ""))


def _body() -> dict:
    return request.get_json(force=True, silent=True) or {}


# ── Errors ───────────────────────────────────────────────────────────────────

@app.errorhandler(ValidationError)
def handle_validation(e):
    return jsonify({"error": str(e)}), 400


@app.errorhandler(NotFoundError)
def handle_not_found(e):
    return jsonify({"error": str(e)}), 404


@app.errorhandler(ConflictError)
def handle_conflict(e):
    return jsonify({"error": str(e), "field": e.field}), 409


@app.errorhandler(sqlite3.Error)
def handle_db_error(e):
    logger.error(f"Database error: {e}")
    return jsonify({"error": "Database error"}), 500


# ── Boards ───────────────────────────────────────────────────────────────────

@app.route("/api/boards", methods=["GET"])
def api_list_boards():
    boards = get_store().list_boards()
    return jsonify({"boards": [b.to_dict() for b in boards]})


@app.route("/api/boards", methods=["POST"])
@require_api_key
def api_create_board():
    board = get_store().create_board(_body().get("title", ""))
    return jsonify({"board": board.to_dict()}), 201


@app.route("/api/boards/<board_id>", methods=["DELETE"])
@require_api_key
def api_delete_board(board_id):
    get_store().delete_board(board_id)
    return jsonify({"success": True})


@app.route("/api/board", methods=["GET"])
def api_board():
    board, columns = get_store().get_board(request.args.get("boardId") or None)
    return jsonify({"board": board.to_dict(), "columns": [c.to_dict() for c in columns]})


@app.route("/api/boards/<board_id>/changes", methods=["GET"])
def api_changes(board_id):
    try:
        since = int(request.args.get("since", 0))
    except ValueError:
        raise ValidationError("since must be an integer")
    exclude = request.headers.get("X-Client-Id") or None
    changes = get_store().get_changes(board_id, since, exclude_actor=exclude)
    return jsonify({"changes": [c.to_dict() for c in changes]})


# ── Columns ──────────────────────────────────────────────────────────────────

@app.route("/api/columns", methods=["POST"])
@require_api_key
def api_create_column():
    data = _body()
    if not data.get("boardId"):
        raise ValidationError("boardId is required")
    column = get_store().create_column(data["boardId"], data.get("title", ""), data.get("position"))
    return jsonify({"column": column.to_dict()}), 201


@app.route("/api/columns", methods=["PUT"])
@require_api_key
def api_reorder_columns():
    columns = _body().get("columns")
    if not isinstance(columns, list):
        raise ValidationError("columns must be a list of column ids")
    get_store().reorder_columns([c["id"] if isinstance(c, dict) else c for c in columns])
    return jsonify({"success": True})


@app.route("/api/columns/<column_id>", methods=["DELETE"])
@require_api_key
def api_delete_column(column_id):
    get_store().delete_column(column_id)
    return jsonify({"success": True})


# ── Tasks ────────────────────────────────────────────────────────────────────

@app.route("/api/tasks", methods=["POST"])
@require_api_key
def api_create_task():
    data = _body()
    if not data.get("columnId"):
        raise ValidationError("columnId is required")
    task = get_store().create_task(
        data["columnId"],
        data.get("title", ""),
        data.get("description") or "",
        data.get("position"),
        data.get("assignee"),
    )
    return jsonify({"task": task.to_dict()}), 201


@app.route("/api/tasks/<task_id>", methods=["PATCH", "PUT"])
@require_api_key
def api_update_task(task_id):
    task = get_store().update_task(task_id, _body())
    return jsonify({"task": task.to_dict()})


@app.route("/api/tasks/<task_id>", methods=["DELETE"])
@require_api_key
def api_delete_task(task_id):
    get_store().delete_task(task_id)
    return jsonify({"success": True})


@app.route("/api/tasks/move", methods=["POST"])
@require_api_key
def api_move_task():
    data = _body()
    missing = [k for k in ("taskId", "sourceColumnId", "destinationColumnId", "destinationIndex")
               if data.get(k) is None]
    if missing:
        raise ValidationError(f"Missing fields: {', '.join(missing)}")
    try:
        destination_index = int(data["destinationIndex"])
    except (TypeError, ValueError):
        raise ValidationError("destinationIndex must be an integer")
    get_store().move_task(data["taskId"], data["sourceColumnId"], data["destinationColumnId"],
                          destination_index)
    return jsonify({"success": True})


@app.route("/api/tasks/<task_id>/tags", methods=["PUT"])
@require_api_key
def api_set_task_tags(task_id):
    tag_ids = _body().get("tagIds")
    if not isinstance(tag_ids, list):
        raise ValidationError("tagIds must be an array")
    task = get_store().set_task_tags(task_id, tag_ids)
    return jsonify({"success": True, "task": task.to_dict()})


# ── Tags ─────────────────────────────────────────────────────────────────────

@app.route("/api/tags", methods=["GET"])
def api_list_tags():
    board_id = request.args.get("boardId")
    if not board_id:
        raise ValidationError("boardId is required")
    return jsonify({"tags": [t.to_dict() for t in get_store().list_tags(board_id)]})


@app.route("/api/tags", methods=["POST"])
@require_api_key
def api_create_tag():
    data = _body()
    if not data.get("boardId"):
        raise ValidationError("boardId is required")
    tag = get_store().create_tag(data["boardId"], data.get("name", ""), data.get("color", ""))
    return jsonify({"tag": tag.to_dict()}), 201


@app.route("/api/tags/<tag_id>", methods=["PATCH", "PUT"])
@require_api_key
def api_update_tag(tag_id):
    tag = get_store().update_tag(tag_id, _body())
    return jsonify({"tag": tag.to_dict()})


@app.route("/api/tags/<tag_id>", methods=["DELETE"])
@require_api_key
def api_delete_tag(tag_id):
    get_store().delete_tag(tag_id)
    return jsonify({"success": True})


@app.route("/health")
def health():
    return jsonify({"status": "ok", "db": str(get_db_path())})


# ── Main ─────────────────────────────────────────────────────────────────────

def build_arg_parser(cfg: TaskboardConfig) -> argparse.ArgumentParser:
    """Command line options; defaults come from config/taskboard.yaml."""
    parser = argparse.ArgumentParser(description="Taskboard Server")
    parser.add_argument("--host", default=cfg.server_host,
                        help="Bind address (use 0.0.0.0 to expose on network)")
    parser.add_argument("--port", type=int, default=cfg.server_port)
    parser.add_argument("--db", help="Path to taskboard.db (overrides TASKBOARD_DB env var)")
    parser.add_argument("--log-level", default=cfg.log_level)
    return parser


if __name__ == "__main__":
    cfg = TaskboardConfig.load()
    args = build_arg_parser(cfg).parse_args()

    if args.db:
        os.environ["TASKBOARD_DB"] = args.db
    elif not os.environ.get("TASKBOARD_DB"):
        os.environ["TASKBOARD_DB"] = cfg.db_path

    setup_logging(args.log_level, "board-server")
    logger.info(f"Taskboard server on http://{args.host}:{args.port} (db: {get_db_path()})")
    app.run(host=args.host, port=args.port, debug=False, threaded=True)
