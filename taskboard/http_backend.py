"""
BoardBackend over the board server's JSON API.

Authentication
--------------
Mutating routes need the shared secret in X-API-Key. Every request also
carries X-Client-Id so the server can tag change events with their writer
and leave our own writes out of the change feed.

Dependencies:
    pip install requests
"""
import asyncio
import logging
import threading
from typing import Any, Dict, Optional

import requests

from .backend import BoardBackend
from .errors import BackendError, ConflictError, NotFoundError, ValidationError
from .schema import Board, ChangeEvent, Column, Tag, Task, new_id

logger = logging.getLogger(__name__)


class HttpBackend(BoardBackend):
    """
    Args:
        base_url:  server root URL (e.g. 'http://localhost:3000')
        api_key:   shared secret sent as X-API-Key
        client_id: identity of this client in the change feed
        timeout:   per-request timeout in seconds
    """

    _API_PREFIX = "/api"

    def __init__(self, base_url: str, api_key: str = "", client_id: Optional[str] = None,
                 timeout: float = 10.0):
        self.client_id = client_id or new_id()
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "X-Client-Id": self.client_id,
        }
        if api_key:
            self._headers["X-API-Key"] = api_key
        # Calls run in asyncio.to_thread workers; one Session per thread
        self._local = threading.local()

    @property
    def _session(self) -> requests.Session:
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            session.headers.update(self._headers)
            self._local.session = session
        return session

    # ------------------------------------------------------------------
    # Internal HTTP helpers
    # ------------------------------------------------------------------

    def _url(self, path: str) -> str:
        return f"{self._base_url}{self._API_PREFIX}{path}"

    def _request(self, method: str, path: str, params: Optional[dict] = None,
                 body: Optional[dict] = None) -> Dict[str, Any]:
        try:
            response = self._session.request(
                method, self._url(path), params=params, json=body, timeout=self._timeout
            )
        except requests.RequestException as e:
            raise BackendError(str(e))
        self._raise_for_status(response)
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    @staticmethod
    def _raise_for_status(response: requests.Response) -> None:
        if response.ok:
            return
        try:
            data = response.json()
        except ValueError:
            data = {}
        message = data.get("error") or response.reason or f"HTTP {response.status_code}"
        status = response.status_code
        if status == 404:
            raise NotFoundError(message)
        if status == 409:
            raise ConflictError(message, field=data.get("field"))
        if status == 400:
            raise ValidationError(message)
        raise BackendError(message, status=status)

    async def _call(self, method: str, path: str, params: Optional[dict] = None,
                    body: Optional[dict] = None) -> Dict[str, Any]:
        logger.debug(f"{method} {path}")
        return await asyncio.to_thread(self._request, method, path, params, body)

    # ------------------------------------------------------------------
    # Boards
    # ------------------------------------------------------------------

    async def list_boards(self):
        data = await self._call("GET", "/boards")
        return [Board.from_dict(b) for b in data.get("boards", [])]

    async def get_board(self, board_id=None):
        params = {"boardId": board_id} if board_id else None
        data = await self._call("GET", "/board", params=params)
        return Board.from_dict(data["board"]), [Column.from_dict(c) for c in data.get("columns", [])]

    async def create_board(self, title):
        data = await self._call("POST", "/boards", body={"title": title})
        return Board.from_dict(data["board"])

    async def delete_board(self, board_id):
        await self._call("DELETE", f"/boards/{board_id}")

    # ------------------------------------------------------------------
    # Columns
    # ------------------------------------------------------------------

    async def create_column(self, board_id, title, position):
        data = await self._call("POST", "/columns", body={
            "boardId": board_id, "title": title, "position": position,
        })
        return Column.from_dict(data["column"])

    async def delete_column(self, column_id):
        await self._call("DELETE", f"/columns/{column_id}")

    async def reorder_columns(self, column_ids):
        await self._call("PUT", "/columns", body={"columns": list(column_ids)})

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    async def create_task(self, column_id, title, description="", position=None):
        data = await self._call("POST", "/tasks", body={
            "columnId": column_id, "title": title, "description": description, "position": position,
        })
        return Task.from_dict(data["task"])

    async def update_task(self, task_id, fields):
        data = await self._call("PATCH", f"/tasks/{task_id}", body=dict(fields))
        return Task.from_dict(data["task"])

    async def delete_task(self, task_id):
        await self._call("DELETE", f"/tasks/{task_id}")

    async def move_task(self, task_id, source_column_id, destination_column_id, destination_index):
        await self._call("POST", "/tasks/move", body={
            "taskId": task_id,
            "sourceColumnId": source_column_id,
            "destinationColumnId": destination_column_id,
            "destinationIndex": destination_index,
        })

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------

    async def list_tags(self, board_id):
        data = await self._call("GET", "/tags", params={"boardId": board_id})
        return [Tag.from_dict(t) for t in data.get("tags", [])]

    async def create_tag(self, board_id, name, color):
        data = await self._call("POST", "/tags", body={"boardId": board_id, "name": name, "color": color})
        return Tag.from_dict(data["tag"])

    async def update_tag(self, tag_id, fields):
        data = await self._call("PATCH", f"/tags/{tag_id}", body=dict(fields))
        return Tag.from_dict(data["tag"])

    async def delete_tag(self, tag_id):
        await self._call("DELETE", f"/tags/{tag_id}")

    async def set_task_tags(self, task_id, tag_ids):
        data = await self._call("PUT", f"/tasks/{task_id}/tags", body={"tagIds": list(tag_ids)})
        return Task.from_dict(data["task"])

    # ------------------------------------------------------------------
    # Change feed
    # ------------------------------------------------------------------

    async def get_changes(self, board_id, since=0):
        data = await self._call("GET", f"/boards/{board_id}/changes", params={"since": since})
        return [ChangeEvent.from_dict(e) for e in data.get("changes", [])]
