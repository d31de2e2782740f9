# reconciliation.py — Client-side optimistic board state
"""
KanbanClient is the reference implementation of the client reconciliation
contract, written against the HTTP API with httpx.

    drag_start(task)      remember the status the drag began from
    drag_over(task, col)  move the card locally, no request
    drop(task, col)       one transition request at a time per client;
                          success -> authoritative task replaces local state
                          failure -> status reverts to the drag-start status

Listeners receive (task, reemit). reemit is always False for state that came
from the server, so a UI wired to re-broadcast local edits never echoes it.
"""
import asyncio
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

import httpx

from workflow import DEFAULT_COLUMNS, normalize_status

logger = logging.getLogger("taskflow.client")

Listener = Callable[[Dict[str, Any], bool], None]


class ReconciliationError(Exception):
    """A transition was rejected; local state has already been reverted"""

    def __init__(self, message: str, code: Optional[str] = None, status_code: Optional[int] = None,
                 retryable: bool = False, retry_after: Optional[float] = None):
        self.code = code
        self.status_code = status_code
        self.retryable = retryable
        self.retry_after = retry_after
        super().__init__(message)


class KanbanClient:
    def __init__(
        self,
        http: httpx.AsyncClient,
        headers: Optional[Dict[str, str]] = None,
        session_id: Optional[str] = None,
        columns: Optional[List[dict]] = None,
        base_path: str = "/api/v1",
    ):
        self.http = http
        self.headers = dict(headers or {})
        self.session_id = session_id
        self.columns = list(columns or DEFAULT_COLUMNS)
        self.base_path = base_path
        self.tasks: Dict[str, Dict[str, Any]] = {}
        self._drag_start: Dict[str, str] = {}
        self._in_flight = asyncio.Lock()
        self._listeners: List[Listener] = []

    # --- state ---------------------------------------------------

    def load(self, tasks: Iterable[Dict[str, Any]]):
        for task in tasks:
            self.tasks[task["id"]] = dict(task)

    def status_of(self, task_id: str) -> str:
        return self.tasks[task_id]["status"]

    def on_change(self, listener: Listener):
        self._listeners.append(listener)

    def _emit(self, task: Dict[str, Any], reemit: bool):
        for listener in self._listeners:
            listener(dict(task), reemit)

    @property
    def updating(self) -> bool:
        return self._in_flight.locked()

    # --- drag & drop ---------------------------------------------

    def drag_start(self, task_id: str):
        self._drag_start[task_id] = self.tasks[task_id]["status"]

    def drag_over(self, task_id: str, column_id: str):
        task = self.tasks[task_id]
        target = normalize_status(column_id)
        if task["status"] != target:
            task["status"] = target
            self._emit(task, reemit=False)

    async def drop(self, task_id: str, column_id: str) -> Dict[str, Any]:
        origin = self._drag_start.pop(task_id, self.tasks[task_id]["status"])
        target = normalize_status(column_id)
        self.drag_over(task_id, target)
        if target == normalize_status(origin):
            return self.tasks[task_id]
        return await self._transition(task_id, target, origin)

    async def _transition(self, task_id: str, target: str, origin: str) -> Dict[str, Any]:
        headers = dict(self.headers)
        if self.session_id:
            headers["X-Session-ID"] = self.session_id

        async with self._in_flight:
            try:
                resp = await self.http.post(
                    f"{self.base_path}/tasks/{task_id}/transition",
                    json={"status": target, "suppress_reemit": False},
                    headers=headers,
                )
            except httpx.HTTPError as e:
                self._revert(task_id, origin)
                raise ReconciliationError(f"Network error: {e}", retryable=True) from e

            if resp.status_code == 200:
                authoritative = resp.json()["task"]
                self.tasks[task_id] = dict(authoritative)
                self._emit(authoritative, reemit=False)
                return self.tasks[task_id]

            self._revert(task_id, origin)
            try:
                body = resp.json()
            except ValueError:
                body = {}
            retry_after = resp.headers.get("Retry-After")
            logger.warning(f"Transition of {task_id[:8]} rejected: {resp.status_code} {body.get('code')}")
            raise ReconciliationError(
                body.get("detail") or f"Transition failed ({resp.status_code})",
                code=body.get("code"),
                status_code=resp.status_code,
                retryable=bool(body.get("retryable")),
                retry_after=float(retry_after) if retry_after else None,
            )

    def _revert(self, task_id: str, origin: str):
        task = self.tasks.get(task_id)
        if task is not None and task["status"] != origin:
            task["status"] = origin
            self._emit(task, reemit=False)

    # --- notifications -------------------------------------------

    def apply_remote(self, event: Dict[str, Any]) -> bool:
        """Merge a received notification. Never issues a request."""
        kind = event.get("type")
        payload = event.get("payload") or {}

        if kind in ("task:created", "task:updated"):
            incoming = payload.get("task") or {}
            local = self.tasks.get(incoming.get("id"))
            if local is not None and local.get("version", 0) >= incoming.get("version", 0):
                return False
            merged = dict(incoming)
            if incoming.get("id") in self._drag_start and local is not None:
                # A drag is under way; keep the card where the user is holding it
                merged["status"] = local["status"]
                self._drag_start[incoming["id"]] = incoming["status"]
            self.tasks[incoming["id"]] = merged
            self._emit(merged, reemit=False)
            return True

        if kind == "task:deleted":
            return self.tasks.pop(payload.get("task_id"), None) is not None

        if kind == "columns:updated":
            self.columns = list(payload.get("columns") or self.columns)
            return True

        return False
