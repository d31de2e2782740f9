# workflow.py — Kanban workflow: status normalization, columns, task state machine
"""
States are the column identifiers of the task's project (or the four default
columns for personal tasks). Any column may follow any other column; the only
transition rule is that the target column exists.

Every mutation reads the task fresh, re-checks permissions against that read,
and writes with a compare-and-swap on the version column. A failed
precondition restarts the whole attempt after an exponential back-off. The
history entries are appended once the write has committed; if the store is
busy at that point only the append is retried.
"""
import asyncio
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from assignable import validate_assignees
from errors import (
    ColumnInUse, ConflictingWrite, InvalidTransition, NotFound, ProtectedColumn,
    RateLimited, Unauthorized, ValidationFailed,
)
from models import (
    HistoryAction, Project, Subtask, SubtaskStatus, Task, TaskHistory, TaskPriority, UserRole,
    new_uuid, task_assignees, utcnow,
)
from permissions import PermissionResolver, resolver as default_resolver
from scopes import (
    ProjectView, TaskView, UserView, load_actor, load_candidate_pool,
    project_view, task_view,
)
from store import EntityStore

logger = logging.getLogger("taskflow.workflow")

# ============================================================
# COLUMNS & STATUS NORMALIZATION
# ============================================================

DEFAULT_COLUMNS = [
    {"id": "todo", "name": "To Do", "order": 0, "color": "#64748b"},
    {"id": "in-progress", "name": "In Progress", "order": 1, "color": "#3b82f6"},
    {"id": "review", "name": "Review", "order": 2, "color": "#f59e0b"},
    {"id": "done", "name": "Done", "order": 3, "color": "#22c55e"},
]
DEFAULT_COLUMN_IDS = tuple(c["id"] for c in DEFAULT_COLUMNS)
DISPLAY_NAMES = {c["id"]: c["name"] for c in DEFAULT_COLUMNS}
IN_PROGRESS_COLUMN = "in-progress"
DONE_COLUMN = "done"

_WHITESPACE = re.compile(r"\s+")

# Lower-cased, space-collapsed display names that do not follow the generic rule
_STATUS_ALIASES = {
    "to do": "todo",
    "to-do": "todo",
}


def normalize_status(status: str) -> str:
    """Map any display form to its column identifier ("In Progress" -> "in-progress")"""
    key = _WHITESPACE.sub(" ", (status or "").strip()).lower()
    if key in _STATUS_ALIASES:
        return _STATUS_ALIASES[key]
    return key.replace(" ", "-")


def display_name(column_id: str, columns: Optional[List[dict]] = None) -> str:
    for col in columns or ():
        if col["id"] == column_id:
            return col["name"]
    return DISPLAY_NAMES.get(column_id, column_id)


def columns_for(project: Optional[Project]) -> List[dict]:
    """Ordered column set; defaults are always present"""
    stored = list(project.columns or []) if project is not None else []
    if not stored:
        return [dict(c) for c in DEFAULT_COLUMNS]
    ids = {c["id"] for c in stored}
    merged = [dict(c) for c in stored]
    for default in DEFAULT_COLUMNS:
        if default["id"] not in ids:
            merged.append(dict(default))
    merged.sort(key=lambda c: c.get("order", 0))
    for i, col in enumerate(merged):
        col["order"] = i
    return merged


def column_ids(columns: List[dict]) -> List[str]:
    return [c["id"] for c in columns]


# ============================================================
# RETRY POLICY
# ============================================================

@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay: float = 0.05
    max_delay: float = 2.0

    def delay(self, attempt: int) -> float:
        """Back-off before the attempt that follows `attempt` (1-based)"""
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))

    @classmethod
    def from_env(cls) -> "RetryPolicy":
        return cls(
            max_attempts=int(os.getenv("TRANSITION_MAX_ATTEMPTS", "5")),
            base_delay=int(os.getenv("TRANSITION_BACKOFF_BASE_MS", "50")) / 1000,
            max_delay=int(os.getenv("TRANSITION_BACKOFF_MAX_MS", "2000")) / 1000,
        )


# ============================================================
# RESULTS & SERIALIZATION
# ============================================================

@dataclass
class MutationResult:
    task: Optional[Task]
    history: List[TaskHistory] = field(default_factory=list)
    changed: bool = False
    attempts: int = 1
    # The commit holds state the originating client did not predict
    echo_to_origin: bool = False
    project_id: Optional[str] = None
    # Set by callers applying a change they received as a notification
    suppress_reemit: bool = False
    origin_session: Optional[str] = None
    # Users dropped from the assignee list, who still need to hear about it
    unassigned: List[str] = field(default_factory=list)
    subtask: Optional[Subtask] = None


def _ts(dt) -> Optional[str]:
    if dt is None:
        return None
    return dt.isoformat() if isinstance(dt, datetime) else str(dt)


def serialize_task(task: Task, columns: Optional[List[dict]] = None) -> Dict[str, Any]:
    return {
        "id": task.id,
        "title": task.title,
        "description": task.description,
        "status": task.status,
        "status_display": display_name(task.status, columns),
        "priority": task.priority.value if isinstance(task.priority, TaskPriority) else task.priority,
        "project_id": task.project_id,
        "created_by": task.created_by,
        "assigned_users": sorted(u.id for u in task.assignees),
        "tags": list(task.tags or []),
        "start_date": _ts(task.start_date),
        "end_date": _ts(task.end_date),
        "started_at": _ts(task.started_at),
        "completed_at": _ts(task.completed_at),
        "version": task.version,
        "is_active": task.is_active,
        "created_at": _ts(task.created_at),
        "updated_at": _ts(task.updated_at),
    }


def serialize_history(entry: TaskHistory) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "task_id": entry.task_id,
        "action": entry.action.value if isinstance(entry.action, HistoryAction) else entry.action,
        "field": entry.field_name,
        "old_value": entry.old_value,
        "new_value": entry.new_value,
        "details": entry.details,
        "user_id": entry.user_id,
        "user_name": entry.user_name,
        "created_at": _ts(entry.created_at),
    }


def serialize_subtask(subtask: Subtask) -> Dict[str, Any]:
    return {
        "id": subtask.id,
        "parent_task_id": subtask.parent_task_id,
        "title": subtask.title,
        "description": subtask.description,
        "status": SubtaskStatus(subtask.status).value,
        "priority": TaskPriority(subtask.priority).value,
        "assigned_to": subtask.assigned_to,
        "estimated_hours": subtask.estimated_hours,
        "actual_hours": subtask.actual_hours,
        "start_date": _ts(subtask.start_date),
        "end_date": _ts(subtask.end_date),
        "completed_at": _ts(subtask.completed_at),
        "is_completed": subtask.status == SubtaskStatus.DONE,
        "created_by": subtask.created_by,
        "tags": list(subtask.tags or []),
        "order": subtask.order,
        "version": subtask.version,
        "created_at": _ts(subtask.created_at),
        "updated_at": _ts(subtask.updated_at),
    }


def _parse_dt(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        raise ValidationFailed(f"Invalid date: {value}")


def _same_instant(a: Optional[datetime], b: Optional[datetime]) -> bool:
    if a is None or b is None:
        return a is b
    # SQLite hands back naive datetimes for timezone-aware columns
    return a.replace(tzinfo=None) == b.replace(tzinfo=None)


# ============================================================
# STATE MACHINE
# ============================================================

class TaskStateMachine:
    """Applies task, subtask and column mutations against the entity store"""

    def __init__(
        self,
        session: AsyncSession,
        resolver: PermissionResolver = default_resolver,
        retry: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.session = session
        self.store = EntityStore(session)
        self.resolver = resolver
        self.retry = retry or RetryPolicy.from_env()
        self._sleep = sleep

    # --- loading -------------------------------------------------

    async def _actor(self, actor_id: str) -> UserView:
        actor = await load_actor(self.session, actor_id)
        if actor is None:
            raise NotFound("User", actor_id)
        return actor

    async def _project(self, project_id: Optional[str]) -> Optional[Project]:
        if project_id is None:
            return None
        project = await self.store.get(Project, project_id)
        if project is None or not project.is_active:
            raise NotFound("Project", project_id)
        return project

    async def _load(self, task_id: str, actor_id: str) -> Tuple[Task, Optional[Project], UserView]:
        task = await self.store.get(Task, task_id)
        if task is None or not task.is_active:
            raise NotFound("Task", task_id)
        project = await self._project(task.project_id)
        actor = await self._actor(actor_id)
        return task, project, actor

    async def _reload(self, task_id: str) -> Task:
        task = await self.store.get(Task, task_id)
        if task is None:
            raise NotFound("Task", task_id)
        return task

    # --- retry loop ----------------------------------------------

    async def _with_retries(self, resource_id: str, attempt_fn: Callable[[int], Awaitable[MutationResult]]) -> MutationResult:
        """Run attempt_fn(conflicts_so_far) until it commits or attempts run out"""
        conflicts = 0
        last_error = None
        for attempt in range(1, self.retry.max_attempts + 1):
            try:
                result = await attempt_fn(conflicts)
                result.attempts = attempt
                if conflicts:
                    result.echo_to_origin = True
                return result
            except ConflictingWrite as e:
                conflicts += 1
                last_error = e
            except RateLimited as e:
                last_error = e
            if attempt < self.retry.max_attempts:
                delay = self.retry.delay(attempt)
                logger.warning(
                    f"{type(last_error).__name__} on {resource_id[:8]} "
                    f"(attempt {attempt}/{self.retry.max_attempts}), retrying in {delay:.3f}s"
                )
                await self._sleep(delay)

        retry_after = self.retry.delay(self.retry.max_attempts)
        logger.error(f"Giving up on {resource_id[:8]} after {self.retry.max_attempts} attempts")
        if isinstance(last_error, RateLimited):
            raise RateLimited(retry_after=retry_after, attempts=self.retry.max_attempts)
        raise ConflictingWrite(resource_id, attempts=self.retry.max_attempts, retry_after=retry_after)

    async def _record(self, entries: List[TaskHistory]) -> None:
        """Append audit entries for a write that has already committed.

        Only the append is retried here; re-running the write itself would find
        it already applied and record nothing.
        """
        if not entries:
            return
        for attempt in range(1, self.retry.max_attempts + 1):
            try:
                if len(entries) == 1:
                    await self.store.append(entries[0])
                else:
                    await self.store.append_many(entries)
                return
            except RateLimited:
                if attempt == self.retry.max_attempts:
                    logger.error(
                        f"Audit append for {entries[0].task_id[:8]} failed after {attempt} attempts "
                        f"({len(entries)} entries lost)"
                    )
                    raise
                await self._sleep(self.retry.delay(attempt))

    async def _finish(self, result: MutationResult, task_id: str) -> MutationResult:
        if result.changed:
            await self._record(result.history)
            result.task = await self._reload(task_id)
        return result

    async def _pin_column(self, project: Optional[Project], column_id: str) -> None:
        """Write the project row when a task enters a removable column.

        remove_column compare-and-swaps the same row, so a concurrent removal
        and entry cannot both commit.
        """
        if project is None or column_id in DEFAULT_COLUMN_IDS:
            return
        await self.store.conditional_update(Project, project.id, project.version, {}, commit=False)

    def _entry(self, task_id: str, actor: UserView, action: HistoryAction, field_name: Optional[str] = None,
               old_value=None, new_value=None, details: Optional[str] = None) -> TaskHistory:
        return TaskHistory(
            task_id=task_id,
            action=action,
            field_name=field_name,
            old_value=old_value,
            new_value=new_value,
            details=details,
            user_id=actor.id,
            user_name=actor.display_name or actor.email,
            extra_data={},
        )

    # --- reads ---------------------------------------------------

    async def get_task(self, task_id: str, actor_id: str) -> Tuple[Task, Optional[Project]]:
        task, project, actor = await self._load(task_id, actor_id)
        pview = project_view(project) if project else None
        if not self.resolver.can_view_task(actor, task_view(task), pview):
            raise Unauthorized("view", "task", task_id)
        return task, project

    async def history(self, task_id: str, actor_id: str) -> List[TaskHistory]:
        await self.get_task(task_id, actor_id)
        return list(await self.store.query(
            TaskHistory, TaskHistory.task_id == task_id, order_by=TaskHistory.created_at,
        ))

    # --- transition ----------------------------------------------

    async def transition(
        self,
        task_id: str,
        new_status: str,
        actor_id: str,
        suppress_reemit: bool = False,
        origin_session: Optional[str] = None,
    ) -> MutationResult:
        """Move a task to another column.

        Re-running with the status the task already has is a no-op and writes
        no history. suppress_reemit and origin_session ride along on the result
        for the fan-out step.
        """
        target = normalize_status(new_status)

        async def attempt(conflicts: int) -> MutationResult:
            task, project, actor = await self._load(task_id, actor_id)
            columns = columns_for(project)
            valid = column_ids(columns)
            if target not in valid:
                raise InvalidTransition(new_status, valid)

            pview = project_view(project) if project else None
            if not self.resolver.can_edit_task(actor, task_view(task), pview):
                raise Unauthorized("edit", "task", task_id)

            old_status = task.status
            if normalize_status(old_status) == target:
                return MutationResult(task=task, project_id=task.project_id)

            now = utcnow()
            patch = {"status": target, "updated_at": now}
            if target == IN_PROGRESS_COLUMN and task.started_at is None:
                patch["started_at"] = now
            if target == DONE_COLUMN:
                patch["completed_at"] = now
            elif task.completed_at is not None:
                patch["completed_at"] = None

            await self._pin_column(project, target)
            version = await self.store.conditional_update(Task, task_id, task.version, patch)
            entry = self._entry(
                task_id, actor, HistoryAction.STATUS_CHANGED, "status", old_status, target,
                details=f"{display_name(old_status, columns)} → {display_name(target, columns)}",
            )
            logger.info(f"Task {task_id[:8]}: {old_status} → {target} by {actor_id[:8]} (v{version})")
            return MutationResult(
                task=task, history=[entry], changed=True, project_id=task.project_id,
                echo_to_origin=target != new_status,
            )

        result = await self._finish(await self._with_retries(task_id, attempt), task_id)
        result.suppress_reemit = suppress_reemit
        result.origin_session = origin_session
        return result

    # --- create / update / delete --------------------------------

    async def _check_assignees(self, actor: UserView, pview: Optional[ProjectView],
                               tview: Optional[TaskView], user_ids: List[str]) -> None:
        if not user_ids:
            return
        if not self.resolver.can_assign_tasks(actor, pview, tview):
            raise Unauthorized("assign", "task", tview.id if tview else None)
        pool = await load_candidate_pool(self.session, actor, pview)
        report = validate_assignees(actor, pview, user_ids, pool, tview, self.resolver)
        if not report["valid"]:
            raise ValidationFailed(
                "Some users cannot be assigned to this task",
                details={
                    "invalid_users": report["invalid_users"],
                    "not_assignable": report["not_assignable"],
                },
            )

    async def create_task(self, actor_id: str, data: Dict[str, Any]) -> MutationResult:
        assigned = list(dict.fromkeys(data.get("assigned_users") or []))
        task_id = new_uuid()

        async def attempt(conflicts: int) -> MutationResult:
            actor = await self._actor(actor_id)
            project = await self._project(data.get("project_id"))
            pview = project_view(project) if project else None
            if not self.resolver.can_create_tasks(actor, pview):
                raise Unauthorized("create", "task")

            columns = columns_for(project)
            status = normalize_status(data.get("status") or columns[0]["id"])
            if status not in column_ids(columns):
                raise InvalidTransition(data.get("status"), column_ids(columns))

            draft = TaskView(id="", created_by=actor.id, project_id=project.id if project else None)
            await self._check_assignees(actor, pview, draft, assigned)

            now = utcnow()
            task = Task(
                id=task_id,
                title=data["title"],
                description=data.get("description"),
                status=status,
                priority=TaskPriority(data.get("priority") or TaskPriority.MEDIUM),
                project_id=project.id if project else None,
                created_by=actor.id,
                tags=list(data.get("tags") or []),
                start_date=_parse_dt(data.get("start_date")),
                end_date=_parse_dt(data.get("end_date")),
                started_at=now if status == IN_PROGRESS_COLUMN else None,
                completed_at=now if status == DONE_COLUMN else None,
                version=1,
            )
            await self._pin_column(project, status)
            self.session.add(task)
            await self.session.flush()
            if assigned:
                await self.session.execute(
                    insert(task_assignees), [{"task_id": task_id, "user_id": uid} for uid in assigned]
                )
            await self.store.commit()

            entries = [self._entry(task_id, actor, HistoryAction.CREATED, details=f"Created '{task.title}'")]
            entries += [
                self._entry(task_id, actor, HistoryAction.ASSIGNED, "assigned_users", None, uid)
                for uid in assigned
            ]
            logger.info(f"Task {task_id[:8]} created by {actor_id[:8]} in {project.id[:8] if project else 'personal'}")
            return MutationResult(task=task, history=entries, changed=True, project_id=task.project_id)

        return await self._finish(await self._with_retries(task_id, attempt), task_id)

    async def update_task(self, task_id: str, actor_id: str, changes: Dict[str, Any]) -> MutationResult:
        """Apply a multi-field edit; one history entry per field that changed"""

        async def attempt(conflicts: int) -> MutationResult:
            task, project, actor = await self._load(task_id, actor_id)
            pview = project_view(project) if project else None
            tview = task_view(task)
            if not self.resolver.can_edit_task(actor, tview, pview):
                raise Unauthorized("edit", "task", task_id)

            columns = columns_for(project)
            patch: Dict[str, Any] = {}
            entries: List[TaskHistory] = []

            def changed(field_name: str, action: HistoryAction, old, new, stored=None):
                patch[field_name] = new if stored is None else stored
                entries.append(self._entry(task_id, actor, action, field_name, old, new))

            if "title" in changes and changes["title"] != task.title:
                changed("title", HistoryAction.TITLE_UPDATED, task.title, changes["title"])
            if "description" in changes and changes["description"] != task.description:
                changed("description", HistoryAction.DESCRIPTION_UPDATED, task.description, changes["description"])
            if "priority" in changes and changes["priority"] is not None:
                new_priority = TaskPriority(changes["priority"])
                if new_priority != task.priority:
                    changed("priority", HistoryAction.PRIORITY_CHANGED,
                            TaskPriority(task.priority).value, new_priority.value, stored=new_priority)
            if "status" in changes and changes["status"] is not None:
                target = normalize_status(changes["status"])
                if target not in column_ids(columns):
                    raise InvalidTransition(changes["status"], column_ids(columns))
                if normalize_status(task.status) != target:
                    changed("status", HistoryAction.STATUS_CHANGED, task.status, target)
                    now = utcnow()
                    if target == IN_PROGRESS_COLUMN and task.started_at is None:
                        patch["started_at"] = now
                    if target == DONE_COLUMN:
                        patch["completed_at"] = now
                    elif task.completed_at is not None:
                        patch["completed_at"] = None
            for key, action in (("start_date", HistoryAction.START_DATE_CHANGED),
                                ("end_date", HistoryAction.DUE_DATE_CHANGED)):
                if key in changes:
                    new_dt = _parse_dt(changes[key])
                    old_dt = getattr(task, key)
                    if not _same_instant(old_dt, new_dt):
                        changed(key, action, _ts(old_dt), _ts(new_dt), stored=new_dt)
            if "tags" in changes and changes["tags"] is not None:
                old_tags, new_tags = list(task.tags or []), list(dict.fromkeys(changes["tags"]))
                if old_tags != new_tags:
                    patch["tags"] = new_tags
                    entries.extend(
                        self._entry(task_id, actor, HistoryAction.TAG_ADDED, "tags", None, t)
                        for t in new_tags if t not in old_tags
                    )
                    entries.extend(
                        self._entry(task_id, actor, HistoryAction.TAG_REMOVED, "tags", t, None)
                        for t in old_tags if t not in new_tags
                    )

            added, removed = [], []
            if "assigned_users" in changes and changes["assigned_users"] is not None:
                wanted = list(dict.fromkeys(changes["assigned_users"]))
                current = tview.assignee_ids
                added = [uid for uid in wanted if uid not in current]
                removed = sorted(uid for uid in current if uid not in wanted)
                if added or removed:
                    if not self.resolver.can_assign_tasks(actor, pview, tview):
                        raise Unauthorized("assign", "task", task_id)
                    await self._check_assignees(actor, pview, tview, added)
                    entries.extend(
                        self._entry(task_id, actor, HistoryAction.ASSIGNED, "assigned_users", None, uid)
                        for uid in added
                    )
                    entries.extend(
                        self._entry(task_id, actor, HistoryAction.UNASSIGNED, "assigned_users", uid, None)
                        for uid in removed
                    )

            if not entries:
                return MutationResult(task=task, project_id=task.project_id)

            patch["updated_at"] = utcnow()
            if "status" in patch:
                await self._pin_column(project, patch["status"])
            await self.store.conditional_update(Task, task_id, task.version, patch, commit=False)
            if removed:
                await self.session.execute(
                    delete(task_assignees).where(
                        task_assignees.c.task_id == task_id, task_assignees.c.user_id.in_(removed),
                    )
                )
            if added:
                await self.session.execute(
                    insert(task_assignees), [{"task_id": task_id, "user_id": uid} for uid in added]
                )
            await self.store.commit()
            logger.info(f"Task {task_id[:8]} updated by {actor_id[:8]}: {len(entries)} change(s)")
            return MutationResult(
                task=task, history=entries, changed=True, project_id=task.project_id, unassigned=removed,
            )

        return await self._finish(await self._with_retries(task_id, attempt), task_id)

    async def delete_task(self, task_id: str, actor_id: str, purge: bool = False) -> MutationResult:
        """Soft-delete a task; purge (with its history) is reserved for super_admin"""
        if purge:
            actor = await self._actor(actor_id)
            if actor.role != UserRole.SUPER_ADMIN:
                raise Unauthorized("purge", "task", task_id)
            task = await self.store.get(Task, task_id)
            if task is None:
                raise NotFound("Task", task_id)
            project_id = task.project_id
            await self.session.execute(delete(TaskHistory).where(TaskHistory.task_id == task_id))
            await self.session.execute(delete(Subtask).where(Subtask.parent_task_id == task_id))
            await self.session.execute(delete(task_assignees).where(task_assignees.c.task_id == task_id))
            await self.session.execute(delete(Task).where(Task.id == task_id))
            await self.store.commit()
            logger.warning(f"Task {task_id[:8]} purged by {actor_id[:8]}")
            return MutationResult(task=None, changed=True, project_id=project_id)

        async def attempt(conflicts: int) -> MutationResult:
            task, project, actor = await self._load(task_id, actor_id)
            pview = project_view(project) if project else None
            allowed = (
                actor.role == UserRole.SUPER_ADMIN
                or task.created_by == actor.id
                or (pview is not None and self.resolver.can_manage_project(actor, pview))
            )
            if not allowed:
                raise Unauthorized("delete", "task", task_id)
            await self.store.conditional_update(
                Task, task_id, task.version, {"is_active": False, "updated_at": utcnow()},
            )
            entry = self._entry(task_id, actor, HistoryAction.DELETED, details=f"Deleted '{task.title}'")
            return MutationResult(task=task, history=[entry], changed=True, project_id=task.project_id)

        return await self._finish(await self._with_retries(task_id, attempt), task_id)

    # --- columns -------------------------------------------------

    async def _managed_project(self, project_id: str, actor_id: str) -> Tuple[Project, UserView]:
        project = await self._project(project_id)
        actor = await self._actor(actor_id)
        if not self.resolver.can_manage_project(actor, project_view(project)):
            raise Unauthorized("manage", "project", project_id)
        return project, actor

    async def get_columns(self, project_id: Optional[str], actor_id: str) -> List[dict]:
        if project_id is None:
            return columns_for(None)
        project = await self._project(project_id)
        actor = await self._actor(actor_id)
        placeholder = TaskView(id="", created_by="", project_id=project_id)
        if not self.resolver.can_view_task(actor, placeholder, project_view(project)):
            raise Unauthorized("view", "project", project_id)
        return columns_for(project)

    async def add_column(self, project_id: str, actor_id: str, name: str, color: Optional[str] = None) -> MutationResult:
        column_id = normalize_status(name)
        if not column_id:
            raise ValidationFailed("Column name is required")

        async def attempt(conflicts: int) -> MutationResult:
            project, actor = await self._managed_project(project_id, actor_id)
            columns = columns_for(project)
            if column_id in column_ids(columns):
                raise ValidationFailed(f"Column '{column_id}' already exists")
            columns.append({"id": column_id, "name": name.strip(), "order": len(columns),
                            "color": color or "#6366f1"})
            await self.store.conditional_update(
                Project, project_id, project.version, {"columns": columns, "updated_at": utcnow()},
            )
            logger.info(f"Column '{column_id}' added to {project_id[:8]} by {actor_id[:8]}")
            return MutationResult(task=None, changed=True, project_id=project_id)

        return await self._with_retries(project_id, attempt)

    async def remove_column(self, project_id: str, column_id: str, actor_id: str) -> MutationResult:
        column_id = normalize_status(column_id)
        if column_id in DEFAULT_COLUMN_IDS:
            raise ProtectedColumn(column_id)

        async def attempt(conflicts: int) -> MutationResult:
            project, actor = await self._managed_project(project_id, actor_id)
            columns = columns_for(project)
            if column_id not in column_ids(columns):
                raise NotFound("Column", column_id)
            statuses = (await self.session.execute(
                select(Task.status).where(Task.project_id == project_id, Task.is_active.is_(True))
            )).scalars().all()
            in_use = sum(1 for s in statuses if normalize_status(s) == column_id)
            if in_use:
                raise ColumnInUse(column_id, in_use)
            remaining = [c for c in columns if c["id"] != column_id]
            for i, col in enumerate(remaining):
                col["order"] = i
            # Re-checked inside the UPDATE; a miss sends us back to the count above
            still_empty = ~select(Task.id).where(
                Task.project_id == project_id, Task.status == column_id, Task.is_active.is_(True),
            ).exists()
            await self.store.conditional_update(
                Project, project_id, project.version, {"columns": remaining, "updated_at": utcnow()},
                guards=[still_empty],
            )
            logger.info(f"Column '{column_id}' removed from {project_id[:8]} by {actor_id[:8]}")
            return MutationResult(task=None, changed=True, project_id=project_id)

        return await self._with_retries(project_id, attempt)

    async def reorder_columns(self, project_id: str, actor_id: str, ordered_ids: List[str]) -> MutationResult:
        wanted = [normalize_status(c) for c in ordered_ids]

        async def attempt(conflicts: int) -> MutationResult:
            project, actor = await self._managed_project(project_id, actor_id)
            columns = {c["id"]: c for c in columns_for(project)}
            if sorted(wanted) != sorted(columns):
                raise ValidationFailed(
                    "Column order must list every column exactly once",
                    details={"columns": sorted(columns)},
                )
            reordered = []
            for i, cid in enumerate(wanted):
                col = dict(columns[cid])
                col["order"] = i
                reordered.append(col)
            await self.store.conditional_update(
                Project, project_id, project.version, {"columns": reordered, "updated_at": utcnow()},
            )
            return MutationResult(task=None, changed=True, project_id=project_id)

        return await self._with_retries(project_id, attempt)

    # --- subtasks ------------------------------------------------

    async def _editable_parent(self, task_id: str, actor_id: str) -> Tuple[Task, Optional[ProjectView], UserView]:
        task, project, actor = await self._load(task_id, actor_id)
        pview = project_view(project) if project else None
        if not self.resolver.can_edit_task(actor, task_view(task), pview):
            raise Unauthorized("edit", "task", task_id)
        return task, pview, actor

    async def _subtask(self, subtask_id: str) -> Subtask:
        subtask = await self.store.get(Subtask, subtask_id)
        if subtask is None:
            raise NotFound("Subtask", subtask_id)
        return subtask

    async def list_subtasks(self, task_id: str, actor_id: str) -> List[Subtask]:
        await self.get_task(task_id, actor_id)
        rows = await self.session.execute(
            select(Subtask)
            .where(Subtask.parent_task_id == task_id)
            .order_by(Subtask.order, Subtask.created_at)
            .execution_options(populate_existing=True)
        )
        return list(rows.scalars().all())

    async def get_subtask(self, subtask_id: str, actor_id: str) -> Subtask:
        subtask = await self._subtask(subtask_id)
        await self.get_task(subtask.parent_task_id, actor_id)
        return subtask

    async def subtask_stats(self, task_id: str, actor_id: str) -> Dict[str, Any]:
        subtasks = await self.list_subtasks(task_id, actor_id)
        counts = {s: 0 for s in SubtaskStatus}
        for subtask in subtasks:
            counts[SubtaskStatus(subtask.status)] += 1
        total = len(subtasks)
        completed = counts[SubtaskStatus.DONE]
        return {
            "task_id": task_id,
            "total": total,
            "completed": completed,
            "in_progress": counts[SubtaskStatus.IN_PROGRESS],
            "todo": counts[SubtaskStatus.TODO],
            "progress_percentage": int(completed * 100 / total + 0.5) if total else 0,
        }

    async def create_subtask(self, task_id: str, actor_id: str, data: Dict[str, Any]) -> MutationResult:
        """Append a subtask to the end of the parent's checklist"""
        parent, pview, actor = await self._editable_parent(task_id, actor_id)
        assignee = data.get("assigned_to")
        if assignee:
            await self._check_assignees(actor, pview, task_view(parent), [assignee])

        status = SubtaskStatus(data.get("status") or SubtaskStatus.TODO)
        last = (await self.session.execute(
            select(func.max(Subtask.order)).where(Subtask.parent_task_id == task_id)
        )).scalar()
        subtask = Subtask(
            parent_task_id=task_id,
            title=data["title"],
            description=data.get("description"),
            status=status,
            priority=TaskPriority(data.get("priority") or TaskPriority.MEDIUM),
            assigned_to=assignee,
            estimated_hours=data.get("estimated_hours"),
            actual_hours=data.get("actual_hours"),
            start_date=_parse_dt(data.get("start_date")),
            end_date=_parse_dt(data.get("end_date")),
            completed_at=utcnow() if status == SubtaskStatus.DONE else None,
            created_by=actor.id,
            tags=list(data.get("tags") or []),
            order=0 if last is None else last + 1,
            version=1,
        )
        self.session.add(subtask)
        await self.store.commit()

        entry = self._entry(
            task_id, actor, HistoryAction.SUBTASK_ADDED, "subtasks", None, subtask.title,
            details=f"Subtask '{subtask.title}' created",
        )
        await self._record([entry])
        logger.info(f"Subtask {subtask.id[:8]} added to {task_id[:8]} by {actor_id[:8]}")
        return MutationResult(
            task=parent, subtask=subtask, history=[entry], changed=True, project_id=parent.project_id,
        )

    async def update_subtask(self, subtask_id: str, actor_id: str, changes: Dict[str, Any]) -> MutationResult:
        """Edit a subtask; each changed field leaves one entry on the parent's history"""

        async def attempt(conflicts: int) -> MutationResult:
            subtask = await self._subtask(subtask_id)
            parent, pview, actor = await self._editable_parent(subtask.parent_task_id, actor_id)
            title = subtask.title
            patch: Dict[str, Any] = {}
            entries: List[TaskHistory] = []

            def note(action: HistoryAction, details: str, old=None, new=None):
                entries.append(self._entry(parent.id, actor, action, "subtasks", old, new, details=details))

            if "status" in changes and changes["status"] is not None:
                old_status, new_status = SubtaskStatus(subtask.status), SubtaskStatus(changes["status"])
                if new_status != old_status:
                    patch["status"] = new_status
                    if new_status == SubtaskStatus.DONE:
                        patch["completed_at"] = subtask.completed_at or utcnow()
                        note(HistoryAction.SUBTASK_COMPLETED, f"Subtask '{title}' marked as completed", new=title)
                    else:
                        patch["completed_at"] = None
                        note(HistoryAction.SUBTASK_UPDATED,
                             f"Subtask '{title}' status changed from '{old_status.value}' to '{new_status.value}'",
                             old_status.value, new_status.value)
            if "title" in changes and changes["title"] and changes["title"] != title:
                patch["title"] = changes["title"]
                note(HistoryAction.SUBTASK_UPDATED,
                     f"Subtask title changed from '{title}' to '{changes['title']}'", title, changes["title"])
            if "description" in changes and changes["description"] != subtask.description:
                patch["description"] = changes["description"]
                note(HistoryAction.SUBTASK_UPDATED, f"Subtask '{title}' description updated")
            if "priority" in changes and changes["priority"] is not None:
                old_priority, new_priority = TaskPriority(subtask.priority), TaskPriority(changes["priority"])
                if new_priority != old_priority:
                    patch["priority"] = new_priority
                    note(HistoryAction.SUBTASK_UPDATED,
                         f"Subtask '{title}' priority changed from '{old_priority.value}' to '{new_priority.value}'",
                         old_priority.value, new_priority.value)
            if "assigned_to" in changes and changes["assigned_to"] != subtask.assigned_to:
                if not self.resolver.can_assign_tasks(actor, pview, task_view(parent)):
                    raise Unauthorized("assign", "task", parent.id)
                if changes["assigned_to"]:
                    await self._check_assignees(actor, pview, task_view(parent), [changes["assigned_to"]])
                patch["assigned_to"] = changes["assigned_to"]
                note(HistoryAction.SUBTASK_UPDATED, f"Subtask '{title}' reassigned",
                     subtask.assigned_to, changes["assigned_to"])
            for key in ("estimated_hours", "actual_hours"):
                if key in changes and changes[key] != getattr(subtask, key):
                    patch[key] = changes[key]
                    note(HistoryAction.SUBTASK_UPDATED, f"Subtask '{title}' {key.replace('_', ' ')} updated",
                         getattr(subtask, key), changes[key])
            for key in ("start_date", "end_date"):
                if key in changes:
                    new_dt, old_dt = _parse_dt(changes[key]), getattr(subtask, key)
                    if not _same_instant(old_dt, new_dt):
                        patch[key] = new_dt
                        note(HistoryAction.SUBTASK_UPDATED, f"Subtask '{title}' {key.replace('_', ' ')} updated",
                             _ts(old_dt), _ts(new_dt))
            if "tags" in changes and changes["tags"] is not None:
                new_tags = list(dict.fromkeys(changes["tags"]))
                if new_tags != list(subtask.tags or []):
                    patch["tags"] = new_tags
                    note(HistoryAction.SUBTASK_UPDATED, f"Subtask '{title}' tags updated",
                         list(subtask.tags or []), new_tags)

            if not entries:
                return MutationResult(task=parent, subtask=subtask, project_id=parent.project_id)

            patch["updated_at"] = utcnow()
            await self.store.conditional_update(Subtask, subtask_id, subtask.version, patch)
            logger.info(f"Subtask {subtask_id[:8]} updated by {actor_id[:8]}: {len(entries)} change(s)")
            return MutationResult(
                task=parent, subtask=subtask, history=entries, changed=True, project_id=parent.project_id,
            )

        result = await self._with_retries(subtask_id, attempt)
        if result.changed:
            await self._record(result.history)
            result.subtask = await self._subtask(subtask_id)
        return result

    async def delete_subtask(self, subtask_id: str, actor_id: str) -> MutationResult:
        subtask = await self._subtask(subtask_id)
        parent, pview, actor = await self._editable_parent(subtask.parent_task_id, actor_id)
        await self.session.execute(delete(Subtask).where(Subtask.id == subtask_id))
        await self.store.commit()

        entry = self._entry(
            parent.id, actor, HistoryAction.SUBTASK_DELETED, "subtasks", subtask.title, None,
            details=f"Subtask '{subtask.title}' deleted",
        )
        await self._record([entry])
        logger.info(f"Subtask {subtask_id[:8]} deleted from {parent.id[:8]} by {actor_id[:8]}")
        return MutationResult(task=parent, history=[entry], changed=True, project_id=parent.project_id)

    async def reorder_subtask(self, subtask_id: str, actor_id: str, new_order: int) -> List[Subtask]:
        """Move a subtask to position new_order and renumber its siblings from zero"""
        subtask = await self._subtask(subtask_id)
        await self._editable_parent(subtask.parent_task_id, actor_id)
        siblings = [s for s in await self.list_subtasks(subtask.parent_task_id, actor_id) if s.id != subtask_id]
        position = max(0, min(new_order, len(siblings)))
        siblings.insert(position, subtask)
        for i, item in enumerate(siblings):
            if item.order != i:
                await self.session.execute(
                    update(Subtask).where(Subtask.id == item.id).values(order=i)
                    .execution_options(synchronize_session=False)
                )
        await self.store.commit()
        return await self.list_subtasks(subtask.parent_task_id, actor_id)
