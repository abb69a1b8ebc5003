import asyncio
from contextlib import AsyncExitStack, asynccontextmanager, contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from functools import partial
from typing import Any, Awaitable, Callable, Iterable, Sequence

import structlog
from sqlalchemy import String, and_, asc, case, desc, func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from taskhub.core.config import Settings
from taskhub.core.exceptions import (
    PersistenceError,
    StoreTimeoutError,
    TaskNotFoundError,
    TaskValidationError,
    ValidationCode,
)
from taskhub.models import (
    PRIORITY_RANK,
    BulkOperation,
    HierarchyLevel,
    LocaleMap,
    SortDirection,
    SortField,
    SubtaskBulkUpdate,
    Task,
    TaskCreate,
    TaskFilter,
    TaskSnapshot,
    TaskStatistics,
    TaskStatus,
    get_utc_now,
)

logger = structlog.get_logger(__name__)


@dataclass
class TaskMutation:
    """Result of a committed write, with the relations loaded in the same transaction."""

    task: Task
    before: TaskSnapshot | None = None
    parent: Task | None = None
    previous_parent: Task | None = None
    children: list[Task] = field(default_factory=list)

    @property
    def parent_changed(self) -> bool:
        return self.before is not None and self.before.parent_id != self.task.parent_id


@dataclass
class BulkMutation:
    """Subtasks touched by one bulk operation, and the parent's active children after it."""

    parent: Task
    mutations: list[TaskMutation] = field(default_factory=list)
    children: list[Task] = field(default_factory=list)


def validate_hierarchy(task: Task, parent: Task, children: Sequence[Task] = ()) -> None:
    """
    Check that ``task`` may be attached under ``parent``.

    ``children`` are the direct children of ``task``, deleted ones included.
    Depth is capped at two levels, so a parent that is a child of ``task`` is
    the only cycle that can exist and the check stays one level deep.

    Raises:
        TaskValidationError: SELF_PARENT, CIRCULAR_REFERENCE, DEPTH_EXCEEDED
            or CROSS_OWNER, checked in that order.
    """
    if task.id is not None and parent.id == task.id:
        raise TaskValidationError(
            ValidationCode.SELF_PARENT,
            "A task cannot be its own parent.",
            task_id=task.id,
        )

    child_ids = {child.id for child in children}
    if (task.id is not None and parent.parent_id == task.id) or parent.id in child_ids:
        raise TaskValidationError(
            ValidationCode.CIRCULAR_REFERENCE,
            "The selected parent is a subtask of this task.",
            task_id=task.id,
            parent_id=parent.id,
        )

    if parent.is_subtask:
        raise TaskValidationError(
            ValidationCode.DEPTH_EXCEEDED,
            "Cannot create subtask of a subtask. Maximum nesting level is 2.",
            parent_id=parent.id,
        )

    if child_ids:
        raise TaskValidationError(
            ValidationCode.DEPTH_EXCEEDED,
            "A task with subtasks cannot become a subtask.",
            task_id=task.id,
            subtask_ids=sorted(child_ids),
        )

    if parent.owner_id != task.owner_id:
        raise TaskValidationError(
            ValidationCode.CROSS_OWNER,
            "Parent task belongs to a different owner.",
            parent_id=parent.id,
        )


class TaskStore:
    """
    Persistence access for tasks.

    Every write opens its own session and runs the invariant re-check and the
    write inside one transaction. Writes hold the in-process lock and the row
    lock of every involved task, taken in ascending id order.

    The deadline covers waiting for locks and the work before the commit. The
    commit itself is never cut short: a ``StoreTimeoutError`` from a write
    means nothing was written.
    """

    def __init__(
        self, session_factory: async_sessionmaker[AsyncSession], settings: Settings
    ):
        self._session_factory = session_factory
        self._timeout = settings.store_timeout_seconds
        self._default_locale = settings.default_locale
        self._supported_locales = list(settings.supported_locales)
        # task id -> (lock, holders + waiters); an entry lives while its count is > 0
        self._locks: dict[int, tuple[asyncio.Lock, int]] = {}

    @staticmethod
    @contextmanager
    def _persistence_errors():
        try:
            yield
        except SQLAlchemyError as e:
            logger.error("task_store_error", error=str(e))
            raise PersistenceError("Task storage failed", error=str(e)) from e

    async def _with_deadline(self, coro, timeout: float | None):
        deadline = self._timeout if timeout is None else timeout
        try:
            with self._persistence_errors():
                return await asyncio.wait_for(coro, timeout=deadline)
        except asyncio.TimeoutError as e:
            logger.warning("task_store_timeout", timeout=deadline)
            raise StoreTimeoutError(
                f"Store operation exceeded {deadline}s", timeout=deadline
            ) from e

    @asynccontextmanager
    async def _lock(self, task_id: int):
        lock, users = self._locks.get(task_id, (None, 0))
        lock = lock or asyncio.Lock()
        self._locks[task_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[task_id]
            if users == 1:
                del self._locks[task_id]
            else:
                self._locks[task_id] = (lock, users - 1)

    async def _write(
        self,
        lock_ids: Iterable[int | None],
        work: Callable[[AsyncSession], Awaitable[Any]],
        timeout: float | None,
    ):
        """
        Run ``work(session)`` and commit it, holding the locks of ``lock_ids``.

        Only lock acquisition and ``work`` run under the deadline. The session
        is closed, rolling back anything uncommitted, before the locks go.
        """
        async with AsyncExitStack() as stack:

            async def prepare():
                for task_id in sorted({i for i in lock_ids if i is not None}):
                    await stack.enter_async_context(self._lock(task_id))
                session = await stack.enter_async_context(self._session_factory())
                return session, await work(session)

            session, result = await self._with_deadline(prepare(), timeout)
            with self._persistence_errors():
                await session.commit()
        return result

    @staticmethod
    async def _lock_rows(session: AsyncSession, *task_ids: int | None) -> dict[int, Task]:
        ids = sorted({i for i in task_ids if i is not None})
        if not ids:
            return {}
        stmt = (
            select(Task)
            .where(col(Task.id).in_(ids))
            .order_by(col(Task.id))
            .with_for_update()
        )
        rows = (await session.exec(stmt)).all()
        return {row.id: row for row in rows}

    @staticmethod
    async def _children(
        session: AsyncSession, task_id: int, include_deleted: bool
    ) -> list[Task]:
        stmt = select(Task).where(Task.parent_id == task_id)
        if not include_deleted:
            stmt = stmt.where(col(Task.deleted_at).is_(None))
        stmt = stmt.order_by(col(Task.created_at), col(Task.id))
        return list((await session.exec(stmt)).all())

    @staticmethod
    async def _active(session: AsyncSession, task_id: int | None) -> Task | None:
        if task_id is None:
            return None
        task = await session.get(Task, task_id)
        if task is None or task.deleted_at is not None:
            return None
        return task

    # -- writes -------------------------------------------------------------

    async def create(
        self, owner_id: int, data: TaskCreate, *, timeout: float | None = None
    ) -> TaskMutation:
        mutation = await self._write(
            [data.parent_id], partial(self._create, owner_id, data), timeout
        )
        logger.info(
            "task_created",
            task_id=mutation.task.id,
            owner_id=owner_id,
            parent_id=mutation.task.parent_id,
        )
        return mutation

    async def _create(
        self, owner_id: int, data: TaskCreate, session: AsyncSession
    ) -> TaskMutation:
        task = Task(
            owner_id=owner_id,
            name=data.name,
            description=data.description,
            status=data.status.value,
            priority=data.priority.value,
            due_date=data.due_date,
            parent_id=data.parent_id,
        )
        parent = None
        if data.parent_id is not None:
            rows = await self._lock_rows(session, data.parent_id)
            parent = rows.get(data.parent_id)
            if parent is None or parent.deleted_at is not None:
                raise TaskNotFoundError(data.parent_id, "Parent task not found.")
            validate_hierarchy(task, parent)

        session.add(task)
        await session.flush()
        return TaskMutation(task=task, parent=parent)

    async def update(
        self,
        task_id: int,
        owner_id: int,
        changes: dict[str, Any],
        *,
        timeout: float | None = None,
    ) -> TaskMutation:
        """
        Apply ``changes`` to an active task owned by ``owner_id``.

        A ``parent_id`` key (None included) re-parents the task and is
        validated against the hierarchy rules inside the transaction.
        """
        mutation = await self._write(
            [task_id, changes.get("parent_id")],
            partial(self._update, task_id, owner_id, changes),
            timeout,
        )
        logger.info(
            "task_updated",
            task_id=task_id,
            owner_id=owner_id,
            fields=sorted(changes),
        )
        return mutation

    async def reparent(
        self,
        task_id: int,
        owner_id: int,
        parent_id: int | None,
        *,
        timeout: float | None = None,
    ) -> TaskMutation:
        return await self.update(
            task_id, owner_id, {"parent_id": parent_id}, timeout=timeout
        )

    async def _update(
        self,
        task_id: int,
        owner_id: int,
        changes: dict[str, Any],
        session: AsyncSession,
    ) -> TaskMutation:
        reparenting = "parent_id" in changes
        new_parent_id = changes.get("parent_id")

        rows = await self._lock_rows(session, task_id, new_parent_id)
        task = rows.get(task_id)
        if task is None or task.owner_id != owner_id or task.deleted_at is not None:
            raise TaskNotFoundError(task_id)

        before = TaskSnapshot.model_validate(task)
        all_children = await self._children(session, task.id, True)

        previous_parent = None
        if reparenting and new_parent_id != task.parent_id:
            previous_parent = await self._active(session, task.parent_id)
            parent = None
            if new_parent_id is not None:
                parent = rows.get(new_parent_id)
                if parent is None or parent.deleted_at is not None:
                    raise TaskNotFoundError(new_parent_id, "Parent task not found.")
                validate_hierarchy(task, parent, all_children)
        else:
            parent = await self._active(session, task.parent_id)

        for name, value in changes.items():
            if isinstance(value, Enum):
                value = value.value
            setattr(task, name, value)
        task.updated_at = get_utc_now()
        session.add(task)
        await session.flush()

        return TaskMutation(
            task=task,
            before=before,
            parent=parent,
            previous_parent=previous_parent,
            children=[c for c in all_children if c.deleted_at is None],
        )

    async def soft_delete(
        self, task_id: int, owner_id: int, *, timeout: float | None = None
    ) -> TaskMutation:
        mutation = await self._write(
            [task_id], partial(self._set_deleted, task_id, owner_id, True), timeout
        )
        logger.info("task_deleted", task_id=task_id, owner_id=owner_id)
        return mutation

    async def restore(
        self, task_id: int, owner_id: int, *, timeout: float | None = None
    ) -> TaskMutation:
        mutation = await self._write(
            [task_id], partial(self._set_deleted, task_id, owner_id, False), timeout
        )
        logger.info("task_restored", task_id=task_id, owner_id=owner_id)
        return mutation

    async def _set_deleted(
        self, task_id: int, owner_id: int, deleted: bool, session: AsyncSession
    ) -> TaskMutation:
        rows = await self._lock_rows(session, task_id)
        task = rows.get(task_id)
        # delete needs an active task, restore a deleted one
        if (
            task is None
            or task.owner_id != owner_id
            or (task.deleted_at is not None) == deleted
        ):
            raise TaskNotFoundError(task_id)

        before = TaskSnapshot.model_validate(task)
        now = get_utc_now()
        task.deleted_at = now if deleted else None
        task.updated_at = now
        session.add(task)
        await session.flush()

        parent = await self._active(session, task.parent_id)
        children = await self._children(session, task.id, False)
        return TaskMutation(task=task, before=before, parent=parent, children=children)

    async def bulk_update_subtasks(
        self,
        parent_id: int,
        owner_id: int,
        data: SubtaskBulkUpdate,
        *,
        timeout: float | None = None,
    ) -> BulkMutation:
        """
        Apply one operation to several direct subtasks of ``parent_id``.

        All listed ids must be subtasks of the parent and, except for restore,
        active; otherwise nothing is written. Restoring an active subtask is a
        no-op and it is left out of the result.

        Raises:
            TaskNotFoundError: the parent is missing, deleted or not owned.
            TaskValidationError: NOT_A_SUBTASK, with the offending ids.
        """
        ids = sorted(set(data.subtask_ids))
        bulk = await self._write(
            [parent_id, *ids],
            partial(self._bulk_update, parent_id, owner_id, data, ids),
            timeout,
        )
        logger.info(
            "subtasks_bulk_updated",
            parent_task_id=parent_id,
            owner_id=owner_id,
            operation=data.operation.value,
            affected=len(bulk.mutations),
        )
        return bulk

    async def _bulk_update(
        self,
        parent_id: int,
        owner_id: int,
        data: SubtaskBulkUpdate,
        ids: list[int],
        session: AsyncSession,
    ) -> BulkMutation:
        rows = await self._lock_rows(session, parent_id, *ids)
        parent = rows.get(parent_id)
        if parent is None or parent.owner_id != owner_id or parent.deleted_at is not None:
            raise TaskNotFoundError(parent_id, "Parent task not found.")

        restoring = data.operation == BulkOperation.RESTORE
        strays = []
        for task_id in ids:
            task = rows.get(task_id)
            if (
                task is None
                or task.owner_id != owner_id
                or task.parent_id != parent_id
                or (task.deleted_at is not None and not restoring)
            ):
                strays.append(task_id)
        if strays:
            raise TaskValidationError(
                ValidationCode.NOT_A_SUBTASK,
                "Some tasks are not active subtasks of this parent.",
                parent_id=parent_id,
                task_ids=strays,
            )

        now = get_utc_now()
        changes = data.changes()
        bulk = BulkMutation(parent=parent)
        for task_id in ids:
            task = rows[task_id]
            if restoring and task.deleted_at is None:
                continue
            before = TaskSnapshot.model_validate(task)
            if data.operation == BulkOperation.DELETE:
                task.deleted_at = now
            elif restoring:
                task.deleted_at = None
            for name, value in changes.items():
                setattr(task, name, value.value)
            task.updated_at = now
            session.add(task)
            bulk.mutations.append(TaskMutation(task=task, before=before, parent=parent))

        await session.flush()
        bulk.children = await self._children(session, parent_id, False)
        return bulk

    # -- reads --------------------------------------------------------------

    async def find_by_id_and_owner(
        self,
        task_id: int,
        owner_id: int,
        *,
        include_deleted: bool,
        timeout: float | None = None,
    ) -> Task | None:
        return await self._with_deadline(
            self._find(task_id, owner_id, include_deleted), timeout
        )

    async def _find(
        self, task_id: int, owner_id: int, include_deleted: bool
    ) -> Task | None:
        async with self._session_factory() as session:
            stmt = select(Task).where(Task.id == task_id, Task.owner_id == owner_id)
            if not include_deleted:
                stmt = stmt.where(col(Task.deleted_at).is_(None))
            return (await session.exec(stmt)).first()

    async def get_direct_children(
        self, task_id: int, *, include_deleted: bool, timeout: float | None = None
    ) -> list[Task]:
        return await self._with_deadline(
            self._get_direct_children(task_id, include_deleted), timeout
        )

    async def _get_direct_children(self, task_id: int, include_deleted: bool):
        async with self._session_factory() as session:
            return await self._children(session, task_id, include_deleted)

    async def list_with_filters(
        self, owner_id: int, flt: TaskFilter, *, timeout: float | None = None
    ) -> tuple[list[Task], int]:
        return await self._with_deadline(self._list(owner_id, flt), timeout)

    async def _list(self, owner_id: int, flt: TaskFilter) -> tuple[list[Task], int]:
        conditions = self._filter_conditions(owner_id, flt)
        async with self._session_factory() as session:
            count_stmt = select(func.count()).select_from(Task).where(*conditions)
            total = (await session.exec(count_stmt)).one()

            query = (
                select(Task)
                .where(*conditions)
                .order_by(*self._ordering(flt))
                .offset(flt.offset)
                .limit(flt.per_page)
            )
            tasks = list((await session.exec(query)).all())
        return tasks, total

    def _filter_conditions(self, owner_id: int, flt: TaskFilter) -> list:
        conditions = [Task.owner_id == owner_id]
        if not flt.include_deleted:
            conditions.append(col(Task.deleted_at).is_(None))
        if flt.status is not None:
            conditions.append(Task.status == flt.status.value)
        if flt.priority is not None:
            conditions.append(Task.priority == flt.priority.value)
        if flt.parent_id is not None:
            conditions.append(Task.parent_id == flt.parent_id)
        if flt.hierarchy_level == HierarchyLevel.ROOT:
            conditions.append(col(Task.parent_id).is_(None))
        elif flt.hierarchy_level == HierarchyLevel.SUBTASKS:
            conditions.append(col(Task.parent_id).is_not(None))
        if flt.due_date_from is not None:
            conditions.append(col(Task.due_date) >= flt.due_date_from)
        if flt.due_date_to is not None:
            conditions.append(col(Task.due_date) <= flt.due_date_to)
        if not flt.include_completed:
            conditions.append(Task.status != TaskStatus.COMPLETED.value)
        if flt.search:
            conditions.append(self._search_condition(flt))
        return conditions

    def _search_condition(self, flt: TaskFilter):
        if flt.locale_search:
            locales = [flt.search_locale or self._default_locale, self._default_locale]
        else:
            locales = self._supported_locales
        clauses = []
        for locale in dict.fromkeys(locales):
            for column in (col(Task.name), col(Task.description)):
                text = func.lower(column[locale].as_string(), type_=String)
                clauses.append(text.contains(flt.search, autoescape=True))
        return or_(*clauses)

    def _ordering(self, flt: TaskFilter) -> list:
        if flt.sort_by == SortField.PRIORITY:
            key = case(PRIORITY_RANK, value=col(Task.priority), else_=-1)
        elif flt.sort_by == SortField.NAME:
            key = func.lower(col(Task.name)[self._default_locale].as_string())
        else:
            key = col(getattr(Task, flt.sort_by.value))
        direction = asc if flt.sort_direction == SortDirection.ASC else desc
        # id breaks ties so pages never overlap
        return [direction(key), direction(col(Task.id))]

    async def statistics(
        self,
        owner_id: int,
        *,
        now: datetime | None = None,
        timeout: float | None = None,
    ) -> TaskStatistics:
        return await self._with_deadline(self._statistics(owner_id, now), timeout)

    async def _statistics(self, owner_id: int, now: datetime | None) -> TaskStatistics:
        now = now or get_utc_now()
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        end_of_day = start_of_day + timedelta(days=1)
        open_task = Task.status != TaskStatus.COMPLETED.value
        due_date = col(Task.due_date)

        def count_where(label: str, *conditions):
            hit = case((and_(*conditions), 1), else_=0)
            return func.coalesce(func.sum(hit), 0).label(label)

        columns = [func.count().label("total")]
        columns += [
            count_where(status.value, Task.status == status.value)
            for status in TaskStatus
        ]
        columns += [
            count_where("overdue", due_date < now, open_task),
            count_where("due_today", due_date >= start_of_day, due_date < end_of_day, open_task),
            count_where("root_tasks", col(Task.parent_id).is_(None)),
            count_where("subtasks", col(Task.parent_id).is_not(None)),
        ]
        stmt = (
            select(*columns)
            .select_from(Task)
            .where(Task.owner_id == owner_id, col(Task.deleted_at).is_(None))
        )
        async with self._session_factory() as session:
            row = (await session.exec(stmt)).one()
        return TaskStatistics(**{k: int(v) for k, v in row._mapping.items()})

    async def locale_maps(
        self, owner_id: int, *, timeout: float | None = None
    ) -> list[tuple[LocaleMap, LocaleMap | None]]:
        """``(name, description)`` of every active task of the owner, by id."""
        return await self._with_deadline(self._locale_maps(owner_id), timeout)

    async def _locale_maps(self, owner_id: int):
        stmt = (
            select(col(Task.name), col(Task.description))
            .where(Task.owner_id == owner_id, col(Task.deleted_at).is_(None))
            .order_by(col(Task.id))
        )
        async with self._session_factory() as session:
            rows = (await session.exec(stmt)).all()
        return [(name, description) for name, description in rows]
