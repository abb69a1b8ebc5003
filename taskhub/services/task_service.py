from typing import Any

import structlog

from taskhub.cache.layer import CacheLayer
from taskhub.core.config import Settings
from taskhub.core.exceptions import TaskNotFoundError, TaskValidationError, ValidationCode
from taskhub.core.locale import (
    available_locales,
    completeness,
    normalize_locale_map,
    resolve,
    translation_report,
    translation_status,
)
from taskhub.events.broadcaster import EventBroadcaster
from taskhub.events.envelope import EventKind
from taskhub.models import (
    BulkOperation,
    SubtaskBulkUpdate,
    TaskCreate,
    TaskDetail,
    TaskFilter,
    TaskPage,
    TaskSnapshot,
    TaskStatistics,
    TaskStatus,
    TaskTranslations,
    TaskUpdate,
    TranslationReport,
    completion_percentage,
)
from taskhub.repositories.task_store import TaskMutation, TaskStore

logger = structlog.get_logger(__name__)

TRACKED_FIELDS = ("name", "description", "status", "priority", "due_date", "parent_id")

# Fields a PATCH may not null out.
REQUIRED_FIELDS = ("name", "status", "priority")

BULK_EVENTS = {
    BulkOperation.COMPLETE: EventKind.COMPLETED,
    BulkOperation.DELETE: EventKind.DELETED,
    BulkOperation.RESTORE: EventKind.RESTORED,
    BulkOperation.UPDATE_STATUS: EventKind.UPDATED,
    BulkOperation.UPDATE_PRIORITY: EventKind.UPDATED,
}


def calculate_changes(before: TaskSnapshot, after: TaskSnapshot) -> dict[str, Any]:
    changes = {}
    for field in TRACKED_FIELDS:
        old, new = getattr(before, field), getattr(after, field)
        if old != new:
            changes[field] = {"from": old, "to": new}
    return changes


class TaskOrchestrator:
    """
    Entry point for task operations.

    A mutation runs in three steps: the store validates the hierarchy and
    writes inside one transaction; then, only after the commit, the cache is
    invalidated and finally events are broadcast. Step three never turns a
    committed mutation into a failure.
    """

    def __init__(
        self,
        store: TaskStore,
        cache: CacheLayer,
        broadcaster: EventBroadcaster,
        settings: Settings,
    ):
        self._store = store
        self._cache = cache
        self._broadcaster = broadcaster
        self._default_locale = settings.default_locale
        self._supported_locales = list(settings.supported_locales)
        self._broadcast_stats_updates = settings.broadcast_stats_updates

    # -- validation ---------------------------------------------------------

    def _locale_map(self, value, field: str, required: bool):
        return normalize_locale_map(
            value,
            self._supported_locales,
            field=field,
            require_default=required,
            default_locale=self._default_locale,
        )

    def _validated_create(self, data: TaskCreate) -> TaskCreate:
        return data.model_copy(
            update={
                "name": self._locale_map(data.name, "name", required=True),
                "description": self._locale_map(
                    data.description, "description", required=False
                ),
            }
        )

    def _validated_changes(self, data: TaskUpdate) -> dict[str, Any]:
        changes = data.model_dump(exclude_unset=True)
        if "name" in changes:
            if changes["name"] is None:
                raise TaskValidationError(
                    ValidationCode.MISSING_DEFAULT_LOCALE_NAME,
                    f"name must have a non-empty '{self._default_locale}' translation",
                    field="name",
                )
            changes["name"] = self._locale_map(changes["name"], "name", required=True)
        if "description" in changes:
            changes["description"] = self._locale_map(
                changes["description"], "description", required=False
            )
        for field in REQUIRED_FIELDS:
            if field in changes and changes[field] is None:
                del changes[field]
        return changes

    def _locale(self, locale: str | None) -> str:
        if locale in self._supported_locales:
            return locale
        return self._default_locale

    # -- mutations ----------------------------------------------------------

    async def create(self, owner_id: int, data: TaskCreate) -> TaskSnapshot:
        mutation = await self._store.create(owner_id, self._validated_create(data))
        return await self._after_commit(mutation, EventKind.CREATED)

    async def update(self, owner_id: int, task_id: int, data: TaskUpdate) -> TaskSnapshot:
        changes = self._validated_changes(data)
        if not changes:
            task = await self._store.find_by_id_and_owner(
                task_id, owner_id, include_deleted=False
            )
            if task is None:
                raise TaskNotFoundError(task_id)
            return TaskSnapshot.model_validate(task)

        mutation = await self._store.update(task_id, owner_id, changes)
        return await self._after_commit(mutation, EventKind.UPDATED)

    async def complete(self, owner_id: int, task_id: int) -> TaskSnapshot:
        mutation = await self._store.update(
            task_id, owner_id, {"status": TaskStatus.COMPLETED}
        )
        return await self._after_commit(mutation, EventKind.COMPLETED)

    async def reparent(
        self, owner_id: int, task_id: int, parent_id: int | None
    ) -> TaskSnapshot:
        mutation = await self._store.reparent(task_id, owner_id, parent_id)
        return await self._after_commit(mutation, EventKind.UPDATED)

    async def soft_delete(self, owner_id: int, task_id: int) -> TaskSnapshot:
        mutation = await self._store.soft_delete(task_id, owner_id)
        return await self._after_commit(mutation, EventKind.DELETED)

    async def restore(self, owner_id: int, task_id: int) -> TaskSnapshot:
        mutation = await self._store.restore(task_id, owner_id)
        return await self._after_commit(mutation, EventKind.RESTORED)

    async def bulk_subtasks(
        self, owner_id: int, parent_id: int, data: SubtaskBulkUpdate
    ) -> list[TaskSnapshot]:
        bulk = await self._store.bulk_update_subtasks(parent_id, owner_id, data)
        parent = TaskSnapshot.model_validate(bulk.parent)
        tasks = [TaskSnapshot.model_validate(m.task) for m in bulk.mutations]

        try:
            for task in tasks:
                await self._cache.invalidate_for_task(task, parent=parent)
        except Exception:
            logger.exception("cache_invalidation_failed", parent_task_id=parent_id)

        try:
            kind = BULK_EVENTS[data.operation]
            for mutation, task in zip(bulk.mutations, tasks):
                changes = calculate_changes(mutation.before, task)
                await self._broadcast_lifecycle(kind, task, changes)
            if tasks:
                await self._broadcaster.broadcast_hierarchy_parent_updated(
                    parent, [TaskSnapshot.model_validate(c) for c in bulk.children]
                )
        except Exception:
            logger.exception(
                "event_broadcast_failed",
                parent_task_id=parent_id,
                event_kind=data.operation.value,
            )

        if tasks:
            await self._broadcast_stats(owner_id)
        return tasks

    async def _after_commit(self, mutation: TaskMutation, kind: EventKind) -> TaskSnapshot:
        task = TaskSnapshot.model_validate(mutation.task)
        parent = (
            TaskSnapshot.model_validate(mutation.parent) if mutation.parent else None
        )
        previous = (
            TaskSnapshot.model_validate(mutation.previous_parent)
            if mutation.parent_changed and mutation.previous_parent
            else None
        )
        children = [TaskSnapshot.model_validate(c) for c in mutation.children]
        changes = (
            calculate_changes(mutation.before, task) if mutation.before else None
        )

        # Invalidate before broadcasting: consumers re-query on events.
        try:
            await self._cache.invalidate_for_task(
                task, parent=parent, child_ids=[c.id for c in children]
            )
            if mutation.parent_changed and mutation.before.parent_id is not None:
                await self._cache.invalidate_for_task(mutation.before, parent=previous)
        except Exception:
            logger.exception("cache_invalidation_failed", task_id=task.id)

        try:
            await self._broadcast(kind, task, parent, children, changes)
            if previous is not None:
                await self._broadcaster.broadcast_hierarchy_child_removed(task, previous)
        except Exception:
            logger.exception(
                "event_broadcast_failed", task_id=task.id, event_kind=kind.value
            )

        await self._broadcast_stats(task.owner_id)
        return task

    async def _broadcast_lifecycle(
        self, kind: EventKind, task: TaskSnapshot, changes: dict[str, Any] | None
    ) -> None:
        b = self._broadcaster
        if kind == EventKind.CREATED:
            await b.broadcast_created(task)
        elif kind == EventKind.UPDATED:
            await b.broadcast_updated(task, changes)
        elif kind == EventKind.COMPLETED:
            await b.broadcast_completed(task)
        elif kind == EventKind.DELETED:
            await b.broadcast_deleted(task)
        elif kind == EventKind.RESTORED:
            await b.broadcast_restored(task)

    async def _broadcast(
        self,
        kind: EventKind,
        task: TaskSnapshot,
        parent: TaskSnapshot | None,
        children: list[TaskSnapshot],
        changes: dict[str, Any] | None,
    ) -> None:
        b = self._broadcaster
        await self._broadcast_lifecycle(kind, task, changes)
        if kind == EventKind.UPDATED and "status" in (changes or {}) and task.is_completed:
            await b.broadcast_completed(task)

        if children:
            await b.broadcast_hierarchy_parent_updated(task, children)
        if task.parent_id is not None:
            await b.broadcast_hierarchy_child_updated(task, parent)

    async def _broadcast_stats(self, owner_id: int) -> None:
        if not self._broadcast_stats_updates:
            return
        try:
            stats = await self.get_statistics(owner_id)
            await self._broadcaster.broadcast_user_stats_updated(owner_id, stats)
        except Exception:
            logger.exception("stats_broadcast_failed", owner_id=owner_id)

    # -- reads --------------------------------------------------------------

    def _localized(self, snapshot: TaskSnapshot, locale: str):
        return snapshot.model_copy(
            update={
                "localized_name": resolve(snapshot.name, locale, self._default_locale),
                "localized_description": resolve(
                    snapshot.description, locale, self._default_locale
                ),
            }
        )

    async def list_tasks(
        self, owner_id: int, flt: TaskFilter, locale: str | None = None
    ) -> TaskPage:
        locale = self._locale(locale)
        if flt.search and flt.locale_search and flt.search_locale is None:
            flt = flt.model_copy(update={"search_locale": locale})

        fingerprint = flt.fingerprint()
        cached = await self._cache.get_list(owner_id, fingerprint)
        if cached is not None:
            page = TaskPage.model_validate(cached)
        else:
            tasks, total = await self._store.list_with_filters(owner_id, flt)
            page = TaskPage(
                items=[TaskSnapshot.model_validate(t) for t in tasks],
                total=total,
                page=flt.page,
                per_page=flt.per_page,
            )
            await self._cache.put_list(owner_id, fingerprint, page.model_dump(mode="json"))

        page.items = [self._localized(item, locale) for item in page.items]
        return page

    async def get_detail(
        self, owner_id: int, task_id: int, locale: str | None = None
    ) -> TaskDetail:
        locale = self._locale(locale)
        cached = await self._cache.get_detail(task_id)
        if cached is not None:
            detail = TaskDetail.model_validate(cached)
            if detail.owner_id != owner_id:
                raise TaskNotFoundError(task_id)
        else:
            detail = await self._load_detail(owner_id, task_id)
            await self._cache.put_detail(task_id, detail.model_dump(mode="json"))

        detail = self._localized(detail, locale)
        if detail.parent is not None:
            detail.parent = self._localized(detail.parent, locale)
        detail.subtasks = [self._localized(s, locale) for s in detail.subtasks]
        return detail

    async def _load_detail(self, owner_id: int, task_id: int) -> TaskDetail:
        task = await self._store.find_by_id_and_owner(
            task_id, owner_id, include_deleted=False
        )
        if task is None:
            raise TaskNotFoundError(task_id)

        snapshot = TaskSnapshot.model_validate(task)
        parent = None
        if task.parent_id is not None:
            found = await self._store.find_by_id_and_owner(
                task.parent_id, owner_id, include_deleted=False
            )
            parent = TaskSnapshot.model_validate(found) if found else None
        subtasks = [
            TaskSnapshot.model_validate(c)
            for c in await self._store.get_direct_children(
                task.id, include_deleted=False
            )
        ]
        return TaskDetail(
            **snapshot.model_dump(),
            parent=parent,
            subtasks=subtasks,
            completion_percentage=completion_percentage(snapshot, subtasks),
            translation_status=translation_status(
                snapshot.name, snapshot.description, self._supported_locales
            ),
        )

    async def get_statistics(self, owner_id: int) -> TaskStatistics:
        cached = await self._cache.get_stats(owner_id)
        if cached is not None:
            return TaskStatistics.model_validate(cached)

        stats = await self._store.statistics(owner_id)
        await self._cache.put_stats(owner_id, stats.model_dump())
        return stats

    async def get_translations(self, owner_id: int, task_id: int) -> TaskTranslations:
        task = await self._store.find_by_id_and_owner(
            task_id, owner_id, include_deleted=False
        )
        if task is None:
            raise TaskNotFoundError(task_id)

        return TaskTranslations(
            task_id=task.id,
            name=task.name,
            description=task.description,
            name_locales=available_locales(task.name),
            description_locales=available_locales(task.description),
            completeness=completeness(task.name, self._supported_locales).percentage,
            translation_status=translation_status(
                task.name, task.description, self._supported_locales
            ),
            supported_locales=self._supported_locales,
        )

    async def translation_report(self, owner_id: int) -> TranslationReport:
        maps = await self._store.locale_maps(owner_id)
        return TranslationReport.model_validate(
            translation_report(maps, self._supported_locales)
        )
