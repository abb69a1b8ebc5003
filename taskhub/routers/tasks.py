from fastapi import APIRouter, Query, status
from typing_extensions import Annotated

from taskhub.deps import LocaleDep, OrchestratorDep, OwnerDep
from taskhub.models import (
    SubtaskBulkUpdate,
    TaskCreate,
    TaskDetail,
    TaskFilter,
    TaskPage,
    TaskParentUpdate,
    TaskSnapshot,
    TaskStatistics,
    TaskTranslations,
    TaskUpdate,
    TranslationReport,
)

router = APIRouter(prefix="/tasks", tags=["tasks"])


@router.post("/", response_model=TaskSnapshot, status_code=status.HTTP_201_CREATED)
async def create_task(data: TaskCreate, owner_id: OwnerDep, tasks: OrchestratorDep):
    """Create a new task"""
    return await tasks.create(owner_id, data)


@router.get("/", response_model=TaskPage)
async def list_tasks(
    filters: Annotated[TaskFilter, Query()],
    owner_id: OwnerDep,
    tasks: OrchestratorDep,
    locale: LocaleDep,
):
    return await tasks.list_tasks(owner_id, filters, locale)


@router.get("/stats", response_model=TaskStatistics)
async def task_statistics(owner_id: OwnerDep, tasks: OrchestratorDep):
    return await tasks.get_statistics(owner_id)


@router.get("/translations/report", response_model=TranslationReport)
async def translation_report(owner_id: OwnerDep, tasks: OrchestratorDep):
    """Translation coverage across the owner's active tasks"""
    return await tasks.translation_report(owner_id)


@router.get("/{task_id}", response_model=TaskDetail)
async def get_task(
    task_id: int, owner_id: OwnerDep, tasks: OrchestratorDep, locale: LocaleDep
):
    """Get a specific task with its parent and subtasks"""
    return await tasks.get_detail(owner_id, task_id, locale)


@router.patch("/{task_id}", response_model=TaskSnapshot)
async def update_task(
    task_id: int, data: TaskUpdate, owner_id: OwnerDep, tasks: OrchestratorDep
):
    return await tasks.update(owner_id, task_id, data)


@router.put("/{task_id}/parent", response_model=TaskSnapshot)
async def set_task_parent(
    task_id: int, data: TaskParentUpdate, owner_id: OwnerDep, tasks: OrchestratorDep
):
    """Move a task under another root task, or detach it with parent_id=null"""
    return await tasks.reparent(owner_id, task_id, data.parent_id)


@router.post("/{task_id}/complete", response_model=TaskSnapshot)
async def mark_task_complete(task_id: int, owner_id: OwnerDep, tasks: OrchestratorDep):
    """Mark a task as completed"""
    return await tasks.complete(owner_id, task_id)


@router.delete("/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_task(task_id: int, owner_id: OwnerDep, tasks: OrchestratorDep):
    """Soft delete a task"""
    await tasks.soft_delete(owner_id, task_id)


@router.post("/{task_id}/restore", response_model=TaskSnapshot)
async def restore_task(task_id: int, owner_id: OwnerDep, tasks: OrchestratorDep):
    return await tasks.restore(owner_id, task_id)


@router.get("/{task_id}/translations", response_model=TaskTranslations)
async def get_task_translations(task_id: int, owner_id: OwnerDep, tasks: OrchestratorDep):
    return await tasks.get_translations(owner_id, task_id)


@router.post("/{task_id}/subtasks/bulk", response_model=list[TaskSnapshot])
async def bulk_subtask_operation(
    task_id: int, data: SubtaskBulkUpdate, owner_id: OwnerDep, tasks: OrchestratorDep
):
    """Apply one operation to several subtasks of a task"""
    return await tasks.bulk_subtasks(owner_id, task_id, data)
