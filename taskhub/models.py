import hashlib
import json
from datetime import datetime, timezone
from enum import Enum

from pydantic import field_validator, model_validator
from sqlalchemy import JSON, DateTime
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Column, Field, SQLModel

LocaleMap = dict[str, str]

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests).
LocaleJSON = JSON().with_variant(JSONB(), "postgresql")


def get_utc_now():
    """Helper function to get current UTC time with timezone"""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


PRIORITY_RANK = {p.value: rank for rank, p in enumerate(TaskPriority)}


class Task(SQLModel, table=True):
    """Database model"""

    __tablename__ = "tasks"

    id: int | None = Field(default=None, primary_key=True)
    owner_id: int = Field(index=True)
    name: LocaleMap = Field(sa_column=Column(LocaleJSON, nullable=False))
    description: LocaleMap | None = Field(
        default=None, sa_column=Column(LocaleJSON, nullable=True)
    )
    status: str = Field(default=TaskStatus.PENDING.value, max_length=20, index=True)
    priority: str = Field(default=TaskPriority.MEDIUM.value, max_length=10, index=True)
    due_date: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    parent_id: int | None = Field(default=None, foreign_key="tasks.id", index=True)
    created_at: datetime = Field(
        default_factory=get_utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=get_utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    deleted_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )

    @property
    def is_subtask(self) -> bool:
        return self.parent_id is not None


class TaskCreate(SQLModel):
    """Schema for creating a task"""

    name: LocaleMap
    description: LocaleMap | None = None
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.MEDIUM
    due_date: datetime | None = None
    parent_id: int | None = Field(default=None, gt=0)


class TaskUpdate(SQLModel):
    """Schema for updating a task - all fields optional, parent_id=None detaches"""

    name: LocaleMap | None = None
    description: LocaleMap | None = None
    status: TaskStatus | None = None
    priority: TaskPriority | None = None
    due_date: datetime | None = None
    parent_id: int | None = Field(default=None, gt=0)


class TaskParentUpdate(SQLModel):
    parent_id: int | None = Field(default=None, gt=0)


class BulkOperation(str, Enum):
    COMPLETE = "complete"
    DELETE = "delete"
    RESTORE = "restore"
    UPDATE_STATUS = "update_status"
    UPDATE_PRIORITY = "update_priority"


class SubtaskBulkUpdate(SQLModel):
    """Schema for applying one operation to several subtasks of a parent"""

    operation: BulkOperation
    subtask_ids: list[int] = Field(min_length=1, max_length=100)
    status: TaskStatus | None = None
    priority: TaskPriority | None = None

    @model_validator(mode="after")
    def _check_value(self):
        if self.operation == BulkOperation.UPDATE_STATUS and self.status is None:
            raise ValueError("status is required for update_status")
        if self.operation == BulkOperation.UPDATE_PRIORITY and self.priority is None:
            raise ValueError("priority is required for update_priority")
        return self

    def changes(self) -> dict:
        if self.operation == BulkOperation.COMPLETE:
            return {"status": TaskStatus.COMPLETED}
        if self.operation == BulkOperation.UPDATE_STATUS:
            return {"status": self.status}
        if self.operation == BulkOperation.UPDATE_PRIORITY:
            return {"priority": self.priority}
        return {}


class TaskSnapshot(SQLModel):
    """Point-in-time view of a task, safe to cache and publish."""

    id: int
    owner_id: int
    name: LocaleMap
    description: LocaleMap | None = None
    status: TaskStatus
    priority: TaskPriority
    due_date: datetime | None = None
    parent_id: int | None = None
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None = None

    localized_name: str | None = None
    localized_description: str | None = None

    model_config = {"from_attributes": True}

    @field_validator("due_date", "created_at", "updated_at", "deleted_at")
    @classmethod
    def _as_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)

    @property
    def is_completed(self) -> bool:
        return self.status == TaskStatus.COMPLETED

    def is_overdue(self, now: datetime | None = None) -> bool:
        now = now or get_utc_now()
        return (
            self.due_date is not None and self.due_date < now and not self.is_completed
        )


class TaskDetail(TaskSnapshot):
    """Detail view with loaded relations."""

    parent: TaskSnapshot | None = None
    subtasks: list[TaskSnapshot] = []
    completion_percentage: int = 0
    translation_status: dict[str, dict[str, bool]] = {}


def completion_percentage(task: TaskSnapshot, subtasks: list[TaskSnapshot]) -> int:
    if not subtasks:
        return 100 if task.is_completed else 0
    done = sum(1 for s in subtasks if s.is_completed)
    return round(100 * done / len(subtasks))


class TaskTranslations(SQLModel):
    task_id: int
    name: LocaleMap
    description: LocaleMap | None = None
    name_locales: list[str]
    description_locales: list[str]
    completeness: int
    translation_status: dict[str, dict[str, bool]]
    supported_locales: list[str]


class FieldCoverage(SQLModel):
    complete: int = 0
    total: int = 0
    percentage: float = 0


class LocaleCoverage(SQLModel):
    names: FieldCoverage
    descriptions: FieldCoverage


class TranslationReport(SQLModel):
    total_tasks: int
    locales: dict[str, LocaleCoverage]
    overall: LocaleCoverage


class TaskPage(SQLModel):
    items: list[TaskSnapshot]
    total: int
    page: int
    per_page: int


class TaskStatistics(SQLModel):
    total: int = 0
    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    cancelled: int = 0
    overdue: int = 0
    due_today: int = 0
    root_tasks: int = 0
    subtasks: int = 0


class HierarchyLevel(str, Enum):
    ALL = "all"
    ROOT = "root"
    SUBTASKS = "subtasks"


class SortField(str, Enum):
    CREATED_AT = "created_at"
    UPDATED_AT = "updated_at"
    DUE_DATE = "due_date"
    PRIORITY = "priority"
    STATUS = "status"
    NAME = "name"


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


class TaskFilter(SQLModel):
    """Filter, sort and pagination options for listing an owner's tasks."""

    status: TaskStatus | None = None
    priority: TaskPriority | None = None
    parent_id: int | None = Field(default=None, gt=0)
    hierarchy_level: HierarchyLevel = HierarchyLevel.ALL
    due_date_from: datetime | None = None
    due_date_to: datetime | None = None
    search: str | None = None
    search_locale: str | None = None
    locale_search: bool = True
    include_completed: bool = True
    include_deleted: bool = False
    page: int = Field(default=1, ge=1)
    per_page: int = Field(default=15, ge=1, le=100)
    sort_by: SortField = SortField.CREATED_AT
    sort_direction: SortDirection = SortDirection.DESC

    @field_validator("search")
    @classmethod
    def _normalize_search(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip().lower()
        return value or None

    @field_validator("due_date_from", "due_date_to")
    @classmethod
    def _dates_as_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _check_date_range(self):
        if (
            self.due_date_from is not None
            and self.due_date_to is not None
            and self.due_date_from > self.due_date_to
        ):
            raise ValueError("due_date_from must be before due_date_to")
        return self

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.per_page

    def fingerprint(self) -> str:
        """
        Stable hash of the canonical filter.

        Every field takes part, keys are sorted and values are dumped in JSON
        mode, so two filters that select the same page hash identically.
        """
        canonical = self.model_dump(mode="json")
        raw = json.dumps(canonical, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()
