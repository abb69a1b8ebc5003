from datetime import datetime
from enum import Enum
from typing import Any

from sqlmodel import Field, SQLModel

from taskhub.models import TaskSnapshot, TaskStatistics, get_utc_now


class EventKind(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    COMPLETED = "completed"
    DELETED = "deleted"
    RESTORED = "restored"
    PARENT_UPDATED = "parent_updated"
    SUBTASK_UPDATED = "subtask_updated"
    USER_STATS_UPDATED = "user_stats_updated"


class EventEnvelope(SQLModel):
    """
    Payload published on a channel for one event.

    ``task`` is always a full snapshot, so consumers can apply envelopes in
    any order and more than once. ``changes`` is advisory.
    """

    event: EventKind
    task: TaskSnapshot
    changes: dict[str, dict[str, Any]] | None = None
    parent_task: TaskSnapshot | None = None
    updated_subtask: TaskSnapshot | None = None
    timestamp: datetime = Field(default_factory=get_utc_now)

    @property
    def subject(self) -> dict[str, int]:
        return {"task_id": self.task.id}

    def to_message(self) -> str:
        optional = {"changes", "parent_task", "updated_subtask"}
        return self.model_dump_json(
            exclude={name for name in optional if getattr(self, name) is None}
        )


class StatsEnvelope(SQLModel):
    """Fresh counters for one owner, published on that owner's channel only."""

    event: EventKind = EventKind.USER_STATS_UPDATED
    user_id: int
    stats: TaskStatistics
    timestamp: datetime = Field(default_factory=get_utc_now)

    @property
    def subject(self) -> dict[str, int]:
        return {"owner_id": self.user_id}

    def to_message(self) -> str:
        return self.model_dump_json()
