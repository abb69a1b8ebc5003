import time
from typing import Any, Iterable

import structlog
from redis.asyncio import Redis, RedisError

from taskhub.core.config import Settings
from taskhub.core.exceptions import BroadcastFailure
from taskhub.events.envelope import EventEnvelope, EventKind, StatsEnvelope
from taskhub.models import TaskSnapshot, TaskStatistics

logger = structlog.get_logger(__name__)


class EventBroadcaster:
    """
    Publishes task events over Redis pub/sub.

    Lifecycle events go to the owner's channel and to the global channel.
    Hierarchy events go to the owner channel of the task being told about the
    change. Publishing is best effort: a failed publish is logged and counted,
    never retried and never raised. Every broadcast method returns the number
    of envelopes actually published.
    """

    def __init__(self, redis: Redis | None, settings: Settings):
        self._redis = redis
        self._user_channel_prefix = settings.user_channel_prefix
        self.global_channel = settings.global_channel
        self.metrics = {"published": 0, "failed": 0}

    def user_channel(self, owner_id: int) -> str:
        return f"{self._user_channel_prefix}:{owner_id}"

    async def _send(self, channel: str, envelope: EventEnvelope | StatsEnvelope) -> None:
        if self._redis is None:
            raise BroadcastFailure(channel, envelope.event.value)
        try:
            await self._redis.publish(channel, envelope.to_message())
        except (RedisError, OSError) as e:
            raise BroadcastFailure(channel, envelope.event.value) from e

    async def _publish(self, channel: str, envelope: EventEnvelope | StatsEnvelope) -> int:
        try:
            await self._send(channel, envelope)
        except BroadcastFailure as e:
            self.metrics["failed"] += 1
            logger.error(
                "event_publish_failed",
                channel=e.channel,
                event_kind=e.event,
                **envelope.subject,
                error=repr(e.__cause__),
            )
            return 0
        self.metrics["published"] += 1
        return 1

    async def _broadcast_lifecycle(
        self,
        kind: EventKind,
        task: TaskSnapshot,
        changes: dict[str, Any] | None = None,
    ) -> int:
        envelope = EventEnvelope(event=kind, task=task, changes=changes)
        sent = await self._publish(self.user_channel(task.owner_id), envelope)
        sent += await self._publish(self.global_channel, envelope)
        logger.info(
            f"task_{kind.value}_broadcast",
            task_id=task.id,
            owner_id=task.owner_id,
            published=sent,
        )
        return sent

    async def broadcast_created(self, task: TaskSnapshot) -> int:
        return await self._broadcast_lifecycle(EventKind.CREATED, task)

    async def broadcast_updated(
        self, task: TaskSnapshot, changes: dict[str, Any] | None = None
    ) -> int:
        return await self._broadcast_lifecycle(EventKind.UPDATED, task, changes or {})

    async def broadcast_completed(self, task: TaskSnapshot) -> int:
        return await self._broadcast_lifecycle(EventKind.COMPLETED, task)

    async def broadcast_deleted(self, task: TaskSnapshot) -> int:
        return await self._broadcast_lifecycle(EventKind.DELETED, task)

    async def broadcast_restored(self, task: TaskSnapshot) -> int:
        return await self._broadcast_lifecycle(EventKind.RESTORED, task)

    async def broadcast_hierarchy_parent_updated(
        self, parent: TaskSnapshot, children: Iterable[TaskSnapshot]
    ) -> int:
        """Tell each direct child's viewers that the parent changed."""
        sent = 0
        count = 0
        for child in children:
            count += 1
            envelope = EventEnvelope(
                event=EventKind.PARENT_UPDATED, task=child, parent_task=parent
            )
            sent += await self._publish(self.user_channel(child.owner_id), envelope)

        logger.info(
            "subtask_parent_updated_broadcast",
            parent_task_id=parent.id,
            subtask_count=count,
            published=sent,
        )
        return sent

    async def broadcast_hierarchy_child_updated(
        self, subtask: TaskSnapshot, parent: TaskSnapshot | None
    ) -> int:
        """
        Tell the parent's viewers that one of its subtasks changed.

        Root tasks and orphans (parent missing or deleted) publish nothing.
        """
        if subtask.parent_id is None:
            logger.info("subtask_update_skipped", task_id=subtask.id, reason="root_task")
            return 0
        if parent is None or parent.id != subtask.parent_id:
            logger.info(
                "subtask_update_skipped",
                task_id=subtask.id,
                parent_id=subtask.parent_id,
                reason="parent_unresolved",
            )
            return 0

        envelope = EventEnvelope(
            event=EventKind.SUBTASK_UPDATED, task=parent, updated_subtask=subtask
        )
        sent = await self._publish(self.user_channel(parent.owner_id), envelope)
        logger.info(
            "parent_subtask_updated_broadcast",
            parent_task_id=parent.id,
            subtask_id=subtask.id,
            published=sent,
        )
        return sent

    async def broadcast_hierarchy_child_removed(
        self, subtask: TaskSnapshot, former_parent: TaskSnapshot
    ) -> int:
        """Tell the former parent's viewers that a subtask moved away or was detached."""
        envelope = EventEnvelope(
            event=EventKind.SUBTASK_UPDATED,
            task=former_parent,
            updated_subtask=subtask,
            changes={"parent_id": {"from": former_parent.id, "to": subtask.parent_id}},
        )
        sent = await self._publish(self.user_channel(former_parent.owner_id), envelope)
        logger.info(
            "former_parent_subtask_removed_broadcast",
            parent_task_id=former_parent.id,
            subtask_id=subtask.id,
            published=sent,
        )
        return sent

    async def broadcast_user_stats_updated(
        self, owner_id: int, stats: TaskStatistics
    ) -> int:
        envelope = StatsEnvelope(user_id=owner_id, stats=stats)
        sent = await self._publish(self.user_channel(owner_id), envelope)
        logger.info("user_stats_updated_broadcast", owner_id=owner_id, published=sent)
        return sent

    async def channel_subscribers(self, owner_id: int | None = None) -> int:
        """Subscriber count of an owner's channel, or of the global one."""
        channel = self.global_channel if owner_id is None else self.user_channel(owner_id)
        if self._redis is None:
            return 0
        try:
            counts = await self._redis.pubsub_numsub(channel)
        except (RedisError, OSError) as e:
            logger.error("channel_subscribers_failed", channel=channel, error=str(e))
            return 0
        return int(counts[0][1]) if counts else 0

    async def health_check(self) -> bool:
        """Publish to a throwaway channel. Never raises."""
        if self._redis is None:
            return False
        try:
            await self._redis.publish(f"health_check_{time.time_ns()}", '{"test":"ok"}')
            return True
        except (RedisError, OSError) as e:
            logger.error("pubsub_health_check_failed", error=str(e))
            return False
