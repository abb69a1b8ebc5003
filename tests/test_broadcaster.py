from datetime import datetime, timezone

from structlog.testing import capture_logs

from taskhub.events.broadcaster import EventBroadcaster
from taskhub.models import TaskSnapshot, TaskStatistics

NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)


def snapshot(task_id: int, owner_id: int = 7, parent_id: int | None = None):
    return TaskSnapshot(
        id=task_id,
        owner_id=owner_id,
        name={"en": f"Task {task_id}"},
        status="pending",
        priority="medium",
        parent_id=parent_id,
        created_at=NOW,
        updated_at=NOW,
    )


async def test_lifecycle_event_goes_to_owner_and_global_channel(broadcaster, fake_redis):
    changes = {"status": {"from": "pending", "to": "in_progress"}}

    sent = await broadcaster.broadcast_updated(snapshot(1), changes)

    assert sent == 2
    assert [ch for ch, _ in fake_redis.published] == [
        "user_task_events:7",
        "global_task_events",
    ]
    envelope = fake_redis.envelopes("user_task_events:7")[0]
    assert envelope["event"] == "updated"
    assert envelope["task"]["id"] == 1
    assert envelope["changes"] == changes
    assert "parent_task" not in envelope


async def test_each_lifecycle_kind(broadcaster, fake_redis):
    task = snapshot(1)
    await broadcaster.broadcast_created(task)
    await broadcaster.broadcast_completed(task)
    await broadcaster.broadcast_deleted(task)
    await broadcaster.broadcast_restored(task)

    events = [e["event"] for e in fake_redis.envelopes("global_task_events")]
    assert events == ["created", "completed", "deleted", "restored"]
    assert broadcaster.metrics == {"published": 8, "failed": 0}


async def test_parent_update_reaches_every_child(broadcaster, fake_redis):
    parent = snapshot(1)
    children = [snapshot(2, parent_id=1), snapshot(3, parent_id=1), snapshot(4, parent_id=1)]

    sent = await broadcaster.broadcast_hierarchy_parent_updated(parent, children)

    assert sent == 3
    envelopes = fake_redis.envelopes("user_task_events:7")
    assert [e["task"]["id"] for e in envelopes] == [2, 3, 4]
    assert all(e["event"] == "parent_updated" for e in envelopes)
    assert all(e["parent_task"]["id"] == 1 for e in envelopes)


async def test_child_update_for_root_task_is_skipped(broadcaster, fake_redis):
    with capture_logs() as logs:
        sent = await broadcaster.broadcast_hierarchy_child_updated(snapshot(1), None)

    assert sent == 0
    assert fake_redis.published == []
    skipped = [e for e in logs if e["event"] == "subtask_update_skipped"]
    assert skipped[0]["log_level"] == "info"
    assert skipped[0]["reason"] == "root_task"


async def test_child_update_with_unresolved_parent_is_skipped(broadcaster, fake_redis):
    with capture_logs() as logs:
        sent = await broadcaster.broadcast_hierarchy_child_updated(
            snapshot(2, parent_id=1), None
        )

    assert sent == 0
    assert logs[0]["reason"] == "parent_unresolved"


async def test_child_update_goes_to_parent_owner(broadcaster, fake_redis):
    parent = snapshot(1)
    subtask = snapshot(2, parent_id=1)

    sent = await broadcaster.broadcast_hierarchy_child_updated(subtask, parent)

    assert sent == 1
    (envelope,) = fake_redis.envelopes("user_task_events:7")
    assert envelope["event"] == "subtask_updated"
    assert envelope["task"]["id"] == 1
    assert envelope["updated_subtask"]["id"] == 2


async def test_publish_failure_is_counted_not_raised(broadcaster, fake_redis):
    fake_redis.fail = True

    with capture_logs() as logs:
        sent = await broadcaster.broadcast_created(snapshot(1))

    assert sent == 0
    assert broadcaster.metrics == {"published": 0, "failed": 2}
    assert {e["event"] for e in logs if e["log_level"] == "error"} == {
        "event_publish_failed"
    }


async def test_publish_failure_log_carries_event_kind(broadcaster, fake_redis):
    fake_redis.fail = True

    with capture_logs() as logs:
        await broadcaster.broadcast_deleted(snapshot(4))
        await broadcaster.broadcast_user_stats_updated(7, TaskStatistics(total=3))

    failures = [e for e in logs if e["event"] == "event_publish_failed"]
    assert [e["event_kind"] for e in failures] == ["deleted", "deleted", "user_stats_updated"]
    assert [e.get("task_id") for e in failures] == [4, 4, None]
    assert failures[-1]["owner_id"] == 7


async def test_child_removed_goes_to_former_parent(broadcaster, fake_redis):
    former = snapshot(10, owner_id=7)
    moved = snapshot(11, owner_id=7, parent_id=12)

    sent = await broadcaster.broadcast_hierarchy_child_removed(moved, former)

    assert sent == 1
    (envelope,) = fake_redis.envelopes("user_task_events:7")
    assert envelope["event"] == "subtask_updated"
    assert envelope["task"]["id"] == 10
    assert envelope["updated_subtask"]["id"] == 11
    assert envelope["changes"] == {"parent_id": {"from": 10, "to": 12}}


async def test_user_stats_go_to_owner_channel_only(broadcaster, fake_redis):
    stats = TaskStatistics(total=3, pending=2, completed=1, root_tasks=3)

    sent = await broadcaster.broadcast_user_stats_updated(7, stats)

    assert sent == 1
    assert [ch for ch, _ in fake_redis.published] == ["user_task_events:7"]
    envelope = fake_redis.envelopes()[0]
    assert envelope["event"] == "user_stats_updated"
    assert envelope["user_id"] == 7
    assert envelope["stats"]["pending"] == 2
    assert "timestamp" in envelope


async def test_without_redis_nothing_is_published(settings):
    broadcaster = EventBroadcaster(None, settings)

    assert await broadcaster.broadcast_created(snapshot(1)) == 0
    assert await broadcaster.health_check() is False


async def test_channel_subscribers(broadcaster, fake_redis):
    fake_redis.subscribers = {"user_task_events:7": 2, "global_task_events": 5}

    assert await broadcaster.channel_subscribers(7) == 2
    assert await broadcaster.channel_subscribers() == 5
    assert await broadcaster.channel_subscribers(8) == 0

    fake_redis.fail = True
    assert await broadcaster.channel_subscribers(7) == 0


async def test_health_check(broadcaster, fake_redis):
    assert await broadcaster.health_check() is True
    fake_redis.fail = True
    assert await broadcaster.health_check() is False
