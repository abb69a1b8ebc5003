from datetime import datetime, timezone

from taskhub.cache.layer import CacheLayer
from taskhub.models import TaskFilter, TaskSnapshot

NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)


def snapshot(task_id: int, owner_id: int = 1, parent_id: int | None = None):
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


async def test_put_then_get_hits_l1(cache):
    await cache.put_detail(1, {"id": 1})

    assert await cache.get_detail(1) == {"id": 1}
    assert cache.metrics["l1_hits"] == 1


async def test_l2_serves_after_l1_is_cleared(cache, fake_redis):
    await cache.put_stats(1, {"total": 3})
    cache.l1.clear()

    assert await cache.get_stats(1) == {"total": 3}
    assert cache.metrics["l2_hits"] == 1
    assert fake_redis.ttls[cache._l2_key(cache.stats_key(1))] == 300


async def test_invalidate_owner_drops_every_list_fingerprint(cache, fake_redis):
    for page in (1, 2, 3):
        await cache.put_list(1, TaskFilter(page=page).fingerprint(), {"page": page})
    await cache.put_list(2, TaskFilter().fingerprint(), {"page": 1})
    await cache.put_stats(1, {"total": 1})

    await cache.invalidate_owner(1)

    assert fake_redis.l2_keys("user:1:") == []
    for page in (1, 2, 3):
        assert await cache.get_list(1, TaskFilter(page=page).fingerprint()) is None
    assert await cache.get_stats(1) is None
    assert await cache.get_list(2, TaskFilter().fingerprint()) == {"page": 1}


async def test_invalidate_for_task_covers_parent_and_children(cache, fake_redis):
    for task_id in (10, 11, 12, 99):
        await cache.put_detail(task_id, {"id": task_id})
    await cache.put_stats(1, {"total": 4})

    task = snapshot(11, parent_id=10)
    await cache.invalidate_for_task(task, parent=snapshot(10), child_ids=[12])

    assert await cache.get_detail(10) is None
    assert await cache.get_detail(11) is None
    assert await cache.get_detail(12) is None
    assert await cache.get_stats(1) is None
    assert await cache.get_detail(99) == {"id": 99}


async def test_invalidation_is_idempotent(cache):
    task = snapshot(5)
    await cache.put_detail(5, {"id": 5})

    await cache.invalidate_for_task(task)
    await cache.invalidate_for_task(task)

    assert await cache.get_detail(5) is None
    assert cache.metrics["errors"] == 0


async def test_redis_failure_degrades_to_miss(cache, fake_redis):
    fake_redis.fail = True

    await cache.put_detail(1, {"id": 1})
    cache.l1.clear()
    assert await cache.get_detail(1) is None
    await cache.invalidate_for_task(snapshot(1))

    assert cache.metrics["errors"] >= 3
    assert cache.metrics["misses"] == 1


async def test_undecodable_l2_value_is_a_miss(cache, fake_redis):
    fake_redis.data[cache._l2_key(cache.detail_key(1))] = "{not json"

    assert await cache.get_detail(1) is None
    assert cache.metrics["errors"] == 1


async def test_memory_pressure_skips_l2_writes(cache, fake_redis):
    fake_redis.memory.update(used_memory=95, maxmemory=100)

    await cache.put_detail(1, {"id": 1})

    assert fake_redis.l2_keys("task:1") == []
    assert cache.metrics["pressure_skips"] == 1
    assert await cache.get_detail(1) == {"id": 1}
    assert cache.get_metrics()["redis_pressure"]["level"] == 9


async def test_moderate_pressure_shortens_ttl(cache, fake_redis):
    fake_redis.memory.update(used_memory=75, maxmemory=100)

    await cache.put_detail(1, {"id": 1})

    assert fake_redis.ttls[cache._l2_key(cache.detail_key(1))] == 60


async def test_health_check(cache, fake_redis):
    assert await cache.health_check() is True

    fake_redis.fail = True
    assert await cache.health_check() is False


async def test_without_redis_only_l1_is_used(settings):
    cache = CacheLayer(None, settings)

    await cache.put_detail(1, {"id": 1})
    assert await cache.get_detail(1) == {"id": 1}
    assert await cache.delete_pattern(cache.list_pattern(1)) == 0
    assert await cache.health_check() is False
