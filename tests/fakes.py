# tests/fakes.py

from __future__ import annotations

import fnmatch
import json

from redis.exceptions import ConnectionError as RedisConnectionError


class FakeRedis:
    """
    In-memory stand-in for redis.asyncio.Redis covering the calls the cache
    layer and the broadcaster make.

    - Stores string values, remembers the TTL of each set
    - Records every publish for assertions
    - ``fail = True`` makes every call raise a redis ConnectionError
    """

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int | None] = {}
        self.published: list[tuple[str, str]] = []
        self.subscribers: dict[str, int] = {}
        self.memory = {
            "used_memory": 1024,
            "maxmemory": 0,
            "maxmemory_policy": "noeviction",
        }
        self.fail = False
        self.closed = False

    def _check(self) -> None:
        if self.fail:
            raise RedisConnectionError("redis is down")

    async def get(self, key: str):
        self._check()
        return self.data.get(key)

    async def set(self, key: str, value: str, ex: int | None = None):
        self._check()
        self.data[key] = value
        self.ttls[key] = ex
        return True

    async def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def scan(self, cursor: int = 0, match: str | None = None, count: int | None = None):
        self._check()
        keys = [k for k in self.data if match is None or fnmatch.fnmatchcase(k, match)]
        return 0, keys

    async def publish(self, channel: str, message: str) -> int:
        self._check()
        self.published.append((channel, message))
        return 1

    async def pubsub_numsub(self, *channels: str) -> list[tuple[str, int]]:
        self._check()
        return [(ch, self.subscribers.get(ch, 0)) for ch in channels]

    async def info(self, section: str | None = None) -> dict:
        self._check()
        return dict(self.memory)

    async def ping(self) -> bool:
        self._check()
        return True

    async def aclose(self) -> None:
        self.closed = True

    def envelopes(self, channel: str | None = None) -> list[dict]:
        return [
            json.loads(message)
            for ch, message in self.published
            if channel is None or ch == channel
        ]

    def l2_keys(self, fragment: str) -> list[str]:
        return [k for k in self.data if fragment in k]
