from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Optional

import pytest
import pytest_asyncio

from read_aggregator.database import Database
from read_aggregator.job_queue import JobQueue
from read_aggregator.models import Article
from read_aggregator.read_gate import RATE_WINDOW_SCRIPT, ReadGate
from read_aggregator.service import AnalyticsService
from read_aggregator.store import AnalyticsStore


class FakeRedis:
    """In-memory stand-in for the redis.asyncio commands the service uses.

    Keys expire against `now`, which tests move forward with `advance()`.
    """

    def __init__(self) -> None:
        self.now = float(int(time.time()))
        self._strings: dict[str, str] = {}
        self._lists: dict[str, list[str]] = {}
        self._zsets: dict[str, dict[str, float]] = {}
        self._sets: dict[str, set[str]] = {}
        self._expiry: dict[str, float] = {}

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def _alive(self, key: str) -> None:
        deadline = self._expiry.get(key)
        if deadline is not None and deadline <= self.now:
            self._strings.pop(key, None)
            self._expiry.pop(key, None)

    # String ops
    async def get(self, key: str) -> Optional[str]:
        self._alive(key)
        return self._strings.get(key)

    async def set(self, key: str, value: Any, ex: Optional[int] = None, nx: bool = False) -> Optional[bool]:
        self._alive(key)
        if nx and key in self._strings:
            return None
        self._strings[key] = str(value)
        if ex:
            self._expiry[key] = self.now + ex
        else:
            self._expiry.pop(key, None)
        return True

    async def incr(self, key: str) -> int:
        self._alive(key)
        value = int(self._strings.get(key, "0")) + 1
        self._strings[key] = str(value)
        return value

    async def expire(self, key: str, seconds: int) -> bool:
        self._alive(key)
        if key not in self._strings:
            return False
        self._expiry[key] = self.now + int(seconds)
        return True

    async def ttl(self, key: str) -> int:
        self._alive(key)
        if key not in self._strings:
            return -2
        if key not in self._expiry:
            return -1
        return int(round(self._expiry[key] - self.now))

    async def eval(self, script: str, numkeys: int, key: str, ttl: int) -> int:
        # Only the rate window script is emulated: INCR, EXPIRE on first hit
        assert script == RATE_WINDOW_SCRIPT, "FakeRedis.eval only emulates the rate window script"
        assert numkeys == 1
        value = await self.incr(key)
        if value == 1:
            await self.expire(key, ttl)
        return value

    async def exists(self, *keys: str) -> int:
        found = 0
        for key in keys:
            self._alive(key)
            found += any(key in store for store in (self._strings, self._lists, self._zsets, self._sets))
        return found

    async def delete(self, *keys: str) -> int:
        deleted = 0
        for key in keys:
            self._alive(key)
            self._expiry.pop(key, None)
            for store in (self._strings, self._lists, self._zsets, self._sets):
                if store.pop(key, None) is not None:
                    deleted += 1
        return deleted

    # List ops
    async def rpush(self, key: str, *values: str) -> int:
        self._lists.setdefault(key, []).extend(values)
        return len(self._lists[key])

    async def lmove(self, src: str, dst: str, wherefrom: str = "LEFT", whereto: str = "RIGHT") -> Optional[str]:
        items = self._lists.get(src)
        if not items:
            return None
        value = items.pop(0) if wherefrom == "LEFT" else items.pop()
        target = self._lists.setdefault(dst, [])
        if whereto == "LEFT":
            target.insert(0, value)
        else:
            target.append(value)
        return value

    async def blmove(self, src: str, dst: str, timeout: float, src_side: str = "LEFT", dst_side: str = "RIGHT") -> Optional[str]:
        value = await self.lmove(src, dst, src_side, dst_side)
        if value is None:
            await asyncio.sleep(0.01)
        return value

    async def lrem(self, key: str, count: int, value: str) -> int:
        items = self._lists.get(key, [])
        removed = 0
        while value in items and (count == 0 or removed < count):
            items.remove(value)
            removed += 1
        return removed

    async def llen(self, key: str) -> int:
        return len(self._lists.get(key, []))

    async def lrange(self, key: str, start: int, end: int) -> list[str]:
        items = self._lists.get(key, [])
        return items[start:] if end == -1 else items[start:end + 1]

    # Sorted set ops
    async def zadd(self, key: str, mapping: dict[str, float]) -> int:
        zset = self._zsets.setdefault(key, {})
        added = sum(1 for member in mapping if member not in zset)
        zset.update(mapping)
        return added

    async def zrangebyscore(self, key: str, min: Any, max: Any, start: Optional[int] = None, num: Optional[int] = None) -> list[str]:
        low = float(min) if min != "-inf" else float("-inf")
        high = float(max) if max != "+inf" else float("inf")
        members = sorted((score, m) for m, score in self._zsets.get(key, {}).items() if low <= score <= high)
        result = [m for _, m in members]
        if start is not None and num is not None:
            result = result[start:start + num]
        return result

    async def zrem(self, key: str, *members: str) -> int:
        zset = self._zsets.get(key, {})
        return sum(1 for m in members if zset.pop(m, None) is not None)

    async def zcard(self, key: str) -> int:
        return len(self._zsets.get(key, {}))

    # Set ops
    async def sadd(self, key: str, *members: str) -> int:
        members_set = self._sets.setdefault(key, set())
        added = sum(1 for m in members if m not in members_set)
        members_set.update(members)
        return added

    async def srem(self, key: str, *members: str) -> int:
        members_set = self._sets.get(key, set())
        removed = sum(1 for m in members if m in members_set)
        members_set.difference_update(members)
        return removed

    async def smembers(self, key: str) -> set[str]:
        return set(self._sets.get(key, set()))

    # Connection ops
    async def ping(self) -> bool:
        return True

    async def aclose(self) -> None:
        pass


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest_asyncio.fixture
async def database(tmp_path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'reads.db'}")
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
def store(database) -> AnalyticsStore:
    return AnalyticsStore(database)


@pytest.fixture
def queue(fake_redis) -> JobQueue:
    return JobQueue(fake_redis, name="test", max_attempts=3, retry_backoff=5, clock=lambda: fake_redis.now)


@pytest.fixture
def gate(fake_redis) -> ReadGate:
    return ReadGate(fake_redis)


@pytest.fixture
def service(store, queue, gate) -> AnalyticsService:
    return AnalyticsService(store, queue, gate)


@pytest.fixture
def make_article(database):
    """Insert an article directly; the article service owns this table."""

    async def _make(title: str = "Untitled", deleted: bool = False) -> str:
        async with database.session_factory() as session:
            article = Article(title=title, author_id="author-1")
            if deleted:
                article.deleted_at = datetime.now(timezone.utc)
            session.add(article)
            await session.commit()
            return article.id

    return _make
