# read_aggregator/runtime.py
import asyncio
import logging
from typing import List, Optional

import redis.asyncio as redis

from read_aggregator.config import Settings
from read_aggregator.consumers import register_consumers
from read_aggregator.database import Database
from read_aggregator.job_queue import JobQueue
from read_aggregator.read_gate import ReadGate
from read_aggregator.service import AnalyticsService
from read_aggregator.store import AnalyticsStore

logger = logging.getLogger(__name__)


class Runtime:
    """Every long-lived client of one process, built once and passed down."""

    def __init__(self, settings: Settings, redis_client, db: Database):
        self.settings = settings
        self.redis = redis_client
        self.db = db
        self.store = AnalyticsStore(db)
        self.queue = JobQueue(
            redis_client,
            name=settings.queue_name,
            max_attempts=settings.job_max_attempts,
            retry_backoff=settings.job_retry_backoff,
            heartbeat_ttl=settings.worker_heartbeat_ttl,
        )
        self.gate = ReadGate(
            redis_client,
            rate_window=settings.rate_limit_window,
            max_reads=settings.rate_limit_max_reads,
            dedup_window=settings.dedup_window,
        )
        self.service = AnalyticsService(self.store, self.queue, self.gate)
        register_consumers(self.queue, self.store, settings.sweep_cron)

        self._stop = asyncio.Event()
        self._tasks: List[asyncio.Task] = []
        self._started = False

    @classmethod
    async def build(cls, settings: Optional[Settings] = None) -> "Runtime":
        settings = settings or Settings.from_env()
        client = redis.from_url(settings.redis_url, decode_responses=True)
        await client.ping()
        db = Database(settings.database_url)
        # Create tables on startup
        await db.create_all()
        return cls(settings, client, db)

    async def start(self):
        """Launch consumer loops, the heartbeat and the recurring-job scheduler."""
        await self.queue.heartbeat()
        await self.queue.recover_inflight()
        for _ in range(self.settings.worker_concurrency):
            self._tasks.append(asyncio.create_task(self.queue.run_worker(self._stop)))
        self._tasks.append(asyncio.create_task(self.queue.run_heartbeat(self._stop)))
        self._tasks.append(asyncio.create_task(self.queue.run_scheduler(self._stop)))
        self._started = True
        logger.info("Started %d consumers as worker %s", self.settings.worker_concurrency, self.queue.worker_id)

    async def wait_closed(self):
        await self._stop.wait()

    def request_stop(self):
        self._stop.set()

    async def close(self):
        self._stop.set()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks.clear()
        if self._started:
            await self.queue.retire()
        await self.redis.aclose()
        await self.db.dispose()
        logger.info("Runtime closed")
