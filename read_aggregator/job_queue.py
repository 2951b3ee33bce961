# read_aggregator/job_queue.py
"""Redis-backed work queue with at-least-once delivery.

Keys under the queue name:

    {name}:pending               list, jobs waiting for a consumer (RPUSH / BLMOVE LEFT)
    {name}:processing:{worker}   list, jobs one worker reserved and has not yet acked
    {name}:heartbeat:{worker}    string with a TTL, present while that worker is alive
    {name}:workers               set, worker ids that may own a processing list
    {name}:delayed               zset, failed jobs waiting for their retry time
    {name}:dead                  list, jobs that exhausted retries or cannot succeed

A job is only removed from its worker's processing list after its handler
returned or its failure has been recorded. When a worker crashes its
heartbeat expires and `recover_inflight()`, run by any surviving worker,
puts that worker's reserved jobs back on `pending`. Processing lists of
workers whose heartbeat is still alive are never touched.
"""
import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
from uuid import uuid4

from pydantic import ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError

from read_aggregator.errors import InvalidJob
from read_aggregator.schemas import Job, JobKind

logger = logging.getLogger(__name__)

Handler = Callable[[dict], Awaitable[Any]]


@dataclass(frozen=True)
class CronSchedule:
    """Daily cron subset: `minute hour * * *`, either field may be `*`."""

    minute: Optional[int]
    hour: Optional[int]

    @classmethod
    def parse(cls, expr: str) -> "CronSchedule":
        fields = expr.split()
        if len(fields) != 5 or any(f != "*" for f in fields[2:]):
            raise ValueError(f"Unsupported cron expression {expr!r}, expected 'M H * * *'")
        minute = None if fields[0] == "*" else int(fields[0])
        hour = None if fields[1] == "*" else int(fields[1])
        if minute is not None and not 0 <= minute <= 59:
            raise ValueError(f"Minute out of range in {expr!r}")
        if hour is not None and not 0 <= hour <= 23:
            raise ValueError(f"Hour out of range in {expr!r}")
        return cls(minute=minute, hour=hour)

    def next_after(self, ts: datetime) -> datetime:
        """First matching UTC minute strictly after `ts`."""
        ts = ts.astimezone(timezone.utc)
        hours = range(24) if self.hour is None else (self.hour,)
        minutes = range(60) if self.minute is None else (self.minute,)
        for day_offset in (0, 1):
            day = ts.date() + timedelta(days=day_offset)
            for hour in hours:
                for minute in minutes:
                    candidate = datetime(day.year, day.month, day.day, hour, minute, tzinfo=timezone.utc)
                    if candidate > ts:
                        return candidate
        raise AssertionError("unreachable: every daily schedule fires within two days")


@dataclass
class RecurringJob:
    kind: JobKind
    cron: CronSchedule
    payload: Dict[str, Any] = field(default_factory=dict)


class JobQueue:
    def __init__(
        self,
        redis: Redis,
        name: str = "analytics",
        max_attempts: int = 3,
        retry_backoff: float = 5.0,
        clock: Callable[[], float] = time.time,
        worker_id: Optional[str] = None,
        heartbeat_ttl: int = 30,
    ):
        self._redis = redis
        self.name = name
        self.max_attempts = max_attempts
        self.retry_backoff = retry_backoff
        self._clock = clock
        self.worker_id = worker_id or uuid4().hex
        self.heartbeat_ttl = heartbeat_ttl

        self.pending_key = f"{name}:pending"
        self.processing_key = self._processing_key(self.worker_id)
        self.heartbeat_key = self._heartbeat_key(self.worker_id)
        self.workers_key = f"{name}:workers"
        self.delayed_key = f"{name}:delayed"
        self.dead_key = f"{name}:dead"

        self._handlers: Dict[JobKind, Handler] = {}
        self._schedules: List[RecurringJob] = []

    def _processing_key(self, worker_id: str) -> str:
        return f"{self.name}:processing:{worker_id}"

    def _heartbeat_key(self, worker_id: str) -> str:
        return f"{self.name}:heartbeat:{worker_id}"

    # --- PRODUCER SIDE ---
    async def enqueue(self, kind: Union[JobKind, str], payload: dict) -> str:
        """Push a job and return its id without waiting for any consumer."""
        job = Job(kind=JobKind(kind), payload=payload)
        await self._redis.rpush(self.pending_key, job.model_dump_json())
        logger.debug("Enqueued %s %s", job.kind.value, job.id)
        return job.id

    def register_consumer(self, kind: Union[JobKind, str], handler: Handler):
        self._handlers[JobKind(kind)] = handler

    def schedule_recurring(self, kind: Union[JobKind, str], cron: str, payload: Optional[dict] = None):
        self._schedules.append(RecurringJob(JobKind(kind), CronSchedule.parse(cron), dict(payload or {})))

    # --- CONSUMER SIDE ---
    async def reserve(self, timeout: float = 1.0) -> Optional[str]:
        return await self._redis.blmove(self.pending_key, self.processing_key, timeout, "LEFT", "RIGHT")

    async def process(self, raw: str) -> bool:
        """Run the handler for one reserved job. True on success."""
        try:
            job = Job.model_validate_json(raw)
        except ValidationError as exc:
            await self._bury(raw, None, InvalidJob(f"Malformed job: {exc}"))
            await self._ack(raw)
            return False

        handler = self._handlers.get(job.kind)
        try:
            if handler is None:
                raise InvalidJob(f"No consumer registered for {job.kind.value}")
            await handler(job.payload)
        except Exception as exc:
            # Recorded on the delayed or dead list before the ack below
            await self._fail(raw, job, exc)
            await self._ack(raw)
            return False

        await self._ack(raw)
        logger.debug("Processed %s %s", job.kind.value, job.id)
        return True

    async def _ack(self, raw: str):
        await self._redis.lrem(self.processing_key, 1, raw)

    async def _fail(self, raw: str, job: Job, exc: Exception):
        failed = job.model_copy(update={"attempts": job.attempts + 1})
        retryable = getattr(exc, "retryable", True)
        if retryable and failed.attempts < self.max_attempts:
            due = self._clock() + self.retry_backoff * failed.attempts
            await self._redis.zadd(self.delayed_key, {failed.model_dump_json(): due})
            logger.warning(
                "Job %s %s failed (attempt %d/%d), retrying: %s",
                job.kind.value, job.id, failed.attempts, self.max_attempts, exc,
            )
        else:
            await self._bury(raw, failed, exc)

    async def _bury(self, raw: str, job: Optional[Job], exc: Exception):
        entry = {
            "job": job.model_dump(mode="json") if job else raw,
            "error": f"{type(exc).__name__}: {exc}",
            "failed_at": datetime.now(timezone.utc).isoformat(),
        }
        await self._redis.rpush(self.dead_key, json.dumps(entry))
        logger.error("Job dead-lettered: %s", entry["error"], exc_info=exc)

    async def promote_due(self, batch: int = 100) -> int:
        """Move delayed jobs whose retry time has come back onto pending."""
        due = await self._redis.zrangebyscore(self.delayed_key, "-inf", self._clock(), start=0, num=batch)
        moved = 0
        for raw in due:
            # ZREM succeeds for exactly one process when several promote at once
            if await self._redis.zrem(self.delayed_key, raw):
                await self._redis.rpush(self.pending_key, raw)
                moved += 1
        return moved

    # --- WORKER LIVENESS ---
    async def heartbeat(self):
        """Announce this worker; must run more often than `heartbeat_ttl`."""
        await self._redis.sadd(self.workers_key, self.worker_id)
        await self._redis.set(self.heartbeat_key, "1", ex=self.heartbeat_ttl)

    async def _requeue(self, worker_id: str) -> int:
        moved = 0
        while await self._redis.lmove(self._processing_key(worker_id), self.pending_key, "RIGHT", "LEFT"):
            moved += 1
        return moved

    async def recover_inflight(self) -> int:
        """Requeue jobs reserved by workers whose heartbeat has expired."""
        moved = 0
        for worker_id in await self._redis.smembers(self.workers_key):
            if worker_id == self.worker_id:
                continue
            if await self._redis.exists(self._heartbeat_key(worker_id)):
                continue
            orphaned = await self._requeue(worker_id)
            await self._redis.srem(self.workers_key, worker_id)
            if orphaned:
                logger.warning("Recovered %d in-flight jobs of dead worker %s", orphaned, worker_id)
            moved += orphaned
        return moved

    async def run_heartbeat(self, stop: asyncio.Event, interval: Optional[float] = None):
        interval = interval or self.heartbeat_ttl / 3
        while not stop.is_set():
            try:
                await self.heartbeat()
                await self.recover_inflight()
            except RedisError:
                logger.exception("Heartbeat failed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    async def retire(self):
        """Clean shutdown: hand back anything still reserved and deregister."""
        moved = await self._requeue(self.worker_id)
        await self._redis.srem(self.workers_key, self.worker_id)
        await self._redis.delete(self.heartbeat_key)
        if moved:
            logger.info("Returned %d reserved jobs to pending on shutdown", moved)

    async def drain(self) -> int:
        """Process until pending is empty, including jobs the handlers enqueue."""
        handled = 0
        while True:
            await self.promote_due()
            raw = await self._redis.lmove(self.pending_key, self.processing_key, "LEFT", "RIGHT")
            if raw is None:
                return handled
            await self.process(raw)
            handled += 1

    async def run_worker(self, stop: asyncio.Event, poll_timeout: float = 1.0):
        logger.info("Consumer started on %s. Waiting for jobs...", self.pending_key)
        while not stop.is_set():
            try:
                await self.promote_due()
                raw = await self.reserve(timeout=poll_timeout)
                if raw:
                    await self.process(raw)
            except RedisError:
                logger.exception("Consumer error, backing off")
                await asyncio.sleep(1)  # Simple backoff while Redis is down

    # --- RECURRING JOBS ---
    async def fire(self, recurring: RecurringJob, fire_at: datetime) -> bool:
        """Enqueue one occurrence unless another process already did."""
        lock_key = f"{self.name}:schedule:{recurring.kind.value}:{fire_at.isoformat()}"
        if not await self._redis.set(lock_key, "1", nx=True, ex=86400):
            return False
        await self.enqueue(recurring.kind, recurring.payload)
        logger.info("Scheduled %s fired for %s", recurring.kind.value, fire_at.isoformat())
        return True

    async def run_scheduler(self, stop: asyncio.Event):
        if not self._schedules:
            return
        while not stop.is_set():
            now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
            upcoming = [(s.cron.next_after(now), s) for s in self._schedules]
            fire_at = min(ts for ts, _ in upcoming)
            try:
                await asyncio.wait_for(stop.wait(), timeout=(fire_at - now).total_seconds())
                return
            except asyncio.TimeoutError:
                pass
            for ts, recurring in upcoming:
                if ts == fire_at:
                    try:
                        await self.fire(recurring, fire_at)
                    except RedisError:
                        logger.exception("Could not fire scheduled %s", recurring.kind.value)

    # --- INSPECTION ---
    async def stats(self) -> Dict[str, int]:
        workers = set(await self._redis.smembers(self.workers_key)) | {self.worker_id}
        processing = 0
        for worker_id in workers:
            processing += await self._redis.llen(self._processing_key(worker_id))
        return {
            "pending": await self._redis.llen(self.pending_key),
            "processing": processing,
            "delayed": await self._redis.zcard(self.delayed_key),
            "dead": await self._redis.llen(self.dead_key),
        }

    async def dead_letters(self) -> List[dict]:
        return [json.loads(entry) for entry in await self._redis.lrange(self.dead_key, 0, -1)]
