# read_aggregator/consumers.py
import logging
from datetime import timedelta
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from read_aggregator.errors import AggregationInconsistency, InvalidJob, PersistenceFailure
from read_aggregator.job_queue import JobQueue
from read_aggregator.performance import as_utc, day_bounds, utc_day, utc_now
from read_aggregator.schemas import AggregateDailyJob, JobKind, SweepJob, TrackReadJob
from read_aggregator.store import AnalyticsStore

logger = logging.getLogger(__name__)

# Tolerated clock skew between the API hosts and the workers
MAX_CLOCK_SKEW = timedelta(days=1)


def _parse(model, payload: dict):
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise InvalidJob(f"Bad {model.__name__} payload: {exc}") from exc


class ReadRecorder:
    """Consumes track-read: one read log per job, then asks for a recount."""

    def __init__(self, store: AnalyticsStore, queue: JobQueue):
        self.store = store
        self.queue = queue

    async def handle(self, payload: dict) -> str:
        job = _parse(TrackReadJob, payload)
        read_at = as_utc(job.timestamp)
        if read_at > utc_now() + MAX_CLOCK_SKEW:
            raise AggregationInconsistency(f"Read of {job.article_id} stamped in the future: {read_at.isoformat()}")

        try:
            log_id = await self.store.create_read_log(job.article_id, job.reader_id, read_at)
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Could not record read of {job.article_id}: {exc}") from exc

        # A failure here redelivers the job and records the read twice;
        # the dedup window upstream bounds how often that can happen.
        aggregate = AggregateDailyJob(article_id=job.article_id, date=utc_day(read_at))
        await self.queue.enqueue(JobKind.AGGREGATE_DAILY, aggregate.model_dump(mode="json"))
        logger.info("[RECORDED] %s read by %s (%s)", job.article_id, job.reader_id or "guest", log_id)
        return log_id


class DailyAggregator:
    """Consumes aggregate-daily by recounting the day from the read logs.

    Never increments: replays, out-of-order delivery and concurrent runs
    for the same key all converge on the count in the log table.
    """

    def __init__(self, store: AnalyticsStore):
        self.store = store

    async def handle(self, payload: dict) -> int:
        job = _parse(AggregateDailyJob, payload)
        if job.date > (utc_now() + MAX_CLOCK_SKEW).date():
            raise AggregationInconsistency(f"Aggregation requested for future day {job.date} of {job.article_id}")

        start, end = day_bounds(job.date)
        try:
            count = await self.store.count_read_logs(job.article_id, start, end)
            await self.store.upsert_daily_counter(job.article_id, job.date, count)
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Could not aggregate {job.article_id} on {job.date}: {exc}") from exc

        logger.info("[AGGREGATED] %s %s -> %d views", job.article_id, job.date, count)
        return count


class DailySweep:
    """Backstop for lost per-read jobs: recount every day that has reads."""

    def __init__(self, store: AnalyticsStore, queue: JobQueue):
        self.store = store
        self.queue = queue

    async def handle(self, payload: Optional[dict] = None) -> int:
        job = _parse(SweepJob, payload or {})
        since = None
        if job.since_days is not None:
            since = utc_now() - timedelta(days=job.since_days)

        try:
            days = await self.store.read_days(since)
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Could not list read days for sweep: {exc}") from exc

        for article_id, day in sorted(days):
            aggregate = AggregateDailyJob(article_id=article_id, date=day)
            await self.queue.enqueue(JobKind.AGGREGATE_DAILY, aggregate.model_dump(mode="json"))

        logger.info("Running daily analytics sweep: %d article-days queued", len(days))
        return len(days)


def register_consumers(queue: JobQueue, store: AnalyticsStore, sweep_cron: str = "0 0 * * *"):
    queue.register_consumer(JobKind.TRACK_READ, ReadRecorder(store, queue).handle)
    queue.register_consumer(JobKind.AGGREGATE_DAILY, DailyAggregator(store).handle)
    queue.register_consumer(JobKind.SCHEDULED_SWEEP, DailySweep(store, queue).handle)
    queue.schedule_recurring(JobKind.SCHEDULED_SWEEP, sweep_cron)
