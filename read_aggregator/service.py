# read_aggregator/service.py
from datetime import datetime
from typing import Optional, Tuple

from redis.exceptions import RedisError

from read_aggregator.errors import ArticleNotFound
from read_aggregator.job_queue import JobQueue
from read_aggregator.performance import calculate_metrics, utc_now
from read_aggregator.read_gate import ReadGate
from read_aggregator.schemas import ArticleRef, JobKind, PerformanceMetrics, TrackReadJob, TrackResult
from read_aggregator.store import AnalyticsStore

RECENT_DAYS = 30


class AnalyticsService:
    """What the HTTP layer calls: track a read, fetch dashboard numbers."""

    def __init__(self, store: AnalyticsStore, queue: JobQueue, gate: ReadGate):
        self.store = store
        self.queue = queue
        self.gate = gate

    async def track_read(
        self,
        article_id: str,
        reader_id: Optional[str],
        client_ip: str,
        now: Optional[datetime] = None,
    ) -> TrackResult:
        """Gate the read and hand it to the queue.

        Raises RateLimitExceeded. Returns as soon as the job is queued;
        persistence happens in the consumers.
        """
        await self.gate.check_rate(reader_id, article_id, client_ip)
        return await self._track_admitted(article_id, reader_id, now)

    async def read_article(
        self,
        article_id: str,
        reader_id: Optional[str],
        client_ip: str,
    ) -> Tuple[ArticleRef, TrackResult]:
        """Rate check, article lookup, then tracking.

        Floods of unknown ids are limited before they reach the database.
        Raises RateLimitExceeded or ArticleNotFound.
        """
        await self.gate.check_rate(reader_id, article_id, client_ip)
        article = await self.store.get_article(article_id)
        if article is None:
            raise ArticleNotFound(article_id)
        return article, await self._track_admitted(article_id, reader_id)

    async def _track_admitted(self, article_id: str, reader_id: Optional[str], now: Optional[datetime] = None) -> TrackResult:
        if not await self.gate.claim_read(reader_id, article_id):
            return TrackResult(tracked=False, reason="recent_duplicate")

        job = TrackReadJob(article_id=article_id, reader_id=reader_id, timestamp=now or utc_now())
        try:
            await self.queue.enqueue(JobKind.TRACK_READ, job.model_dump(mode="json"))
        except RedisError:
            # The read never reached the queue; let the next one through
            await self.gate.release_read(reader_id, article_id)
            raise
        return TrackResult(tracked=True)

    async def get_dashboard_metrics(self, article_id: str, now: Optional[datetime] = None) -> PerformanceMetrics:
        article = await self.store.get_article(article_id)
        if article is None:
            raise ArticleNotFound(article_id)
        counters = await self.store.query_recent_daily_counters(article_id, limit=RECENT_DAYS)
        return calculate_metrics(article, counters, now)

    async def get_article_views(self, article_id: str) -> int:
        if await self.store.get_article(article_id) is None:
            raise ArticleNotFound(article_id)
        return await self.store.total_views(article_id)
