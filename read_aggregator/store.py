# read_aggregator/store.py
from datetime import date, datetime
from typing import List, Optional, Set, Tuple

from sqlalchemy import Date, cast, select, func, type_coerce
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from read_aggregator.database import Database
from read_aggregator.models import Article, DailyAnalytics, ReadLog
from read_aggregator.schemas import ArticleRef, DailyCount

_UPSERT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


def _live_articles():
    # Soft-deleted articles are invisible to every read query
    return Article.deleted_at.is_(None)


class AnalyticsStore:
    """Relational side of the pipeline: read logs and daily counters.

    Each method runs in its own session and commits before returning, so
    consumers never share a transaction.
    """

    def __init__(self, db: Database):
        self._sessions = db.session_factory
        if db.dialect not in _UPSERT_INSERTS:
            raise ValueError(f"No upsert support for dialect {db.dialect!r}")
        self._dialect = db.dialect
        self._insert = _UPSERT_INSERTS[db.dialect]

    # --- WRITE PATH (consumers) ---
    async def create_read_log(self, article_id: str, reader_id: Optional[str], read_at: datetime) -> str:
        async with self._sessions() as session:
            log = ReadLog(article_id=article_id, reader_id=reader_id, read_at=read_at)
            session.add(log)
            await session.commit()
            return log.id

    async def count_read_logs(self, article_id: str, start: datetime, end: datetime) -> int:
        """Reads of `article_id` with start <= read_at <= end."""
        async with self._sessions() as session:
            result = await session.execute(
                select(func.count(ReadLog.id)).where(
                    ReadLog.article_id == article_id,
                    ReadLog.read_at >= start,
                    ReadLog.read_at <= end,
                )
            )
            return result.scalar_one()

    async def upsert_daily_counter(self, article_id: str, day: date, view_count: int):
        # INSERT ... ON CONFLICT DO UPDATE is atomic per (article_id, date)
        stmt = self._insert(DailyAnalytics).values(
            article_id=article_id,
            date=day,
            view_count=view_count,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=['article_id', 'date'],
            set_={'view_count': stmt.excluded.view_count, 'updated_at': func.now()},
        )
        async with self._sessions() as session:
            await session.execute(stmt)
            await session.commit()

    def _utc_date(self, column):
        # Stored values are UTC; PostgreSQL would otherwise use the session zone
        if self._dialect == "postgresql":
            return cast(func.timezone("UTC", column), Date)
        return type_coerce(func.date(column), Date)

    async def read_days(self, since: Optional[datetime] = None) -> Set[Tuple[str, date]]:
        """Every (article_id, UTC day) pair that has at least one read log."""
        read_day = self._utc_date(ReadLog.read_at)
        query = select(ReadLog.article_id, read_day).distinct()
        if since is not None:
            query = query.where(ReadLog.read_at >= since)

        async with self._sessions() as session:
            result = await session.execute(query)
            return {(article_id, day) for article_id, day in result}

    # --- READ PATH (dashboard) ---
    async def get_article(self, article_id: str) -> Optional[ArticleRef]:
        async with self._sessions() as session:
            result = await session.execute(
                select(Article).where(Article.id == article_id, _live_articles())
            )
            article = result.scalar_one_or_none()
            return ArticleRef.model_validate(article) if article else None

    async def query_recent_daily_counters(self, article_id: str, limit: int = 30) -> List[DailyCount]:
        async with self._sessions() as session:
            result = await session.execute(
                select(DailyAnalytics)
                .join(Article, Article.id == DailyAnalytics.article_id)
                .where(DailyAnalytics.article_id == article_id, _live_articles())
                .order_by(DailyAnalytics.date.desc())
                .limit(limit)
            )
            return [DailyCount.model_validate(row) for row in result.scalars()]

    async def total_views(self, article_id: str) -> int:
        async with self._sessions() as session:
            result = await session.execute(
                select(func.coalesce(func.sum(DailyAnalytics.view_count), 0))
                .join(Article, Article.id == DailyAnalytics.article_id)
                .where(DailyAnalytics.article_id == article_id, _live_articles())
            )
            return int(result.scalar_one())
