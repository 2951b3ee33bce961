# read_aggregator/performance.py
"""Day arithmetic and dashboard metrics over daily counters.

Everything here works on UTC calendar days. No timezone conversion is
performed: a read at 23:30 in New York on the 1st counts towards the 2nd.
"""
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Sequence, Tuple

from dateutil.relativedelta import relativedelta

from read_aggregator.schemas import ArticleRef, DailyCount, PerformanceMetrics


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(ts: datetime) -> datetime:
    # SQLite hands back naive datetimes; they are stored as UTC
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def utc_day(ts: datetime) -> date:
    return as_utc(ts).date()


def day_bounds(day: date) -> Tuple[datetime, datetime]:
    """First and last instant of `day`: 00:00:00.000Z to 23:59:59.999Z."""
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    end = start + timedelta(days=1) - timedelta(milliseconds=1)
    return start, end


def calculate_growth(previous: int, current: int) -> float:
    """Percentage change from `previous` to `current`.

    From nothing to something counts as 100% growth.
    """
    if previous == 0:
        return 100.0 if current > 0 else 0.0
    return (current - previous) / previous * 100


def calculate_metrics(
    article: ArticleRef,
    counters: Sequence[DailyCount],
    now: Optional[datetime] = None,
) -> PerformanceMetrics:
    now = as_utc(now) if now else utc_now()
    today = now.date()
    week_ago = today - timedelta(days=7)
    fortnight_ago = today - timedelta(days=14)
    month_ago = today - relativedelta(months=1)

    total = today_views = week = month = previous_week = 0
    for counter in counters:
        total += counter.view_count
        if counter.date == today:
            today_views = counter.view_count
        if counter.date >= week_ago:
            week += counter.view_count
        elif counter.date >= fortnight_ago:
            previous_week += counter.view_count
        if counter.date >= month_ago:
            month += counter.view_count

    return PerformanceMetrics(
        article_id=article.id,
        title=article.title,
        total_views=total,
        views_today=today_views,
        views_this_week=week,
        views_this_month=month,
        average_daily_views=total / len(counters) if counters else 0.0,
        growth_rate=calculate_growth(previous_week, week),
        last_updated=now,
    )
