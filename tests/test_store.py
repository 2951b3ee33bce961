from datetime import date, datetime, timedelta, timezone

import pytest

from read_aggregator.performance import day_bounds

DAY = date(2024, 6, 10)


@pytest.mark.asyncio
async def test_count_read_logs_respects_day_bounds(store, make_article):
    article_id = await make_article("Bounds")
    start, end = day_bounds(DAY)
    for ts in (
        start,
        datetime(2024, 6, 10, 12, 0, tzinfo=timezone.utc),
        end,
        start - timedelta(milliseconds=1),   # previous day
        end + timedelta(milliseconds=1),     # next day
    ):
        await store.create_read_log(article_id, None, ts)

    assert await store.count_read_logs(article_id, start, end) == 3


@pytest.mark.asyncio
async def test_create_read_log_returns_unique_ids(store, make_article):
    article_id = await make_article()
    ts = datetime(2024, 6, 10, 8, tzinfo=timezone.utc)
    first = await store.create_read_log(article_id, "reader-1", ts)
    second = await store.create_read_log(article_id, "reader-1", ts)
    assert first != second


@pytest.mark.asyncio
async def test_upsert_keeps_one_counter_per_day(store, make_article):
    article_id = await make_article()
    await store.upsert_daily_counter(article_id, DAY, 2)
    await store.upsert_daily_counter(article_id, DAY, 5)

    counters = await store.query_recent_daily_counters(article_id)
    assert len(counters) == 1
    assert counters[0].date == DAY
    assert counters[0].view_count == 5


@pytest.mark.asyncio
async def test_recent_counters_newest_first_and_limited(store, make_article):
    article_id = await make_article()
    for offset in range(5):
        await store.upsert_daily_counter(article_id, DAY - timedelta(days=offset), offset + 1)

    counters = await store.query_recent_daily_counters(article_id, limit=3)
    assert [c.date for c in counters] == [DAY, DAY - timedelta(days=1), DAY - timedelta(days=2)]
    assert await store.total_views(article_id) == 15


@pytest.mark.asyncio
async def test_soft_deleted_articles_are_hidden_from_reads(store, make_article):
    article_id = await make_article("Gone", deleted=True)
    await store.upsert_daily_counter(article_id, DAY, 4)

    assert await store.get_article(article_id) is None
    assert await store.query_recent_daily_counters(article_id) == []
    assert await store.total_views(article_id) == 0


@pytest.mark.asyncio
async def test_get_article(store, make_article):
    article_id = await make_article("Visible")
    article = await store.get_article(article_id)
    assert article.id == article_id
    assert article.title == "Visible"
    assert await store.get_article("missing") is None


@pytest.mark.asyncio
async def test_read_days_groups_by_utc_day(store, make_article):
    a1 = await make_article()
    a2 = await make_article()
    await store.create_read_log(a1, None, datetime(2024, 6, 9, 23, 59, tzinfo=timezone.utc))
    await store.create_read_log(a1, None, datetime(2024, 6, 10, 0, 1, tzinfo=timezone.utc))
    await store.create_read_log(a1, "r", datetime(2024, 6, 10, 9, 0, tzinfo=timezone.utc))
    await store.create_read_log(a2, None, datetime(2024, 6, 10, 9, 0, tzinfo=timezone.utc))

    assert await store.read_days() == {(a1, date(2024, 6, 9)), (a1, DAY), (a2, DAY)}
    since = datetime(2024, 6, 10, tzinfo=timezone.utc)
    assert await store.read_days(since) == {(a1, DAY), (a2, DAY)}
