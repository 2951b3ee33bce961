# read_aggregator/schemas.py
import datetime as dt
import uuid
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class JobKind(str, Enum):
    TRACK_READ = "track-read"
    AGGREGATE_DAILY = "aggregate-daily"
    SCHEDULED_SWEEP = "scheduled-sweep"


# --- JOB PAYLOADS ---
class TrackReadJob(BaseModel):
    model_config = ConfigDict(frozen=True)

    article_id: str
    reader_id: Optional[str] = None
    timestamp: dt.datetime


class AggregateDailyJob(BaseModel):
    model_config = ConfigDict(frozen=True)

    article_id: str
    date: dt.date


class SweepJob(BaseModel):
    model_config = ConfigDict(frozen=True)

    # None sweeps the whole read history
    since_days: Optional[int] = Field(default=None, ge=0)


class Job(BaseModel):
    """Envelope stored on the Redis lists."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    kind: JobKind
    payload: dict
    attempts: int = 0
    enqueued_at: dt.datetime = Field(
        default_factory=lambda: dt.datetime.now(dt.timezone.utc)
    )


# --- READ PATH ---
class TrackResult(BaseModel):
    tracked: bool
    reason: Optional[Literal["recent_duplicate"]] = None


class ArticleRef(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    author_id: Optional[str] = None
    created_at: Optional[dt.datetime] = None


class DailyCount(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    article_id: str
    date: dt.date
    view_count: int = Field(ge=0)


class PerformanceMetrics(BaseModel):
    article_id: str
    title: str
    total_views: int
    views_today: int
    views_this_week: int
    views_this_month: int
    average_daily_views: float
    growth_rate: float
    last_updated: dt.datetime
