# read_aggregator/models.py
import uuid

from sqlalchemy import Column, String, Integer, Date, DateTime, ForeignKey, Index, UniqueConstraint
from sqlalchemy.sql import func

from read_aggregator.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class Article(Base):
    # Owned by the article service; the pipeline only reads it
    __tablename__ = "articles"

    id = Column(String(36), primary_key=True, default=_uuid)
    title = Column(String, nullable=False)
    author_id = Column(String(36), index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    deleted_at = Column(DateTime(timezone=True), nullable=True)


class ReadLog(Base):
    __tablename__ = "read_logs"

    id = Column(String(36), primary_key=True, default=_uuid)
    article_id = Column(String(36), ForeignKey("articles.id"), nullable=False)
    reader_id = Column(String(36), nullable=True)  # NULL = guest
    read_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_read_logs_article_read_at", "article_id", "read_at"),
    )


class DailyAnalytics(Base):
    __tablename__ = "daily_analytics"

    id = Column(Integer, primary_key=True, autoincrement=True)
    article_id = Column(String(36), ForeignKey("articles.id"), nullable=False)
    date = Column(Date, nullable=False)
    view_count = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # One counter per (article, day); upserts target this constraint
    __table_args__ = (
        UniqueConstraint('article_id', 'date', name='uq_article_date'),
    )
