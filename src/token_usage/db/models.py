"""SQLAlchemy ORM models for database persistence."""

from datetime import datetime

from sqlalchemy import (
    BigInteger,
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from token_usage.db.base import Base


class UsageEventModel(Base):
    """ORM model for raw, append-only usage events.

    One row per (request, dimension). The dimension type tags whether the
    row is attributed to an access key or to an end user.
    """

    __tablename__ = "usage_events"
    __table_args__ = (
        Index(
            "usage_events_idx_dimension_time",
            "dimension_type",
            "dimension_id",
            "occur_time",
        ),
        Index("usage_events_idx_type_time", "dimension_type", "occur_time"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    dimension_type: Mapped[str] = mapped_column(String(20), nullable=False)
    dimension_id: Mapped[str] = mapped_column(String(64), nullable=False)
    input_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cache_creation_input_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cache_read_input_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    output_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    occur_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    model: Mapped[str | None] = mapped_column(String(50), nullable=True)
    feature: Mapped[str | None] = mapped_column(String(50), nullable=True)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    endpoint: Mapped[str | None] = mapped_column(String(100), nullable=True)
    stop_reason: Mapped[str | None] = mapped_column(String(20), nullable=True)


class UsageBucketModel(Base):
    """ORM model for pre-aggregated usage buckets."""

    __tablename__ = "usage_statistics"
    __table_args__ = (
        UniqueConstraint(
            "dimension_type",
            "dimension_id",
            "period_type",
            "period_start",
            name="unique_dimension_period",
        ),
        Index(
            "usage_statistics_idx_dimension_period",
            "dimension_type",
            "dimension_id",
            "period_start",
        ),
        Index("usage_statistics_idx_period_end", "period_end"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    dimension_type: Mapped[str] = mapped_column(String(20), nullable=False)
    dimension_id: Mapped[str] = mapped_column(String(64), nullable=False)
    period_type: Mapped[str] = mapped_column(String(10), nullable=False)
    period_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    total_input_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_cache_creation_input_tokens: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0
    )
    total_cache_read_input_tokens: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0
    )
    total_output_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_requests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_update_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class AggregationWatermarkModel(Base):
    """ORM model for the per dimension type aggregation state.

    One row per dimension type. Incremental runs lock this row for the length
    of their transaction; ``watermark`` is the latest aggregated instant.
    """

    __tablename__ = "aggregation_watermarks"

    dimension_type: Mapped[str] = mapped_column(String(20), primary_key=True)
    watermark: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class AggregatedSpanModel(Base):
    """ORM model for spans of raw events already merged into buckets.

    Spans of one dimension type never overlap or touch; adjacent spans are
    merged when recorded.
    """

    __tablename__ = "aggregated_spans"
    __table_args__ = (
        Index("aggregated_spans_idx_type_start", "dimension_type", "span_start"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    dimension_type: Mapped[str] = mapped_column(String(20), nullable=False)
    span_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    span_end: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
