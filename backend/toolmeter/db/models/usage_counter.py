"""UsageCounter model: per (user, tool, billing period) consumption."""

from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, Integer, String, UniqueConstraint

from toolmeter.db.base import Base


class UsageCounter(Base):
    __tablename__ = "usage_counters"
    __table_args__ = (
        UniqueConstraint("user_id", "tool_name", "period_start", name="uq_usage_counter_period"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), nullable=False, index=True)
    tool_name = Column(String(100), nullable=False)
    # Start of the billing period this row counts; a new period gets a new row
    period_start = Column(DateTime(timezone=True), nullable=False)
    usage_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
