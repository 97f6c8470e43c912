"""TrialBalance model: lifetime free-trial uses for users without a paid plan."""

from datetime import UTC, datetime

from sqlalchemy import JSON, CheckConstraint, Column, DateTime, Integer, String

from toolmeter.db.base import Base


class TrialBalance(Base):
    __tablename__ = "trial_balances"
    __table_args__ = (CheckConstraint("uses_remaining >= 0", name="ck_trial_uses_non_negative"),)

    user_id = Column(String(255), primary_key=True)
    uses_remaining = Column(Integer, nullable=False)
    tools_used = Column(JSON, nullable=False, default=dict)  # {"polly": 2, "ocr": 1}

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
