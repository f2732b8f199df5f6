"""DailyClaim model."""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Integer, UniqueConstraint

from database import Base


class DailyClaim(Base):
    """One row per granted daily reward.

    claim_number increases by one per user; the unique key makes two claims
    racing past the cooldown check collide on insert.
    """

    __tablename__ = "daily_claims"
    __table_args__ = (UniqueConstraint("user_id", "claim_number", name="uq_daily_claims_user_number"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    claim_number = Column(Integer, nullable=False)
    amount = Column(Integer, nullable=False)
    claimed_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
