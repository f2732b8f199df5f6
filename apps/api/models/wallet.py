"""Wallet model."""

from datetime import datetime, timezone

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer
from sqlalchemy.orm import relationship

from database import Base


class Wallet(Base):
    """Spendable balance for a single user."""

    __tablename__ = "wallets"
    __table_args__ = (CheckConstraint("balance >= 0", name="ck_wallets_balance_non_negative"),)

    user_id = Column(Integer, ForeignKey("users.id"), primary_key=True)
    balance = Column(Integer, nullable=False, default=0)
    credits = Column(Integer, nullable=False, default=0)
    total_earned = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    user = relationship("User", back_populates="wallet")
