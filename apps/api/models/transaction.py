"""Append-only wallet ledger."""

from datetime import datetime, timezone
import enum

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship

from database import Base


class TransactionType(str, enum.Enum):
    COUPON_REDEEM = "coupon_redeem"
    DAILY_CLAIM = "daily_claim"
    SERVER_RENEW = "server_renew"
    SERVER_DEPLOY = "server_deploy"
    SERVER_DELETED = "server_deleted"
    STORE_PURCHASE = "store_purchase"
    REFUND = "refund"


class LedgerTransaction(Base):
    """Immutable balance movement. Positive amounts credit, negative amounts debit."""

    __tablename__ = "transactions"
    __table_args__ = (Index("ix_transactions_user_created", "user_id", "created_at"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    type = Column(String, nullable=False, index=True)
    # coupon id, server id or store item id depending on type
    reference_id = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    user = relationship("User", back_populates="transactions")
