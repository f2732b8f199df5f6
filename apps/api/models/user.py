"""User model."""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.orm import relationship

from database import Base


class User(Base):
    """Account linked to an identity-provider subject."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    auth_uuid = Column(String, unique=True, nullable=False, index=True)
    email = Column(String, nullable=False, index=True)
    role = Column(String, nullable=False, default="user")
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    # Relationships
    wallet = relationship("Wallet", back_populates="user", uselist=False)
    transactions = relationship("LedgerTransaction", back_populates="user")
    servers = relationship("Server", back_populates="user")
