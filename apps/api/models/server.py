"""Server model."""

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from database import Base


class Server(Base):
    """Hosted game server owned by a user. Never hard-deleted."""

    __tablename__ = "servers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey("plans.id"), nullable=False)
    software_id = Column(Integer, ForeignKey("softwares.id"), nullable=True)
    name = Column(String, nullable=False)
    status = Column(String, nullable=False, default="provisioning", index=True)
    # Panel identifiers: numeric id for the application API, short identifier for the client API.
    remote_id = Column(Integer, nullable=True)
    remote_uuid = Column(String, nullable=True)
    remote_identifier = Column(String, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    deleted = Column(Boolean, nullable=False, default=False, index=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), onupdate=lambda: datetime.now(timezone.utc))

    user = relationship("User", back_populates="servers")
    plan = relationship("Plan")
