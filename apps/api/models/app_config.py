"""Keyed runtime configuration values."""

from sqlalchemy import JSON, Column, String

from database import Base


class AppConfig(Base):
    __tablename__ = "config"

    key = Column(String, primary_key=True)
    value = Column(JSON, nullable=True)
