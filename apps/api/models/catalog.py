"""Read-only catalog models: plans, software and store items."""

from sqlalchemy import JSON, Boolean, Column, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from database import Base


class Software(Base):
    """Installable game/software flavour and its panel provisioning data."""

    __tablename__ = "softwares"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    slug = Column(String, nullable=False, unique=True)
    egg_id = Column(Integer, nullable=True)
    docker_image = Column(String, nullable=True)
    startup = Column(String, nullable=True)
    environment = Column(JSON, nullable=True)
    active = Column(Boolean, nullable=False, default=True)


class Plan(Base):
    """Priced server resource tier."""

    __tablename__ = "plans"

    id = Column(Integer, primary_key=True, autoincrement=True)
    software_id = Column(Integer, ForeignKey("softwares.id"), nullable=True)
    name = Column(String, nullable=False)
    ram = Column(Integer, nullable=False)  # MB
    cpu = Column(Integer, nullable=False)  # percent
    disk = Column(Integer, nullable=False)  # MB
    price = Column(Integer, nullable=False)
    active = Column(Boolean, nullable=False, default=True, index=True)

    software = relationship("Software")


class StoreItem(Base):
    """Purchasable addon. Boost items carry their delta in config (ram_add/cpu_add/disk_add)."""

    __tablename__ = "store_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    type = Column(String, nullable=False)
    price = Column(Integer, nullable=False)
    config = Column(JSON, nullable=False, default=dict)
    active = Column(Boolean, nullable=False, default=True, index=True)
