"""Local lifecycle state of provisioned servers: ownership, status, expiry, soft delete."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm import selectinload

from config import settings
from models.server import Server
from services.clock import ensure_utc, isoformat, utcnow

PROVISIONING = "provisioning"
INSTALLING = "installing"
FAILED = "failed"
DELETED = "deleted"

POWER_STATUS = {
    "start": "starting",
    "stop": "stopping",
    "restart": "restarting",
    "kill": "offline",
}

# Local states the panel's live state must not overwrite.
UNSYNCED_STATES = {PROVISIONING, FAILED, DELETED}


async def get_owned_server(
    user_id: int,
    server_id: int,
    db: AsyncSession,
    *,
    with_plan: bool = False,
) -> Optional[Server]:
    """Return a live (not soft-deleted) server owned by the user."""
    stmt = select(Server).where(
        Server.id == server_id,
        Server.user_id == user_id,
        Server.deleted.is_(False),
    )
    if with_plan:
        stmt = stmt.options(selectinload(Server.plan))
    result = await db.execute(stmt.execution_options(populate_existing=True))
    return result.scalar_one_or_none()


async def list_owned_servers(user_id: int, db: AsyncSession) -> list:
    result = await db.execute(
        select(Server)
        .where(Server.user_id == user_id, Server.deleted.is_(False))
        .order_by(Server.created_at.desc(), Server.id.desc())
    )
    return list(result.scalars().all())


def initial_expiry(now: Optional[datetime] = None) -> datetime:
    return (now or utcnow()) + timedelta(days=int(settings.SERVER_TERM_DAYS))


def next_expiry(current: Optional[datetime], now: Optional[datetime] = None) -> datetime:
    """Extend from the current expiry when still in the future, otherwise from now."""
    reference = now or utcnow()
    current_utc = ensure_utc(current)
    base = current_utc if current_utc and current_utc > reference else reference
    return base + timedelta(days=int(settings.SERVER_TERM_DAYS))


def is_expired(server: Server, now: Optional[datetime] = None) -> bool:
    expires_at = ensure_utc(server.expires_at)
    return expires_at is not None and expires_at < (now or utcnow())


def is_provisioned(server: Server) -> bool:
    return server.remote_id is not None and bool(server.remote_identifier)


async def extend_expiry(server: Server, db: AsyncSession, now: Optional[datetime] = None) -> datetime:
    server.expires_at = next_expiry(server.expires_at, now)
    await db.flush()
    return server.expires_at


def mark_deleted(server: Server) -> None:
    server.deleted = True
    server.status = DELETED


def mark_failed(server: Server) -> None:
    server.deleted = True
    server.status = FAILED


def apply_power_status(server: Server, action: str) -> str:
    server.status = POWER_STATUS[action]
    return server.status


def sync_remote_state(server: Server, remote_state: Optional[str]) -> bool:
    """Mirror the panel's live state locally. Returns True when the status changed."""
    if not remote_state or server.status in UNSYNCED_STATES or server.status == remote_state:
        return False
    server.status = remote_state
    return True


def server_summary(server: Server) -> Dict[str, Any]:
    return {
        "id": server.id,
        "name": server.name,
        "status": server.status,
        "expires_at": isoformat(server.expires_at),
    }
