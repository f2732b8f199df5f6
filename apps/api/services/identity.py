"""Internal user resolution for authenticated identity-provider subjects."""

from __future__ import annotations

import re
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.user import User
from services.clock import isoformat, utcnow
from services.errors import InternalPersistenceFailure

PANEL_USERNAME_MAX = 20


async def get_user_by_subject(subject: str, db: AsyncSession) -> Optional[User]:
    result = await db.execute(select(User).where(User.auth_uuid == subject))
    return result.scalar_one_or_none()


async def get_or_create_user(subject: str, email: Optional[str], db: AsyncSession) -> User:
    """Return the user for a subject, inserting it on first access.

    The unique auth_uuid column arbitrates concurrent first requests.
    """
    user = await get_user_by_subject(subject, db)
    if user:
        return user

    db.add(
        User(
            auth_uuid=subject,
            email=(email or "").strip() or f"{subject}@local.invalid",
            role="user",
            created_at=utcnow(),
        )
    )
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()

    user = await get_user_by_subject(subject, db)
    if user is None:
        raise InternalPersistenceFailure("Failed to create user")
    return user


def panel_username(email: str, user_id: int) -> str:
    """Email local part reduced to alphanumerics, truncated, suffixed with the internal id."""
    local_part = (email or "").split("@", 1)[0]
    cleaned = re.sub(r"[^a-zA-Z0-9]", "", local_part)[:PANEL_USERNAME_MAX] or "user"
    return f"{cleaned}_{user_id}"


def user_profile(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "sub": user.auth_uuid,
        "email": user.email,
        "role": user.role,
        "created_at": isoformat(user.created_at),
    }
