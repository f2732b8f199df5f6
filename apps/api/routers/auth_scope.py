"""Authentication dependencies resolving the bearer credential to an internal user."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from models.user import User
from services.errors import NotFound, Unauthenticated
from services.identity import get_or_create_user, get_user_by_subject
from services.session_token import verify_access_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    subject: str
    email: Optional[str] = None


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve the identity-provider subject from the Bearer token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise Unauthenticated("Unauthorized")

    try:
        payload = await verify_access_token(credentials.credentials)
    except ValueError as exc:
        raise Unauthenticated("Unauthorized") from exc

    return AuthContext(
        subject=str(payload.get("sub", "")),
        email=str(payload.get("email", "") or "") or None,
    )


async def get_current_user(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Internal user for the caller, created on first access when auto-provisioning is on."""
    if settings.AUTO_PROVISION_USERS:
        return await get_or_create_user(auth.subject, auth.email, db)

    user = await get_user_by_subject(auth.subject, db)
    if user is None:
        raise NotFound("User not found")
    return user
