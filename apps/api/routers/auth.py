"""
Current-user profile endpoint.
"""

from fastapi import APIRouter, Depends

from models.user import User
from routers.auth_scope import get_current_user
from services.identity import user_profile

router = APIRouter()


@router.get("/me")
async def get_me(user: User = Depends(get_current_user)):
    """Resolved internal profile for the bearer credential."""
    return user_profile(user)
