"""Auth router.

Endpoints:
    GET /auth/me - Profile behind the current session
"""
from fastapi import APIRouter, Depends

from roomcast.auth.dependencies import get_current_user
from roomcast.chat.schemas import Profile

router = APIRouter(prefix="/auth", tags=["auth"])


@router.get("/me", response_model=Profile)
async def whoami(user: Profile = Depends(get_current_user)) -> Profile:
    """Return the profile of the authenticated user."""
    return user
