"""FastAPI dependencies resolving the current user from the request."""
from typing import Optional

from fastapi import Depends, Request

from roomcast.auth.service import SessionService
from roomcast.chat.schemas import Profile
from roomcast.config import get_config
from roomcast.db import Database
from roomcast.dependencies import get_database
from roomcast.errors import Unauthorized


def get_session_service(db: Database = Depends(get_database)) -> SessionService:
    return SessionService(db, ttl_hours=get_config().auth.session_ttl_hours)


def _extract_token(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return request.cookies.get(get_config().auth.cookie_name)


def get_optional_user(
    request: Request,
    sessions: SessionService = Depends(get_session_service),
) -> Optional[Profile]:
    """Current user, or None when the request carries no valid session."""
    return sessions.resolve(_extract_token(request))


def get_current_user(user: Optional[Profile] = Depends(get_optional_user)) -> Profile:
    """Current user; raises Unauthorized (401) without a valid session."""
    if user is None:
        raise Unauthorized()
    return user
