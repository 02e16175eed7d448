"""Shared FastAPI dependencies for authenticated routes."""

from __future__ import annotations

from fastapi import Cookie, Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from imagecredit.database import get_db
from imagecredit.models import User
from imagecredit.services.auth_service import token_user_id, verify_token
from imagecredit.services.user_service import get_user_by_id

# Optional bearer scheme -- auto_error=False so we can fall back to cookies
_bearer_scheme = HTTPBearer(auto_error=False)


def _extract_token(
    credentials: HTTPAuthorizationCredentials | None,
    access_token: str | None,
) -> str | None:
    if credentials is not None:
        return credentials.credentials
    return access_token


async def _user_from_token(db: AsyncSession, token: str) -> User:
    payload = verify_token(token, "access")

    user = await get_user_by_id(db, token_user_id(payload))
    if user is None or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found or deactivated",
        )

    # Check token_version matches (tokens may have been revoked)
    if user.token_version != payload.get("token_version", 0):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has been revoked",
        )

    return user


async def get_current_user(
    request: Request,
    db: AsyncSession = Depends(get_db),
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
    access_token: str | None = Cookie(default=None),
) -> User:
    """Extract and validate the access token, then return the User.

    Token sources (checked in order):
      1. Authorization: Bearer <token> header
      2. ``access_token`` cookie

    Raises HTTPException(401) if no valid token is found or the user does not
    exist / has been deactivated.
    """
    token = _extract_token(credentials, access_token)
    if token is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = await _user_from_token(db, token)
    request.state.user_id = user.user_id
    return user


async def get_optional_user(
    request: Request,
    db: AsyncSession = Depends(get_db),
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
    access_token: str | None = Cookie(default=None),
) -> User | None:
    """Like get_current_user, but anonymous requests get ``None``.

    A token that is present but invalid is still rejected.
    """
    token = _extract_token(credentials, access_token)
    if token is None:
        return None
    user = await _user_from_token(db, token)
    request.state.user_id = user.user_id
    return user


def get_redis(request: Request):
    """The shared redis.asyncio client created in the app lifespan."""
    return request.app.state.redis


def get_verifier(request: Request):
    return request.app.state.verifier
