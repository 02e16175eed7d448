"""Authentication API router -- /api/v1/auth/*."""

from __future__ import annotations

from fastapi import APIRouter, Cookie, Depends, HTTPException, Response, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from imagecredit.api.dependencies import get_current_user, get_redis
from imagecredit.config import settings
from imagecredit.database import get_db
from imagecredit.models import User
from imagecredit.services.auth_service import (
    LoginRequest,
    NonceRequest,
    NonceResponse,
    RegisterRequest,
    TokenResponse,
    UserResponse,
    WalletLoginRequest,
    authenticate_user,
    create_tokens,
    issue_wallet_nonce,
    refresh_tokens as refresh_tokens_service,
    register_user,
    revoke_all_tokens,
    wallet_login,
)

router = APIRouter(prefix="/api/v1/auth", tags=["auth"])

_bearer_scheme = HTTPBearer(auto_error=False)


def _set_token_cookies(response: Response, tokens: TokenResponse) -> None:
    """Set httpOnly, Secure, SameSite=Strict cookies for both tokens."""
    response.set_cookie(
        key="access_token",
        value=tokens.access_token,
        httponly=True,
        secure=True,
        samesite="strict",
        max_age=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        path="/",
    )
    response.set_cookie(
        key="refresh_token",
        value=tokens.refresh_token,
        httponly=True,
        secure=True,
        samesite="strict",
        max_age=settings.JWT_REFRESH_TOKEN_EXPIRE_DAYS * 24 * 60 * 60,
        path="/api/v1/auth",
    )


@router.post(
    "/register",
    response_model=UserResponse,
    status_code=status.HTTP_201_CREATED,
)
async def register(
    request: RegisterRequest,
    db: AsyncSession = Depends(get_db),
) -> UserResponse:
    """Register a new email account."""
    user = await register_user(db, request)
    await db.commit()
    return user


@router.post("/login", response_model=TokenResponse)
async def login(
    request: LoginRequest,
    response: Response,
    db: AsyncSession = Depends(get_db),
) -> TokenResponse:
    """Authenticate and return JWT tokens (also sets httpOnly cookies)."""
    user = await authenticate_user(db, request.email, request.password)

    if user is None or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )

    tokens = create_tokens(user.user_id, user.token_version)
    _set_token_cookies(response, tokens)
    return tokens


@router.post("/refresh", response_model=TokenResponse)
async def refresh(
    response: Response,
    db: AsyncSession = Depends(get_db),
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
    refresh_token: str | None = Cookie(default=None),
) -> TokenResponse:
    """Refresh the token pair using the refresh_token cookie or a bearer refresh token."""
    token = refresh_token or (credentials.credentials if credentials else None)
    if token is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Refresh token missing",
        )

    tokens = await refresh_tokens_service(db, token)
    _set_token_cookies(response, tokens)
    return tokens


@router.post("/logout", status_code=status.HTTP_200_OK)
async def logout(
    response: Response,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> dict:
    """Log out by revoking all tokens and clearing cookies."""
    await revoke_all_tokens(db, current_user.user_id)
    await db.commit()

    response.delete_cookie("access_token", path="/")
    response.delete_cookie("refresh_token", path="/api/v1/auth")

    return {"detail": "Successfully logged out"}


@router.post("/nonce", response_model=NonceResponse)
async def wallet_nonce(
    request: NonceRequest,
    redis=Depends(get_redis),
) -> NonceResponse:
    """Issue a single-use sign-in nonce for a wallet (valid five minutes)."""
    return await issue_wallet_nonce(redis, request.wallet)


@router.post("/wallet", response_model=TokenResponse)
async def wallet_sign_in(
    request: WalletLoginRequest,
    response: Response,
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
) -> TokenResponse:
    """Sign in with a wallet signature over the issued nonce message."""
    tokens = await wallet_login(db, redis, request)
    _set_token_cookies(response, tokens)
    return tokens
