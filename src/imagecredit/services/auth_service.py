"""Authentication service: password hashing, JWT tokens, email and wallet login."""

from __future__ import annotations

import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID

import bcrypt
import structlog
from eth_account import Account
from eth_account.messages import encode_defunct
from fastapi import HTTPException, status
from jose import JWTError, jwt
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from imagecredit.config import settings
from imagecredit.errors import InvalidSignatureError, InvalidTokenTypeError, ValidationFailedError
from imagecredit.integrations.chains import is_evm_address
from imagecredit.models import User
from imagecredit.services.user_service import get_or_create_wallet_user, get_user_by_id

log = structlog.get_logger()

# ---------------------------------------------------------------------------
# Password hashing helpers (bcrypt, cost 12)
# ---------------------------------------------------------------------------

_BCRYPT_ROUNDS = 12

NONCE_TTL_SECONDS = 300
_NONCE_PREFIX = "auth_nonce:"


def hash_password(password: str) -> str:
    """Hash a plaintext password with bcrypt (cost 12)."""
    salt = bcrypt.gensalt(rounds=_BCRYPT_ROUNDS)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a plaintext password against a bcrypt hash."""
    return bcrypt.checkpw(
        plain_password.encode("utf-8"),
        hashed_password.encode("utf-8"),
    )


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    email: str = Field(..., max_length=320)
    password: str = Field(..., min_length=8)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        pattern = r"^[a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+$"
        if not re.match(pattern, v):
            raise ValueError("Invalid email address")
        return v.lower().strip()


class LoginRequest(BaseModel):
    email: str
    password: str


class NonceRequest(BaseModel):
    wallet: str = Field(..., min_length=42, max_length=42)


class NonceResponse(BaseModel):
    nonce: str
    message: str


class WalletLoginRequest(BaseModel):
    wallet: str = Field(..., min_length=42, max_length=42)
    message: str = Field(..., max_length=1000)
    signature: str = Field(..., max_length=200)


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class UserResponse(BaseModel):
    user_id: UUID
    email: str | None
    wallet_address: str | None
    credit_balance: int
    created_at: datetime

    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
# Email accounts
# ---------------------------------------------------------------------------


async def register_user(db: AsyncSession, request: RegisterRequest) -> UserResponse:
    """Register a new user. Raises 409 if the email is already taken."""
    result = await db.execute(select(User).where(User.email == request.email))
    if result.scalar_one_or_none() is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Email already registered",
        )

    user = User(
        email=request.email,
        password_hash=hash_password(request.password),
    )
    db.add(user)
    await db.flush()
    await db.refresh(user)

    return UserResponse.model_validate(user)


async def authenticate_user(
    db: AsyncSession, email: str, password: str
) -> User | None:
    """Authenticate a user by email and password.

    SECURITY: Always performs a password hash even when the user does not exist
    to prevent timing-based user enumeration.
    """
    result = await db.execute(select(User).where(User.email == email.strip().lower()))
    user = result.scalar_one_or_none()

    if user is None or not user.password_hash:
        hash_password(password)
        return None

    if not verify_password(password, user.password_hash):
        return None

    return user


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


def create_tokens(user_id: UUID, token_version: int) -> TokenResponse:
    """Create an access + refresh JWT token pair."""
    now = datetime.now(timezone.utc)
    claims = {
        "userId": str(user_id),
        "sub": str(user_id),
        "token_version": token_version,
        "iat": now,
    }

    access_payload = {
        **claims,
        "type": "access",
        "exp": now + timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES),
    }
    refresh_payload = {
        **claims,
        "type": "refresh",
        "exp": now + timedelta(days=settings.JWT_REFRESH_TOKEN_EXPIRE_DAYS),
    }

    access_token = jwt.encode(access_payload, settings.JWT_SECRET_KEY, algorithm="HS256")
    refresh_token = jwt.encode(refresh_payload, settings.JWT_SECRET_KEY, algorithm="HS256")

    return TokenResponse(access_token=access_token, refresh_token=refresh_token)


def verify_token(token: str, token_type: str) -> dict:
    """Decode and validate a JWT token.

    Args:
        token: The JWT string.
        token_type: Expected type ("access" or "refresh").

    Returns:
        The decoded payload dict.

    Raises:
        HTTPException(401) if the token is invalid or expired.
        InvalidTokenTypeError if it is the wrong type. Tokens issued before
        the ``type`` claim existed count as access tokens only.
    """
    try:
        payload = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=["HS256"])
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )

    actual_type = payload.get("type", "access")
    if actual_type != token_type or ("type" not in payload and token_type != "access"):
        raise InvalidTokenTypeError(token_type)

    if not (payload.get("userId") or payload.get("sub")):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has no subject",
        )

    return payload


def token_user_id(payload: dict) -> UUID:
    """Extract the user id from a verified token payload."""
    try:
        return UUID(payload.get("userId") or payload["sub"])
    except (KeyError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token subject",
        )


async def refresh_tokens(db: AsyncSession, refresh_token: str) -> TokenResponse:
    """Validate a refresh token and issue a new token pair.

    Checks that the user still exists and that token_version matches (i.e.
    tokens have not been revoked).
    """
    payload = verify_token(refresh_token, "refresh")

    user = await get_user_by_id(db, token_user_id(payload))
    if user is None or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )

    if user.token_version != payload.get("token_version", 0):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has been revoked",
        )

    return create_tokens(user.user_id, user.token_version)


async def revoke_all_tokens(db: AsyncSession, user_id: UUID) -> None:
    """Increment the user's token_version, invalidating all existing tokens."""
    user = await get_user_by_id(db, user_id)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found",
        )

    user.token_version += 1
    await db.flush()


# ---------------------------------------------------------------------------
# Wallet accounts (sign-in with an EVM wallet)
# ---------------------------------------------------------------------------


def _nonce_message(wallet: str, nonce: str) -> str:
    return (
        "Sign in to ImageCredit\n"
        f"Wallet: {wallet}\n"
        f"Nonce: {nonce}"
    )


async def issue_wallet_nonce(redis: Any, wallet: str) -> NonceResponse:
    """Store a fresh single-use nonce for *wallet* and return the message to sign."""
    if not is_evm_address(wallet):
        raise ValidationFailedError("Invalid wallet address")
    wallet = wallet.lower()
    nonce = secrets.token_hex(16)
    await redis.set(_NONCE_PREFIX + wallet, nonce, ex=NONCE_TTL_SECONDS)
    return NonceResponse(nonce=nonce, message=_nonce_message(wallet, nonce))


def verify_wallet_signature(message: str, signature: str, wallet: str) -> None:
    """Raise InvalidSignatureError unless *wallet* signed *message* (EIP-191)."""
    try:
        signer = Account.recover_message(encode_defunct(text=message), signature=signature)
    except Exception:
        # eth_account raises a mix of ValueError / BadSignature / binascii errors
        raise InvalidSignatureError(status_code=status.HTTP_401_UNAUTHORIZED)

    if signer.lower() != wallet.lower():
        log.warning("wallet_signature_mismatch", wallet=wallet.lower(), signer=signer.lower())
        raise InvalidSignatureError(status_code=status.HTTP_401_UNAUTHORIZED)


async def wallet_login(db: AsyncSession, redis: Any, request: WalletLoginRequest) -> TokenResponse:
    """Exchange a signed nonce for a token pair, creating the wallet user on first login."""
    if not is_evm_address(request.wallet):
        raise ValidationFailedError("Invalid wallet address")
    wallet = request.wallet.lower()

    # Consumed before the signature check so a nonce never gets a second attempt
    nonce = await redis.getdel(_NONCE_PREFIX + wallet)
    if isinstance(nonce, bytes):
        nonce = nonce.decode()
    if not nonce or nonce not in request.message:
        raise InvalidSignatureError(
            "Nonce expired or unknown", status_code=status.HTTP_401_UNAUTHORIZED,
        )

    verify_wallet_signature(request.message, request.signature, wallet)

    user_id = await get_or_create_wallet_user(db, wallet)
    await db.commit()
    user = await get_user_by_id(db, user_id)
    if user is None or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found or deactivated",
        )

    log.info("wallet_login", user_id=str(user.user_id))
    return create_tokens(user.user_id, user.token_version)
