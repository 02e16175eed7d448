"""User lookups shared by the payment, webhook and auth flows."""

from __future__ import annotations

import uuid

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from imagecredit.models import User


async def get_user_by_id(db: AsyncSession, user_id: uuid.UUID | str) -> User | None:
    if isinstance(user_id, str):
        try:
            user_id = uuid.UUID(user_id)
        except ValueError:
            return None
    result = await db.execute(select(User).where(User.user_id == user_id))
    return result.scalar_one_or_none()


async def get_user_by_wallet(db: AsyncSession, wallet_address: str) -> User | None:
    """Look up a wallet user. EVM addresses are matched lower-cased."""
    candidates = {wallet_address.strip(), wallet_address.strip().lower()}
    result = await db.execute(
        select(User).where(User.wallet_address.in_(candidates))
    )
    return result.scalars().first()


async def get_user_by_email(db: AsyncSession, email: str) -> User | None:
    result = await db.execute(
        select(User).where(User.email == email.strip().lower())
    )
    return result.scalar_one_or_none()


async def get_or_create_wallet_user(db: AsyncSession, wallet_address: str) -> uuid.UUID:
    """Return the user id owning *wallet_address*, creating the user on first contact.

    *wallet_address* must already be normalized. Safe under concurrent first
    contacts: the unique index on wallet_address decides the winner.
    """
    await db.execute(
        text(
            "INSERT INTO users (user_id, wallet_address) "
            "VALUES (:user_id, :wallet) "
            "ON CONFLICT (wallet_address) DO NOTHING"
        ),
        {"user_id": uuid.uuid4(), "wallet": wallet_address},
    )
    result = await db.execute(
        text("SELECT user_id FROM users WHERE wallet_address = :wallet"),
        {"wallet": wallet_address},
    )
    return result.fetchone()[0]
