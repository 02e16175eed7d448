"""Transaction dedup cache -- at most one credit grant per payment identifier.

The unique index on ``payment_records.tx_key`` is the source of truth:
reserving inserts a ``pending`` row, and concurrent reservations for the
same key (from any server instance) collide on that index. Redis only
remembers completed claims so replays can be answered without a database
round-trip; when Redis is unavailable the database still decides.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

log = structlog.get_logger()

RESERVATION_TTL_SECONDS = 300
CLAIMED_TTL_SECONDS = 7 * 24 * 60 * 60
_KEY_PREFIX = "dedup:"


@dataclass(frozen=True)
class PriorClaim:
    """What an earlier request recorded for the same key."""

    tx_key: str
    user_id: uuid.UUID | None
    credits: int | None
    status: str


@dataclass(frozen=True)
class Reservation:
    tx_key: str
    already_claimed: bool
    prior: PriorClaim | None = None
    # Identifies this holder of the key; a takeover issues a new one.
    payment_id: uuid.UUID | None = None


class ReservationLostError(Exception):
    """The pending reservation was taken over or removed before completion."""

    def __init__(self, tx_key: str) -> None:
        super().__init__(f"Reservation for {tx_key} is no longer held")
        self.tx_key = tx_key


class TransactionDedupCache:
    """``reserve`` / ``release`` / ``complete`` over payment_records + Redis."""

    def __init__(self, db: AsyncSession, redis: Any | None = None) -> None:
        self._db = db
        self._redis = redis

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def reserve(
        self,
        tx_key: str,
        source: str,
        chain: str | None = None,
        tx_id: str | None = None,
    ) -> Reservation:
        """Atomically claim *tx_key* before any credit is granted.

        Returns ``already_claimed=True`` when another request holds or has
        completed the key. A pending reservation older than
        RESERVATION_TTL_SECONDS is treated as abandoned and taken over.
        """
        cached = await self._cached_claim(tx_key)
        if cached is not None:
            log.info("dedup_fast_path_hit", tx_key=tx_key)
            return Reservation(tx_key=tx_key, already_claimed=True, prior=cached)

        now = datetime.now(timezone.utc)
        result = await self._db.execute(
            text(
                "INSERT INTO payment_records "
                "(payment_id, tx_key, source, chain, tx_id, status, reserved_at) "
                "VALUES (:payment_id, :tx_key, :source, :chain, :tx_id, 'pending', :now) "
                "ON CONFLICT (tx_key) DO UPDATE SET "
                "payment_id = EXCLUDED.payment_id, reserved_at = EXCLUDED.reserved_at "
                "WHERE payment_records.status = 'pending' "
                "AND payment_records.reserved_at < :stale_before "
                "RETURNING payment_id"
            ),
            {
                "payment_id": uuid.uuid4(),
                "tx_key": tx_key,
                "source": source,
                "chain": chain,
                "tx_id": tx_id,
                "now": now,
                "stale_before": now - timedelta(seconds=RESERVATION_TTL_SECONDS),
            },
        )
        row = result.fetchone()
        if row is None:
            log.info("dedup_already_claimed", tx_key=tx_key)
            return Reservation(
                tx_key=tx_key,
                already_claimed=True,
                prior=await self.get_prior(tx_key),
            )

        return Reservation(tx_key=tx_key, already_claimed=False, payment_id=row[0])

    async def release(self, reservation: Reservation) -> None:
        """Drop our pending reservation so the payment can be claimed again later.

        A row that was taken over by another request is left alone.
        """
        await self._db.execute(
            text(
                "DELETE FROM payment_records "
                "WHERE payment_id = :payment_id AND status = 'pending'"
            ),
            {"payment_id": reservation.payment_id},
        )

    async def complete(
        self,
        reservation: Reservation,
        user_id: uuid.UUID,
        credits: int,
        payer: str | None = None,
        amount: Decimal | None = None,
    ) -> None:
        """Promote our reservation to an immutable completed payment record.

        Raises ReservationLostError when the row is no longer ours to
        complete; the caller must roll back any credit granted with it.
        """
        result = await self._db.execute(
            text(
                "UPDATE payment_records "
                "SET status = 'completed', user_id = :user_id, credits = :credits, "
                "payer = :payer, amount = :amount, completed_at = :now "
                "WHERE payment_id = :payment_id AND status = 'pending'"
            ),
            {
                "payment_id": reservation.payment_id,
                "user_id": user_id,
                "credits": credits,
                "payer": payer,
                "amount": amount,
                "now": datetime.now(timezone.utc),
            },
        )
        if result.rowcount == 0:
            log.warning("dedup_reservation_lost", tx_key=reservation.tx_key)
            raise ReservationLostError(reservation.tx_key)

    async def remember(self, tx_key: str, user_id: uuid.UUID, credits: int) -> None:
        """Cache a committed claim in Redis. Call only after the commit."""
        if self._redis is None:
            return
        payload = json.dumps({"user_id": str(user_id), "credits": credits})
        try:
            await self._redis.set(_KEY_PREFIX + tx_key, payload, ex=CLAIMED_TTL_SECONDS)
        except Exception as exc:
            log.warning("dedup_redis_error", op="set", tx_key=tx_key, error=str(exc))

    async def get_prior(self, tx_key: str) -> PriorClaim | None:
        result = await self._db.execute(
            text(
                "SELECT tx_key, user_id, credits, status "
                "FROM payment_records WHERE tx_key = :tx_key"
            ),
            {"tx_key": tx_key},
        )
        row = result.fetchone()
        if row is None:
            return None
        return PriorClaim(tx_key=row[0], user_id=row[1], credits=row[2], status=row[3])

    # ------------------------------------------------------------------
    # Redis fast path
    # ------------------------------------------------------------------

    async def _cached_claim(self, tx_key: str) -> PriorClaim | None:
        if self._redis is None:
            return None
        try:
            cached = await self._redis.get(_KEY_PREFIX + tx_key)
        except Exception as exc:
            log.warning("dedup_redis_error", op="get", tx_key=tx_key, error=str(exc))
            return None
        if not cached:
            return None
        try:
            data = json.loads(cached)
            return PriorClaim(
                tx_key=tx_key,
                user_id=uuid.UUID(data["user_id"]),
                credits=int(data["credits"]),
                status="completed",
            )
        except (TypeError, ValueError, KeyError):
            log.warning("dedup_cache_corrupt_entry", tx_key=tx_key)
            return None
