#!/usr/bin/env python3
"""Nightly credit reconciliation script.

Reports three kinds of ledger drift:

* users whose ``credit_balance`` differs from the sum of their
  ``credit_transactions`` rows,
* users whose ``credit_balance`` differs from
  ``total_credits_earned - total_credits_spent``,
* completed payment records with no matching ledger entry.

Usage:
    DATABASE_URL=postgresql://... python scripts/reconcile_credits.py

Exit codes:
    0 -- everything matches
    1 -- one or more discrepancies found
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from datetime import datetime, timezone

import asyncpg  # type: ignore[import-untyped]

DEFAULT_DATABASE_URL = "postgresql://app:devpassword@db:5432/imagecredit"

_LEDGER_SUM_SQL = """
SELECT
    u.user_id,
    u.credit_balance AS stored_balance,
    COALESCE(SUM(ct.amount), 0)::int AS computed_balance
FROM users u
LEFT JOIN credit_transactions ct USING (user_id)
GROUP BY u.user_id, u.credit_balance
HAVING u.credit_balance <> COALESCE(SUM(ct.amount), 0)
ORDER BY u.user_id
"""

_TOTALS_SQL = """
SELECT user_id, credit_balance, total_credits_earned, total_credits_spent
FROM users
WHERE credit_balance <> total_credits_earned - total_credits_spent
ORDER BY user_id
"""

_UNLEDGERED_PAYMENTS_SQL = """
SELECT p.tx_key, p.user_id, p.credits
FROM payment_records p
LEFT JOIN credit_transactions ct
       ON ct.reference = p.tx_key AND ct.user_id = p.user_id
WHERE p.status = 'completed' AND ct.txn_id IS NULL
ORDER BY p.completed_at
"""


def _get_dsn() -> str:
    """Return a raw ``postgresql://`` DSN (strip any SQLAlchemy dialect prefix)."""
    url = os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL)
    for prefix in ("postgresql+asyncpg://", "postgresql+psycopg2://"):
        if url.startswith(prefix):
            url = "postgresql://" + url[len(prefix):]
    return url


async def reconcile(dsn: str) -> list[dict]:
    """Run every check and return a flat list of discrepancy dicts."""
    conn: asyncpg.Connection = await asyncpg.connect(dsn)
    try:
        discrepancies: list[dict] = []

        for row in await conn.fetch(_LEDGER_SUM_SQL):
            discrepancies.append(
                {
                    "check": "ledger_sum",
                    "user_id": str(row["user_id"]),
                    "stored_balance": row["stored_balance"],
                    "computed_balance": row["computed_balance"],
                    "difference": row["stored_balance"] - row["computed_balance"],
                }
            )

        for row in await conn.fetch(_TOTALS_SQL):
            expected = row["total_credits_earned"] - row["total_credits_spent"]
            discrepancies.append(
                {
                    "check": "earned_minus_spent",
                    "user_id": str(row["user_id"]),
                    "stored_balance": row["credit_balance"],
                    "computed_balance": expected,
                    "difference": row["credit_balance"] - expected,
                }
            )

        for row in await conn.fetch(_UNLEDGERED_PAYMENTS_SQL):
            discrepancies.append(
                {
                    "check": "payment_without_ledger_entry",
                    "tx_key": row["tx_key"],
                    "user_id": str(row["user_id"]),
                    "credits": row["credits"],
                }
            )
        return discrepancies
    finally:
        await conn.close()


async def main() -> int:
    dsn = _get_dsn()
    discrepancies = await reconcile(dsn)

    report = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "total_discrepancies": len(discrepancies),
        "discrepancies": discrepancies,
    }

    json.dump(report, sys.stdout, indent=2)
    sys.stdout.write("\n")

    return 1 if discrepancies else 0


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
