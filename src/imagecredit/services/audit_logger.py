"""Structured JSON audit logger for ledger and payment events.

Emits structured log entries via structlog for credit grants and debits,
credited payments, and rejected claims that look like fraud. Every entry
carries an ``audit: true`` flag so production log pipelines can filter on
it easily.
"""

from __future__ import annotations

from datetime import datetime, timezone

import structlog


log = structlog.get_logger()


class AuditLogger:
    """Structured audit logger for ledger events.

    All methods are synchronous -- they only emit log lines and perform
    no I/O beyond writing to the configured structlog sink.
    """

    # ------------------------------------------------------------------
    # Credit event
    # ------------------------------------------------------------------

    def log_credit_event(
        self,
        user_id,
        amount,
        txn_type: str,
        reference=None,
        balance_after=None,
    ) -> None:
        """Log a ledger mutation (grant, spend, refund, ...)."""
        log.info(
            "audit_event",
            event_type="credit_event",
            timestamp=datetime.now(timezone.utc).isoformat(),
            user_id=str(user_id),
            amount=amount,
            txn_type=txn_type,
            reference=reference,
            balance_after=balance_after,
            audit=True,
        )

    # ------------------------------------------------------------------
    # Payment
    # ------------------------------------------------------------------

    def log_payment(
        self,
        source: str,
        tx_key: str,
        user_id,
        credits: int,
        amount=None,
        payer: str | None = None,
    ) -> None:
        """Record a payment that resulted in a credit grant."""
        log.info(
            "audit_event",
            event_type="payment",
            timestamp=datetime.now(timezone.utc).isoformat(),
            source=source,
            tx_key=tx_key,
            user_id=str(user_id),
            credits=credits,
            amount=str(amount) if amount is not None else None,
            payer=payer,
            audit=True,
        )

    # ------------------------------------------------------------------
    # Suspicious claim
    # ------------------------------------------------------------------

    def log_suspicious_claim(
        self,
        tx_key: str,
        wallet: str,
        status: str,
        payer: str | None = None,
    ) -> None:
        """A claim pointed at funds that did not reach us or were not the claimant's."""
        log.warning(
            "audit_event",
            event_type="suspicious_claim",
            timestamp=datetime.now(timezone.utc).isoformat(),
            tx_key=tx_key,
            wallet=wallet,
            status=status,
            payer=payer,
            audit=True,
        )
