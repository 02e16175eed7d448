"""On-chain payment verification for USDC top-ups.

Given a claimed transaction, confirm that it is final, that it moved USDC
to our receiving address, that it came from the claiming wallet and that
the amount covers the claim. Verification is a pure query: it never
touches the database or the ledger. Expected failures are returned as a
``VerificationResult``; only programming errors raise.
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Awaitable, Callable

import structlog

from imagecredit.config import settings
from imagecredit.errors import ValidationFailedError
from imagecredit.integrations.chains import (
    EVM,
    TRANSFER_EVENT_TOPIC,
    ChainConfig,
    SOLANA_REQUIRED_STATUS,
    is_valid_address,
    is_valid_tx_id,
    normalize_address,
    topic_to_address,
)
from imagecredit.integrations.evm_rpc import EvmRpcClient, hex_to_int
from imagecredit.integrations.rpc import RpcUnavailableError
from imagecredit.integrations.solana_rpc import SolanaRpcClient, TokenBalance

log = structlog.get_logger()

# Accepted shortfall on token transfers, in basis points of the claimed amount.
AMOUNT_TOLERANCE_BPS = 100
MIN_PAYMENT_USD = Decimal("1")


class VerificationStatus(str, enum.Enum):
    VERIFIED = "verified"
    NOT_FOUND = "not_found"
    WRONG_DESTINATION = "wrong_destination"
    WRONG_PAYER = "wrong_payer"
    INSUFFICIENT_AMOUNT = "insufficient_amount"
    FAILED_ON_CHAIN = "failed_on_chain"
    RPC_UNAVAILABLE = "rpc_unavailable"


RETRYABLE_STATUSES = frozenset(
    {VerificationStatus.NOT_FOUND, VerificationStatus.RPC_UNAVAILABLE}
)
SUSPICIOUS_STATUSES = frozenset(
    {
        VerificationStatus.WRONG_DESTINATION,
        VerificationStatus.WRONG_PAYER,
        VerificationStatus.INSUFFICIENT_AMOUNT,
    }
)


@dataclass(frozen=True)
class VerificationResult:
    status: VerificationStatus
    reason: str
    actual_amount: Decimal | None = None
    payer: str | None = None
    tolerance_applied: bool = False

    @property
    def valid(self) -> bool:
        return self.status is VerificationStatus.VERIFIED

    @property
    def retryable(self) -> bool:
        return self.status in RETRYABLE_STATUSES


@dataclass(frozen=True)
class PaymentClaim:
    """Validated, normalized claim. Not persisted beyond the dedup check."""

    chain: str
    tx_id: str
    wallet: str
    amount: Decimal

    @property
    def tx_key(self) -> str:
        return f"{self.chain}:{self.tx_id}"


def _to_decimal(value) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationFailedError("Amount must be a number")
    if not amount.is_finite():
        raise ValidationFailedError("Amount must be a number")
    return amount


def minimum_accepted(claimed: Decimal) -> Decimal:
    return claimed * (Decimal(10_000 - AMOUNT_TOLERANCE_BPS) / Decimal(10_000))


def _amount_result(
    claimed: Decimal, actual: Decimal, payer: str, token_decimals: int,
) -> VerificationResult:
    if actual >= claimed:
        return VerificationResult(
            VerificationStatus.VERIFIED, "Payment verified", actual, payer,
        )
    if actual >= minimum_accepted(claimed):
        return VerificationResult(
            VerificationStatus.VERIFIED,
            f"Payment verified within {AMOUNT_TOLERANCE_BPS / 100:g}% tolerance",
            actual,
            payer,
            tolerance_applied=True,
        )
    shown = actual.quantize(Decimal(1).scaleb(-token_decimals))
    return VerificationResult(
        VerificationStatus.INSUFFICIENT_AMOUNT,
        f"Transaction amount too low: expected {claimed}, got {shown}",
        actual,
        payer,
    )


class PaymentVerifier:
    """Verifies USDC payments on every configured network."""

    def __init__(
        self,
        networks: dict[str, ChainConfig],
        timeout: float | None = None,
        max_retries: int | None = None,
        backoff_seconds: float | None = None,
    ) -> None:
        self.networks = networks
        self.timeout = timeout if timeout is not None else settings.RPC_TIMEOUT_SECONDS
        self.max_retries = (
            max_retries if max_retries is not None else settings.RPC_MAX_RETRIES
        )
        self.backoff_seconds = (
            backoff_seconds if backoff_seconds is not None else settings.RPC_BACKOFF_SECONDS
        )

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def build_claim(self, chain: str, tx_id: str, wallet: str, amount) -> PaymentClaim:
        """Validate raw input and return a normalized claim.

        Raises ValidationFailedError without performing any I/O.
        """
        chain = (chain or "").strip().lower()
        network = self.networks.get(chain)
        if network is None:
            raise ValidationFailedError(f"Unsupported chain: {chain or '<empty>'}")
        if not network.is_configured:
            raise ValidationFailedError(f"Payments on {chain} are not enabled")

        tx_id = (tx_id or "").strip()
        if not is_valid_tx_id(network.kind, tx_id):
            expected = "0x-prefixed 32-byte hex hash" if network.kind == EVM else "base58 signature"
            raise ValidationFailedError(f"Invalid transaction id for {chain}: expected {expected}")

        wallet = (wallet or "").strip()
        if not is_valid_address(network.kind, wallet):
            raise ValidationFailedError(f"Invalid wallet address for {chain}")

        value = _to_decimal(amount)
        if value < MIN_PAYMENT_USD:
            raise ValidationFailedError(f"Minimum payment is {MIN_PAYMENT_USD} USDC")

        if network.kind == EVM:
            tx_id = tx_id.lower()
        return PaymentClaim(
            chain=chain,
            tx_id=tx_id,
            wallet=normalize_address(network.kind, wallet),
            amount=value,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def verify(
        self, chain: str, tx_id: str, claimed_wallet: str, claimed_amount,
    ) -> VerificationResult:
        """Validate the raw claim and check it on-chain."""
        claim = self.build_claim(chain, tx_id, claimed_wallet, claimed_amount)
        return await self.verify_claim(claim)

    async def verify_claim(self, claim: PaymentClaim) -> VerificationResult:
        network = self.networks[claim.chain]
        if network.kind == EVM:
            check = lambda: self._verify_evm(network, claim)  # noqa: E731
        else:
            check = lambda: self._verify_solana(network, claim)  # noqa: E731

        result = await self._with_backoff(check, claim)
        self._log_result(claim, result)
        return result

    # ------------------------------------------------------------------
    # Retry
    # ------------------------------------------------------------------

    async def _with_backoff(
        self,
        check: Callable[[], Awaitable[VerificationResult]],
        claim: PaymentClaim,
    ) -> VerificationResult:
        attempt = 0
        while True:
            try:
                return await check()
            except RpcUnavailableError as exc:
                if attempt >= self.max_retries:
                    return VerificationResult(
                        VerificationStatus.RPC_UNAVAILABLE,
                        f"{claim.chain} node unavailable, please retry later",
                    )
                delay = self.backoff_seconds * (2 ** attempt)
                log.warning(
                    "rpc_unavailable_retrying",
                    chain=claim.chain,
                    attempt=attempt + 1,
                    delay=delay,
                    error=str(exc),
                )
                attempt += 1
                await asyncio.sleep(delay)

    # ------------------------------------------------------------------
    # EVM
    # ------------------------------------------------------------------

    async def _verify_evm(
        self, network: ChainConfig, claim: PaymentClaim,
    ) -> VerificationResult:
        client = EvmRpcClient(network.rpc_url, timeout=self.timeout)

        receipt = await client.get_receipt(claim.tx_id)
        if receipt is None:
            return VerificationResult(
                VerificationStatus.NOT_FOUND,
                "Transaction not found yet. It may still be pending.",
            )

        latest = await client.block_number()
        confirmations = latest - receipt.block_number + 1
        if confirmations < network.required_confirmations:
            return VerificationResult(
                VerificationStatus.NOT_FOUND,
                f"Waiting for confirmations ({max(confirmations, 0)}/"
                f"{network.required_confirmations})",
            )

        if not receipt.succeeded:
            return VerificationResult(
                VerificationStatus.FAILED_ON_CHAIN, "Transaction reverted on chain",
            )

        transfers = [
            entry
            for entry in receipt.logs
            if entry.address == network.token_address
            and len(entry.topics) >= 3
            and entry.topics[0] == TRANSFER_EVENT_TOPIC
        ]
        to_us = [
            entry
            for entry in transfers
            if topic_to_address(entry.topics[2]) == network.receiving_address
        ]
        if not to_us:
            return VerificationResult(
                VerificationStatus.WRONG_DESTINATION,
                "No USDC transfer to the payment wallet in this transaction",
            )

        # Other senders may also pay us in the same transaction; only the
        # claiming wallet's transfers count toward its claim.
        from_payer = [
            entry for entry in to_us if topic_to_address(entry.topics[1]) == claim.wallet
        ]
        if not from_payer:
            return VerificationResult(
                VerificationStatus.WRONG_PAYER,
                "Transaction was not sent from the claiming wallet",
                payer=topic_to_address(to_us[0].topics[1]),
            )

        raw_total = sum(hex_to_int(entry.data) for entry in from_payer)
        actual = Decimal(raw_total) / (Decimal(10) ** network.token_decimals)
        return _amount_result(claim.amount, actual, claim.wallet, network.token_decimals)

    # ------------------------------------------------------------------
    # Solana
    # ------------------------------------------------------------------

    async def _verify_solana(
        self, network: ChainConfig, claim: PaymentClaim,
    ) -> VerificationResult:
        client = SolanaRpcClient(network.rpc_url, timeout=self.timeout)

        status = await client.get_signature_status(claim.tx_id)
        if status != SOLANA_REQUIRED_STATUS:
            return VerificationResult(
                VerificationStatus.NOT_FOUND,
                "Transaction not finalized yet"
                if status
                else "Transaction not found yet. It may still be pending.",
            )

        tx = await client.get_transaction(claim.tx_id)
        if tx is None:
            return VerificationResult(
                VerificationStatus.NOT_FOUND,
                "Transaction not found yet. It may still be pending.",
            )
        if tx.failed:
            return VerificationResult(
                VerificationStatus.FAILED_ON_CHAIN, "Transaction failed on chain",
            )

        deltas = self._owner_deltas(
            tx.pre_token_balances, tx.post_token_balances, network.token_address,
        )
        received = deltas.get(network.receiving_address, Decimal(0))
        if received <= 0:
            return VerificationResult(
                VerificationStatus.WRONG_DESTINATION,
                "No USDC transfer to the payment wallet in this transaction",
            )

        senders = [owner for owner, delta in deltas.items() if delta < 0]
        payer = senders[0] if senders else None
        if claim.wallet not in senders:
            return VerificationResult(
                VerificationStatus.WRONG_PAYER,
                "Transaction was not sent from the claiming wallet",
                payer=payer,
            )

        return _amount_result(claim.amount, received, claim.wallet, network.token_decimals)

    @staticmethod
    def _owner_deltas(
        pre: list[TokenBalance], post: list[TokenBalance], mint: str,
    ) -> dict[str, Decimal]:
        """Net token movement per owner wallet for a single mint."""
        deltas: dict[str, Decimal] = {}
        for balance in post:
            if balance.mint == mint:
                deltas[balance.owner] = deltas.get(balance.owner, Decimal(0)) + balance.amount
        for balance in pre:
            if balance.mint == mint:
                deltas[balance.owner] = deltas.get(balance.owner, Decimal(0)) - balance.amount
        return deltas

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------

    @staticmethod
    def _log_result(claim: PaymentClaim, result: VerificationResult) -> None:
        fields = dict(
            chain=claim.chain,
            tx_id=claim.tx_id,
            wallet=claim.wallet,
            claimed=str(claim.amount),
            actual=str(result.actual_amount) if result.actual_amount is not None else None,
            status=result.status.value,
        )
        if result.status in SUSPICIOUS_STATUSES:
            log.warning("payment_claim_suspicious", payer=result.payer, **fields)
        elif result.valid:
            log.info("payment_verified", tolerance_applied=result.tolerance_applied, **fields)
        else:
            log.info("payment_not_verified", reason=result.reason, **fields)
