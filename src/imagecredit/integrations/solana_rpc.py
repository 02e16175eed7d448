"""Solana node client."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from imagecredit.integrations.rpc import JsonRpcClient


@dataclass
class TokenBalance:
    """One entry of meta.preTokenBalances / meta.postTokenBalances."""

    account_index: int
    mint: str
    owner: str
    raw_amount: int
    decimals: int

    @property
    def amount(self) -> Decimal:
        return Decimal(self.raw_amount) / (Decimal(10) ** self.decimals)


@dataclass
class SolanaTransaction:
    signature: str
    slot: int
    failed: bool
    pre_token_balances: list[TokenBalance] = field(default_factory=list)
    post_token_balances: list[TokenBalance] = field(default_factory=list)


def _parse_balances(entries: list[dict] | None) -> list[TokenBalance]:
    balances: list[TokenBalance] = []
    for entry in entries or []:
        ui = entry.get("uiTokenAmount") or {}
        balances.append(
            TokenBalance(
                account_index=int(entry.get("accountIndex", -1)),
                mint=entry.get("mint", ""),
                owner=entry.get("owner", ""),
                raw_amount=int(ui.get("amount", "0")),
                decimals=int(ui.get("decimals", 0)),
            )
        )
    return balances


class SolanaRpcClient:
    """Async client for getSignatureStatuses / getTransaction."""

    def __init__(self, rpc_url: str, timeout: float = 10.0) -> None:
        self._rpc = JsonRpcClient(rpc_url, timeout=timeout)

    async def get_signature_status(self, signature: str) -> str | None:
        """Return 'processed' | 'confirmed' | 'finalized', or None if unknown."""
        result = await self._rpc.call(
            "getSignatureStatuses",
            [[signature], {"searchTransactionHistory": True}],
        )
        values = (result or {}).get("value") or [None]
        status = values[0]
        if not status:
            return None
        return status.get("confirmationStatus")

    async def get_transaction(self, signature: str) -> SolanaTransaction | None:
        raw = await self._rpc.call(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "jsonParsed",
                    "commitment": "finalized",
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )
        if not raw:
            return None
        meta = raw.get("meta") or {}
        return SolanaTransaction(
            signature=signature,
            slot=int(raw.get("slot", 0)),
            failed=meta.get("err") is not None,
            pre_token_balances=_parse_balances(meta.get("preTokenBalances")),
            post_token_balances=_parse_balances(meta.get("postTokenBalances")),
        )
