"""EVM node client (Ethereum, Polygon, Arbitrum, Optimism, Base)."""

from __future__ import annotations

from dataclasses import dataclass, field

from imagecredit.integrations.rpc import JsonRpcClient, RpcUnavailableError

# balanceOf(address)
_BALANCE_OF_SELECTOR = "0x70a08231"


@dataclass
class EvmLog:
    address: str
    topics: list[str]
    data: str


@dataclass
class EvmReceipt:
    """The subset of eth_getTransactionReceipt the verifier relies on."""

    transaction_hash: str
    block_number: int
    succeeded: bool
    sender: str
    to: str | None
    logs: list[EvmLog] = field(default_factory=list)


def hex_to_int(value: str | None) -> int:
    """Decode an RPC quantity or word; empty data ("0x") reads as zero."""
    digits = (value or "").removeprefix("0x")
    return int(digits, 16) if digits else 0


class EvmRpcClient:
    """Async client for the handful of eth_* methods payment checks need."""

    def __init__(self, rpc_url: str, timeout: float = 10.0) -> None:
        self._rpc = JsonRpcClient(rpc_url, timeout=timeout)

    async def get_receipt(self, tx_hash: str) -> EvmReceipt | None:
        """Return the mined receipt, or None if the tx is unknown or still pending."""
        raw = await self._rpc.call("eth_getTransactionReceipt", [tx_hash])
        if raw is None:
            return None
        if isinstance(raw, dict) and raw.get("blockNumber") is None:
            return None
        return self._parse_receipt(raw)

    async def block_number(self) -> int:
        return hex_to_int(await self._rpc.call("eth_blockNumber", []))

    async def erc721_balance_of(self, contract: str, owner: str) -> int:
        """Call balanceOf(owner) on an ERC-721/ERC-20 contract at the latest block."""
        data = _BALANCE_OF_SELECTOR + owner.lower().removeprefix("0x").rjust(64, "0")
        result = await self._rpc.call(
            "eth_call", [{"to": contract, "data": data}, "latest"]
        )
        return hex_to_int(result)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_receipt(raw: dict) -> EvmReceipt:
        if not isinstance(raw, dict) or raw.get("blockNumber") is None:
            raise RpcUnavailableError("Malformed transaction receipt")
        logs = [
            EvmLog(
                address=(entry.get("address") or "").lower(),
                topics=[t.lower() for t in entry.get("topics", [])],
                data=entry.get("data") or "0x",
            )
            for entry in raw.get("logs", [])
        ]
        return EvmReceipt(
            transaction_hash=raw.get("transactionHash", ""),
            block_number=hex_to_int(raw["blockNumber"]),
            succeeded=hex_to_int(raw.get("status")) == 1,
            sender=(raw.get("from") or "").lower(),
            to=(raw.get("to") or "").lower() or None,
            logs=logs,
        )
