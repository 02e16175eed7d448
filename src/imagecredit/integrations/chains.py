"""Supported payment networks and their per-chain constants.

Settings are resolved into an immutable ``ChainConfig`` registry once at
startup; the RPC clients and the payment verifier receive it explicitly
instead of reading configuration themselves.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

import base58

from imagecredit.config import Settings

EVM = "evm"
SOLANA = "solana"

# keccak256("Transfer(address,address,uint256)")
TRANSFER_EVENT_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

USDC_DECIMALS = 6

_EVM_TX_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")
_EVM_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

# Blocks on top of the inclusion block before a payment counts as final.
EVM_CONFIRMATIONS = {
    "ethereum": 12,
    "polygon": 64,
    "arbitrum": 20,
    "optimism": 10,
    "base": 10,
}
SOLANA_REQUIRED_STATUS = "finalized"

_EVM_NETWORKS = {
    # name: (chain_id, USDC contract, Alchemy host)
    "ethereum": (1, "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48", "eth-mainnet"),
    "polygon": (137, "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174", "polygon-mainnet"),
    "arbitrum": (42161, "0xaf88d065e77c8cC2239327C5EDb3A432268e5831", "arb-mainnet"),
    "optimism": (10, "0x0b2C639c533813f4Aa9D7837CAf62653d097Ff85", "opt-mainnet"),
    "base": (8453, "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913", "base-mainnet"),
}

SOLANA_USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"

SUPPORTED_CHAINS = tuple(_EVM_NETWORKS) + ("solana",)


@dataclass(frozen=True)
class ChainConfig:
    """Everything the verifier needs to know about one network."""

    name: str
    kind: str
    rpc_url: str
    receiving_address: str
    token_address: str
    token_decimals: int = USDC_DECIMALS
    chain_id: int | None = None
    required_confirmations: int = 1

    @property
    def is_configured(self) -> bool:
        return bool(self.rpc_url and self.receiving_address)


# ---------------------------------------------------------------------------
# Format helpers
# ---------------------------------------------------------------------------

def is_evm_tx_hash(value: str) -> bool:
    return bool(_EVM_TX_HASH_RE.match(value))


def is_evm_address(value: str) -> bool:
    return bool(_EVM_ADDRESS_RE.match(value))


def _b58_length(value: str) -> int | None:
    try:
        return len(base58.b58decode(value))
    except ValueError:
        return None


def is_solana_signature(value: str) -> bool:
    return _b58_length(value) == 64


def is_solana_address(value: str) -> bool:
    return _b58_length(value) == 32


def normalize_address(kind: str, address: str) -> str:
    """Canonical form used for comparisons and storage."""
    address = address.strip()
    if kind == EVM:
        return address.lower()
    return address


def is_valid_address(kind: str, address: str) -> bool:
    if kind == EVM:
        return is_evm_address(address)
    return is_solana_address(address)


def is_valid_tx_id(kind: str, tx_id: str) -> bool:
    if kind == EVM:
        return is_evm_tx_hash(tx_id)
    return is_solana_signature(tx_id)


def topic_to_address(topic: str) -> str:
    """Extract the 20-byte address from a 32-byte indexed log topic."""
    return "0x" + topic[-40:].lower()


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

def _evm_rpc_url(settings: Settings, name: str, alchemy_host: str) -> str:
    explicit = getattr(settings, f"{name.upper()}_RPC_URL")
    if explicit:
        return explicit
    if settings.ALCHEMY_API_KEY:
        return f"https://{alchemy_host}.g.alchemy.com/v2/{settings.ALCHEMY_API_KEY}"
    return ""


def build_networks(settings: Settings) -> dict[str, ChainConfig]:
    """Resolve settings into the per-chain registry."""
    networks: dict[str, ChainConfig] = {}

    for name, (chain_id, usdc, alchemy_host) in _EVM_NETWORKS.items():
        receiving = (
            getattr(settings, f"{name.upper()}_PAYMENT_WALLET")
            or settings.EVM_PAYMENT_WALLET
        )
        networks[name] = ChainConfig(
            name=name,
            kind=EVM,
            rpc_url=_evm_rpc_url(settings, name, alchemy_host),
            receiving_address=normalize_address(EVM, receiving),
            token_address=usdc.lower(),
            chain_id=chain_id,
            required_confirmations=EVM_CONFIRMATIONS[name],
        )

    networks["solana"] = ChainConfig(
        name="solana",
        kind=SOLANA,
        rpc_url=settings.SOLANA_RPC_URL,
        receiving_address=settings.SOLANA_PAYMENT_WALLET.strip(),
        token_address=SOLANA_USDC_MINT,
    )
    return networks
