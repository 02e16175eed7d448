"""NFT holder bonus -- one-time credits per held collection.

Collections are configured as ``chain:contract`` entries in NFT_COLLECTIONS.
Holding any token of a collection grants NFT_HOLDER_BONUS_CREDITS once per
(collection, wallet), and records the collection on the user so Stripe
purchases get the holder multiplier.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import structlog
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from imagecredit.config import settings
from imagecredit.errors import ValidationFailedError
from imagecredit.integrations.chains import EVM, ChainConfig, is_evm_address
from imagecredit.integrations.evm_rpc import EvmRpcClient
from imagecredit.integrations.rpc import RpcUnavailableError
from imagecredit.models import User
from imagecredit.services.audit_logger import AuditLogger
from imagecredit.services.credit_service import add_credits
from imagecredit.services.dedup_cache import TransactionDedupCache

log = structlog.get_logger()
audit = AuditLogger()


@dataclass(frozen=True)
class NftCollection:
    chain: str
    contract: str

    @property
    def label(self) -> str:
        return f"{self.chain}:{self.contract}"

    def dedup_key(self, wallet: str) -> str:
        return f"nft:{self.chain}:{self.contract}:{wallet}"


class NftBonusResponse(BaseModel):
    granted: list[str]
    credits: int
    nft_collections: list[str]
    unavailable: list[str] = []
    totalCredits: int | None = None


def parse_collections(entries: list[str]) -> list[NftCollection]:
    """Parse ``chain:contract`` entries, skipping malformed ones."""
    collections = []
    for entry in entries:
        chain, _, contract = entry.strip().partition(":")
        if not chain or not is_evm_address(contract):
            log.warning("nft_collection_misconfigured", entry=entry)
            continue
        collections.append(NftCollection(chain=chain.lower(), contract=contract.lower()))
    return collections


async def _holds(network: ChainConfig, collection: NftCollection, wallet: str) -> bool:
    client = EvmRpcClient(network.rpc_url, timeout=settings.RPC_TIMEOUT_SECONDS)
    return await client.erc721_balance_of(collection.contract, wallet) > 0


async def claim_nft_bonus(
    db: AsyncSession,
    redis: Any,
    networks: dict[str, ChainConfig],
    user: User,
    collections: list[NftCollection] | None = None,
) -> NftBonusResponse:
    """Check every configured collection and grant the bonus for new holdings."""
    wallet = (user.wallet_address or "").lower()
    if not is_evm_address(wallet):
        raise ValidationFailedError("An EVM wallet is required for the NFT holder bonus")

    if collections is None:
        collections = parse_collections(settings.NFT_COLLECTIONS)

    dedup = TransactionDedupCache(db, redis)
    granted: list[str] = []
    unavailable: list[str] = []
    new_balance = None

    for collection in collections:
        network = networks.get(collection.chain)
        if network is None or network.kind != EVM or not network.is_configured:
            unavailable.append(collection.label)
            continue

        try:
            if not await _holds(network, collection, wallet):
                continue
        except RpcUnavailableError as exc:
            log.warning("nft_balance_check_failed", collection=collection.label, error=str(exc))
            unavailable.append(collection.label)
            continue

        tx_key = collection.dedup_key(wallet)
        reservation = await dedup.reserve(
            tx_key, source="nft_bonus", chain=collection.chain, tx_id=collection.contract,
        )
        if reservation.already_claimed:
            continue

        credits = settings.NFT_HOLDER_BONUS_CREDITS
        try:
            new_balance = await add_credits(
                db, user.user_id, credits, txn_type="nft_bonus", reference=tx_key,
            )
            await dedup.complete(
                reservation, user_id=user.user_id, credits=credits, payer=wallet,
            )
            if collection.label not in (user.nft_collections or []):
                user.nft_collections = [*(user.nft_collections or []), collection.label]
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        await dedup.remember(tx_key, user.user_id, credits)
        audit.log_payment("nft_bonus", tx_key, user.user_id, credits, payer=wallet)
        granted.append(collection.label)

    log.info("nft_bonus_checked", user_id=str(user.user_id), granted=granted)
    return NftBonusResponse(
        granted=granted,
        credits=len(granted) * settings.NFT_HOLDER_BONUS_CREDITS,
        nft_collections=list(user.nft_collections or []),
        unavailable=unavailable,
        totalCredits=new_balance,
    )
