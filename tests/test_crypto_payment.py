"""Tests for the crypto claim flow and the /api/v1/payments endpoints."""

from __future__ import annotations

import asyncio
import uuid
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from httpx import ASGITransport, AsyncClient

from imagecredit.integrations.chains import EVM, ChainConfig
from imagecredit.services.crypto_payment_service import (
    ClaimResult,
    VerifyPaymentRequest,
    claim_crypto_payment,
)
from imagecredit.services.credit_service import CreditBalanceResponse
from imagecredit.services.dedup_cache import PriorClaim, Reservation, ReservationLostError
from imagecredit.services.payment_verifier import (
    PaymentVerifier,
    VerificationResult,
    VerificationStatus,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

USDC = "0x2791bca1f2de4661ed88a30c99a7a9449aa84174"
RECEIVER = "0x" + "11" * 20
PAYER = "0x" + "22" * 20
TX_HASH = "0x" + "ab" * 32
TX_KEY = f"polygon:{TX_HASH}"
USER_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")

NETWORKS = {
    "polygon": ChainConfig(
        name="polygon",
        kind=EVM,
        rpc_url="https://polygon.example.com",
        receiving_address=RECEIVER,
        token_address=USDC,
        required_confirmations=64,
    ),
}

MODULE = "imagecredit.services.crypto_payment_service"


class FakeDedupStore:
    """In-memory stand-in for payment_records with unique-key semantics."""

    def __init__(self):
        self.records: dict[str, dict] = {}

    def cache_for(self, db, redis=None):
        return FakeDedup(self)


class FakeDedup:
    def __init__(self, store: FakeDedupStore):
        self.store = store

    async def reserve(self, tx_key, source, chain=None, tx_id=None):
        prior = await self.get_prior(tx_key)
        if prior is not None:
            return Reservation(tx_key=tx_key, already_claimed=True, prior=prior)
        payment_id = uuid.uuid4()
        self.store.records[tx_key] = {"status": "pending", "payment_id": payment_id}
        return Reservation(tx_key=tx_key, already_claimed=False, payment_id=payment_id)

    def _held(self, reservation):
        record = self.store.records.get(reservation.tx_key, {})
        return record.get("status") == "pending" and record.get("payment_id") == reservation.payment_id

    async def release(self, reservation):
        if self._held(reservation):
            del self.store.records[reservation.tx_key]

    async def complete(self, reservation, user_id, credits, payer=None, amount=None):
        if not self._held(reservation):
            raise ReservationLostError(reservation.tx_key)
        self.store.records[reservation.tx_key] = {
            "status": "completed", "user_id": user_id, "credits": credits,
        }

    async def get_prior(self, tx_key):
        record = self.store.records.get(tx_key)
        if record is None:
            return None
        return PriorClaim(
            tx_key=tx_key,
            user_id=record.get("user_id"),
            credits=record.get("credits"),
            status=record["status"],
        )

    async def remember(self, tx_key, user_id, credits):
        pass


def _request(amount="10") -> VerifyPaymentRequest:
    return VerifyPaymentRequest(chain="polygon", txId=TX_HASH, wallet=PAYER, amount=amount)


def _verifier(result: VerificationResult) -> PaymentVerifier:
    verifier = PaymentVerifier(NETWORKS, backoff_seconds=0)

    async def _verify(claim):
        # Yield so concurrent claims interleave across the RPC round-trip
        await asyncio.sleep(0)
        return result

    verifier.verify_claim = AsyncMock(side_effect=_verify)
    return verifier


VERIFIED = VerificationResult(
    VerificationStatus.VERIFIED, "Payment verified", Decimal("10"), PAYER,
)


@pytest.fixture
def store():
    store = FakeDedupStore()
    with patch(f"{MODULE}.TransactionDedupCache", side_effect=store.cache_for):
        yield store


@pytest.fixture
def ledger():
    with (
        patch(f"{MODULE}.get_or_create_wallet_user", AsyncMock(return_value=USER_ID)) as get_user,
        patch(f"{MODULE}.add_credits", AsyncMock(return_value=50)) as add_credits,
        patch(
            f"{MODULE}.get_balance",
            AsyncMock(
                return_value=CreditBalanceResponse(
                    user_id=USER_ID,
                    credit_balance=50,
                    total_credits_earned=50,
                    total_credits_spent=0,
                )
            ),
        ),
    ):
        yield MagicMock(get_user=get_user, add_credits=add_credits)


# ---------------------------------------------------------------------------
# Claim flow
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_verified_payment_is_credited(store, ledger):
    db = AsyncMock()

    result = await claim_crypto_payment(db, None, _verifier(VERIFIED), _request())

    assert result.success
    assert result.credits == 50
    assert result.new_balance == 50
    ledger.get_user.assert_awaited_once_with(db, PAYER)
    ledger.add_credits.assert_awaited_once_with(
        db, USER_ID, 50, txn_type="crypto_payment", reference=TX_KEY,
    )
    assert store.records[TX_KEY]["status"] == "completed"


@pytest.mark.asyncio
async def test_second_submission_is_already_claimed(store, ledger):
    db = AsyncMock()
    verifier = _verifier(VERIFIED)

    first = await claim_crypto_payment(db, None, verifier, _request())
    second = await claim_crypto_payment(db, None, verifier, _request())

    assert first.success and not first.already_claimed
    assert second.success
    assert second.already_claimed
    assert second.status == "already_claimed"
    assert second.credits == 50
    assert second.new_balance == 50
    assert ledger.add_credits.await_count == 1
    # The replay never reaches the chain
    assert verifier.verify_claim.await_count == 1


@pytest.mark.asyncio
async def test_concurrent_submissions_credit_once(store, ledger):
    db = AsyncMock()
    verifier = _verifier(VERIFIED)

    results = await asyncio.gather(
        *(claim_crypto_payment(db, None, verifier, _request()) for _ in range(5))
    )

    credited = [r for r in results if not r.already_claimed]
    assert len(credited) == 1
    assert credited[0].credits == 50
    assert all(r.already_claimed for r in results if r is not credited[0])
    assert ledger.add_credits.await_count == 1


@pytest.mark.asyncio
async def test_rejected_claim_releases_reservation(store, ledger):
    short = VerificationResult(
        VerificationStatus.INSUFFICIENT_AMOUNT,
        "Transaction amount too low: expected 5, got 3.000000",
        Decimal("3"),
        PAYER,
    )

    result = await claim_crypto_payment(AsyncMock(), None, _verifier(short), _request("5"))

    assert not result.success
    assert result.status == "insufficient_amount"
    assert result.credits == 0
    assert TX_KEY not in store.records
    ledger.add_credits.assert_not_awaited()


@pytest.mark.asyncio
async def test_pending_transaction_can_be_claimed_later(store, ledger):
    pending = VerificationResult(VerificationStatus.NOT_FOUND, "Waiting for confirmations (3/64)")

    early = await claim_crypto_payment(AsyncMock(), None, _verifier(pending), _request())
    later = await claim_crypto_payment(AsyncMock(), None, _verifier(VERIFIED), _request())

    assert early.retryable and not early.success
    assert later.success and later.credits == 50


@pytest.mark.asyncio
async def test_wrong_payer_is_audited(store, ledger):
    stolen = VerificationResult(
        VerificationStatus.WRONG_PAYER,
        "Transaction was not sent from the claiming wallet",
        payer="0x" + "33" * 20,
    )

    with patch(f"{MODULE}.audit") as mock_audit:
        result = await claim_crypto_payment(AsyncMock(), None, _verifier(stolen), _request())

    assert result.status == "wrong_payer"
    mock_audit.log_suspicious_claim.assert_called_once_with(
        TX_KEY, PAYER, "wrong_payer", "0x" + "33" * 20,
    )


@pytest.mark.asyncio
async def test_short_payment_is_audited(store, ledger):
    short = VerificationResult(
        VerificationStatus.INSUFFICIENT_AMOUNT,
        "Transaction amount too low: expected 10, got 1.000000",
        Decimal("1"),
        PAYER,
    )

    with patch(f"{MODULE}.audit") as mock_audit:
        result = await claim_crypto_payment(AsyncMock(), None, _verifier(short), _request())

    assert result.status == "insufficient_amount"
    mock_audit.log_suspicious_claim.assert_called_once_with(
        TX_KEY, PAYER, "insufficient_amount", PAYER,
    )


@pytest.mark.asyncio
async def test_reservation_taken_over_during_verification_is_not_credited(store, ledger):
    other_user = uuid.uuid4()
    verifier = PaymentVerifier(NETWORKS, backoff_seconds=0)

    async def _slow_verify(claim):
        # Our reservation went stale; another request took it over and finished
        store.records[TX_KEY] = {
            "status": "completed", "payment_id": uuid.uuid4(),
            "user_id": other_user, "credits": 50,
        }
        return VERIFIED

    verifier.verify_claim = AsyncMock(side_effect=_slow_verify)
    db = AsyncMock()

    result = await claim_crypto_payment(db, None, verifier, _request())

    db.rollback.assert_awaited_once()
    assert result.already_claimed
    assert result.user_id == other_user
    assert store.records[TX_KEY]["user_id"] == other_user


@pytest.mark.asyncio
async def test_verifier_crash_releases_reservation(store, ledger):
    verifier = PaymentVerifier(NETWORKS, backoff_seconds=0)
    verifier.verify_claim = AsyncMock(side_effect=RuntimeError("bug"))

    with pytest.raises(RuntimeError):
        await claim_crypto_payment(AsyncMock(), None, verifier, _request())

    assert TX_KEY not in store.records


@pytest.mark.asyncio
async def test_ledger_failure_rolls_back_and_releases(store, ledger):
    ledger.add_credits.side_effect = RuntimeError("db gone")
    db = AsyncMock()

    with pytest.raises(RuntimeError):
        await claim_crypto_payment(db, None, _verifier(VERIFIED), _request())

    db.rollback.assert_awaited()
    assert TX_KEY not in store.records


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


async def _post_verify(claim_result: ClaimResult | None = None, side_effect=None, body=None):
    from imagecredit.api.dependencies import get_redis, get_verifier
    from imagecredit.database import get_db
    from imagecredit.main import app

    async def override_get_db():
        yield AsyncMock()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = lambda: None
    app.dependency_overrides[get_verifier] = lambda: PaymentVerifier(NETWORKS)

    mock_claim = AsyncMock(return_value=claim_result, side_effect=side_effect)
    try:
        with patch("imagecredit.api.payments.claim_crypto_payment", mock_claim):
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                return await client.post(
                    "/api/v1/payments/verify",
                    json=body or {"chain": "polygon", "txId": TX_HASH, "wallet": PAYER, "amount": "10"},
                )
    finally:
        app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_verify_endpoint_credited():
    response = await _post_verify(
        ClaimResult(status="verified", reason="Payment verified", tx_id=TX_HASH,
                    credits=50, new_balance=50, user_id=USER_ID)
    )

    assert response.status_code == 200, response.text
    data = response.json()
    assert data["success"] is True
    assert data["credits"] == 50
    assert data["totalCredits"] == 50


@pytest.mark.asyncio
async def test_verify_endpoint_already_claimed():
    response = await _post_verify(
        ClaimResult(status="already_claimed", reason="Transaction already processed",
                    tx_id=TX_HASH, already_claimed=True, credits=50, new_balance=50)
    )

    assert response.status_code == 200
    assert response.json()["alreadyClaimed"] is True


@pytest.mark.asyncio
async def test_verify_endpoint_pending_is_202():
    response = await _post_verify(
        ClaimResult(status="not_found", reason="Waiting for confirmations (3/64)",
                    tx_id=TX_HASH, retryable=True)
    )

    assert response.status_code == 202
    assert response.json()["retryable"] is True


@pytest.mark.asyncio
async def test_verify_endpoint_rpc_unavailable_is_503():
    response = await _post_verify(
        ClaimResult(status="rpc_unavailable", reason="polygon node unavailable",
                    tx_id=TX_HASH, retryable=True)
    )

    assert response.status_code == 503
    assert "Retry-After" in response.headers


@pytest.mark.asyncio
async def test_verify_endpoint_rejected_is_422():
    response = await _post_verify(
        ClaimResult(status="insufficient_amount",
                    reason="Transaction amount too low: expected 5, got 3.000000",
                    tx_id=TX_HASH)
    )

    assert response.status_code == 422
    assert "too low" in response.json()["reason"]


@pytest.mark.asyncio
async def test_verify_endpoint_validation_error_is_400():
    from imagecredit.errors import ValidationFailedError

    response = await _post_verify(side_effect=ValidationFailedError("Unsupported chain: dogecoin"))

    assert response.status_code == 400
    assert "dogecoin" in response.json()["detail"]


@pytest.mark.asyncio
async def test_payment_address_endpoint():
    from imagecredit.api.dependencies import get_verifier
    from imagecredit.main import app

    app.dependency_overrides[get_verifier] = lambda: PaymentVerifier(NETWORKS)
    try:
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            ok = await client.post("/api/v1/payments/address", json={"chain": "Polygon"})
            unknown = await client.post("/api/v1/payments/address", json={"chain": "dogecoin"})
    finally:
        app.dependency_overrides.clear()

    assert ok.status_code == 200
    assert ok.json()["address"] == RECEIVER
    assert ok.json()["token"] == USDC
    assert unknown.status_code == 400
