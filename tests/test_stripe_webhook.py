"""Tests for Stripe webhook fulfilment, user resolution and checkout verification."""

from __future__ import annotations

import uuid
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import HTTPException
from httpx import ASGITransport, AsyncClient

from imagecredit.config import settings
from imagecredit.services.dedup_cache import PriorClaim, Reservation, ReservationLostError
from imagecredit.services.payment_service import (
    handle_webhook,
    resolve_user,
    verify_checkout_session,
)

MODULE = "imagecredit.services.payment_service"
USER_ID = uuid.UUID("00000000-0000-0000-0000-0000000000aa")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeDedupStore:
    def __init__(self):
        self.records: dict[str, dict] = {}

    def cache_for(self, db, redis=None):
        return FakeDedup(self)


class FakeDedup:
    def __init__(self, store: FakeDedupStore):
        self.store = store

    async def reserve(self, tx_key, source, chain=None, tx_id=None):
        record = self.store.records.get(tx_key)
        if record is not None:
            prior = PriorClaim(
                tx_key=tx_key,
                user_id=record.get("user_id"),
                credits=record.get("credits"),
                status=record["status"],
            )
            return Reservation(tx_key=tx_key, already_claimed=True, prior=prior)
        self.store.records[tx_key] = {"status": "pending"}
        return Reservation(tx_key=tx_key, already_claimed=False)

    async def complete(self, reservation, user_id, credits, payer=None, amount=None):
        self.store.records[reservation.tx_key] = {
            "status": "completed", "user_id": user_id, "credits": credits, "amount": amount,
        }

    async def remember(self, tx_key, user_id, credits):
        pass


def _make_fake_user(user_id=USER_ID, email="buyer@example.com"):
    user = MagicMock()
    user.user_id = user_id
    user.email = email
    user.wallet_address = None
    user.nft_collections = []
    return user


def _checkout_event(session_id="cs_test_1", credits="110", **overrides):
    session = {
        "id": session_id,
        "object": "checkout.session",
        "mode": "payment",
        "payment_status": "paid",
        "status": "complete",
        "amount_total": 2000,
        "customer": None,
        "customer_details": {"email": "buyer@example.com"},
        "metadata": {"userId": str(USER_ID), "credits": credits},
    }
    session.update(overrides)
    return {
        "id": "evt_1",
        "type": "checkout.session.completed",
        "data": {"object": session},
    }


@pytest.fixture
def store():
    store = FakeDedupStore()
    with patch(f"{MODULE}.TransactionDedupCache", side_effect=store.cache_for):
        yield store


@pytest.fixture
def fake_user():
    user = _make_fake_user()
    with patch(f"{MODULE}.get_user_by_id", AsyncMock(return_value=user)):
        yield user


@pytest.fixture
def credit_mock():
    with patch(f"{MODULE}.add_credits", AsyncMock(return_value=110)) as mock:
        yield mock


# ---------------------------------------------------------------------------
# Signature verification
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_invalid_signature_grants_nothing(store, credit_mock):
    db = AsyncMock()

    with patch.object(settings, "STRIPE_WEBHOOK_SECRET", "whsec_test"):
        with pytest.raises(HTTPException) as exc_info:
            await handle_webhook(b'{"id": "evt_1"}', "t=1,v1=bogus", db)

    assert exc_info.value.status_code == 400
    credit_mock.assert_not_awaited()
    assert store.records == {}


@pytest.mark.asyncio
async def test_missing_webhook_secret_is_rejected(credit_mock):
    with patch.object(settings, "STRIPE_WEBHOOK_SECRET", ""):
        with pytest.raises(HTTPException) as exc_info:
            await handle_webhook(b"{}", "t=1,v1=abc", AsyncMock())

    assert exc_info.value.status_code == 400
    credit_mock.assert_not_awaited()


# ---------------------------------------------------------------------------
# checkout.session.completed
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_checkout_completed_credits_once(store, fake_user, credit_mock):
    """A redelivered event is acknowledged without a second grant."""
    db = AsyncMock()

    with patch(f"{MODULE}._verify_stripe_event", return_value=_checkout_event()):
        first = await handle_webhook(b"{}", "sig", db)
        second = await handle_webhook(b"{}", "sig", db)

    assert first == {"status": "credited", "credits": 110, "totalCredits": 110}
    assert second == {"status": "already_processed", "credits": 110}
    credit_mock.assert_awaited_once()
    args, kwargs = credit_mock.await_args
    assert args[1] == USER_ID
    assert args[2] == 110
    assert kwargs["txn_type"] == "stripe_payment"
    assert kwargs["reference"] == "stripe:cs_test_1"
    assert store.records["stripe:cs_test_1"]["amount"] == Decimal("20")
    db.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_checkout_without_credit_metadata_uses_pricing(store, fake_user, credit_mock):
    event = _checkout_event()
    del event["data"]["object"]["metadata"]["credits"]

    with patch(f"{MODULE}._verify_stripe_event", return_value=event):
        result = await handle_webhook(b"{}", "sig", AsyncMock())

    assert result["credits"] == 110  # $20 at the 1.1 tier
    assert credit_mock.await_args.args[2] == 110


@pytest.mark.asyncio
async def test_unpaid_checkout_is_ignored(store, credit_mock):
    event = _checkout_event(payment_status="unpaid")

    with patch(f"{MODULE}._verify_stripe_event", return_value=event):
        result = await handle_webhook(b"{}", "sig", AsyncMock())

    assert result["status"] == "ignored"
    credit_mock.assert_not_awaited()
    assert store.records == {}


@pytest.mark.asyncio
async def test_subscription_checkout_is_ignored(store, credit_mock):
    event = _checkout_event(mode="subscription")

    with patch(f"{MODULE}._verify_stripe_event", return_value=event):
        result = await handle_webhook(b"{}", "sig", AsyncMock())

    assert result["status"] == "ignored"
    credit_mock.assert_not_awaited()


@pytest.mark.asyncio
async def test_unresolvable_user_rolls_back(store, credit_mock):
    """No matching account: 404, nothing credited, Stripe will redeliver."""
    db = AsyncMock()
    event = _checkout_event(customer_details={})
    event["data"]["object"]["metadata"] = {"credits": "110"}

    with patch(f"{MODULE}._verify_stripe_event", return_value=event):
        with pytest.raises(HTTPException) as exc_info:
            await handle_webhook(b"{}", "sig", db)

    assert exc_info.value.status_code == 404
    credit_mock.assert_not_awaited()
    db.rollback.assert_awaited_once()
    db.commit.assert_not_awaited()


@pytest.mark.asyncio
async def test_lost_reservation_rolls_back_credit(store, fake_user, credit_mock):
    db = AsyncMock()

    with (
        patch(f"{MODULE}._verify_stripe_event", return_value=_checkout_event()),
        patch.object(FakeDedup, "complete", AsyncMock(side_effect=ReservationLostError("stripe:cs_test_1"))),
    ):
        with pytest.raises(ReservationLostError):
            await handle_webhook(b"{}", "sig", db)

    credit_mock.assert_awaited_once()
    db.rollback.assert_awaited_once()
    db.commit.assert_not_awaited()


@pytest.mark.asyncio
async def test_unhandled_event_type_is_ignored(credit_mock):
    event = {"id": "evt_2", "type": "customer.created", "data": {"object": {}}}

    with patch(f"{MODULE}._verify_stripe_event", return_value=event):
        result = await handle_webhook(b"{}", "sig", AsyncMock())

    assert result["status"] == "ignored"
    credit_mock.assert_not_awaited()


# ---------------------------------------------------------------------------
# invoice.payment_succeeded
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_subscription_invoice_grants_monthly_credits(store, fake_user, credit_mock):
    invoice = {
        "id": "in_test_1",
        "customer": "cus_1",
        "customer_email": "buyer@example.com",
        "amount_paid": 2900,
        "parent": {"subscription_details": {"subscription": "sub_1"}},
    }
    event = {"id": "evt_3", "type": "invoice.payment_succeeded", "data": {"object": invoice}}
    subscription = {"id": "sub_1", "metadata": {"userId": str(USER_ID), "planType": "pro"}}

    with patch(f"{MODULE}._verify_stripe_event", return_value=event), patch(
        f"{MODULE}._stripe_call", AsyncMock(return_value=subscription),
    ) as stripe_call:
        result = await handle_webhook(b"{}", "sig", AsyncMock())

    assert result["status"] == "credited"
    assert result["credits"] == 300
    assert stripe_call.await_args.args[1] == "sub_1"
    assert credit_mock.await_args.kwargs["txn_type"] == "subscription"
    assert credit_mock.await_args.kwargs["reference"] == "stripe:in_test_1"


@pytest.mark.asyncio
async def test_invoice_without_subscription_is_ignored(credit_mock):
    event = {
        "id": "evt_4",
        "type": "invoice.payment_succeeded",
        "data": {"object": {"id": "in_test_2", "amount_paid": 500}},
    }

    with patch(f"{MODULE}._verify_stripe_event", return_value=event):
        result = await handle_webhook(b"{}", "sig", AsyncMock())

    assert result["status"] == "ignored"
    credit_mock.assert_not_awaited()


@pytest.mark.asyncio
async def test_payment_intent_with_credit_metadata(store, fake_user, credit_mock):
    intent = {
        "id": "pi_test_1",
        "amount_received": 1000,
        "metadata": {"userId": str(USER_ID), "credits": "50"},
    }
    event = {"id": "evt_5", "type": "payment_intent.succeeded", "data": {"object": intent}}

    with patch(f"{MODULE}._verify_stripe_event", return_value=event):
        result = await handle_webhook(b"{}", "sig", AsyncMock())

    assert result["status"] == "credited"
    assert credit_mock.await_args.args[2] == 50
    assert store.records["stripe:pi_test_1"]["amount"] == Decimal("10")


@pytest.mark.asyncio
async def test_checkout_payment_intent_is_left_to_the_session(store, credit_mock):
    """Intents behind a Checkout Session carry no credit metadata."""
    event = {
        "id": "evt_6",
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": "pi_test_2", "amount_received": 2000, "metadata": {}}},
    }

    with patch(f"{MODULE}._verify_stripe_event", return_value=event):
        result = await handle_webhook(b"{}", "sig", AsyncMock())

    assert result["status"] == "ignored"
    credit_mock.assert_not_awaited()


# ---------------------------------------------------------------------------
# User resolution order
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_resolve_user_prefers_session_user():
    session_user = _make_fake_user(user_id=uuid.uuid4())

    with patch(f"{MODULE}.get_user_by_id", AsyncMock()) as by_id:
        user = await resolve_user(
            AsyncMock(), session_user=session_user, metadata={"userId": str(USER_ID)},
        )

    assert user is session_user
    by_id.assert_not_awaited()


@pytest.mark.asyncio
async def test_resolve_user_falls_back_through_metadata():
    """A stale userId falls through to the wallet, then the email."""
    by_email_user = _make_fake_user(user_id=uuid.uuid4())

    with patch(f"{MODULE}.get_user_by_id", AsyncMock(return_value=None)), patch(
        f"{MODULE}.get_user_by_wallet", AsyncMock(return_value=None),
    ) as by_wallet, patch(
        f"{MODULE}.get_user_by_email", AsyncMock(return_value=by_email_user),
    ) as by_email:
        user = await resolve_user(
            AsyncMock(),
            metadata={
                "userId": str(uuid.uuid4()),
                "walletAddress": "0x" + "33" * 20,
                "email": "buyer@example.com",
            },
        )

    assert user is by_email_user
    by_wallet.assert_awaited_once()
    by_email.assert_awaited_once_with(by_wallet.await_args.args[0], "buyer@example.com")


@pytest.mark.asyncio
async def test_resolve_user_looks_up_stripe_customer():
    customer_user = _make_fake_user(email="customer@example.com")

    with patch(
        f"{MODULE}._stripe_call", AsyncMock(return_value={"email": "customer@example.com"}),
    ) as stripe_call, patch(
        f"{MODULE}.get_user_by_email", AsyncMock(return_value=customer_user),
    ) as by_email:
        user = await resolve_user(AsyncMock(), metadata={}, customer_id="cus_9")

    assert user is customer_user
    assert stripe_call.await_args.args[1] == "cus_9"
    assert by_email.await_args.args[1] == "customer@example.com"


@pytest.mark.asyncio
async def test_resolve_user_raises_when_nothing_matches():
    with pytest.raises(HTTPException) as exc_info:
        await resolve_user(AsyncMock(), metadata={})

    assert exc_info.value.status_code == 404


# ---------------------------------------------------------------------------
# Client-side checkout verification
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_verify_checkout_rejects_other_users_session(store, credit_mock):
    session = _checkout_event()["data"]["object"]
    intruder = _make_fake_user(user_id=uuid.uuid4())

    with patch(f"{MODULE}._stripe_call", AsyncMock(return_value=session)):
        with pytest.raises(HTTPException) as exc_info:
            await verify_checkout_session(AsyncMock(), None, "cs_test_1", intruder)

    assert exc_info.value.status_code == 403
    credit_mock.assert_not_awaited()


@pytest.mark.asyncio
async def test_verify_checkout_incomplete_session(store, credit_mock):
    session = _checkout_event(status="open")["data"]["object"]

    with patch(f"{MODULE}._stripe_call", AsyncMock(return_value=session)):
        with pytest.raises(HTTPException) as exc_info:
            await verify_checkout_session(AsyncMock(), None, "cs_test_1", None)

    assert exc_info.value.status_code == 409
    credit_mock.assert_not_awaited()


@pytest.mark.asyncio
async def test_verify_checkout_after_webhook_is_noop(store, fake_user, credit_mock):
    """Webhook and redirect share one dedup key: only one of them credits."""
    event = _checkout_event()

    with patch(f"{MODULE}._verify_stripe_event", return_value=event):
        await handle_webhook(b"{}", "sig", AsyncMock())

    with patch(f"{MODULE}._stripe_call", AsyncMock(return_value=event["data"]["object"])):
        result = await verify_checkout_session(AsyncMock(), None, "cs_test_1", fake_user)

    assert result["status"] == "already_processed"
    credit_mock.assert_awaited_once()


# ---------------------------------------------------------------------------
# Endpoint
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_webhook_endpoint_rejects_bad_signature():
    from imagecredit.api.dependencies import get_redis
    from imagecredit.database import get_db
    from imagecredit.main import app

    async def override_get_db():
        yield AsyncMock()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = lambda: None

    try:
        with patch.object(settings, "STRIPE_WEBHOOK_SECRET", "whsec_test"):
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                resp = await client.post(
                    "/api/v1/webhooks/stripe",
                    content=b'{"id": "evt_1"}',
                    headers={"stripe-signature": "t=1,v1=bogus"},
                )

        assert resp.status_code == 400
    finally:
        app.dependency_overrides.clear()
