"""Stripe payment integration -- checkout sessions and webhook handling."""

from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import Any

import stripe
import structlog
from fastapi import HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from imagecredit.config import settings
from imagecredit.errors import InvalidSignatureError, UserNotFoundError, ValidationFailedError
from imagecredit.models import User
from imagecredit.services.audit_logger import AuditLogger
from imagecredit.services.credit_service import add_credits, calculate_credits
from imagecredit.services.dedup_cache import TransactionDedupCache
from imagecredit.services.user_service import (
    get_user_by_email,
    get_user_by_id,
    get_user_by_wallet,
)

log = structlog.get_logger()
audit = AuditLogger()

MIN_PURCHASE_USD = Decimal("1")
MAX_PURCHASE_USD = Decimal("1000")

# plan -> (settings attribute holding the Stripe price id, monthly credits)
SUBSCRIPTION_PLANS = {
    "basic": ("STRIPE_BASIC_PRICE_ID", 100),
    "pro": ("STRIPE_PRO_PRICE_ID", 300),
    "premium": ("STRIPE_PREMIUM_PRICE_ID", 1000),
}


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------

class CheckoutRequest(BaseModel):
    amount_usd: Decimal = Field(..., gt=0)


class SubscribeRequest(BaseModel):
    plan: str


class VerifyCheckoutRequest(BaseModel):
    session_id: str = Field(..., min_length=1, max_length=255)
    user_id: str | None = None


class CheckoutResponse(BaseModel):
    checkout_url: str
    session_id: str
    credits: int | None = None


def _is_nft_holder(user: User) -> bool:
    return bool(user.wallet_address and user.nft_collections)


async def _stripe_call(func, *args, **kwargs):
    """Run a blocking stripe-python call off the event loop with our API key."""
    return await asyncio.to_thread(func, *args, api_key=settings.STRIPE_SECRET_KEY, **kwargs)


def _user_metadata(user: User) -> dict[str, str]:
    metadata = {"userId": str(user.user_id)}
    if user.wallet_address:
        metadata["walletAddress"] = user.wallet_address
    if user.email:
        metadata["email"] = user.email
    return metadata


# ---------------------------------------------------------------------------
# Checkout session creation
# ---------------------------------------------------------------------------

async def create_checkout_session(user: User, amount_usd: Decimal) -> CheckoutResponse:
    """Create a one-off credit purchase; credits are fixed now and stored in metadata."""
    if not MIN_PURCHASE_USD <= amount_usd <= MAX_PURCHASE_USD:
        raise ValidationFailedError(
            f"Amount must be between {MIN_PURCHASE_USD} and {MAX_PURCHASE_USD} USD"
        )
    credits = calculate_credits(amount_usd, _is_nft_holder(user))
    metadata = {**_user_metadata(user), "credits": str(credits)}

    session = await _stripe_call(
        stripe.checkout.Session.create,
        line_items=[
            {
                "price_data": {
                    "currency": "usd",
                    "unit_amount": int(amount_usd * 100),
                    "product_data": {"name": f"{credits} image credits"},
                },
                "quantity": 1,
            }
        ],
        mode="payment",
        customer_email=user.email or None,
        metadata=metadata,
        success_url=settings.STRIPE_SUCCESS_URL,
        cancel_url=settings.STRIPE_CANCEL_URL,
    )
    log.info("stripe_checkout_created", user_id=str(user.user_id), session_id=session.id)
    return CheckoutResponse(checkout_url=session.url, session_id=session.id, credits=credits)


async def create_subscription_checkout(user: User, plan: str) -> CheckoutResponse:
    """Create a subscription checkout; monthly credits arrive with each paid invoice."""
    if plan not in SUBSCRIPTION_PLANS:
        raise ValidationFailedError(f"Unknown plan: {plan}")
    price_setting, monthly_credits = SUBSCRIPTION_PLANS[plan]
    price_id = getattr(settings, price_setting)
    if not price_id:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Plan {plan} is not configured",
        )

    subscription_metadata = {
        **_user_metadata(user),
        "planType": plan,
        "monthlyCredits": str(monthly_credits),
    }
    session = await _stripe_call(
        stripe.checkout.Session.create,
        line_items=[{"price": price_id, "quantity": 1}],
        mode="subscription",
        customer_email=user.email or None,
        metadata=_user_metadata(user),
        subscription_data={"metadata": subscription_metadata},
        success_url=settings.STRIPE_SUCCESS_URL,
        cancel_url=settings.STRIPE_CANCEL_URL,
    )
    return CheckoutResponse(checkout_url=session.url, session_id=session.id)


# ---------------------------------------------------------------------------
# User resolution
# ---------------------------------------------------------------------------

async def resolve_user(
    db: AsyncSession,
    *,
    session_user: User | None = None,
    requested_user_id: str | None = None,
    metadata: dict | None = None,
    customer_id: str | None = None,
    customer_email: str | None = None,
) -> User:
    """Find the account a Stripe payment belongs to.

    Priority: authenticated session user, request-supplied user id, event
    metadata (userId, walletAddress, email), then the Stripe customer's email.
    Raises UserNotFoundError when nothing resolves.
    """
    if session_user is not None:
        return session_user

    if requested_user_id:
        user = await get_user_by_id(db, requested_user_id)
        if user is not None:
            return user

    metadata = metadata or {}
    if metadata.get("userId"):
        user = await get_user_by_id(db, metadata["userId"])
        if user is not None:
            return user
    if metadata.get("walletAddress"):
        user = await get_user_by_wallet(db, metadata["walletAddress"])
        if user is not None:
            return user
    if metadata.get("email"):
        user = await get_user_by_email(db, metadata["email"])
        if user is not None:
            return user

    if not customer_email and customer_id:
        customer = await _stripe_call(stripe.Customer.retrieve, customer_id)
        customer_email = customer.get("email")
    if customer_email:
        user = await get_user_by_email(db, customer_email)
        if user is not None:
            return user

    raise UserNotFoundError("No account matches this payment")


# ---------------------------------------------------------------------------
# Crediting
# ---------------------------------------------------------------------------

async def _grant_once(
    db: AsyncSession,
    redis: Any,
    object_id: str,
    credits: int,
    txn_type: str,
    amount_usd: Decimal | None,
    **resolve_kwargs,
) -> dict:
    """Reserve ``stripe:{object_id}``, resolve the user and credit them in one transaction."""
    tx_key = f"stripe:{object_id}"
    dedup = TransactionDedupCache(db, redis)

    reservation = await dedup.reserve(tx_key, source="stripe", tx_id=object_id)
    if reservation.already_claimed:
        log.info("stripe_payment_already_processed", tx_key=tx_key)
        prior = reservation.prior
        return {
            "status": "already_processed",
            "credits": prior.credits if prior else 0,
        }

    try:
        user = await resolve_user(db, **resolve_kwargs)
        new_balance = await add_credits(
            db, user.user_id, credits, txn_type=txn_type, reference=tx_key,
        )
        await dedup.complete(
            reservation, user_id=user.user_id, credits=credits, amount=amount_usd,
            payer=user.email or user.wallet_address,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    await dedup.remember(tx_key, user.user_id, credits)
    audit.log_payment("stripe", tx_key, user.user_id, credits, amount=amount_usd)
    return {"status": "credited", "credits": credits, "totalCredits": new_balance}


def _cents_to_usd(cents: int | None) -> Decimal | None:
    if cents is None:
        return None
    return Decimal(cents) / 100


async def _process_checkout_completed(
    db: AsyncSession,
    redis: Any,
    session_obj: dict,
    session_user: User | None = None,
    requested_user_id: str | None = None,
) -> dict:
    """Fulfil a completed one-off checkout. Subscription checkouts are paid via invoices."""
    if session_obj.get("mode") == "subscription":
        return {"status": "ignored", "reason": "subscription credits arrive with invoices"}
    if session_obj.get("payment_status") not in (None, "paid", "no_payment_required"):
        return {"status": "ignored", "reason": "checkout not paid"}

    metadata = dict(session_obj.get("metadata") or {})
    amount_usd = _cents_to_usd(session_obj.get("amount_total"))
    if metadata.get("credits"):
        credits = int(metadata["credits"])
    elif amount_usd is not None:
        credits = calculate_credits(amount_usd)
    else:
        return {"status": "ignored", "reason": "no credit amount"}

    details = session_obj.get("customer_details") or {}
    return await _grant_once(
        db, redis, session_obj["id"], credits, "stripe_payment", amount_usd,
        session_user=session_user,
        requested_user_id=requested_user_id,
        metadata=metadata,
        customer_id=session_obj.get("customer"),
        customer_email=details.get("email") or session_obj.get("customer_email"),
    )


async def _process_payment_intent_succeeded(db: AsyncSession, redis: Any, intent: dict) -> dict:
    """Credit a directly created PaymentIntent.

    Only intents carrying our ``credits`` metadata are fulfilled here; the
    intents behind Checkout Sessions have none and are credited by
    ``checkout.session.completed``.
    """
    metadata = dict(intent.get("metadata") or {})
    if not metadata.get("credits"):
        return {"status": "ignored", "reason": "payment intent has no credit metadata"}

    return await _grant_once(
        db, redis, intent["id"], int(metadata["credits"]), "stripe_payment",
        _cents_to_usd(intent.get("amount_received") or intent.get("amount")),
        metadata=metadata,
        customer_id=intent.get("customer"),
        customer_email=intent.get("receipt_email"),
    )


def _invoice_subscription_id(invoice: dict) -> str | None:
    subscription_id = invoice.get("subscription")
    if subscription_id:
        return subscription_id if isinstance(subscription_id, str) else subscription_id.get("id")
    # Newer API versions moved the reference under invoice.parent
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return details.get("subscription")


async def _process_invoice_paid(db: AsyncSession, redis: Any, invoice: dict) -> dict:
    """Grant the monthly credits of a paid subscription invoice."""
    subscription_id = _invoice_subscription_id(invoice)
    if not subscription_id:
        return {"status": "ignored", "reason": "invoice has no subscription"}

    subscription = await _stripe_call(stripe.Subscription.retrieve, subscription_id)
    metadata = dict(subscription.get("metadata") or {})

    credits = 0
    if metadata.get("monthlyCredits"):
        credits = int(metadata["monthlyCredits"])
    elif metadata.get("planType") in SUBSCRIPTION_PLANS:
        credits = SUBSCRIPTION_PLANS[metadata["planType"]][1]
    if credits <= 0:
        log.warning("stripe_invoice_without_credits", subscription_id=subscription_id)
        return {"status": "ignored", "reason": "subscription has no credit plan"}

    return await _grant_once(
        db, redis, invoice["id"], credits, "subscription",
        _cents_to_usd(invoice.get("amount_paid")),
        metadata=metadata,
        customer_id=invoice.get("customer"),
        customer_email=invoice.get("customer_email"),
    )


# ---------------------------------------------------------------------------
# Webhook helpers
# ---------------------------------------------------------------------------

def _verify_stripe_event(payload: bytes, sig_header: str) -> dict:
    """Verify the Stripe webhook signature and return the parsed event."""
    if not settings.STRIPE_WEBHOOK_SECRET:
        log.error("stripe_webhook_secret_missing")
        raise InvalidSignatureError("Webhook secret not configured")
    try:
        return stripe.Webhook.construct_event(
            payload,
            sig_header,
            settings.STRIPE_WEBHOOK_SECRET,
        )
    except stripe.SignatureVerificationError:
        log.warning("stripe_webhook_invalid_signature")
        raise InvalidSignatureError("Invalid signature")
    except ValueError:
        raise InvalidSignatureError("Invalid payload")


# ---------------------------------------------------------------------------
# Webhook entry-point
# ---------------------------------------------------------------------------

async def handle_webhook(
    payload: bytes,
    sig_header: str,
    db: AsyncSession,
    redis: Any = None,
) -> dict:
    """Verify a Stripe webhook signature and process the event.

    Idempotent -- redeliveries of an already-credited checkout session,
    invoice or payment intent are acknowledged without crediting again.
    """
    event = _verify_stripe_event(payload, sig_header)
    event_type: str = event["type"]
    obj = event["data"]["object"]
    log.info("stripe_webhook_received", event_id=event["id"], event_type=event_type)

    if event_type == "checkout.session.completed":
        return await _process_checkout_completed(db, redis, obj)
    if event_type == "invoice.payment_succeeded":
        return await _process_invoice_paid(db, redis, obj)
    if event_type == "payment_intent.succeeded":
        return await _process_payment_intent_succeeded(db, redis, obj)

    return {"status": "ignored", "reason": f"unhandled event {event_type}"}


# ---------------------------------------------------------------------------
# Client-side confirmation after redirect
# ---------------------------------------------------------------------------

async def verify_checkout_session(
    db: AsyncSession,
    redis: Any,
    session_id: str,
    session_user: User | None,
    requested_user_id: str | None = None,
) -> dict:
    """Credit a checkout the client has just completed, if the webhook has not yet.

    Shares the ``stripe:{session_id}`` dedup key with the webhook, so
    whichever arrives second is a no-op.
    """
    session_obj = await _stripe_call(stripe.checkout.Session.retrieve, session_id)
    if session_obj.get("status") != "complete":
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Checkout not completed. Status: {session_obj.get('status')}",
        )

    owner_id = (session_obj.get("metadata") or {}).get("userId")
    if session_user is not None and owner_id and owner_id != str(session_user.user_id):
        log.warning(
            "stripe_checkout_owner_mismatch",
            session_id=session_id,
            user_id=str(session_user.user_id),
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="This payment does not belong to your account",
        )

    return await _process_checkout_completed(
        db, redis, session_obj,
        session_user=session_user,
        requested_user_id=requested_user_id,
    )
