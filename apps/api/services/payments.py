"""Credit package checkout and Stripe webhook handling."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlparse

import stripe
from sqlalchemy import delete, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_ledger import ENTRY_PURCHASE_CREDIT
from models.payment_event import ProcessedPaymentEvent
from services.credits import grant_credits
from services.errors import CheckoutCreationFailed, SignatureInvalid
from services.profiles import get_or_create_profile, profile_changes

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
ASYNC_PAYMENT_SUCCEEDED = "checkout.session.async_payment_succeeded"
GRANTING_EVENTS = {CHECKOUT_COMPLETED, ASYNC_PAYMENT_SUCCEEDED}
SETTLED_PAYMENT_STATUSES = {None, "paid", "no_payment_required"}

# (minimum amount_total in cents, credits) for sessions that lost their metadata.
PRICE_TIERS: Tuple[Tuple[int, int], ...] = ((3900, 200), (1400, 50), (0, 10))


@dataclass(frozen=True)
class CreditPackage:
    id: str
    name: str
    credits: int
    price_cents: int
    display_price: str
    price_setting: str

    @property
    def stripe_price_id(self) -> str:
        return str(getattr(settings, self.price_setting, "") or "").strip()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "credits": self.credits,
            "price_cents": self.price_cents,
            "display_price": self.display_price,
        }


CREDIT_PACKAGES: Dict[str, CreditPackage] = {
    "starter": CreditPackage("starter", "Starter", 10, 499, "$4.99", "STRIPE_PRICE_STARTER"),
    "growth": CreditPackage("growth", "Growth", 50, 1499, "$14.99", "STRIPE_PRICE_GROWTH"),
    "agency": CreditPackage("agency", "Agency", 200, 3999, "$39.99", "STRIPE_PRICE_AGENCY"),
}


@dataclass(frozen=True)
class WebhookOutcome:
    status: str
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    user_id: Optional[str] = None
    credits: int = 0


def get_package(package_id: Optional[str]) -> Optional[CreditPackage]:
    return CREDIT_PACKAGES.get(str(package_id or "").strip().lower())


def credits_for_amount(amount_total: Any) -> int:
    try:
        amount = int(amount_total or 0)
    except (TypeError, ValueError):
        amount = 0
    for minimum, credits in PRICE_TIERS:
        if amount >= minimum:
            return credits
    return PRICE_TIERS[-1][1]


def _origin(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}".rstrip("/")


def _resolve_return_url(return_url: Optional[str]) -> str:
    url = (return_url or settings.FRONTEND_URL or "").strip().rstrip("/")
    parsed = urlparse(url)
    allowed = {origin.rstrip("/") for origin in settings.CORS_ORIGINS}
    allowed.add(_origin(settings.FRONTEND_URL))
    if parsed.scheme not in ("http", "https") or not parsed.netloc or _origin(url) not in allowed:
        raise CheckoutCreationFailed("Return URL is not allowed.", status_code=400)
    return url


def _line_item(package: CreditPackage) -> Dict[str, Any]:
    if package.stripe_price_id:
        return {"price": package.stripe_price_id, "quantity": 1}
    return {
        "price_data": {
            "currency": "usd",
            "product_data": {"name": f"{package.name} credit pack", "description": f"{package.credits} credits"},
            "unit_amount": package.price_cents,
        },
        "quantity": 1,
    }


async def create_checkout_session(
    identity_id: str,
    package_id: str,
    *,
    return_url: Optional[str] = None,
    email: Optional[str] = None,
) -> str:
    """Create a hosted checkout session for a credit package and return its redirect URL."""
    package = get_package(package_id)
    if package is None:
        raise CheckoutCreationFailed(f"Unknown credit package: {package_id}", status_code=400)
    if not settings.BILLING_ENABLED:
        raise CheckoutCreationFailed("Billing is disabled.", status_code=503)
    if not settings.STRIPE_SECRET_KEY:
        raise CheckoutCreationFailed("Stripe is not configured.", status_code=503)

    base_url = _resolve_return_url(return_url)
    separator = "&" if "?" in base_url else "?"
    params: Dict[str, Any] = {
        "mode": "payment",
        "payment_method_types": ["card"],
        "line_items": [_line_item(package)],
        "success_url": f"{base_url}{separator}session_id={{CHECKOUT_SESSION_ID}}&payment_success=true",
        "cancel_url": base_url,
        "client_reference_id": identity_id,
        "metadata": {
            "userId": identity_id,
            "credits": str(package.credits),
            "packageId": package.id,
        },
    }
    if email:
        params["customer_email"] = email

    try:
        session = await asyncio.to_thread(
            stripe.checkout.Session.create,
            api_key=settings.STRIPE_SECRET_KEY,
            **params,
        )
    except stripe.StripeError as exc:
        logger.error("Stripe checkout creation failed for %s (%s): %s", identity_id, package.id, exc)
        raise CheckoutCreationFailed() from exc

    checkout_url = getattr(session, "url", None)
    if not checkout_url:
        raise CheckoutCreationFailed("No checkout URL returned.")
    logger.info("Created checkout session %s for user %s, package %s", getattr(session, "id", "?"), identity_id, package.id)
    return checkout_url


def verify_webhook_payload(raw_payload: bytes, signature_header: Optional[str]) -> Dict[str, Any]:
    """Verify the signature over the raw body, then parse it."""
    secret = (settings.STRIPE_WEBHOOK_SECRET or "").strip()
    if not secret:
        logger.error("Rejecting webhook: STRIPE_WEBHOOK_SECRET is not configured")
        raise SignatureInvalid()
    if not signature_header:
        raise SignatureInvalid("Missing Stripe-Signature header.")

    try:
        payload_text = raw_payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise SignatureInvalid("Webhook payload is not valid UTF-8.") from exc

    try:
        stripe.WebhookSignature.verify_header(
            payload_text,
            signature_header,
            secret,
            int(settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS),
        )
    except stripe.SignatureVerificationError as exc:
        logger.warning("Webhook signature verification failed: %s", exc)
        raise SignatureInvalid() from exc

    try:
        event = json.loads(payload_text)
    except ValueError as exc:
        raise SignatureInvalid("Invalid webhook payload.") from exc
    if not isinstance(event, dict):
        raise SignatureInvalid("Invalid webhook payload.")
    return event


def _credits_from_session(session: Dict[str, Any], metadata: Dict[str, Any]) -> int:
    try:
        credits = int(metadata.get("credits") or 0)
    except (TypeError, ValueError):
        credits = 0
    if credits > 0:
        return credits
    credits = credits_for_amount(session.get("amount_total"))
    logger.warning(
        "Checkout %s has no usable credits metadata; derived %s credits from amount_total=%s",
        session.get("id"),
        credits,
        session.get("amount_total"),
    )
    return credits


async def _already_processed(db: AsyncSession, event_id: str, checkout_session_id: Optional[str]) -> bool:
    conditions = [ProcessedPaymentEvent.event_id == event_id]
    if checkout_session_id:
        conditions.append(ProcessedPaymentEvent.checkout_session_id == checkout_session_id)
    result = await db.execute(select(ProcessedPaymentEvent.event_id).where(or_(*conditions)).limit(1))
    return result.scalar_one_or_none() is not None


async def handle_webhook(
    raw_payload: bytes,
    signature_header: Optional[str],
    db: AsyncSession,
) -> WebhookOutcome:
    """
    Verify a Stripe event and translate a completed checkout into a credit grant.

    The processed-event row and the credit are committed together, so a replayed
    event (same event id or same checkout session) is skipped and a failed credit
    leaves no record behind for the provider's retry to trip over.
    """
    event = verify_webhook_payload(raw_payload, signature_header)
    event_type = str(event.get("type") or "")
    event_id = str(event.get("id") or "")

    if event_type not in GRANTING_EVENTS:
        logger.info("Ignoring webhook event %s (%s)", event_id, event_type)
        return WebhookOutcome(status="ignored", event_id=event_id, event_type=event_type)

    session = (event.get("data") or {}).get("object") or {}
    if event_type == CHECKOUT_COMPLETED and session.get("payment_status") not in SETTLED_PAYMENT_STATUSES:
        logger.info("Checkout %s completed with payment pending; waiting for async confirmation", session.get("id"))
        return WebhookOutcome(status="ignored", event_id=event_id, event_type=event_type)

    metadata = session.get("metadata") or {}
    user_id = metadata.get("userId") or metadata.get("user_id") or session.get("client_reference_id")
    checkout_session_id = session.get("id")
    if not user_id:
        logger.error("Checkout %s carries no user reference; cannot credit", checkout_session_id)
        return WebhookOutcome(status="ignored", event_id=event_id, event_type=event_type)
    if not event_id and not checkout_session_id:
        logger.error("Webhook event without event or session id; cannot process idempotently")
        return WebhookOutcome(status="ignored", event_type=event_type, user_id=user_id)
    event_id = event_id or f"session:{checkout_session_id}"

    if await _already_processed(db, event_id, checkout_session_id):
        logger.info("Skipping already processed payment event %s (session %s)", event_id, checkout_session_id)
        return WebhookOutcome(status="duplicate", event_id=event_id, event_type=event_type, user_id=user_id)

    credits = _credits_from_session(session, metadata)
    customer_details = session.get("customer_details") or {}
    await get_or_create_profile(db, user_id, customer_details.get("email") or session.get("customer_email"))

    try:
        db.add(
            ProcessedPaymentEvent(
                event_id=event_id,
                checkout_session_id=checkout_session_id,
                user_id=user_id,
                event_type=event_type,
                credits_granted=credits,
                amount_total=session.get("amount_total"),
            )
        )
        await db.flush()
        snapshot = await grant_credits(
            user_id,
            db,
            amount=credits,
            entry_type=ENTRY_PURCHASE_CREDIT,
            reason=f"Credit purchase ({metadata.get('packageId') or 'stripe'})",
            reference_type="stripe_event",
            reference_id=event_id,
            billing_provider="stripe",
            billing_reference=checkout_session_id or event_id,
            commit=False,
        )
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.info("Payment event %s was processed concurrently; skipping", event_id)
        return WebhookOutcome(status="duplicate", event_id=event_id, event_type=event_type, user_id=user_id)
    except Exception:
        await db.rollback()
        raise

    profile_changes.publish(snapshot)
    logger.info("Successfully added %s credits to user %s (event %s)", credits, user_id, event_id)
    return WebhookOutcome(status="credited", event_id=event_id, event_type=event_type, user_id=user_id, credits=credits)


async def prune_processed_events(db: AsyncSession, older_than_days: Optional[int] = None) -> int:
    """Drop idempotency records older than the retention window."""
    days = max(int(older_than_days if older_than_days is not None else settings.PAYMENT_EVENT_RETENTION_DAYS), 1)
    cutoff = datetime.now(timezone.utc) - timedelta(days=days)
    result = await db.execute(delete(ProcessedPaymentEvent).where(ProcessedPaymentEvent.processed_at < cutoff))
    await db.commit()
    return int(result.rowcount or 0)
