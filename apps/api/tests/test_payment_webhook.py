import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import patch

import pytest
import pytest_asyncio
import stripe
from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.future import select

from config import settings
from database import Base
from models.payment_event import ProcessedPaymentEvent
from services.credits import get_credit_balance, reconcile_balance
from services.errors import CheckoutCreationFailed, SignatureInvalid
from services.payments import (
    create_checkout_session,
    credits_for_amount,
    handle_webhook,
    prune_processed_events,
)
from services.profiles import get_or_create_profile


WEBHOOK_SECRET = "whsec_test_secret"
BUYER_ID = "buyer-1"


def sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    ts = int(timestamp if timestamp is not None else time.time())
    digest = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def checkout_event(
    event_id="evt_1",
    session_id="cs_test_1",
    event_type="checkout.session.completed",
    metadata=None,
    amount_total=1499,
    payment_status="paid",
):
    return json.dumps(
        {
            "id": event_id,
            "type": event_type,
            "data": {
                "object": {
                    "id": session_id,
                    "object": "checkout.session",
                    "amount_total": amount_total,
                    "payment_status": payment_status,
                    "client_reference_id": BUYER_ID,
                    "customer_details": {"email": "buyer@example.com"},
                    "metadata": {"userId": BUYER_ID, "credits": "50", "packageId": "growth"}
                    if metadata is None
                    else metadata,
                }
            },
        }
    )


@pytest_asyncio.fixture
async def session_maker(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "INITIAL_CREDIT_GRANT", 1)
    db_path = tmp_path / "payment_webhook.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with maker() as db:
        await get_or_create_profile(db, BUYER_ID, "buyer@example.com")

    yield maker
    await engine.dispose()


async def _deliver(maker, payload: str, signature=None):
    async with maker() as db:
        return await handle_webhook(payload.encode("utf-8"), signature or sign(payload), db)


async def _balance(maker, user_id=BUYER_ID):
    async with maker() as db:
        return await get_credit_balance(user_id, db)


@pytest.mark.asyncio
async def test_completed_checkout_credits_once_across_replays(session_maker):
    payload = checkout_event()

    first = await _deliver(session_maker, payload)
    second = await _deliver(session_maker, payload)

    assert first.status == "credited"
    assert first.credits == 50
    assert second.status == "duplicate"
    assert await _balance(session_maker) == 1 + 50

    async with session_maker() as db:
        reconciliation = await reconcile_balance(BUYER_ID, db)
    assert reconciliation["consistent"] is True


@pytest.mark.asyncio
async def test_distinct_events_for_same_session_credit_once(session_maker):
    await _deliver(session_maker, checkout_event(event_id="evt_a"))
    outcome = await _deliver(
        session_maker,
        checkout_event(event_id="evt_b", event_type="checkout.session.async_payment_succeeded"),
    )

    assert outcome.status == "duplicate"
    assert await _balance(session_maker) == 51


@pytest.mark.asyncio
async def test_bad_signature_is_rejected_without_crediting(session_maker):
    payload = checkout_event()

    with pytest.raises(SignatureInvalid):
        await _deliver(session_maker, payload, signature=sign(payload, secret="whsec_wrong"))
    with pytest.raises(SignatureInvalid):
        await _deliver(session_maker, payload, signature=sign(payload, timestamp=time.time() - 3600))

    assert await _balance(session_maker) == 1


@pytest.mark.asyncio
async def test_reserialized_body_fails_verification(session_maker):
    payload = checkout_event()
    signature = sign(payload)
    reserialized = json.dumps(json.loads(payload), indent=2)

    with pytest.raises(SignatureInvalid):
        await _deliver(session_maker, reserialized, signature=signature)


@pytest.mark.asyncio
async def test_missing_header_or_secret_fails_closed(session_maker, monkeypatch):
    payload = checkout_event()
    async with session_maker() as db:
        with pytest.raises(SignatureInvalid):
            await handle_webhook(payload.encode("utf-8"), None, db)

    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "")
    with pytest.raises(SignatureInvalid):
        await _deliver(session_maker, payload)


@pytest.mark.asyncio
async def test_other_event_types_are_ignored(session_maker):
    payload = json.dumps({"id": "evt_x", "type": "customer.created", "data": {"object": {}}})

    outcome = await _deliver(session_maker, payload)

    assert outcome.status == "ignored"
    assert await _balance(session_maker) == 1


@pytest.mark.asyncio
async def test_pending_payment_waits_for_async_success(session_maker):
    await _deliver(session_maker, checkout_event(event_id="evt_pending", payment_status="unpaid"))
    assert await _balance(session_maker) == 1

    outcome = await _deliver(
        session_maker,
        checkout_event(event_id="evt_paid", event_type="checkout.session.async_payment_succeeded"),
    )
    assert outcome.status == "credited"
    assert await _balance(session_maker) == 51


@pytest.mark.asyncio
async def test_missing_credits_metadata_uses_price_tiers(session_maker):
    payload = checkout_event(metadata={"userId": BUYER_ID}, amount_total=3999)

    outcome = await _deliver(session_maker, payload)

    assert outcome.credits == 200
    assert await _balance(session_maker) == 201


def test_price_tier_fallback_table():
    assert credits_for_amount(3900) == 200
    assert credits_for_amount(1400) == 50
    assert credits_for_amount(499) == 10
    assert credits_for_amount(None) == 10


@pytest.mark.asyncio
async def test_unknown_buyer_profile_is_self_healed(session_maker):
    payload = checkout_event(
        event_id="evt_new",
        session_id="cs_new",
        metadata={"userId": "fresh-buyer", "credits": "10"},
    )

    outcome = await _deliver(session_maker, payload)

    assert outcome.status == "credited"
    assert await _balance(session_maker, "fresh-buyer") == 1 + 10


@pytest.mark.asyncio
async def test_prune_drops_only_expired_records(session_maker):
    async with session_maker() as db:
        db.add_all(
            [
                ProcessedPaymentEvent(
                    event_id="evt_old",
                    checkout_session_id="cs_old",
                    user_id=BUYER_ID,
                    event_type="checkout.session.completed",
                    credits_granted=10,
                    processed_at=datetime.now(timezone.utc) - timedelta(days=90),
                ),
                ProcessedPaymentEvent(
                    event_id="evt_recent",
                    checkout_session_id="cs_recent",
                    user_id=BUYER_ID,
                    event_type="checkout.session.completed",
                    credits_granted=10,
                    processed_at=datetime.now(timezone.utc) - timedelta(days=1),
                ),
            ]
        )
        await db.commit()

    async with session_maker() as db:
        removed = await prune_processed_events(db, older_than_days=30)
        remaining = await db.execute(select(func.count()).select_from(ProcessedPaymentEvent))

    assert removed == 1
    assert remaining.scalar() == 1


@pytest.mark.asyncio
async def test_create_checkout_session_passes_identity_metadata(monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setattr(settings, "BILLING_ENABLED", True)
    monkeypatch.setattr(settings, "STRIPE_PRICE_GROWTH", "price_growth")

    fake_session = SimpleNamespace(id="cs_test_9", url="https://checkout.stripe.test/cs_test_9")
    with patch("services.payments.stripe.checkout.Session.create", return_value=fake_session) as create:
        url = await create_checkout_session(BUYER_ID, "growth", return_url="http://localhost:3000")

    assert url == fake_session.url
    kwargs = create.call_args.kwargs
    assert kwargs["metadata"] == {"userId": BUYER_ID, "credits": "50", "packageId": "growth"}
    assert kwargs["line_items"] == [{"price": "price_growth", "quantity": 1}]
    assert kwargs["success_url"] == "http://localhost:3000?session_id={CHECKOUT_SESSION_ID}&payment_success=true"
    assert kwargs["cancel_url"] == "http://localhost:3000"
    assert kwargs["client_reference_id"] == BUYER_ID


@pytest.mark.asyncio
async def test_create_checkout_session_failures(monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setattr(settings, "BILLING_ENABLED", True)

    with pytest.raises(CheckoutCreationFailed) as unknown:
        await create_checkout_session(BUYER_ID, "platinum")
    assert unknown.value.status_code == 400

    with pytest.raises(CheckoutCreationFailed) as foreign:
        await create_checkout_session(BUYER_ID, "starter", return_url="https://evil.example")
    assert foreign.value.status_code == 400

    with patch(
        "services.payments.stripe.checkout.Session.create",
        side_effect=stripe.APIConnectionError("network down"),
    ):
        with pytest.raises(CheckoutCreationFailed) as provider:
            await create_checkout_session(BUYER_ID, "starter")
    assert "network down" not in provider.value.message
