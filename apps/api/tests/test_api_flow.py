import hashlib
import hmac
import json
import time
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config import settings
from database import Base, get_db
from main import app
from services.generation import GenerationClient
from services.orchestrator import GenerationOrchestrator, get_orchestrator
from services.session_token import issue_session_token


CAPTION_TEXT = "## CAPTION\nGolden hour flow.\n## HASHTAGS\n#sunsetyoga #yoga\n## ANALYSIS\nNiche plus broad."


def _auth(identity_id="creator-1", email="creator@example.com"):
    return {"Authorization": f"Bearer {issue_session_token(identity_id, email)}"}


def _signed(payload: str):
    ts = int(time.time())
    digest = hmac.new(
        settings.STRIPE_WEBHOOK_SECRET.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return {"Stripe-Signature": f"t={ts},v1={digest}", "Content-Type": "application/json"}


@pytest_asyncio.fixture
async def api_client(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "INITIAL_CREDIT_GRANT", 1)
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "whsec_flow_secret")
    db_path = tmp_path / "api_flow.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    message = SimpleNamespace(content=CAPTION_TEXT, annotations=[])
    create = AsyncMock(return_value=SimpleNamespace(choices=[SimpleNamespace(message=message)]))
    fake_openai = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))
    orchestrator = GenerationOrchestrator(
        session_maker,
        GenerationClient(client=fake_openai, model="test-model", timeout_seconds=1),
    )

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client, orchestrator, create

    await orchestrator.drain()
    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_orchestrator, None)
    await engine.dispose()


@pytest.mark.asyncio
async def test_generate_requires_sign_in(api_client):
    client, _, create = api_client

    response = await client.post("/generate", json={"theme": "sunset yoga", "strategy": "PILLAR"})

    assert response.status_code == 401
    assert response.json()["code"] == "auth_required"
    create.assert_not_awaited()


@pytest.mark.asyncio
async def test_generate_then_top_up_then_generate_again(api_client):
    client, orchestrator, create = api_client
    headers = _auth()

    profile = await client.get("/profile/me", headers=headers)
    assert profile.status_code == 200
    assert profile.json()["credits"] == 1

    first = await client.post("/generate", json={"theme": "sunset yoga", "strategy": "PILLAR"}, headers=headers)
    assert first.status_code == 200
    body = first.json()
    assert body["result"]["caption"] == "Golden hour flow."
    assert body["result"]["hashtags"] == ["#sunsetyoga", "#yoga"]
    assert body["credits"] == {"charged": 1, "balance": 0}
    await orchestrator.drain()

    refused = await client.post("/generate", json={"theme": "sunset yoga"}, headers=headers)
    assert refused.status_code == 402
    assert refused.json()["top_up"] is True
    assert create.await_count == 1

    payload = json.dumps(
        {
            "id": "evt_flow_1",
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": "cs_flow_1",
                    "amount_total": 1499,
                    "payment_status": "paid",
                    "metadata": {"userId": "creator-1", "credits": "50", "packageId": "growth"},
                }
            },
        }
    )
    credited = await client.post("/billing/webhook", content=payload, headers=_signed(payload))
    replayed = await client.post("/billing/webhook", content=payload, headers=_signed(payload))
    assert credited.json() == {"received": True, "status": "credited"}
    assert replayed.json() == {"received": True, "status": "duplicate"}

    refreshed = await client.post("/profile/refresh", headers=headers)
    assert refreshed.status_code == 200
    assert refreshed.json()["credits"] == 50

    second = await client.post("/generate", json={"theme": "beach run", "strategy": "VIRAL_TRENDING"}, headers=headers)
    assert second.status_code == 200
    assert second.json()["credits"]["balance"] == 49
    await orchestrator.drain()

    history = await client.get("/generate/history", headers=headers)
    assert sorted(item["theme"] for item in history.json()["items"]) == ["beach run", "sunset yoga"]

    summary = await client.get("/billing/credits", headers=headers)
    assert summary.status_code == 200


@pytest.mark.asyncio
async def test_generate_rejects_blank_and_unknown_strategy(api_client):
    client, _, create = api_client
    headers = _auth()

    blank = await client.post("/generate", json={"theme": "   "}, headers=headers)
    unknown = await client.post("/generate", json={"theme": "yoga", "strategy": "RANDOM"}, headers=headers)

    assert blank.status_code == 422
    assert unknown.status_code == 422
    assert blank.json() == {"error": "Theme is required.", "code": "http_422"}
    assert unknown.json()["code"] == "validation_error"
    assert "error" in unknown.json()
    create.assert_not_awaited()


@pytest.mark.asyncio
async def test_webhook_rejects_bad_signature_and_wrong_method(api_client):
    client, _, _ = api_client
    payload = json.dumps({"id": "evt_bad", "type": "checkout.session.completed", "data": {"object": {}}})

    bad = await client.post(
        "/billing/webhook",
        content=payload,
        headers={"Stripe-Signature": "t=1,v1=deadbeef", "Content-Type": "application/json"},
    )
    missing = await client.post("/billing/webhook", content=payload)
    wrong_method = await client.get("/billing/webhook")

    assert bad.status_code == 400
    assert bad.json()["code"] == "signature_invalid"
    assert missing.status_code == 400
    assert wrong_method.status_code == 405


@pytest.mark.asyncio
async def test_checkout_returns_provider_url_for_own_identity(api_client, monkeypatch):
    client, _, _ = api_client
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_flow")
    monkeypatch.setattr(settings, "BILLING_ENABLED", True)
    fake_session = SimpleNamespace(id="cs_flow_2", url="https://checkout.stripe.test/cs_flow_2")

    with patch("services.payments.stripe.checkout.Session.create", return_value=fake_session):
        ok = await client.post("/billing/checkout", json={"packageId": "starter"}, headers=_auth())
        foreign = await client.post(
            "/billing/checkout",
            json={"packageId": "starter", "identityId": "someone-else"},
            headers=_auth(),
        )
        anonymous = await client.post("/billing/checkout", json={"packageId": "starter"})

    assert ok.status_code == 200
    assert ok.json() == {"checkoutUrl": fake_session.url}
    assert foreign.status_code == 403
    assert anonymous.status_code == 401
    assert foreign.json() == {"error": "user_id does not match authenticated session.", "code": "scope_mismatch"}
    assert anonymous.json()["code"] == "auth_required"
    assert "detail" not in anonymous.json()


@pytest.mark.asyncio
async def test_catalog_endpoints(api_client):
    client, _, _ = api_client

    strategies = await client.get("/generate/strategies")
    packages = await client.get("/billing/packages")

    assert [item["id"] for item in strategies.json()["strategies"]] == [
        "PILLAR",
        "NICHE_DOMINANCE",
        "VIRAL_TRENDING",
        "MIXED_BAG",
    ]
    assert {item["id"] for item in packages.json()["packages"]} == {"starter", "growth", "agency"}


@pytest.mark.asyncio
async def test_logout_ends_session(api_client):
    client, orchestrator, _ = api_client
    headers = _auth()

    session = await client.get("/auth/session", headers=headers)
    assert session.status_code == 200
    assert orchestrator.get_session("creator-1") is not None

    logout = await client.post("/auth/logout", headers=headers)
    assert logout.json() == {"ok": True}
    assert orchestrator.get_session("creator-1") is None
