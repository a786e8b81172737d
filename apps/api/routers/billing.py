"""Billing and credits router."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from routers.rate_limit import rate_limit
from services.credits import get_credit_summary
from services.errors import SignatureInvalid
from services.payments import CREDIT_PACKAGES, create_checkout_session, handle_webhook
from services.profiles import get_or_create_profile

router = APIRouter()
logger = logging.getLogger(__name__)


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    package_id: str = Field(alias="packageId")
    identity_id: Optional[str] = Field(default=None, alias="identityId")
    return_url: Optional[str] = Field(default=None, alias="returnUrl")


@router.get("/packages")
async def list_packages():
    return {"packages": [package.to_dict() for package in CREDIT_PACKAGES.values()]}


@router.get("/credits")
async def credits_summary(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await get_or_create_profile(db, auth.user_id, auth.email)
    return await get_credit_summary(auth.user_id, db)


@router.post("/checkout")
async def create_checkout(
    request: CheckoutRequest,
    _rate_limit: None = Depends(rate_limit("billing_checkout", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.identity_id)
    checkout_url = await create_checkout_session(
        scoped_user_id,
        request.package_id,
        return_url=request.return_url,
        email=auth.email,
    )
    return {"checkoutUrl": checkout_url}


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    db: AsyncSession = Depends(get_db),
):
    # Signature is checked against the untouched body bytes.
    raw_payload = await request.body()
    try:
        outcome = await handle_webhook(raw_payload, stripe_signature, db)
    except SignatureInvalid as exc:
        logger.warning("Rejected webhook: %s", exc.message)
        return JSONResponse(status_code=400, content=exc.to_payload())
    except Exception:
        logger.exception("Webhook processing failed; provider will retry")
        return JSONResponse(status_code=500, content={"error": "Webhook processing failed."})
    return {"received": True, "status": outcome.status}
