"""Caption generation router."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import get_db
from models.generation import Generation
from routers.auth_scope import AuthContext, get_auth_context, get_optional_auth_context
from routers.rate_limit import rate_limit
from services.orchestrator import GenerationOrchestrator, get_orchestrator
from services.strategies import StrategyType, get_strategy, list_strategies

router = APIRouter()
logger = logging.getLogger(__name__)


class GenerateRequest(BaseModel):
    theme: str = Field(max_length=500)
    strategy: StrategyType = StrategyType.PILLAR


@router.get("/strategies")
async def strategies():
    return {"strategies": list_strategies()}


@router.post("")
async def generate(
    request: GenerateRequest,
    _rate_limit: None = Depends(rate_limit("generate", limit=60, window_seconds=3600)),
    auth: Optional[AuthContext] = Depends(get_optional_auth_context),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    session = orchestrator.open_session(auth.user_id if auth else None, auth.email if auth else None)
    if session.authenticated:
        await orchestrator.ensure_profile(session)

    result = await orchestrator.submit(session, request.theme, get_strategy(request.strategy))
    if result is None:
        raise HTTPException(status_code=422, detail="Theme is required.")

    return {
        "result": result.to_dict(),
        "credits": {"charged": orchestrator.credit_cost, "balance": session.profile.credits},
        "state": session.state.value,
    }


@router.get("/history")
async def history(
    limit: int = Query(default=20, ge=1, le=100),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(Generation)
        .where(Generation.user_id == auth.user_id)
        .order_by(Generation.created_at.desc())
        .limit(limit)
    )
    return {
        "items": [
            {
                "id": item.id,
                "theme": item.theme,
                "strategy": item.strategy,
                "caption": item.caption,
                "hashtags": item.hashtags_json or [],
                "analysis": item.analysis or "",
                "sources": item.sources_json or [],
                "created_at": item.created_at.isoformat() if item.created_at else None,
            }
            for item in result.scalars().all()
        ]
    }
