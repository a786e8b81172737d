"""Profile router: self-healing profile read and explicit balance refresh."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from services.orchestrator import GenerationOrchestrator, get_orchestrator
from services.profiles import get_or_create_profile

router = APIRouter()


@router.get("/me")
async def get_profile(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Return the caller's profile, creating it with the starting grant on first sight."""
    snapshot = await get_or_create_profile(db, auth.user_id, auth.email)
    return snapshot.to_dict()


@router.post("/refresh")
async def refresh_profile_view(
    auth: AuthContext = Depends(get_auth_context),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """
    Reconcile the cached balance with the store.

    Called on focus regain and once after returning from checkout.
    """
    session = orchestrator.open_session(auth.user_id, auth.email)
    await orchestrator.ensure_profile(session)
    snapshot = await orchestrator.refresh(session)
    return {**snapshot.to_dict(), "state": session.state.value}

