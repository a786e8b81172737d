"""
Authentication router for session lifecycle.

Session tokens are minted by the identity service sharing ``JWT_SECRET``;
this router only validates them and tears down the server-side session.
"""

from fastapi import APIRouter, Depends

from routers.auth_scope import AuthContext, get_auth_context
from services.orchestrator import GenerationOrchestrator, get_orchestrator

router = APIRouter()


@router.get("/session")
async def get_session(
    auth: AuthContext = Depends(get_auth_context),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """Acquire (or resume) the caller's generation session."""
    session = orchestrator.open_session(auth.user_id, auth.email)
    return {
        "user_id": auth.user_id,
        "email": auth.email,
        "state": session.state.value,
        "credits": session.profile.credits,
    }


@router.post("/logout")
async def logout(
    auth: AuthContext = Depends(get_auth_context),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    orchestrator.close_session(auth.user_id)
    return {"ok": True}
