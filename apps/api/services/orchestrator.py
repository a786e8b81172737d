"""Generation orchestrator: gate, reserve a credit, generate, commit."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Optional, Set

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.credit_ledger import ENTRY_CORRECTION
from models.generation import Generation
from services.credits import generation_cost, grant_credits, try_debit
from services.errors import (
    AuthRequired,
    CaptionServiceError,
    CommitFailed,
    GenerationFailed,
    GenerationInProgress,
    InsufficientCredits,
    ProfileUnavailable,
)
from services.generation import GenerationClient, GenerationResult
from services.profiles import (
    ProfileSnapshot,
    Subscription,
    get_or_create_profile,
    profile_changes,
    refresh_profile,
)
from services.strategies import Strategy

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncSession]


class GenerationState(str, Enum):
    IDLE = "idle"
    AUTH_CHECK = "auth_check"
    BALANCE_CHECK = "balance_check"
    RESERVING = "reserving"
    GENERATING = "generating"
    COMMITTING = "committing"
    DONE = "done"


SUBMITTABLE_STATES = {GenerationState.IDLE, GenerationState.DONE}


@dataclass
class ProfileView:
    """Locally cached balance; never authoritative, always reconciled by refresh."""

    credits: Optional[int] = None
    email: Optional[str] = None
    refreshes_in_flight: int = 0
    synced_at: Optional[datetime] = None

    @property
    def refreshing(self) -> bool:
        return self.refreshes_in_flight > 0

    def apply(self, snapshot: ProfileSnapshot) -> None:
        self.credits = snapshot.credits
        self.email = snapshot.email
        self.synced_at = datetime.now(timezone.utc)


@dataclass
class UserSession:
    """Explicit per-identity session, acquired at login and invalidated at logout."""

    identity_id: Optional[str]
    email: Optional[str] = None
    state: GenerationState = GenerationState.IDLE
    profile: ProfileView = field(default_factory=ProfileView)
    last_result: Optional[GenerationResult] = None
    active: bool = True
    subscription: Optional[Subscription] = None
    last_seen: float = field(default_factory=time.monotonic)

    @property
    def authenticated(self) -> bool:
        return self.active and bool(self.identity_id)

    def invalidate(self) -> None:
        self.active = False
        self.state = GenerationState.IDLE
        if self.subscription is not None:
            self.subscription.unsubscribe()
            self.subscription = None


class GenerationOrchestrator:
    """Drives one generation cycle per session through the credit-metered pipeline."""

    def __init__(
        self,
        session_factory: SessionFactory,
        client: GenerationClient,
        *,
        refund_on_failure: Optional[bool] = None,
        credit_cost: Optional[int] = None,
        session_ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._session_factory = session_factory
        self._client = client
        self.refund_on_failure = (
            settings.REFUND_ON_GENERATION_FAILURE if refund_on_failure is None else refund_on_failure
        )
        self.credit_cost = max(int(credit_cost), 1) if credit_cost is not None else generation_cost()
        self.session_ttl_seconds = float(
            settings.SESSION_IDLE_TTL_SECONDS if session_ttl_seconds is None else session_ttl_seconds
        )
        self._clock = clock
        self._sessions: Dict[str, UserSession] = {}
        self._background: Set[asyncio.Task] = set()
        self._last_sweep = clock()

    # Session lifecycle

    def open_session(self, identity_id: Optional[str], email: Optional[str] = None) -> UserSession:
        if not identity_id:
            return UserSession(identity_id=None, active=False)

        now = self._clock()
        # Sweep at most a few times per TTL window.
        if now - self._last_sweep >= self.session_ttl_seconds / 4:
            self.evict_idle_sessions(now)

        session = self._sessions.get(identity_id)
        if session is not None and session.active:
            if email and not session.email:
                session.email = email
            session.last_seen = now
            return session

        session = UserSession(identity_id=identity_id, email=email, last_seen=now)
        session.subscription = profile_changes.subscribe(identity_id, session.profile.apply)
        self._sessions[identity_id] = session
        return session

    def evict_idle_sessions(self, now: Optional[float] = None) -> int:
        """Close sessions idle past the TTL; busy or refreshing sessions are kept."""
        now = self._clock() if now is None else now
        self._last_sweep = now
        expired = [
            identity_id
            for identity_id, session in self._sessions.items()
            if session.state in SUBMITTABLE_STATES
            and not session.profile.refreshing
            and now - session.last_seen >= self.session_ttl_seconds
        ]
        for identity_id in expired:
            self.close_session(identity_id)
        if expired:
            logger.info("Evicted %s idle generation sessions", len(expired))
        return len(expired)

    def close_session(self, identity_id: str) -> None:
        session = self._sessions.pop(identity_id, None)
        if session is not None:
            session.invalidate()

    def get_session(self, identity_id: str) -> Optional[UserSession]:
        return self._sessions.get(identity_id)

    def session_count(self) -> int:
        return len(self._sessions)

    # Reconciliation

    async def ensure_profile(self, session: UserSession) -> ProfileSnapshot:
        """Self-heal the profile row for a freshly authenticated session and seed its view."""
        if not session.authenticated:
            raise AuthRequired()
        try:
            async with self._session_factory() as db:
                snapshot = await get_or_create_profile(db, session.identity_id, session.email)
        except ProfileUnavailable:
            self.schedule_refresh(session)
            raise
        if session.profile.synced_at is None:
            session.profile.apply(snapshot)
        return snapshot

    async def refresh(self, session: UserSession) -> ProfileSnapshot:
        """Re-read the authoritative balance into the session view."""
        if not session.authenticated:
            raise AuthRequired()
        session.profile.refreshes_in_flight += 1
        try:
            async with self._session_factory() as db:
                snapshot = await refresh_profile(db, session.identity_id)
            session.profile.apply(snapshot)
            return snapshot
        finally:
            session.profile.refreshes_in_flight -= 1

    def schedule_refresh(self, session: UserSession) -> asyncio.Task:
        task = asyncio.create_task(self._background_refresh(session))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _background_refresh(self, session: UserSession) -> None:
        try:
            await self.refresh(session)
        except CaptionServiceError as exc:
            # The view stays stale until the next successful refresh.
            logger.warning("Background profile refresh failed for %s: %s", session.identity_id, exc)

    async def drain(self) -> None:
        """Wait for scheduled background refreshes."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # State machine

    async def submit(self, session: UserSession, theme: str, strategy: Strategy) -> Optional[GenerationResult]:
        """
        Run one cycle. Returns ``None`` for a blank theme (no-op) and the result on success.

        Error exits return the session to ``IDLE`` and raise ``AuthRequired``,
        ``InsufficientCredits``, ``ProfileUnavailable``, ``GenerationFailed`` or
        ``CommitFailed``. A store failure schedules a background refresh first.
        """
        theme = (theme or "").strip()
        if not theme:
            return None
        if session.state not in SUBMITTABLE_STATES:
            logger.info("Ignoring submit for %s while %s", session.identity_id, session.state.value)
            raise GenerationInProgress()

        session.state = GenerationState.AUTH_CHECK
        try:
            result = await self._run_cycle(session, theme, strategy)
        except BaseException:
            session.state = GenerationState.IDLE
            raise
        session.state = GenerationState.DONE
        session.last_result = result
        return result

    async def _run_cycle(self, session: UserSession, theme: str, strategy: Strategy) -> GenerationResult:
        if not session.authenticated:
            raise AuthRequired()
        identity_id = session.identity_id

        session.state = GenerationState.BALANCE_CHECK
        if session.profile.refreshing:
            raise GenerationInProgress("Checking your balance, try again in a moment.")

        session.state = GenerationState.RESERVING
        try:
            async with self._session_factory() as db:
                debit = await try_debit(
                    identity_id,
                    db,
                    amount=self.credit_cost,
                    reason=f"Caption generation ({strategy.id.value})",
                    reference_type="generation",
                )
        except ProfileUnavailable:
            logger.warning("Credit store unavailable while reserving for %s; refreshing view", identity_id)
            self.schedule_refresh(session)
            raise
        if not debit.ok:
            session.profile.credits = debit.new_balance
            raise InsufficientCredits(required=self.credit_cost, available=debit.new_balance)
        session.profile.credits = debit.new_balance

        session.state = GenerationState.GENERATING
        try:
            result = await self._client.generate(theme, strategy)
        except GenerationFailed as exc:
            logger.warning("Generation failed for %s: %r", identity_id, exc.cause)
            if self.refund_on_failure:
                await self._refund(identity_id)
            self.schedule_refresh(session)
            raise

        session.state = GenerationState.COMMITTING
        try:
            async with self._session_factory() as db:
                db.add(
                    Generation(
                        user_id=identity_id,
                        theme=theme,
                        strategy=result.strategy_used,
                        caption=result.caption,
                        hashtags_json=list(result.hashtags),
                        analysis=result.analysis,
                        sources_json=[source.to_dict() for source in result.sources],
                    )
                )
                await db.commit()
        except SQLAlchemyError as exc:
            logger.error("Persisting generation for %s failed: %s", identity_id, exc)
            self.schedule_refresh(session)
            raise CommitFailed(result=result) from exc

        self.schedule_refresh(session)
        return result

    async def _refund(self, identity_id: str) -> None:
        try:
            async with self._session_factory() as db:
                await grant_credits(
                    identity_id,
                    db,
                    amount=self.credit_cost,
                    entry_type=ENTRY_CORRECTION,
                    reason="Refund for failed generation",
                    reference_type="generation",
                )
        except CaptionServiceError as exc:
            logger.error("Refund for failed generation could not be applied for %s: %s", identity_id, exc)


_default_orchestrator: Optional[GenerationOrchestrator] = None


def get_orchestrator() -> GenerationOrchestrator:
    """FastAPI dependency returning the process-wide orchestrator."""
    global _default_orchestrator
    if _default_orchestrator is None:
        from database import async_session_maker

        _default_orchestrator = GenerationOrchestrator(async_session_maker, GenerationClient())
    return _default_orchestrator
