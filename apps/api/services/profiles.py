"""Profile store: self-healing get-or-create, fresh reads and change subscriptions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_ledger import ENTRY_INITIAL_GRANT, CreditLedger
from models.profile import Profile
from services.errors import ProfileUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProfileSnapshot:
    id: str
    email: str
    credits: int

    @classmethod
    def from_model(cls, profile: Profile) -> "ProfileSnapshot":
        return cls(id=profile.id, email=profile.email or "", credits=int(profile.credits or 0))

    def to_dict(self) -> Dict[str, object]:
        return {"id": self.id, "email": self.email, "credits": self.credits}


ProfileCallback = Callable[[ProfileSnapshot], None]


class Subscription:
    """Handle returned by ``ProfileChangeHub.subscribe``."""

    def __init__(self, hub: "ProfileChangeHub", identity_id: str, callback: ProfileCallback):
        self._hub = hub
        self.identity_id = identity_id
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self._hub._remove(self)


class ProfileChangeHub:
    """In-process push channel for profile row changes, keyed by identity."""

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[Subscription]] = {}

    def subscribe(self, identity_id: str, on_change: ProfileCallback) -> Subscription:
        subscription = Subscription(self, identity_id, on_change)
        self._subscribers.setdefault(identity_id, []).append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        bucket = self._subscribers.get(subscription.identity_id)
        if not bucket:
            return
        if subscription in bucket:
            bucket.remove(subscription)
        if not bucket:
            self._subscribers.pop(subscription.identity_id, None)

    def publish(self, snapshot: ProfileSnapshot) -> int:
        """Deliver ``snapshot`` to every subscriber of its identity."""
        delivered = 0
        for subscription in list(self._subscribers.get(snapshot.id, ())):
            if not subscription.active:
                continue
            try:
                subscription.callback(snapshot)
                delivered += 1
            except Exception:
                logger.exception("Profile change subscriber failed for %s", snapshot.id)
        return delivered

    def subscriber_count(self, identity_id: Optional[str] = None) -> int:
        if identity_id is not None:
            return len(self._subscribers.get(identity_id, ()))
        return sum(len(bucket) for bucket in self._subscribers.values())


profile_changes = ProfileChangeHub()


async def _read_profile(db: AsyncSession, identity_id: str) -> Optional[Profile]:
    result = await db.execute(
        select(Profile)
        .where(Profile.id == identity_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_or_create_profile(
    db: AsyncSession,
    identity_id: str,
    email: Optional[str] = None,
) -> ProfileSnapshot:
    """
    Return the profile for ``identity_id``, creating it with the starting grant if missing.

    Two callers racing on a brand-new identity both end up with the same row: the
    insert that loses the primary-key race rolls back and re-reads.
    """
    if not identity_id:
        raise ProfileUnavailable("Missing identity for profile lookup.")

    read_error: Optional[SQLAlchemyError] = None
    try:
        existing = await _read_profile(db, identity_id)
        if existing is not None:
            return ProfileSnapshot.from_model(existing)
    except SQLAlchemyError as exc:
        read_error = exc
        logger.warning("Profile read failed for %s: %s", identity_id, exc)
        await db.rollback()

    grant = max(int(settings.INITIAL_CREDIT_GRANT), 0)
    try:
        db.add(Profile(id=identity_id, email=email or "", credits=grant))
        await db.flush()
        if grant > 0:
            db.add(
                CreditLedger(
                    user_id=identity_id,
                    entry_type=ENTRY_INITIAL_GRANT,
                    delta_credits=grant,
                    balance_after=grant,
                    reason="Starting credits",
                )
            )
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.info("Profile %s was created concurrently; re-reading", identity_id)
    except SQLAlchemyError as exc:
        await db.rollback()
        if read_error is not None:
            raise ProfileUnavailable() from exc
        logger.warning("Profile create failed for %s: %s", identity_id, exc)
    else:
        logger.info("Created profile %s with %s starting credits", identity_id, grant)
        snapshot = ProfileSnapshot(id=identity_id, email=email or "", credits=grant)
        profile_changes.publish(snapshot)
        return snapshot

    try:
        profile = await _read_profile(db, identity_id)
    except SQLAlchemyError as exc:
        raise ProfileUnavailable() from exc
    if profile is None:
        raise ProfileUnavailable()
    return ProfileSnapshot.from_model(profile)


async def refresh_profile(db: AsyncSession, identity_id: str) -> ProfileSnapshot:
    """Force a fresh read of the profile row, bypassing the session identity map."""
    try:
        profile = await _read_profile(db, identity_id)
    except SQLAlchemyError as exc:
        logger.warning("Profile refresh failed for %s: %s", identity_id, exc)
        raise ProfileUnavailable() from exc
    if profile is None:
        raise ProfileUnavailable()
    return ProfileSnapshot.from_model(profile)


async def find_profile(db: AsyncSession, identity_id: str) -> Optional[ProfileSnapshot]:
    """Fresh read that returns ``None`` instead of raising when the row is missing."""
    profile = await _read_profile(db, identity_id)
    if profile is None:
        return None
    return ProfileSnapshot.from_model(profile)
