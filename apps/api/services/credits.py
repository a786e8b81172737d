"""Credit ledger: atomic conditional debits, additive grants and usage accounting."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_ledger import (
    ENTRY_GENERATION_DEBIT,
    ENTRY_INITIAL_GRANT,
    ENTRY_PURCHASE_CREDIT,
    CreditLedger,
)
from models.profile import Profile
from services.errors import InvalidAmount, ProfileUnavailable
from services.profiles import ProfileSnapshot, find_profile, profile_changes

logger = logging.getLogger(__name__)

INSUFFICIENT_CREDITS = "insufficient_credits"


@dataclass(frozen=True)
class DebitResult:
    ok: bool
    new_balance: Optional[int] = None
    reason: Optional[str] = None


def generation_cost() -> int:
    return max(int(settings.GENERATION_CREDIT_COST), 1)


async def get_credit_balance(user_id: str, db: AsyncSession) -> Optional[int]:
    result = await db.execute(select(Profile.credits).where(Profile.id == user_id))
    value = result.scalar_one_or_none()
    return None if value is None else int(value)


def _append_entry(
    db: AsyncSession,
    user_id: str,
    *,
    entry_type: str,
    delta_credits: int,
    balance_after: int,
    reason: Optional[str] = None,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    billing_provider: Optional[str] = None,
    billing_reference: Optional[str] = None,
) -> CreditLedger:
    entry = CreditLedger(
        user_id=user_id,
        entry_type=entry_type,
        delta_credits=int(delta_credits),
        balance_after=balance_after,
        reason=reason,
        reference_type=reference_type,
        reference_id=reference_id,
        billing_provider=billing_provider,
        billing_reference=billing_reference,
    )
    db.add(entry)
    return entry


async def try_debit(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int = 1,
    reason: str = "Caption generation",
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
) -> DebitResult:
    """
    Decrement the balance only if it covers ``amount``.

    The sufficiency check and the decrement are one conditional UPDATE, so two
    requests racing against the same stale balance cannot both succeed.
    """
    debit = int(amount)
    if debit <= 0:
        raise InvalidAmount()

    try:
        result = await db.execute(
            update(Profile)
            .where(Profile.id == user_id, Profile.credits >= debit)
            .values(credits=Profile.credits - debit)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await db.rollback()
            balance = await get_credit_balance(user_id, db)
            if balance is None:
                raise ProfileUnavailable()
            logger.info("Debit of %s refused for %s: balance %s", debit, user_id, balance)
            return DebitResult(ok=False, new_balance=balance, reason=INSUFFICIENT_CREDITS)

        snapshot = await find_profile(db, user_id)
        _append_entry(
            db,
            user_id,
            entry_type=ENTRY_GENERATION_DEBIT,
            delta_credits=-debit,
            balance_after=snapshot.credits,
            reason=reason,
            reference_type=reference_type,
            reference_id=reference_id,
        )
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("Debit failed for %s: %s", user_id, exc)
        raise ProfileUnavailable() from exc

    profile_changes.publish(snapshot)
    return DebitResult(ok=True, new_balance=snapshot.credits)


async def grant_credits(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    entry_type: str = ENTRY_PURCHASE_CREDIT,
    reason: str = "Credit purchase",
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    billing_provider: Optional[str] = None,
    billing_reference: Optional[str] = None,
    commit: bool = True,
) -> ProfileSnapshot:
    """
    Atomically add ``amount`` credits.

    With ``commit=False`` the caller owns the transaction and is expected to
    publish the returned snapshot once it commits.
    """
    grant = int(amount)
    if grant <= 0:
        raise InvalidAmount()

    try:
        result = await db.execute(
            update(Profile)
            .where(Profile.id == user_id)
            .values(credits=Profile.credits + grant)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            if commit:
                await db.rollback()
            raise ProfileUnavailable()

        snapshot = await find_profile(db, user_id)
        _append_entry(
            db,
            user_id,
            entry_type=entry_type,
            delta_credits=grant,
            balance_after=snapshot.credits,
            reason=reason,
            reference_type=reference_type,
            reference_id=reference_id,
            billing_provider=billing_provider,
            billing_reference=billing_reference,
        )
        if commit:
            await db.commit()
    except SQLAlchemyError as exc:
        if commit:
            await db.rollback()
        logger.error("Credit grant failed for %s: %s", user_id, exc)
        raise ProfileUnavailable() from exc

    if commit:
        profile_changes.publish(snapshot)
    logger.info("Granted %s credits to %s (%s). New balance: %s", grant, user_id, entry_type, snapshot.credits)
    return snapshot


async def reconcile_balance(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    """Compare the stored balance with the ledger's running total."""
    balance = await get_credit_balance(user_id, db)
    if balance is None:
        raise ProfileUnavailable()

    total_result = await db.execute(
        select(func.coalesce(func.sum(CreditLedger.delta_credits), 0)).where(CreditLedger.user_id == user_id)
    )
    grant_result = await db.execute(
        select(func.coalesce(func.sum(CreditLedger.delta_credits), 0)).where(
            CreditLedger.user_id == user_id,
            CreditLedger.entry_type == ENTRY_INITIAL_GRANT,
        )
    )
    ledger_total = int(total_result.scalar() or 0)
    initial_grant = int(grant_result.scalar() or 0)
    return {
        "balance": balance,
        "initial_grant": initial_grant,
        "applied_deltas": ledger_total - initial_grant,
        "consistent": ledger_total == balance,
    }


async def get_credit_summary(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    reconciliation = await reconcile_balance(user_id, db)
    result = await db.execute(
        select(CreditLedger)
        .where(CreditLedger.user_id == user_id)
        .order_by(CreditLedger.created_at.desc())
        .limit(30)
    )
    entries = result.scalars().all()
    return {
        "balance": reconciliation["balance"],
        "consistent": reconciliation["consistent"],
        "initial_grant": max(int(settings.INITIAL_CREDIT_GRANT), 0),
        "costs": {"generation": generation_cost()},
        "refund_on_generation_failure": bool(settings.REFUND_ON_GENERATION_FAILURE),
        "recent_entries": [
            {
                "id": entry.id,
                "entry_type": entry.entry_type,
                "delta_credits": entry.delta_credits,
                "balance_after": entry.balance_after,
                "reason": entry.reason,
                "created_at": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in entries
        ],
    }
