"""Credit ledger: every balance change is one append-only entry plus a matching update of the cached counter.

`User.credits` is a denormalized cache of `sum(CreditLedger.delta)`. Both are
always written in the same transaction, and the counter is only ever moved
by a single conditional UPDATE so concurrent requests can't act on a stale
balance.
"""

import datetime as dt
from datetime import datetime

from loguru import logger
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from resumate.gateway.db import get_or_404
from resumate.gateway.domain_models import CreditLedger, LedgerReason, User
from resumate.gateway.exceptions import InsufficientCreditsError, ResourceNotFoundError
from resumate.gateway.metrics import log_event


async def _shift_balance(db: AsyncSession, user_id: str, delta: int, *, min_balance: int | None = None) -> int | None:
    """Atomically add `delta` to the cached balance. Returns the new balance, None if the guard failed."""
    stmt = update(User).where(User.id == user_id)
    if min_balance is not None:
        stmt = stmt.where(User.credits >= min_balance)
    stmt = stmt.values(credits=User.credits + delta, updated=datetime.now(tz=dt.UTC)).returning(User.credits)
    result = await db.exec(stmt)
    return result.scalar_one_or_none()


async def apply_grant(
    db: AsyncSession,
    user_id: str,
    amount: int,
    *,
    meta: dict | None = None,
    event_id: str | None = None,
) -> int:
    """Stage a SUBSCRIPTION_GRANT in the current transaction. The caller commits.

    `event_id` is unique across the ledger; a second grant for the same event
    fails at commit with IntegrityError and the whole transaction rolls back.
    """
    if amount <= 0:
        raise ValueError(f"grant amount must be positive, got {amount}")

    balance = await _shift_balance(db, user_id, amount)
    if balance is None:
        raise ResourceNotFoundError(User.__name__, user_id)

    db.add(
        CreditLedger(
            user_id=user_id,
            delta=amount,
            reason=LedgerReason.SUBSCRIPTION_GRANT,
            event_id=event_id,
            meta=meta,
        )
    )
    return balance


async def grant(
    db: AsyncSession,
    user_id: str,
    amount: int,
    *,
    meta: dict | None = None,
    event_id: str | None = None,
) -> int:
    """Grant credits and commit. Returns the new balance.

    A grant already recorded for `event_id` is not applied again; the current balance is returned.
    """
    balance = await apply_grant(db, user_id, amount, meta=meta, event_id=event_id)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.bind(user_id=user_id, event_id=event_id).info("Credit grant already recorded for event, skipping")
        user = await db.get(User, user_id)
        return user.credits if user else 0

    logger.bind(user_id=user_id, event_id=event_id, amount=amount, balance=balance).info("Credits granted")
    return balance


async def debit(db: AsyncSession, user_id: str, amount: int, resume_id: str | None) -> int:
    """Charge credits for a successful extraction. Returns the new balance.

    The balance check and the decrement are the same statement, so two
    concurrent extractions can't both pass a stale check.
    """
    if amount <= 0:
        raise ValueError(f"debit amount must be positive, got {amount}")

    balance = await _shift_balance(db, user_id, -amount, min_balance=amount)
    if balance is None:
        await db.rollback()
        user = await get_or_404(db, User, user_id)
        raise InsufficientCreditsError(required=amount, available=user.credits)

    db.add(
        CreditLedger(
            user_id=user_id,
            delta=-amount,
            reason=LedgerReason.EXTRACTION_DEBIT,
            resume_id=resume_id,
        )
    )
    await db.commit()

    logger.bind(user_id=user_id, resume_id=resume_id, amount=amount, balance=balance).info("Credits debited")
    await log_event("credits_debited", user_id=user_id, credits_delta=-amount, data={"resume_id": resume_id})
    return balance


async def apply_forfeit(db: AsyncSession, user: User, *, meta: dict | None = None) -> int:
    """Stage dropping the whole remaining balance (immediate cancellation). Returns the forfeited amount."""
    remaining = user.credits
    if remaining <= 0:
        return 0

    await _shift_balance(db, user.id, -remaining)
    db.add(
        CreditLedger(
            user_id=user.id,
            delta=-remaining,
            reason=LedgerReason.CANCELLATION_FORFEIT,
            meta=meta,
        )
    )
    return remaining


async def ledger_balance(db: AsyncSession, user_id: str) -> int:
    """Balance recomputed from the ledger, the source of truth behind `User.credits`."""
    result = await db.exec(
        select(func.coalesce(func.sum(CreditLedger.delta), 0)).where(CreditLedger.user_id == user_id)
    )
    return int(result.one())


async def list_ledger(db: AsyncSession, user_id: str) -> list[CreditLedger]:
    result = await db.exec(
        select(CreditLedger).where(CreditLedger.user_id == user_id).order_by(CreditLedger.created)
    )
    return list(result.all())
