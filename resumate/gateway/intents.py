"""Pending billing intents: an outbound billing action waiting for the processor to confirm it.

One open intent per user. Checkout and upgrade intents carry the plan and
credit hint the payment-succeeded webhook applies; a downgrade intent marks
a PRO subscription that is set to cancel at period end. The
subscription-deleted handler reads the intent to tell an upgrade replace
apart from a genuine cancellation.
"""

import datetime as dt
from datetime import datetime
from enum import StrEnum, auto

from sqlmodel.ext.asyncio.session import AsyncSession

from resumate.gateway.domain_models import IntentKind, PendingBillingIntent, PlanType
from resumate.gateway.utils import ensure_utc, utcnow


class IntentState(StrEnum):
    idle = auto()
    checkout_pending = auto()
    upgrade_in_flight = auto()
    downgrade_scheduled = auto()


def is_expired(intent: PendingBillingIntent, now: datetime | None = None) -> bool:
    expires_at = ensure_utc(intent.expires_at)
    return expires_at is not None and expires_at <= (now or utcnow())


def intent_state(intent: PendingBillingIntent | None, now: datetime | None = None) -> IntentState:
    if intent is None:
        return IntentState.idle
    match intent.kind:
        case IntentKind.downgrade:
            return IntentState.downgrade_scheduled
        case IntentKind.upgrade if not is_expired(intent, now):
            return IntentState.upgrade_in_flight
        case IntentKind.checkout if not is_expired(intent, now):
            return IntentState.checkout_pending
        case _:
            return IntentState.idle


def plan_hint(intent: PendingBillingIntent | None, now: datetime | None = None) -> tuple[PlanType, int | None] | None:
    """Plan and credits the next successful payment should apply, if a live checkout/upgrade asked for them."""
    if intent_state(intent, now) not in (IntentState.checkout_pending, IntentState.upgrade_in_flight):
        return None
    assert intent is not None
    return intent.target_plan, intent.target_credits


def opened_within(intent: PendingBillingIntent | None, seconds: int, now: datetime | None = None) -> bool:
    if intent is None or intent.kind == IntentKind.downgrade:
        return False
    created = ensure_utc(intent.created)
    assert created is not None
    return (now or utcnow()) - created <= dt.timedelta(seconds=seconds)


async def get_intent(db: AsyncSession, user_id: str) -> PendingBillingIntent | None:
    return await db.get(PendingBillingIntent, user_id)


async def open_intent(
    db: AsyncSession,
    user_id: str,
    *,
    kind: IntentKind,
    target_plan: PlanType,
    target_credits: int | None = None,
    replaced_subscription_id: str | None = None,
    ttl_seconds: int | None = None,
) -> PendingBillingIntent:
    """Open an intent, replacing whatever was open before. Staged only, the caller commits."""
    now = utcnow()
    intent = await get_intent(db, user_id)
    if intent is None:
        intent = PendingBillingIntent(user_id=user_id, kind=kind, target_plan=target_plan)
        db.add(intent)

    intent.kind = kind
    intent.target_plan = target_plan
    intent.target_credits = target_credits
    intent.replaced_subscription_id = replaced_subscription_id
    intent.checkout_session_id = None
    intent.created = now
    intent.expires_at = now + dt.timedelta(seconds=ttl_seconds) if ttl_seconds else None
    return intent


def attach_checkout(intent: PendingBillingIntent, session_id: str) -> None:
    intent.checkout_session_id = session_id


async def clear_intent(db: AsyncSession, user_id: str) -> PendingBillingIntent | None:
    intent = await get_intent(db, user_id)
    if intent is not None:
        await db.delete(intent)
    return intent
