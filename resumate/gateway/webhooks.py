"""Webhook state machine: applies verified, deduplicated processor events to plan, credits and subscription window.

Each supported event type maps to one handler in `HANDLERS`. Handlers load
the user by processor customer id, read the pending intent, and commit their
changes in a single transaction. Lookups that only enrich an event
(subscription dates, a fallback checkout session) log processor failures
and continue with what the event itself carries.
"""

from collections.abc import Awaitable, Callable
from datetime import datetime
from enum import StrEnum, auto
from typing import Any

from loguru import logger
from sqlalchemy.exc import IntegrityError
from sqlmodel.ext.asyncio.session import AsyncSession

from resumate.gateway import credits as ledger
from resumate.gateway.config import Settings
from resumate.gateway.domain_models import IntentKind, PendingBillingIntent, PlanType, User
from resumate.gateway.exceptions import PaymentProcessorError
from resumate.gateway.intents import (
    IntentState,
    clear_intent,
    get_intent,
    intent_state,
    open_intent,
    opened_within,
    plan_hint,
)
from resumate.gateway.metrics import log_event
from resumate.gateway.plans import get_plan, infer_plan_from_price
from resumate.gateway.processor import StripeProcessor, plan_metadata
from resumate.gateway.stripe_events import (
    BillingEvent,
    CheckoutCompleted,
    EventType,
    InvoicePaid,
    SubscriptionCreated,
    SubscriptionDeleted,
    SubscriptionSnapshot,
    SubscriptionUpdated,
)
from resumate.gateway.users import find_user_by_checkout_session, find_user_by_customer
from resumate.gateway.utils import utcnow

LIVE_SUBSCRIPTION_STATUSES = ("active", "trialing")
DOWNGRADE_RESUBSCRIBE_FAILED = "downgrade_resubscribe_failed"

Handler = Callable[[Any, AsyncSession, StripeProcessor, Settings], Awaitable[str]]


class DeletionOutcome(StrEnum):
    replaced_by_upgrade = auto()  # old subscription cancelled as part of an upgrade checkout
    stale_subscription = auto()  # not the subscription the user is currently on
    scheduled_downgrade = auto()  # PRO period ended after a scheduled downgrade
    cancellation = auto()  # genuine end of the paid plan


def resolve_deletion(
    user: User,
    intent: PendingBillingIntent | None,
    deleted_subscription_id: str,
    *,
    guard_window_seconds: int,
    now: datetime | None = None,
) -> DeletionOutcome:
    """Classify a subscription deletion. Ambiguous cases resolve towards not downgrading."""
    # An upgrade that replaced this subscription guards its deletion however late it arrives
    if (
        intent is not None
        and intent.kind == IntentKind.upgrade
        and intent.replaced_subscription_id == deleted_subscription_id
    ):
        return DeletionOutcome.replaced_by_upgrade
    state = intent_state(intent, now)
    if user.billing_subscription_ref and user.billing_subscription_ref != deleted_subscription_id:
        return DeletionOutcome.stale_subscription
    if state in (IntentState.checkout_pending, IntentState.upgrade_in_flight) and opened_within(
        intent, guard_window_seconds, now
    ):
        return DeletionOutcome.replaced_by_upgrade
    if state == IntentState.downgrade_scheduled:
        return DeletionOutcome.scheduled_downgrade
    return DeletionOutcome.cancellation


async def _retrieve_subscription(
    processor: StripeProcessor, subscription_id: str | None, **context: Any
) -> SubscriptionSnapshot | None:
    if not subscription_id:
        return None
    try:
        return await processor.retrieve_subscription(subscription_id)
    except PaymentProcessorError as e:
        logger.bind(subscription_id=subscription_id, **context).warning(f"Subscription lookup failed, continuing: {e}")
        return None


def _set_window(user: User, start: datetime | None, end: datetime | None) -> None:
    if start is not None:
        user.subscription_start_date = start
    if end is not None:
        user.subscription_end_date = end


def _invoice_window(
    event: InvoicePaid, subscription: SubscriptionSnapshot | None
) -> tuple[datetime | None, datetime | None]:
    if subscription and subscription.current_period_start and subscription.current_period_end:
        return subscription.current_period_start, subscription.current_period_end
    # Invoices for a freshly created subscription report start == end, the line item has the real period
    if event.period_start and event.period_end and event.period_start != event.period_end:
        return event.period_start, event.period_end
    return event.line_period_start, event.line_period_end


async def _resolve_payment_plan(
    user: User,
    intent: PendingBillingIntent | None,
    subscription: SubscriptionSnapshot | None,
    processor: StripeProcessor,
    settings: Settings,
) -> tuple[PlanType, int]:
    """Plan and credits a successful payment applies, most specific source first."""
    plan: PlanType | None = None
    credits: int | None = None

    if hint := plan_hint(intent):
        plan, credits = hint
    elif subscription is not None:
        plan = subscription.plan or infer_plan_from_price(settings, subscription.unit_amount, subscription.product_name)
        credits = subscription.credits if subscription.plan else None

    if plan is None and user.billing_customer_ref:
        try:
            session = await processor.latest_checkout_session(user.billing_customer_ref)
        except PaymentProcessorError as e:
            logger.bind(user_id=user.id).warning(f"Checkout session lookup failed, continuing: {e}")
            session = None
        if session is not None and session.plan is not None:
            plan, credits = session.plan, session.credits

    if plan is None or plan == PlanType.FREE:
        plan = user.plan_type if user.plan_type != PlanType.FREE else PlanType.BASIC
        credits = None

    return plan, credits or get_plan(settings, plan).credits


async def _handle_invoice_paid(
    event: InvoicePaid, db: AsyncSession, processor: StripeProcessor, settings: Settings
) -> str:
    log = logger.bind(event_id=event.event_id, customer_id=event.customer_id, invoice_id=event.invoice_id)
    user = await find_user_by_customer(db, event.customer_id)
    if user is None:
        log.warning("Invoice paid for unknown customer")
        return "unknown_customer"
    log = log.bind(user_id=user.id)

    subscription_id = event.subscription_id or user.billing_subscription_ref
    if subscription_id is None and event.customer_id:
        try:
            subscription_id = await processor.latest_subscription_id(event.customer_id)
        except PaymentProcessorError as e:
            log.warning(f"Subscription backfill failed, continuing: {e}")

    subscription = await _retrieve_subscription(processor, subscription_id, user_id=user.id)
    intent = await get_intent(db, user.id)
    plan, new_credits = await _resolve_payment_plan(user, intent, subscription, processor, settings)
    start, end = _invoice_window(event, subscription)

    remaining = max(0, user.credits)
    balance = await ledger.apply_grant(
        db,
        user.id,
        new_credits,
        meta={
            "plan": plan,
            "invoice_id": event.invoice_id,
            "subscription_id": subscription_id,
            "new_credits": new_credits,
            "remaining_credits": remaining,
            "total_credits": new_credits + remaining,
        },
        event_id=event.event_id,
    )

    user.plan_type = plan
    user.scraping_frozen = False
    if subscription_id:
        user.billing_subscription_ref = subscription_id
    _set_window(user, start, end)
    user.updated = utcnow()
    if intent is not None and intent.kind != IntentKind.downgrade:
        await db.delete(intent)

    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        log.warning("Grant for this event already in the ledger, skipping")
        return "duplicate_grant"

    log.bind(plan=plan, credits=new_credits, balance=balance).info("Payment applied")
    await log_event(
        "credits_granted", user_id=user.id, event_id=event.event_id, plan=plan, credits_delta=new_credits
    )
    return "granted"


async def _handle_checkout_completed(
    event: CheckoutCompleted, db: AsyncSession, processor: StripeProcessor, settings: Settings
) -> str:
    session = event.session
    log = logger.bind(event_id=event.event_id, session_id=session.id, customer_id=session.customer_id)
    if session.mode != "subscription":
        log.info("Ignoring non-subscription checkout")
        return "ignored_mode"

    user = await find_user_by_customer(db, session.customer_id) or await find_user_by_checkout_session(db, session.id)
    if user is None:
        log.warning("Checkout completed for unknown customer")
        return "unknown_customer"

    if session.customer_id and not user.billing_customer_ref:
        user.billing_customer_ref = session.customer_id
    if session.subscription_id:
        user.billing_subscription_ref = session.subscription_id
        subscription = await _retrieve_subscription(processor, session.subscription_id, user_id=user.id)
        if subscription is not None:
            _set_window(user, subscription.current_period_start, subscription.current_period_end)
    user.updated = utcnow()
    await db.commit()

    log.bind(user_id=user.id, subscription_id=session.subscription_id).info("Checkout completed")
    return "linked"


async def _handle_subscription_created(
    event: SubscriptionCreated, db: AsyncSession, processor: StripeProcessor, settings: Settings
) -> str:
    subscription = event.subscription
    user = await find_user_by_customer(db, subscription.customer_id)
    if user is None:
        logger.bind(event_id=event.event_id, customer_id=subscription.customer_id).warning(
            "Subscription created for unknown customer"
        )
        return "unknown_customer"

    user.billing_subscription_ref = subscription.id
    _set_window(user, subscription.current_period_start, subscription.current_period_end)
    user.updated = utcnow()
    await db.commit()

    logger.bind(user_id=user.id, subscription_id=subscription.id).info("Subscription created")
    return "linked"


async def _handle_subscription_updated(
    event: SubscriptionUpdated, db: AsyncSession, processor: StripeProcessor, settings: Settings
) -> str:
    subscription = event.subscription
    log = logger.bind(event_id=event.event_id, subscription_id=subscription.id, status=subscription.status)
    user = await find_user_by_customer(db, subscription.customer_id)
    if user is None:
        log.warning("Subscription updated for unknown customer")
        return "unknown_customer"
    log = log.bind(user_id=user.id)

    live = subscription.status is None or subscription.status in LIVE_SUBSCRIPTION_STATUSES
    if user.billing_subscription_ref and user.billing_subscription_ref != subscription.id and not live:
        log.info("Ignoring update for a replaced subscription")
        return "stale_subscription"

    _set_window(user, subscription.current_period_start, subscription.current_period_end)
    user.updated = utcnow()

    plan = subscription.plan or infer_plan_from_price(settings, subscription.unit_amount, subscription.product_name)
    outcome = "refreshed"
    if plan is not None and live:
        previous = user.plan_type
        user.plan_type = plan
        if previous != PlanType.PRO and plan == PlanType.PRO:
            hint = plan_hint(await get_intent(db, user.id))
            if hint is not None and hint[0] == PlanType.PRO and hint[1]:
                # The matching invoice.paid grants from the intent
                outcome = "upgrade_pending_payment"
            else:
                pro = get_plan(settings, PlanType.PRO)
                await ledger.apply_grant(
                    db,
                    user.id,
                    pro.credits,
                    meta={"plan": PlanType.PRO, "subscription_id": subscription.id, "previous_plan": previous},
                    event_id=event.event_id,
                )
                user.scraping_frozen = False
                outcome = "upgraded"

    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        log.warning("Grant for this event already in the ledger, skipping")
        return "duplicate_grant"

    log.bind(plan=user.plan_type).info(f"Subscription updated: {outcome}")
    return outcome


async def _handle_subscription_deleted(
    event: SubscriptionDeleted, db: AsyncSession, processor: StripeProcessor, settings: Settings
) -> str:
    subscription = event.subscription
    log = logger.bind(event_id=event.event_id, subscription_id=subscription.id)
    user = await find_user_by_customer(db, subscription.customer_id)
    if user is None:
        log.warning("Subscription deleted for unknown customer")
        return "unknown_customer"
    log = log.bind(user_id=user.id)

    intent = await get_intent(db, user.id)
    outcome = resolve_deletion(
        user, intent, subscription.id, guard_window_seconds=settings.checkout_guard_window_seconds
    )

    match outcome:
        case DeletionOutcome.stale_subscription:
            log.bind(current_subscription_id=user.billing_subscription_ref).info("Ignoring deletion of old subscription")
            return outcome

        case DeletionOutcome.replaced_by_upgrade:
            if user.billing_subscription_ref == subscription.id:
                user.billing_subscription_ref = None
            assert intent is not None
            # Keep the plan hint for the replacement checkout's payment
            intent.kind = IntentKind.checkout
            intent.replaced_subscription_id = None
            log.info("Subscription replaced by upgrade, plan unchanged")

        case DeletionOutcome.scheduled_downgrade:
            basic = get_plan(settings, PlanType.BASIC)
            customer_id = user.billing_customer_ref or subscription.customer_id
            assert customer_id is not None
            try:
                price_id = basic.price_id or await processor.create_price(basic)
                new_subscription_id = await processor.create_subscription(
                    customer_id=customer_id, price_id=price_id, metadata=plan_metadata(basic, user.id)
                )
            except PaymentProcessorError as e:
                # The downgrade intent stays so a resent event can retry the resubscribe
                log.error(f"Basic subscription for scheduled downgrade failed: {e}")
                await log_event(
                    "downgrade_resubscribe_failed", user_id=user.id, event_id=event.event_id, plan=basic.plan
                )
                await db.rollback()
                return DOWNGRADE_RESUBSCRIBE_FAILED
            user.billing_subscription_ref = new_subscription_id
            await open_intent(
                db,
                user.id,
                kind=IntentKind.checkout,
                target_plan=basic.plan,
                target_credits=basic.credits,
                ttl_seconds=settings.checkout_intent_ttl_seconds,
            )
            log.bind(new_subscription_id=new_subscription_id).info("Pro period ended, Basic subscription created")

        case DeletionOutcome.cancellation:
            user.plan_type = PlanType.FREE
            user.scraping_frozen = True
            user.subscription_start_date = None
            user.subscription_end_date = None
            if user.billing_subscription_ref == subscription.id:
                user.billing_subscription_ref = None
            await clear_intent(db, user.id)
            log.info("Subscription cancelled, downgraded to Free")

    user.updated = utcnow()
    await db.commit()
    return outcome


HANDLERS: dict[EventType, Handler] = {
    EventType.invoice_paid: _handle_invoice_paid,
    EventType.checkout_completed: _handle_checkout_completed,
    EventType.subscription_created: _handle_subscription_created,
    EventType.subscription_updated: _handle_subscription_updated,
    EventType.subscription_deleted: _handle_subscription_deleted,
}


async def process_event(event: BillingEvent, db: AsyncSession, processor: StripeProcessor, settings: Settings) -> str:
    """Apply one admitted event. Returns the handler's outcome label."""
    handler = HANDLERS[event.type]
    return await handler(event, db, processor, settings)
