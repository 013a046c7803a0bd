"""User-initiated billing actions: checkout, in-place upgrade, scheduled downgrade, cancellation, portal.

None of these grant credits or move a user onto a paid plan. They prepare
state (a pending intent, a processor-side change) and the webhook handlers
apply the actual transition once the processor confirms it.
"""

from loguru import logger
from pydantic import BaseModel
from sqlmodel.ext.asyncio.session import AsyncSession

from resumate.gateway import credits as ledger
from resumate.gateway.config import Settings
from resumate.gateway.domain_models import IntentKind, PendingBillingIntent, PlanType, SubscriptionCancellation, User
from resumate.gateway.exceptions import (
    AlreadyBasicError,
    DowngradeNotAllowedError,
    PaymentProcessorError,
    ProStillActiveError,
    SubscriptionStateError,
    ValidationError,
)
from resumate.gateway.intents import attach_checkout, clear_intent, open_intent
from resumate.gateway.metrics import log_event
from resumate.gateway.plans import PlanSpec, get_plan
from resumate.gateway.processor import StripeProcessor
from resumate.gateway.utils import utcnow

MIN_CANCEL_REASON_LENGTH = 4


class CheckoutResult(BaseModel):
    checkout_url: str | None = None
    session_id: str | None = None
    upgraded_in_place: bool = False


def check_checkout_allowed(user: User, requested: PlanType) -> None:
    """Plan-transition rules for starting a checkout. Raises a CheckoutRejectedError subclass."""
    match requested, user.plan_type:
        case PlanType.FREE, _:
            raise ValidationError("The Free plan can't be purchased")
        case PlanType.BASIC, PlanType.BASIC:
            raise AlreadyBasicError()
        case PlanType.BASIC, PlanType.PRO:
            raise DowngradeNotAllowedError()
        case PlanType.PRO, PlanType.PRO if user.credits > 0:
            raise ProStillActiveError(user.credits)


async def start_checkout(
    db: AsyncSession,
    processor: StripeProcessor,
    settings: Settings,
    user: User,
    requested: PlanType,
) -> CheckoutResult:
    log = logger.bind(user_id=user.id, plan=requested, current_plan=user.plan_type)
    check_checkout_allowed(user, requested)
    plan = get_plan(settings, requested)

    intent: PendingBillingIntent | None = None
    if user.plan_type == PlanType.BASIC and requested == PlanType.PRO and user.billing_subscription_ref:
        applied, intent = await upgrade_in_place(db, processor, settings, user, plan)
        if applied:
            return CheckoutResult(upgraded_in_place=True)

    customer_id = await ensure_customer(db, processor, user)
    session = await processor.create_checkout_session(customer_id=customer_id, plan=plan, user_id=user.id)

    if intent is None:
        intent = await open_intent(
            db,
            user.id,
            kind=IntentKind.checkout,
            target_plan=plan.plan,
            target_credits=plan.credits,
            ttl_seconds=settings.checkout_intent_ttl_seconds,
        )
    attach_checkout(intent, session.id)
    await db.commit()

    log.bind(session_id=session.id).info("Checkout session created")
    await log_event("checkout_started", user_id=user.id, plan=requested, data={"session_id": session.id})
    return CheckoutResult(checkout_url=session.url, session_id=session.id)


async def upgrade_in_place(
    db: AsyncSession,
    processor: StripeProcessor,
    settings: Settings,
    user: User,
    plan: PlanSpec,
) -> tuple[bool, PendingBillingIntent]:
    """BASIC -> PRO on an existing subscription.

    Returns (True, intent) when the subscription item was swapped in place.
    Otherwise the old subscription has been cancelled and (False, intent) is
    returned with an upgrade intent naming the replaced subscription; the
    caller continues with a fresh checkout.
    """
    old_subscription_id = user.billing_subscription_ref
    assert old_subscription_id is not None
    log = logger.bind(user_id=user.id, subscription_id=old_subscription_id)

    try:
        await processor.update_subscription_price(old_subscription_id, plan=plan, user_id=user.id)
    except PaymentProcessorError as e:
        log.warning(f"In-place upgrade failed, falling back to checkout: {e}")
    else:
        intent = await open_intent(
            db,
            user.id,
            kind=IntentKind.upgrade,
            target_plan=plan.plan,
            target_credits=plan.credits,
            ttl_seconds=settings.checkout_intent_ttl_seconds,
        )
        await db.commit()
        log.info("Subscription upgraded in place")
        await log_event("checkout_started", user_id=user.id, plan=plan.plan, outcome="upgraded_in_place")
        return True, intent

    # Committed before the cancel: the deletion webhook may arrive before the cancel call returns
    intent = await open_intent(
        db,
        user.id,
        kind=IntentKind.upgrade,
        target_plan=plan.plan,
        target_credits=plan.credits,
        replaced_subscription_id=old_subscription_id,
        ttl_seconds=settings.checkout_intent_ttl_seconds,
    )
    await db.commit()

    try:
        await processor.cancel_subscription(old_subscription_id)
    except PaymentProcessorError:
        await clear_intent(db, user.id)
        await db.commit()
        raise

    log.info("Cancelled subscription for upgrade checkout")
    return False, intent


async def ensure_customer(db: AsyncSession, processor: StripeProcessor, user: User) -> str:
    """Processor customer for the user, created if missing or deleted out-of-band."""
    if user.billing_customer_ref:
        if await processor.customer_exists(user.billing_customer_ref):
            return user.billing_customer_ref
        logger.bind(user_id=user.id, customer_id=user.billing_customer_ref).warning(
            "Billing customer missing at processor, recreating"
        )

    customer_id = await processor.create_customer(email=user.email, name=user.name, user_id=user.id)
    user.billing_customer_ref = customer_id
    user.updated = utcnow()
    await db.commit()
    return customer_id


async def schedule_downgrade(db: AsyncSession, processor: StripeProcessor, settings: Settings, user: User) -> None:
    """PRO -> BASIC at the end of the current period. Plan and credits stay untouched until then."""
    if user.plan_type != PlanType.PRO:
        raise SubscriptionStateError("NOT_PRO", "Only Pro subscriptions can be downgraded")
    if not user.billing_subscription_ref:
        raise SubscriptionStateError("NO_SUBSCRIPTION", "No active subscription to downgrade")

    await processor.schedule_cancellation(
        user.billing_subscription_ref,
        metadata={"downgrade_to": PlanType.BASIC.value, "user_id": user.id},
    )

    basic = get_plan(settings, PlanType.BASIC)
    await open_intent(db, user.id, kind=IntentKind.downgrade, target_plan=basic.plan, target_credits=basic.credits)
    await db.commit()

    logger.bind(user_id=user.id, subscription_id=user.billing_subscription_ref).info("Downgrade to Basic scheduled")
    await log_event("downgrade_scheduled", user_id=user.id, plan=PlanType.BASIC)


async def cancel_subscription(db: AsyncSession, processor: StripeProcessor, user: User, reason: str | None) -> None:
    """Immediate cancellation. The remaining balance is forfeited."""
    reason = (reason or "").strip()
    if len(reason) < MIN_CANCEL_REASON_LENGTH:
        raise ValidationError("Cancellation reason required")
    if user.plan_type == PlanType.FREE or not user.billing_subscription_ref:
        raise SubscriptionStateError("ALREADY_FREE", "No active subscription to cancel")

    subscription_id = user.billing_subscription_ref
    previous_plan = user.plan_type
    await processor.cancel_subscription(subscription_id)

    db.add(SubscriptionCancellation(user_id=user.id, plan_type=previous_plan, reason=reason))
    forfeited = await ledger.apply_forfeit(db, user, meta={"subscription_id": subscription_id, "plan": previous_plan})
    user.plan_type = PlanType.FREE
    user.scraping_frozen = True
    user.billing_subscription_ref = None
    user.subscription_start_date = None
    user.subscription_end_date = None
    user.updated = utcnow()
    await clear_intent(db, user.id)
    await db.commit()

    logger.bind(user_id=user.id, subscription_id=subscription_id, forfeited=forfeited).info("Subscription cancelled")
    await log_event("subscription_cancelled", user_id=user.id, plan=previous_plan, credits_delta=-forfeited)


async def create_portal_session(processor: StripeProcessor, settings: Settings, user: User) -> str:
    if not user.billing_customer_ref:
        raise SubscriptionStateError("NO_CUSTOMER", "No billing account yet")
    return_url = f"{settings.app_base_url.rstrip('/')}/dashboard/settings"
    return await processor.create_portal_session(user.billing_customer_ref, return_url=return_url)


async def checkout_paid(processor: StripeProcessor, session_id: str) -> bool:
    try:
        session = await processor.retrieve_checkout_session(session_id)
    except PaymentProcessorError:
        return False
    return session.payment_status == "paid" or session.status == "complete"
