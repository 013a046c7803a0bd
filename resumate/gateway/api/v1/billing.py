import time

import stripe
from fastapi import APIRouter, HTTPException, Request, status
from loguru import logger
from pydantic import BaseModel

from resumate.gateway import checkout
from resumate.gateway.checkout import CheckoutResult
from resumate.gateway.deps import CurrentUser, DbSession, PaymentProcessorDep, SettingsDep
from resumate.gateway.domain_models import PlanType
from resumate.gateway.idempotency import Admission, admit, release
from resumate.gateway.metrics import log_event
from resumate.gateway.stripe_events import decode_event, event_snapshot
from resumate.gateway.webhooks import process_event

router = APIRouter(prefix="/v1/billing", tags=["Billing"])


class CheckoutRequest(BaseModel):
    plan: PlanType


class CancelRequest(BaseModel):
    reason: str = ""


class PortalResponse(BaseModel):
    url: str


class CheckoutStatusResponse(BaseModel):
    paid: bool


@router.post("/checkout")
async def create_checkout_session(
    request: CheckoutRequest,
    settings: SettingsDep,
    db: DbSession,
    user: CurrentUser,
    processor: PaymentProcessorDep,
) -> CheckoutResult:
    """Start a subscription checkout, or upgrade an existing Basic subscription in place."""
    return await checkout.start_checkout(db, processor, settings, user, request.plan)


@router.post("/downgrade-schedule")
async def schedule_downgrade(
    settings: SettingsDep,
    db: DbSession,
    user: CurrentUser,
    processor: PaymentProcessorDep,
) -> dict:
    """Move from Pro to Basic when the current period ends."""
    await checkout.schedule_downgrade(db, processor, settings, user)
    return {"status": "ok"}


@router.post("/cancel")
async def cancel_subscription(
    request: CancelRequest,
    db: DbSession,
    user: CurrentUser,
    processor: PaymentProcessorDep,
) -> dict:
    await checkout.cancel_subscription(db, processor, user, request.reason)
    return {"status": "ok"}


@router.post("/portal")
async def create_portal_session(
    settings: SettingsDep,
    user: CurrentUser,
    processor: PaymentProcessorDep,
) -> PortalResponse:
    return PortalResponse(url=await checkout.create_portal_session(processor, settings, user))


@router.get("/checkout/{session_id}/status")
async def get_checkout_status(
    session_id: str,
    user: CurrentUser,
    processor: PaymentProcessorDep,
) -> CheckoutStatusResponse:
    """Whether the processor considers a checkout session paid. Credits follow via webhook."""
    return CheckoutStatusResponse(paid=await checkout.checkout_paid(processor, session_id))


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    settings: SettingsDep,
    db: DbSession,
    processor: PaymentProcessorDep,
) -> dict:
    """Handle Stripe webhook events.

    Always acknowledges verified events: a handler failure is logged and
    reported as "failed" rather than left for Stripe to redeliver blindly.
    """
    if not settings.stripe_webhook_secret:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Billing is not configured")

    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    try:
        raw_event = processor.construct_event(payload, sig_header)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")

    snapshot = event_snapshot(raw_event)
    event_id, event_type = snapshot["id"], snapshot["type"]
    log = logger.bind(event_id=event_id, event_type=event_type)

    event = decode_event(raw_event)
    if await admit(db, event_id, event_type, snapshot) == Admission.duplicate:
        await log_event("webhook_processed", event_type=event_type, event_id=event_id, outcome="duplicate")
        return {"status": "duplicate"}

    if event is None:
        log.debug("Ignoring unsupported webhook event")
        return {"status": "ignored", "event_type": event_type}

    start = time.perf_counter()
    try:
        outcome = await process_event(event, db, processor, settings)
    except Exception as e:
        log.exception(f"Webhook handler failed: {e}")
        await release(db, event_id)
        await log_event(
            "webhook_failed",
            event_type=event_type,
            event_id=event_id,
            outcome=type(e).__name__,
            duration_ms=int((time.perf_counter() - start) * 1000),
        )
        return {"status": "failed"}

    duration_ms = int((time.perf_counter() - start) * 1000)
    log.bind(outcome=outcome, duration_ms=duration_ms).info("Webhook processed")
    await log_event(
        "webhook_processed", event_type=event_type, event_id=event_id, outcome=outcome, duration_ms=duration_ms
    )
    return {"status": "ok"}
