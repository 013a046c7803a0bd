from fastapi import APIRouter

from resumate.gateway.billing_state import BillingSummary, summarize
from resumate.gateway.deps import CurrentUser, DbSession
from resumate.gateway.intents import IntentState, get_intent, intent_state

router = APIRouter(prefix="/v1/users", tags=["Users"])


@router.get("/me/billing")
async def get_my_billing(db: DbSession, user: CurrentUser) -> BillingSummary:
    """Current plan, balance and the renewal/upgrade prompts derived from them."""
    intent = await get_intent(db, user.id)
    return summarize(
        user.plan_type,
        user.credits,
        user.subscription_end_date,
        downgrade_scheduled=intent_state(intent) == IntentState.downgrade_scheduled,
    )
