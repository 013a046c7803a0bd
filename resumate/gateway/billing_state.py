"""User-facing billing flags derived from plan, balance and subscription window. No I/O."""

from datetime import datetime

from pydantic import BaseModel

from resumate.gateway.constants import LOW_CREDIT_THRESHOLD
from resumate.gateway.domain_models import PlanType
from resumate.gateway.utils import ensure_utc, utcnow


class BillingSummary(BaseModel):
    plan_type: PlanType
    credits: int
    is_low_credits: bool
    subscription_active: bool
    needs_renewal: bool
    needs_upgrade: bool
    subscription_end_date: datetime | None = None
    downgrade_scheduled: bool = False


def summarize(
    plan_type: PlanType,
    credits: int,
    subscription_end_date: datetime | None,
    now: datetime | None = None,
    *,
    downgrade_scheduled: bool = False,
) -> BillingSummary:
    end = ensure_utc(subscription_end_date)
    is_low = credits < LOW_CREDIT_THRESHOLD
    active = end is not None and end > (now or utcnow())
    paid = plan_type != PlanType.FREE
    return BillingSummary(
        plan_type=plan_type,
        credits=credits,
        is_low_credits=is_low,
        subscription_active=active,
        needs_renewal=is_low and paid and not active,
        needs_upgrade=is_low and paid and active and plan_type != PlanType.PRO,
        subscription_end_date=end,
        downgrade_scheduled=downgrade_scheduled,
    )
