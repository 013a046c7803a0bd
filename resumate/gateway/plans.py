"""Paid plan catalog: credits, prices and how to recognize a plan in processor payloads."""

import re

from pydantic import BaseModel

from resumate.gateway.config import Settings
from resumate.gateway.domain_models import PlanType


class PlanSpec(BaseModel):
    plan: PlanType
    label: str  # Human-facing name, also written to Stripe metadata
    credits: int
    price_cents: int
    price_id: str | None


def plan_catalog(settings: Settings) -> dict[PlanType, PlanSpec]:
    return {
        PlanType.BASIC: PlanSpec(
            plan=PlanType.BASIC,
            label="Basic",
            credits=settings.basic_plan_credits,
            price_cents=settings.basic_price_cents,
            price_id=settings.stripe_price_basic,
        ),
        PlanType.PRO: PlanSpec(
            plan=PlanType.PRO,
            label="Pro",
            credits=settings.pro_plan_credits,
            price_cents=settings.pro_price_cents,
            price_id=settings.stripe_price_pro,
        ),
    }


def get_plan(settings: Settings, plan: PlanType) -> PlanSpec:
    catalog = plan_catalog(settings)
    if plan not in catalog:
        raise ValueError(f"{plan} is not a paid plan")
    return catalog[plan]


def parse_plan_label(value: str | None) -> PlanType | None:
    """Read a plan from metadata, accepting both "Pro" labels and "PRO" enum values."""
    if not value:
        return None
    match value.strip().upper():
        case "PRO":
            return PlanType.PRO
        case "BASIC":
            return PlanType.BASIC
        case _:
            return None


def parse_credits(value: str | int | None) -> int | None:
    if value is None or value == "":
        return None
    try:
        credits = int(value)
    except (TypeError, ValueError):
        return None
    return credits if credits > 0 else None


def infer_plan_from_price(settings: Settings, unit_amount: int | None, product_name: str | None) -> PlanType | None:
    """Fallback when a subscription carries no plan metadata. PRO wins if both match."""
    inferred = None
    name = product_name or ""
    if unit_amount == settings.basic_price_cents or re.search(r"\bbasic\b", name, re.IGNORECASE):
        inferred = PlanType.BASIC
    if unit_amount == settings.pro_price_cents or re.search(r"\bpro\b", name, re.IGNORECASE):
        inferred = PlanType.PRO
    return inferred
