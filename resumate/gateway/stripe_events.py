"""Typed views of the Stripe objects the billing core reacts to.

Stripe payload shapes drift between API versions (subscription periods moved
onto subscription items, invoices reference their subscription through
`parent.subscription_details`, customers may arrive expanded). All of that
probing happens here, once, so handlers only ever see these models.
"""

import datetime as dt
from collections.abc import Mapping
from datetime import datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel

from resumate.gateway.domain_models import PlanType
from resumate.gateway.plans import parse_credits, parse_plan_label


class EventType(StrEnum):
    invoice_paid = "invoice.paid"
    checkout_completed = "checkout.session.completed"
    subscription_created = "customer.subscription.created"
    subscription_updated = "customer.subscription.updated"
    subscription_deleted = "customer.subscription.deleted"


class SubscriptionSnapshot(BaseModel):
    id: str
    customer_id: str | None = None
    status: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    item_id: str | None = None  # first subscription item, the one carrying the plan price
    plan: PlanType | None = None  # from metadata
    credits: int | None = None  # from metadata
    unit_amount: int | None = None
    product_name: str | None = None


class CheckoutSessionSnapshot(BaseModel):
    id: str
    customer_id: str | None = None
    mode: str | None = None
    subscription_id: str | None = None
    url: str | None = None
    status: str | None = None
    payment_status: str | None = None
    plan: PlanType | None = None
    credits: int | None = None


class InvoicePaid(BaseModel):
    type: Literal[EventType.invoice_paid] = EventType.invoice_paid
    event_id: str
    invoice_id: str | None = None
    customer_id: str | None = None
    subscription_id: str | None = None
    amount_paid: int | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None
    line_period_start: datetime | None = None
    line_period_end: datetime | None = None


class CheckoutCompleted(BaseModel):
    type: Literal[EventType.checkout_completed] = EventType.checkout_completed
    event_id: str
    session: CheckoutSessionSnapshot


class SubscriptionCreated(BaseModel):
    type: Literal[EventType.subscription_created] = EventType.subscription_created
    event_id: str
    subscription: SubscriptionSnapshot


class SubscriptionUpdated(BaseModel):
    type: Literal[EventType.subscription_updated] = EventType.subscription_updated
    event_id: str
    subscription: SubscriptionSnapshot


class SubscriptionDeleted(BaseModel):
    type: Literal[EventType.subscription_deleted] = EventType.subscription_deleted
    event_id: str
    subscription: SubscriptionSnapshot


BillingEvent = InvoicePaid | CheckoutCompleted | SubscriptionCreated | SubscriptionUpdated | SubscriptionDeleted


def _field(obj: Any, key: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, Mapping):
        return obj.get(key)
    # Item access first: attribute access on Stripe objects shadows keys like `items`
    try:
        return obj[key]
    except (KeyError, TypeError, IndexError):
        return getattr(obj, key, None)


def _path(obj: Any, *keys: str) -> Any:
    for key in keys:
        obj = _field(obj, key)
        if obj is None:
            return None
    return obj


def _timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=dt.UTC)


def _ref_id(value: Any) -> str | None:
    """Stripe references are either an id string or the expanded object."""
    if value is None or isinstance(value, str):
        return value or None
    return _field(value, "id")


def _first_item(obj: Any) -> Any:
    items = _path(obj, "items", "data") or []
    return items[0] if items else None


def _metadata(obj: Any) -> Any:
    return _field(obj, "metadata") or {}


def decode_subscription(obj: Any) -> SubscriptionSnapshot:
    item = _first_item(obj)
    price = _field(item, "price")
    product = _field(price, "product")
    metadata = _metadata(obj)

    # Newer API versions only expose the period on the subscription item
    period_start = _field(obj, "current_period_start") or _field(item, "current_period_start")
    period_end = _field(obj, "current_period_end") or _field(item, "current_period_end")

    product_name = _field(product, "name") if product is not None and not isinstance(product, str) else None
    return SubscriptionSnapshot(
        id=_field(obj, "id"),
        customer_id=_ref_id(_field(obj, "customer")),
        status=_field(obj, "status"),
        current_period_start=_timestamp(period_start),
        current_period_end=_timestamp(period_end),
        cancel_at_period_end=bool(_field(obj, "cancel_at_period_end")),
        item_id=_field(item, "id"),
        plan=parse_plan_label(_field(metadata, "plan")),
        credits=parse_credits(_field(metadata, "credits")),
        unit_amount=_field(price, "unit_amount"),
        product_name=product_name or _field(price, "nickname"),
    )


def decode_checkout_session(obj: Any) -> CheckoutSessionSnapshot:
    metadata = _metadata(obj)
    return CheckoutSessionSnapshot(
        id=_field(obj, "id"),
        customer_id=_ref_id(_field(obj, "customer")),
        mode=_field(obj, "mode"),
        subscription_id=_ref_id(_field(obj, "subscription")),
        url=_field(obj, "url"),
        status=_field(obj, "status"),
        payment_status=_field(obj, "payment_status"),
        plan=parse_plan_label(_field(metadata, "plan")),
        credits=parse_credits(_field(metadata, "credits")),
    )


def decode_invoice(event_id: str, obj: Any) -> InvoicePaid:
    subscription_id = (
        _ref_id(_field(obj, "subscription"))
        or _field(obj, "subscription_exposed_id")
        or _ref_id(_path(obj, "parent", "subscription_details", "subscription"))
    )
    lines = _path(obj, "lines", "data") or []
    line_period = _field(lines[0], "period") if lines else None
    return InvoicePaid(
        event_id=event_id,
        invoice_id=_field(obj, "id"),
        customer_id=_ref_id(_field(obj, "customer")),
        subscription_id=subscription_id,
        amount_paid=_field(obj, "amount_paid"),
        period_start=_timestamp(_field(obj, "period_start")),
        period_end=_timestamp(_field(obj, "period_end")),
        line_period_start=_timestamp(_field(line_period, "start")),
        line_period_end=_timestamp(_field(line_period, "end")),
    )


def decode_event(event: Any) -> BillingEvent | None:
    """Decode a verified Stripe event. Returns None for event types we don't handle."""
    event_id = _field(event, "id")
    obj = _path(event, "data", "object")
    match _field(event, "type"):
        case EventType.invoice_paid:
            return decode_invoice(event_id, obj)
        case EventType.checkout_completed:
            return CheckoutCompleted(event_id=event_id, session=decode_checkout_session(obj))
        case EventType.subscription_created:
            return SubscriptionCreated(event_id=event_id, subscription=decode_subscription(obj))
        case EventType.subscription_updated:
            return SubscriptionUpdated(event_id=event_id, subscription=decode_subscription(obj))
        case EventType.subscription_deleted:
            return SubscriptionDeleted(event_id=event_id, subscription=decode_subscription(obj))
        case _:
            return None


def event_snapshot(event: Any) -> dict[str, Any]:
    """Minimal payload kept in the billing event log."""
    obj = _path(event, "data", "object")
    return {"id": _field(event, "id"), "type": _field(event, "type"), "object_id": _field(obj, "id")}
