"""Stripe access for the billing core.

Every call goes through `StripeProcessor` so that handlers deal with decoded
snapshots and a single failure type (`PaymentProcessorError`), never with raw
Stripe objects or the SDK's exception tree.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import stripe
from loguru import logger
from pydantic import BaseModel

from resumate.gateway.config import Settings
from resumate.gateway.exceptions import PaymentProcessorError
from resumate.gateway.plans import PlanSpec
from resumate.gateway.stripe_events import (
    CheckoutSessionSnapshot,
    SubscriptionSnapshot,
    decode_checkout_session,
    decode_subscription,
)


class CheckoutSessionRef(BaseModel):
    id: str
    url: str


@contextmanager
def _processor_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except stripe.StripeError as e:
        logger.bind(operation=operation).warning(f"Stripe call failed: {e}")
        raise PaymentProcessorError(operation, str(e)) from e


def plan_metadata(plan: PlanSpec, user_id: str) -> dict[str, str]:
    return {"plan": plan.label, "credits": str(plan.credits), "user_id": user_id}


class StripeProcessor:
    def __init__(self, client: stripe.StripeClient, settings: Settings):
        self._client = client
        self._settings = settings

    async def create_customer(self, *, email: str | None, name: str | None, user_id: str) -> str:
        params: dict[str, Any] = {"metadata": {"user_id": user_id}}
        if email:
            params["email"] = email
        if name:
            params["name"] = name
        with _processor_errors("create_customer"):
            customer = await self._client.v1.customers.create_async(params=params)
        return customer.id

    async def customer_exists(self, customer_id: str) -> bool:
        """False when the customer was deleted out-of-band (or never existed in this account)."""
        try:
            customer = await self._client.v1.customers.retrieve_async(customer_id)
        except stripe.InvalidRequestError as e:
            if e.code == "resource_missing" or "No such customer" in str(e):
                return False
            raise PaymentProcessorError("retrieve_customer", str(e)) from e
        except stripe.StripeError as e:
            raise PaymentProcessorError("retrieve_customer", str(e)) from e
        return not getattr(customer, "deleted", False)

    async def create_checkout_session(self, *, customer_id: str, plan: PlanSpec, user_id: str) -> CheckoutSessionRef:
        if not plan.price_id:
            raise PaymentProcessorError("create_checkout_session", f"no Stripe price configured for {plan.plan}")
        base = self._settings.app_base_url.rstrip("/")
        metadata = plan_metadata(plan, user_id)
        with _processor_errors("create_checkout_session"):
            session = await self._client.v1.checkout.sessions.create_async(
                params={
                    "mode": "subscription",
                    "customer": customer_id,
                    "client_reference_id": user_id,
                    "line_items": [{"price": plan.price_id, "quantity": 1}],
                    "success_url": f"{base}/dashboard/payment-status?session_id={{CHECKOUT_SESSION_ID}}",
                    "cancel_url": f"{base}/dashboard/settings?checkout=cancel",
                    "allow_promotion_codes": True,
                    "metadata": metadata,
                    "subscription_data": {"metadata": metadata},
                }
            )
        return CheckoutSessionRef(id=session.id, url=session.url)

    async def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionSnapshot:
        with _processor_errors("retrieve_checkout_session"):
            session = await self._client.v1.checkout.sessions.retrieve_async(session_id)
        return decode_checkout_session(session)

    async def latest_checkout_session(self, customer_id: str) -> CheckoutSessionSnapshot | None:
        with _processor_errors("list_checkout_sessions"):
            sessions = await self._client.v1.checkout.sessions.list_async(params={"customer": customer_id, "limit": 1})
        return decode_checkout_session(sessions.data[0]) if sessions.data else None

    async def create_subscription(self, *, customer_id: str, price_id: str, metadata: dict[str, str]) -> str:
        with _processor_errors("create_subscription"):
            subscription = await self._client.v1.subscriptions.create_async(
                params={
                    "customer": customer_id,
                    "items": [{"price": price_id, "quantity": 1}],
                    "proration_behavior": "none",
                    "metadata": metadata,
                }
            )
        return subscription.id

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        with _processor_errors("retrieve_subscription"):
            subscription = await self._client.v1.subscriptions.retrieve_async(subscription_id)
        return decode_subscription(subscription)

    async def latest_subscription_id(self, customer_id: str) -> str | None:
        with _processor_errors("list_subscriptions"):
            subscriptions = await self._client.v1.subscriptions.list_async(params={"customer": customer_id, "limit": 1})
        return subscriptions.data[0].id if subscriptions.data else None

    async def update_subscription_price(
        self, subscription_id: str, *, plan: PlanSpec, user_id: str
    ) -> SubscriptionSnapshot:
        """Swap the billable item of an existing subscription to the plan's price (prorated by Stripe)."""
        if not plan.price_id:
            raise PaymentProcessorError("update_subscription_item", f"no Stripe price configured for {plan.plan}")
        current = await self.retrieve_subscription(subscription_id)
        if not current.item_id:
            raise PaymentProcessorError("update_subscription_item", f"subscription {subscription_id} has no items")
        with _processor_errors("update_subscription_item"):
            subscription = await self._client.v1.subscriptions.update_async(
                subscription_id,
                params={
                    "items": [{"id": current.item_id, "price": plan.price_id}],
                    "proration_behavior": "always_invoice",
                    "metadata": plan_metadata(plan, user_id),
                },
            )
        return decode_subscription(subscription)

    async def cancel_subscription(self, subscription_id: str) -> None:
        with _processor_errors("cancel_subscription"):
            await self._client.v1.subscriptions.cancel_async(subscription_id)

    async def schedule_cancellation(self, subscription_id: str, *, metadata: dict[str, str]) -> None:
        """Cancel at the end of the current period, no proration."""
        with _processor_errors("schedule_cancellation"):
            await self._client.v1.subscriptions.update_async(
                subscription_id,
                params={"cancel_at_period_end": True, "metadata": metadata, "proration_behavior": "none"},
            )

    async def create_price(self, plan: PlanSpec) -> str:
        """Ad-hoc monthly price, used when no configured price id exists for the plan."""
        with _processor_errors("create_price"):
            price = await self._client.v1.prices.create_async(
                params={
                    "currency": self._settings.billing_currency,
                    "unit_amount": plan.price_cents,
                    "recurring": {"interval": "month"},
                    "product_data": {"name": f"{plan.label} Plan - Resume Parser"},
                }
            )
        return price.id

    async def create_portal_session(self, customer_id: str, *, return_url: str) -> str:
        with _processor_errors("create_portal_session"):
            portal = await self._client.v1.billing_portal.sessions.create_async(
                params={"customer": customer_id, "return_url": return_url}
            )
        return portal.url

    def construct_event(self, payload: bytes, signature: str | None) -> Any:
        """Verify the webhook signature and parse the event.

        Raises ValueError for malformed payloads and stripe.SignatureVerificationError for bad signatures.
        """
        return stripe.Webhook.construct_event(payload, signature or "", self._settings.stripe_webhook_secret or "")
