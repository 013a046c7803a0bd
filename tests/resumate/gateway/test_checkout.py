"""Checkout orchestration: plan-transition rules, customer handling, upgrade in place, downgrade, cancel, portal."""

import pytest
from sqlmodel import select

from resumate.gateway import credits as ledger
from resumate.gateway.auth import SessionUser, authenticate
from resumate.gateway.checkout import check_checkout_allowed
from resumate.gateway.config import get_settings
from resumate.gateway.domain_models import IntentKind, PendingBillingIntent, PlanType, SubscriptionCancellation, User
from resumate.gateway.exceptions import (
    AlreadyBasicError,
    DowngradeNotAllowedError,
    ProStillActiveError,
    ValidationError,
)


async def get_intent(session, user_id: str = "user-123") -> PendingBillingIntent | None:
    return await session.get(PendingBillingIntent, user_id, populate_existing=True)


class TestCheckoutRules:
    """CO-001: rejection rules are total and mutually exclusive."""

    @pytest.mark.parametrize(
        "current,credits,requested,expected",
        [
            (PlanType.FREE, 0, PlanType.BASIC, None),
            (PlanType.FREE, 0, PlanType.PRO, None),
            (PlanType.BASIC, 0, PlanType.BASIC, AlreadyBasicError),
            (PlanType.BASIC, 500, PlanType.BASIC, AlreadyBasicError),
            (PlanType.BASIC, 500, PlanType.PRO, None),
            (PlanType.PRO, 5_000, PlanType.BASIC, DowngradeNotAllowedError),
            (PlanType.PRO, 0, PlanType.BASIC, DowngradeNotAllowedError),
            (PlanType.PRO, 5_000, PlanType.PRO, ProStillActiveError),
            (PlanType.PRO, 1, PlanType.PRO, ProStillActiveError),
            (PlanType.PRO, 0, PlanType.PRO, None),
            (PlanType.BASIC, 0, PlanType.FREE, ValidationError),
        ],
    )
    def test_rule_matrix(self, current, credits, requested, expected):
        user = User(id="u", plan_type=current, credits=credits)
        if expected is None:
            check_checkout_allowed(user, requested)
        else:
            with pytest.raises(expected):
                check_checkout_allowed(user, requested)


@pytest.mark.asyncio
async def test_free_user_basic_checkout_prepares_state_only(client, session, as_test_user, processor, reload_user):
    """CO-002: first checkout creates the user and customer, stores the hint, grants nothing."""
    response = await client.post("/v1/billing/checkout", json={"plan": "BASIC"})

    assert response.status_code == 200
    body = response.json()
    assert body["upgraded_in_place"] is False
    assert body["checkout_url"] == f"https://checkout.test/{body['session_id']}"

    user = await reload_user()
    assert user.plan_type == PlanType.FREE
    assert user.credits == 0
    assert user.scraping_frozen is True
    assert user.billing_customer_ref in processor.customers

    intent = await get_intent(session)
    assert intent.kind == IntentKind.checkout
    assert intent.target_plan == PlanType.BASIC
    assert intent.target_credits == 10_000
    assert intent.checkout_session_id == body["session_id"]
    assert intent.expires_at is not None
    assert await ledger.list_ledger(session, "user-123") == []


@pytest.mark.asyncio
async def test_pro_user_basic_checkout_rejected(client, session, as_test_user, processor, make_user, reload_user):
    """CO-003: PRO with credits asking for BASIC is told to schedule a downgrade instead."""
    await make_user(plan_type=PlanType.PRO, credits=5_000, customer_id="cus_pro", subscription_id="sub_pro")

    response = await client.post("/v1/billing/checkout", json={"plan": "BASIC"})

    assert response.status_code == 409
    assert response.json()["code"] == "DOWNGRADE_NOT_ALLOWED"
    assert processor.calls == []
    user = await reload_user()
    assert user.plan_type == PlanType.PRO
    assert user.credits == 5_000
    assert await get_intent(session) is None


@pytest.mark.asyncio
async def test_pro_renewal_allowed_once_credits_exhausted(client, as_test_user, processor, make_user):
    processor.customers.add("cus_pro")
    await make_user(plan_type=PlanType.PRO, customer_id="cus_pro")

    response = await client.post("/v1/billing/checkout", json={"plan": "PRO"})

    assert response.status_code == 200
    assert "customer_exists" in processor.calls
    assert "create_customer" not in processor.calls


@pytest.mark.asyncio
async def test_checkout_recreates_customer_deleted_out_of_band(client, as_test_user, processor, make_user, reload_user):
    await make_user(customer_id="cus_deleted")

    response = await client.post("/v1/billing/checkout", json={"plan": "BASIC"})

    assert response.status_code == 200
    user = await reload_user()
    assert user.billing_customer_ref != "cus_deleted"
    assert user.billing_customer_ref in processor.customers


@pytest.mark.asyncio
async def test_checkout_resolves_existing_account_by_email(client, app, processor, make_user, session):
    """CO-004: a new identity id with a known email reuses the existing account."""
    await make_user("legacy-id", plan_type=PlanType.FREE, email="test@example.com")
    app.dependency_overrides[authenticate] = lambda: SessionUser(id="new-id", primary_email="test@example.com")

    response = await client.post("/v1/billing/checkout", json={"plan": "BASIC"})

    assert response.status_code == 200
    assert await get_intent(session, "legacy-id") is not None
    assert await session.get(User, "new-id") is None


@pytest.mark.asyncio
async def test_basic_to_pro_upgrades_in_place(client, session, as_test_user, processor, make_user, reload_user):
    """UP-001: the existing subscription item is swapped, no redirect, no credits yet."""
    processor.customers.add("cus_b")
    processor.add_subscription("sub_basic", customer_id="cus_b", plan=PlanType.BASIC)
    await make_user(plan_type=PlanType.BASIC, credits=300, customer_id="cus_b", subscription_id="sub_basic")

    response = await client.post("/v1/billing/checkout", json={"plan": "PRO"})

    assert response.status_code == 200
    assert response.json() == {"checkout_url": None, "session_id": None, "upgraded_in_place": True}
    assert "cancel_subscription" not in processor.calls
    assert processor.subscriptions["sub_basic"].plan == PlanType.PRO

    intent = await get_intent(session)
    assert intent.kind == IntentKind.upgrade
    assert intent.target_plan == PlanType.PRO
    assert intent.target_credits == 20_000
    assert intent.replaced_subscription_id is None

    user = await reload_user()
    assert user.plan_type == PlanType.BASIC
    assert user.credits == 300


@pytest.mark.asyncio
async def test_failed_in_place_upgrade_falls_back_to_checkout(client, session, as_test_user, processor, make_user):
    """UP-002: the old subscription is cancelled behind an upgrade intent naming it, then checkout."""
    processor.customers.add("cus_b")
    processor.add_subscription("sub_basic", customer_id="cus_b", plan=PlanType.BASIC)
    processor.fail.add("update_subscription_price")
    await make_user(plan_type=PlanType.BASIC, credits=300, customer_id="cus_b", subscription_id="sub_basic")

    response = await client.post("/v1/billing/checkout", json={"plan": "PRO"})

    assert response.status_code == 200
    body = response.json()
    assert body["upgraded_in_place"] is False
    assert body["session_id"]
    assert processor.calls.index("cancel_subscription") < processor.calls.index("create_checkout_session")
    assert processor.subscriptions["sub_basic"].status == "canceled"

    intent = await get_intent(session)
    assert intent.kind == IntentKind.upgrade
    assert intent.replaced_subscription_id == "sub_basic"
    assert intent.checkout_session_id == body["session_id"]
    assert intent.target_credits == 20_000


@pytest.mark.asyncio
async def test_failed_cancel_during_upgrade_surfaces_and_clears_intent(
    client, session, as_test_user, processor, make_user, reload_user
):
    processor.customers.add("cus_b")
    processor.add_subscription("sub_basic", customer_id="cus_b", plan=PlanType.BASIC)
    processor.fail.update({"update_subscription_price", "cancel_subscription"})
    await make_user(plan_type=PlanType.BASIC, credits=300, customer_id="cus_b", subscription_id="sub_basic")

    response = await client.post("/v1/billing/checkout", json={"plan": "PRO"})

    assert response.status_code == 502
    assert response.json()["code"] == "PAYMENT_PROCESSOR"
    assert await get_intent(session) is None
    assert "create_checkout_session" not in processor.calls
    user = await reload_user()
    assert user.plan_type == PlanType.BASIC
    assert user.billing_subscription_ref == "sub_basic"


@pytest.mark.asyncio
async def test_schedule_downgrade(client, session, as_test_user, processor, make_user, reload_user):
    """DG-001: cancel at period end and record the downgrade, plan and credits unchanged."""
    processor.add_subscription("sub_pro", customer_id="cus_pro", plan=PlanType.PRO)
    await make_user(plan_type=PlanType.PRO, credits=5_000, customer_id="cus_pro", subscription_id="sub_pro")

    response = await client.post("/v1/billing/downgrade-schedule")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert processor.subscriptions["sub_pro"].cancel_at_period_end is True

    intent = await get_intent(session)
    assert intent.kind == IntentKind.downgrade
    assert intent.target_plan == PlanType.BASIC
    assert intent.expires_at is None

    user = await reload_user()
    assert user.plan_type == PlanType.PRO
    assert user.credits == 5_000
    assert user.scraping_frozen is False


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "plan_type,subscription_id,code",
    [
        (PlanType.BASIC, "sub_basic", "NOT_PRO"),
        (PlanType.FREE, None, "NOT_PRO"),
        (PlanType.PRO, None, "NO_SUBSCRIPTION"),
    ],
)
async def test_schedule_downgrade_preconditions(
    client, as_test_user, processor, make_user, plan_type, subscription_id, code
):
    await make_user(plan_type=plan_type, customer_id="cus_1", subscription_id=subscription_id)

    response = await client.post("/v1/billing/downgrade-schedule")

    assert response.status_code == 400
    assert response.json()["code"] == code
    assert "schedule_cancellation" not in processor.calls


@pytest.mark.asyncio
async def test_cancel_forfeits_credits_and_freezes(client, session, as_test_user, processor, make_user, reload_user):
    """CA-001: immediate cancel records the reason, drops to FREE and forfeits the balance via the ledger."""
    processor.add_subscription("sub_pro", customer_id="cus_pro", plan=PlanType.PRO)
    await make_user(plan_type=PlanType.PRO, credits=5_000, customer_id="cus_pro", subscription_id="sub_pro")

    response = await client.post("/v1/billing/cancel", json={"reason": "  too expensive  "})

    assert response.status_code == 200
    assert processor.subscriptions["sub_pro"].status == "canceled"

    user = await reload_user()
    assert user.plan_type == PlanType.FREE
    assert user.scraping_frozen is True
    assert user.credits == 0
    assert user.billing_subscription_ref is None
    assert user.billing_customer_ref == "cus_pro"
    assert await ledger.ledger_balance(session, "user-123") == 0

    cancellations = (await session.exec(select(SubscriptionCancellation))).all()
    assert len(cancellations) == 1
    assert cancellations[0].reason == "too expensive"
    assert cancellations[0].plan_type == PlanType.PRO


@pytest.mark.asyncio
async def test_cancel_requires_reason(client, as_test_user, processor, make_user):
    await make_user(plan_type=PlanType.PRO, credits=5_000, customer_id="cus_pro", subscription_id="sub_pro")

    response = await client.post("/v1/billing/cancel", json={"reason": "   no "})

    assert response.status_code == 422
    assert response.json()["code"] == "VALIDATION"
    assert processor.calls == []


@pytest.mark.asyncio
async def test_cancel_on_free_plan(client, as_test_user, processor, make_user):
    await make_user()

    response = await client.post("/v1/billing/cancel", json={"reason": "not needed"})

    assert response.status_code == 400
    assert response.json()["code"] == "ALREADY_FREE"


@pytest.mark.asyncio
async def test_cancel_processor_failure_writes_nothing(
    client, session, as_test_user, processor, make_user, reload_user
):
    processor.fail.add("cancel_subscription")
    await make_user(plan_type=PlanType.PRO, credits=5_000, customer_id="cus_pro", subscription_id="sub_pro")

    response = await client.post("/v1/billing/cancel", json={"reason": "too expensive"})

    assert response.status_code == 502
    user = await reload_user()
    assert user.plan_type == PlanType.PRO
    assert user.credits == 5_000
    assert (await session.exec(select(SubscriptionCancellation))).all() == []


@pytest.mark.asyncio
async def test_portal_requires_customer(client, as_test_user, processor, make_user):
    await make_user()

    response = await client.post("/v1/billing/portal")

    assert response.status_code == 400
    assert response.json()["code"] == "NO_CUSTOMER"


@pytest.mark.asyncio
async def test_portal_returns_to_settings(client, as_test_user, processor, make_user):
    await make_user(plan_type=PlanType.BASIC, credits=100, customer_id="cus_b", subscription_id="sub_b")

    response = await client.post("/v1/billing/portal")

    assert response.status_code == 200
    assert response.json()["url"].startswith("https://billing.test/portal/cus_b")
    assert response.json()["url"].endswith("http://localhost:3000/dashboard/settings")


@pytest.mark.asyncio
async def test_checkout_status(client, as_test_user, processor):
    created = (await client.post("/v1/billing/checkout", json={"plan": "BASIC"})).json()
    session_id = created["session_id"]

    response = await client.get(f"/v1/billing/checkout/{session_id}/status")
    assert response.json() == {"paid": False}

    processor.checkout_sessions[session_id].payment_status = "paid"
    response = await client.get(f"/v1/billing/checkout/{session_id}/status")
    assert response.json() == {"paid": True}

    response = await client.get("/v1/billing/checkout/cs_unknown/status")
    assert response.status_code == 200
    assert response.json() == {"paid": False}


@pytest.mark.asyncio
async def test_billing_not_configured(client, app, as_test_user):
    app.dependency_overrides[get_settings]().stripe_secret_key = None

    response = await client.post("/v1/billing/checkout", json={"plan": "BASIC"})

    assert response.status_code == 503
    assert response.json()["detail"] == "Billing is not configured"


@pytest.mark.asyncio
async def test_checkout_requires_authentication(client, processor):
    response = await client.post("/v1/billing/checkout", json={"plan": "BASIC"})

    assert response.status_code == 401
