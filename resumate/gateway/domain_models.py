import datetime as dt
import uuid
from datetime import datetime
from enum import StrEnum

from sqlalchemy import CheckConstraint, Index
from sqlalchemy.dialects import postgresql
from sqlmodel import JSON, TEXT, Column, DateTime, Field, SQLModel

# NOTE: Forward annotations do not work with SQLModel


class PlanType(StrEnum):
    FREE = "FREE"
    BASIC = "BASIC"
    PRO = "PRO"


class LedgerReason(StrEnum):
    SUBSCRIPTION_GRANT = "SUBSCRIPTION_GRANT"  # Plan credits granted after the processor confirmed payment
    EXTRACTION_DEBIT = "EXTRACTION_DEBIT"  # Credits consumed by a successful resume extraction
    CANCELLATION_FORFEIT = "CANCELLATION_FORFEIT"  # Remaining balance dropped on immediate cancellation


class IntentKind(StrEnum):
    checkout = "checkout"  # Checkout session created, waiting for payment confirmation
    upgrade = "upgrade"  # BASIC -> PRO in flight; may be replacing an old subscription
    downgrade = "downgrade"  # PRO -> BASIC at the end of the current period


class User(SQLModel, table=True):
    """Local account with the billing-relevant fields owned by the billing core."""

    id: str = Field(primary_key=True)  # identity provider user id
    email: str | None = Field(default=None, index=True)
    name: str | None = Field(default=None)

    plan_type: PlanType = Field(default=PlanType.FREE)
    credits: int = Field(default=0)  # cached sum of the user's ledger entries
    scraping_frozen: bool = Field(default=True)  # always True on the FREE plan

    billing_customer_ref: str | None = Field(default=None, index=True)  # Stripe customer id
    billing_subscription_ref: str | None = Field(default=None)  # Stripe subscription id
    subscription_start_date: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    subscription_end_date: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))

    created: datetime = Field(
        default_factory=lambda: datetime.now(tz=dt.UTC),
        sa_column=Column(DateTime(timezone=True)),
    )
    updated: datetime = Field(
        default_factory=lambda: datetime.now(tz=dt.UTC),
        sa_column=Column(DateTime(timezone=True)),
    )

    __table_args__ = (CheckConstraint("credits >= 0", name="user_credits_non_negative"),)


class CreditLedger(SQLModel, table=True):
    """Append-only audit trail for every credit balance change. Never updated or deleted."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    user_id: str = Field(foreign_key="user.id", index=True)

    delta: int
    reason: LedgerReason
    resume_id: str | None = Field(default=None, index=True)  # debit provenance
    event_id: str | None = Field(default=None, unique=True)  # processor event that caused a grant
    meta: dict | None = Field(
        default=None,
        sa_column=Column(JSON().with_variant(postgresql.JSONB(), "postgresql"), nullable=True),
    )

    created: datetime = Field(
        default_factory=lambda: datetime.now(tz=dt.UTC),
        sa_column=Column(DateTime(timezone=True)),
    )

    __table_args__ = (Index("idx_credit_ledger_user_created", "user_id", "created"),)


class BillingEventLog(SQLModel, table=True):
    """One row per processor event id. The primary key is the dedup mechanism."""

    event_id: str = Field(primary_key=True)
    type: str
    payload: dict | None = Field(
        default=None,
        sa_column=Column(JSON().with_variant(postgresql.JSONB(), "postgresql"), nullable=True),
    )

    created: datetime = Field(
        default_factory=lambda: datetime.now(tz=dt.UTC),
        sa_column=Column(DateTime(timezone=True)),
    )


class SubscriptionCancellation(SQLModel, table=True):
    """Write-once record of why a user cancelled."""

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(foreign_key="user.id", index=True)
    plan_type: PlanType
    reason: str = Field(sa_column=Column(TEXT))

    created: datetime = Field(
        default_factory=lambda: datetime.now(tz=dt.UTC),
        sa_column=Column(DateTime(timezone=True)),
    )


class PendingBillingIntent(SQLModel, table=True):
    """Outbound billing action waiting for its asynchronous confirmation from the processor."""

    user_id: str = Field(primary_key=True, foreign_key="user.id")

    kind: IntentKind
    target_plan: PlanType
    target_credits: int | None = Field(default=None)
    checkout_session_id: str | None = Field(default=None, index=True)
    replaced_subscription_id: str | None = Field(default=None)  # old subscription cancelled during upgrade

    created: datetime = Field(
        default_factory=lambda: datetime.now(tz=dt.UTC),
        sa_column=Column(DateTime(timezone=True)),
    )
    expires_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
