"""initial billing schema

Revision ID: 3f9c2a71d0b4
Revises:
Create Date: 2026-10-12 09:41:07.218344

"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "3f9c2a71d0b4"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

plan_type = sa.Enum("FREE", "BASIC", "PRO", name="plantype")
ledger_reason = sa.Enum("SUBSCRIPTION_GRANT", "EXTRACTION_DEBIT", "CANCELLATION_FORFEIT", name="ledgerreason")
intent_kind = sa.Enum("checkout", "upgrade", "downgrade", name="intentkind")

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "user",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("plan_type", plan_type, nullable=False),
        sa.Column("credits", sa.Integer(), nullable=False),
        sa.Column("scraping_frozen", sa.Boolean(), nullable=False),
        sa.Column("billing_customer_ref", sa.String(), nullable=True),
        sa.Column("billing_subscription_ref", sa.String(), nullable=True),
        sa.Column("subscription_start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("subscription_end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("credits >= 0", name="user_credits_non_negative"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_user_email"), "user", ["email"], unique=False)
    op.create_index(op.f("ix_user_billing_customer_ref"), "user", ["billing_customer_ref"], unique=False)

    op.create_table(
        "creditledger",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("delta", sa.Integer(), nullable=False),
        sa.Column("reason", ledger_reason, nullable=False),
        sa.Column("resume_id", sa.String(), nullable=True),
        sa.Column("event_id", sa.String(), nullable=True),
        sa.Column("meta", JSON_TYPE, nullable=True),
        sa.Column("created", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("event_id"),
    )
    op.create_index(op.f("ix_creditledger_user_id"), "creditledger", ["user_id"], unique=False)
    op.create_index(op.f("ix_creditledger_resume_id"), "creditledger", ["resume_id"], unique=False)
    op.create_index("idx_credit_ledger_user_created", "creditledger", ["user_id", "created"], unique=False)

    op.create_table(
        "billingeventlog",
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("payload", JSON_TYPE, nullable=True),
        sa.Column("created", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("event_id"),
    )

    op.create_table(
        "subscriptioncancellation",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("plan_type", plan_type, nullable=False),
        sa.Column("reason", sa.TEXT(), nullable=True),
        sa.Column("created", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_subscriptioncancellation_user_id"), "subscriptioncancellation", ["user_id"], unique=False)

    op.create_table(
        "pendingbillingintent",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("kind", intent_kind, nullable=False),
        sa.Column("target_plan", plan_type, nullable=False),
        sa.Column("target_credits", sa.Integer(), nullable=True),
        sa.Column("checkout_session_id", sa.String(), nullable=True),
        sa.Column("replaced_subscription_id", sa.String(), nullable=True),
        sa.Column("created", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"]),
        sa.PrimaryKeyConstraint("user_id"),
    )
    op.create_index(
        op.f("ix_pendingbillingintent_checkout_session_id"), "pendingbillingintent", ["checkout_session_id"], unique=False
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index(op.f("ix_pendingbillingintent_checkout_session_id"), table_name="pendingbillingintent")
    op.drop_table("pendingbillingintent")
    op.drop_index(op.f("ix_subscriptioncancellation_user_id"), table_name="subscriptioncancellation")
    op.drop_table("subscriptioncancellation")
    op.drop_table("billingeventlog")
    op.drop_index("idx_credit_ledger_user_created", table_name="creditledger")
    op.drop_index(op.f("ix_creditledger_resume_id"), table_name="creditledger")
    op.drop_index(op.f("ix_creditledger_user_id"), table_name="creditledger")
    op.drop_table("creditledger")
    op.drop_index(op.f("ix_user_billing_customer_ref"), table_name="user")
    op.drop_index(op.f("ix_user_email"), table_name="user")
    op.drop_table("user")
    plan_type.drop(op.get_bind(), checkfirst=True)
    ledger_reason.drop(op.get_bind(), checkfirst=True)
    intent_kind.drop(op.get_bind(), checkfirst=True)
