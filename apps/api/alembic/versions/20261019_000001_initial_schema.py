"""create initial schema

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("subject_id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("plan", sa.String(), nullable=False),
        sa.Column("plan_id", sa.String(), nullable=True),
        sa.Column("credits", sa.Integer(), nullable=False),
        sa.Column("subscription_status", sa.String(), nullable=False),
        sa.Column("external_billing_customer_id", sa.String(), nullable=True),
        sa.Column("external_subscription_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("credits >= 0", name="ck_accounts_credits_non_negative"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_accounts_subject_id"), "accounts", ["subject_id"], unique=True)
    op.create_index(
        op.f("ix_accounts_external_billing_customer_id"),
        "accounts",
        ["external_billing_customer_id"],
        unique=True,
    )
    op.create_index(op.f("ix_accounts_external_subscription_id"), "accounts", ["external_subscription_id"], unique=False)

    op.create_table(
        "credit_consumptions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("idempotency_key", sa.String(), nullable=False),
        sa.Column("granted", sa.Boolean(), nullable=False),
        sa.Column("unlimited", sa.Boolean(), nullable=False),
        sa.Column("debited", sa.Boolean(), nullable=False),
        sa.Column("credits_remaining", sa.Integer(), nullable=False),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_id", "idempotency_key", name="uq_credit_consumptions_account_key"),
    )
    op.create_index(op.f("ix_credit_consumptions_account_id"), "credit_consumptions", ["account_id"], unique=False)

    op.create_table(
        "credit_grants",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("period_key", sa.String(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_id", "period_key", name="uq_credit_grants_account_period"),
    )
    op.create_index(op.f("ix_credit_grants_account_id"), "credit_grants", ["account_id"], unique=False)
    op.create_index(op.f("ix_credit_grants_created_at"), "credit_grants", ["created_at"], unique=False)

    op.create_table(
        "billing_events",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("provider_created", sa.Integer(), nullable=True),
        sa.Column("account_id", sa.String(), nullable=True),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_billing_events_account_id"), "billing_events", ["account_id"], unique=False)

    op.create_table(
        "billing_subscriptions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("plan_id", sa.String(), nullable=True),
        sa.Column("provider_status", sa.String(), nullable=True),
        sa.Column("status_created", sa.Integer(), nullable=True),
        sa.Column("current_period_start", sa.Integer(), nullable=True),
        sa.Column("last_event_created", sa.Integer(), nullable=False),
        sa.Column("ended", sa.Boolean(), nullable=False),
        sa.Column("activated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_billing_subscriptions_account_id"), "billing_subscriptions", ["account_id"], unique=False)

    op.create_table(
        "billing_reconciliations",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("customer_reference", sa.String(), nullable=True),
        sa.Column("subscription_reference", sa.String(), nullable=True),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("payload_json", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_billing_reconciliations_event_id"), "billing_reconciliations", ["event_id"], unique=True)
    op.create_index(op.f("ix_billing_reconciliations_created_at"), "billing_reconciliations", ["created_at"], unique=False)

    op.create_table(
        "generations",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("style", sa.String(), nullable=False),
        sa.Column("idempotency_key", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("error_kind", sa.String(), nullable=True),
        sa.Column("mime_type", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_generations_account_id"), "generations", ["account_id"], unique=False)
    op.create_index(op.f("ix_generations_created_at"), "generations", ["created_at"], unique=False)
    op.create_index(
        "uq_generations_completed_key",
        "generations",
        ["account_id", "idempotency_key"],
        unique=True,
        postgresql_where=sa.text("status = 'completed'"),
        sqlite_where=sa.text("status = 'completed'"),
    )

    op.create_table(
        "mobile_upload_sessions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_mobile_upload_sessions_account_id"), "mobile_upload_sessions", ["account_id"], unique=False)
    op.create_index(op.f("ix_mobile_upload_sessions_expires_at"), "mobile_upload_sessions", ["expires_at"], unique=False)

    op.create_table(
        "mobile_uploads",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("file_url", sa.String(), nullable=False),
        sa.Column("original_filename", sa.String(), nullable=True),
        sa.Column("mime_type", sa.String(), nullable=True),
        sa.Column("file_size_bytes", sa.Integer(), nullable=True),
        sa.Column("claim_token", sa.String(), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["session_id"], ["mobile_upload_sessions.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_mobile_uploads_session_id"), "mobile_uploads", ["session_id"], unique=False)
    op.create_index(op.f("ix_mobile_uploads_claim_token"), "mobile_uploads", ["claim_token"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_mobile_uploads_claim_token"), table_name="mobile_uploads")
    op.drop_index(op.f("ix_mobile_uploads_session_id"), table_name="mobile_uploads")
    op.drop_table("mobile_uploads")
    op.drop_index(op.f("ix_mobile_upload_sessions_expires_at"), table_name="mobile_upload_sessions")
    op.drop_index(op.f("ix_mobile_upload_sessions_account_id"), table_name="mobile_upload_sessions")
    op.drop_table("mobile_upload_sessions")
    op.drop_index("uq_generations_completed_key", table_name="generations")
    op.drop_index(op.f("ix_generations_created_at"), table_name="generations")
    op.drop_index(op.f("ix_generations_account_id"), table_name="generations")
    op.drop_table("generations")
    op.drop_index(op.f("ix_billing_reconciliations_created_at"), table_name="billing_reconciliations")
    op.drop_index(op.f("ix_billing_reconciliations_event_id"), table_name="billing_reconciliations")
    op.drop_table("billing_reconciliations")
    op.drop_index(op.f("ix_billing_subscriptions_account_id"), table_name="billing_subscriptions")
    op.drop_table("billing_subscriptions")
    op.drop_index(op.f("ix_billing_events_account_id"), table_name="billing_events")
    op.drop_table("billing_events")
    op.drop_index(op.f("ix_credit_grants_created_at"), table_name="credit_grants")
    op.drop_index(op.f("ix_credit_grants_account_id"), table_name="credit_grants")
    op.drop_table("credit_grants")
    op.drop_index(op.f("ix_credit_consumptions_account_id"), table_name="credit_consumptions")
    op.drop_table("credit_consumptions")
    op.drop_index(op.f("ix_accounts_external_subscription_id"), table_name="accounts")
    op.drop_index(op.f("ix_accounts_external_billing_customer_id"), table_name="accounts")
    op.drop_index(op.f("ix_accounts_subject_id"), table_name="accounts")
    op.drop_table("accounts")
