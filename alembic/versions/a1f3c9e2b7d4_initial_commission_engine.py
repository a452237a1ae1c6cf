"""initial commission engine

Revision ID: a1f3c9e2b7d4
Revises:
Create Date: 2026-10-19 10:12:04.318220
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "a1f3c9e2b7d4"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


SUBSCRIPTION_STATUS = ("trialing", "active", "past_due", "canceled", "unpaid", "incomplete", "incomplete_expired")
TRANSACTION_TYPE = ("commission", "refund", "dispute")
PAYOUT_STATUS = ("pending", "paid")
INGESTION_EVENT_STATUS = ("pending", "processed", "failed", "skipped")


def upgrade() -> None:
    """
    Schema completo del motore commissioni.

    I vincoli UNIQUE sono la base dell'idempotenza (INSERT ... ON CONFLICT):
    - customer_affiliate_links(customer_id)   -> first-touch
    - transactions(external_id, type)         -> una riga per oggetto esterno e tipo
    - ingestion_events(event_id)              -> riconsegna webhook = no-op
    - monthly_payouts(month, affiliate_id)    -> un payout per mese e affiliato
    """
    op.create_table(
        "admins",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("is_superadmin", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_admins_id", "admins", ["id"])
    op.create_index("ix_admins_email", "admins", ["email"], unique=True)

    # ---------------------------
    # affiliati
    # ---------------------------
    op.create_table(
        "affiliates",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("code", sa.String(length=255), nullable=False, unique=True),
        sa.Column("name", sa.String(length=150), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("tier", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("qualifying_sale_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("payout_destination", sa.JSON(), nullable=True),
        sa.Column("legacy_id", sa.String(length=100), nullable=True, unique=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_affiliates_id", "affiliates", ["id"])
    op.create_index("ix_affiliates_email", "affiliates", ["email"])

    op.create_table(
        "affiliate_aliases",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column(
            "affiliate_id",
            sa.Integer(),
            sa.ForeignKey("affiliates.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("alias", sa.String(length=100), nullable=False, unique=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_affiliate_aliases_id", "affiliate_aliases", ["id"])
    op.create_index("ix_affiliate_aliases_affiliate_id", "affiliate_aliases", ["affiliate_id"])

    op.create_table(
        "customer_affiliate_links",
        sa.Column("customer_id", sa.String(length=255), primary_key=True, nullable=False),
        sa.Column("affiliate_id", sa.Integer(), sa.ForeignKey("affiliates.id"), nullable=False),
        sa.Column("source", sa.String(length=50), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_customer_affiliate_links_affiliate_id", "customer_affiliate_links", ["affiliate_id"])

    # ---------------------------
    # subscription / ledger / payout
    # ---------------------------
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("external_id", sa.String(length=255), nullable=False, unique=True),
        sa.Column("affiliate_id", sa.Integer(), sa.ForeignKey("affiliates.id"), nullable=False),
        sa.Column("customer_id", sa.String(length=255), nullable=True),
        sa.Column("customer_name", sa.String(length=255), nullable=True),
        sa.Column("price_id", sa.String(length=255), nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.Enum(*SUBSCRIPTION_STATUS, name="subscription_status"), nullable=False),
        sa.Column("is_trial", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("trial_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("has_refund", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("has_dispute", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("last_event_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_subscriptions_id", "subscriptions", ["id"])
    op.create_index("ix_subscriptions_affiliate_id", "subscriptions", ["affiliate_id"])
    op.create_index("ix_subscriptions_customer_id", "subscriptions", ["customer_id"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("affiliate_id", sa.Integer(), sa.ForeignKey("affiliates.id"), nullable=False),
        sa.Column("subscription_id", sa.Integer(), sa.ForeignKey("subscriptions.id"), nullable=True),
        sa.Column("external_id", sa.String(length=255), nullable=False),
        sa.Column("invoice_id", sa.String(length=255), nullable=True),
        sa.Column("charge_id", sa.String(length=255), nullable=True),
        sa.Column("payment_intent_id", sa.String(length=255), nullable=True),
        sa.Column("type", sa.Enum(*TRANSACTION_TYPE, name="transaction_type"), nullable=False),
        sa.Column("amount_gross_cents", sa.Integer(), nullable=False),
        sa.Column("commission_percent", sa.Integer(), nullable=False),
        sa.Column("commission_amount_cents", sa.Integer(), nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("available_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("description", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("external_id", "type", name="uq_transactions_external_id_type"),
    )
    op.create_index("ix_transactions_id", "transactions", ["id"])
    op.create_index("ix_transactions_affiliate_id", "transactions", ["affiliate_id"])
    op.create_index("ix_transactions_subscription_id", "transactions", ["subscription_id"])
    op.create_index("ix_transactions_invoice_id", "transactions", ["invoice_id"])
    op.create_index("ix_transactions_charge_id", "transactions", ["charge_id"])
    op.create_index("ix_transactions_payment_intent_id", "transactions", ["payment_intent_id"])
    op.create_index("ix_transactions_available_at", "transactions", ["available_at"])

    op.create_table(
        "monthly_payouts",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("month", sa.Date(), nullable=False),
        sa.Column("affiliate_id", sa.Integer(), sa.ForeignKey("affiliates.id"), nullable=False),
        sa.Column("total_commission_cents", sa.Integer(), nullable=False),
        sa.Column("total_negative_cents", sa.Integer(), nullable=False),
        sa.Column("total_payable_cents", sa.Integer(), nullable=False),
        sa.Column("status", sa.Enum(*PAYOUT_STATUS, name="payout_status"), nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_note", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("month", "affiliate_id", name="uq_monthly_payouts_month_affiliate"),
    )
    op.create_index("ix_monthly_payouts_id", "monthly_payouts", ["id"])
    op.create_index("ix_monthly_payouts_month", "monthly_payouts", ["month"])
    op.create_index("ix_monthly_payouts_affiliate_id", "monthly_payouts", ["affiliate_id"])

    # ---------------------------
    # ingestion
    # ---------------------------
    op.create_table(
        "ingestion_events",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("event_id", sa.String(length=255), nullable=False, unique=True),
        sa.Column("event_type", sa.String(length=100), nullable=True),
        sa.Column("status", sa.Enum(*INGESTION_EVENT_STATUS, name="ingestion_event_status"), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_ingestion_events_id", "ingestion_events", ["id"])

    op.create_table(
        "sync_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("days_synced", sa.Integer(), nullable=True),
        sa.Column("triggered_by", sa.String(length=50), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("customers_scanned", sa.Integer(), nullable=False),
        sa.Column("customers_linked", sa.Integer(), nullable=False),
        sa.Column("subscriptions_synced", sa.Integer(), nullable=False),
        sa.Column("invoices_synced", sa.Integer(), nullable=False),
        sa.Column("refunds_synced", sa.Integer(), nullable=False),
        sa.Column("disputes_synced", sa.Integer(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("errors", sa.JSON(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_sync_logs_id", "sync_logs", ["id"])


def downgrade() -> None:
    op.drop_table("sync_logs")
    op.drop_table("ingestion_events")
    op.drop_table("monthly_payouts")
    op.drop_table("transactions")
    op.drop_table("subscriptions")
    op.drop_table("customer_affiliate_links")
    op.drop_table("affiliate_aliases")
    op.drop_table("affiliates")
    op.drop_table("admins")

    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        for enum_name in ("ingestion_event_status", "payout_status", "transaction_type", "subscription_status"):
            sa.Enum(name=enum_name).drop(bind, checkfirst=True)
