"""settlement schema

Revision ID: 3f9a1c2d7b10
Revises:
Create Date: 2026-10-18 09:12:40.118204
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "3f9a1c2d7b10"
down_revision = None
branch_labels = None
depends_on = None


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _jsonb(sa_json):
    # Portable: JSON on SQLite, JSONB on Postgres
    return sa_json.with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def _timestamp_indexes(batch_op, table: str) -> None:
    batch_op.create_index(batch_op.f(f"ix_{table}_created_at"), ["created_at"], unique=False)
    batch_op.create_index(batch_op.f(f"ix_{table}_updated_at"), ["updated_at"], unique=False)


def upgrade():
    # --- profiles ---
    op.create_table(
        "profiles",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("display_name", sa.String(length=120), nullable=True),
        *_timestamps(),
    )
    with op.batch_alter_table("profiles") as batch_op:
        batch_op.create_index(batch_op.f("ix_profiles_email"), ["email"], unique=True)
        _timestamp_indexes(batch_op, "profiles")

    # --- user_roles ---
    op.create_table(
        "user_roles",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False),
        sa.Column("role", sa.String(length=32), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "role", name="uq_user_roles_user_role"),
    )
    with op.batch_alter_table("user_roles") as batch_op:
        batch_op.create_index(batch_op.f("ix_user_roles_user_id"), ["user_id"], unique=False)
        batch_op.create_index(batch_op.f("ix_user_roles_role"), ["role"], unique=False)
        _timestamp_indexes(batch_op, "user_roles")

    # --- donations ---
    op.create_table(
        "donations",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("donor_id", sa.Integer(), sa.ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True),
        sa.Column("donor_email", sa.String(length=255), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("amount_charged", sa.Numeric(12, 2), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("frequency", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("stripe_mode", sa.String(length=8), nullable=False),
        sa.Column("stripe_customer_id", sa.String(length=120), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(length=120), nullable=True),
        sa.Column("stripe_payment_intent_id", sa.String(length=120), nullable=True),
        sa.Column("stripe_checkout_session_id", sa.String(length=255), nullable=True),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("ended_at", sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("amount >= 0", name="ck_donations_amount_nonneg"),
        sa.CheckConstraint("(donor_id IS NULL) <> (donor_email IS NULL)", name="ck_donations_donor_identifier"),
        sa.UniqueConstraint("stripe_mode", "stripe_subscription_id", name="uq_donations_mode_subscription"),
        sa.UniqueConstraint("stripe_mode", "stripe_payment_intent_id", name="uq_donations_mode_payment_intent"),
    )
    with op.batch_alter_table("donations") as batch_op:
        for col in (
            "donor_id",
            "donor_email",
            "status",
            "stripe_mode",
            "stripe_customer_id",
            "stripe_subscription_id",
            "stripe_payment_intent_id",
        ):
            batch_op.create_index(batch_op.f(f"ix_donations_{col}"), [col], unique=False)
        batch_op.create_index("ix_donations_status_mode", ["status", "stripe_mode"], unique=False)
        _timestamp_indexes(batch_op, "donations")

    # --- receipt_settings ---
    op.create_table(
        "receipt_settings",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("organization_name", sa.String(length=160), nullable=False),
        sa.Column("organization_ein", sa.String(length=32), nullable=False),
        *_timestamps(),
    )
    with op.batch_alter_table("receipt_settings") as batch_op:
        _timestamp_indexes(batch_op, "receipt_settings")

    # --- receipts ---
    op.create_table(
        "receipts",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("transaction_id", sa.String(length=255), nullable=False),
        sa.Column("stripe_mode", sa.String(length=8), nullable=False),
        sa.Column("donation_id", sa.Integer(), sa.ForeignKey("donations.id", ondelete="SET NULL"), nullable=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True),
        sa.Column("sponsor_email", sa.String(length=255), nullable=True),
        sa.Column("sponsor_name", sa.String(length=160), nullable=True),
        sa.Column("designation", sa.String(length=160), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("frequency", sa.String(length=16), nullable=False),
        sa.Column("transaction_date", sa.DateTime(), nullable=False),
        sa.Column("organization_name", sa.String(length=160), nullable=False),
        sa.Column("organization_ein", sa.String(length=32), nullable=False),
        sa.Column("receipt_number", sa.String(length=64), nullable=False),
        sa.Column("tax_year", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("transaction_id", "stripe_mode", name="uq_receipts_transaction_mode"),
        sa.UniqueConstraint("receipt_number"),
    )
    with op.batch_alter_table("receipts") as batch_op:
        batch_op.create_index(batch_op.f("ix_receipts_transaction_id"), ["transaction_id"], unique=False)
        batch_op.create_index(batch_op.f("ix_receipts_donation_id"), ["donation_id"], unique=False)
        batch_op.create_index(batch_op.f("ix_receipts_user_id"), ["user_id"], unique=False)
        batch_op.create_index(batch_op.f("ix_receipts_tax_year"), ["tax_year"], unique=False)
        _timestamp_indexes(batch_op, "receipts")

    # --- donation_stripe_transactions ---
    op.create_table(
        "donation_stripe_transactions",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("stripe_mode", sa.String(length=8), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("donor_id", sa.Integer(), sa.ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True),
        sa.Column("stripe_customer_id", sa.String(length=120), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(length=120), nullable=True),
        sa.Column("stripe_invoice_id", sa.String(length=120), nullable=True),
        sa.Column("stripe_payment_intent_id", sa.String(length=120), nullable=True),
        sa.Column("stripe_charge_id", sa.String(length=120), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("frequency", sa.String(length=16), nullable=False),
        sa.Column("transaction_date", sa.DateTime(), nullable=False),
        sa.Column("raw_invoice", _jsonb(sa.JSON()), nullable=True),
        sa.Column("raw_payment_intent", _jsonb(sa.JSON()), nullable=True),
        sa.Column("raw_charge", _jsonb(sa.JSON()), nullable=True),
        sa.Column("raw_checkout_session", _jsonb(sa.JSON()), nullable=True),
        sa.Column("merged_metadata", _jsonb(sa.JSON()), nullable=False),
        sa.Column("donation_id", sa.Integer(), sa.ForeignKey("donations.id", ondelete="SET NULL"), nullable=True),
        sa.Column("receipt_id", sa.Integer(), sa.ForeignKey("receipts.id", ondelete="SET NULL"), nullable=True),
        *_timestamps(),
    )
    with op.batch_alter_table("donation_stripe_transactions") as batch_op:
        batch_op.create_index("ix_dst_mode_invoice", ["stripe_mode", "stripe_invoice_id"], unique=True)
        batch_op.create_index("ix_dst_mode_payment_intent", ["stripe_mode", "stripe_payment_intent_id"], unique=False)
        batch_op.create_index("ix_dst_mode_charge", ["stripe_mode", "stripe_charge_id"], unique=False)
        batch_op.create_index(batch_op.f("ix_donation_stripe_transactions_email"), ["email"], unique=False)
        batch_op.create_index(
            batch_op.f("ix_donation_stripe_transactions_donation_id"), ["donation_id"], unique=False
        )
        _timestamp_indexes(batch_op, "donation_stripe_transactions")

    # --- bike_ride_events ---
    op.create_table(
        "bike_ride_events",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("mile_goal", sa.Numeric(10, 2), nullable=False),
        sa.Column("actual_miles", sa.Numeric(10, 2), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("mile_goal > 0", name="ck_bike_ride_events_goal_pos"),
    )
    with op.batch_alter_table("bike_ride_events") as batch_op:
        batch_op.create_index(batch_op.f("ix_bike_ride_events_status"), ["status"], unique=False)
        _timestamp_indexes(batch_op, "bike_ride_events")

    # --- bike_ride_pledges ---
    op.create_table(
        "bike_ride_pledges",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column(
            "event_id", sa.Integer(), sa.ForeignKey("bike_ride_events.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("pledger_name", sa.String(length=160), nullable=False),
        sa.Column("pledger_email", sa.String(length=255), nullable=False),
        sa.Column("pledge_type", sa.String(length=16), nullable=False),
        sa.Column("cents_per_mile", sa.Numeric(10, 2), nullable=False),
        sa.Column("flat_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("stripe_mode", sa.String(length=8), nullable=False),
        sa.Column("stripe_customer_id", sa.String(length=120), nullable=True),
        sa.Column("stripe_setup_intent_id", sa.String(length=120), nullable=True),
        sa.Column("stripe_payment_method_id", sa.String(length=120), nullable=True),
        sa.Column("stripe_payment_intent_id", sa.String(length=120), nullable=True),
        sa.Column("charge_status", sa.String(length=16), nullable=False),
        sa.Column("charge_error", sa.String(length=500), nullable=True),
        sa.Column("calculated_total", sa.Numeric(12, 2), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("cents_per_mile >= 0", name="ck_bike_ride_pledges_rate_nonneg"),
    )
    with op.batch_alter_table("bike_ride_pledges") as batch_op:
        batch_op.create_index(batch_op.f("ix_bike_ride_pledges_event_id"), ["event_id"], unique=False)
        batch_op.create_index("ix_bike_ride_pledges_event_status", ["event_id", "charge_status"], unique=False)
        _timestamp_indexes(batch_op, "bike_ride_pledges")


def downgrade():
    for table in (
        "bike_ride_pledges",
        "bike_ride_events",
        "donation_stripe_transactions",
        "receipts",
        "receipt_settings",
        "donations",
        "user_roles",
        "profiles",
    ):
        op.drop_table(table)
