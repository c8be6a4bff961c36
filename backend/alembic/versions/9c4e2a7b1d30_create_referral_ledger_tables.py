"""create referral ledger tables

Revision ID: 9c4e2a7b1d30
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "9c4e2a7b1d30"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


MONEY = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def upgrade() -> None:
    op.create_table(
        "referrers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("full_name", sa.String(), nullable=True),
        sa.Column("phone", sa.String(), nullable=True),
        sa.Column("referral_code", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("suspension_reason", sa.Text(), nullable=True),
        sa.Column("activated_at", sa.DateTime(), nullable=True),
        sa.Column("lifetime_revenue", MONEY, nullable=False, server_default=sa.text("0")),
        sa.Column("current_month_revenue", MONEY, nullable=False, server_default=sa.text("0")),
        sa.Column("revenue_period", sa.String(length=7), nullable=True),
        sa.Column("referred_customer_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("unpaid_commission", MONEY, nullable=False, server_default=sa.text("0")),
        sa.Column("paid_commission", MONEY, nullable=False, server_default=sa.text("0")),
        sa.Column("clawback_due", MONEY, nullable=False, server_default=sa.text("0")),
        sa.Column("last_payout_at", sa.DateTime(), nullable=True),
        sa.Column("fraud_score", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("custom_rate", sa.Numeric(6, 3), nullable=True),
        sa.Column("custom_rate_enabled", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("referral_code", name="uq_referrers_code"),
        sa.UniqueConstraint("email", name="uq_referrers_email"),
    )
    op.create_index(op.f("ix_referrers_id"), "referrers", ["id"], unique=False)
    op.create_index("ix_referrers_status", "referrers", ["status"], unique=False)

    op.create_table(
        "referral_attributions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("customer_email", sa.String(), nullable=True),
        sa.Column("customer_phone", sa.String(), nullable=True),
        sa.Column(
            "referrer_id",
            sa.Integer(),
            sa.ForeignKey("referrers.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("referral_code", sa.String(), nullable=False),
        sa.Column("attributed_at", sa.DateTime(), nullable=False),
        sa.Column("locked", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("locked_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("customer_email", name="uq_referral_attributions_customer"),
    )
    op.create_index(op.f("ix_referral_attributions_id"), "referral_attributions", ["id"], unique=False)
    op.create_index("ix_referral_attributions_referrer", "referral_attributions", ["referrer_id"], unique=False)
    op.create_index("ix_referral_attributions_phone", "referral_attributions", ["customer_phone"], unique=False)

    op.create_table(
        "commission_ledger_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "referrer_id",
            sa.Integer(),
            sa.ForeignKey("referrers.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("order_id", sa.String(), nullable=False),
        sa.Column("order_amount", MONEY, nullable=False),
        sa.Column("tier_label", sa.String(), nullable=True),
        sa.Column("commission_rate", sa.Numeric(6, 3), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("event_kind", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("period", sa.String(length=7), nullable=False),
        sa.Column("reversed", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("reversal_reason", sa.String(), nullable=True),
        sa.Column("reversed_at", sa.DateTime(), nullable=True),
        sa.Column(
            "reverses_event_id",
            sa.Integer(),
            sa.ForeignKey("commission_ledger_events.id", ondelete="RESTRICT"),
            nullable=True,
        ),
        sa.Column("requires_review", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("payout_batch_id", sa.String(), nullable=True),
        sa.Column("paid_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("reverses_event_id", name="uq_commission_ledger_events_reverses"),
    )
    op.create_index(op.f("ix_commission_ledger_events_id"), "commission_ledger_events", ["id"], unique=False)
    op.create_index(
        op.f("ix_commission_ledger_events_order_id"),
        "commission_ledger_events",
        ["order_id"],
        unique=False,
    )
    op.create_index(
        "uq_commission_ledger_events_order_earned",
        "commission_ledger_events",
        ["order_id"],
        unique=True,
        sqlite_where=sa.text("event_kind = 'earned' AND reversed = 0"),
        postgresql_where=sa.text("event_kind = 'earned' AND NOT reversed"),
    )
    op.create_index(
        "ix_commission_ledger_events_referrer_period",
        "commission_ledger_events",
        ["referrer_id", "period"],
        unique=False,
    )
    op.create_index("ix_commission_ledger_events_status", "commission_ledger_events", ["status"], unique=False)

    op.create_table(
        "commission_audit_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "referrer_id",
            sa.Integer(),
            sa.ForeignKey("referrers.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column(
            "ledger_event_id",
            sa.Integer(),
            sa.ForeignKey("commission_ledger_events.id"),
            nullable=True,
        ),
        sa.Column("order_id", sa.String(), nullable=True),
        sa.Column("amount", MONEY, nullable=False, server_default=sa.text("0")),
        sa.Column("unpaid_before", MONEY, nullable=False),
        sa.Column("unpaid_after", MONEY, nullable=False),
        sa.Column("paid_before", MONEY, nullable=False),
        sa.Column("paid_after", MONEY, nullable=False),
        sa.Column("actor", sa.String(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("metadata_json", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index(op.f("ix_commission_audit_entries_id"), "commission_audit_entries", ["id"], unique=False)
    op.create_index(
        "ix_commission_audit_referrer_created",
        "commission_audit_entries",
        ["referrer_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "referral_order_markers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.String(), nullable=False),
        sa.Column(
            "referrer_id",
            sa.Integer(),
            sa.ForeignKey("referrers.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("customer_email", sa.String(), nullable=False),
        sa.Column("customer_phone", sa.String(), nullable=True),
        sa.Column("shipping_address", sa.Text(), nullable=True),
        sa.Column("payment_method", sa.String(), nullable=True),
        sa.Column("order_amount", MONEY, nullable=False),
        sa.Column("finalized_at", sa.DateTime(), nullable=False),
        sa.Column(
            "earned_event_id",
            sa.Integer(),
            sa.ForeignKey("commission_ledger_events.id"),
            nullable=False,
        ),
        sa.Column("reversal_reason", sa.String(), nullable=True),
        sa.Column("reversed_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("order_id", name="uq_referral_order_markers_order"),
    )
    op.create_index(op.f("ix_referral_order_markers_id"), "referral_order_markers", ["id"], unique=False)
    op.create_index(
        "ix_referral_order_markers_referrer_finalized",
        "referral_order_markers",
        ["referrer_id", "finalized_at"],
        unique=False,
    )

    op.create_table(
        "referral_pending_reversals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.String(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_attempt_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("order_id", name="uq_referral_pending_reversals_order"),
    )
    op.create_index(op.f("ix_referral_pending_reversals_id"), "referral_pending_reversals", ["id"], unique=False)
    op.create_index(
        "ix_referral_pending_reversals_status",
        "referral_pending_reversals",
        ["status"],
        unique=False,
    )

    op.create_table(
        "commission_payout_batches",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("batch_id", sa.String(), nullable=False),
        sa.Column("actor", sa.String(), nullable=False),
        sa.Column("referrer_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_amount", MONEY, nullable=False, server_default=sa.text("0")),
        sa.Column("results_json", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("batch_id", name="uq_commission_payout_batches_batch"),
    )
    op.create_index(op.f("ix_commission_payout_batches_id"), "commission_payout_batches", ["id"], unique=False)

    op.create_table(
        "referral_program_policies",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("tiers_json", sa.JSON(), nullable=False),
        sa.Column("block_self_referral", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column(
            "allow_code_change_before_first_order",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column("referral_validity_days", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("require_admin_approval", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("tier_progress_threshold", sa.Float(), nullable=False, server_default=sa.text("0.8")),
        sa.Column("fraud_rules_json", sa.JSON(), nullable=False),
        sa.Column("fraud_score_threshold", sa.Integer(), nullable=False, server_default=sa.text("50")),
        sa.Column("evaluate_fraud_on_write", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("reversal_clawback_mode", sa.String(), nullable=False, server_default="flag_for_review"),
        sa.Column("payout_cycle", sa.String(), nullable=False, server_default="monthly"),
        sa.Column("payout_day", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("min_payout_amount", MONEY, nullable=False, server_default=sa.text("0")),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index(op.f("ix_referral_program_policies_id"), "referral_program_policies", ["id"], unique=False)

    op.create_table(
        "referrer_notifications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "referrer_id",
            sa.Integer(),
            sa.ForeignKey("referrers.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("period", sa.String(length=7), nullable=False),
        sa.Column("payload_json", sa.JSON(), nullable=False),
        sa.Column("dedupe_key", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("sent_at", sa.DateTime(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("dedupe_key", name="uq_referrer_notifications_dedupe"),
    )
    op.create_index(op.f("ix_referrer_notifications_id"), "referrer_notifications", ["id"], unique=False)
    op.create_index(
        "ix_referrer_notifications_referrer_kind_period",
        "referrer_notifications",
        ["referrer_id", "kind", "period"],
        unique=False,
    )
    op.create_index(
        "ix_referrer_notifications_status_created",
        "referrer_notifications",
        ["status", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_referrer_notifications_status_created", table_name="referrer_notifications")
    op.drop_index("ix_referrer_notifications_referrer_kind_period", table_name="referrer_notifications")
    op.drop_index(op.f("ix_referrer_notifications_id"), table_name="referrer_notifications")
    op.drop_table("referrer_notifications")
    op.drop_index(op.f("ix_referral_program_policies_id"), table_name="referral_program_policies")
    op.drop_table("referral_program_policies")
    op.drop_index(op.f("ix_commission_payout_batches_id"), table_name="commission_payout_batches")
    op.drop_table("commission_payout_batches")
    op.drop_index("ix_referral_pending_reversals_status", table_name="referral_pending_reversals")
    op.drop_index(op.f("ix_referral_pending_reversals_id"), table_name="referral_pending_reversals")
    op.drop_table("referral_pending_reversals")
    op.drop_index("ix_referral_order_markers_referrer_finalized", table_name="referral_order_markers")
    op.drop_index(op.f("ix_referral_order_markers_id"), table_name="referral_order_markers")
    op.drop_table("referral_order_markers")
    op.drop_index("ix_commission_audit_referrer_created", table_name="commission_audit_entries")
    op.drop_index(op.f("ix_commission_audit_entries_id"), table_name="commission_audit_entries")
    op.drop_table("commission_audit_entries")
    op.drop_index("ix_commission_ledger_events_status", table_name="commission_ledger_events")
    op.drop_index("ix_commission_ledger_events_referrer_period", table_name="commission_ledger_events")
    op.drop_index("uq_commission_ledger_events_order_earned", table_name="commission_ledger_events")
    op.drop_index(op.f("ix_commission_ledger_events_order_id"), table_name="commission_ledger_events")
    op.drop_index(op.f("ix_commission_ledger_events_id"), table_name="commission_ledger_events")
    op.drop_table("commission_ledger_events")
    op.drop_index("ix_referral_attributions_phone", table_name="referral_attributions")
    op.drop_index("ix_referral_attributions_referrer", table_name="referral_attributions")
    op.drop_index(op.f("ix_referral_attributions_id"), table_name="referral_attributions")
    op.drop_table("referral_attributions")
    op.drop_index("ix_referrers_status", table_name="referrers")
    op.drop_index(op.f("ix_referrers_id"), table_name="referrers")
    op.drop_table("referrers")
