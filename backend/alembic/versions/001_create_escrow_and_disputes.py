"""create escrow, wallet, dispute, case counter, notification and audit tables

Revision ID: 001
Revises:
Create Date: 2025-01-01 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_ACTIVE_PREDICATE = sa.text("status IN ('OPEN', 'UNDER_REVIEW')")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    # --- escrow_transactions ---
    op.create_table(
        "escrow_transactions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("contract_ref", sa.String(length=64), nullable=True),
        sa.Column("title", sa.String(length=255), nullable=True),
        sa.Column("payer_id", sa.String(length=64), nullable=False),
        sa.Column("payee_id", sa.String(length=64), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(length=3), server_default="USD", nullable=False),
        sa.Column("status", sa.String(length=20), server_default="PENDING", nullable=False),
        sa.Column("payer_tier", sa.String(length=20), server_default="standard", nullable=False),
        sa.Column(
            "payment_method", sa.String(length=20), server_default="credit_card", nullable=False
        ),
        sa.Column("platform_fee", sa.BigInteger(), server_default="0", nullable=False),
        sa.Column("processing_fee", sa.BigInteger(), server_default="0", nullable=False),
        sa.Column("auto_release_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "release_on_completion", sa.Boolean(), server_default="false", nullable=False
        ),
        sa.Column("released_amount", sa.BigInteger(), nullable=True),
        sa.Column("refunded_amount", sa.BigInteger(), nullable=True),
        sa.Column("funded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("amount > 0", name="ck_escrow_transactions_amount_positive"),
        sa.CheckConstraint(
            "payer_id <> payee_id", name="ck_escrow_transactions_distinct_parties"
        ),
    )
    op.create_index("ix_escrow_transactions_contract_ref", "escrow_transactions", ["contract_ref"])
    op.create_index("ix_escrow_transactions_payer_id", "escrow_transactions", ["payer_id"])
    op.create_index("ix_escrow_transactions_payee_id", "escrow_transactions", ["payee_id"])
    op.create_index("ix_escrow_transactions_status", "escrow_transactions", ["status"])

    # --- escrow_milestones ---
    op.create_table(
        "escrow_milestones",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("escrow_transaction_id", sa.Integer(), nullable=False),
        sa.Column("position", sa.Integer(), server_default="0", nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("is_completed", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_by", sa.String(length=64), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["escrow_transaction_id"], ["escrow_transactions.id"], ondelete="CASCADE"
        ),
    )
    op.create_index(
        "ix_escrow_milestones_escrow_transaction_id",
        "escrow_milestones",
        ["escrow_transaction_id"],
    )

    # --- wallets ---
    op.create_table(
        "wallets",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("balance", sa.BigInteger(), server_default="0", nullable=False),
        sa.Column("frozen_amount", sa.BigInteger(), server_default="0", nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "currency", name="uq_wallets_user_currency"),
    )
    op.create_index("ix_wallets_user_id", "wallets", ["user_id"])

    # --- case_counters ---
    op.create_table(
        "case_counters",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("last_value", sa.Integer(), server_default="0", nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("year"),
    )

    # --- disputes ---
    op.create_table(
        "disputes",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("case_number", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=20), server_default="OPEN", nullable=False),
        sa.Column("type", sa.String(length=30), nullable=False),
        sa.Column("priority", sa.String(length=10), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("created_by", sa.String(length=64), nullable=False),
        sa.Column("respondent", sa.String(length=64), nullable=False),
        sa.Column("escrow_transaction_id", sa.Integer(), nullable=False),
        sa.Column("expected_resolution", sa.DateTime(timezone=True), nullable=False),
        sa.Column("assigned_agent", sa.String(length=120), nullable=False),
        sa.Column("resolution_type", sa.String(length=30), nullable=True),
        sa.Column("resolution_description", sa.Text(), nullable=True),
        sa.Column("resolution_payee_amount", sa.BigInteger(), nullable=True),
        sa.Column("resolution_payer_amount", sa.BigInteger(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by", sa.String(length=64), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["escrow_transaction_id"], ["escrow_transactions.id"], ondelete="RESTRICT"
        ),
        sa.UniqueConstraint("case_number"),
    )
    op.create_index("ix_disputes_created_by", "disputes", ["created_by"])
    op.create_index("ix_disputes_respondent", "disputes", ["respondent"])
    op.create_index("ix_disputes_escrow_transaction_id", "disputes", ["escrow_transaction_id"])
    op.create_index("ix_disputes_status_agent", "disputes", ["status", "assigned_agent"])
    # At most one OPEN/UNDER_REVIEW dispute per escrow transaction
    op.create_index(
        "uq_disputes_active_escrow",
        "disputes",
        ["escrow_transaction_id"],
        unique=True,
        postgresql_where=_ACTIVE_PREDICATE,
        sqlite_where=_ACTIVE_PREDICATE,
    )

    # --- dispute_messages ---
    op.create_table(
        "dispute_messages",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("dispute_id", sa.Integer(), nullable=False),
        sa.Column("sender_id", sa.String(length=64), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("is_from_admin", sa.Boolean(), server_default="false", nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["dispute_id"], ["disputes.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_dispute_messages_dispute_id", "dispute_messages", ["dispute_id"])

    # --- dispute_evidence ---
    op.create_table(
        "dispute_evidence",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("dispute_id", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(length=30), server_default="document", nullable=False),
        sa.Column("filename", sa.String(length=255), nullable=False),
        sa.Column("url", sa.String(length=1024), server_default="", nullable=False),
        sa.Column("size", sa.Integer(), nullable=True),
        sa.Column("mime_type", sa.String(length=100), nullable=True),
        sa.Column("uploaded_by", sa.String(length=64), nullable=False),
        sa.Column("is_post_resolution", sa.Boolean(), server_default="false", nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["dispute_id"], ["disputes.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_dispute_evidence_dispute_id", "dispute_evidence", ["dispute_id"])

    # --- notifications ---
    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("type", sa.String(length=40), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("data", sa.JSON(), nullable=True),
        sa.Column("dispatched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivery_error", sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"])
    op.create_index("ix_notifications_dispatched_at", "notifications", ["dispatched_at"])

    # --- audit_logs ---
    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=True),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("entity_type", sa.String(length=50), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=True),
        sa.Column("details", sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_logs_user_id", "audit_logs", ["user_id"])
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index("ix_audit_logs_entity", "audit_logs", ["entity_type", "entity_id"])


def downgrade() -> None:
    op.drop_table("audit_logs")
    op.drop_table("notifications")
    op.drop_table("dispute_evidence")
    op.drop_table("dispute_messages")
    op.drop_index("uq_disputes_active_escrow", table_name="disputes")
    op.drop_table("disputes")
    op.drop_table("case_counters")
    op.drop_table("wallets")
    op.drop_table("escrow_milestones")
    op.drop_table("escrow_transactions")
