from datetime import datetime

from sqlalchemy import BigInteger, Boolean, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from gigescrow.db.base import Base, UTCDateTime

_ACTIVE_PREDICATE = "status IN ('OPEN', 'UNDER_REVIEW')"


class Dispute(Base):
    __tablename__ = "disputes"

    case_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(String(20), default="OPEN", server_default="OPEN")
    type: Mapped[str] = mapped_column(String(30), nullable=False)
    priority: Mapped[str] = mapped_column(String(10), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    created_by: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    respondent: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    escrow_transaction_id: Mapped[int] = mapped_column(
        ForeignKey("escrow_transactions.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    expected_resolution: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    assigned_agent: Mapped[str] = mapped_column(String(120), nullable=False)

    # Resolution record
    resolution_type: Mapped[str | None] = mapped_column(String(30), nullable=True)
    resolution_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolution_payee_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    resolution_payer_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        # At most one active dispute per escrow transaction
        Index(
            "uq_disputes_active_escrow",
            "escrow_transaction_id",
            unique=True,
            postgresql_where=text(_ACTIVE_PREDICATE),
            sqlite_where=text(_ACTIVE_PREDICATE),
        ),
        Index("ix_disputes_status_agent", "status", "assigned_agent"),
    )


class DisputeMessage(Base):
    __tablename__ = "dispute_messages"

    dispute_id: Mapped[int] = mapped_column(
        ForeignKey("disputes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sender_id: Mapped[str] = mapped_column(String(64), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    is_from_admin: Mapped[bool] = mapped_column(Boolean, default=False, server_default="false")


class DisputeEvidence(Base):
    __tablename__ = "dispute_evidence"

    dispute_id: Mapped[int] = mapped_column(
        ForeignKey("disputes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    type: Mapped[str] = mapped_column(String(30), default="document", server_default="document")
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    url: Mapped[str] = mapped_column(String(1024), default="", server_default="")
    size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    mime_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    uploaded_by: Mapped[str] = mapped_column(String(64), nullable=False)
    is_post_resolution: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default="false"
    )
