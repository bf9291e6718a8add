from datetime import datetime

from sqlalchemy import BigInteger, Boolean, CheckConstraint, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from gigescrow.db.base import Base, UTCDateTime


class EscrowTransaction(Base):
    """Funds held against one contract. Amounts are integer minor units."""

    __tablename__ = "escrow_transactions"

    contract_ref: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    payee_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD", server_default="USD")
    status: Mapped[str] = mapped_column(
        String(20), default="PENDING", server_default="PENDING", index=True
    )
    payer_tier: Mapped[str] = mapped_column(
        String(20), default="standard", server_default="standard"
    )
    payment_method: Mapped[str] = mapped_column(
        String(20), default="credit_card", server_default="credit_card"
    )
    platform_fee: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    processing_fee: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    auto_release_date: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    release_on_completion: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default="false"
    )
    released_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    refunded_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    funded_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    milestones: Mapped[list["EscrowMilestone"]] = relationship(
        back_populates="escrow_transaction",
        order_by="EscrowMilestone.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_escrow_transactions_amount_positive"),
        CheckConstraint("payer_id <> payee_id", name="ck_escrow_transactions_distinct_parties"),
    )


class EscrowMilestone(Base):
    __tablename__ = "escrow_milestones"

    escrow_transaction_id: Mapped[int] = mapped_column(
        ForeignKey("escrow_transactions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    is_completed: Mapped[bool] = mapped_column(Boolean, default=False, server_default="false")
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    completed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    escrow_transaction: Mapped[EscrowTransaction] = relationship(back_populates="milestones")
