from sqlalchemy import BigInteger, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from gigescrow.db.base import Base


class Wallet(Base):
    """Per-user, per-currency balance view maintained by the escrow ledger.

    ``frozen_amount`` always equals the sum of the user's escrows (as payer)
    that are currently ESCROWED or DISPUTED.
    """

    __tablename__ = "wallets"

    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    frozen_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    __table_args__ = (UniqueConstraint("user_id", "currency", name="uq_wallets_user_currency"),)
