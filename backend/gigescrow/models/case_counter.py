from sqlalchemy import Integer
from sqlalchemy.orm import Mapped, mapped_column

from gigescrow.db.base import Base


class CaseCounter(Base):
    """Durable per-year dispute sequence."""

    __tablename__ = "case_counters"

    year: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    last_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
