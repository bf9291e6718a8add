from datetime import datetime

from sqlalchemy import JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from gigescrow.db.base import Base, UTCDateTime


class Notification(Base):
    """Outbox row: written in the same unit of work as the change it reports,
    delivered to the external sink after commit."""

    __tablename__ = "notifications"

    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(40), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    dispatched_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True, index=True)
    delivery_error: Mapped[str | None] = mapped_column(Text, nullable=True)
