"""Owner-scoped reconciliation lock rows."""

from datetime import datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from salesrecon.models.base import Base


class ReconciliationLock(Base):
    """One row per owner while a reconciliation run or rollback holds the lock."""

    __tablename__ = "reconciliation_locks"

    owner_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
