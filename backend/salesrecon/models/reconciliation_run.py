"""Persisted progress of one batch-runner invocation."""

from datetime import datetime

from sqlalchemy import DateTime, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from salesrecon.models.base import Base, IdMixin


class ReconciliationRun(Base, IdMixin):
    """Counters and status for a reconciliation run, visible across processes."""

    __tablename__ = "reconciliation_runs"

    owner_id: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    mode: Mapped[str] = mapped_column(String(16), nullable=False)
    batch_size: Mapped[int] = mapped_column(Integer, nullable=False)
    max_batches: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="running", nullable=False)
    batches_executed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    linked: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    deals_created: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    activities_created: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    merged: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    errors: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
