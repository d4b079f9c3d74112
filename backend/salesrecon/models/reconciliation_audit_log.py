"""Reconciliation audit log model."""

from sqlalchemy import JSON, Float, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from salesrecon.models.base import Base, CreatedAtMixin, IdMixin


class ReconciliationAuditLog(Base, IdMixin, CreatedAtMixin):
    """Append-only record of every reconciliation action; the sole input to rollback."""

    __tablename__ = "reconciliation_audit_log"
    __table_args__ = (Index("ix_reconciliation_audit_log_owner_created", "owner_id", "created_at"),)

    owner_id: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    action_type: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    source_table: Mapped[str] = mapped_column(String(64), nullable=False)
    source_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    target_table: Mapped[str | None] = mapped_column(String(64), nullable=True)
    target_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    confidence_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    metadata_json: Mapped[dict[str, object]] = mapped_column(JSON, default=dict, nullable=False)
    run_id: Mapped[int | None] = mapped_column(Integer, index=True, nullable=True)
