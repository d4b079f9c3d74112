"""Sales activity ORM model."""

from datetime import date, datetime

from sqlalchemy import Date, DateTime, Float, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from salesrecon.models.base import Base, CreatedAtMixin, IdMixin, UpdatedAtMixin


class SalesActivity(Base, IdMixin, CreatedAtMixin, UpdatedAtMixin):
    """Completed sale logged by a rep, an import, or automation."""

    __tablename__ = "sales_activities"
    __table_args__ = (Index("ix_sales_activities_owner_status_date", "owner_id", "record_status", "activity_date"),)

    owner_id: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    client_name: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[float | None] = mapped_column(Float, nullable=True)
    activity_date: Mapped[date] = mapped_column(Date, index=True, nullable=False)
    activity_type: Mapped[str] = mapped_column(String(64), default="sale", nullable=False)
    deal_id: Mapped[int | None] = mapped_column(
        ForeignKey("deals.id", ondelete="SET NULL", use_alter=True, name="fk_sales_activities_deal_id"),
        index=True,
        nullable=True,
    )
    record_status: Mapped[str] = mapped_column(String(16), default="active", index=True, nullable=False)
    merged_into_id: Mapped[int | None] = mapped_column(
        ForeignKey("sales_activities.id", ondelete="SET NULL"),
        index=True,
        nullable=True,
    )
    merged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    source: Mapped[str] = mapped_column(String(64), default="manual", nullable=False)
