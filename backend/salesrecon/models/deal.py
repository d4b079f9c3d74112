"""Pipeline deal ORM model."""

from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from salesrecon.models.base import Base, CreatedAtMixin, IdMixin, UpdatedAtMixin


class Deal(Base, IdMixin, CreatedAtMixin, UpdatedAtMixin):
    """Pipeline deal; `won` deals are expected to have a matching sales activity."""

    __tablename__ = "deals"

    owner_id: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    company: Mapped[str] = mapped_column(String(255), nullable=False)
    value: Mapped[float | None] = mapped_column(Float, nullable=True)
    status: Mapped[str] = mapped_column(String(32), default="won", index=True, nullable=False)
    stage_changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True, nullable=False)
    activity_id: Mapped[int | None] = mapped_column(
        ForeignKey("sales_activities.id", ondelete="SET NULL"),
        index=True,
        nullable=True,
    )
    record_status: Mapped[str] = mapped_column(String(16), default="active", index=True, nullable=False)
    merged_into_id: Mapped[int | None] = mapped_column(
        ForeignKey("deals.id", ondelete="SET NULL"),
        index=True,
        nullable=True,
    )
    merged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    source: Mapped[str] = mapped_column(String(64), default="manual", nullable=False)
