"""SQLAlchemy metadata registry import for Alembic."""

from salesrecon.models import (
    Deal,
    ReconciliationAuditLog,
    ReconciliationLock,
    ReconciliationRun,
    SalesActivity,
)
from salesrecon.models.base import Base

__all__ = [
    "Base",
    "SalesActivity",
    "Deal",
    "ReconciliationAuditLog",
    "ReconciliationRun",
    "ReconciliationLock",
]
