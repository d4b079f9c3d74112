"""ORM models package exports."""

from salesrecon.models.deal import Deal
from salesrecon.models.reconciliation_audit_log import ReconciliationAuditLog
from salesrecon.models.reconciliation_lock import ReconciliationLock
from salesrecon.models.reconciliation_run import ReconciliationRun
from salesrecon.models.sales_activity import SalesActivity

__all__ = [
    "SalesActivity",
    "Deal",
    "ReconciliationAuditLog",
    "ReconciliationRun",
    "ReconciliationLock",
]
