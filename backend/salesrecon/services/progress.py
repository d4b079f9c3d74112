"""Read-side helpers for run progress and audit history."""

from sqlalchemy import select
from sqlalchemy.orm import Session

from salesrecon.models.reconciliation_run import ReconciliationRun
from salesrecon.schemas.audit_log import AuditLogEntryRead, AuditLogPage
from salesrecon.schemas.execution import ProgressData, ReconciliationRunRead
from salesrecon.services.analysis import AnalysisFilters, AnalysisService
from salesrecon.services.audit_log import AuditLog


def latest_run(db: Session, owner_id: str) -> ReconciliationRun | None:
    return db.scalar(
        select(ReconciliationRun)
        .where(ReconciliationRun.owner_id == owner_id)
        .order_by(ReconciliationRun.id.desc())
        .limit(1)
    )


def get_progress(
    db: Session,
    owner_id: str,
    *,
    analysis: AnalysisService,
    audit_log: AuditLog,
    recent_limit: int = 20,
) -> ProgressData:
    """Orphan counts, the latest persisted run and the newest audit entries for one owner."""

    filters = AnalysisFilters(owner_id=owner_id)
    run = latest_run(db, owner_id)
    return ProgressData(
        owner_id=owner_id,
        orphan_activities=len(analysis.orphan_activities(db, filters)),
        orphan_deals=len(analysis.orphan_deals(db, filters)),
        latest_run=ReconciliationRunRead.model_validate(run) if run is not None else None,
        recent_audit_entries=[
            AuditLogEntryRead.model_validate(entry)
            for entry in audit_log.list_recent(db, owner_id, limit=recent_limit)
        ],
    )


def list_audit_entries(
    db: Session,
    owner_id: str,
    *,
    audit_log: AuditLog,
    limit: int,
    offset: int,
) -> AuditLogPage:
    return AuditLogPage(
        items=[
            AuditLogEntryRead.model_validate(entry)
            for entry in audit_log.list_recent(db, owner_id, limit=limit, offset=offset)
        ],
        total=audit_log.count(db, owner_id),
        limit=limit,
        offset=offset,
    )
