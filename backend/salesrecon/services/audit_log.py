"""Append-only reconciliation audit log."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from salesrecon.models.reconciliation_audit_log import ReconciliationAuditLog
from salesrecon.timeutils import utcnow

logger = logging.getLogger(__name__)

ROLLBACK_ACTION = "rollback"
REVERSIBLE_ACTIONS = frozenset(
    {
        "auto_link",
        "manual_link",
        "create_deal_from_activity",
        "create_activity_from_deal",
        "merge_duplicate",
    }
)


class AuditLog:
    """Writes and reads audit entries through the caller's session.

    Entries are only ever inserted.
    """

    def append(
        self,
        db: Session,
        *,
        owner_id: str,
        action_type: str,
        source_table: str,
        source_id: int | None,
        target_table: str | None = None,
        target_id: int | None = None,
        confidence_score: float | None = None,
        metadata: dict[str, Any] | None = None,
        run_id: int | None = None,
    ) -> ReconciliationAuditLog:
        entry = ReconciliationAuditLog(
            owner_id=owner_id,
            action_type=action_type,
            source_table=source_table,
            source_id=source_id,
            target_table=target_table,
            target_id=target_id,
            confidence_score=confidence_score,
            metadata_json=dict(metadata or {}),
            run_id=run_id,
            created_at=utcnow(),
        )
        db.add(entry)
        db.flush()
        logger.debug(
            "audit.append owner_id=%s action_type=%s entry_id=%s source=%s:%s target=%s:%s",
            owner_id,
            action_type,
            entry.id,
            source_table,
            source_id,
            target_table,
            target_id,
        )
        return entry

    def list_recent(
        self,
        db: Session,
        owner_id: str,
        *,
        limit: int = 20,
        offset: int = 0,
    ) -> list[ReconciliationAuditLog]:
        return list(
            db.scalars(
                select(ReconciliationAuditLog)
                .where(ReconciliationAuditLog.owner_id == owner_id)
                .order_by(ReconciliationAuditLog.created_at.desc(), ReconciliationAuditLog.id.desc())
                .limit(limit)
                .offset(offset)
            ).all()
        )

    def count(self, db: Session, owner_id: str) -> int:
        total = db.scalar(
            select(func.count(ReconciliationAuditLog.id)).where(ReconciliationAuditLog.owner_id == owner_id)
        )
        return int(total or 0)

    def get_by_ids(self, db: Session, entry_ids: Iterable[int]) -> list[ReconciliationAuditLog]:
        ids = sorted(set(entry_ids))
        if not ids:
            return []
        return list(db.scalars(select(ReconciliationAuditLog).where(ReconciliationAuditLog.id.in_(ids))).all())

    def created_since(self, db: Session, owner_id: str, threshold) -> list[ReconciliationAuditLog]:
        return list(
            db.scalars(
                select(ReconciliationAuditLog)
                .where(
                    ReconciliationAuditLog.owner_id == owner_id,
                    ReconciliationAuditLog.created_at >= threshold,
                )
                .order_by(ReconciliationAuditLog.id.asc())
            ).all()
        )

    def reverted_ids(self, db: Session) -> set[int]:
        """Ids already reversed by any earlier rollback entry."""

        reverted: set[int] = set()
        stmt = select(ReconciliationAuditLog.metadata_json).where(ReconciliationAuditLog.action_type == ROLLBACK_ACTION)
        rows = db.scalars(stmt).all()
        for metadata in rows:
            for entry_id in (metadata or {}).get("reverted_entry_ids", []):
                try:
                    reverted.add(int(entry_id))
                except (TypeError, ValueError):
                    continue
        return reverted
